import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from loguru import logger

from provisioning_client.errors import PollError, PollErrorKind, RetryExhausted
from provisioning_client.models import (
    ApiResponse,
    CallRecord,
    OperationStatus,
    PollingConfig,
    PollOutcome,
)
from provisioning_client.retry import RequestBuilder, RequestCall, RetryPolicy, sleep_cancellable

StatusExtractor = Callable[[ApiResponse], Tuple[OperationStatus, Optional[str]]]


class OperationPoller:
    def __init__(
        self,
        retry_policy: RetryPolicy,
        call: RequestCall,
        config: Optional[PollingConfig] = None,
        on_status_change: Optional[Callable[[PollOutcome], Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.retry_policy = retry_policy
        self.call = call
        self.config = config or PollingConfig()
        self.on_status_change = on_status_change
        self.sleep = sleep
        self.logger = logger

    async def _notify_transition(
        self, outcome: PollOutcome, previous: Optional[OperationStatus]
    ) -> None:
        if self.on_status_change is None or outcome.status == previous:
            return
        self.logger.debug(
            f"Status moved from {previous.value if previous else 'none'} to {outcome.status.value}"
        )
        await self.on_status_change(outcome)

    def _extract(
        self, status_extractor: StatusExtractor, response: ApiResponse
    ) -> Tuple[OperationStatus, Optional[str]]:
        try:
            return status_extractor(response)
        except PollError:
            raise
        except (KeyError, TypeError, ValueError) as e:
            self.logger.error(f"Could not extract status from response: {e!r}")
            raise PollError(
                PollErrorKind.status_extraction_failed,
                f"could not extract status from response: {e!r}",
            ) from e

    async def poll_until_terminal(
        self,
        status_request_builder: RequestBuilder,
        status_extractor: StatusExtractor,
        trace: List[CallRecord],
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
    ) -> PollOutcome:
        """Poll the status endpoint until a terminal status, the timeout, or cancellation"""
        loop = asyncio.get_running_loop()
        timeout = self.config.timeout if timeout is None else timeout
        interval = self.config.interval if interval is None else interval
        started = loop.time()
        poll_deadline = started + timeout
        if deadline is not None:
            poll_deadline = min(poll_deadline, deadline)

        checks = 0
        last_status: Optional[OperationStatus] = None
        last_state: Optional[str] = None

        def outcome(status: OperationStatus) -> PollOutcome:
            return PollOutcome(
                status=status,
                last_state=last_state,
                checks=checks,
                elapsed=loop.time() - started,
            )

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise PollError(PollErrorKind.cancelled, "polling cancelled")
            if loop.time() >= poll_deadline:
                break

            try:
                response = await self.retry_policy.run(
                    self.call,
                    status_request_builder,
                    trace,
                    cancel_event=cancel_event,
                    deadline=poll_deadline,
                )
            except RetryExhausted as e:
                # cut short by the deadline rather than by the attempt limit
                if (
                    e.attempts < self.retry_policy.config.max_attempts
                    or loop.time() >= poll_deadline
                ):
                    break
                raise

            checks += 1
            status, last_state = self._extract(status_extractor, response)
            current = outcome(status)
            await self._notify_transition(current, last_status)
            last_status = status

            if status.is_terminal:
                self.logger.info(
                    f"Operation reached {status.value} (state {last_state}) after {checks} checks"
                )
                return current

            remaining = poll_deadline - loop.time()
            if remaining <= 0:
                break
            delay = min(interval, remaining)
            self.logger.debug(
                f"Operation still {status.value} (state {last_state}), waiting {delay:.2f}s before next check"
            )
            await sleep_cancellable(delay, cancel_event, self.sleep)

        self.logger.warning(
            f"Operation did not reach a terminal state within {timeout:.1f}s (last state {last_state})"
        )
        return outcome(OperationStatus.timed_out)
