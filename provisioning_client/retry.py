import asyncio
import random
from typing import Awaitable, Callable, List, Optional

from loguru import logger

from provisioning_client.errors import (
    ErrorKind,
    ExecutionError,
    PollError,
    PollErrorKind,
    RetryExhausted,
)
from provisioning_client.models import (
    ApiRequest,
    ApiResponse,
    CallRecord,
    RetryConfig,
    RetryDecision,
)

RequestBuilder = Callable[[], ApiRequest]
RequestCall = Callable[[ApiRequest, Optional[float]], Awaitable[ApiResponse]]


async def await_cancellable(aw: Awaitable, cancel_event: Optional[asyncio.Event]):
    """Awaits `aw` but abandons it with PollError(cancelled) as soon as `cancel_event` is set"""
    if cancel_event is None:
        return await aw
    if cancel_event.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        raise PollError(PollErrorKind.cancelled, "operation cancelled")

    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()

    if task in done:
        return task.result()

    # the abandoned task still has to observe its cancellation
    await asyncio.gather(task, return_exceptions=True)
    raise PollError(PollErrorKind.cancelled, "operation cancelled")


async def sleep_cancellable(
    delay: float,
    cancel_event: Optional[asyncio.Event] = None,
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
) -> None:
    await await_cancellable(sleep(max(0.0, delay)), cancel_event)


class RetryPolicy:
    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        jitter_source: Callable[[], float] = random.random,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.config = config or RetryConfig()
        self.jitter_source = jitter_source
        self.sleep = sleep
        self.logger = logger

    def compute_delay(self, attempt: int) -> float:
        """Exponential backoff for the 1-indexed attempt, clamped, then jittered by +/- config.jitter"""
        delay = min(
            self.config.base_delay * (2 ** (attempt - 1)),
            self.config.max_delay,
        )
        if self.config.jitter:
            delay *= 1 + self.config.jitter * (2 * self.jitter_source() - 1)
        return delay

    def decide(
        self,
        error: ExecutionError,
        attempt: int,
        remaining: Optional[float] = None,
    ) -> RetryDecision:
        if not error.is_transient:
            return RetryDecision(retry=False, reason=f"{error.kind.value} is not retryable")
        if attempt >= self.config.max_attempts:
            return RetryDecision(
                retry=False, reason=f"exhausted {self.config.max_attempts} attempts"
            )

        if error.kind is ErrorKind.rate_limited and error.retry_after is not None:
            delay = error.retry_after
        else:
            delay = self.compute_delay(attempt)

        if remaining is not None and delay >= remaining:
            return RetryDecision(
                retry=False,
                reason=f"next attempt in {delay:.1f}s would exceed the time budget",
            )
        return RetryDecision(retry=True, delay=delay)

    async def run(
        self,
        call: RequestCall,
        request_builder: RequestBuilder,
        trace: List[CallRecord],
        cancel_event: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
    ) -> ApiResponse:
        """Executes one logical request, retrying transient failures with backoff.

        `deadline` is an absolute event loop time; no attempt or backoff sleep
        runs past it. Every executed attempt is appended to `trace`.
        """
        loop = asyncio.get_running_loop()
        attempt = 0
        last_error: Optional[ExecutionError] = None

        while True:
            attempt += 1
            time_limit = None
            if deadline is not None:
                time_limit = deadline - loop.time()
                if time_limit <= 0:
                    last_error = last_error or ExecutionError(
                        ErrorKind.timeout, "time budget exhausted before the request was sent"
                    )
                    raise RetryExhausted(last_error, attempt - 1)

            # fresh request per attempt
            request = request_builder()
            started = loop.time()
            try:
                response = await await_cancellable(call(request, time_limit), cancel_event)
            except ExecutionError as e:
                last_error = e
                trace.append(
                    CallRecord(
                        method=request.method,
                        path=request.path,
                        attempt=attempt,
                        status_code=e.status_code,
                        outcome=e.kind.value,
                        elapsed=loop.time() - started,
                    )
                )
            except PollError:
                trace.append(
                    CallRecord(
                        method=request.method,
                        path=request.path,
                        attempt=attempt,
                        outcome=PollErrorKind.cancelled.value,
                        elapsed=loop.time() - started,
                    )
                )
                raise
            else:
                trace.append(
                    CallRecord(
                        method=request.method,
                        path=request.path,
                        attempt=attempt,
                        status_code=response.status_code,
                        outcome="success",
                        elapsed=loop.time() - started,
                    )
                )
                return response

            remaining = deadline - loop.time() if deadline is not None else None
            decision = self.decide(last_error, attempt, remaining)
            if not decision.retry:
                if not last_error.is_transient:
                    self.logger.error(
                        f"{request.describe()} failed permanently: {last_error}"
                    )
                    raise last_error
                self.logger.error(f"Giving up on {request.describe()}: {decision.reason}")
                raise RetryExhausted(last_error, attempt)

            self.logger.warning(
                f"Attempt {attempt}/{self.config.max_attempts} of {request.describe()} failed "
                f"({last_error.kind.value}), retrying in {decision.delay:.2f}s"
            )
            await sleep_cancellable(decision.delay, cancel_event, self.sleep)
