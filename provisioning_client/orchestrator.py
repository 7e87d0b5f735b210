import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from loguru import logger

from provisioning_client.errors import (
    PollError,
    PollErrorKind,
    ProvisioningClientError,
    ProvisioningError,
    ProvisioningErrorKind,
    RetryExhausted,
)
from provisioning_client.executor import RequestExecutor
from provisioning_client.models import (
    ApiRequest,
    ApiResponse,
    CallRecord,
    Credential,
    ErrorDetail,
    OperationStatus,
    OrchestratorConfig,
    PollOutcome,
    ProvisionResult,
)
from provisioning_client.poller import OperationPoller
from provisioning_client.resource_kinds import (
    DELETED,
    JOB_RUN,
    READY,
    ResourceKind,
    run_now_request,
)
from provisioning_client.retry import RetryPolicy

ExistingLookup = Callable[
    [Dict[str, Any]],
    Awaitable[Optional[Tuple[str, Optional[str]]]],
]


class _Invocation:
    """Mutable state of a single orchestration run, never shared between runs"""

    def __init__(self, kind: ResourceKind, operation: str, deadline: Optional[float]):
        self.kind = kind
        self.operation = operation
        self.deadline = deadline
        self.trace: List[CallRecord] = []
        self.resource_id: Optional[str] = None
        self.last_state: Optional[str] = None
        self.reused_existing = False
        self.cleanup_error: Optional[ErrorDetail] = None

    def last_status_code(self) -> Optional[int]:
        for record in reversed(self.trace):
            if record.status_code is not None:
                return record.status_code
        return None

    def result(
        self, status: OperationStatus, error: Optional[ErrorDetail] = None
    ) -> ProvisionResult:
        return ProvisionResult(
            resource_kind=self.kind.name,
            operation=self.operation,
            resource_id=self.resource_id,
            status=status,
            calls=list(self.trace),
            error=error,
            cleanup_error=self.cleanup_error,
            last_observed_state=self.last_state,
            reused_existing=self.reused_existing,
        )

    def error_detail(self, error: ProvisioningClientError) -> ErrorDetail:
        status_code = getattr(error, "status_code", None)
        attempts = 1
        if isinstance(error, RetryExhausted):
            attempts = error.attempts
        kind = error.kind.value if hasattr(error.kind, "value") else error.kind
        return ErrorDetail(
            kind=kind,
            message=str(error),
            last_status_code=status_code if status_code is not None else self.last_status_code(),
            last_observed_state=self.last_state,
            attempts=attempts,
        )


class ResourceOrchestrator:
    """Drives one resource kind through create/poll/cleanup, update, start and delete.

    Every public operation returns exactly one ProvisionResult; component
    errors are folded into it together with the trace of calls made so far.
    """

    def __init__(
        self,
        kind: ResourceKind,
        credential: Credential,
        executor: Optional[RequestExecutor] = None,
        config: Optional[OrchestratorConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        existing_lookup: Optional[ExistingLookup] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_status_change: Optional[Callable[[PollOutcome], Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.kind = kind
        self.credential = credential
        self.config = config or OrchestratorConfig()
        self._owns_executor = executor is None
        self.executor = executor or RequestExecutor(config=self.config.executor)
        self.retry_policy = retry_policy or RetryPolicy(self.config.retry, sleep=sleep)
        self.poller = OperationPoller(
            self.retry_policy,
            self._call,
            self.config.polling,
            on_status_change=on_status_change,
            sleep=sleep,
        )
        self.existing_lookup = existing_lookup
        self.cancel_event = cancel_event
        self.logger = logger

    async def __aenter__(self) -> "ResourceOrchestrator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        """Closes the executor when this orchestrator created it"""
        if self._owns_executor:
            await self.executor.close()

    async def _call(self, request: ApiRequest, time_limit: Optional[float]) -> ApiResponse:
        timeout = self.executor.config.request_timeout
        if time_limit is not None:
            timeout = min(timeout, time_limit)
        return await self.executor.execute(self.credential, request, timeout=timeout)

    def _begin(self, operation: str, kind: Optional[ResourceKind] = None) -> _Invocation:
        deadline = None
        if self.config.budget is not None:
            deadline = asyncio.get_running_loop().time() + self.config.budget
        return _Invocation(kind or self.kind, operation, deadline)

    async def _send(
        self, run: _Invocation, request_builder: Callable[[], ApiRequest]
    ) -> ApiResponse:
        return await self.retry_policy.run(
            self._call,
            request_builder,
            run.trace,
            cancel_event=self.cancel_event,
            deadline=run.deadline,
        )

    async def _poll(
        self,
        run: _Invocation,
        kind: ResourceKind,
        target: str,
        timeout: Optional[float],
        interval: Optional[float],
    ) -> PollOutcome:
        resource_id = run.resource_id
        extract = kind.status_extractor(target)

        def observe(response: ApiResponse) -> Tuple[OperationStatus, str]:
            status, raw_state = extract(response)
            run.last_state = raw_state
            return status, raw_state

        outcome = await self.poller.poll_until_terminal(
            lambda: kind.status_request(resource_id),
            observe,
            run.trace,
            timeout=timeout,
            interval=interval,
            cancel_event=self.cancel_event,
            deadline=run.deadline,
        )
        run.last_state = outcome.last_state
        return outcome

    def _fail(self, run: _Invocation, error: ProvisioningClientError) -> ProvisionResult:
        status = OperationStatus.failed
        if isinstance(error, PollError) and error.kind is PollErrorKind.cancelled:
            status = OperationStatus.unknown
        self.logger.error(
            f"{run.operation} of {run.kind.name} {run.resource_id or ''} failed: {error}"
        )
        return run.result(status, run.error_detail(error))

    def _finish(self, run: _Invocation, outcome: PollOutcome) -> ProvisionResult:
        if outcome.status is OperationStatus.succeeded:
            self.logger.info(
                f"{run.operation} of {run.kind.name} {run.resource_id} succeeded "
                f"(state {outcome.last_state}, {len(run.trace)} calls)"
            )
            return run.result(outcome.status)

        if outcome.status is OperationStatus.timed_out:
            kind = "timed_out"
            message = (
                f"{run.kind.name} {run.resource_id} still in state {outcome.last_state} "
                f"after {outcome.elapsed:.1f}s"
            )
        else:
            kind = "resource_failed"
            message = f"{run.kind.name} {run.resource_id} reached state {outcome.last_state}"
        self.logger.error(f"{run.operation} failed: {message}")
        return run.result(
            outcome.status,
            ErrorDetail(
                kind=kind,
                message=message,
                last_status_code=run.last_status_code(),
                last_observed_state=outcome.last_state,
                attempts=outcome.checks,
            ),
        )

    async def _lookup_existing(
        self, run: _Invocation, desired_spec: Dict[str, Any]
    ) -> Optional[str]:
        if self.existing_lookup is not None:
            found = await self.existing_lookup(desired_spec)
        else:
            name = self.kind.resource_name(desired_spec)
            if not name:
                return None
            response = await self._send(run, self.kind.list_request)
            found = self.kind.find_existing(response, name)
        if found is None:
            return None

        resource_id, raw_state = found
        if raw_state is not None and self.kind.status_for(raw_state) is OperationStatus.failed:
            self.logger.info(
                f"Ignoring existing {self.kind.name} {resource_id} in failed state {raw_state}"
            )
            return None
        run.last_state = raw_state
        return resource_id

    async def _cleanup(self, run: _Invocation) -> None:
        resource_id = run.resource_id
        self.logger.info(f"Cleaning up failed {self.kind.name} {resource_id}")
        try:
            await self._send(run, lambda: self.kind.delete_request(resource_id))
        except ProvisioningClientError as e:
            self.logger.error(f"Cleanup of {self.kind.name} {resource_id} failed: {e}")
            status_code = getattr(e, "status_code", None)
            run.cleanup_error = ErrorDetail(
                kind=ProvisioningErrorKind.cleanup_failed.value,
                message=str(e),
                last_status_code=status_code,
                last_observed_state=run.last_state,
                attempts=e.attempts if isinstance(e, RetryExhausted) else 1,
            )

    async def provision(
        self,
        desired_spec: Dict[str, Any],
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> ProvisionResult:
        """Create the resource (or adopt a healthy one with the same name) and wait until it is ready"""
        run = self._begin("provision")
        try:
            if self.config.reuse_existing or self.existing_lookup is not None:
                run.resource_id = await self._lookup_existing(run, desired_spec)
                run.reused_existing = run.resource_id is not None

            if run.reused_existing:
                self.logger.info(
                    f"Reusing existing {self.kind.name} {run.resource_id}, skipping create"
                )
            else:
                response = await self._send(
                    run, lambda: self.kind.create_request(desired_spec)
                )
                run.resource_id = self.kind.extract_id(response)
                if run.resource_id is None:
                    raise ProvisioningError(
                        ProvisioningErrorKind.create_failed,
                        f"create response carried no {self.kind.id_field}",
                    )
                self.logger.info(f"Created {self.kind.name} {run.resource_id}")

            outcome = await self._poll(run, self.kind, READY, timeout, interval)
        except ProvisioningClientError as e:
            return self._fail(run, e)

        if (
            outcome.status is OperationStatus.failed
            and self.config.cleanup_on_failure
            and not run.reused_existing
        ):
            await self._cleanup(run)
        return self._finish(run, outcome)

    async def update(
        self,
        resource_id: str,
        desired_spec: Dict[str, Any],
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> ProvisionResult:
        run = self._begin("update")
        run.resource_id = resource_id
        try:
            await self._send(run, lambda: self.kind.edit_request(resource_id, desired_spec))
            outcome = await self._poll(run, self.kind, READY, timeout, interval)
        except ProvisioningClientError as e:
            return self._fail(run, e)
        return self._finish(run, outcome)

    async def start(
        self,
        resource_id: str,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> ProvisionResult:
        run = self._begin("start")
        run.resource_id = resource_id
        try:
            await self._send(run, lambda: self.kind.start_request(resource_id))
            outcome = await self._poll(run, self.kind, READY, timeout, interval)
        except ProvisioningClientError as e:
            return self._fail(run, e)
        return self._finish(run, outcome)

    async def delete(
        self,
        resource_id: str,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> ProvisionResult:
        run = self._begin("delete")
        run.resource_id = resource_id
        try:
            await self._send(run, lambda: self.kind.delete_request(resource_id))
            if self.kind.synchronous_delete:
                self.logger.info(f"Deleted {self.kind.name} {resource_id}")
                return run.result(OperationStatus.succeeded)
            outcome = await self._poll(run, self.kind, DELETED, timeout, interval)
        except ProvisioningClientError as e:
            return self._fail(run, e)
        return self._finish(run, outcome)

    async def run_job(
        self,
        job_id: str,
        parameters: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> ProvisionResult:
        """Trigger a run of an existing job and wait for the run to finish"""
        run = self._begin("run", kind=JOB_RUN)
        try:
            response = await self._send(run, lambda: run_now_request(job_id, parameters))
            run.resource_id = JOB_RUN.extract_id(response)
            if run.resource_id is None:
                raise ProvisioningError(
                    ProvisioningErrorKind.create_failed,
                    f"run-now response for job {job_id} carried no run_id",
                )
            self.logger.info(f"Started run {run.resource_id} of job {job_id}")
            outcome = await self._poll(run, JOB_RUN, READY, timeout, interval)
        except ProvisioningClientError as e:
            return self._fail(run, e)
        return self._finish(run, outcome)
