import asyncio

import pytest
from provisioning_client.errors import (
    ErrorKind,
    ExecutionError,
    PollError,
    PollErrorKind,
    RetryExhausted,
)
from provisioning_client.models import ApiRequest, ApiResponse, RetryConfig
from provisioning_client.retry import RetryPolicy


class ScriptedCall:
    """Replays outcomes in order; the last one repeats."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    async def __call__(self, request, time_limit):
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def ok(body=None):
    return ApiResponse(status_code=200, body=body or {})


def status_request():
    return ApiRequest(method="GET", path="/api/2.0/clusters/get", params={"cluster_id": "c-1"})


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def policy(sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    return RetryPolicy(RetryConfig(), jitter_source=lambda: 0.5, sleep=fake_sleep)


def test_delays_double_and_clamp(policy):
    delays = [policy.compute_delay(attempt) for attempt in range(1, 8)]
    assert delays == [2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]
    assert delays == sorted(delays)


@pytest.mark.parametrize("u, factor", [(0.0, 0.8), (1.0, 1.2)])
def test_jitter_bounds(u, factor):
    policy = RetryPolicy(RetryConfig(), jitter_source=lambda: u)
    assert policy.compute_delay(1) == pytest.approx(2.0 * factor)
    assert policy.compute_delay(10) == pytest.approx(30.0 * factor)


def test_jitter_disabled():
    policy = RetryPolicy(RetryConfig(jitter=0.0), jitter_source=lambda: 0.99)
    assert policy.compute_delay(3) == 8.0


@pytest.mark.parametrize(
    "kind", [ErrorKind.unauthorized, ErrorKind.invalid_request]
)
def test_permanent_errors_are_not_retried(policy, kind):
    decision = policy.decide(ExecutionError(kind, "nope", status_code=400), attempt=1)
    assert not decision.retry
    assert kind.value in decision.reason


def test_retry_after_overrides_backoff(policy):
    error = ExecutionError(ErrorKind.rate_limited, "slow down", status_code=429, retry_after=7.0)
    decision = policy.decide(error, attempt=1)
    assert decision.retry
    assert decision.delay == 7.0


def test_no_retry_past_remaining_budget(policy):
    error = ExecutionError(ErrorKind.server_error, "boom", status_code=503)
    decision = policy.decide(error, attempt=1, remaining=1.0)
    assert not decision.retry
    assert "budget" in decision.reason


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        ExecutionError(ErrorKind.rate_limited, "slow down", status_code=429),
        ExecutionError(ErrorKind.server_error, "unavailable", status_code=503),
        ExecutionError(ErrorKind.network_error, "connection refused"),
        ExecutionError(ErrorKind.timeout, "no response"),
    ],
)
async def test_transient_errors_use_all_attempts(policy, sleeps, error):
    call = ScriptedCall(error)
    trace = []

    with pytest.raises(RetryExhausted) as excinfo:
        await policy.run(call, status_request, trace)

    assert len(call.requests) == 5
    assert excinfo.value.attempts == 5
    assert excinfo.value.last_error is error
    assert [record.attempt for record in trace] == [1, 2, 3, 4, 5]
    assert all(record.outcome == error.kind.value for record in trace)
    assert sleeps == [2.0, 4.0, 8.0, 16.0]


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, kind", [
    (401, ErrorKind.unauthorized),
    (403, ErrorKind.unauthorized),
    (400, ErrorKind.invalid_request),
])
async def test_permanent_errors_attempt_once(policy, sleeps, status_code, kind):
    error = ExecutionError(kind, "denied", status_code=status_code)
    call = ScriptedCall(error)
    trace = []

    with pytest.raises(ExecutionError) as excinfo:
        await policy.run(call, status_request, trace)

    assert excinfo.value is error
    assert len(call.requests) == 1
    assert len(trace) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_recovers_after_transient_failures(policy, sleeps):
    call = ScriptedCall(
        ExecutionError(ErrorKind.server_error, "unavailable", status_code=503),
        ExecutionError(ErrorKind.rate_limited, "slow down", status_code=429, retry_after=1.5),
        ok({"state": "RUNNING"}),
    )
    trace = []
    built = []

    def builder():
        request = status_request()
        built.append(request)
        return request

    response = await policy.run(call, builder, trace)

    assert response.body == {"state": "RUNNING"}
    assert [record.outcome for record in trace] == ["server_error", "rate_limited", "success"]
    assert sleeps == [2.0, 1.5]
    # a fresh request object per attempt
    assert len(built) == 3
    assert len({id(request) for request in built}) == 3


@pytest.mark.asyncio
async def test_cancellation_interrupts_backoff():
    policy = RetryPolicy(RetryConfig(base_delay=10.0), jitter_source=lambda: 0.5)
    call = ScriptedCall(ExecutionError(ErrorKind.server_error, "unavailable", status_code=503))
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.call_later(0.1, cancel_event.set)
    started = loop.time()

    with pytest.raises(PollError) as excinfo:
        await policy.run(call, status_request, [], cancel_event=cancel_event)

    assert excinfo.value.kind is PollErrorKind.cancelled
    assert loop.time() - started < 2.0
    assert len(call.requests) == 1


@pytest.mark.asyncio
async def test_cancellation_interrupts_in_flight_request():
    policy = RetryPolicy(RetryConfig(), jitter_source=lambda: 0.5)
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    async def slow_call(request, time_limit):
        await asyncio.sleep(10)
        return ok()

    loop.call_later(0.1, cancel_event.set)
    trace = []
    with pytest.raises(PollError):
        await policy.run(slow_call, status_request, trace, cancel_event=cancel_event)
    assert trace[0].outcome == "cancelled"


@pytest.mark.asyncio
async def test_deadline_caps_attempt_time_limit(policy):
    limits = []

    async def call(request, time_limit):
        limits.append(time_limit)
        return ok()

    loop = asyncio.get_running_loop()
    await policy.run(call, status_request, [], deadline=loop.time() + 3.0)
    assert 0 < limits[0] <= 3.0
