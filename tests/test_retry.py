from __future__ import annotations

import asyncio
import errno

import pytest

from grant_ingest.errors import ErrorCategory, PipelineTimeoutError, RateLimitError, TransientError, ValidationError
from grant_ingest.retry import (
    AGGRESSIVE_POLICY,
    NO_RETRY_POLICY,
    RETRY_POLICIES,
    RetryPolicy,
    calculate_retry_delay,
    with_retry,
    with_timeout,
)


class FakeSleep:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FlakyOperation:
    def __init__(self, failures: int, error_factory=lambda: TransientError("upstream flaked")) -> None:
        self.failures = failures
        self.error_factory = error_factory
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_factory()
        return "ok"


def test_succeeds_on_last_attempt() -> None:
    sleep = FakeSleep()
    operation = FlakyOperation(failures=2)
    outcome = asyncio.run(with_retry(operation, max_attempts=3, sleep=sleep))
    assert outcome.result == "ok"
    assert outcome.attempts == 3
    assert len(sleep.delays) == 2


def test_non_retryable_error_is_not_retried() -> None:
    sleep = FakeSleep()
    operation = FlakyOperation(failures=5, error_factory=lambda: ValidationError("bad payload"))
    with pytest.raises(ValidationError) as exc:
        asyncio.run(with_retry(operation, max_attempts=3, sleep=sleep))
    assert operation.calls == 1
    assert exc.value.attempts == 1
    assert sleep.delays == []


def test_exhausted_retries_raise_last_error_with_attempts() -> None:
    operation = FlakyOperation(failures=10)
    with pytest.raises(TransientError) as exc:
        asyncio.run(with_retry(operation, max_attempts=3, operation_name="fetch", sleep=FakeSleep()))
    assert operation.calls == 3
    assert exc.value.attempts == 3
    assert exc.value.context["operation"] == "fetch"
    assert "(after 3 attempts)" in str(exc.value)


def test_raw_exceptions_are_classified_before_retrying() -> None:
    operation = FlakyOperation(
        failures=1,
        error_factory=lambda: ConnectionResetError(errno.ECONNRESET, "Connection reset by peer"),
    )
    outcome = asyncio.run(with_retry(operation, max_attempts=2, sleep=FakeSleep()))
    assert outcome.attempts == 2


def test_rate_limit_hint_overrides_backoff() -> None:
    sleep = FakeSleep()
    operation = FlakyOperation(failures=1, error_factory=lambda: RateLimitError("slow down", retry_after=12))
    asyncio.run(with_retry(operation, max_attempts=2, sleep=sleep))
    assert sleep.delays == [12.0]


def test_on_retry_callback() -> None:
    seen = []
    operation = FlakyOperation(failures=2)
    asyncio.run(with_retry(
        operation,
        policy=RetryPolicy(max_attempts=3, jitter=0.0),
        on_retry=lambda error, attempt, delay: seen.append((error.category, attempt, delay)),
        sleep=FakeSleep(),
    ))
    assert seen == [(ErrorCategory.TRANSIENT, 1, 1.0), (ErrorCategory.TRANSIENT, 2, 2.0)]


def test_no_retry_policy_makes_one_call() -> None:
    operation = FlakyOperation(failures=1)
    with pytest.raises(TransientError):
        asyncio.run(with_retry(operation, policy=NO_RETRY_POLICY, sleep=FakeSleep()))
    assert operation.calls == 1


def test_delay_grows_and_is_capped() -> None:
    policy = RetryPolicy(initial_delay=1.0, max_delay=30.0, backoff_multiplier=2.0, jitter=0.5)
    no_jitter = lambda: 0.5
    assert calculate_retry_delay(1, policy, no_jitter) == 1.0
    assert calculate_retry_delay(2, policy, no_jitter) == 2.0
    assert calculate_retry_delay(3, policy, no_jitter) == 4.0
    assert calculate_retry_delay(10, policy, no_jitter) == 30.0
    assert 0.75 <= calculate_retry_delay(1, policy, lambda: 0.0) <= 1.25


def test_named_policies() -> None:
    assert RETRY_POLICIES["aggressive"] is AGGRESSIVE_POLICY
    assert RETRY_POLICIES["no_retry"].max_attempts == 1


def test_timeout_wrapper_raises_retryable_timeout() -> None:
    with pytest.raises(PipelineTimeoutError) as exc:
        asyncio.run(with_timeout(asyncio.sleep(1), 0.01, "slow call"))
    assert exc.value.category == ErrorCategory.TIMEOUT
    assert exc.value.retryable
    assert exc.value.context["operation"] == "slow call"


def test_timeout_wrapper_passes_results_through() -> None:
    async def quick():
        return 42

    assert asyncio.run(with_timeout(quick(), 1.0)) == 42
    assert asyncio.run(with_timeout(quick(), None)) == 42
