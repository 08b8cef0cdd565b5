"""
Retry with exponential backoff, and hard timeouts for external calls.

Built on tenacity. Every failure is classified first; only retryable
classifications consume retry budget. Rate-limit errors carrying a server
Retry-After hint wait for that hint instead of the computed backoff.
"""

from __future__ import annotations
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt

from .errors import ErrorCategory, PipelineError, PipelineTimeoutError, classify_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings. Delays are in seconds."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.5


DEFAULT_POLICY = RetryPolicy()
AGGRESSIVE_POLICY = RetryPolicy(max_attempts=5, initial_delay=0.5, max_delay=60.0,
                                backoff_multiplier=1.5, jitter=1.0)
CONSERVATIVE_POLICY = RetryPolicy(max_attempts=2, initial_delay=5.0, max_delay=30.0,
                                  backoff_multiplier=3.0, jitter=0.0)
NO_RETRY_POLICY = RetryPolicy(max_attempts=1, initial_delay=0.0, max_delay=0.0,
                              backoff_multiplier=1.0, jitter=0.0)

RETRY_POLICIES: Dict[str, RetryPolicy] = {
    'default': DEFAULT_POLICY,
    'aggressive': AGGRESSIVE_POLICY,
    'conservative': CONSERVATIVE_POLICY,
    'no_retry': NO_RETRY_POLICY,
}


@dataclass
class RetryOutcome:
    result: Any
    attempts: int


def calculate_retry_delay(
    attempt: int,
    policy: RetryPolicy = DEFAULT_POLICY,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay after the given (1-based) failed attempt, capped and jittered."""
    exponent = min(max(attempt - 1, 0), 20)
    delay = min(policy.initial_delay * (policy.backoff_multiplier ** exponent), policy.max_delay)
    if policy.jitter:
        delay += (rng() - 0.5) * policy.jitter
    return max(0.0, delay)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, PipelineError) and exc.retryable


async def with_retry(
    operation: Callable[[], Awaitable[Any]],
    *,
    max_attempts: Optional[int] = None,
    policy: RetryPolicy = DEFAULT_POLICY,
    operation_name: str = 'operation',
    on_retry: Optional[Callable[[PipelineError, int, float], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RetryOutcome:
    """
    Run operation until it succeeds, fails non-retryably, or attempts run out.

    Returns RetryOutcome(result, attempts). On failure raises the last
    classified PipelineError with .attempts set to the number of calls made.
    on_retry(error, attempt, delay) is called before each backoff sleep.
    """
    total_attempts = max_attempts or policy.max_attempts
    calls = 0

    async def attempt():
        nonlocal calls
        calls += 1
        try:
            return await operation()
        except Exception as exc:
            error = classify_error(exc)
            if error is exc:
                raise
            raise error from exc

    def wait(retry_state) -> float:
        error = retry_state.outcome.exception()
        if (
            isinstance(error, PipelineError)
            and error.category == ErrorCategory.RATE_LIMIT
            and error.retry_after is not None
        ):
            return error.retry_after
        return calculate_retry_delay(retry_state.attempt_number, policy)

    def before_sleep(retry_state) -> None:
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"{operation_name} attempt {retry_state.attempt_number}/{total_attempts} failed: "
            f"{error}. Retrying in {delay:.1f}s..."
        )
        if on_retry is not None:
            on_retry(error, retry_state.attempt_number, delay)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(total_attempts),
        wait=wait,
        retry=retry_if_exception(_is_retryable),
        before_sleep=before_sleep,
        sleep=sleep,
        reraise=True,
    )

    try:
        result = await retrying(attempt)
    except PipelineError as error:
        error.attempts = calls
        error.context.setdefault('operation', operation_name)
        if error.retryable:
            logger.error(f"{operation_name} failed after {calls} attempts: {error.message}")
        else:
            logger.error(f"{operation_name} failed with non-retryable {error.category.value} error: {error.message}")
        raise

    if calls > 1:
        logger.info(f"{operation_name} succeeded after {calls} attempts")
    return RetryOutcome(result=result, attempts=calls)


async def with_timeout(awaitable: Awaitable[Any], timeout: Optional[float], operation_name: str = 'operation') -> Any:
    """Await with a hard deadline. Expiry raises a retryable PipelineTimeoutError."""
    if timeout is None or timeout <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise PipelineTimeoutError(
            f"{operation_name} timed out after {timeout}s",
            operation=operation_name,
            timeout=timeout,
        ) from exc
