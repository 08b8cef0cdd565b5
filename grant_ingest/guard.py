from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable, Optional

from .circuit_breaker import CircuitBreakerManager
from .models import QueryResult
from .retry import DEFAULT_POLICY, RetryOutcome, RetryPolicy, with_retry, with_timeout


class CallGuard:
    """
    Wraps one external call: retry outside, circuit breaker per attempt,
    hard timeout innermost.

    An open breaker is not retryable, so a tripped source stops the retry
    loop at once instead of burning attempts.
    """

    def __init__(
        self,
        breakers: CircuitBreakerManager,
        policy: RetryPolicy = DEFAULT_POLICY,
        timeout: Optional[float] = 40.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.breakers = breakers
        self.policy = policy
        self.timeout = timeout
        self._sleep = sleep

    async def call(
        self,
        source_id: str,
        operation_name: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        policy: Optional[RetryPolicy] = None,
        max_attempts: Optional[int] = None,
        on_retry=None,
    ) -> RetryOutcome:
        breaker = self.breakers.get_breaker(source_id)

        async def attempt():
            return await breaker.execute(lambda: with_timeout(fn(), self.timeout, operation_name))

        return await with_retry(
            attempt,
            max_attempts=max_attempts,
            policy=policy or self.policy,
            operation_name=f"{operation_name}[{source_id}]",
            on_retry=on_retry,
            sleep=self._sleep,
        )

    async def call_sync(self, source_id: str, operation_name: str, fn: Callable[..., Any], *args, **kwargs) -> RetryOutcome:
        """Same as call() for a blocking function, run in a worker thread."""
        return await self.call(
            source_id,
            operation_name,
            lambda: asyncio.to_thread(fn, *args, **kwargs),
        )


STORAGE_BREAKER_PREFIX = 'storage/'


def storage_breaker_key(source_id: Optional[str] = None) -> str:
    """Breaker key for storage calls made on behalf of source_id ('/' never appears in a source id)."""
    return f"{STORAGE_BREAKER_PREFIX}{source_id or 'shared'}"


async def run_query(guard: Optional[CallGuard], operation_name: str, fn: Callable[..., Any], *args,
                    source_id: Optional[str] = None) -> Any:
    """
    Run a blocking storage call that returns a QueryResult.

    An error result is raised inside the guarded call so it is classified
    and retried like any exception. Storage breakers are kept per source,
    so one source's failures never block another's reads and writes.
    Without a guard the call just runs in a worker thread.
    """
    def call():
        result = fn(*args)
        if isinstance(result, QueryResult):
            return result.unwrap()
        return result

    if guard is None:
        return await asyncio.to_thread(call)
    outcome = await guard.call_sync(storage_breaker_key(source_id), operation_name, call)
    return outcome.result
