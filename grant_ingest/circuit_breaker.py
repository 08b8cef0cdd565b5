"""
Per-source circuit breakers.

A breaker stops calling a source that keeps failing, waits out a cooldown,
then lets a limited number of trial calls through to decide whether the
source has recovered. State is in memory only; a restart starts CLOSED.
"""

from __future__ import annotations
import logging
import time
from dataclasses import dataclass, replace, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import CircuitOpenError, counts_against_breaker

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = 'CLOSED'
    OPEN = 'OPEN'
    HALF_OPEN = 'HALF_OPEN'


ALLOWED_TRANSITIONS = {
    (CircuitState.CLOSED, CircuitState.OPEN),
    (CircuitState.OPEN, CircuitState.HALF_OPEN),
    (CircuitState.HALF_OPEN, CircuitState.CLOSED),
    (CircuitState.HALF_OPEN, CircuitState.OPEN),
}


@dataclass(frozen=True)
class CircuitBreakerOptions:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    half_open_requests: int = 1


@dataclass
class CircuitBreakerState:
    state: CircuitState
    failure_count: int
    next_attempt_time: Optional[float]
    last_failure_time: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['state'] = self.state.value
        return data


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        options: Optional[CircuitBreakerOptions] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.options = options or CircuitBreakerOptions()
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.next_attempt_time: Optional[float] = None
        self._trials_in_flight = 0
        self._generation = 0

    def _transition(self, new_state: CircuitState):
        if (self.state, new_state) not in ALLOWED_TRANSITIONS:
            raise RuntimeError(f"Illegal circuit transition {self.state.value} -> {new_state.value} for {self.name}")
        self.state = new_state

    def _open(self):
        self._transition(CircuitState.OPEN)
        self.next_attempt_time = self._clock() + self.options.reset_timeout

    def _admit(self) -> Optional[int]:
        """
        Decide whether a call may proceed.

        Returns the half-open generation for a HALF_OPEN trial, None for a
        normal CLOSED call. Trials admitted in an earlier half-open window
        do not release a slot of the current one.
        """
        if self.state == CircuitState.OPEN:
            if self._clock() < self.next_attempt_time:
                raise CircuitOpenError(self.name, next_attempt_time=self.next_attempt_time)
            self._transition(CircuitState.HALF_OPEN)
            self._generation += 1
            self._trials_in_flight = 0
            logger.info(f"[CircuitBreaker:{self.name}] Moving to HALF_OPEN state")

        if self.state == CircuitState.HALF_OPEN:
            if self._trials_in_flight >= self.options.half_open_requests:
                raise CircuitOpenError(self.name, next_attempt_time=self.next_attempt_time)
            self._trials_in_flight += 1
            return self._generation

        return None

    def _release(self, generation: Optional[int]):
        if generation is not None and generation == self._generation and self._trials_in_flight > 0:
            self._trials_in_flight -= 1

    def record_success(self):
        if self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.CLOSED)
            self.failure_count = 0
            self.next_attempt_time = None
            logger.info(f"[CircuitBreaker:{self.name}] Circuit CLOSED after successful recovery")
        elif self.state == CircuitState.CLOSED:
            self.failure_count = 0

    def record_failure(self):
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitState.HALF_OPEN:
            self._open()
            logger.error(f"[CircuitBreaker:{self.name}] Circuit OPEN after failure in HALF_OPEN state")
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.options.failure_threshold:
            self._open()
            logger.error(f"[CircuitBreaker:{self.name}] Circuit OPEN after {self.failure_count} failures")

    async def execute(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run operation through the breaker. Raises CircuitOpenError without calling it when open.

        Only failures that point at the dependency (timeouts, transport
        errors, retryable errors) are counted.
        """
        generation = self._admit()
        try:
            result = await operation()
        except Exception as e:
            if counts_against_breaker(e):
                self.record_failure()
            raise
        finally:
            self._release(generation)
        self.record_success()
        return result

    def is_available(self) -> bool:
        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.OPEN:
            return self._clock() >= self.next_attempt_time
        return self._trials_in_flight < self.options.half_open_requests

    def get_state(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            state=self.state,
            failure_count=self.failure_count,
            next_attempt_time=self.next_attempt_time if self.state == CircuitState.OPEN else None,
            last_failure_time=self.last_failure_time,
        )

    def reset(self):
        """Operator override: force CLOSED regardless of current state."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None
        self.next_attempt_time = None
        self._trials_in_flight = 0
        self._generation += 1
        logger.info(f"[CircuitBreaker:{self.name}] Circuit manually RESET")


class CircuitBreakerManager:
    """
    Registry of one breaker per source.

    Construct one per process and pass it to whatever needs it.
    """

    def __init__(
        self,
        defaults: Optional[CircuitBreakerOptions] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.defaults = defaults or CircuitBreakerOptions()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get_breaker(self, source_id: str, **overrides) -> CircuitBreaker:
        """Return the source's breaker, creating it with defaults merged with overrides."""
        breaker = self._breakers.get(source_id)
        if breaker is None:
            options = replace(self.defaults, **overrides) if overrides else self.defaults
            breaker = CircuitBreaker(source_id, options, clock=self._clock)
            self._breakers[source_id] = breaker
        return breaker

    async def call(self, source_id: str, operation: Callable[[], Awaitable[Any]], **overrides) -> Any:
        return await self.get_breaker(source_id, **overrides).execute(operation)

    def get_all_states(self) -> Dict[str, CircuitBreakerState]:
        return {source_id: breaker.get_state() for source_id, breaker in self._breakers.items()}

    def is_source_available(self, source_id: str) -> bool:
        breaker = self._breakers.get(source_id)
        return breaker is None or breaker.is_available()

    def get_unavailable_sources(self) -> List[Dict[str, Any]]:
        unavailable = []
        for source_id, breaker in self._breakers.items():
            if not breaker.is_available():
                unavailable.append({
                    'source_id': source_id,
                    'state': breaker.state.value,
                    'next_retry': _iso(breaker.next_attempt_time),
                    'failures': breaker.failure_count,
                })
        return unavailable

    def reset_source(self, source_id: str) -> bool:
        breaker = self._breakers.get(source_id)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self):
        for breaker in self._breakers.values():
            breaker.reset()
        logger.info(f"Reset {len(self._breakers)} circuit breakers")

    def update_defaults(self, **changes):
        """Change defaults for breakers created from now on."""
        self.defaults = replace(self.defaults, **changes)
        logger.info(f"Circuit breaker defaults updated: {self.defaults}")
