"""
Settings and logging setup.

Everything is read from the environment (a .env file is loaded if present).
"""

from __future__ import annotations
import logging
import os
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional, Tuple

from croniter import croniter
from dotenv import load_dotenv

from .circuit_breaker import CircuitBreakerOptions
from .errors import ConfigurationError
from .freshness import FreshnessPolicy
from .retry import RetryPolicy

load_dotenv()

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


def configure_logging(level: str = 'INFO', log_file: Optional[str] = None):
    """Root logging: stdout plus an optional log file."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def _raw(env: Mapping[str, str], name: str) -> Optional[str]:
    value = env.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _get_int(env, name: str, default: int, minimum: int = 0) -> int:
    raw = _raw(env, name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_float(env, name: str, default: float, minimum: float = 0.0, maximum: Optional[float] = None) -> float:
    raw = _raw(env, name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if value < minimum or (maximum is not None and value > maximum):
        raise ConfigurationError(f"{name} out of range: {value}")
    return value


def _get_bool(env, name: str, default: bool) -> bool:
    raw = _raw(env, name)
    if raw is None:
        return default
    return raw.lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class PipelineSettings:
    mongo_uri: str = 'mongodb://localhost:27017'
    mongo_db_name: str = 'grant_ingest'

    stale_review_days: int = 90
    title_similarity_threshold: float = 0.7
    min_title_length: int = 10
    amount_change_tolerance: float = 0.0

    circuit_failure_threshold: int = 5
    circuit_reset_timeout: float = 60.0
    circuit_half_open_requests: int = 1

    retry_max_attempts: int = 3
    call_timeout_seconds: float = 40.0
    max_checkpoints: int = 10
    chunk_size: int = 50

    upstream_base_url: Optional[str] = None
    upstream_page_size: int = 100

    log_level: str = 'INFO'
    log_file: Optional[str] = None
    pipeline_schedule: str = '0 */6 * * *'
    pipeline_sources: Tuple[str, ...] = field(default_factory=tuple)
    run_on_startup: bool = True
    show_progress: bool = True

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "PipelineSettings":
        """Build settings from environment variables. Bad values raise ConfigurationError."""
        env = os.environ if env is None else env

        log_level = (_raw(env, 'LOG_LEVEL') or 'INFO').upper()
        if log_level not in LOG_LEVELS:
            raise ConfigurationError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")

        schedule = _raw(env, 'PIPELINE_SCHEDULE') or cls.pipeline_schedule
        if not croniter.is_valid(schedule):
            raise ConfigurationError(f"Invalid cron expression in PIPELINE_SCHEDULE: {schedule!r}")

        sources = tuple(s.strip() for s in (_raw(env, 'PIPELINE_SOURCES') or '').split(',') if s.strip())

        return cls(
            mongo_uri=_raw(env, 'MONGO_URI') or cls.mongo_uri,
            mongo_db_name=_raw(env, 'MONGO_DB_NAME') or cls.mongo_db_name,
            stale_review_days=_get_int(env, 'STALE_REVIEW_DAYS', 90, minimum=1),
            title_similarity_threshold=_get_float(env, 'TITLE_SIMILARITY_THRESHOLD', 0.7, 0.0, 1.0),
            min_title_length=_get_int(env, 'MIN_TITLE_LENGTH', 10, minimum=1),
            amount_change_tolerance=_get_float(env, 'AMOUNT_CHANGE_TOLERANCE', 0.0, 0.0, 1.0),
            circuit_failure_threshold=_get_int(env, 'CIRCUIT_FAILURE_THRESHOLD', 5, minimum=1),
            circuit_reset_timeout=_get_float(env, 'CIRCUIT_RESET_TIMEOUT', 60.0),
            circuit_half_open_requests=_get_int(env, 'CIRCUIT_HALF_OPEN_REQUESTS', 1, minimum=1),
            retry_max_attempts=_get_int(env, 'RETRY_MAX_ATTEMPTS', 3, minimum=1),
            call_timeout_seconds=_get_float(env, 'CALL_TIMEOUT_SECONDS', 40.0),
            max_checkpoints=_get_int(env, 'MAX_CHECKPOINTS', 10, minimum=1),
            chunk_size=_get_int(env, 'CHUNK_SIZE', 50, minimum=1),
            upstream_base_url=_raw(env, 'UPSTREAM_BASE_URL'),
            upstream_page_size=_get_int(env, 'UPSTREAM_PAGE_SIZE', 100, minimum=1),
            log_level=log_level,
            log_file=_raw(env, 'LOG_FILE'),
            pipeline_schedule=schedule,
            pipeline_sources=sources,
            run_on_startup=_get_bool(env, 'RUN_ON_STARTUP', True),
            show_progress=_get_bool(env, 'SHOW_PROGRESS', True),
        )

    def freshness_policy(self) -> FreshnessPolicy:
        return FreshnessPolicy(
            stale_review_days=self.stale_review_days,
            amount_change_tolerance=self.amount_change_tolerance,
        )

    def breaker_options(self) -> CircuitBreakerOptions:
        return CircuitBreakerOptions(
            failure_threshold=self.circuit_failure_threshold,
            reset_timeout=self.circuit_reset_timeout,
            half_open_requests=self.circuit_half_open_requests,
        )

    def retry_policy(self, base: Optional[RetryPolicy] = None) -> RetryPolicy:
        return replace(base or RetryPolicy(), max_attempts=self.retry_max_attempts)
