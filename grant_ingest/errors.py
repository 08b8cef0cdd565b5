"""
Error taxonomy and classification for every external call boundary.

Raw exceptions (requests, sockets, storage drivers, asyncio timeouts) are
first converted into a small set of transport failure shapes, then matched
deterministically into a PipelineError subclass that knows whether it is
retryable, how severe it is and how long to wait before trying again.
"""

from __future__ import annotations
import asyncio
import errno
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

import requests


class ErrorCategory(str, Enum):
    RATE_LIMIT = 'RATE_LIMIT'
    TIMEOUT = 'TIMEOUT'
    DATABASE = 'DATABASE'
    VALIDATION = 'VALIDATION'
    TRANSIENT = 'TRANSIENT'
    API = 'API'
    AI_SERVICE = 'AI_SERVICE'
    CONFIGURATION = 'CONFIGURATION'
    UNKNOWN = 'UNKNOWN'


class Severity(str, Enum):
    INFO = 'info'
    WARNING = 'warning'
    ERROR = 'error'
    CRITICAL = 'critical'


class PipelineError(Exception):
    """Base for every classified pipeline failure."""

    category = ErrorCategory.UNKNOWN
    default_code = 'PIPELINE_ERROR'
    default_retryable = False
    default_severity = Severity.ERROR
    default_retry_after: Optional[float] = None

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        retryable: Optional[bool] = None,
        severity: Optional[Severity] = None,
        retry_after: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.retryable = self.default_retryable if retryable is None else retryable
        self.severity = severity or self.default_severity
        self.retry_after = self.default_retry_after if retry_after is None else retry_after
        self.context: Dict[str, Any] = dict(context or {})
        self.attempts: Optional[int] = None
        self.timestamp = datetime.now(timezone.utc)
        if cause is not None:
            self.__cause__ = cause

    @property
    def recovery_suggestion(self) -> str:
        return get_recovery_suggestion(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': type(self).__name__,
            'message': self.message,
            'code': self.code,
            'category': self.category.value,
            'retryable': self.retryable,
            'severity': self.severity.value,
            'retry_after': self.retry_after,
            'attempts': self.attempts,
            'context': {k: v for k, v in self.context.items() if _is_jsonable(v)},
            'timestamp': self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        if self.attempts:
            return f"[{self.category.value}] {self.message} (after {self.attempts} attempts)"
        return f"[{self.category.value}] {self.message}"


class TransientError(PipelineError):
    category = ErrorCategory.TRANSIENT
    default_code = 'TRANSIENT_ERROR'
    default_retryable = True
    default_severity = Severity.WARNING


class RateLimitError(PipelineError):
    category = ErrorCategory.RATE_LIMIT
    default_code = 'RATE_LIMIT_EXCEEDED'
    default_retryable = True
    default_severity = Severity.WARNING


class PipelineTimeoutError(PipelineError):
    category = ErrorCategory.TIMEOUT
    default_code = 'TIMEOUT'
    default_retryable = True
    default_severity = Severity.WARNING

    def __init__(self, message: str, *, operation: Optional[str] = None,
                 timeout: Optional[float] = None, **kwargs):
        context = dict(kwargs.pop('context', None) or {})
        if operation is not None:
            context.setdefault('operation', operation)
        if timeout is not None:
            context.setdefault('timeout_seconds', timeout)
        super().__init__(message, context=context, **kwargs)


class DatabaseError(PipelineError):
    category = ErrorCategory.DATABASE
    default_code = 'DATABASE_ERROR'
    default_retryable = True


class ValidationError(PipelineError):
    category = ErrorCategory.VALIDATION
    default_code = 'VALIDATION_ERROR'
    default_severity = Severity.WARNING


class ApiError(PipelineError):
    category = ErrorCategory.API
    default_code = 'API_ERROR'

    def __init__(self, message: str, *, status: Optional[int] = None, **kwargs):
        if status is not None:
            kwargs.setdefault('code', f"HTTP_{status}")
            kwargs.setdefault('retryable', status >= 500 or status == 429)
            context = dict(kwargs.pop('context', None) or {})
            context.setdefault('status', status)
            kwargs['context'] = context
        super().__init__(message, **kwargs)
        self.status = status


class AIServiceError(PipelineError):
    category = ErrorCategory.AI_SERVICE
    default_code = 'AI_SERVICE_ERROR'
    default_retryable = True


class ConfigurationError(PipelineError):
    category = ErrorCategory.CONFIGURATION
    default_code = 'CONFIGURATION_ERROR'
    default_severity = Severity.CRITICAL


class UnknownError(PipelineError):
    category = ErrorCategory.UNKNOWN
    default_code = 'UNKNOWN'


class CircuitOpenError(PipelineError):
    """Raised without calling the operation while a source's breaker is open."""

    category = ErrorCategory.API
    default_code = 'CIRCUIT_OPEN'
    default_severity = Severity.WARNING

    def __init__(self, source_id: str, next_attempt_time: Optional[float] = None, **kwargs):
        context = dict(kwargs.pop('context', None) or {})
        context.update({'source_id': source_id, 'next_attempt_time': next_attempt_time})
        super().__init__(
            f"Circuit breaker is OPEN for {source_id}",
            context=context,
            **kwargs,
        )
        self.source_id = source_id
        self.next_attempt_time = next_attempt_time


# Transport failures: the only shapes classify_error inspects

@dataclass(frozen=True)
class HttpFailure:
    status: int
    message: str
    retry_after: Optional[float] = None


@dataclass(frozen=True)
class SocketFailure:
    code: str
    message: str


@dataclass(frozen=True)
class TimeoutFailure:
    message: str


@dataclass(frozen=True)
class MessageFailure:
    message: str
    code: Optional[str] = None


TransportFailure = Union[HttpFailure, SocketFailure, TimeoutFailure, MessageFailure]

SOCKET_TIMEOUT_CODES = {'ETIMEDOUT', 'ESOCKETTIMEDOUT'}
SOCKET_RESET_CODES = {
    'ECONNRESET',
    'ECONNREFUSED',
    'ECONNABORTED',
    'EPIPE',
    'ENOTFOUND',
    'EAI_AGAIN',
    'EHOSTUNREACH',
    'ENETUNREACH',
}
DUPLICATE_KEY_CODES = {'23505', '23000', 'ER_DUP_ENTRY', '11000', '11001'}
CONSTRAINT_CODES = {'23502', '23503', '23514'}

RATE_LIMIT_PHRASES = ('rate limit', 'ratelimit', 'too many requests', 'quota exceeded')
TIMEOUT_PHRASES = ('timeout', 'timed out')
DUPLICATE_KEY_PHRASES = ('duplicate key', 'e11000', 'unique constraint', 'violates unique')
CONSTRAINT_PHRASES = ('violates foreign key', 'violates not-null', 'violates check constraint',
                      'constraint violation')
VALIDATION_PHRASES = ('invalid', 'validation', 'malformed', 'required', 'unauthorized',
                      'forbidden', 'credential', 'api key')
AI_SERVICE_PHRASES = ('anthropic', 'openai', 'overloaded_error', 'model is overloaded',
                      'context length')


def _is_jsonable(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool, type(None), list, dict))


def _parse_retry_after(value: Any) -> Optional[float]:
    """Retry-After header: delta seconds or an HTTP date."""
    if value is None or value == '':
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        pass
    try:
        when = parsedate_to_datetime(str(value))
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _response_status(response: Any) -> Optional[int]:
    status = getattr(response, 'status_code', None)
    if status is None:
        status = getattr(response, 'status', None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _response_retry_after(response: Any) -> Optional[float]:
    headers = getattr(response, 'headers', None) or {}
    try:
        return _parse_retry_after(headers.get('Retry-After') or headers.get('retry-after'))
    except AttributeError:
        return None


def _connection_code(message: str) -> str:
    lowered = message.lower()
    if 'refused' in lowered:
        return 'ECONNREFUSED'
    if 'name or service not known' in lowered or 'nodename' in lowered or 'getaddrinfo' in lowered:
        return 'ENOTFOUND'
    if 'broken pipe' in lowered:
        return 'EPIPE'
    return 'ECONNRESET'


def to_transport_failure(exc: BaseException) -> TransportFailure:
    """Convert a raw exception into one of the transport failure shapes."""
    message = str(exc) or type(exc).__name__

    # Timeouts first: TimeoutError and requests.Timeout are OSError subclasses
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, requests.Timeout)):
        return TimeoutFailure(message)

    response = getattr(exc, 'response', None)
    status = _response_status(response) if response is not None else None
    if status is not None:
        retry_after = _response_retry_after(response)
        if retry_after is None:
            retry_after = _parse_retry_after(getattr(exc, 'retry_after', None))
        return HttpFailure(status=status, message=message, retry_after=retry_after)

    if isinstance(exc, requests.ConnectionError):
        return SocketFailure(code=_connection_code(message), message=message)

    code = getattr(exc, 'code', None)
    if isinstance(exc, OSError) and exc.errno in errno.errorcode:
        code = errno.errorcode[exc.errno]
    if code is not None:
        code = str(code)
        if code in SOCKET_TIMEOUT_CODES:
            return TimeoutFailure(message)
        if code in SOCKET_RESET_CODES:
            return SocketFailure(code=code, message=message)
        return MessageFailure(message=message, code=code)

    if isinstance(exc, (ConnectionResetError, BrokenPipeError, ConnectionRefusedError)):
        return SocketFailure(code=_connection_code(message), message=message)

    return MessageFailure(message=message)


def _contains(text: str, phrases) -> bool:
    return any(phrase in text for phrase in phrases)


def _classify(exc: BaseException) -> PipelineError:
    failure = to_transport_failure(exc)
    message = failure.message
    lowered = message.lower()
    code = getattr(failure, 'code', None)
    base = {'cause': exc, 'context': {'original_type': type(exc).__name__}}

    if (isinstance(failure, HttpFailure) and failure.status == 429) or _contains(lowered, RATE_LIMIT_PHRASES):
        retry_after = failure.retry_after if isinstance(failure, HttpFailure) else None
        if retry_after is None:
            retry_after = _parse_retry_after(getattr(exc, 'retry_after', None))
        return RateLimitError(message, retry_after=retry_after, **base)

    if isinstance(failure, TimeoutFailure) or _contains(lowered, TIMEOUT_PHRASES):
        return PipelineTimeoutError(message, **base)

    if code in DUPLICATE_KEY_CODES or _contains(lowered, DUPLICATE_KEY_PHRASES):
        return DatabaseError(message, code='DUPLICATE_KEY', retryable=False, **base)
    if code in CONSTRAINT_CODES or _contains(lowered, CONSTRAINT_PHRASES):
        return DatabaseError(message, code='CONSTRAINT_VIOLATION', retryable=False, **base)

    if isinstance(failure, SocketFailure):
        return TransientError(message, code=failure.code, **base)

    if isinstance(failure, HttpFailure):
        return ApiError(message, status=failure.status, **base)

    if _contains(lowered, VALIDATION_PHRASES):
        return ValidationError(message, **base)

    if _contains(lowered, AI_SERVICE_PHRASES):
        return AIServiceError(message, **base)

    return UnknownError(message, **base)


def classify_error(exc: BaseException) -> PipelineError:
    """
    Map any exception to a PipelineError. Never raises.

    Already classified errors are returned unchanged. Unmatched errors
    become UnknownError, which is not retried.
    """
    if isinstance(exc, PipelineError):
        return exc
    try:
        return _classify(exc)
    except Exception as inner:
        return UnknownError(
            f"{type(exc).__name__}: {exc}",
            cause=exc,
            context={'classification_error': str(inner)},
        )


BREAKER_CATEGORIES = {ErrorCategory.TIMEOUT, ErrorCategory.TRANSIENT, ErrorCategory.RATE_LIMIT}


def counts_against_breaker(exc: BaseException) -> bool:
    """
    True when exc says the dependency itself is unhealthy.

    Record-level failures (duplicate keys, constraints, NOT_FOUND,
    validation, 4xx) mean the dependency answered, so they do not trip
    a circuit breaker.
    """
    error = classify_error(exc)
    return error.retryable or error.category in BREAKER_CATEGORIES


def get_recovery_suggestion(exc: BaseException) -> str:
    error = classify_error(exc)
    category = error.category

    if category == ErrorCategory.TRANSIENT:
        return 'This is a temporary error. The system will automatically retry.'
    if category == ErrorCategory.RATE_LIMIT:
        if error.retry_after is not None:
            return f"Rate limit reached. Waiting {error.retry_after:.1f}s before retry."
        return 'Rate limit reached. Backing off before retry.'
    if category == ErrorCategory.DATABASE:
        if error.retryable:
            return 'Database connection issue. Retrying with backoff.'
        return 'Database constraint violation. Check data integrity.'
    if category == ErrorCategory.API:
        if error.code == CircuitOpenError.default_code:
            return 'Source is failing repeatedly. Calls are paused until the breaker resets.'
        if error.retryable:
            return 'External API error. Will retry automatically.'
        return 'API request failed. Check API credentials and request format.'
    if category == ErrorCategory.TIMEOUT:
        return 'Operation timed out. Consider increasing timeout or optimizing the operation.'
    if category == ErrorCategory.VALIDATION:
        return 'Data validation failed. Review and correct the input data.'
    if category == ErrorCategory.CONFIGURATION:
        return 'Configuration error. Check environment variables and settings.'
    if category == ErrorCategory.AI_SERVICE:
        return 'AI service temporarily unavailable. Will retry with longer delay.'
    return 'An unexpected error occurred. Manual intervention may be required.'


def format_error_for_logging(exc: BaseException, include_stack: bool = False) -> Dict[str, Any]:
    error = classify_error(exc)
    log = {
        'timestamp': error.timestamp.isoformat(),
        'severity': error.severity.value,
        'category': error.category.value,
        'code': error.code,
        'message': error.message,
        'retryable': error.retryable,
        'suggestion': get_recovery_suggestion(error),
    }
    if error.attempts:
        log['attempts'] = error.attempts
    if error.context:
        log['context'] = {k: v for k, v in error.context.items() if _is_jsonable(v)}
    if include_stack:
        source = error.__cause__ or error
        log['stack'] = ''.join(traceback.format_exception(type(source), source, source.__traceback__))
    return log
