from __future__ import annotations

import asyncio
import errno

import requests

from grant_ingest.errors import (
    ApiError,
    CircuitOpenError,
    DatabaseError,
    ErrorCategory,
    HttpFailure,
    SocketFailure,
    TimeoutFailure,
    TransientError,
    classify_error,
    counts_against_breaker,
    format_error_for_logging,
    get_recovery_suggestion,
    to_transport_failure,
)


class DummyResponse:
    def __init__(self, status_code: int, headers: "dict | None" = None) -> None:
        self.status_code = status_code
        self.headers = headers or {}


class CodedError(Exception):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


def http_error(status: int, headers: "dict | None" = None) -> requests.HTTPError:
    return requests.HTTPError(f"{status} Error", response=DummyResponse(status, headers))


def test_rate_limit_phrase() -> None:
    error = classify_error(Exception("Rate limit exceeded, slow down"))
    assert error.category == ErrorCategory.RATE_LIMIT
    assert error.retryable


def test_http_429_carries_retry_after() -> None:
    error = classify_error(http_error(429, {"Retry-After": "7"}))
    assert error.category == ErrorCategory.RATE_LIMIT
    assert error.retry_after == 7.0


def test_http_status_codes() -> None:
    server = classify_error(http_error(503))
    assert isinstance(server, ApiError)
    assert server.retryable
    assert server.code == "HTTP_503"

    client = classify_error(http_error(404))
    assert client.category == ErrorCategory.API
    assert not client.retryable


def test_timeouts() -> None:
    assert classify_error(requests.Timeout("read timed out")).category == ErrorCategory.TIMEOUT
    assert classify_error(asyncio.TimeoutError()).category == ErrorCategory.TIMEOUT
    assert classify_error(CodedError("socket hang", "ETIMEDOUT")).category == ErrorCategory.TIMEOUT
    assert classify_error(Exception("Operation timed out")).retryable


def test_socket_reset_is_transient() -> None:
    error = classify_error(ConnectionResetError(errno.ECONNRESET, "Connection reset by peer"))
    assert isinstance(error, TransientError)
    assert error.code == "ECONNRESET"
    assert error.retryable


def test_duplicate_key_is_not_retryable() -> None:
    for exc in [CodedError("insert failed", "23505"), Exception("E11000 duplicate key error collection")]:
        error = classify_error(exc)
        assert isinstance(error, DatabaseError)
        assert error.code == "DUPLICATE_KEY"
        assert not error.retryable


def test_validation_and_unknown() -> None:
    validation = classify_error(ValueError("Invalid opportunity payload"))
    assert validation.category == ErrorCategory.VALIDATION
    assert not validation.retryable

    unknown = classify_error(RuntimeError("something odd happened"))
    assert unknown.category == ErrorCategory.UNKNOWN
    assert not unknown.retryable
    assert unknown.__cause__ is not None


def test_classified_errors_pass_through() -> None:
    error = DatabaseError("connection lost")
    assert classify_error(error) is error


def test_transport_failure_shapes() -> None:
    assert isinstance(to_transport_failure(http_error(500)), HttpFailure)
    assert isinstance(to_transport_failure(requests.ConnectionError("Connection refused")), SocketFailure)
    assert to_transport_failure(requests.ConnectionError("Connection refused")).code == "ECONNREFUSED"
    assert isinstance(to_transport_failure(TimeoutError()), TimeoutFailure)


def test_str_includes_attempts() -> None:
    error = TransientError("upstream flaked")
    error.attempts = 3
    assert str(error) == "[TRANSIENT] upstream flaked (after 3 attempts)"


def test_recovery_suggestions() -> None:
    assert "breaker" in get_recovery_suggestion(CircuitOpenError("grants-gov"))
    assert "constraint" in get_recovery_suggestion(DatabaseError("dup", retryable=False))
    assert "retry" in get_recovery_suggestion(ConnectionResetError(errno.ECONNRESET, "reset"))


def test_format_error_for_logging() -> None:
    log = format_error_for_logging(http_error(503), include_stack=True)
    assert log["category"] == "API"
    assert log["code"] == "HTTP_503"
    assert log["retryable"] is True
    assert "HTTPError" in log["stack"]
    assert log["context"]["status"] == 503


def test_only_dependency_failures_count_against_a_breaker() -> None:
    assert counts_against_breaker(TransientError("reset"))
    assert counts_against_breaker(TimeoutError("timed out"))
    assert counts_against_breaker(http_error(503))
    assert counts_against_breaker(http_error(429))
    assert counts_against_breaker(DatabaseError("connection lost"))

    assert not counts_against_breaker(DatabaseError("duplicate key", code="DUPLICATE_KEY", retryable=False))
    assert not counts_against_breaker(http_error(404))
    assert not counts_against_breaker(ApiError("not found", status=404))
