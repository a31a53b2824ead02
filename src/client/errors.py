# src/client/errors.py - v1
"""Typed request failures.

Every failure leaving the request executor is an ``ApiError`` with exactly
one ``ErrorKind``. Callers above the executor never see httpx exceptions.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import httpx


class ErrorKind(str, Enum):
    NETWORK_UNREACHABLE = "network_unreachable"
    TIMEOUT = "timeout"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"


# Kinds a read may be retried on automatically.
READ_RETRYABLE_KINDS = frozenset(
    {ErrorKind.NETWORK_UNREACHABLE, ErrorKind.TIMEOUT, ErrorKind.SERVER_ERROR}
)

# Kinds a caller may offer a manual retry for after a failed write.
WRITE_RETRYABLE_KINDS = frozenset(
    {ErrorKind.NETWORK_UNREACHABLE, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED}
)


class ApiError(Exception):
    """A classified request failure."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status_code: int | None = None,
        detail: Any = None,
        retry_after: float | None = None,
        method: str | None = None,
        path: str | None = None,
        is_write: bool = False,
    ) -> None:
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.detail = detail
        self.retry_after = retry_after
        self.method = method
        self.path = path
        self.is_write = is_write
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether retrying the same request could succeed."""
        if self.is_write:
            return self.kind in WRITE_RETRYABLE_KINDS
        return self.kind in READ_RETRYABLE_KINDS or self.kind is ErrorKind.RATE_LIMITED

    def __repr__(self) -> str:
        return (
            f"ApiError(kind={self.kind.value!r}, status={self.status_code}, "
            f"{self.method} {self.path}: {self.message!r})"
        )


_STATUS_KINDS: dict[int, ErrorKind] = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    408: ErrorKind.TIMEOUT,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMITED,
}


def kind_for_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code to an error kind."""
    if status_code in _STATUS_KINDS:
        return _STATUS_KINDS[status_code]
    if status_code >= 500:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.UNKNOWN


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _error_body(response: httpx.Response) -> tuple[str | None, Any]:
    """Extract (message, detail) from either error envelope the backend uses."""
    try:
        body = response.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    envelope = body.get("error")
    if isinstance(envelope, dict):
        return envelope.get("message"), envelope.get("details")
    detail = body.get("detail")
    if isinstance(detail, str):
        return detail, None
    if detail is not None:
        return None, detail
    return None, None


def classify_response(
    response: httpx.Response, *, is_write: bool = False
) -> ApiError:
    """Build an ApiError for a non-2xx response."""
    kind = kind_for_status(response.status_code)
    message, detail = _error_body(response)
    return ApiError(
        kind,
        message or f"HTTP {response.status_code}",
        status_code=response.status_code,
        detail=detail,
        retry_after=_parse_retry_after(response.headers.get("Retry-After")),
        method=response.request.method,
        path=response.request.url.path,
        is_write=is_write,
    )


def classify_transport_error(
    exc: Exception,
    *,
    method: str | None = None,
    path: str | None = None,
    is_write: bool = False,
) -> ApiError:
    """Build an ApiError for a failure that produced no response."""
    if isinstance(exc, httpx.TimeoutException):
        kind = ErrorKind.TIMEOUT
        message = "Request timed out"
    elif isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError)):
        kind = ErrorKind.NETWORK_UNREACHABLE
        message = "Network error. Please check your connection."
    else:
        kind = ErrorKind.UNKNOWN
        message = str(exc) or type(exc).__name__
    return ApiError(kind, message, method=method, path=path, is_write=is_write)
