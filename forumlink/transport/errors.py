"""Structured failures raised by the forum transport."""

from __future__ import annotations

import errno
from enum import Enum

import httpx

TRANSIENT_STATUSES = frozenset({408, 425, 429, 499, 502, 503, 504})
DEFAULT_BODY_SNIPPET_LENGTH = 200

_TRANSIENT_ERRNOS = frozenset(
    {
        errno.ECONNRESET,
        errno.ECONNREFUSED,
        errno.ETIMEDOUT,
        errno.EPIPE,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
    }
)


class ApiErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    BAD_REQUEST = "bad_request"
    TOO_MANY_REQUESTS = "too_many_requests"
    SERVICE_UNAVAILABLE = "service_unavailable"
    UNKNOWN = "unknown"

    @classmethod
    def from_status(cls, status: int) -> "ApiErrorKind":
        if status == 401:
            return cls.UNAUTHORIZED
        if status == 403:
            return cls.FORBIDDEN
        if status == 404:
            return cls.NOT_FOUND
        if status in (400, 422):
            return cls.BAD_REQUEST
        if status in TRANSIENT_STATUSES:
            return cls.TOO_MANY_REQUESTS
        if status >= 500:
            return cls.SERVICE_UNAVAILABLE
        return cls.UNKNOWN


class ApiError(Exception):
    """Non-2xx response from the forum API."""

    def __init__(
        self,
        *,
        status: int,
        path: str,
        method: str,
        body_snippet: str | None = None,
        body_snippet_max_length: int = DEFAULT_BODY_SNIPPET_LENGTH,
        retry_after_ms: int | None = None,
        request_id: str | None = None,
        context: str | None = None,
    ) -> None:
        max_length = max(0, body_snippet_max_length)
        self.status = status
        self.path = path
        self.method = method
        self.body_snippet = body_snippet[:max_length] if body_snippet is not None else None
        self.body_snippet_max_length = max_length
        self.retry_after_ms = retry_after_ms
        self.request_id = request_id
        self.context = context
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        base = f"Forum API error ({self.method} {self.status}): {self.path}"
        detailed = f"{base} - {self.body_snippet}" if self.body_snippet else base
        return f"{self.context}: {detailed}" if self.context else detailed

    @property
    def kind(self) -> ApiErrorKind:
        return ApiErrorKind.from_status(self.status)

    @property
    def message(self) -> str:
        return str(self)

    def with_context(self, context: str) -> "ApiError":
        return ApiError(
            status=self.status,
            path=self.path,
            method=self.method,
            body_snippet=self.body_snippet,
            body_snippet_max_length=self.body_snippet_max_length,
            retry_after_ms=self.retry_after_ms,
            request_id=self.request_id,
            context=context,
        )


class TransportTimeoutError(TimeoutError):
    """Raised when the overall request deadline elapses before a response."""


class ResponseReadTimeout(TransportTimeoutError):
    """Raised when reading the response body exceeds the read timeout."""


class ResponseParseError(ValueError):
    """Raised when a JSON response body cannot be decoded."""


def is_transport_error(error: BaseException) -> bool:
    if isinstance(error, (ResponseParseError, ApiError)):
        return False
    if isinstance(error, (httpx.TransportError, TimeoutError, ConnectionError)):
        return True
    if isinstance(error, OSError):
        return error.errno in _TRANSIENT_ERRNOS
    return False


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, ApiError):
        return error.status in TRANSIENT_STATUSES or error.status >= 500
    return is_transport_error(error)
