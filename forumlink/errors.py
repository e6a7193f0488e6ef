"""Translate domain failures into FastAPI HTTP errors."""

from __future__ import annotations

import math
from typing import Any

from fastapi import HTTPException, status

from .forum.client import KeyValidation
from .forum.models import MalformedResponseError
from .links.nonces import NonceCapacityError, NonceStore, NonceValidationError
from .links.service import InvalidNonceError, InvalidPayloadError
from .transport.errors import DEFAULT_BODY_SNIPPET_LENGTH, ApiError, ApiErrorKind

_KIND_STATUS = {
    ApiErrorKind.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ApiErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ApiErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ApiErrorKind.BAD_REQUEST: status.HTTP_400_BAD_REQUEST,
    ApiErrorKind.TOO_MANY_REQUESTS: status.HTTP_429_TOO_MANY_REQUESTS,
    ApiErrorKind.SERVICE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ApiErrorKind.UNKNOWN: status.HTTP_502_BAD_GATEWAY,
}


def _retry_after_header(retry_after_ms: float | None) -> dict[str, str] | None:
    if retry_after_ms is None:
        return None
    return {"Retry-After": str(max(0, math.ceil(retry_after_ms / 1000)))}


def api_error_to_http(error: ApiError) -> HTTPException:
    return HTTPException(
        status_code=_KIND_STATUS[error.kind],
        detail={
            "message": error.message,
            "kind": error.kind.value,
            "status": error.status,
            "path": error.path,
            "method": error.method,
            "retry_after_ms": error.retry_after_ms,
            "request_id": error.request_id,
        },
        headers=_retry_after_header(error.retry_after_ms),
    )


def capacity_error_to_http(
    error: NonceCapacityError,
    nonces: NonceStore | None = None,
    fallback_retry_after_ms: float | None = None,
) -> HTTPException:
    retry_after_ms = None
    if nonces is not None:
        retry_after_ms = nonces.get_retry_after_ms(error.client_id)
        if retry_after_ms is None:
            retry_after_ms = nonces.get_retry_after_ms()
    if retry_after_ms is None:
        retry_after_ms = fallback_retry_after_ms
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "message": str(error),
            "limit_type": error.limit_type,
            "limit": error.limit,
            "client_id": error.client_id,
            "retry_after_ms": retry_after_ms,
        },
        headers=_retry_after_header(retry_after_ms),
    )


def key_validation_to_http(result: KeyValidation) -> HTTPException:
    if result.retryable:
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"message": result.error or "Validation retry suggested", "retryable": True},
        )
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"message": result.error or "User API key invalid", "retryable": False},
    )


def to_http_exception(
    error: Exception,
    *,
    nonces: NonceStore | None = None,
    fallback_retry_after_ms: float | None = None,
) -> HTTPException:
    if isinstance(error, HTTPException):
        return error
    if isinstance(error, NonceCapacityError):
        return capacity_error_to_http(error, nonces, fallback_retry_after_ms)
    if isinstance(error, ApiError):
        return api_error_to_http(error)
    if isinstance(error, (InvalidNonceError, InvalidPayloadError, NonceValidationError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, MalformedResponseError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))
    if isinstance(error, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"Forum unavailable: {error}",
    )


def sanitize_error_for_log(
    error: BaseException,
    max_body_snippet_length: int = DEFAULT_BODY_SNIPPET_LENGTH,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"message": str(error), "name": type(error).__name__}
    cause = error.__cause__
    if cause is not None:
        payload["cause"] = str(cause)
    if isinstance(error, ApiError):
        snippet = error.body_snippet
        if snippet is not None:
            snippet = snippet[: min(max_body_snippet_length, error.body_snippet_max_length)]
        payload.update(
            status=error.status,
            path=error.path,
            method=error.method,
            retry_after_ms=error.retry_after_ms,
            request_id=error.request_id,
            body_snippet=snippet,
            context=error.context,
        )
    return {key: value for key, value in payload.items() if value is not None}
