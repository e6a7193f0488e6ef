"""Response body handling and HTTP error classification."""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
import orjson

from .errors import (
    DEFAULT_BODY_SNIPPET_LENGTH,
    ApiError,
    ResponseParseError,
    ResponseReadTimeout,
)

logger = logging.getLogger(__name__)

ERROR_BODY_MIN_BUDGET = 4096


def sanitize_snippet(text: str, max_length: int = 512) -> str:
    compact = " ".join(text.split())
    if not compact:
        return ""
    return f"{compact[:max_length]}…" if len(compact) > max_length else compact


def parse_retry_after(value: str | None, now: datetime | None = None) -> int | None:
    """Convert a ``Retry-After`` header into a delay in milliseconds."""
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    try:
        seconds = float(trimmed)
    except ValueError:
        pass
    else:
        if math.isfinite(seconds) and seconds >= 0:
            return int(seconds * 1000)
        return None
    try:
        parsed = parsedate_to_datetime(trimmed)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    ref = now or datetime.now(timezone.utc)
    return max(0, int((parsed - ref).total_seconds() * 1000))


def is_json_content_type(content_type: str | None) -> bool:
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


class ResponseParser:
    def __init__(self, *, body_snippet_length: int = DEFAULT_BODY_SNIPPET_LENGTH) -> None:
        self._snippet_length = max(0, body_snippet_length)
        self._error_body_budget = max(self._snippet_length * 4, ERROR_BODY_MIN_BUDGET)

    async def parse(
        self,
        response: httpx.Response,
        *,
        url: str,
        method: str,
        read_timeout_ms: float | None = None,
    ) -> Any:
        if not response.is_success:
            await self._raise_http_error(
                response, url=url, method=method, read_timeout_ms=read_timeout_ms
            )
        return await self._read_parsed_body(response, url=url, read_timeout_ms=read_timeout_ms)

    async def _read_parsed_body(
        self,
        response: httpx.Response,
        *,
        url: str,
        read_timeout_ms: float | None,
    ) -> Any:
        content_length = response.headers.get("content-length")
        if content_length is not None and content_length.strip() == "0":
            return None
        text = await self._read_text(response, url=url, read_timeout_ms=read_timeout_ms)
        if not text.strip():
            return None
        if is_json_content_type(response.headers.get("content-type")):
            try:
                return orjson.loads(text)
            except orjson.JSONDecodeError as exc:
                snippet = sanitize_snippet(text, self._snippet_length)
                raise ResponseParseError(
                    f"Failed to parse JSON from {url}: {exc} | body snippet: {snippet}"
                ) from exc
        return text

    async def _read_text(
        self,
        response: httpx.Response,
        *,
        url: str,
        read_timeout_ms: float | None,
    ) -> str:
        if read_timeout_ms is None or read_timeout_ms <= 0:
            await response.aread()
            return response.text
        try:
            async with asyncio.timeout(read_timeout_ms / 1000):
                await response.aread()
        except TimeoutError as exc:
            raise ResponseReadTimeout(
                f"Reading response from {url} timed out after {read_timeout_ms:g}ms"
            ) from exc
        return response.text

    async def _read_error_body(
        self,
        response: httpx.Response,
        read_timeout_ms: float | None = None,
    ) -> str:
        buffer = bytearray()
        deadline = read_timeout_ms / 1000 if read_timeout_ms and read_timeout_ms > 0 else None
        try:
            async with asyncio.timeout(deadline):
                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
                    if len(buffer) >= self._error_body_budget:
                        break
        except TimeoutError as exc:
            if deadline is None:
                return f"[body unavailable: {exc}]"
            return f"[body unavailable: read timed out after {read_timeout_ms:g}ms]"
        except (httpx.HTTPError, OSError) as exc:
            return f"[body unavailable: {exc}]"
        raw = bytes(buffer[: self._error_body_budget])
        try:
            return raw.decode(response.charset_encoding or "utf-8", errors="replace")
        except LookupError:
            return raw.decode("utf-8", errors="replace")

    async def _raise_http_error(
        self,
        response: httpx.Response,
        *,
        url: str,
        method: str,
        read_timeout_ms: float | None = None,
    ) -> None:
        error_text = await self._read_error_body(response, read_timeout_ms)
        request_id = response.headers.get("x-request-id") or None
        retry_after_ms = parse_retry_after(response.headers.get("retry-after"))
        body_snippet = sanitize_snippet(error_text, self._snippet_length)

        try:
            logger.error(
                "Forum API error",
                extra={
                    "forum_error": {
                        "path": url,
                        "status": response.status_code,
                        "method": method,
                        "body": body_snippet,
                        "request_id": request_id,
                        "retry_after_ms": retry_after_ms,
                    }
                },
            )
        except Exception:
            pass

        raise ApiError(
            status=response.status_code,
            path=url,
            method=method,
            body_snippet=body_snippet,
            body_snippet_max_length=self._snippet_length,
            retry_after_ms=retry_after_ms,
            request_id=request_id,
        )
