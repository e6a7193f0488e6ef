"""HTTP transport shared by every forum operation."""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from .errors import DEFAULT_BODY_SNIPPET_LENGTH, TransportTimeoutError
from .events import RequestEventLogger, RequestObserver
from .request import BuiltRequest, FetchOptions, RequestBuilder
from .response import ResponseParser
from .retry import (
    RetryExecutor,
    RetryPolicies,
    RetryPolicy,
    build_retry_policies,
    compute_delay_ms,
    resolve_retry_policy,
)


@dataclass(frozen=True)
class TransportSettings:
    base_url: str
    system_api_key: str
    system_username: str = "system"
    default_timeout_ms: int = 30_000
    user_agent: str | None = None
    user_api_client_id: str | None = None
    body_snippet_length: int = DEFAULT_BODY_SNIPPET_LENGTH


@dataclass(frozen=True)
class RetryHooks:
    should_retry: Callable[[BaseException], bool]
    compute_delay_ms: Callable[[BaseException, int, RetryPolicy], int] = compute_delay_ms


@dataclass(frozen=True)
class ParsedResponse:
    status: int
    body: Any


class Transport:
    def __init__(
        self,
        settings: TransportSettings,
        policies: RetryPolicies | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        observer: RequestObserver | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._policies = policies or build_retry_policies()
        self._builder = RequestBuilder(
            base_url=settings.base_url,
            system_api_key=settings.system_api_key,
            system_username=settings.system_username,
            default_timeout_ms=settings.default_timeout_ms,
            user_agent=settings.user_agent,
            user_api_client_id=settings.user_api_client_id,
        )
        self._parser = ResponseParser(body_snippet_length=settings.body_snippet_length)
        self._executor = RetryExecutor(RequestEventLogger(observer), sleep=sleep)
        self._owns_client = http_client is None
        # Deadlines are enforced per call in _send, not by httpx.
        self._client = http_client or httpx.AsyncClient(timeout=None, follow_redirects=True)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def settings(self) -> TransportSettings:
        return self._settings

    def build_url(self, path: str) -> str:
        return self._builder.build_url(path)

    def normalized_base_url(self) -> str:
        return self._builder.normalized_base_url()

    def build_request(self, path: str, options: FetchOptions | None = None) -> BuiltRequest:
        return self._builder.build(path, options)

    async def fetch(
        self,
        path: str,
        options: FetchOptions | None,
        hooks: RetryHooks,
    ) -> Any:
        options = options or FetchOptions()
        method = (options.method or "GET").upper()
        policy = resolve_retry_policy(method, self._policies, options.retry_policy)

        async def attempt(_: int) -> ParsedResponse:
            request = self._builder.build(path, options)
            read_timeout_ms = self._resolve_read_timeout(options, request.timeout_ms)
            return await self._execute(request, read_timeout_ms)

        result = await self._executor.run(
            attempt,
            url=self._builder.build_url(path, options.params),
            method=method,
            policy=policy,
            should_retry=hooks.should_retry,
            compute_delay=hooks.compute_delay_ms,
        )
        return result.body

    async def _execute(self, request: BuiltRequest, read_timeout_ms: float) -> ParsedResponse:
        response = await self._send(request)
        try:
            body = await self._parser.parse(
                response,
                url=request.url,
                method=request.method,
                read_timeout_ms=read_timeout_ms,
            )
        finally:
            await response.aclose()
        return ParsedResponse(status=response.status_code, body=body)

    async def _send(self, request: BuiltRequest) -> httpx.Response:
        outbound = self._client.build_request(
            request.method,
            request.url,
            headers=request.headers,
            content=request.content,
        )
        try:
            async with asyncio.timeout(request.timeout_ms / 1000):
                return await self._client.send(outbound, stream=True)
        except TimeoutError as exc:
            raise TransportTimeoutError(
                f"Request to {request.url} timed out after {request.timeout_ms:g}ms"
            ) from exc

    @staticmethod
    def _resolve_read_timeout(options: FetchOptions, default_ms: float) -> float:
        value = options.read_timeout_ms
        if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
            return max(0, value)
        return default_ms
