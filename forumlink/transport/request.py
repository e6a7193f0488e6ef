"""Assembles method, URL, headers and body for a single forum call."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Mapping
from urllib.parse import urlencode, urlsplit

import orjson

DEFAULT_ACCEPT = "application/json"
USER_API_KEY_HEADER = "User-Api-Key"
USER_API_CLIENT_ID_HEADER = "User-Api-Client-Id"
API_KEY_HEADER = "Api-Key"
API_USERNAME_HEADER = "Api-Username"

_ABSOLUTE_URL = re.compile(r"^https?://", re.IGNORECASE)
_PASSTHROUGH_BODIES = (str, bytes, bytearray, memoryview)


@dataclass
class FetchOptions:
    """Per-call options; transient, never stored."""

    method: str = "GET"
    body: Any = None
    body_factory: Callable[[], Any] | None = None
    body_mode: Literal["json", "raw"] = "json"
    body_serializer: Callable[[Any], Any] | None = None
    accept: str | None = DEFAULT_ACCEPT
    as_user: str | None = None
    user_api_key: str | None = None
    timeout_ms: float | None = None
    read_timeout_ms: float | None = None
    headers: Mapping[str, Any] = field(default_factory=dict)
    params: Mapping[str, Any] | None = None
    retry_policy: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class BuiltRequest:
    url: str
    method: str
    headers: dict[str, str]
    content: Any
    timeout_ms: float


def has_header(headers: Mapping[str, str], name: str) -> bool:
    target = name.lower()
    return any(key.lower() == target for key in headers)


def normalize_headers(headers: Mapping[str, Any] | None) -> dict[str, str]:
    return {key: str(value) for key, value in (headers or {}).items() if value is not None}


def normalize_base_url(base_url: str) -> str:
    """Return ``scheme://host[/path]/`` with exactly one trailing slash."""
    parts = urlsplit(base_url.strip()) if isinstance(base_url, str) else None
    if parts is None or parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValueError(f"Invalid forum base URL: {base_url}")
    path = parts.path.rstrip("/")
    return f"{parts.scheme}://{parts.netloc}{path}/"


def _is_file_like(value: Any) -> bool:
    return callable(getattr(value, "read", None))


class RequestBuilder:
    def __init__(
        self,
        *,
        base_url: str,
        system_api_key: str,
        system_username: str,
        default_timeout_ms: float = 30_000,
        user_agent: str | None = None,
        user_api_client_id: str | None = None,
    ) -> None:
        self._base_url = normalize_base_url(base_url)
        self._system_api_key = system_api_key
        self._system_username = system_username
        self._default_timeout_ms = default_timeout_ms
        self._user_agent = (user_agent or "").strip() or None
        self._user_api_client_id = (user_api_client_id or "").strip() or None

    @property
    def base_url(self) -> str:
        return self._base_url

    def normalized_base_url(self) -> str:
        return self._base_url.rstrip("/")

    def build_url(self, path: str, params: Mapping[str, Any] | None = None) -> str:
        if _ABSOLUTE_URL.match(path):
            url = path
        else:
            url = self._base_url + path.lstrip("/")
        query = {key: value for key, value in (params or {}).items() if value is not None}
        if query:
            separator = "&" if "?" in url else "?"
            url = f"{url}{separator}{urlencode(query, doseq=True)}"
        return url

    def build(self, path: str, options: FetchOptions | None = None) -> BuiltRequest:
        options = options or FetchOptions()
        headers = normalize_headers(options.headers)

        self._apply_accept(headers, options.accept)
        self._apply_user_agent(headers)
        self._apply_auth(headers, as_user=options.as_user, user_api_key=options.user_api_key)

        body = options.body_factory() if options.body_factory is not None else options.body
        content, content_type = self._resolve_body(body, options)
        if content_type and not has_header(headers, "Content-Type"):
            headers["Content-Type"] = content_type

        return BuiltRequest(
            url=self.build_url(path, options.params),
            method=(options.method or "GET").upper(),
            headers=headers,
            content=content,
            timeout_ms=self._effective_timeout(options.timeout_ms),
        )

    def _effective_timeout(self, timeout_ms: float | None) -> float:
        if (
            isinstance(timeout_ms, (int, float))
            and not isinstance(timeout_ms, bool)
            and math.isfinite(timeout_ms)
            and timeout_ms > 0
        ):
            return timeout_ms
        return self._default_timeout_ms

    def _apply_accept(self, headers: dict[str, str], accept: str | None) -> None:
        if accept is None or has_header(headers, "Accept"):
            return
        headers["Accept"] = accept

    def _apply_user_agent(self, headers: dict[str, str]) -> None:
        if self._user_agent and not has_header(headers, "User-Agent"):
            headers["User-Agent"] = self._user_agent

    def _apply_auth(
        self,
        headers: dict[str, str],
        *,
        as_user: str | None,
        user_api_key: str | None,
    ) -> None:
        preset_user_key = has_header(headers, USER_API_KEY_HEADER)
        if user_api_key or preset_user_key:
            if user_api_key and not preset_user_key:
                headers[USER_API_KEY_HEADER] = user_api_key
            if self._user_api_client_id and not has_header(headers, USER_API_CLIENT_ID_HEADER):
                headers[USER_API_CLIENT_ID_HEADER] = self._user_api_client_id
            return
        if not has_header(headers, API_KEY_HEADER):
            headers[API_KEY_HEADER] = self._system_api_key
        if not has_header(headers, API_USERNAME_HEADER):
            headers[API_USERNAME_HEADER] = as_user or self._system_username

    def _resolve_body(self, body: Any, options: FetchOptions) -> tuple[Any, str | None]:
        if body is None:
            return None, None
        if options.body_serializer is not None:
            return options.body_serializer(body), None
        if (
            options.body_mode == "json"
            and not isinstance(body, _PASSTHROUGH_BODIES)
            and not _is_file_like(body)
        ):
            return orjson.dumps(body), "application/json"
        return body, None
