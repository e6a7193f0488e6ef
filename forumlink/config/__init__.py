"""Configuration helpers for the forum link server."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from ..links.nonces import DEFAULT_NONCE_TTL_MS, LimitStrategy
from ..transport.errors import DEFAULT_BODY_SNIPPET_LENGTH
from ..transport.retry import RetryPolicies, build_retry_policies

_DEFAULT_SERVER_CONFIG = Path(__file__).resolve().parent / "server.yaml"
_SCOPE_PATTERN = re.compile(r"^[a-z0-9_-]+$")
DEFAULT_SCOPES = ("read", "write")


class ConfigError(ValueError):
    """Raised when the configuration file holds an invalid value."""


@dataclass(frozen=True)
class ForumConfig:
    base_url: str
    api_key: str
    api_username: str = "system"
    user_agent: str | None = None
    user_api_client_id: str | None = None
    request_timeout_ms: int = 30_000
    body_snippet_length: int = DEFAULT_BODY_SNIPPET_LENGTH


@dataclass(frozen=True)
class NonceConfig:
    ttl_ms: int = DEFAULT_NONCE_TTL_MS
    cleanup_interval_ms: int = 5 * 60 * 1000
    max_per_client: int | None = None
    max_total: int | None = None
    per_client_strategy: LimitStrategy = LimitStrategy.REJECT_NEW
    global_strategy: LimitStrategy = LimitStrategy.REJECT_NEW


@dataclass(frozen=True)
class ServerConfig:
    forum: ForumConfig
    nonces: NonceConfig
    retry: RetryPolicies
    scopes: tuple[str, ...]


def normalize_scopes(value: str | Iterable[str] | None) -> tuple[str, ...]:
    """Lowercase, deduplicate and sort user API scopes."""
    if value is None:
        return DEFAULT_SCOPES
    if isinstance(value, str):
        value = value.split(",")
    scopes = [scope.strip() for scope in value if isinstance(scope, str)]
    if any(not scope for scope in scopes):
        raise ConfigError("User API scopes cannot be blank")
    invalid = next((scope for scope in scopes if not _SCOPE_PATTERN.match(scope.lower())), None)
    if invalid:
        raise ConfigError(
            f'Invalid user API scope "{invalid}". '
            "Use lowercase letters, numbers, hyphens, or underscores."
        )
    if not scopes:
        raise ConfigError("At least one user API scope is required")
    return tuple(sorted({scope.lower() for scope in scopes}))


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    return yaml.safe_load(path.read_text()) or {}


def _positive_int(section: Mapping[str, Any], key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{key} must be a positive integer")
    return value


def _optional_limit(section: Mapping[str, Any], key: str) -> int | None:
    value = section.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(f"{key} must be a non-negative integer")
    return value


def _strategy(value: Any) -> LimitStrategy:
    try:
        return LimitStrategy(value or LimitStrategy.REJECT_NEW)
    except ValueError as exc:
        raise ConfigError(f"unknown nonce limit strategy {value!r}") from exc


def parse_server_config(data: Mapping[str, Any], env: Mapping[str, str] | None = None) -> ServerConfig:
    env = os.environ if env is None else env
    forum = data.get("forum") or {}
    nonces = data.get("nonces") or {}
    retry = data.get("retry") or {}
    strategies = nonces.get("limit_strategy") or {}

    base_url = env.get("FORUMLINK_BASE_URL") or forum.get("base_url")
    if not base_url:
        raise ConfigError("forum.base_url is required")
    api_key = env.get("FORUMLINK_API_KEY") or forum.get("api_key") or ""
    if not api_key:
        raise ConfigError("system API key is required (FORUMLINK_API_KEY)")
    snippet_length = forum.get("body_snippet_length", 500)
    if isinstance(snippet_length, bool) or not isinstance(snippet_length, int) or snippet_length < 0:
        raise ConfigError("body_snippet_length must be a non-negative integer")

    return ServerConfig(
        forum=ForumConfig(
            base_url=str(base_url),
            api_key=str(api_key),
            api_username=str(forum.get("api_username", "system")),
            user_agent=forum.get("user_agent") or None,
            user_api_client_id=forum.get("user_api_client_id") or None,
            request_timeout_ms=_positive_int(forum, "request_timeout_ms", 30_000),
            body_snippet_length=snippet_length,
        ),
        nonces=NonceConfig(
            ttl_ms=_positive_int(nonces, "ttl_ms", DEFAULT_NONCE_TTL_MS),
            cleanup_interval_ms=_positive_int(nonces, "cleanup_interval_ms", 5 * 60 * 1000),
            max_per_client=_optional_limit(nonces, "max_per_client"),
            max_total=_optional_limit(nonces, "max_total"),
            per_client_strategy=_strategy(strategies.get("per_client")),
            global_strategy=_strategy(strategies.get("global")),
        ),
        retry=build_retry_policies(overrides=retry),
        scopes=normalize_scopes(data.get("user_api_scopes")),
    )


@lru_cache(maxsize=1)
def get_server_config() -> ServerConfig:
    path = Path(os.getenv("FORUMLINK_CONFIG_PATH", _DEFAULT_SERVER_CONFIG))
    return parse_server_config(_load_yaml(path))
