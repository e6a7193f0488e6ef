"""Retry policies and the retry loop shared by every forum call."""

from __future__ import annotations

import asyncio
import math
import random
import time
from dataclasses import dataclass, fields
from typing import Any, Awaitable, Callable, Mapping, TypeVar

from .events import RequestEventLogger

T = TypeVar("T")

_READ_METHODS = frozenset({"GET", "HEAD"})


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 0
    base_delay_ms: int = 250
    max_delay_ms: int = 5000
    jitter_ratio: float = 0.2


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass(frozen=True)
class RetryPolicies:
    default: RetryPolicy
    reads: RetryPolicy
    writes: RetryPolicy


def _valid_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value >= 0


def normalize_retry_policy(
    overrides: Mapping[str, Any] | RetryPolicy | None,
    base: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> RetryPolicy:
    """Merge ``overrides`` onto ``base`` field by field.

    Values that are not finite, non-negative numbers keep the base value.
    """
    if overrides is None:
        return base
    if isinstance(overrides, RetryPolicy):
        overrides = {f.name: getattr(overrides, f.name) for f in fields(RetryPolicy)}
    merged: dict[str, Any] = {}
    for field in fields(RetryPolicy):
        value = overrides.get(field.name)
        fallback = getattr(base, field.name)
        if not _valid_number(value):
            merged[field.name] = fallback
        elif field.name == "jitter_ratio":
            merged[field.name] = float(value)
        else:
            merged[field.name] = int(value)
    return RetryPolicy(**merged)


def build_retry_policies(
    default: RetryPolicy = DEFAULT_RETRY_POLICY,
    overrides: Mapping[str, Mapping[str, Any] | None] | None = None,
) -> RetryPolicies:
    overrides = overrides or {}
    merged_default = normalize_retry_policy(overrides.get("default"), default)
    return RetryPolicies(
        default=merged_default,
        reads=normalize_retry_policy(overrides.get("reads"), merged_default),
        writes=normalize_retry_policy(overrides.get("writes"), merged_default),
    )


def resolve_retry_policy(
    method: str,
    policies: RetryPolicies,
    overrides: Mapping[str, Any] | None = None,
) -> RetryPolicy:
    base = policies.reads if method.upper() in _READ_METHODS else policies.writes
    return normalize_retry_policy(overrides, base) if overrides else base


def compute_delay_ms(
    error: BaseException,
    attempt: int,
    policy: RetryPolicy,
    rand: Callable[[], float] = random.random,
) -> int:
    """Delay before the next attempt.

    A server-provided ``retry_after_ms`` wins over exponential backoff and is
    only capped by ``max_delay_ms``.
    """
    retry_after_ms = getattr(error, "retry_after_ms", None)
    if isinstance(retry_after_ms, (int, float)) and not isinstance(retry_after_ms, bool):
        return int(min(max(0, retry_after_ms), policy.max_delay_ms))
    capped = min(policy.base_delay_ms * (2**attempt), policy.max_delay_ms)
    jitter = capped * policy.jitter_ratio
    offset = (rand() * 2 - 1) * jitter
    return max(0, round(capped + offset))


class RetryExecutor:
    def __init__(
        self,
        events: RequestEventLogger,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._events = events
        self._sleep = sleep

    async def run(
        self,
        attempt_fn: Callable[[int], Awaitable[T]],
        *,
        url: str,
        method: str,
        policy: RetryPolicy,
        should_retry: Callable[[BaseException], bool],
        compute_delay: Callable[[BaseException, int, RetryPolicy], int] = compute_delay_ms,
    ) -> T:
        attempt = 0
        while True:
            started = time.monotonic()
            try:
                result = await attempt_fn(attempt)
            except Exception as exc:
                if attempt < policy.max_retries and should_retry(exc):
                    delay_ms = compute_delay(exc, attempt, policy)
                    self._events.log(
                        url=url,
                        method=method,
                        attempt=attempt,
                        outcome="retry",
                        status=getattr(exc, "status", None),
                        retry_delay_ms=delay_ms,
                        error=exc,
                    )
                    if delay_ms > 0:
                        await self._sleep(delay_ms / 1000)
                    attempt += 1
                    continue
                self._events.log(
                    url=url,
                    method=method,
                    attempt=attempt,
                    outcome="fail",
                    status=getattr(exc, "status", None),
                    error=exc,
                )
                raise
            self._events.log(
                url=url,
                method=method,
                attempt=attempt,
                outcome="success",
                duration_ms=round((time.monotonic() - started) * 1000, 3),
                status=getattr(result, "status", None),
            )
            return result
