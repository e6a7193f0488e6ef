"""Short-lived nonce -> (client, private key) bindings for the link handshake."""

from __future__ import annotations

import logging
import math
import secrets
import time
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Literal, Protocol

logger = logging.getLogger(__name__)

DEFAULT_NONCE_TTL_MS = 10 * 60 * 1000

Scope = Literal["client", "global"]


class LimitStrategy(str, Enum):
    REJECT_NEW = "rejectNew"
    EVICT_OLDEST = "evictOldest"


class NonceValidationError(ValueError):
    """Raised when a client id or private key is missing."""


class NonceCapacityError(Exception):
    """Raised when a per-client or global nonce limit rejects a new nonce."""

    def __init__(self, *, limit_type: Scope, limit: int, client_id: str | None = None) -> None:
        scope = f"client {client_id or 'unknown'}" if limit_type == "client" else "global"
        super().__init__(f"Nonce capacity exceeded ({scope} limit: {limit})")
        self.limit_type = limit_type
        self.limit = limit
        self.client_id = client_id


@dataclass(frozen=True)
class NonceRecord:
    client_id: str
    private_key: str
    created_at: float


@dataclass(frozen=True)
class EvictionEvent:
    scope: Scope
    count: int
    client_id: str | None = None


class EvictionObserver(Protocol):
    def on_evict(self, event: EvictionEvent) -> None: ...


class NoopEvictionObserver:
    def on_evict(self, event: EvictionEvent) -> None:
        return None


class LoggingEvictionObserver:
    def on_evict(self, event: EvictionEvent) -> None:
        logger.info(
            "Evicted %d nonce(s) scope=%s client=%s",
            event.count,
            event.scope,
            event.client_id or "-",
        )


def _epoch_ms() -> float:
    return time.time() * 1000


def _normalize_ttl(ttl_ms: float | None) -> float:
    if isinstance(ttl_ms, (int, float)) and not isinstance(ttl_ms, bool):
        if math.isfinite(ttl_ms) and ttl_ms > 0:
            return ttl_ms
    return DEFAULT_NONCE_TTL_MS


def _normalize_limit(limit: float | None) -> int | None:
    if isinstance(limit, (int, float)) and not isinstance(limit, bool):
        if math.isfinite(limit) and limit > 0:
            return int(limit)
    return None


def _normalize_client_id(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


class NonceStore:
    """In-memory, capacity-bounded store of handshake nonces.

    Mutations are synchronous and rely on the single event loop for
    atomicity. Expired records are dropped lazily on every read as well as
    by :meth:`cleanup`.
    """

    def __init__(
        self,
        ttl_ms: float | None = DEFAULT_NONCE_TTL_MS,
        *,
        max_per_client: float | None = None,
        max_total: float | None = None,
        per_client_strategy: LimitStrategy | str = LimitStrategy.REJECT_NEW,
        global_strategy: LimitStrategy | str = LimitStrategy.REJECT_NEW,
        observer: EvictionObserver | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._ttl = _normalize_ttl(ttl_ms)
        self._max_per_client = _normalize_limit(max_per_client)
        self._max_total = _normalize_limit(max_total)
        self._per_client_strategy = LimitStrategy(per_client_strategy)
        self._global_strategy = LimitStrategy(global_strategy)
        self._observer: EvictionObserver = observer or NoopEvictionObserver()
        self._clock = clock or _epoch_ms
        self._records: dict[str, NonceRecord] = {}
        self._client_counts: Counter[str] = Counter()

    @property
    def ttl_ms(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._records)

    def create(self, client_id: str, private_key: str) -> str:
        normalized_client = _normalize_client_id(client_id)
        if normalized_client is None:
            raise NonceValidationError("clientId is required")
        normalized_key = private_key.strip() if isinstance(private_key, str) else ""
        if not normalized_key:
            raise NonceValidationError("privateKey is required")
        self._evict_expired()
        self._ensure_capacity(normalized_client)
        nonce = secrets.token_hex(32)
        self._records[nonce] = NonceRecord(
            client_id=normalized_client,
            private_key=normalized_key,
            created_at=self._clock(),
        )
        self._client_counts[normalized_client] += 1
        return nonce

    def get(self, nonce: str) -> NonceRecord | None:
        record = self._records.get(nonce)
        if record is None:
            return None
        if self._is_expired(record, self._clock()):
            self._remove(nonce)
            return None
        return record

    def verify(self, nonce: str, client_id: str) -> bool:
        record = self.get(nonce)
        if record is None:
            return False
        normalized_client = _normalize_client_id(client_id)
        return normalized_client is not None and record.client_id == normalized_client

    def get_private_key(self, nonce: str) -> str | None:
        record = self.get(nonce)
        return record.private_key if record else None

    def get_expiration(self, nonce: str) -> float | None:
        record = self.get(nonce)
        return record.created_at + self._ttl if record else None

    def get_next_expiration(self, client_id: str | None = None) -> float | None:
        self._evict_expired()
        scope = _normalize_client_id(client_id)
        expirations = [
            record.created_at + self._ttl
            for record in self._records.values()
            if scope is None or record.client_id == scope
        ]
        return min(expirations, default=None)

    def get_retry_after_ms(self, client_id: str | None = None) -> float | None:
        next_expiration = self.get_next_expiration(client_id)
        if next_expiration is None:
            return None
        return max(0, next_expiration - self._clock())

    def consume(self, nonce: str) -> None:
        self._remove(nonce)

    def cleanup(self) -> int:
        return self._evict_expired()

    def stats(self) -> dict[str, int]:
        self._evict_expired()
        return {"total": len(self._records), "clients": len(self._client_counts)}

    # Capacity ---------------------------------------------------------------

    def _ensure_capacity(self, client_id: str) -> None:
        # Under REJECT_NEW existing nonces are never evicted.
        if self._max_per_client is not None:
            if self._client_counts[client_id] >= self._max_per_client:
                evicted = (
                    self._per_client_strategy is LimitStrategy.EVICT_OLDEST
                    and self._evict_down_to(
                        self._max_per_client - 1,
                        scope="client",
                        client_id=client_id,
                    )
                )
                if not evicted:
                    raise NonceCapacityError(
                        limit_type="client",
                        limit=self._max_per_client,
                        client_id=client_id,
                    )
        if self._max_total is not None:
            if len(self._records) >= self._max_total:
                evicted = (
                    self._global_strategy is LimitStrategy.EVICT_OLDEST
                    and self._evict_down_to(self._max_total - 1, scope="global")
                )
                if not evicted:
                    raise NonceCapacityError(limit_type="global", limit=self._max_total)

    def _evict_down_to(self, max_count: int, *, scope: Scope, client_id: str | None = None) -> bool:
        if max_count < 0:
            return False

        def count() -> int:
            return self._client_counts[client_id] if scope == "client" else len(self._records)

        evicted = 0
        while count() > max_count:
            if not self._evict_oldest(client_id if scope == "client" else None):
                break
            evicted += 1
        if evicted:
            self._notify(EvictionEvent(scope=scope, count=evicted, client_id=client_id))
        return evicted > 0

    def _evict_oldest(self, client_id: str | None) -> bool:
        candidates = [
            (record.created_at, nonce)
            for nonce, record in self._records.items()
            if client_id is None or record.client_id == client_id
        ]
        if not candidates:
            return False
        _, oldest = min(candidates, key=lambda item: item[0])
        self._remove(oldest)
        return True

    def _notify(self, event: EvictionEvent) -> None:
        try:
            self._observer.on_evict(event)
        except Exception:
            logger.debug("Nonce eviction observer failed", exc_info=True)

    # Bookkeeping ------------------------------------------------------------

    def _is_expired(self, record: NonceRecord, now: float) -> bool:
        return now - record.created_at > self._ttl

    def _remove(self, nonce: str) -> None:
        record = self._records.pop(nonce, None)
        if record is None:
            return
        self._client_counts[record.client_id] -= 1
        if self._client_counts[record.client_id] <= 0:
            del self._client_counts[record.client_id]

    def _evict_expired(self) -> int:
        now = self._clock()
        expired = [nonce for nonce, record in self._records.items() if self._is_expired(record, now)]
        for nonce in expired:
            self._remove(nonce)
        return len(expired)
