"""Per-attempt request events emitted by the retry executor."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Literal

logger = logging.getLogger(__name__)

Outcome = Literal["success", "retry", "fail"]


@dataclass(frozen=True)
class RequestLogEvent:
    path: str
    method: str
    attempt: int
    outcome: Outcome
    duration_ms: float | None = None
    status: int | None = None
    retry_delay_ms: int | None = None
    error: dict[str, str] | None = None


RequestObserver = Callable[[RequestLogEvent], None]

_MESSAGES = {
    "success": (logging.DEBUG, "Forum request completed"),
    "retry": (logging.WARNING, "Forum request retrying"),
    "fail": (logging.ERROR, "Forum request failed"),
}


def serialize_error(error: BaseException) -> dict[str, str]:
    try:
        message = str(error)
    except Exception:  # pragma: no cover - pathological __str__
        message = "[unserializable error]"
    return {"type": type(error).__name__, "message": message}


class RequestEventLogger:
    """Fans request events out to an optional observer and the module logger.

    Neither sink may raise into the request path.
    """

    def __init__(
        self,
        observer: RequestObserver | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._observer = observer
        self._log = log or logger

    def log(
        self,
        *,
        url: str,
        method: str,
        attempt: int,
        outcome: Outcome,
        duration_ms: float | None = None,
        status: int | None = None,
        retry_delay_ms: int | None = None,
        error: BaseException | None = None,
    ) -> RequestLogEvent:
        event = RequestLogEvent(
            path=url,
            method=method,
            attempt=max(1, attempt + 1),
            outcome=outcome,
            duration_ms=duration_ms,
            status=status,
            retry_delay_ms=retry_delay_ms,
            error=serialize_error(error) if error is not None else None,
        )
        if self._observer is not None:
            try:
                self._observer(event)
            except Exception:
                pass
        level, message = _MESSAGES[outcome]
        try:
            self._log.log(level, message, extra={"request": _compact(asdict(event))})
        except Exception:
            pass
        return event


def _compact(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}
