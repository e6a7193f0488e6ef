"""Admin view of forum reachability and nonce pressure."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Query, Request

from ..forum.client import ForumClient, HealthCheck

router = APIRouter(prefix="/admin", tags=["admin"])


def forum_status(check: HealthCheck | None) -> str:
    if check is None:
        return "unchecked"
    return "reachable" if check.healthy else "unreachable"


def describe_check(check: HealthCheck | None) -> dict[str, Any] | None:
    if check is None:
        return None
    return {
        "healthy": check.healthy,
        "checked_at": check.checked_at.isoformat(),
        "endpoint": check.endpoint,
        "elapsed_ms": check.elapsed_ms,
        "timeout_ms": check.timeout_ms,
    }


@router.get("/health")
async def health(
    request: Request,
    refresh: bool = Query(False, description="Run a forum health check before answering"),
) -> dict[str, Any]:
    state = request.app.state
    forum: ForumClient = state.forum_client
    if refresh:
        await forum.check_health()
    check = forum.last_health

    start_time = getattr(state, "start_time", None)
    uptime = int((datetime.now(timezone.utc) - start_time).total_seconds()) if start_time else 0
    return {
        # Degraded only once a check has actually failed.
        "status": "degraded" if check is not None and not check.healthy else "healthy",
        "uptime_seconds": uptime,
        "version": request.app.version,
        "forum": {
            "base_url": forum.transport.normalized_base_url(),
            "status": forum_status(check),
            "last_check": describe_check(check),
        },
        "nonces": state.nonce_store.stats(),
    }
