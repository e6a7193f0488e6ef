"""Expose currently loaded server config for debugging, with secrets redacted."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Request

from ..config import ServerConfig

router = APIRouter(prefix="/admin", tags=["admin"])

REDACTED = "***"


def _get_config(request: Request) -> ServerConfig:
    return request.app.state.server_config


def redact_config(config: ServerConfig) -> dict:
    forum = asdict(config.forum)
    forum["api_key"] = REDACTED if config.forum.api_key else ""
    return {
        "forum": forum,
        "nonces": asdict(config.nonces),
        "retry": asdict(config.retry),
        "scopes": list(config.scopes),
    }


@router.get("/config")
async def config(request: Request, config: ServerConfig = Depends(_get_config)) -> dict:
    return {
        **redact_config(config),
        "schemas": request.app.state.schema_registry.names,
        "version": request.app.version,
    }
