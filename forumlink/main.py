from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, status
from jsonschema import ValidationError

from .admin import config as admin_config
from .admin import health as admin_health
from .config import ServerConfig, get_server_config
from .errors import key_validation_to_http, sanitize_error_for_log, to_http_exception
from .forum.client import ForumClient
from .links.crypto import EnvelopeCrypto
from .links.nonces import LoggingEvictionObserver, NonceStore
from .links.service import LinkService
from .transport.client import TransportSettings
from .validation.validator import SchemaRegistry, get_schema_registry

logger = logging.getLogger(__name__)


def build_transport_settings(config: ServerConfig) -> TransportSettings:
    forum = config.forum
    return TransportSettings(
        base_url=forum.base_url,
        system_api_key=forum.api_key,
        system_username=forum.api_username,
        default_timeout_ms=forum.request_timeout_ms,
        user_agent=forum.user_agent,
        user_api_client_id=forum.user_api_client_id,
        body_snippet_length=forum.body_snippet_length,
    )


def build_nonce_store(config: ServerConfig) -> NonceStore:
    nonces = config.nonces
    return NonceStore(
        nonces.ttl_ms,
        max_per_client=nonces.max_per_client,
        max_total=nonces.max_total,
        per_client_strategy=nonces.per_client_strategy,
        global_strategy=nonces.global_strategy,
        observer=LoggingEvictionObserver(),
    )


async def sweep_nonces(nonces: NonceStore, interval_ms: float) -> None:
    while True:
        await asyncio.sleep(interval_ms / 1000)
        removed = nonces.cleanup()
        if removed:
            logger.debug("Swept %d expired nonces", removed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    server_config = get_server_config()
    schema_registry = get_schema_registry()
    forum_client = ForumClient(build_transport_settings(server_config), server_config.retry)
    nonce_store = build_nonce_store(server_config)
    link_service = LinkService(
        forum=forum_client,
        nonces=nonce_store,
        crypto=EnvelopeCrypto(),
        scopes=server_config.scopes,
    )
    sweeper = asyncio.create_task(
        sweep_nonces(nonce_store, server_config.nonces.cleanup_interval_ms)
    )

    app.state.server_config = server_config
    app.state.schema_registry = schema_registry
    app.state.forum_client = forum_client
    app.state.nonce_store = nonce_store
    app.state.link_service = link_service
    app.state.start_time = datetime.now(timezone.utc)

    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
        await forum_client.close()


app = FastAPI(
    title="Forum Link Server",
    version="1.0.0",
    docs_url="/docs",
    lifespan=lifespan,
)

app.include_router(admin_health.router)
app.include_router(admin_config.router)


# Dependency helpers ---------------------------------------------------------


def get_server_settings(request: Request) -> ServerConfig:
    return request.app.state.server_config


def get_schema_service(request: Request) -> SchemaRegistry:
    return request.app.state.schema_registry


def get_forum_client(request: Request) -> ForumClient:
    return request.app.state.forum_client


def get_nonce_store(request: Request) -> NonceStore:
    return request.app.state.nonce_store


def get_link_service(request: Request) -> LinkService:
    return request.app.state.link_service


def validate_body(schemas: SchemaRegistry, schema_name: str, payload: Any) -> None:
    try:
        schemas.validate(schema_name, payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc.message)) from exc


def forum_failure(exc: Exception, action: str, nonces: NonceStore | None = None) -> HTTPException:
    logger.warning("%s failed", action, extra={"error": sanitize_error_for_log(exc)})
    return to_http_exception(exc, nonces=nonces)


# Routes ---------------------------------------------------------------------


@app.get("/", tags=["meta"])
async def root(settings: ServerConfig = Depends(get_server_settings)) -> dict[str, Any]:
    return {
        "service": "forumlink",
        "version": app.version,
        "forum": {"base_url": settings.forum.base_url},
        "nonces": {
            "ttl_ms": settings.nonces.ttl_ms,
            "max_per_client": settings.nonces.max_per_client,
            "max_total": settings.nonces.max_total,
        },
        "scopes": list(settings.scopes),
    }


@app.get("/forum/ping", tags=["forum"])
async def ping(
    timeout_ms: float | None = Query(None, gt=0),
    forum: ForumClient = Depends(get_forum_client),
) -> dict[str, Any]:
    healthy = await forum.check_health(timeout_ms)
    if not healthy:
        raise HTTPException(status_code=503, detail="Forum unreachable")
    return {"status": "ok", "version": app.version}


@app.post("/auth/initiate-link", tags=["auth"], status_code=status.HTTP_201_CREATED)
async def initiate_link(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    service: LinkService = Depends(get_link_service),
    nonces: NonceStore = Depends(get_nonce_store),
) -> dict[str, Any]:
    validate_body(schemas, "initiate_link", payload)
    try:
        invitation = await service.initiate_link(payload["client_id"], payload["application_name"])
    except Exception as exc:
        raise forum_failure(exc, "Initiate link", nonces) from exc
    return {
        "auth_url": invitation.auth_url,
        "nonce": invitation.nonce,
        "expires_at": invitation.expires_at.isoformat(),
    }


@app.post("/auth/complete-link", tags=["auth"])
async def complete_link(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    service: LinkService = Depends(get_link_service),
) -> dict[str, Any]:
    validate_body(schemas, "complete_link", payload)
    try:
        account = await service.complete_link(
            payload["nonce"], payload["payload"], payload.get("client_id")
        )
    except Exception as exc:
        raise forum_failure(exc, "Complete link") from exc
    return asdict(account)


@app.post("/auth/validate-user-api-key", tags=["auth"])
async def validate_user_api_key(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    service: LinkService = Depends(get_link_service),
) -> dict[str, Any]:
    validate_body(schemas, "validate_user_api_key", payload)
    result = await service.validate_user_api_key(payload["user_api_key"])
    if not result.valid:
        raise key_validation_to_http(result)
    return {"valid": True, "user": asdict(result.user) if result.user else None}


@app.get("/users/{username}", tags=["forum"])
async def get_user(username: str, forum: ForumClient = Depends(get_forum_client)) -> dict[str, Any]:
    try:
        user = await forum.get_user(username)
    except Exception as exc:
        raise forum_failure(exc, "Get user") from exc
    return asdict(user)


@app.get("/posts/{post_id}", tags=["forum"])
async def get_post(
    post_id: int,
    include_raw: bool = False,
    forum: ForumClient = Depends(get_forum_client),
) -> dict[str, Any]:
    try:
        post = await forum.get_post(post_id, include_raw=include_raw)
    except Exception as exc:
        raise forum_failure(exc, "Get post") from exc
    return asdict(post)


@app.post("/posts", tags=["forum"], status_code=status.HTTP_201_CREATED)
async def create_post(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    forum: ForumClient = Depends(get_forum_client),
) -> dict[str, Any]:
    validate_body(schemas, "create_post", payload)
    try:
        post = await forum.create_post(
            payload["raw"],
            topic_id=payload.get("topic_id"),
            title=payload.get("title"),
            category=payload.get("category"),
            as_user=payload.get("as_user"),
            user_api_key=payload.get("user_api_key"),
        )
    except Exception as exc:
        raise forum_failure(exc, "Create post") from exc
    return asdict(post)


@app.get("/topics/{topic_id}", tags=["forum"])
async def get_topic(topic_id: int, forum: ForumClient = Depends(get_forum_client)) -> dict[str, Any]:
    try:
        topic = await forum.get_topic(topic_id)
    except Exception as exc:
        raise forum_failure(exc, "Get topic") from exc
    return asdict(topic)


@app.get("/search", tags=["forum"])
async def search(
    q: str = Query(..., min_length=1),
    page: int = Query(1, ge=1),
    forum: ForumClient = Depends(get_forum_client),
) -> dict[str, Any]:
    try:
        result = await forum.search(q, page)
    except Exception as exc:
        raise forum_failure(exc, "Search") from exc
    return asdict(result)


# Uploads --------------------------------------------------------------------


@app.post("/uploads/prepare", tags=["uploads"])
async def prepare_upload(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    forum: ForumClient = Depends(get_forum_client),
) -> dict[str, Any]:
    # A user key is required so the returned headers never carry the system key.
    validate_body(schemas, "prepare_upload", payload)
    request = forum.build_upload_request(
        upload_type=payload.get("upload_type"),
        username=payload.get("username"),
        user_api_key=payload["user_api_key"],
    )
    return {"request": asdict(request)}


@app.post("/uploads/presign", tags=["uploads"])
async def presign_upload(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    forum: ForumClient = Depends(get_forum_client),
) -> dict[str, Any]:
    validate_body(schemas, "presign_upload", payload)
    try:
        presigned = await forum.presign_upload(
            payload["filename"],
            payload["byte_size"],
            content_type=payload.get("content_type"),
            upload_type=payload.get("upload_type"),
            user_api_key=payload.get("user_api_key"),
        )
    except Exception as exc:
        raise forum_failure(exc, "Presign upload") from exc
    return asdict(presigned)


@app.post("/uploads/multipart/presign", tags=["uploads"])
async def batch_presign_multipart_upload(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    forum: ForumClient = Depends(get_forum_client),
) -> dict[str, Any]:
    validate_body(schemas, "batch_presign_multipart", payload)
    try:
        presign = await forum.batch_presign_multipart_upload(
            payload["unique_identifier"],
            payload["part_numbers"],
            upload_id=payload.get("upload_id"),
            key=payload.get("key"),
            content_type=payload.get("content_type"),
            user_api_key=payload.get("user_api_key"),
        )
    except Exception as exc:
        raise forum_failure(exc, "Batch presign multipart upload") from exc
    return asdict(presign)


@app.post("/uploads/multipart/complete", tags=["uploads"])
async def complete_multipart_upload(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    forum: ForumClient = Depends(get_forum_client),
) -> dict[str, Any]:
    validate_body(schemas, "complete_multipart_upload", payload)
    try:
        upload = await forum.complete_multipart_upload(
            payload["unique_identifier"],
            payload["upload_id"],
            payload["key"],
            [(part["part_number"], part["etag"]) for part in payload["parts"]],
            payload["filename"],
            upload_type=payload.get("upload_type"),
            user_api_key=payload.get("user_api_key"),
        )
    except Exception as exc:
        raise forum_failure(exc, "Complete multipart upload") from exc
    return {"upload": asdict(upload)}


@app.post("/uploads/multipart/abort", tags=["uploads"])
async def abort_multipart_upload(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    forum: ForumClient = Depends(get_forum_client),
) -> dict[str, Any]:
    validate_body(schemas, "abort_multipart_upload", payload)
    try:
        aborted = await forum.abort_multipart_upload(
            payload["unique_identifier"],
            payload["upload_id"],
            payload["key"],
            user_api_key=payload.get("user_api_key"),
        )
    except Exception as exc:
        raise forum_failure(exc, "Abort multipart upload") from exc
    return {"aborted": aborted}


# Categories, tags and site --------------------------------------------------


@app.get("/categories", tags=["forum"])
async def get_categories(forum: ForumClient = Depends(get_forum_client)) -> dict[str, Any]:
    try:
        categories = await forum.get_categories()
    except Exception as exc:
        raise forum_failure(exc, "Get categories") from exc
    return {"categories": [asdict(category) for category in categories]}


@app.get("/categories/{id_or_slug}", tags=["forum"])
async def get_category(
    id_or_slug: str, forum: ForumClient = Depends(get_forum_client)
) -> dict[str, Any]:
    try:
        detail = await forum.get_category(id_or_slug)
    except Exception as exc:
        raise forum_failure(exc, "Get category") from exc
    return asdict(detail)


@app.get("/tags", tags=["forum"])
async def get_tags(forum: ForumClient = Depends(get_forum_client)) -> dict[str, Any]:
    try:
        tags = await forum.get_tags()
    except Exception as exc:
        raise forum_failure(exc, "Get tags") from exc
    return {"tags": [asdict(tag) for tag in tags]}


@app.get("/tags/{name}", tags=["forum"])
async def get_tag(name: str, forum: ForumClient = Depends(get_forum_client)) -> dict[str, Any]:
    try:
        tag = await forum.get_tag(name)
    except Exception as exc:
        raise forum_failure(exc, "Get tag") from exc
    return asdict(tag)


@app.get("/tag-groups", tags=["forum"])
async def get_tag_groups(forum: ForumClient = Depends(get_forum_client)) -> dict[str, Any]:
    try:
        groups = await forum.get_tag_groups()
    except Exception as exc:
        raise forum_failure(exc, "Get tag groups") from exc
    return {"tag_groups": [asdict(group) for group in groups]}


@app.get("/tag-groups/{tag_group_id}", tags=["forum"])
async def get_tag_group(
    tag_group_id: int, forum: ForumClient = Depends(get_forum_client)
) -> dict[str, Any]:
    try:
        group = await forum.get_tag_group(tag_group_id)
    except Exception as exc:
        raise forum_failure(exc, "Get tag group") from exc
    return asdict(group)


@app.post("/tag-groups", tags=["forum"], status_code=status.HTTP_201_CREATED)
async def create_tag_group(
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    forum: ForumClient = Depends(get_forum_client),
) -> dict[str, Any]:
    validate_body(schemas, "create_tag_group", payload)
    try:
        group = await forum.create_tag_group(
            payload["name"],
            tag_names=payload.get("tag_names", ()),
            parent_tag_names=payload.get("parent_tag_names", ()),
            one_per_topic=payload.get("one_per_topic"),
            permissions=payload.get("permissions"),
        )
    except Exception as exc:
        raise forum_failure(exc, "Create tag group") from exc
    return asdict(group)


@app.put("/tag-groups/{tag_group_id}", tags=["forum"])
async def update_tag_group(
    tag_group_id: int,
    payload: dict[str, Any] = Body(...),
    schemas: SchemaRegistry = Depends(get_schema_service),
    forum: ForumClient = Depends(get_forum_client),
) -> dict[str, Any]:
    validate_body(schemas, "update_tag_group", payload)
    try:
        group = await forum.update_tag_group(tag_group_id, **payload)
    except Exception as exc:
        raise forum_failure(exc, "Update tag group") from exc
    return asdict(group)


@app.get("/site", tags=["forum"])
async def get_site_info(
    basic: bool = False, forum: ForumClient = Depends(get_forum_client)
) -> dict[str, Any]:
    try:
        site = await (forum.get_site_basic_info() if basic else forum.get_site_info())
    except Exception as exc:
        raise forum_failure(exc, "Get site info") from exc
    return asdict(site)
