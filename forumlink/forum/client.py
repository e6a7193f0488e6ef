"""Forum API client built on the shared transport."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable
from urllib.parse import quote, urlencode

import httpx

from ..transport.client import RetryHooks, Transport, TransportSettings
from ..transport.errors import ApiError, is_retryable
from ..transport.events import RequestObserver
from ..transport.request import FetchOptions
from ..transport.retry import RetryPolicies, RetryPolicy, compute_delay_ms
from .models import (
    Category,
    CategoryDetail,
    ForumUser,
    MalformedResponseError,
    MultipartPresign,
    Post,
    PresignedUpload,
    SearchResult,
    SiteInfo,
    Tag,
    TagGroup,
    Topic,
    Upload,
    UploadRequest,
    UserProfile,
    normalize_permissions,
)

logger = logging.getLogger(__name__)

AUTH_PATH = "/user-api-key/new"
DEFAULT_UPLOAD_TYPE = "composer"
# Tried in order; the first that answers 2xx marks the forum healthy.
HEALTH_CHECKS: tuple[tuple[str, str, str | None], ...] = (
    ("/site/status", "HEAD", None),
    ("/site/status", "GET", None),
    ("/site.json", "GET", "application/json"),
)
HEALTH_CHECK_TIMEOUT_MS = 2000


def _without_none(body: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in body.items() if value is not None}


@dataclass(frozen=True)
class KeyValidation:
    valid: bool
    user: ForumUser | None = None
    error: str | None = None
    retryable: bool = False


@dataclass(frozen=True)
class HealthCheck:
    healthy: bool
    checked_at: datetime
    endpoint: str | None = None
    elapsed_ms: float = 0.0
    timeout_ms: float = 0.0


class ForumClient:
    def __init__(
        self,
        settings: TransportSettings,
        policies: RetryPolicies | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        observer: RequestObserver | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._transport = Transport(
            settings,
            policies,
            http_client=http_client,
            observer=observer,
            sleep=sleep,
        )
        self._hooks = RetryHooks(should_retry=self.should_retry, compute_delay_ms=self.compute_delay_ms)
        self._last_health: HealthCheck | None = None

    async def close(self) -> None:
        await self._transport.close()

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def last_health(self) -> HealthCheck | None:
        return self._last_health

    def should_retry(self, error: BaseException) -> bool:
        return is_retryable(error)

    def compute_delay_ms(self, error: BaseException, attempt: int, policy: RetryPolicy) -> int:
        return compute_delay_ms(error, attempt, policy)

    async def fetch(self, path: str, options: FetchOptions | None = None) -> Any:
        return await self._transport.fetch(path, options, self._hooks)

    async def _call(self, action: str, path: str, options: FetchOptions | None = None) -> Any:
        try:
            return await self.fetch(path, options)
        except ApiError as exc:
            raise exc.with_context(f"{action} failed") from exc

    def build_auth_url(
        self,
        *,
        client_id: str,
        application_name: str,
        nonce: str,
        public_key: str,
        scopes: str | Iterable[str],
    ) -> str:
        if not isinstance(scopes, str):
            scopes = ",".join(scopes)
        query = urlencode(
            [
                ("client_id", client_id),
                ("application_name", application_name),
                ("nonce", nonce),
                ("scopes", scopes.strip() or "read,write"),
                ("public_key", public_key),
            ],
            quote_via=quote,
        )
        return f"{self._transport.build_url(AUTH_PATH)}?{query}"

    async def check_health(self, timeout_ms: float | None = None) -> bool:
        """Try each health endpoint in turn and remember the outcome in ``last_health``."""
        if not timeout_ms or timeout_ms <= 0:
            timeout_ms = min(self._transport.settings.default_timeout_ms, HEALTH_CHECK_TIMEOUT_MS)
        started = time.monotonic()
        endpoint = None
        for path, method, accept in HEALTH_CHECKS:
            try:
                await self.fetch(
                    path,
                    FetchOptions(method=method, accept=accept, timeout_ms=timeout_ms),
                )
            except Exception as exc:
                logger.debug("Health check failed %s %s: %s", method, path, exc)
                continue
            logger.debug("Health check succeeded %s %s", method, path)
            endpoint = f"{method} {path}"
            break
        else:
            logger.warning("All health checks failed (timeout %sms)", timeout_ms)
        self._last_health = HealthCheck(
            healthy=endpoint is not None,
            checked_at=datetime.now(timezone.utc),
            endpoint=endpoint,
            elapsed_ms=round((time.monotonic() - started) * 1000, 1),
            timeout_ms=timeout_ms,
        )
        return self._last_health.healthy

    # Users ------------------------------------------------------------------

    async def get_current_user(self, user_api_key: str) -> ForumUser:
        data = await self._call(
            "Get current user",
            "/session/current.json",
            FetchOptions(user_api_key=user_api_key),
        )
        if not isinstance(data, dict) or not data.get("current_user"):
            raise MalformedResponseError("Empty or invalid user response")
        return ForumUser.from_payload(data["current_user"])

    async def validate_user_api_key(self, user_api_key: str) -> KeyValidation:
        if not isinstance(user_api_key, str) or not user_api_key.strip():
            return KeyValidation(valid=False, error="API key invalid: User API key is required")
        try:
            data = await self.fetch(
                "/session/current.json",
                FetchOptions(user_api_key=user_api_key),
            )
        except Exception as exc:
            return KeyValidation(
                valid=False,
                error=f"API key invalid: {exc}",
                retryable=is_retryable(exc),
            )
        if not isinstance(data, dict) or not data.get("current_user"):
            return KeyValidation(valid=False, error="Invalid response: no current_user")
        try:
            user = ForumUser.from_payload(data["current_user"])
        except MalformedResponseError:
            return KeyValidation(valid=False, error="Invalid response: malformed current_user")
        return KeyValidation(valid=True, user=user)

    async def get_user(self, username: str) -> UserProfile:
        data = await self._call("Get user", f"/u/{quote(username, safe='')}.json")
        if not isinstance(data, dict) or not data.get("user"):
            raise MalformedResponseError("Empty user response")
        return UserProfile.from_payload(data["user"])

    # Posts and topics -------------------------------------------------------

    async def get_post(self, post_id: int, include_raw: bool = False) -> Post:
        data = await self._call(
            "Get post",
            f"/posts/{int(post_id)}.json",
            FetchOptions(params={"include_raw": "true"} if include_raw else None),
        )
        return Post.from_payload(data, include_raw=include_raw)

    async def create_post(
        self,
        raw: str,
        *,
        topic_id: int | None = None,
        title: str | None = None,
        category: int | None = None,
        as_user: str | None = None,
        user_api_key: str | None = None,
    ) -> Post:
        if topic_id is None and not title:
            raise ValueError("title is required when creating a new topic")
        body: dict[str, Any] = {"raw": raw}
        if topic_id is not None:
            body["topic_id"] = topic_id
        if title:
            body["title"] = title
        if category is not None:
            body["category"] = category
        data = await self._call(
            "Create post",
            "/posts.json",
            FetchOptions(method="POST", body=body, as_user=as_user, user_api_key=user_api_key),
        )
        return Post.from_payload(data, include_raw=True)

    async def get_topic(self, topic_id: int) -> Topic:
        data = await self._call("Get topic", f"/t/{int(topic_id)}.json")
        return Topic.from_payload(data)

    async def search(self, query: str, page: int = 1) -> SearchResult:
        query = (query or "").strip()
        if not query:
            raise ValueError("search query is required")
        data = await self._call(
            "Search",
            "/search.json",
            FetchOptions(params={"q": query, "page": max(1, int(page))}),
        )
        return SearchResult.from_payload(data)

    # Uploads ----------------------------------------------------------------

    def build_upload_request(
        self,
        *,
        upload_type: str | None = None,
        username: str | None = None,
        user_api_key: str | None = None,
    ) -> UploadRequest:
        """Describe the multipart POST a caller sends to ``/uploads.json`` itself."""
        request = self._transport.build_request(
            "/uploads.json",
            FetchOptions(method="POST", as_user=username, user_api_key=user_api_key),
        )
        return UploadRequest(
            url=request.url,
            method=request.method,
            headers=dict(request.headers),
            fields={"type": upload_type or DEFAULT_UPLOAD_TYPE},
        )

    async def presign_upload(
        self,
        filename: str,
        byte_size: int,
        *,
        content_type: str | None = None,
        upload_type: str | None = None,
        user_api_key: str | None = None,
    ) -> PresignedUpload:
        filename = (filename or "").strip()
        if not filename:
            raise ValueError("filename is required")
        if isinstance(byte_size, bool) or not isinstance(byte_size, int) or byte_size <= 0:
            raise ValueError("byte_size must be a positive integer")
        body = _without_none(
            {
                "filename": filename,
                "file_name": filename,
                "filesize": byte_size,
                "file_size": byte_size,
                "content_type": content_type,
                "upload_type": upload_type or DEFAULT_UPLOAD_TYPE,
            }
        )
        data = await self._call(
            "Presign upload",
            "/uploads/generate-presigned-put",
            FetchOptions(method="POST", body=body, user_api_key=user_api_key),
        )
        return PresignedUpload.from_payload(data)

    async def batch_presign_multipart_upload(
        self,
        unique_identifier: str,
        part_numbers: Iterable[int],
        *,
        upload_id: str | None = None,
        key: str | None = None,
        content_type: str | None = None,
        user_api_key: str | None = None,
    ) -> MultipartPresign:
        numbers = list(part_numbers)
        if not numbers:
            raise ValueError("part_numbers must not be empty")
        if any(isinstance(n, bool) or not isinstance(n, int) or n < 1 for n in numbers):
            raise ValueError("part_numbers must be positive integers")
        if len(set(numbers)) != len(numbers):
            raise ValueError("part_numbers must be unique")
        body = _without_none(
            {
                "unique_identifier": unique_identifier,
                "upload_id": upload_id,
                "key": key,
                "part_numbers": numbers,
                "content_type": content_type,
            }
        )
        data = await self._call(
            "Batch presign multipart upload",
            "/uploads/batch-presign-multipart",
            FetchOptions(method="POST", body=body, user_api_key=user_api_key),
        )
        return MultipartPresign.from_payload(data)

    async def complete_multipart_upload(
        self,
        unique_identifier: str,
        upload_id: str,
        key: str,
        parts: Iterable[tuple[int, str]],
        filename: str,
        *,
        upload_type: str | None = None,
        user_api_key: str | None = None,
    ) -> Upload:
        etags = [{"part_number": number, "etag": etag} for number, etag in parts]
        if not etags:
            raise ValueError("parts must not be empty")
        if len({part["part_number"] for part in etags}) != len(etags):
            raise ValueError("part numbers must be unique")
        filename = (filename or "").strip()
        if not filename:
            raise ValueError("filename is required")
        data = await self._call(
            "Complete multipart upload",
            "/uploads/complete-external-upload",
            FetchOptions(
                method="POST",
                body={
                    "upload_id": upload_id,
                    "key": key,
                    "unique_identifier": unique_identifier,
                    "parts": etags,
                    "filename": filename,
                    "upload_type": upload_type or DEFAULT_UPLOAD_TYPE,
                },
                user_api_key=user_api_key,
            ),
        )
        if not isinstance(data, dict) or not data.get("upload"):
            raise MalformedResponseError("Empty upload completion response")
        return Upload.from_payload(data["upload"])

    async def abort_multipart_upload(
        self,
        unique_identifier: str,
        upload_id: str,
        key: str,
        *,
        user_api_key: str | None = None,
    ) -> bool:
        data = await self._call(
            "Abort multipart upload",
            "/uploads/abort-multipart",
            FetchOptions(
                method="POST",
                body={"unique_identifier": unique_identifier, "upload_id": upload_id, "key": key},
                user_api_key=user_api_key,
            ),
        )
        if not isinstance(data, dict):
            return False
        for flag in ("aborted", "success"):
            if data.get(flag) is not None:
                return bool(data[flag])
        return False

    # Categories, tags and site ----------------------------------------------

    async def get_categories(self) -> list[Category]:
        data = await self._call("Get categories", "/categories.json")
        if not data:
            return []
        listing = data.get("category_list") if isinstance(data, dict) else None
        categories = listing.get("categories") if isinstance(listing, dict) else None
        if not isinstance(categories, list):
            raise MalformedResponseError("Malformed category response")
        return [Category.from_payload(item) for item in categories]

    async def get_category(self, id_or_slug: int | str) -> CategoryDetail:
        data = await self._call(
            "Get category", f"/c/{quote(str(id_or_slug), safe='')}/show.json"
        )
        if not isinstance(data, dict) or not data:
            raise MalformedResponseError("Empty category response")
        listing = data.get("subcategory_list")
        if isinstance(listing, dict):
            listing = listing.get("categories")
        if not isinstance(listing, list):
            listing = []
        return CategoryDetail(
            category=Category.from_payload(data.get("category")),
            subcategories=[Category.from_payload(item) for item in listing],
        )

    async def get_tags(self) -> list[Tag]:
        data = await self._call("Get tags", "/tags.json")
        if not data:
            return []
        tags = data.get("tags") if isinstance(data, dict) else None
        if not isinstance(tags, list):
            raise MalformedResponseError("Malformed tags response")
        return [Tag.from_payload(item) for item in tags]

    async def get_tag(self, name: str) -> Tag:
        data = await self._call("Get tag", f"/tags/{quote(name, safe='')}.json")
        if not isinstance(data, dict) or not data.get("tag"):
            raise MalformedResponseError("Empty tag response")
        return Tag.from_payload(data["tag"])

    async def get_tag_groups(self) -> list[TagGroup]:
        data = await self._call("Get tag groups", "/tag_groups.json")
        if not data:
            return []
        groups = data.get("tag_groups") if isinstance(data, dict) else None
        if not isinstance(groups, list):
            raise MalformedResponseError("Malformed tag groups response")
        return [TagGroup.from_payload(item) for item in groups]

    async def get_tag_group(self, tag_group_id: int) -> TagGroup:
        data = await self._call("Get tag group", f"/tag_groups/{int(tag_group_id)}.json")
        return self._tag_group(data)

    async def create_tag_group(
        self,
        name: str,
        *,
        tag_names: Iterable[str] = (),
        parent_tag_names: Iterable[str] = (),
        one_per_topic: bool | None = None,
        permissions: dict[str, Any] | None = None,
    ) -> TagGroup:
        group = {
            "name": name,
            "tag_names": list(tag_names),
            "parent_tag_names": list(parent_tag_names),
            "one_per_topic": one_per_topic,
            "permissions": normalize_permissions(permissions) or None,
        }
        data = await self._call(
            "Create tag group",
            "/tag_groups.json",
            FetchOptions(method="POST", body={"tag_group": _without_none(group)}),
        )
        return self._tag_group(data)

    async def update_tag_group(
        self,
        tag_group_id: int,
        *,
        name: str | None = None,
        tag_names: Iterable[str] | None = None,
        parent_tag_names: Iterable[str] | None = None,
        one_per_topic: bool | None = None,
        permissions: dict[str, Any] | None = None,
    ) -> TagGroup:
        group = {
            "name": name,
            "tag_names": list(tag_names) if tag_names is not None else None,
            "parent_tag_names": list(parent_tag_names) if parent_tag_names is not None else None,
            "one_per_topic": one_per_topic,
            "permissions": normalize_permissions(permissions) or None,
        }
        data = await self._call(
            "Update tag group",
            f"/tag_groups/{int(tag_group_id)}.json",
            FetchOptions(method="PUT", body={"tag_group": _without_none(group)}),
        )
        return self._tag_group(data)

    @staticmethod
    def _tag_group(data: Any) -> TagGroup:
        if not isinstance(data, dict) or not data.get("tag_group"):
            raise MalformedResponseError("Empty tag group response")
        return TagGroup.from_payload(data["tag_group"])

    async def get_site_info(self) -> SiteInfo:
        data = await self._call("Get site info", "/site.json")
        if not isinstance(data, dict) or not data:
            raise MalformedResponseError("Empty site info response")
        site = data.get("site") or data
        categories = data.get("categories")
        if categories is None:
            categories = site.get("categories") if isinstance(site, dict) else None
        if categories is not None and not isinstance(categories, list):
            raise MalformedResponseError("Malformed site categories response")
        return SiteInfo.from_payload(
            site, [Category.from_payload(item) for item in categories or []]
        )

    async def get_site_basic_info(self) -> SiteInfo:
        data = await self._call("Get site basic info", "/site/basic-info.json")
        site = data.get("site") or data if isinstance(data, dict) else None
        if not site:
            raise MalformedResponseError("Empty site basic info response")
        return SiteInfo.from_payload(site)
