"""Typed records built from raw forum payloads."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from ..validation.validator import ValidationError, get_schema_registry


class MalformedResponseError(ValueError):
    """Raised when a forum payload does not have the expected shape."""


def _validated(schema: str, payload: Any, message: str) -> dict[str, Any]:
    try:
        get_schema_registry().validate(schema, payload)
    except ValidationError as exc:
        raise MalformedResponseError(f"{message}: {exc.message}") from exc
    return payload


@dataclass(frozen=True)
class ForumUser:
    id: int
    username: str
    name: str | None = None
    avatar_template: str = ""
    title: str | None = None
    trust_level: int = 0
    moderator: bool = False
    admin: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> "ForumUser":
        data = _validated("forum_user", payload, "Malformed user response")
        return cls(
            id=data["id"],
            username=data["username"],
            name=data.get("name"),
            avatar_template=data.get("avatar_template", ""),
            title=data.get("title"),
            trust_level=data.get("trust_level", 0),
            moderator=data.get("moderator", False),
            admin=data.get("admin", False),
        )


@dataclass(frozen=True)
class UserProfile(ForumUser):
    created_at: str | None = None
    last_posted_at: str | None = None
    last_seen_at: str | None = None
    post_count: int = 0
    badge_count: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "UserProfile":
        summary = ForumUser.from_payload(payload)
        return cls(
            **summary.__dict__,
            created_at=payload.get("created_at"),
            last_posted_at=payload.get("last_posted_at"),
            last_seen_at=payload.get("last_seen_at"),
            post_count=payload.get("post_count", 0),
            badge_count=payload.get("badge_count", 0),
        )


@dataclass(frozen=True)
class Post:
    id: int
    topic_id: int
    username: str
    post_number: int = 0
    name: str | None = None
    cooked: str = ""
    raw: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    reply_count: int = 0
    like_count: int = 0
    version: int = 1

    @classmethod
    def from_payload(cls, payload: Any, *, include_raw: bool = False) -> "Post":
        data = _validated("forum_post", payload, "Malformed post response")
        return cls(
            id=data["id"],
            topic_id=data["topic_id"],
            username=data["username"],
            post_number=data.get("post_number", 0),
            name=data.get("name"),
            cooked=data.get("cooked", ""),
            raw=data.get("raw") if include_raw else None,
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            reply_count=data.get("reply_count", 0),
            like_count=data.get("like_count", 0),
            version=data.get("version", 1),
        )


@dataclass(frozen=True)
class Topic:
    id: int
    title: str
    slug: str = ""
    category_id: int | None = None
    posts_count: int = 0
    reply_count: int = 0
    views: int = 0
    like_count: int = 0
    closed: bool = False
    archived: bool = False
    created_at: str | None = None
    last_posted_at: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "Topic":
        data = _validated("forum_topic", payload, "Malformed topic response")
        return cls(
            id=data["id"],
            title=data["title"],
            slug=data.get("slug", ""),
            category_id=data.get("category_id"),
            posts_count=data.get("posts_count", 0),
            reply_count=data.get("reply_count", 0),
            views=data.get("views", 0),
            like_count=data.get("like_count", 0),
            closed=data.get("closed", False),
            archived=data.get("archived", False),
            created_at=data.get("created_at"),
            last_posted_at=data.get("last_posted_at"),
        )


@dataclass(frozen=True)
class SearchPost:
    id: int
    topic_id: int
    username: str
    blurb: str = ""
    topic_title: str = ""
    post_number: int = 0
    like_count: int = 0

    @classmethod
    def from_payload(cls, payload: dict[str, Any], topic_titles: dict[int, str]) -> "SearchPost":
        topic_id = payload.get("topic_id") or 0
        return cls(
            id=payload.get("id") or 0,
            topic_id=topic_id,
            username=payload.get("username") or "",
            blurb=payload.get("blurb") or "",
            topic_title=topic_titles.get(topic_id, ""),
            post_number=payload.get("post_number") or 0,
            like_count=payload.get("like_count") or 0,
        )


@dataclass(frozen=True)
class SearchResult:
    posts: list[SearchPost] = field(default_factory=list)
    topics: list[Topic] = field(default_factory=list)
    users: list[ForumUser] = field(default_factory=list)
    more_results: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> "SearchResult":
        if not isinstance(payload, dict):
            return cls()
        topics = [Topic.from_payload(item) for item in payload.get("topics") or []]
        titles = {topic.id: topic.title for topic in topics}
        posts = [
            SearchPost.from_payload(item, titles)
            for item in payload.get("posts") or []
            if isinstance(item, dict)
        ]
        users = [ForumUser.from_payload(item) for item in payload.get("users") or []]
        grouped = payload.get("grouped_search_result") or {}
        return cls(
            posts=posts,
            topics=topics,
            users=users,
            more_results=bool(grouped.get("more_full_page_results")),
        )


def _string_headers(headers: Any) -> dict[str, str]:
    if not isinstance(headers, dict):
        return {}
    return {str(key): str(value) for key, value in headers.items() if value is not None}


def _stable_id(value: str) -> int:
    """Map a string tag id onto a positive 32-bit integer."""
    digest = 0
    for char in value:
        digest = ((digest << 5) - digest + ord(char)) & 0xFFFFFFFF
    if digest >= 0x80000000:
        digest -= 0x100000000
    return abs(digest) or 1


def normalize_permissions(permissions: Any) -> dict[str, int]:
    if not isinstance(permissions, dict):
        return {}
    normalized: dict[str, int] = {}
    for group, level in permissions.items():
        if isinstance(level, bool):
            normalized[str(group)] = int(level)
            continue
        try:
            number = float(level)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number):
            normalized[str(group)] = int(number)
    return normalized


@dataclass(frozen=True)
class UploadRequest:
    url: str
    method: str
    headers: dict[str, str]
    fields: dict[str, str]


@dataclass(frozen=True)
class Upload:
    id: int
    url: str
    short_url: str | None = None
    original_filename: str | None = None
    filesize: int | None = None
    human_filesize: str | None = None
    extension: str | None = None
    width: int | None = None
    height: int | None = None
    thumbnail_url: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "Upload":
        data = _validated("forum_upload", payload, "Malformed upload response")
        return cls(
            id=data["id"],
            url=data["url"],
            short_url=data.get("short_url") or data.get("short_path"),
            original_filename=data.get("original_filename"),
            filesize=data.get("filesize"),
            human_filesize=data.get("human_filesize"),
            extension=data.get("extension"),
            width=data.get("width"),
            height=data.get("height"),
            thumbnail_url=data.get("thumbnail_url"),
        )


@dataclass(frozen=True)
class PresignedUpload:
    upload_url: str
    key: str
    unique_identifier: str
    headers: dict[str, str] = field(default_factory=dict)
    method: str = "PUT"

    @classmethod
    def from_payload(cls, payload: Any) -> "PresignedUpload":
        if not payload:
            raise MalformedResponseError("Empty presign response")
        data = _validated(
            "forum_presigned_upload", payload, "Malformed presign response: upload_url missing"
        )
        return cls(
            upload_url=data.get("upload_url") or data["url"],
            key=data["key"],
            unique_identifier=data["unique_identifier"],
            headers=_string_headers(data.get("headers")),
        )


@dataclass(frozen=True)
class MultipartPart:
    part_number: int
    url: str
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class MultipartPresign:
    upload_id: str
    key: str
    unique_identifier: str
    parts: list[MultipartPart] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> "MultipartPresign":
        if not payload:
            raise MalformedResponseError("Empty multipart presign response")
        data = _validated("forum_multipart_presign", payload, "Malformed multipart presign response")
        parts = [
            MultipartPart(
                part_number=item["part_number"],
                url=item["url"],
                headers=_string_headers(item.get("headers")),
            )
            for item in data.get("presigned_urls") or []
        ]
        return cls(
            upload_id=data["upload_id"],
            key=data["key"],
            unique_identifier=data["unique_identifier"],
            parts=parts,
        )


@dataclass(frozen=True)
class Category:
    id: int
    name: str
    slug: str
    description: str | None = None
    color: str = ""
    topic_count: int = 0
    post_count: int = 0
    parent_category_id: int | None = None
    read_restricted: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> "Category":
        data = _validated("forum_category", payload, "Malformed category response")
        return cls(
            id=data["id"],
            name=data["name"],
            slug=data["slug"],
            description=data.get("description"),
            color=data.get("color", ""),
            topic_count=data.get("topic_count", 0),
            post_count=data.get("post_count", 0),
            parent_category_id=data.get("parent_category_id"),
            read_restricted=data.get("read_restricted", False),
        )


@dataclass(frozen=True)
class CategoryDetail:
    category: Category
    subcategories: list[Category] = field(default_factory=list)


@dataclass(frozen=True)
class Tag:
    id: int
    name: str
    topic_count: int = 0
    pm_topic_count: int = 0
    synonyms: list[str] = field(default_factory=list)
    target_tag: str | None = None
    description: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "Tag":
        data = _validated("forum_tag", payload, "Malformed tag response")
        raw_id = data["id"]
        topic_count = data.get("topic_count")
        if topic_count is None:
            topic_count = data.get("count", 0)
        return cls(
            id=raw_id if isinstance(raw_id, int) else _stable_id(raw_id),
            name=data["name"],
            topic_count=topic_count,
            pm_topic_count=data.get("pm_topic_count", 0),
            synonyms=list(data.get("synonyms") or []),
            target_tag=data.get("target_tag"),
            description=data.get("description"),
        )


@dataclass(frozen=True)
class TagGroup:
    id: int
    name: str
    tag_names: list[str] = field(default_factory=list)
    parent_tag_names: list[str] = field(default_factory=list)
    one_per_topic: bool = False
    permissions: dict[str, int] = field(default_factory=dict)
    tags: list[Tag] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> "TagGroup":
        data = _validated("forum_tag_group", payload, "Malformed tag group response")
        return cls(
            id=data["id"],
            name=data["name"],
            tag_names=list(data.get("tag_names") or []),
            parent_tag_names=list(data.get("parent_tag_names") or []),
            one_per_topic=data.get("one_per_topic", False),
            permissions=normalize_permissions(data.get("permissions")),
            tags=[Tag.from_payload(item) for item in data.get("tags") or []],
        )


@dataclass(frozen=True)
class SiteInfo:
    title: str = ""
    description: str | None = None
    logo_url: str | None = None
    mobile_logo_url: str | None = None
    favicon_url: str | None = None
    contact_email: str | None = None
    canonical_hostname: str | None = None
    default_locale: str | None = None
    categories: list[Category] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any, categories: list[Category] | None = None) -> "SiteInfo":
        source = payload if isinstance(payload, dict) else {}
        data = _validated("forum_site", source, "Malformed site info response")
        return cls(
            title=data.get("title", ""),
            description=data.get("description"),
            logo_url=data.get("logo_url"),
            mobile_logo_url=data.get("mobile_logo_url"),
            favicon_url=data.get("favicon_url"),
            contact_email=data.get("contact_email"),
            canonical_hostname=data.get("canonical_hostname"),
            default_locale=data.get("default_locale"),
            categories=list(categories or []),
        )
