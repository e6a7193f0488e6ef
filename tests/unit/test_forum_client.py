"""Unit tests for the forum API client."""

from __future__ import annotations

from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlsplit

import httpx
import orjson
import pytest

from forumlink.forum.client import ForumClient
from forumlink.forum.models import MalformedResponseError
from forumlink.transport.client import TransportSettings
from forumlink.transport.errors import ApiError
from forumlink.transport.retry import build_retry_policies

SETTINGS = TransportSettings(
    base_url="https://forum.example.com",
    system_api_key="SYSTEM-KEY",
    user_api_client_id="forumlink",
)

USER = {"id": 42, "username": "alice", "name": "Alice", "trust_level": 2, "admin": False}


class Router:
    """Maps (method, path) to canned responses and records requests."""

    def __init__(self, routes: dict[tuple[str, str], httpx.Response | Exception]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.routes.get((request.method, request.url.path))
        if outcome is None:
            return httpx.Response(404, json={"errors": ["not found"]})
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_client(router: Router, **policy_overrides) -> ForumClient:
    return ForumClient(
        SETTINGS,
        build_retry_policies(overrides=policy_overrides or None),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(router)),
        sleep=AsyncMock(),
    )


class TestAuthUrl:
    def test_build_auth_url(self):
        client = make_client(Router({}))
        url = client.build_auth_url(
            client_id="app",
            application_name="My App",
            nonce="abc",
            public_key="-----BEGIN PUBLIC KEY-----\nAAA+/=\n-----END PUBLIC KEY-----\n",
            scopes=["read", "write"],
        )
        parts = urlsplit(url)
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://forum.example.com/user-api-key/new"
        query = parse_qs(parts.query)
        assert query["client_id"] == ["app"]
        assert query["application_name"] == ["My App"]
        assert query["nonce"] == ["abc"]
        assert query["scopes"] == ["read,write"]
        assert query["public_key"][0].startswith("-----BEGIN PUBLIC KEY-----\nAAA+/=")
        assert "My%20App" in parts.query

    def test_blank_scopes_default(self):
        client = make_client(Router({}))
        url = client.build_auth_url(
            client_id="app", application_name="x", nonce="n", public_key="k", scopes="  "
        )
        assert parse_qs(urlsplit(url).query)["scopes"] == ["read,write"]


class TestCurrentUser:
    @pytest.mark.asyncio
    async def test_uses_user_api_key(self):
        router = Router({("GET", "/session/current.json"): httpx.Response(200, json={"current_user": USER})})
        user = await make_client(router).get_current_user("USER-KEY")

        assert user.username == "alice"
        assert user.id == 42
        headers = router.requests[0].headers
        assert headers["User-Api-Key"] == "USER-KEY"
        assert headers["User-Api-Client-Id"] == "forumlink"
        assert "Api-Key" not in headers

    @pytest.mark.asyncio
    async def test_missing_current_user(self):
        router = Router({("GET", "/session/current.json"): httpx.Response(200, json={})})
        with pytest.raises(MalformedResponseError):
            await make_client(router).get_current_user("USER-KEY")

    @pytest.mark.asyncio
    async def test_api_error_gets_context(self):
        router = Router({("GET", "/session/current.json"): httpx.Response(403, text="forbidden")})
        with pytest.raises(ApiError) as excinfo:
            await make_client(router).get_current_user("USER-KEY")
        assert str(excinfo.value).startswith("Get current user failed: Forum API error (GET 403)")


class TestValidateUserApiKey:
    @pytest.mark.asyncio
    async def test_valid_key(self):
        router = Router({("GET", "/session/current.json"): httpx.Response(200, json={"current_user": USER})})
        result = await make_client(router).validate_user_api_key("USER-KEY")
        assert result.valid is True
        assert result.user.username == "alice"

    @pytest.mark.asyncio
    async def test_blank_key_short_circuits(self):
        router = Router({})
        result = await make_client(router).validate_user_api_key("  ")
        assert result.valid is False
        assert result.retryable is False
        assert router.requests == []

    @pytest.mark.asyncio
    async def test_unauthorized_is_not_retryable(self):
        router = Router({("GET", "/session/current.json"): httpx.Response(401)})
        result = await make_client(router).validate_user_api_key("BAD")
        assert result.valid is False
        assert result.retryable is False
        assert result.error.startswith("API key invalid:")

    @pytest.mark.asyncio
    async def test_rate_limit_is_retryable(self):
        router = Router({("GET", "/session/current.json"): httpx.Response(429)})
        result = await make_client(router).validate_user_api_key("KEY")
        assert result.valid is False
        assert result.retryable is True

    @pytest.mark.asyncio
    async def test_missing_user_payload(self):
        router = Router({("GET", "/session/current.json"): httpx.Response(200, json={"current_user": None})})
        result = await make_client(router).validate_user_api_key("KEY")
        assert result == result.__class__(valid=False, error="Invalid response: no current_user")


class TestResources:
    @pytest.mark.asyncio
    async def test_get_user(self):
        payload = {**USER, "post_count": 9, "created_at": "2024-01-01T00:00:00Z"}
        router = Router({("GET", "/u/alice.json"): httpx.Response(200, json={"user": payload})})
        profile = await make_client(router).get_user("alice")
        assert profile.post_count == 9
        assert profile.created_at == "2024-01-01T00:00:00Z"
        assert router.requests[0].headers["Api-Key"] == "SYSTEM-KEY"

    @pytest.mark.asyncio
    async def test_get_post_with_raw(self):
        post = {"id": 5, "topic_id": 9, "username": "alice", "raw": "hello", "cooked": "<p>hello</p>"}
        router = Router({("GET", "/posts/5.json"): httpx.Response(200, json=post)})
        result = await make_client(router).get_post(5, include_raw=True)
        assert result.raw == "hello"
        assert router.requests[0].url.params["include_raw"] == "true"

    @pytest.mark.asyncio
    async def test_get_post_without_raw_drops_it(self):
        post = {"id": 5, "topic_id": 9, "username": "alice", "raw": "hello"}
        router = Router({("GET", "/posts/5.json"): httpx.Response(200, json=post)})
        result = await make_client(router).get_post(5)
        assert result.raw is None

    @pytest.mark.asyncio
    async def test_malformed_post(self):
        router = Router({("GET", "/posts/5.json"): httpx.Response(200, json={"id": "five"})})
        with pytest.raises(MalformedResponseError, match="Malformed post response"):
            await make_client(router).get_post(5)

    @pytest.mark.asyncio
    async def test_create_post_as_user(self):
        created = {"id": 11, "topic_id": 3, "username": "bob", "raw": "reply"}
        router = Router({("POST", "/posts.json"): httpx.Response(200, json=created)})
        post = await make_client(router).create_post("reply", topic_id=3, as_user="bob")
        assert post.id == 11
        request = router.requests[0]
        assert request.headers["Api-Username"] == "bob"
        assert orjson.loads(request.content) == {"raw": "reply", "topic_id": 3}

    @pytest.mark.asyncio
    async def test_create_topic_requires_title(self):
        with pytest.raises(ValueError, match="title is required"):
            await make_client(Router({})).create_post("body")

    @pytest.mark.asyncio
    async def test_get_topic_not_found(self):
        with pytest.raises(ApiError) as excinfo:
            await make_client(Router({})).get_topic(99)
        assert excinfo.value.status == 404
        assert excinfo.value.context == "Get topic failed"

    @pytest.mark.asyncio
    async def test_search(self):
        payload = {
            "posts": [{"id": 1, "topic_id": 2, "username": "alice", "blurb": "match"}],
            "topics": [{"id": 2, "title": "Hello"}],
            "users": [],
            "grouped_search_result": {"more_full_page_results": True},
        }
        router = Router({("GET", "/search.json"): httpx.Response(200, json=payload)})
        result = await make_client(router).search(" hello ", page=0)
        assert result.posts[0].topic_title == "Hello"
        assert result.more_results is True
        params = router.requests[0].url.params
        assert params["q"] == "hello"
        assert params["page"] == "1"

    @pytest.mark.asyncio
    async def test_search_requires_query(self):
        with pytest.raises(ValueError):
            await make_client(Router({})).search("   ")


class TestHealth:
    @pytest.mark.asyncio
    async def test_first_successful_check_wins(self):
        router = Router({("HEAD", "/site/status"): httpx.Response(200)})
        assert await make_client(router).check_health() is True
        assert len(router.requests) == 1
        assert "Accept" not in router.requests[0].headers or router.requests[0].headers["Accept"] == "*/*"

    @pytest.mark.asyncio
    async def test_falls_through_checks(self):
        router = Router({("GET", "/site.json"): httpx.Response(200, json={})})
        assert await make_client(router).check_health(500) is True
        assert [(r.method, r.url.path) for r in router.requests] == [
            ("HEAD", "/site/status"),
            ("GET", "/site/status"),
            ("GET", "/site.json"),
        ]

    @pytest.mark.asyncio
    async def test_all_checks_fail(self):
        request = httpx.Request("GET", "https://forum.example.com")
        router = Router(
            {
                ("HEAD", "/site/status"): httpx.ConnectError("down", request=request),
                ("GET", "/site/status"): httpx.Response(500),
                ("GET", "/site.json"): httpx.Response(503),
            }
        )
        assert await make_client(router).check_health() is False

    @pytest.mark.asyncio
    async def test_remembers_last_result(self):
        router = Router({("GET", "/site/status"): httpx.Response(200)})
        client = make_client(router)
        assert client.last_health is None

        await client.check_health(750)

        check = client.last_health
        assert check.healthy is True
        assert check.endpoint == "GET /site/status"
        assert check.timeout_ms == 750
        assert check.elapsed_ms >= 0

    @pytest.mark.asyncio
    async def test_failed_check_is_remembered(self):
        client = make_client(Router({("GET", "/site.json"): httpx.Response(500)}))
        await client.check_health()
        assert client.last_health.healthy is False
        assert client.last_health.endpoint is None
        assert client.last_health.timeout_ms == 2000


UPLOAD = {
    "id": 77,
    "url": "/uploads/default/original/1X/abc.png",
    "short_url": "upload://abc.png",
    "original_filename": "cat.png",
    "filesize": 2048,
    "width": 10,
    "height": 20,
}


class TestUploads:
    def test_build_upload_request_with_user_key(self):
        client = make_client(Router({}))
        request = client.build_upload_request(user_api_key="USER-KEY")

        assert request.url == "https://forum.example.com/uploads.json"
        assert request.method == "POST"
        assert request.fields == {"type": "composer"}
        assert request.headers["User-Api-Key"] == "USER-KEY"
        assert request.headers["User-Api-Client-Id"] == "forumlink"
        assert "Api-Key" not in request.headers

    def test_build_upload_request_as_user(self):
        request = make_client(Router({})).build_upload_request(upload_type="avatar", username="bob")
        assert request.fields == {"type": "avatar"}
        assert request.headers["Api-Username"] == "bob"

    @pytest.mark.asyncio
    async def test_presign_upload(self):
        router = Router(
            {
                ("POST", "/uploads/generate-presigned-put"): httpx.Response(
                    200,
                    json={
                        "key": "uploads/abc",
                        "url": "https://bucket.example.com/abc",
                        "headers": {"x-amz-acl": "private", "x-empty": None},
                        "unique_identifier": "uid-1",
                    },
                )
            }
        )
        presigned = await make_client(router).presign_upload(
            "cat.png", 2048, content_type="image/png", user_api_key="USER-KEY"
        )

        assert presigned.method == "PUT"
        assert presigned.upload_url == "https://bucket.example.com/abc"
        assert presigned.headers == {"x-amz-acl": "private"}
        assert presigned.unique_identifier == "uid-1"
        assert orjson.loads(router.requests[0].content) == {
            "filename": "cat.png",
            "file_name": "cat.png",
            "filesize": 2048,
            "file_size": 2048,
            "content_type": "image/png",
            "upload_type": "composer",
        }

    @pytest.mark.asyncio
    async def test_presign_prefers_upload_url(self):
        router = Router(
            {
                ("POST", "/uploads/generate-presigned-put"): httpx.Response(
                    200,
                    json={
                        "key": "k",
                        "url": "https://old.example.com",
                        "upload_url": "https://new.example.com",
                        "unique_identifier": "u",
                    },
                )
            }
        )
        presigned = await make_client(router).presign_upload("a.txt", 1)
        assert presigned.upload_url == "https://new.example.com"
        assert presigned.headers == {}

    @pytest.mark.asyncio
    async def test_presign_without_url_is_malformed(self):
        router = Router(
            {
                ("POST", "/uploads/generate-presigned-put"): httpx.Response(
                    200, json={"key": "k", "unique_identifier": "u"}
                )
            }
        )
        with pytest.raises(MalformedResponseError, match="upload_url missing"):
            await make_client(router).presign_upload("a.txt", 1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("filename, size", [("  ", 10), ("a.txt", 0), ("a.txt", True)])
    async def test_presign_rejects_bad_input(self, filename, size):
        router = Router({})
        with pytest.raises(ValueError):
            await make_client(router).presign_upload(filename, size)
        assert router.requests == []

    @pytest.mark.asyncio
    async def test_batch_presign_multipart(self):
        router = Router(
            {
                ("POST", "/uploads/batch-presign-multipart"): httpx.Response(
                    200,
                    json={
                        "upload_id": "up-1",
                        "key": "k",
                        "unique_identifier": "uid-1",
                        "presigned_urls": [
                            {"part_number": 1, "url": "https://bucket/1"},
                            {"part_number": 2, "url": "https://bucket/2", "headers": {"a": 1}},
                        ],
                    },
                )
            }
        )
        presign = await make_client(router).batch_presign_multipart_upload(
            "uid-1", [1, 2], upload_id="up-1"
        )

        assert presign.upload_id == "up-1"
        assert [part.part_number for part in presign.parts] == [1, 2]
        assert presign.parts[1].headers == {"a": "1"}
        assert orjson.loads(router.requests[0].content) == {
            "unique_identifier": "uid-1",
            "upload_id": "up-1",
            "part_numbers": [1, 2],
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("parts", [[], [0], [1, 1], [2, -3]])
    async def test_batch_presign_rejects_bad_part_numbers(self, parts):
        router = Router({})
        with pytest.raises(ValueError):
            await make_client(router).batch_presign_multipart_upload("uid", parts)
        assert router.requests == []

    @pytest.mark.asyncio
    async def test_complete_multipart_upload(self):
        router = Router(
            {
                ("POST", "/uploads/complete-external-upload"): httpx.Response(
                    200, json={"upload": UPLOAD}
                )
            }
        )
        upload = await make_client(router).complete_multipart_upload(
            "uid-1", "up-1", "k", [(1, "etag-1"), (2, "etag-2")], "cat.png", user_api_key="KEY"
        )

        assert upload.id == 77
        assert upload.short_url == "upload://abc.png"
        body = orjson.loads(router.requests[0].content)
        assert body["parts"] == [
            {"part_number": 1, "etag": "etag-1"},
            {"part_number": 2, "etag": "etag-2"},
        ]
        assert body["upload_type"] == "composer"
        assert router.requests[0].headers["User-Api-Key"] == "KEY"

    @pytest.mark.asyncio
    async def test_complete_requires_upload_in_response(self):
        router = Router({("POST", "/uploads/complete-external-upload"): httpx.Response(200, json={})})
        with pytest.raises(MalformedResponseError, match="Empty upload completion response"):
            await make_client(router).complete_multipart_upload("u", "up", "k", [(1, "e")], "a.txt")

    @pytest.mark.asyncio
    async def test_complete_rejects_duplicate_parts(self):
        with pytest.raises(ValueError, match="unique"):
            await make_client(Router({})).complete_multipart_upload(
                "u", "up", "k", [(1, "a"), (1, "b")], "a.txt"
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload, expected",
        [({"aborted": True}, True), ({"success": True}, True), ({"aborted": False, "success": True}, False)],
    )
    async def test_abort_multipart_upload(self, payload, expected):
        router = Router({("POST", "/uploads/abort-multipart"): httpx.Response(200, json=payload)})
        assert await make_client(router).abort_multipart_upload("u", "up", "k") is expected
        assert orjson.loads(router.requests[0].content) == {
            "unique_identifier": "u",
            "upload_id": "up",
            "key": "k",
        }

    @pytest.mark.asyncio
    async def test_abort_with_empty_response(self):
        router = Router({("POST", "/uploads/abort-multipart"): httpx.Response(204)})
        assert await make_client(router).abort_multipart_upload("u", "up", "k") is False

    @pytest.mark.asyncio
    async def test_upload_errors_get_context(self):
        router = Router({("POST", "/uploads/abort-multipart"): httpx.Response(403)})
        with pytest.raises(ApiError) as excinfo:
            await make_client(router).abort_multipart_upload("u", "up", "k")
        assert excinfo.value.context == "Abort multipart upload failed"


CATEGORY = {"id": 3, "name": "General", "slug": "general", "topic_count": 5}


class TestCategories:
    @pytest.mark.asyncio
    async def test_get_categories(self):
        router = Router(
            {("GET", "/categories.json"): httpx.Response(200, json={"category_list": {"categories": [CATEGORY]}})}
        )
        categories = await make_client(router).get_categories()
        assert categories[0].slug == "general"
        assert categories[0].description is None
        assert categories[0].read_restricted is False

    @pytest.mark.asyncio
    async def test_get_categories_empty_body(self):
        router = Router({("GET", "/categories.json"): httpx.Response(204)})
        assert await make_client(router).get_categories() == []

    @pytest.mark.asyncio
    async def test_get_categories_malformed(self):
        router = Router({("GET", "/categories.json"): httpx.Response(200, json={"category_list": {}})})
        with pytest.raises(MalformedResponseError, match="Malformed category response"):
            await make_client(router).get_categories()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "listing",
        [
            [{"id": 4, "name": "Child", "slug": "child", "parent_category_id": 3}],
            {"categories": [{"id": 4, "name": "Child", "slug": "child", "parent_category_id": 3}]},
        ],
    )
    async def test_get_category_with_subcategories(self, listing):
        router = Router(
            {
                ("GET", "/c/general/show.json"): httpx.Response(
                    200, json={"category": CATEGORY, "subcategory_list": listing}
                )
            }
        )
        detail = await make_client(router).get_category("general")
        assert detail.category.id == 3
        assert [child.parent_category_id for child in detail.subcategories] == [3]


class TestTags:
    @pytest.mark.asyncio
    async def test_get_tags_maps_ids_and_counts(self):
        router = Router(
            {
                ("GET", "/tags.json"): httpx.Response(
                    200,
                    json={"tags": [{"id": "ab", "name": "ab", "count": 4}, {"id": 9, "name": "nine"}]},
                )
            }
        )
        tags = await make_client(router).get_tags()
        assert tags[0].id == 3105
        assert tags[0].topic_count == 4
        assert tags[1].id == 9
        assert tags[1].topic_count == 0

    @pytest.mark.asyncio
    async def test_get_tags_malformed(self):
        router = Router({("GET", "/tags.json"): httpx.Response(200, json={"tags": "nope"})})
        with pytest.raises(MalformedResponseError, match="Malformed tags response"):
            await make_client(router).get_tags()

    @pytest.mark.asyncio
    async def test_get_tag_encodes_name(self):
        router = Router({})
        router.routes[("GET", "/tags/needs help.json")] = httpx.Response(
            200, json={"tag": {"id": 1, "name": "needs help", "synonyms": ["help"]}}
        )
        tag = await make_client(router).get_tag("needs help")
        assert tag.synonyms == ["help"]
        assert router.requests[0].url.raw_path == b"/tags/needs%20help.json"

    @pytest.mark.asyncio
    async def test_get_tag_group_normalizes_permissions(self):
        group = {
            "id": 2,
            "name": "Status",
            "tag_names": ["open"],
            "permissions": {"everyone": True, "staff": 1, "bots": "nan", "mods": "3"},
            "tags": [{"id": 5, "name": "open"}],
        }
        router = Router({("GET", "/tag_groups/2.json"): httpx.Response(200, json={"tag_group": group})})
        result = await make_client(router).get_tag_group(2)
        assert result.permissions == {"everyone": 1, "staff": 1, "mods": 3}
        assert result.tags[0].name == "open"

    @pytest.mark.asyncio
    async def test_get_tag_group_empty(self):
        router = Router({("GET", "/tag_groups/2.json"): httpx.Response(200, json={})})
        with pytest.raises(MalformedResponseError, match="Empty tag group response"):
            await make_client(router).get_tag_group(2)

    @pytest.mark.asyncio
    async def test_get_tag_groups(self):
        router = Router(
            {("GET", "/tag_groups.json"): httpx.Response(200, json={"tag_groups": [{"id": 1, "name": "A"}]})}
        )
        groups = await make_client(router).get_tag_groups()
        assert groups[0].one_per_topic is False

    @pytest.mark.asyncio
    async def test_create_tag_group_drops_empty_permissions(self):
        router = Router(
            {("POST", "/tag_groups.json"): httpx.Response(200, json={"tag_group": {"id": 7, "name": "New"}})}
        )
        group = await make_client(router).create_tag_group("New", tag_names=["a"], permissions={"x": None})
        assert group.id == 7
        assert orjson.loads(router.requests[0].content) == {
            "tag_group": {"name": "New", "tag_names": ["a"], "parent_tag_names": []}
        }

    @pytest.mark.asyncio
    async def test_update_tag_group_sends_only_changes(self):
        router = Router(
            {("PUT", "/tag_groups/7.json"): httpx.Response(200, json={"tag_group": {"id": 7, "name": "Renamed"}})}
        )
        group = await make_client(router).update_tag_group(7, name="Renamed", one_per_topic=True)
        assert group.name == "Renamed"
        assert orjson.loads(router.requests[0].content) == {
            "tag_group": {"name": "Renamed", "one_per_topic": True}
        }


class TestSite:
    @pytest.mark.asyncio
    async def test_get_site_info_with_categories(self):
        payload = {"site": {"title": "Forum", "default_locale": "en"}, "categories": [CATEGORY]}
        router = Router({("GET", "/site.json"): httpx.Response(200, json=payload)})
        site = await make_client(router).get_site_info()
        assert site.title == "Forum"
        assert site.default_locale == "en"
        assert site.logo_url is None
        assert [category.slug for category in site.categories] == ["general"]

    @pytest.mark.asyncio
    async def test_get_site_info_rejects_bad_categories(self):
        router = Router({("GET", "/site.json"): httpx.Response(200, json={"title": "x", "categories": {}})})
        with pytest.raises(MalformedResponseError, match="Malformed site categories response"):
            await make_client(router).get_site_info()

    @pytest.mark.asyncio
    async def test_get_site_basic_info(self):
        router = Router(
            {("GET", "/site/basic-info.json"): httpx.Response(200, json={"title": "Forum", "description": "d"})}
        )
        site = await make_client(router).get_site_basic_info()
        assert site.description == "d"
        assert site.categories == []
