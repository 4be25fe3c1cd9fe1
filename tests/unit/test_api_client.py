"""Unit tests for the WordPress REST API client."""

import json
from collections.abc import Callable

import httpx
import pytest

from db2cms_import.api_client import APIError, RedirectionClient, WordPressClient
from db2cms_import.errors import AssetFetchError, CreationError, TermCreationError
from db2cms_import.mapper import ColumnMapper, ColumnMapping
from db2cms_import.models import RedirectRule
from db2cms_import.orchestrator import ImportOrchestrator, OrchestratorState
from db2cms_import.state import ImportState

TYPES = {
    "post": {"slug": "post", "rest_base": "posts"},
    "page": {"slug": "page", "rest_base": "pages"},
}
TAXONOMIES = {
    "category": {"slug": "category", "rest_base": "categories"},
    "post_tag": {"slug": "post_tag", "rest_base": "tags"},
}

Handler = Callable[[httpx.Request], httpx.Response]


def _client(handler: Handler, download: Handler | None = None) -> WordPressClient:
    return WordPressClient(
        base_url="http://cms.test/",
        username="admin",
        password="app-password",
        transport=httpx.MockTransport(handler),
        download_transport=httpx.MockTransport(download) if download else None,
    )


def _body(request: httpx.Request) -> dict:
    return json.loads(request.content)


def _routes(extra: dict[tuple[str, str], Handler]) -> Handler:
    """Build a handler serving types and taxonomies plus extra routes."""

    def handler(request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.path)
        if key in extra:
            return extra[key](request)
        if key == ("GET", "/wp-json/wp/v2/types"):
            return httpx.Response(200, json=TYPES)
        if key == ("GET", "/wp-json/wp/v2/taxonomies"):
            return httpx.Response(200, json=TAXONOMIES)
        return httpx.Response(404, json={"code": "rest_no_route", "message": "No route"})

    return handler


class TestRequest:
    """Tests for request plumbing and error handling."""

    @pytest.mark.asyncio
    async def test_error_message_from_body(self) -> None:
        """API errors carry the WordPress message and code."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                401, json={"code": "rest_not_logged_in", "message": "You are not logged in."}
            )

        async with _client(handler) as client:
            with pytest.raises(APIError) as exc_info:
                await client.ping()

        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "You are not logged in."
        assert exc_info.value.code == "rest_not_logged_in"

    @pytest.mark.asyncio
    async def test_basic_auth_sent(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": 1})

        async with _client(handler) as client:
            await client.ping()

        assert seen[0].url.path == "/wp-json/wp/v2/users/me"
        assert seen[0].headers["Authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_connection_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(APIError) as exc_info:
                await client.ping()

        assert exc_info.value.status_code == 0


class TestContentItems:
    """Tests for kinds and content items."""

    @pytest.mark.asyncio
    async def test_kind_exists(self) -> None:
        async with _client(_routes({})) as client:
            assert await client.kind_exists("post") is True
            assert await client.kind_exists("recipe") is False

    @pytest.mark.asyncio
    async def test_create_uses_rest_base(self) -> None:
        """Items are created on the kind's REST collection."""
        created: list[dict] = []

        def create(request: httpx.Request) -> httpx.Response:
            created.append(_body(request))
            return httpx.Response(201, json={"id": 321, "type": "page"})

        async with _client(_routes({("POST", "/wp-json/wp/v2/pages"): create})) as client:
            local_id = await client.create_content_item("page", {"title": "About"})

        assert local_id == 321
        assert created == [{"title": "About"}]

    @pytest.mark.asyncio
    async def test_create_rejected(self) -> None:
        def create(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"code": "rest_invalid_param", "message": "Bad slug"})

        async with _client(_routes({("POST", "/wp-json/wp/v2/posts"): create})) as client:
            with pytest.raises(CreationError) as exc_info:
                await client.create_content_item("post", {"title": "X"})

        assert exc_info.value.reason == "Bad slug"

    @pytest.mark.asyncio
    async def test_find_by_exact_title(self) -> None:
        """Search results are filtered to exact title matches."""

        def search(request: httpx.Request) -> httpx.Response:
            assert request.url.params["status"] == "any"
            return httpx.Response(
                200,
                json=[
                    {"id": 1, "title": {"raw": "Hello world"}},
                    {"id": 2, "title": {"raw": "Hello"}},
                ],
            )

        async with _client(_routes({("GET", "/wp-json/wp/v2/posts"): search})) as client:
            assert await client.find_content_item_by_match("Hello", "post") == 2
            assert await client.find_content_item_by_match("Nope", "post") is None

    @pytest.mark.asyncio
    async def test_content_item_exists_checks_kind(self) -> None:
        def get_item(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"id": 5, "type": "post"})

        async with _client(_routes({("GET", "/wp-json/wp/v2/posts/5"): get_item})) as client:
            assert await client.content_item_exists(5, "post") is True
            assert await client.content_item_exists(6, "post") is False


class TestTermsAndMeta:
    """Tests for terms and metadata."""

    @pytest.mark.asyncio
    async def test_existing_term_returned(self) -> None:
        """A term_exists error resolves to the existing term id."""

        def create(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={
                    "code": "term_exists",
                    "message": "A term with the name provided already exists.",
                    "data": {"status": 400, "term_id": 42},
                },
            )

        async with _client(_routes({("POST", "/wp-json/wp/v2/categories"): create})) as client:
            assert await client.create_term("category", "News", "news") == 42
            assert await client.find_term("category", "news") == 42

    @pytest.mark.asyncio
    async def test_term_rejected(self) -> None:
        def create(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"code": "rest_cannot_create", "message": "Nope"})

        async with _client(_routes({("POST", "/wp-json/wp/v2/tags"): create})) as client:
            with pytest.raises(TermCreationError):
                await client.create_term("post_tag", "x", "x")

    @pytest.mark.asyncio
    async def test_set_terms_uses_taxonomy_base(self) -> None:
        bodies: list[dict] = []

        def update(request: httpx.Request) -> httpx.Response:
            bodies.append(_body(request))
            return httpx.Response(200, json={"id": 9})

        async with _client(_routes({("POST", "/wp-json/wp/v2/posts/9"): update})) as client:
            await client.set_terms(9, "post_tag", [1, 2])

        assert bodies == [{"tags": [1, 2]}]

    @pytest.mark.asyncio
    async def test_thumbnail_written_as_featured_media(self) -> None:
        bodies: list[dict] = []

        def update(request: httpx.Request) -> httpx.Response:
            bodies.append(_body(request))
            return httpx.Response(200, json={"id": 9})

        async with _client(_routes({("POST", "/wp-json/wp/v2/posts/9"): update})) as client:
            await client.add_metadata(9, "_thumbnail_id", "12")
            await client.add_metadata(9, "source", "legacy")

        assert bodies == [{"featured_media": 12}, {"meta": {"source": "legacy"}}]

    @pytest.mark.asyncio
    async def test_unknown_featured_media_tolerated(self) -> None:
        """A thumbnail still holding an external id is left for the post-pass."""

        def update(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={"code": "rest_invalid_featured_media", "message": "Invalid featured media ID."},
            )

        async with _client(_routes({("POST", "/wp-json/wp/v2/posts/9"): update})) as client:
            assert await client.add_metadata(9, "_thumbnail_id", "12") is False

    @pytest.mark.asyncio
    async def test_opaque_thumbnail_id_not_sent(self) -> None:
        """A non-numeric external id is left for the post-pass without a request."""
        seen: list[httpx.Request] = []

        def update(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": 9})

        async with _client(_routes({("POST", "/wp-json/wp/v2/posts/9"): update})) as client:
            assert await client.add_metadata(9, "_thumbnail_id", "img-b") is False
            assert await client.add_metadata(9, "_thumbnail_id", None) is False

        assert seen == []

    @pytest.mark.asyncio
    async def test_update_metadata_uses_given_kind(self) -> None:
        """Items created by another client instance are addressed by their kind."""
        bodies: list[dict] = []

        def update(request: httpx.Request) -> httpx.Response:
            bodies.append(_body(request))
            return httpx.Response(200, json={"id": 21})

        async with _client(_routes({("POST", "/wp-json/wp/v2/pages/21"): update})) as client:
            await client.update_metadata(21, "_thumbnail_id", 22, kind="page")

        assert bodies == [{"featured_media": 22}]

    @pytest.mark.asyncio
    async def test_update_metadata_rejects_invalid_media_id(self) -> None:
        async with _client(_routes({})) as client:
            with pytest.raises(APIError):
                await client.update_metadata(9, "_thumbnail_id", "img-b")


class TestMedia:
    """Tests for media lookups and uploads."""

    @pytest.mark.asyncio
    async def test_find_by_normalized_name(self) -> None:
        """Only items whose stored file has the exact name match."""

        def search(request: httpx.Request) -> httpx.Response:
            assert request.url.params["search"] == "photo"
            return httpx.Response(
                200,
                json=[
                    {
                        "id": 3,
                        "source_url": "http://cms.test/uploads/2024/01/photo-1.jpg",
                        "media_details": {"file": "2024/01/photo-1.jpg"},
                    },
                    {
                        "id": 4,
                        "source_url": "http://cms.test/uploads/2024/01/photo.jpg",
                        "media_details": {"file": "2024/01/photo.jpg"},
                    },
                ],
            )

        async with _client(_routes({("GET", "/wp-json/wp/v2/media"): search})) as client:
            asset = await client.find_by_normalized_name("photo.jpg")

        assert asset is not None
        assert asset.id == 4
        assert asset.url == "http://cms.test/uploads/2024/01/photo.jpg"

    @pytest.mark.asyncio
    async def test_download_and_register(self) -> None:
        """The remote file is downloaded and uploaded with its name."""
        uploads: list[httpx.Request] = []

        def download(request: httpx.Request) -> httpx.Response:
            assert "Authorization" not in request.headers
            return httpx.Response(200, content=b"PNG", headers={"Content-Type": "image/png"})

        def upload(request: httpx.Request) -> httpx.Response:
            uploads.append(request)
            return httpx.Response(
                201,
                json={
                    "id": 77,
                    "source_url": "http://cms.test/uploads/a.png",
                    "media_details": {"file": "a.png"},
                    "mime_type": "image/png",
                },
            )

        handler = _routes({("POST", "/wp-json/wp/v2/media"): upload})
        async with _client(handler, download) as client:
            asset = await client.download_and_register("http://r.test/a.png", 101, "a.png")

        assert asset.id == 77
        assert asset.mime_type == "image/png"
        request = uploads[0]
        assert request.url.params["post"] == "101"
        assert request.headers["Content-Disposition"] == 'attachment; filename="a.png"'
        assert request.content == b"PNG"

    @pytest.mark.asyncio
    async def test_download_failure(self) -> None:
        def download(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        async with _client(_routes({}), download) as client:
            with pytest.raises(AssetFetchError) as exc_info:
                await client.download_and_register("http://r.test/a.png", 101)

        assert "HTTP 404" in str(exc_info.value)


class TestRedirectionClient:
    """Tests for the Redirection plugin client."""

    @pytest.mark.asyncio
    async def test_unavailable_without_plugin(self) -> None:
        async with _client(_routes({})) as client:
            assert await RedirectionClient(client).is_available() is False

    @pytest.mark.asyncio
    async def test_group_reused(self) -> None:
        def groups(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"items": [{"id": 4, "name": "migration"}]})

        handler = _routes({("GET", "/wp-json/redirection/v1/group"): groups})
        async with _client(handler) as client:
            assert await RedirectionClient(client).get_or_create_group("migration") == 4

    @pytest.mark.asyncio
    async def test_create_rule(self) -> None:
        """A created rule is read back from the plugin."""
        rules: list[dict] = []

        def list_rules(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "items": [
                        {
                            "id": len(rules),
                            "url": r["url"],
                            "action_code": r["action_code"],
                            "action_data": r["action_data"],
                            "group_id": r["group_id"],
                        }
                        for r in rules
                    ]
                },
            )

        def create_rule(request: httpx.Request) -> httpx.Response:
            rules.append(_body(request))
            return httpx.Response(200, json={"items": []})

        handler = _routes(
            {
                ("GET", "/wp-json/redirection/v1/redirect"): list_rules,
                ("POST", "/wp-json/redirection/v1/redirect"): create_rule,
            }
        )
        async with _client(handler) as client:
            store = RedirectionClient(client)
            assert await store.find_rule("/old") is None
            rule = await store.create_rule(
                RedirectRule(source_path="/old", target_path="/new/", group_id=4)
            )

        assert rule.id == 1
        assert rule.target_path == "/new/"
        assert rules[0]["action_code"] == 301
        assert rules[0]["match_type"] == "url"


class _Site:
    """WordPress stand-in serving post and page collections and featured images."""

    def __init__(self) -> None:
        self.next_id = 20
        self.kinds: dict[int, str] = {}
        self.featured: dict[int, int] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        if (request.method, request.url.path) == ("GET", "/wp-json/wp/v2/types"):
            return httpx.Response(200, json=TYPES)

        parts = request.url.path.removeprefix("/wp-json/wp/v2/").split("/")
        base = parts[0]
        if base not in ("posts", "pages"):
            return httpx.Response(404, json={"code": "rest_no_route", "message": "No route"})

        if len(parts) == 1:
            if request.method == "GET":
                return httpx.Response(200, json=[])
            self.next_id += 1
            self.kinds[self.next_id] = base
            return httpx.Response(201, json={"id": self.next_id, "type": base[:-1]})

        local_id = int(parts[1])
        if self.kinds.get(local_id) != base:
            return httpx.Response(
                404, json={"code": "rest_post_invalid_id", "message": "Invalid post ID."}
            )
        media_id = _body(request).get("featured_media")
        if media_id is not None:
            if media_id not in self.kinds:
                return httpx.Response(
                    400,
                    json={
                        "code": "rest_invalid_featured_media",
                        "message": "Invalid featured media ID.",
                    },
                )
            self.featured[local_id] = media_id
        return httpx.Response(200, json={"id": local_id})


def _thumbnail_mapper() -> ColumnMapper:
    return ColumnMapper(
        ColumnMapping(
            id="id", strict=False, fields={"title": "title"}, meta={"_thumbnail_id": "thumb"}
        )
    )


class TestImportOverRest:
    """Tests running the orchestrator against the REST client."""

    @pytest.mark.asyncio
    async def test_opaque_thumbnail_reference(self, settings) -> None:
        """Non-numeric external ids in the featured image are remapped."""
        site = _Site()

        async with _client(site.handler) as client:
            orchestrator = ImportOrchestrator(
                client, client, settings, mapper=_thumbnail_mapper()
            )
            summary = await orchestrator.run(
                [{"id": "a", "title": "A", "thumb": "img-b"}, {"id": "img-b", "title": "B"}],
                "post",
            )

        assert summary.state is OrchestratorState.DONE
        assert summary.counts["created"] == 2
        assert site.featured == {21: 22}
        assert summary.deferred_resolved == 1

    @pytest.mark.asyncio
    async def test_resumed_run_remaps_pages(self, settings) -> None:
        """A reference left pending by an earlier process resolves on a page."""
        site = _Site()

        async with _client(site.handler) as client:
            first = ImportOrchestrator(client, client, settings, mapper=_thumbnail_mapper())
            await first.run([{"id": "1", "title": "Cover", "thumb": "5"}], "page")

        state = ImportState.from_dict(json.loads(json.dumps(first.import_state.to_dict())))
        assert [ref.kind for ref in state.deferred] == ["page"]

        async with _client(site.handler) as client:
            second = ImportOrchestrator(
                client, client, settings, mapper=_thumbnail_mapper(), state=state
            )
            summary = await second.run([{"id": "5", "title": "Photo"}], "page")

        assert summary.warnings == []
        assert summary.deferred_resolved == 1
        assert site.featured == {21: 22}
