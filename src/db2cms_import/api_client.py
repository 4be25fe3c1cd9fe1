"""
WordPress REST API Client for the database import.

Async HTTP client implementing the host, media and redirect store contracts
against a WordPress site. Uses httpx for async HTTP requests with
application-password basic authentication.
"""

import logging
import mimetypes
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import unquote, urlsplit

import httpx

from db2cms_import.assets import sanitize_title
from db2cms_import.contracts import HostStore, MediaStore, RedirectStore
from db2cms_import.errors import AssetFetchError, CreationError, Db2CmsError, TermCreationError
from db2cms_import.models import THUMBNAIL_META_KEY, MediaAsset, RedirectRule

logger = logging.getLogger(__name__)

WP_API = "/wp/v2"
REDIRECTION_API = "/redirection/v1"
PAGE_SIZE = 100


class APIError(Db2CmsError):
    """Exception raised for API errors."""

    def __init__(self, status_code: int, message: str, response_body: Any = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"API Error {status_code}: {message}")

    @property
    def code(self) -> str | None:
        """WordPress error code, e.g. "term_exists"."""
        if isinstance(self.response_body, dict):
            return self.response_body.get("code")
        return None


def _rendered(value: Any) -> str:
    """Return the raw (or rendered) text of a REST title/caption field."""
    if isinstance(value, dict):
        return str(value.get("raw") or value.get("rendered") or "")
    return str(value or "")


def _media_id(value: Any) -> int | None:
    """Return value as a positive media id, or None if it cannot be one."""
    try:
        media_id = int(value)
    except (TypeError, ValueError):
        return None
    return media_id if media_id > 0 else None


def _media_asset(item: dict[str, Any]) -> MediaAsset:
    file_path = (item.get("media_details") or {}).get("file") or ""
    name = PurePosixPath(file_path).name or PurePosixPath(urlsplit(item.get("source_url", "")).path).name
    return MediaAsset(
        id=int(item["id"]),
        url=item.get("source_url") or "",
        name=name,
        mime_type=item.get("mime_type") or "",
    )


class WordPressClient(HostStore, MediaStore):
    """
    Async client for the WordPress REST API.

    Provides the primitives the importer needs:
    - Content kinds and items
    - Taxonomy terms
    - Post meta and featured images
    - Media library lookups and uploads
    """

    def __init__(
        self,
        base_url: str,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 30.0,
        download_timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
        download_transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the WordPress API client.

        Args:
            base_url: Site URL (e.g., "https://www.example.com")
            username: User name for application-password authentication
            password: Application password
            timeout: Request timeout in seconds (default: 30.0)
            download_timeout: Remote asset download timeout in seconds (default: 60.0)
            transport: Optional httpx transport for API requests
            download_transport: Optional httpx transport for remote downloads
        """
        self.base_url = base_url.rstrip("/")
        self.api_root = f"{self.base_url}/wp-json"
        self.username = username
        self.password = password
        self.timeout = timeout
        self.download_timeout = download_timeout
        self._transport = transport
        self._download_transport = download_transport
        self._client: httpx.AsyncClient | None = None

        # Lookup caches
        self._types: dict[str, str] | None = None
        self._taxonomies: dict[str, str] | None = None
        self._terms: dict[tuple[str, str], int] = {}
        self._item_kinds: dict[int, str] = {}

    async def __aenter__(self) -> "WordPressClient":
        """Enter async context manager."""
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager."""
        await self.close()

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client is initialized."""
        if self._client is None:
            auth = None
            if self.username and self.password:
                auth = httpx.BasicAuth(self.username, self.password)
            self._client = httpx.AsyncClient(
                base_url=self.api_root,
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """
        Make an HTTP request to the API.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            path: API endpoint path below /wp-json
            json: Request body as JSON
            params: Query parameters
            content: Raw request body (media uploads)
            headers: Extra request headers

        Returns:
            Response data (dict, list, or empty dict for 204)

        Raises:
            APIError: If the request fails
        """
        client = await self._ensure_client()

        try:
            response = await client.request(
                method=method,
                url=path,
                json=json,
                params=params,
                content=content,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise APIError(0, f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise APIError(0, f"Request failed: {e}") from e

        if response.status_code >= 400:
            try:
                error_body = response.json()
            except ValueError:
                error_body = response.text

            raise APIError(
                status_code=response.status_code,
                message=error_body.get("message", str(error_body))
                if isinstance(error_body, dict)
                else str(error_body),
                response_body=error_body,
            )

        # Handle 204 No Content
        if response.status_code == 204:
            return {}

        return response.json()

    async def ping(self) -> None:
        """
        Check that the REST API is reachable and the credentials are accepted.

        Raises:
            APIError: If the site cannot be reached or rejects the user
        """
        await self._request("GET", f"{WP_API}/users/me", params={"context": "edit"})

    # =========================================================================
    # Content kinds and taxonomies
    # =========================================================================

    async def _rest_bases(self) -> dict[str, str]:
        if self._types is None:
            result = await self._request("GET", f"{WP_API}/types")
            self._types = {
                slug: info.get("rest_base") or slug for slug, info in result.items()
            }
        return self._types

    async def _taxonomy_bases(self) -> dict[str, str]:
        if self._taxonomies is None:
            result = await self._request("GET", f"{WP_API}/taxonomies")
            self._taxonomies = {
                slug: info.get("rest_base") or slug for slug, info in result.items()
            }
        return self._taxonomies

    async def _collection(self, kind: str) -> str:
        bases = await self._rest_bases()
        return f"{WP_API}/{bases.get(kind, kind)}"

    async def _item_path(self, local_id: int) -> str:
        kind = self._item_kinds.get(local_id)
        if kind is None:
            logger.debug(f"Kind of item {local_id} unknown, assuming post")
            kind = "post"
        return f"{await self._collection(kind)}/{local_id}"

    async def kind_exists(self, kind: str) -> bool:
        return kind in await self._rest_bases()

    # =========================================================================
    # Content items
    # =========================================================================

    async def content_item_exists(self, local_id: int, kind: str) -> bool:
        try:
            item = await self._request(
                "GET", f"{await self._collection(kind)}/{local_id}", params={"context": "edit"}
            )
        except APIError as e:
            if e.status_code == 404:
                return False
            raise

        if item.get("type") != kind:
            return False
        self._item_kinds[local_id] = kind
        return True

    async def find_content_item_by_match(self, title: str, kind: str) -> int | None:
        """
        Find an item of kind whose title equals title.

        Returns:
            The item id, or None if no item matches
        """
        items = await self._request(
            "GET",
            await self._collection(kind),
            params={
                "search": title,
                "status": "any",
                "context": "edit",
                "per_page": PAGE_SIZE,
            },
        )
        for item in items:
            if _rendered(item.get("title")) == title:
                self._item_kinds[int(item["id"])] = kind
                return int(item["id"])
        return None

    async def create_content_item(self, kind: str, fields: dict[str, Any]) -> int:
        """
        Create a content item.

        Args:
            kind: Content kind (post type slug)
            fields: REST fields (title, content, status, ...)

        Returns:
            Id of the created item

        Raises:
            CreationError: If WordPress rejects the item
        """
        try:
            item = await self._request("POST", await self._collection(kind), json=fields)
        except APIError as e:
            raise CreationError(kind, str(fields.get("title", "")), e.message) from e

        local_id = int(item["id"])
        self._item_kinds[local_id] = kind
        return local_id

    async def update_content_fields(self, local_id: int, fields: dict[str, Any]) -> None:
        await self._request("POST", await self._item_path(local_id), json=fields)

    async def get_canonical_url(self, local_id: int) -> str | None:
        item = await self._request("GET", await self._item_path(local_id))
        return item.get("link") or None

    # =========================================================================
    # Terms
    # =========================================================================

    async def find_term(self, taxonomy: str, slug: str) -> int | None:
        key = (taxonomy, slug)
        if key in self._terms:
            return self._terms[key]

        base = (await self._taxonomy_bases()).get(taxonomy, taxonomy)
        terms = await self._request("GET", f"{WP_API}/{base}", params={"slug": slug})
        if not terms:
            return None
        self._terms[key] = int(terms[0]["id"])
        return self._terms[key]

    async def create_term(self, taxonomy: str, name: str, slug: str) -> int:
        """
        Create a taxonomy term.

        A term that already exists is returned instead of failing.

        Raises:
            TermCreationError: If WordPress rejects the term
        """
        base = (await self._taxonomy_bases()).get(taxonomy, taxonomy)
        try:
            term = await self._request(
                "POST", f"{WP_API}/{base}", json={"name": name, "slug": slug}
            )
            term_id = int(term["id"])
        except APIError as e:
            data = e.response_body.get("data") if isinstance(e.response_body, dict) else None
            if e.code == "term_exists" and isinstance(data, dict) and data.get("term_id"):
                term_id = int(data["term_id"])
            else:
                raise TermCreationError(taxonomy, name, e.message) from e

        self._terms[(taxonomy, slug)] = term_id
        return term_id

    async def set_terms(self, local_id: int, taxonomy: str, term_ids: list[int]) -> None:
        base = (await self._taxonomy_bases()).get(taxonomy, taxonomy)
        await self._request("POST", await self._item_path(local_id), json={base: term_ids})

    # =========================================================================
    # Metadata
    # =========================================================================

    async def add_metadata(self, local_id: int, key: str, value: Any) -> bool:
        """
        Write a meta value.

        The featured image key maps to the featured_media field; other keys
        must be registered with show_in_rest to be writable.

        Returns:
            False when a featured image value is not a local media id yet
        """
        if key != THUMBNAIL_META_KEY:
            await self._request(
                "POST", await self._item_path(local_id), json={"meta": {key: value}}
            )
            return True

        media_id = _media_id(value)
        if media_id is None:
            logger.debug(f"Featured image {value!r} of {local_id} is not a media id yet")
            return False

        try:
            await self._request(
                "POST", await self._item_path(local_id), json={"featured_media": media_id}
            )
        except APIError as e:
            # Still an external id; the post-pass writes the local one.
            if e.code != "rest_invalid_featured_media":
                raise
            logger.debug(f"Featured image {value} of {local_id} not local yet")
            return False
        return True

    async def update_metadata(
        self, local_id: int, key: str, value: Any, kind: str | None = None
    ) -> None:
        if kind:
            self._item_kinds.setdefault(local_id, kind)

        if key != THUMBNAIL_META_KEY:
            await self.add_metadata(local_id, key, value)
            return

        media_id = _media_id(value)
        if media_id is None:
            raise APIError(400, f"Invalid featured image id {value!r}")
        await self._request(
            "POST", await self._item_path(local_id), json={"featured_media": media_id}
        )

    # =========================================================================
    # Cache control
    # =========================================================================

    async def suspend_side_effects(self) -> None:
        # Term and comment counting is server-side; nothing to defer over REST.
        logger.debug("Side effect suspension is not available over REST")

    async def resume_side_effects(self) -> None:
        logger.debug("Side effect resumption is not available over REST")

    async def flush_cache(self) -> None:
        """Drop cached term lookups."""
        self._terms.clear()
        logger.info("-- Cleared lookup caches")

    async def refresh_term_hierarchy(self) -> None:
        self._taxonomies = None
        self._terms.clear()

    # =========================================================================
    # Media
    # =========================================================================

    async def find_by_normalized_name(self, name: str) -> MediaAsset | None:
        """
        Find a media item whose stored file is named name.

        Candidates come from a search on the file stem, which WordPress uses
        as the default title of uploaded media.
        """
        items = await self._request(
            "GET",
            f"{WP_API}/media",
            params={"search": PurePosixPath(name).stem, "per_page": PAGE_SIZE},
        )
        for item in items:
            asset = _media_asset(item)
            if asset.name == name:
                return asset
        return None

    async def find_by_title(self, title: str) -> MediaAsset | None:
        slug = sanitize_title(title)
        items = await self._request(
            "GET",
            f"{WP_API}/media",
            params={"search": title, "media_type": "image", "per_page": PAGE_SIZE},
        )
        for item in items:
            if _rendered(item.get("title")) == title or item.get("slug") == slug:
                return _media_asset(item)
        return None

    async def download_and_register(
        self, url: str, owner_id: int, name: str | None = None
    ) -> MediaAsset:
        """
        Download a remote file and upload it to the media library.

        This uses a separate httpx client without authentication headers.

        Args:
            url: Remote file URL
            owner_id: Content item the media is attached to
            name: File name to store; the URL basename when omitted

        Returns:
            The registered media asset

        Raises:
            AssetFetchError: If the download or the upload fails
        """
        filename = name or unquote(PurePosixPath(urlsplit(url).path).name) or "download"

        try:
            async with httpx.AsyncClient(
                follow_redirects=True,
                timeout=httpx.Timeout(self.download_timeout),
                transport=self._download_transport,
            ) as client:
                response = await client.get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise AssetFetchError(url, str(e)) from e

        if response.status_code >= 400:
            raise AssetFetchError(url, f"HTTP {response.status_code}")

        content_type = response.headers.get("Content-Type", "").split(";")[0].strip()
        if not content_type or content_type == "application/octet-stream":
            content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"

        try:
            item = await self._request(
                "POST",
                f"{WP_API}/media",
                params={"post": owner_id},
                content=response.content,
                headers={
                    "Content-Type": content_type,
                    "Content-Disposition": f'attachment; filename="{filename}"',
                },
            )
        except APIError as e:
            raise AssetFetchError(url, e.message) from e

        return _media_asset(item)

    async def get_url(self, asset_id: int) -> str:
        item = await self._request("GET", f"{WP_API}/media/{asset_id}")
        return item.get("source_url") or ""

    async def set_asset_metadata(
        self,
        asset_id: int,
        title: str | None = None,
        caption: str | None = None,
        alt: str | None = None,
        description: str | None = None,
    ) -> None:
        payload = {
            "title": title,
            "caption": caption,
            "alt_text": alt,
            "description": description,
        }
        payload = {key: value for key, value in payload.items() if value is not None}
        if payload:
            await self._request("POST", f"{WP_API}/media/{asset_id}", json=payload)


class RedirectionClient(RedirectStore):
    """
    Redirect store backed by the Redirection plugin's REST API.

    Shares the authenticated session of a WordPressClient.
    """

    def __init__(self, wp: WordPressClient):
        self.wp = wp

    async def is_available(self) -> bool:
        try:
            await self.wp._request("GET", f"{REDIRECTION_API}/group", params={"per_page": 1})
        except APIError as e:
            logger.debug(f"Redirection API unavailable: {e}")
            return False
        return True

    async def _find_group(self, name: str) -> int | None:
        result = await self.wp._request(
            "GET",
            f"{REDIRECTION_API}/group",
            params={"filterBy[name]": name, "per_page": 200},
        )
        for group in result.get("items", []):
            if group.get("name") == name:
                return int(group["id"])
        return None

    async def get_or_create_group(self, name: str) -> int:
        group_id = await self._find_group(name)
        if group_id is not None:
            return group_id

        result = await self.wp._request(
            "POST", f"{REDIRECTION_API}/group", json={"name": name, "moduleId": 1}
        )
        if isinstance(result, dict) and result.get("id"):
            return int(result["id"])

        group_id = await self._find_group(name)
        if group_id is None:
            raise APIError(0, f"Redirect group '{name}' was not created", result)
        return group_id

    async def find_rule(self, source_path: str) -> RedirectRule | None:
        result = await self.wp._request(
            "GET",
            f"{REDIRECTION_API}/redirect",
            params={"filterBy[url]": source_path, "per_page": 200},
        )
        for item in result.get("items", []):
            if item.get("url") == source_path:
                return RedirectRule(
                    source_path=item["url"],
                    target_path=(item.get("action_data") or {}).get("url", ""),
                    status_code=int(item.get("action_code") or 301),
                    group_id=item.get("group_id"),
                    id=item.get("id"),
                )
        return None

    async def create_rule(self, rule: RedirectRule) -> RedirectRule:
        await self.wp._request(
            "POST",
            f"{REDIRECTION_API}/redirect",
            json={
                "url": rule.source_path,
                "action_data": {"url": rule.target_path},
                "regex": False,
                "group_id": rule.group_id,
                "match_type": "url",
                "action_type": "url",
                "action_code": rule.status_code,
            },
        )
        created = await self.find_rule(rule.source_path)
        return created or rule
