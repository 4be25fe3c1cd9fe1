"""
Pytest fixtures for the import engine tests.

Provides in-memory implementations of the host, media and redirect stores
so the reconciler, asset resolver and orchestrator run without a CMS.
"""

from typing import Any

import pytest

from db2cms_import.config import ImportSettings
from db2cms_import.contracts import HostStore, MediaStore, RedirectStore
from db2cms_import.errors import AssetFetchError, CreationError, TermCreationError
from db2cms_import.hooks import HookRegistry
from db2cms_import.models import MediaAsset, RedirectRule

CMS_URL = "http://cms.test"


class FakeHostStore(HostStore):
    """Content store keeping items, terms and meta in dictionaries."""

    def __init__(self, kinds: tuple[str, ...] = ("post", "page")) -> None:
        self.kinds = set(kinds)
        self.items: dict[int, dict[str, Any]] = {}
        self.terms: dict[tuple[str, str], int] = {}
        self.reject_titles: set[str] = set()
        self.reject_terms: set[str] = set()
        self.calls: list[str] = []
        self._next_id = 100

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def add_item(self, kind: str, title: str) -> int:
        local_id = self._new_id()
        self.items[local_id] = {
            "kind": kind,
            "fields": {"title": title},
            "meta": {},
            "terms": {},
        }
        return local_id

    async def kind_exists(self, kind: str) -> bool:
        return kind in self.kinds

    async def content_item_exists(self, local_id: int, kind: str) -> bool:
        item = self.items.get(local_id)
        return item is not None and item["kind"] == kind

    async def find_content_item_by_match(self, title: str, kind: str) -> int | None:
        for local_id, item in self.items.items():
            if item["kind"] == kind and item["fields"].get("title") == title:
                return local_id
        return None

    async def create_content_item(self, kind: str, fields: dict[str, Any]) -> int:
        title = str(fields.get("title", ""))
        if title in self.reject_titles:
            raise CreationError(kind, title, "rejected")
        local_id = self._new_id()
        self.items[local_id] = {"kind": kind, "fields": dict(fields), "meta": {}, "terms": {}}
        return local_id

    async def find_term(self, taxonomy: str, slug: str) -> int | None:
        return self.terms.get((taxonomy, slug))

    async def create_term(self, taxonomy: str, name: str, slug: str) -> int:
        if name in self.reject_terms:
            raise TermCreationError(taxonomy, name, "rejected")
        term_id = self._new_id()
        self.terms[(taxonomy, slug)] = term_id
        return term_id

    async def set_terms(self, local_id: int, taxonomy: str, term_ids: list[int]) -> None:
        self.items[local_id]["terms"][taxonomy] = list(term_ids)

    async def add_metadata(self, local_id: int, key: str, value: Any) -> bool:
        self.items[local_id]["meta"].setdefault(key, []).append(value)
        return True

    async def update_metadata(
        self, local_id: int, key: str, value: Any, kind: str | None = None
    ) -> None:
        self.calls.append(f"update_metadata:{local_id}:{kind}")
        self.items[local_id]["meta"][key] = [value]

    async def update_content_fields(self, local_id: int, fields: dict[str, Any]) -> None:
        self.items[local_id]["fields"].update(fields)

    async def get_canonical_url(self, local_id: int) -> str | None:
        item = self.items.get(local_id)
        if item is None:
            return None
        return f"{CMS_URL}/{item['kind']}/{local_id}/"

    async def suspend_side_effects(self) -> None:
        self.calls.append("suspend_side_effects")

    async def resume_side_effects(self) -> None:
        self.calls.append("resume_side_effects")

    async def flush_cache(self) -> None:
        self.calls.append("flush_cache")

    async def refresh_term_hierarchy(self) -> None:
        self.calls.append("refresh_term_hierarchy")


class FakeMediaStore(MediaStore):
    """Media library keyed by stored file name."""

    def __init__(self) -> None:
        self.assets: dict[str, MediaAsset] = {}
        self.titles: dict[str, MediaAsset] = {}
        self.fail_urls: set[str] = set()
        self.downloads: list[tuple[str, int, str | None]] = []
        self.metadata: dict[int, dict[str, str | None]] = {}
        self._next_id = 500

    def add_asset(self, name: str, title: str | None = None) -> MediaAsset:
        self._next_id += 1
        asset = MediaAsset(id=self._next_id, url=f"{CMS_URL}/uploads/{name}", name=name)
        self.assets[name] = asset
        if title:
            self.titles[title] = asset
        return asset

    async def find_by_normalized_name(self, name: str) -> MediaAsset | None:
        return self.assets.get(name)

    async def find_by_title(self, title: str) -> MediaAsset | None:
        return self.titles.get(title)

    async def download_and_register(
        self, url: str, owner_id: int, name: str | None = None
    ) -> MediaAsset:
        if url in self.fail_urls:
            raise AssetFetchError(url, "HTTP 404")
        self.downloads.append((url, owner_id, name))
        return self.add_asset(name or url.rsplit("/", 1)[-1])

    async def get_url(self, asset_id: int) -> str:
        for asset in self.assets.values():
            if asset.id == asset_id:
                return asset.url
        return ""

    async def set_asset_metadata(
        self,
        asset_id: int,
        title: str | None = None,
        caption: str | None = None,
        alt: str | None = None,
        description: str | None = None,
    ) -> None:
        self.metadata[asset_id] = {
            "title": title,
            "caption": caption,
            "alt": alt,
            "description": description,
        }


class FakeRedirectStore(RedirectStore):
    """Redirect rules keyed by source path."""

    def __init__(self, available: bool = True) -> None:
        self.available = available
        self.groups: dict[str, int] = {}
        self.rules: dict[str, RedirectRule] = {}

    async def is_available(self) -> bool:
        return self.available

    async def get_or_create_group(self, name: str) -> int:
        if name not in self.groups:
            self.groups[name] = len(self.groups) + 1
        return self.groups[name]

    async def find_rule(self, source_path: str) -> RedirectRule | None:
        return self.rules.get(source_path)

    async def create_rule(self, rule: RedirectRule) -> RedirectRule:
        created = RedirectRule(
            source_path=rule.source_path,
            target_path=rule.target_path,
            status_code=rule.status_code,
            group_id=rule.group_id,
            id=len(self.rules) + 1,
        )
        self.rules[rule.source_path] = created
        return created


@pytest.fixture
def host() -> FakeHostStore:
    """In-memory host store with the post and page kinds."""
    return FakeHostStore()


@pytest.fixture
def media() -> FakeMediaStore:
    return FakeMediaStore()


@pytest.fixture
def redirect_store() -> FakeRedirectStore:
    return FakeRedirectStore()


@pytest.fixture
def hooks() -> HookRegistry:
    return HookRegistry()


@pytest.fixture
def settings() -> ImportSettings:
    """Settings isolated from the environment and any .env file."""
    return ImportSettings(_env_file=None, cms_url=CMS_URL)
