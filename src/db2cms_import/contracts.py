"""Abstract stores the import engine writes to.

The engine never talks to a CMS directly. It drives these three contracts,
implemented for WordPress in api_client and by in-memory fakes in the tests.
"""

from abc import ABC, abstractmethod
from typing import Any

from db2cms_import.models import MediaAsset, RedirectRule


class HostStore(ABC):
    """Content, term and metadata primitives of the target CMS."""

    @abstractmethod
    async def kind_exists(self, kind: str) -> bool:
        """Check whether a content kind (post type) is registered."""
        ...

    @abstractmethod
    async def content_item_exists(self, local_id: int, kind: str) -> bool:
        """Check whether local_id exists and is of the given kind."""
        ...

    @abstractmethod
    async def find_content_item_by_match(self, title: str, kind: str) -> int | None:
        """Return the id of an item whose title equals title, or None."""
        ...

    @abstractmethod
    async def create_content_item(self, kind: str, fields: dict[str, Any]) -> int:
        """Create a content item and return its id.

        Raises:
            CreationError: If the store rejects the item.
        """
        ...

    @abstractmethod
    async def find_term(self, taxonomy: str, slug: str) -> int | None:
        ...

    @abstractmethod
    async def create_term(self, taxonomy: str, name: str, slug: str) -> int:
        """Create a term and return its id.

        Raises:
            TermCreationError: If the store rejects the term.
        """
        ...

    @abstractmethod
    async def set_terms(self, local_id: int, taxonomy: str, term_ids: list[int]) -> None:
        ...

    @abstractmethod
    async def add_metadata(self, local_id: int, key: str, value: Any) -> bool:
        """Write a meta value. Returns False when the store declined to keep it."""
        ...

    @abstractmethod
    async def update_metadata(
        self, local_id: int, key: str, value: Any, kind: str | None = None
    ) -> None:
        """Replace a meta value. kind is the content kind of local_id, when known."""
        ...

    @abstractmethod
    async def update_content_fields(self, local_id: int, fields: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def get_canonical_url(self, local_id: int) -> str | None:
        """Return the public URL of an item, or None if it has none."""
        ...

    @abstractmethod
    async def suspend_side_effects(self) -> None:
        """Defer per-record cache invalidation and counting."""
        ...

    @abstractmethod
    async def resume_side_effects(self) -> None:
        ...

    @abstractmethod
    async def flush_cache(self) -> None:
        ...

    @abstractmethod
    async def refresh_term_hierarchy(self) -> None:
        ...


class MediaStore(ABC):
    """Media library primitives of the target CMS."""

    @abstractmethod
    async def find_by_normalized_name(self, name: str) -> MediaAsset | None:
        """Find an asset whose stored file name equals name."""
        ...

    @abstractmethod
    async def find_by_title(self, title: str) -> MediaAsset | None:
        """Find an image asset by title or slug."""
        ...

    @abstractmethod
    async def download_and_register(
        self, url: str, owner_id: int, name: str | None = None
    ) -> MediaAsset:
        """Download url and register it as an asset attached to owner_id.

        Raises:
            AssetFetchError: If the download or registration fails.
        """
        ...

    @abstractmethod
    async def get_url(self, asset_id: int) -> str:
        ...

    @abstractmethod
    async def set_asset_metadata(
        self,
        asset_id: int,
        title: str | None = None,
        caption: str | None = None,
        alt: str | None = None,
        description: str | None = None,
    ) -> None:
        """Write descriptive fields to an asset. None leaves a field unchanged."""
        ...


class RedirectStore(ABC):
    """Redirect rule primitives, usually provided by a CMS plugin."""

    @abstractmethod
    async def is_available(self) -> bool:
        ...

    @abstractmethod
    async def get_or_create_group(self, name: str) -> int:
        """Return the id of the rule group called name, creating it if needed."""
        ...

    @abstractmethod
    async def find_rule(self, source_path: str) -> RedirectRule | None:
        ...

    @abstractmethod
    async def create_rule(self, rule: RedirectRule) -> RedirectRule:
        ...
