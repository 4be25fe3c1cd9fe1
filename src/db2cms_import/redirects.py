"""Legacy URL redirects for imported items."""

from __future__ import annotations

import logging
from enum import Enum
from urllib.parse import urlsplit

from db2cms_import.contracts import HostStore, RedirectStore
from db2cms_import.errors import Db2CmsError, SetupError
from db2cms_import.models import RedirectRule

logger = logging.getLogger(__name__)


class RedirectOutcome(str, Enum):
    CREATED = "created"
    EXISTS = "exists"
    SKIPPED = "skipped"
    FAILED = "failed"


def source_path(legacy_url: str) -> str:
    """Return the path of legacy_url, with "?query" appended when present.

    Examples:
        >>> source_path("http://old.example.com/news/item.php?id=7")
        '/news/item.php?id=7'
        >>> source_path("http://old.example.com")
        ''
    """
    parts = urlsplit(legacy_url)
    if not parts.path:
        return ""
    if parts.query:
        return f"{parts.path}?{parts.query}"
    return parts.path


class RedirectBridge:
    """Creates one permanent redirect per imported item with a legacy URL.

    Rules live in a single named group, resolved or created on first use.
    A source path that already has a rule is left alone.
    """

    def __init__(self, store: RedirectStore, host: HostStore, group_name: str) -> None:
        self.store = store
        self.host = host
        self.group_name = group_name
        self._group_id: int | None = None

    async def ensure_available(self) -> None:
        """Fail the run early when redirects are requested but unsupported.

        Raises:
            SetupError: If the redirect store is not available.
        """
        if not await self.store.is_available():
            raise SetupError(
                "Redirects were requested but the Redirection plugin is not available"
            )

    async def group_id(self) -> int:
        if self._group_id is None:
            self._group_id = await self.store.get_or_create_group(self.group_name)
            logger.info(f"Using redirect group '{self.group_name}' ({self._group_id})")
        return self._group_id

    async def register(self, local_id: int, legacy_url: str | None) -> RedirectOutcome:
        """Create a 301 rule from legacy_url to the item's canonical path."""
        if not legacy_url:
            return RedirectOutcome.SKIPPED

        source = source_path(legacy_url)
        try:
            canonical = await self.host.get_canonical_url(local_id)
            target = urlsplit(canonical).path if canonical else ""
            if not source or not target:
                logger.debug(f"No redirect for {local_id}: source '{source}', target '{target}'")
                return RedirectOutcome.SKIPPED

            if await self.store.find_rule(source) is not None:
                logger.info(f"-- Redirect for '{source}' already exists")
                return RedirectOutcome.EXISTS

            rule = await self.store.create_rule(
                RedirectRule(
                    source_path=source,
                    target_path=target,
                    status_code=301,
                    group_id=await self.group_id(),
                )
            )
        except Db2CmsError as e:
            logger.warning(f"-- Error creating redirect: {e}")
            return RedirectOutcome.FAILED

        logger.info(f"-- Redirect {rule.id} created: '{source}' -> '{target}'")
        return RedirectOutcome.CREATED
