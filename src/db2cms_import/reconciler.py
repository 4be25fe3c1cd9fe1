"""Match-or-create reconciliation of external records.

The reconciler owns the run's IdentityMap. Every record it resolves, either
to an existing item or to a newly created one, gets exactly one entry.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from db2cms_import.contracts import HostStore
from db2cms_import.errors import CreationError, RecordValidationError
from db2cms_import.hooks import HookRegistry
from db2cms_import.id_map import IdentityMap, normalize_external_id
from db2cms_import.models import CONTENT_DEFAULTS, ExternalRecord, ReconcileResult

logger = logging.getLogger(__name__)

MatchStrategy = Callable[[HostStore, ExternalRecord], Awaitable[int | None]]


async def match_by_title(host: HostStore, record: ExternalRecord) -> int | None:
    """Default match strategy: an item of the same kind with an equal title.

    Two unrelated records sharing a title collapse onto one item, so
    deployments with non-unique titles should register a stricter strategy
    or an existing_match handler.
    """
    if not record.title:
        return None
    return await host.find_content_item_by_match(record.title, record.target_type)


class IdentityReconciler:
    """Decides, per record, whether to reuse an existing item or create one."""

    def __init__(
        self,
        host: HostStore,
        hooks: HookRegistry,
        id_map: IdentityMap | None = None,
        matcher: MatchStrategy = match_by_title,
        defaults: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize the reconciler.

        Args:
            host: Target content store.
            hooks: Registry providing the existing_match and content_fields stages.
            id_map: Identity map to fill; a new one when omitted.
            matcher: Strategy proposing an existing item for a record.
            defaults: Field defaults merged under every created record.
        """
        self.host = host
        self.hooks = hooks
        self.id_map = id_map if id_map is not None else IdentityMap()
        self.matcher = matcher
        self.defaults = dict(CONTENT_DEFAULTS if defaults is None else defaults)
        self._known_kinds: dict[str, bool] = {}

    async def kind_exists(self, kind: str) -> bool:
        if kind not in self._known_kinds:
            self._known_kinds[kind] = bool(kind) and await self.host.kind_exists(kind)
        return self._known_kinds[kind]

    async def find_existing(self, record: ExternalRecord) -> int | None:
        """Return the local id of an item matching record, or None.

        The existing_match stage may override the proposed match; returning
        0 or None forces creation. A match is only accepted when the item is
        of the record's kind.
        """
        match = await self.matcher(self.host, record)
        match = self.hooks.existing_match.apply(match, record)
        if not match:
            return None

        local_id = int(match)
        if not await self.host.content_item_exists(local_id, record.target_type):
            logger.info(
                f"Match {local_id} for '{record.title}' is not a {record.target_type}, "
                "creating a new item"
            )
            return None
        return local_id

    async def reconcile(self, record: ExternalRecord) -> ReconcileResult:
        """Resolve record to a local item.

        Returns:
            SKIPPED for unknown kinds and empty or already mapped ids,
            EXISTING when a match is found, CREATED when a new item was
            created, FAILED when the store rejected the new item.
        """
        if not await self.kind_exists(record.target_type):
            error = RecordValidationError(
                record.external_id, f"Invalid post type '{record.target_type}'"
            )
            logger.warning(str(error))
            return ReconcileResult.skipped(error.reason)

        external_id = normalize_external_id(record.external_id)
        if not external_id:
            error = RecordValidationError(external_id, "Missing external id")
            logger.warning(str(error))
            return ReconcileResult.skipped(error.reason)

        if self.id_map.has(external_id):
            error = RecordValidationError(
                external_id,
                f"Duplicate external id, already imported as {self.id_map.get(external_id)}",
            )
            logger.info(str(error))
            return ReconcileResult.skipped(error.reason)

        local_id = await self.find_existing(record)
        if local_id is not None:
            self.id_map.add(external_id, local_id)
            logger.info(f"{record.target_type} '{record.title}' already exists as {local_id}")
            return ReconcileResult.existing(local_id)

        fields = self.hooks.content_fields.apply(record.content_fields(self.defaults), record)
        try:
            local_id = await self.host.create_content_item(record.target_type, fields)
        except CreationError as e:
            logger.warning(str(e))
            return ReconcileResult.failed(e.reason)

        self.id_map.add(external_id, local_id)
        logger.info(f"Created {record.target_type} '{record.title}' as {local_id}")
        return ReconcileResult.created(local_id)
