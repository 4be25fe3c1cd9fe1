"""Import orchestration: mapping, per-record pass, post-pass and teardown.

One run moves through these states:

    START -> MAPPING -> PRE_PASS -> PER_RECORD -> POST_PASS -> TEARDOWN -> DONE

FAILED is entered from any state when an unexpected exception escapes.
Record level errors (validation, creation, terms, metadata, assets,
redirects) are caught and reported without leaving PER_RECORD.

Records are processed strictly one after another, in source order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rich.console import Console

from db2cms_import.assets import AssetResolver, sanitize_title
from db2cms_import.config import ImportSettings
from db2cms_import.contracts import HostStore, MediaStore
from db2cms_import.errors import Db2CmsError, TermCreationError
from db2cms_import.hooks import (
    HookRegistry,
    MetadataAttached,
    RecordCompleted,
    RecordReconciled,
    RunCompleted,
    TermsAttached,
)
from db2cms_import.id_map import IdentityMap, normalize_external_id
from db2cms_import.mapper import ColumnMapper, RecordMapper, maybe_unserialize
from db2cms_import.models import (
    THUMBNAIL_META_KEY,
    DeferredReference,
    ExternalRecord,
    MetaEntry,
    ReconcileResult,
    ReconcileStatus,
)
from db2cms_import.progress import Phase, ProgressReporter, SimpleProgressReporter
from db2cms_import.reconciler import IdentityReconciler, MatchStrategy, match_by_title
from db2cms_import.redirects import RedirectBridge
from db2cms_import.state import ImportState

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    START = "start"
    MAPPING = "mapping"
    PRE_PASS = "pre_pass"
    PER_RECORD = "per_record"
    POST_PASS = "post_pass"
    TEARDOWN = "teardown"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RunSummary:
    """Outcome of one ImportOrchestrator.run call."""

    state: OrchestratorState
    counts: dict[str, int] = field(
        default_factory=lambda: {status.value: 0 for status in ReconcileStatus}
    )
    outcomes: list[tuple[str, ReconcileResult]] = field(default_factory=list)
    deferred_resolved: int = 0
    deferred_unresolved: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def add(self, external_id: str, result: ReconcileResult) -> None:
        self.outcomes.append((external_id, result))
        self.counts[result.status.value] += 1


class ImportOrchestrator:
    """Runs a full import of one batch of source rows.

    Example:
        >>> async with WordPressClient(url, user, password) as wp:
        ...     orchestrator = ImportOrchestrator(wp, wp, settings)
        ...     summary = await orchestrator.run(rows, "post")
    """

    def __init__(
        self,
        host: HostStore,
        media: MediaStore,
        settings: ImportSettings,
        mapper: RecordMapper | None = None,
        hooks: HookRegistry | None = None,
        redirects: RedirectBridge | None = None,
        state: ImportState | None = None,
        reporter: ProgressReporter | None = None,
        matcher: MatchStrategy = match_by_title,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            host: Target content store.
            media: Target media store.
            settings: Import settings.
            mapper: Row mapper; a ColumnMapper with the default mapping when omitted.
            hooks: Extension registry; an empty one when omitted.
            redirects: Redirect bridge, only when redirects were requested.
            state: State to continue from; a fresh one when omitted.
            reporter: Progress reporter; a silent one when omitted.
            matcher: Strategy proposing existing items for records.
        """
        self.host = host
        self.settings = settings
        self.mapper = mapper or ColumnMapper()
        self.hooks = hooks or HookRegistry()
        self.redirects = redirects
        self.import_state = state or ImportState(cms_url=settings.cms_url)
        self.reporter = reporter or SimpleProgressReporter(console=Console(quiet=True))

        self.reconciler = IdentityReconciler(
            host,
            self.hooks,
            id_map=self.import_state.id_map,
            matcher=matcher,
            defaults={"status": settings.default_status},
        )
        self.resolver = AssetResolver(
            media,
            self.hooks,
            local_domain=settings.home_domain,
            file_extensions=settings.file_extensions_list,
            uploads_dir=settings.uploads_dir,
            search_existing=settings.search_existing_media,
        )
        self.state = OrchestratorState.START
        self._summary = RunSummary(state=self.state)

    @property
    def id_map(self) -> IdentityMap:
        return self.import_state.id_map

    def _transition(self, state: OrchestratorState) -> None:
        logger.debug(f"Import state {self.state.value} -> {state.value}")
        self.state = state
        self._summary.state = state

    def _warn(self, message: str) -> None:
        self._summary.warnings.append(message)
        self.import_state.add_warning(message)
        self.reporter.warning(message)

    async def run(self, rows: list[dict[str, Any]], target_kind: str) -> RunSummary:
        """Import rows as items of target_kind.

        Args:
            rows: Raw source rows, in source order.
            target_kind: Content kind selector passed to the mapper.

        Returns:
            Summary with per-status counts and per-record outcomes.

        Raises:
            SetupError: If redirects were requested but are unavailable.
            MappingError: If the mapper cannot map the rows.
        """
        self._summary = RunSummary(state=self.state)
        self.import_state.target_kind = target_kind
        try:
            if self.redirects is not None:
                await self.redirects.ensure_available()

            self._transition(OrchestratorState.MAPPING)
            self.reporter.start_phase(Phase.MAPPING, len(rows))
            batch = self.mapper.map(rows, target_kind)
            records = self.hooks.batch_received.apply(list(batch.posts), target_kind)
            self.reporter.complete_phase()

            self._transition(OrchestratorState.PRE_PASS)
            self.reporter.start_phase(Phase.PRE_PASS, 0)
            await self.host.suspend_side_effects()
            self.reporter.complete_phase()

            self._transition(OrchestratorState.PER_RECORD)
            self.reporter.start_phase(Phase.RECORDS, len(records))
            for index, record in enumerate(records, start=1):
                await self._process_record(record, index, len(records))
                if index % self.settings.batch_flush_size == 0:
                    await self.host.flush_cache()
            self.reporter.complete_phase()

            self._transition(OrchestratorState.POST_PASS)
            await self._resolve_deferred()

            self._transition(OrchestratorState.TEARDOWN)
            self.reporter.start_phase(Phase.TEARDOWN, 0)
            await self.host.resume_side_effects()
            await self.host.flush_cache()
            await self.host.refresh_term_hierarchy()
            self.reporter.complete_phase()
        except Exception:
            self._transition(OrchestratorState.FAILED)
            raise

        self._transition(OrchestratorState.DONE)
        self.hooks.run_completed.notify(
            RunCompleted(counts=dict(self._summary.counts), id_map=self.id_map)
        )
        logger.info("All done.")
        return self._summary

    # =========================================================================
    # Per-record pass
    # =========================================================================

    async def _process_record(self, record: ExternalRecord, index: int, total: int) -> None:
        external_id = normalize_external_id(record.external_id)
        logger.info(
            f"Processing record {external_id or '<empty>'} ('{record.title}') "
            f"({record.target_type}), {index} of {total}"
        )

        normalized = self.hooks.record_normalized.apply(record)
        if normalized is None:
            result = ReconcileResult.skipped("Rejected by record_normalized handler")
            self._complete(record, external_id, result, content_updated=False)
            return
        record = normalized

        try:
            result = await self.reconciler.reconcile(record)
        except Db2CmsError as e:
            logger.warning(f"Failed to import {record.target_type} '{record.title}': {e}")
            result = ReconcileResult.failed(str(e))
        self.hooks.record_reconciled.notify(RecordReconciled(record=record, result=result))

        if result.status is ReconcileStatus.FAILED:
            self._warn(f"Failed to import {record.target_type} '{record.title}': {result.reason}")
        elif result.status is ReconcileStatus.SKIPPED:
            logger.info(f"-- Skipped {external_id or '<empty>'}: {result.reason}")

        content_updated = False
        if result.status is ReconcileStatus.CREATED and result.local_id is not None:
            content_updated = await self._finish_created(record, result.local_id)

        self._complete(record, external_id, result, content_updated)

    def _complete(
        self,
        record: ExternalRecord,
        external_id: str,
        result: ReconcileResult,
        content_updated: bool,
    ) -> None:
        self._summary.add(external_id, result)
        self.import_state.record_outcome(external_id, result)
        self.reporter.record(result.status, f"{external_id} {record.title}".strip())
        self.hooks.record_completed.notify(
            RecordCompleted(record=record, result=result, content_updated=content_updated)
        )

    async def _finish_created(self, record: ExternalRecord, local_id: int) -> bool:
        """Attach terms and metadata, register the redirect, rewrite assets."""
        try:
            await self._attach_terms(record, local_id)
        except Db2CmsError as e:
            self._warn(f"Failed to set terms of {local_id}: {e}")

        await self._attach_metadata(record, local_id)

        if self.redirects is not None:
            await self.redirects.register(local_id, record.redirect_source)

        try:
            return await self._rewrite_assets(record, local_id)
        except Db2CmsError as e:
            self._warn(f"Failed to update content of {local_id}: {e}")
            return False

    async def _attach_terms(self, record: ExternalRecord, local_id: int) -> None:
        terms = self.hooks.record_terms.apply(dict(record.terms), local_id, record)
        term_ids: dict[str, list[int]] = {}
        failures: list[TermCreationError] = []

        for taxonomy, names in terms.items():
            if self.settings.unique_terms:
                names = list(dict.fromkeys(names))
            for name in names:
                slug = sanitize_title(name)
                term_id = await self.host.find_term(taxonomy, slug)
                if not term_id:
                    try:
                        term_id = await self.host.create_term(taxonomy, name, slug)
                    except TermCreationError as e:
                        failures.append(e)
                        self._warn(str(e))
                        continue
                    logger.info(f"Created term '{name}'")
                term_ids.setdefault(taxonomy, []).append(int(term_id))

        for taxonomy, ids in term_ids.items():
            await self.host.set_terms(local_id, taxonomy, ids)
            logger.info(f"Added terms ({','.join(map(str, ids))}) for taxonomy '{taxonomy}'")

        self.hooks.terms_attached.notify(
            TermsAttached(record=record, local_id=local_id, term_ids=term_ids, failures=failures)
        )

    async def _attach_metadata(self, record: ExternalRecord, local_id: int) -> None:
        entries = self.hooks.record_meta.apply(list(record.post_meta), local_id, record)
        written: list[MetaEntry] = []

        for entry in entries:
            key = self.hooks.meta_key.apply(entry.key, local_id, record)
            value = self.hooks.meta_value.apply(maybe_unserialize(entry.value), local_id, record)
            if not key:
                continue

            try:
                stored = await self.host.add_metadata(local_id, key, value)
            except (Db2CmsError, ValueError, TypeError) as e:
                self._warn(f"Failed to add meta '{key}' to {local_id}: {e}")
                stored = False

            if key == THUMBNAIL_META_KEY:
                self.import_state.add_deferred(
                    DeferredReference(
                        local_id=local_id,
                        referenced_external_id=normalize_external_id(value),
                        field_name=key,
                        stored_value=value,
                        kind=record.target_type,
                        written=bool(stored),
                    )
                )
            if stored:
                written.append(MetaEntry(key=key, value=value))

        self.hooks.metadata_attached.notify(
            MetadataAttached(record=record, local_id=local_id, entries=written)
        )

    async def _rewrite_assets(self, record: ExternalRecord, local_id: int) -> bool:
        if not record.content:
            return False

        resolution = await self.resolver.resolve(local_id, record.content)
        for failure in resolution.failures:
            self._warn(str(failure))

        if not resolution.changed:
            return False
        await self.host.update_content_fields(local_id, {"content": resolution.content})
        return True

    # =========================================================================
    # Post-pass
    # =========================================================================

    async def _resolve_deferred(self) -> None:
        """Point deferred references at the ids assigned during the run.

        A reference is only updated when the mapped id differs from the
        stored value, or when the host did not keep the stored value.
        References to records that were never imported stay pending,
        unreported.
        """
        pending = self.import_state.deferred
        self.reporter.start_phase(Phase.POST_PASS, len(pending))
        remaining: list[DeferredReference] = []

        for reference in pending:
            new_id = self.id_map.get(reference.referenced_external_id)
            if new_id is None:
                remaining.append(reference)
                self.reporter.record(ReconcileStatus.SKIPPED)
                continue

            if not reference.written or str(new_id) != str(reference.stored_value):
                try:
                    await self.host.update_metadata(
                        reference.local_id, reference.field_name, new_id, kind=reference.kind
                    )
                except Db2CmsError as e:
                    self._warn(f"Failed to remap '{reference.field_name}' of {reference.local_id}: {e}")
                    remaining.append(reference)
                    self.reporter.record(ReconcileStatus.FAILED)
                    continue
                logger.info(
                    f"-- Remapped '{reference.field_name}' of {reference.local_id} "
                    f"from {reference.stored_value} to {new_id}"
                )
            self._summary.deferred_resolved += 1
            self.reporter.record(ReconcileStatus.EXISTING)

        self._summary.deferred_unresolved = len(remaining)
        self.import_state.replace_deferred(remaining)
        self.reporter.complete_phase()
