"""Extension points fired by the import orchestrator.

A deployment customises a run by registering handlers on named stages of a
HookRegistry instead of patching the importer. Two kinds of stage exist:

- Filter: handlers receive the current value plus context and return the
  (possibly replaced) value, in registration order.
- Observer: handlers receive an event snapshot and return nothing.

Example:
    >>> hooks = HookRegistry()
    >>> @hooks.record_normalized.register
    ... def drop_drafts(record):
    ...     return None if record.status == "draft" else record
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from db2cms_import.errors import TermCreationError
from db2cms_import.id_map import IdentityMap
from db2cms_import.models import ExternalRecord, MediaAsset, MetaEntry, ReconcileResult

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E")


class UnknownStageError(KeyError):
    """Raised when a stage name is not part of the registry."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown extension stage: '{name}'")


class Filter(Generic[T]):
    """A named stage whose handlers transform a value in turn."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._handlers: list[Callable[..., T]] = []

    def register(self, handler: Callable[..., T]) -> Callable[..., T]:
        """Register a handler. Usable as a decorator."""
        self._handlers.append(handler)
        return handler

    def apply(self, value: T, *context: Any) -> T:
        """Pass value through every handler and return the result."""
        for handler in self._handlers:
            value = handler(value, *context)
        return value

    def __len__(self) -> int:
        return len(self._handlers)

    def __repr__(self) -> str:
        return f"Filter({self.name!r}, handlers={len(self._handlers)})"


class Observer(Generic[E]):
    """A named stage whose handlers are notified of an event."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._handlers: list[Callable[[E], None]] = []

    def register(self, handler: Callable[[E], None]) -> Callable[[E], None]:
        """Register a handler. Usable as a decorator."""
        self._handlers.append(handler)
        return handler

    def notify(self, event: E) -> None:
        for handler in self._handlers:
            handler(event)

    def __len__(self) -> int:
        return len(self._handlers)

    def __repr__(self) -> str:
        return f"Observer({self.name!r}, handlers={len(self._handlers)})"


@dataclass(frozen=True)
class RecordReconciled:
    record: ExternalRecord
    result: ReconcileResult


@dataclass(frozen=True)
class TermsAttached:
    record: ExternalRecord
    local_id: int
    term_ids: dict[str, list[int]]
    failures: list[TermCreationError] = field(default_factory=list)


@dataclass(frozen=True)
class MetadataAttached:
    record: ExternalRecord
    local_id: int
    entries: list[MetaEntry]


@dataclass(frozen=True)
class RecordCompleted:
    record: ExternalRecord
    result: ReconcileResult
    content_updated: bool = False


@dataclass(frozen=True)
class RunCompleted:
    counts: dict[str, int]
    id_map: IdentityMap


class HookRegistry:
    """Registry of every named stage the orchestrator fires.

    Observers fire per run in this order: batch_received, record_normalized,
    record_reconciled, terms_attached, metadata_attached, record_completed,
    run_completed. The remaining filters fire inside the reconciler and the
    asset resolver.
    """

    def __init__(self) -> None:
        # Batch and record level
        self.batch_received: Filter[list[ExternalRecord]] = Filter("batch_received")
        self.record_normalized: Filter[ExternalRecord | None] = Filter("record_normalized")
        self.record_reconciled: Observer[RecordReconciled] = Observer("record_reconciled")
        self.record_completed: Observer[RecordCompleted] = Observer("record_completed")
        self.run_completed: Observer[RunCompleted] = Observer("run_completed")

        # Reconciliation
        self.existing_match: Filter[int | None] = Filter("existing_match")
        self.content_fields: Filter[dict[str, Any]] = Filter("content_fields")

        # Terms and metadata
        self.record_terms: Filter[dict[str, list[str]]] = Filter("record_terms")
        self.terms_attached: Observer[TermsAttached] = Observer("terms_attached")
        self.record_meta: Filter[list[MetaEntry]] = Filter("record_meta")
        self.meta_key: Filter[str] = Filter("meta_key")
        self.meta_value: Filter[Any] = Filter("meta_value")
        self.metadata_attached: Observer[MetadataAttached] = Observer("metadata_attached")

        # Assets
        self.image_url: Filter[str] = Filter("image_url")
        self.file_url: Filter[str] = Filter("file_url")
        self.media_lookup: Filter[MediaAsset | None] = Filter("media_lookup")

    def stage(self, name: str) -> Filter[Any] | Observer[Any]:
        """Look up a stage by name.

        Raises:
            UnknownStageError: If no stage has that name.
        """
        stage = getattr(self, name, None)
        if not isinstance(stage, (Filter, Observer)):
            raise UnknownStageError(name)
        return stage

    def register(self, name: str, handler: Callable[..., Any]) -> None:
        """Register a handler on the stage called name."""
        self.stage(name).register(handler)

    def stage_names(self) -> list[str]:
        return [
            name
            for name, value in vars(self).items()
            if isinstance(value, (Filter, Observer))
        ]

    def load_plugin(self, spec: str) -> None:
        """Import "module:function" and call it with this registry.

        Raises:
            ValueError: If spec is not in module:function form.
            ImportError: If the module cannot be imported.
            AttributeError: If the function does not exist.
        """
        module_name, sep, func_name = spec.partition(":")
        if not sep or not module_name or not func_name:
            raise ValueError(f"Invalid plugin spec '{spec}', expected module:function")

        module = importlib.import_module(module_name)
        setup = getattr(module, func_name)
        setup(self)
        logger.info(f"Loaded extension plugin {spec}")
