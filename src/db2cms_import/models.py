"""Data model shared by the mapper, reconciler and orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Meta key whose value points at another record of the same batch.
THUMBNAIL_META_KEY = "_thumbnail_id"

# Optional fields an external record may carry, in host store vocabulary.
CONTENT_FIELDS: tuple[str, ...] = (
    "title",
    "content",
    "excerpt",
    "status",
    "slug",
    "date",
    "date_gmt",
    "author",
    "parent",
    "menu_order",
    "password",
    "comment_status",
    "ping_status",
)

# Defaults merged under every record before creation, then per kind.
CONTENT_DEFAULTS: dict[str, Any] = {"status": "draft"}
KIND_DEFAULTS: dict[str, dict[str, Any]] = {
    "page": {"comment_status": "closed", "ping_status": "closed"},
    "attachment": {"status": "inherit"},
}


@dataclass(frozen=True)
class MetaEntry:
    """A single post meta key/value pair."""

    key: str
    value: Any


@dataclass(frozen=True)
class ExternalRecord:
    """One row of the source system, normalized by a mapper.

    Attributes:
        external_id: Stable identifier in the source system.
        target_type: Content kind to create (e.g. "post", "page").
        title ... ping_status: Optional content fields.
        extra: Deployment-specific fields passed through to the host store.
        terms: Taxonomy name to ordered list of term names.
        post_meta: Ordered meta entries; values may be serialized.
        redirect_source: Legacy URL to redirect from.
    """

    external_id: str
    target_type: str
    title: str = ""
    content: str | None = None
    excerpt: str | None = None
    status: str | None = None
    slug: str | None = None
    date: str | None = None
    date_gmt: str | None = None
    author: int | None = None
    parent: int | None = None
    menu_order: int | None = None
    password: str | None = None
    comment_status: str | None = None
    ping_status: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    terms: dict[str, list[str]] = field(default_factory=dict)
    post_meta: tuple[MetaEntry, ...] = ()
    redirect_source: str | None = None

    def content_fields(self, defaults: dict[str, Any] | None = None) -> dict[str, Any]:
        """Return the set content fields merged over kind defaults.

        Args:
            defaults: Base defaults; CONTENT_DEFAULTS when omitted.
        """
        fields: dict[str, Any] = dict(CONTENT_DEFAULTS if defaults is None else defaults)
        fields.update(KIND_DEFAULTS.get(self.target_type, {}))
        for name in CONTENT_FIELDS:
            value = getattr(self, name)
            if value is not None:
                fields[name] = value
        fields.update(self.extra)
        return fields


@dataclass
class NormalizedBatch:
    """Mapper output for a single run, grouped by kind."""

    posts: list[ExternalRecord] = field(default_factory=list)
    authors: list[dict[str, Any]] = field(default_factory=list)
    categories: list[dict[str, Any]] = field(default_factory=list)
    tags: list[dict[str, Any]] = field(default_factory=list)
    terms: list[dict[str, Any]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.posts)


class ReconcileStatus(str, Enum):
    """Outcome of reconciling one record."""

    CREATED = "created"
    EXISTING = "existing"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconcileResult:
    """Result of IdentityReconciler.reconcile."""

    status: ReconcileStatus
    local_id: int | None = None
    reason: str | None = None

    @property
    def resolved(self) -> bool:
        """True when the record is mapped to a local item."""
        return self.status in (ReconcileStatus.CREATED, ReconcileStatus.EXISTING)

    @classmethod
    def created(cls, local_id: int) -> ReconcileResult:
        return cls(ReconcileStatus.CREATED, local_id)

    @classmethod
    def existing(cls, local_id: int) -> ReconcileResult:
        return cls(ReconcileStatus.EXISTING, local_id)

    @classmethod
    def skipped(cls, reason: str) -> ReconcileResult:
        return cls(ReconcileStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> ReconcileResult:
        return cls(ReconcileStatus.FAILED, reason=reason)


@dataclass(frozen=True)
class DeferredReference:
    """A pointer from a local item to a record that may not be imported yet.

    Attributes:
        local_id: Item holding the reference.
        referenced_external_id: External id the reference points at.
        field_name: Meta key holding the reference.
        stored_value: Value written during the per-record pass.
        kind: Content kind of the item holding the reference.
        written: Whether the host kept stored_value when it was first written.
    """

    local_id: int
    referenced_external_id: str
    field_name: str
    stored_value: Any = None
    kind: str | None = None
    written: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "local_id": self.local_id,
            "referenced_external_id": self.referenced_external_id,
            "field_name": self.field_name,
            "stored_value": self.stored_value,
            "kind": self.kind,
            "written": self.written,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeferredReference:
        """Create from dictionary."""
        return cls(
            local_id=int(data["local_id"]),
            referenced_external_id=str(data["referenced_external_id"]),
            field_name=str(data["field_name"]),
            stored_value=data.get("stored_value"),
            kind=data.get("kind"),
            written=bool(data.get("written", True)),
        )


@dataclass(frozen=True)
class MediaAsset:
    """A media entity registered in the host media store."""

    id: int
    url: str
    name: str = ""
    mime_type: str = ""


@dataclass(frozen=True)
class RedirectRule:
    """A permanent redirect from a legacy path to a new path."""

    source_path: str
    target_path: str
    status_code: int = 301
    group_id: int | None = None
    id: int | None = None
