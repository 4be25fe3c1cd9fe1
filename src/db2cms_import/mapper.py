"""Record mappers turning raw source rows into a NormalizedBatch.

A mapper is pure: it performs no network or storage I/O. It either
produces a best-effort batch or raises MappingError, which aborts the run.
Per-record validation is left to the reconciler.

ColumnMapper covers the common case with a declarative JSON file:

    {
      "id": "legacy_id",
      "target_type": "kind",
      "fields": {"title": "headline", "content": "body", "subtitle": "deck"},
      "terms": {"category": {"column": "sections", "separator": "|"}},
      "meta": {"_thumbnail_id": "image_id"},
      "redirect_source": "old_url",
      "defaults": {"status": "publish"}
    }

Fields that are not content fields (subtitle above) end up in
ExternalRecord.extra. Deployments with irregular sources implement
RecordMapper and pass it as "module:Class".
"""

from __future__ import annotations

import importlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from db2cms_import.errors import MappingError
from db2cms_import.models import CONTENT_FIELDS, ExternalRecord, MetaEntry, NormalizedBatch

logger = logging.getLogger(__name__)

INTEGER_FIELDS = frozenset({"author", "parent", "menu_order"})


def maybe_unserialize(value: Any) -> Any:
    """Decode a serialized meta value, or return it unchanged.

    Strings holding a JSON object or array are decoded; anything else,
    including malformed JSON, is returned as is.
    """
    if not isinstance(value, str):
        return value
    stripped = value.strip()
    if not stripped or stripped[0] not in "[{":
        return value
    try:
        return json.loads(stripped)
    except ValueError:
        return value


def split_terms(value: Any, separator: str) -> list[str]:
    """Split a term column into an ordered list of non-empty names."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        names = [str(v) for v in value]
    else:
        names = str(value).split(separator)
    return [name.strip() for name in names if name and name.strip()]


class RecordMapper(ABC):
    """Maps raw source rows to a NormalizedBatch."""

    @abstractmethod
    def map(self, rows: Sequence[Mapping[str, Any]], target_kind: str) -> NormalizedBatch:
        """Map rows for target_kind.

        Raises:
            MappingError: If the rows cannot be mapped at all.
        """
        ...


class TermColumn(BaseModel):
    """Column holding delimited term names."""

    column: str
    separator: str = ","


class ColumnMapping(BaseModel):
    """Declarative row to record mapping."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(description="Column holding the external id")
    target_type: str | None = Field(
        default=None, description="Column overriding the target kind per row"
    )
    fields: dict[str, str] = Field(default_factory=dict)
    terms: dict[str, TermColumn | str] = Field(default_factory=dict)
    meta: dict[str, str] = Field(default_factory=dict)
    redirect_source: str | None = None
    defaults: dict[str, Any] = Field(default_factory=dict)
    strict: bool = Field(
        default=True, description="Fail when a mapped column is missing from a row"
    )

    @classmethod
    def default(cls) -> ColumnMapping:
        """Mapping for rows whose columns are already named after content fields."""
        return cls(
            id="id",
            target_type="type",
            fields={name: name for name in CONTENT_FIELDS},
            redirect_source="redirect_source",
            strict=False,
        )


def load_mapping(path: str | Path) -> ColumnMapping:
    """Load a ColumnMapping from a JSON file.

    Raises:
        MappingError: If the file cannot be read or is not a valid mapping.
    """
    path = Path(path)
    try:
        return ColumnMapping.model_validate_json(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise MappingError(f"Cannot read mapping file {path}: {e}") from e
    except ValidationError as e:
        raise MappingError(f"Invalid mapping file {path}: {e}") from e


class ColumnMapper(RecordMapper):
    """Maps rows column by column according to a ColumnMapping."""

    def __init__(self, mapping: ColumnMapping | None = None) -> None:
        self.mapping = mapping or ColumnMapping.default()

    def _column(self, row: Mapping[str, Any], column: str, index: int) -> Any:
        if column not in row:
            if self.mapping.strict:
                raise MappingError(f"Column '{column}' not found in source row {index}")
            return None
        return row[column]

    def map(self, rows: Sequence[Mapping[str, Any]], target_kind: str) -> NormalizedBatch:
        batch = NormalizedBatch()
        for index, row in enumerate(rows):
            batch.posts.append(self.map_row(row, target_kind, index))
        logger.info(f"Mapped {len(batch)} rows to {target_kind} records")
        return batch

    def map_row(self, row: Mapping[str, Any], target_kind: str, index: int = 0) -> ExternalRecord:
        """Map a single row to an ExternalRecord.

        Raises:
            MappingError: If a mapped column is missing in strict mode or a
                numeric field holds a non-numeric value.
        """
        mapping = self.mapping
        if mapping.id not in row:
            raise MappingError(f"Id column '{mapping.id}' not found in source row {index}")

        external_id = row[mapping.id]
        kind = target_kind
        if mapping.target_type:
            kind = self._column(row, mapping.target_type, index) or target_kind

        values: dict[str, Any] = dict(mapping.defaults)
        for name, column in mapping.fields.items():
            value = self._column(row, column, index)
            if value is not None:
                values[name] = value

        content: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for name, value in values.items():
            if name not in CONTENT_FIELDS:
                extra[name] = value
            elif name in INTEGER_FIELDS:
                try:
                    content[name] = int(value)
                except (TypeError, ValueError) as e:
                    raise MappingError(
                        f"Field '{name}' of row {index} is not an integer: {value!r}"
                    ) from e
            else:
                content[name] = str(value)

        terms: dict[str, list[str]] = {}
        for taxonomy, spec in mapping.terms.items():
            if isinstance(spec, str):
                spec = TermColumn(column=spec)
            names = split_terms(self._column(row, spec.column, index), spec.separator)
            if names:
                terms[taxonomy] = names

        post_meta: list[MetaEntry] = []
        for key, column in mapping.meta.items():
            value = self._column(row, column, index)
            if value is not None:
                post_meta.append(MetaEntry(key=key, value=value))

        redirect_source = None
        if mapping.redirect_source:
            redirect_source = self._column(row, mapping.redirect_source, index) or None

        return ExternalRecord(
            external_id="" if external_id is None else str(external_id).strip(),
            target_type=str(kind),
            extra=extra,
            terms=terms,
            post_meta=tuple(post_meta),
            redirect_source=redirect_source,
            **content,
        )


def load_mapper(spec: str) -> RecordMapper:
    """Instantiate a custom mapper given as "module:Class".

    Raises:
        MappingError: If the class cannot be imported or is not a RecordMapper.
    """
    module_name, sep, class_name = spec.partition(":")
    if not sep or not module_name or not class_name:
        raise MappingError(f"Invalid mapper spec '{spec}', expected module:Class")

    try:
        mapper_class = getattr(importlib.import_module(module_name), class_name)
    except (ImportError, AttributeError) as e:
        raise MappingError(f"Cannot load mapper '{spec}': {e}") from e

    if not (isinstance(mapper_class, type) and issubclass(mapper_class, RecordMapper)):
        raise MappingError(f"Mapper '{spec}' is not a RecordMapper subclass")
    return mapper_class()
