"""Identity map for the database to CMS import.

Maps external record ids to local content ids for the duration of a run.
Entries are append-only: an external id is written at most once, and a
lookup for an id that was never written returns None.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

MAP_VERSION = 1


class IdentityMapError(Exception):
    """Base exception for IdentityMap errors."""

    pass


class DuplicateMappingError(IdentityMapError):
    """Raised when an external id is written twice."""

    def __init__(self, external_id: str, existing: int) -> None:
        self.external_id = external_id
        self.existing = existing
        super().__init__(
            f"External id '{external_id}' is already mapped to local id {existing}"
        )


def normalize_external_id(external_id: Any) -> str:
    """Normalize an external id to its string key.

    Integer and string ids from the source system share one namespace,
    so 42 and "42" address the same entry.
    """
    if external_id is None:
        return ""
    return str(external_id).strip()


class IdentityMap:
    """Maps external ids to local ids for one import run.

    Example:
        >>> id_map = IdentityMap()
        >>> id_map.add("42", 1001)
        >>> id_map.get(42)
        1001
        >>> id_map.get("43") is None
        True
    """

    def __init__(self) -> None:
        """Initialize an empty identity map."""
        self._mappings: dict[str, int] = {}

    def add(self, external_id: Any, local_id: int) -> None:
        """Record the local id for an external id.

        Args:
            external_id: The source system id.
            local_id: The id assigned by the host store.

        Raises:
            ValueError: If external_id is empty or local_id is not positive.
            DuplicateMappingError: If external_id is already mapped.
        """
        key = normalize_external_id(external_id)
        if not key:
            raise ValueError("external_id cannot be empty")
        if int(local_id) <= 0:
            raise ValueError("local_id must be a positive integer")

        existing = self._mappings.get(key)
        if existing is not None:
            raise DuplicateMappingError(key, existing)

        self._mappings[key] = int(local_id)

    def get(self, external_id: Any) -> int | None:
        """Get the local id for an external id, or None if absent."""
        return self._mappings.get(normalize_external_id(external_id))

    def has(self, external_id: Any) -> bool:
        """Check if an external id has been mapped."""
        return normalize_external_id(external_id) in self._mappings

    def local_ids(self) -> set[int]:
        """Get the set of distinct local ids."""
        return set(self._mappings.values())

    def items(self) -> Iterator[tuple[str, int]]:
        return iter(self._mappings.items())

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"version": MAP_VERSION, "mappings": dict(self._mappings)}

    def merge(self, data: dict[str, Any]) -> int:
        """Merge mappings from a serialized map.

        Entries already present are kept; loaded entries never overwrite
        them.

        Args:
            data: Dictionary produced by to_dict().

        Returns:
            Count of entries added.

        Raises:
            ValueError: If the data format is invalid.
        """
        if not isinstance(data, dict):
            raise ValueError(
                f"Invalid identity map format: expected dict, got {type(data).__name__}"
            )

        version = data.get("version")
        if version != MAP_VERSION:
            raise ValueError(f"Unsupported identity map version: {version}")

        mappings = data.get("mappings")
        if not isinstance(mappings, dict):
            raise ValueError("Invalid identity map format: missing or invalid 'mappings' field")

        added = 0
        for external_id, local_id in mappings.items():
            if self.has(external_id):
                continue
            self.add(external_id, int(local_id))
            added += 1
        return added

    def __contains__(self, external_id: object) -> bool:
        return self.has(external_id)

    def __len__(self) -> int:
        return len(self._mappings)

    def __repr__(self) -> str:
        return f"IdentityMap(total_mappings={len(self._mappings)})"
