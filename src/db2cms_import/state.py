"""Import state persistence for resumable runs.

Holds everything a run accumulates: the identity map, pending deferred
references, per-record outcomes and warnings. Saving the state after a run
and loading it into the next one makes already imported records fall under
the duplicate rule, so an interrupted import can be restarted.
"""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from db2cms_import.id_map import IdentityMap
from db2cms_import.models import DeferredReference, ReconcileResult, ReconcileStatus

# Current state file format version
STATE_VERSION = 1


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ImportStateError(Exception):
    """Base exception for import state errors."""

    pass


class StateVersionError(ImportStateError):
    """Raised when state file version is incompatible."""

    def __init__(self, version: int | None) -> None:
        self.version = version
        super().__init__(
            f"Unsupported state file version: {version}. "
            f"Expected version {STATE_VERSION}."
        )


class StateValidationError(ImportStateError):
    """Raised when state file format is invalid."""

    pass


@dataclass
class RecordOutcome:
    """Reported outcome of one record."""

    external_id: str
    status: ReconcileStatus
    local_id: int | None = None
    reason: str | None = None
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "external_id": self.external_id,
            "status": self.status.value,
            "local_id": self.local_id,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecordOutcome:
        """Create from dictionary."""
        local_id = data.get("local_id")
        return cls(
            external_id=str(data["external_id"]),
            status=ReconcileStatus(data["status"]),
            local_id=int(local_id) if local_id is not None else None,
            reason=data.get("reason"),
            timestamp=str(data.get("timestamp") or _now()),
        )


class ImportState:
    """Tracks and persists the state of an import.

    Example:
        >>> state = ImportState(target_kind="post")
        >>> state.id_map.add("42", 1001)
        >>> state.save("import_state.json")
        >>> ImportState.load("import_state.json").id_map.get("42")
        1001
    """

    def __init__(
        self,
        target_kind: str | None = None,
        cms_url: str | None = None,
        id_map: IdentityMap | None = None,
    ) -> None:
        self.target_kind = target_kind
        self.cms_url = cms_url
        self.id_map = id_map if id_map is not None else IdentityMap()

        self.start_time: str = _now()
        self.last_update_time: str = self.start_time

        self._deferred: list[DeferredReference] = []
        self._outcomes: list[RecordOutcome] = []
        self._warnings: list[str] = []

    @property
    def deferred(self) -> list[DeferredReference]:
        """Get pending deferred references."""
        return self._deferred.copy()

    @property
    def outcomes(self) -> list[RecordOutcome]:
        return self._outcomes.copy()

    @property
    def warnings(self) -> list[str]:
        """Get list of warnings collected during the import."""
        return self._warnings.copy()

    def _touch(self) -> None:
        self.last_update_time = _now()

    def add_deferred(self, reference: DeferredReference) -> None:
        self._deferred.append(reference)
        self._touch()

    def replace_deferred(self, references: list[DeferredReference]) -> None:
        """Replace the pending references, typically with the unresolved ones."""
        self._deferred = list(references)
        self._touch()

    def record_outcome(self, external_id: str, result: ReconcileResult) -> RecordOutcome:
        """Record the outcome of one record.

        Args:
            external_id: Source id of the record, possibly empty.
            result: The reconcile result.

        Returns:
            The stored outcome.
        """
        outcome = RecordOutcome(
            external_id=external_id,
            status=result.status,
            local_id=result.local_id,
            reason=result.reason,
        )
        self._outcomes.append(outcome)
        self._touch()
        return outcome

    def add_warning(self, message: str) -> None:
        """Add a warning message.

        Raises:
            ValueError: If message is empty.
        """
        if not message:
            raise ValueError("message cannot be empty")
        self._warnings.append(message)
        self._touch()

    def get_failures(self) -> list[RecordOutcome]:
        return [o for o in self._outcomes if o.status is ReconcileStatus.FAILED]

    def counts(self) -> dict[str, int]:
        """Count recorded outcomes per status."""
        counter = Counter(outcome.status.value for outcome in self._outcomes)
        return {status.value: counter.get(status.value, 0) for status in ReconcileStatus}

    def to_dict(self) -> dict[str, Any]:
        """Convert state to dictionary for JSON serialization."""
        return {
            "version": STATE_VERSION,
            "target_kind": self.target_kind,
            "cms_url": self.cms_url,
            "start_time": self.start_time,
            "last_update_time": self.last_update_time,
            "id_map": self.id_map.to_dict(),
            "deferred": [ref.to_dict() for ref in self._deferred],
            "outcomes": [outcome.to_dict() for outcome in self._outcomes],
            "warnings": self._warnings,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImportState:
        """Create state from dictionary.

        Raises:
            StateVersionError: If version is unsupported.
            StateValidationError: If data format is invalid.
        """
        version = data.get("version")
        if version != STATE_VERSION:
            raise StateVersionError(version)

        state = cls(target_kind=data.get("target_kind"), cms_url=data.get("cms_url"))
        state.start_time = str(data.get("start_time") or state.start_time)
        state.last_update_time = str(data.get("last_update_time") or state.last_update_time)

        try:
            state.id_map.merge(data.get("id_map", {"version": 1, "mappings": {}}))
        except ValueError as e:
            raise StateValidationError(f"Invalid id_map: {e}") from e

        for key in ("deferred", "outcomes", "warnings"):
            if not isinstance(data.get(key, []), list):
                raise StateValidationError(
                    f"Invalid {key}: expected list, got {type(data[key]).__name__}"
                )

        try:
            state._deferred = [DeferredReference.from_dict(d) for d in data.get("deferred", [])]
            state._outcomes = [RecordOutcome.from_dict(o) for o in data.get("outcomes", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise StateValidationError(f"Invalid state entry: {e}") from e

        state._warnings = [str(w) for w in data.get("warnings", [])]
        return state

    def save(self, path: str | Path) -> None:
        """Save state to a JSON file.

        Raises:
            OSError: If the file cannot be written.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, sort_keys=True)

    @classmethod
    def load(cls, path: str | Path) -> ImportState:
        """Load state from a JSON file.

        Raises:
            FileNotFoundError: If the file does not exist.
            StateVersionError: If version is unsupported.
            StateValidationError: If file format is invalid.
            json.JSONDecodeError: If file is not valid JSON.
        """
        path = Path(path)
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)

        if not isinstance(data, dict):
            raise StateValidationError(
                f"Invalid state file format: expected dict, got {type(data).__name__}"
            )
        return cls.from_dict(data)
