"""Error taxonomy for the database to CMS import.

Only setup-time errors abort a run. Everything raised below the record level
is caught by the orchestrator at its own scope and reported.
"""

from __future__ import annotations


class Db2CmsError(Exception):
    """Base exception for all import errors."""

    pass


class SetupError(Db2CmsError):
    """Raised when a required external dependency is missing or unreachable.

    Fatal: the run is aborted before any record is processed.
    """

    pass


class MappingError(Db2CmsError):
    """Raised when a mapper cannot produce a batch from the raw rows."""

    pass


class RecordValidationError(Db2CmsError):
    """Raised for records that cannot be reconciled (unknown kind, duplicate id)."""

    def __init__(self, external_id: str, reason: str) -> None:
        self.external_id = external_id
        self.reason = reason
        super().__init__(f"Record {external_id or '<empty>'}: {reason}")


class CreationError(Db2CmsError):
    """Raised when the host store rejects a new content item."""

    def __init__(self, kind: str, title: str, reason: str) -> None:
        self.kind = kind
        self.title = title
        self.reason = reason
        super().__init__(f"Failed to create {kind} '{title}': {reason}")


class TermCreationError(Db2CmsError):
    """Raised when a taxonomy term cannot be created."""

    def __init__(self, taxonomy: str, name: str, reason: str) -> None:
        self.taxonomy = taxonomy
        self.name = name
        self.reason = reason
        super().__init__(f"Failed to import {taxonomy} '{name}': {reason}")


class AssetFetchError(Db2CmsError):
    """Raised when a remote asset cannot be downloaded or registered."""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"File {url} can not be downloaded: {reason}")
