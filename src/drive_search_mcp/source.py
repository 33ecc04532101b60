"""Source connector protocol consumed by the rebuild job and sync.

A connector lists file metadata page by page and exposes a change feed
addressed by opaque cursors. DriveConnector (drive.py) is the shipped
implementation; tests use scripted fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from .index.schema import MetadataRecord


@dataclass
class ListPage:
    """One page of a full listing."""

    records: list[MetadataRecord]
    next_cursor: str | None = None


@dataclass
class Change:
    """One entry of the change feed.

    record is None when the source sent no payload (e.g. access revoked).
    """

    id: str
    removed: bool = False
    record: MetadataRecord | None = None


@dataclass
class ChangesPage:
    """One page of the change feed.

    terminal_cursor is set on the last page (caught up);
    next_page_cursor is set while more pages remain.
    """

    changes: list[Change] = field(default_factory=list)
    next_page_cursor: str | None = None
    terminal_cursor: str | None = None


@runtime_checkable
class SourceConnector(Protocol):
    """Remote provider of paginated file metadata and a change feed.

    Implementations raise AuthenticationError for credential problems and
    TransientFetchError for retryable page failures.
    """

    def authenticate(self) -> bool: ...

    def is_authenticated(self) -> bool: ...

    def list_page(self, cursor: str | None = None) -> ListPage: ...

    def get_changes_page(self, cursor: str) -> ChangesPage: ...

    def get_fresh_cursor(self) -> str: ...
