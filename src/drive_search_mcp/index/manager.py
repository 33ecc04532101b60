"""IndexManager - Central interface for the Drive search index.

Provides:
- rebuild(): Full rebuild from the source listing
- sync(): Incremental catch-up from the change cursor
- search(): Fuzzy/prefix search with recency and usage boosts
- get_stats(): Index statistics for status reporting

Components are wired explicitly here: one store, one engine, one change
tracker, one maintenance lock shared by the rebuild job and the sync
coordinator. Construct with from_config() or inject a store/connector.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ..config import (
    get_batch_delay_seconds,
    get_batch_size,
    get_index_path,
    get_max_fetch_failures,
    get_page_delay_seconds,
    get_staleness_minutes,
    get_usage_flush_seconds,
    get_usage_flush_threshold,
    get_user_id,
)
from ..store import SqliteStore
from .cursor import ChangeTracker
from .engine import SearchIndexEngine
from .rebuild import JobResult, RebuildJob
from .schema import parse_timestamp
from .search import SearchResult, filter_for_keys
from .sync import SyncCoordinator, SyncResult

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from pathlib import Path

    from ..source import SourceConnector
    from ..store import DurableStore
    from .schema import MetadataRecord

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class IndexStats:
    """Statistics about the search index."""

    file_count: int
    last_sync: datetime | None
    db_size_mb: float
    staleness_minutes: float | None
    periodic_sync_active: bool
    pending_usage: int


class IndexManager:
    """
    Manages the search index for one Drive account.

    The store is at ~/.drive-search-mcp/index.db by default.
    Use environment variables to customize:
    - DRIVE_SEARCH_INDEX_PATH: Database location
    - DRIVE_SEARCH_USER_ID: Store key namespace
    - DRIVE_SEARCH_STALENESS_MINUTES: Minutes before stale (15)

    Thread Safety:
    - The engine serializes mutations and searches with its own lock
    - Rebuild and sync share the maintenance lock
    - Periodic sync runs in a daemon thread
    """

    def __init__(
        self,
        store: DurableStore,
        connector: SourceConnector,
        user_id: str | None = None,
        *,
        batch_size: int | None = None,
        page_delay: float | None = None,
        batch_delay: float | None = None,
        max_fetch_failures: int | None = None,
        usage_flush_seconds: float | None = None,
        usage_flush_threshold: int | None = None,
        staleness_minutes: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Wire the index components.

        Unset options fall back to the environment configuration.
        """
        self.user_id = user_id or get_user_id()
        self.store = store
        self.connector = connector
        self.staleness_minutes = (
            staleness_minutes
            if staleness_minutes is not None
            else get_staleness_minutes()
        )

        self.engine = SearchIndexEngine(
            store,
            user_id=self.user_id,
            usage_flush_seconds=(
                usage_flush_seconds
                if usage_flush_seconds is not None
                else get_usage_flush_seconds()
            ),
            usage_flush_threshold=(
                usage_flush_threshold
                if usage_flush_threshold is not None
                else get_usage_flush_threshold()
            ),
        )
        self.tracker = ChangeTracker(store, connector, user_id=self.user_id)
        self._maintenance_lock = threading.Lock()

        self.rebuild_job = RebuildJob(
            self.engine,
            connector,
            self.tracker,
            self._maintenance_lock,
            batch_size=batch_size or get_batch_size(),
            page_delay=(
                page_delay if page_delay is not None
                else get_page_delay_seconds()
            ),
            batch_delay=(
                batch_delay if batch_delay is not None
                else get_batch_delay_seconds()
            ),
            max_fetch_failures=(
                max_fetch_failures
                if max_fetch_failures is not None
                else get_max_fetch_failures()
            ),
            sleep=sleep,
        )
        self.coordinator = SyncCoordinator(
            self.engine, connector, self.tracker, self._maintenance_lock
        )
        self._last_rebuild_at: datetime | None = None

    @classmethod
    def from_config(
        cls,
        db_path: Path | None = None,
        token: str | None = None,
    ) -> IndexManager:
        """
        Build a manager backed by SqliteStore and the Drive API.

        Args:
            db_path: Custom database path (uses config default if None)
            token: Bearer token (uses DRIVE_SEARCH_ACCESS_TOKEN if None)
        """
        from ..drive import DriveConnector

        store = SqliteStore(db_path or get_index_path())
        return cls(store, DriveConnector(token=token))

    # ─────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────

    def initialize(self) -> int:
        """
        Load the persisted index.

        Returns:
            Number of indexed files
        """
        self.engine.initialize()
        return self.engine.document_count

    def has_index(self) -> bool:
        """Check if the index holds any files."""
        self.engine.initialize()
        return self.engine.document_count > 0

    def close(self) -> None:
        """Stop background work, flush usage and release resources."""
        self.coordinator.stop_periodic_sync()
        self.engine.close()
        for resource in (self.store, self.connector):
            close = getattr(resource, "close", None)
            if close is not None:
                close()

    # ─────────────────────────────────────────────────────────────────
    # Maintenance
    # ─────────────────────────────────────────────────────────────────

    def rebuild(
        self,
        force: bool = False,
        progress_callback: Callable[[int, int | None, str], None] | None = None,
    ) -> JobResult:
        """
        Rebuild the index from a full source listing.

        Args:
            force: Rebuild even if the index already holds files
            progress_callback: Optional callback(current, total, message)
        """
        result = self.rebuild_job.full_rebuild(
            force=force, progress_callback=progress_callback
        )
        if result.success and not result.skipped:
            self._last_rebuild_at = datetime.now(timezone.utc)
        return result

    def sync(self) -> SyncResult:
        """Apply pending changes from the source change feed."""
        return self.coordinator.sync_once()

    def start_periodic_sync(self, interval: float) -> None:
        self.coordinator.start_periodic_sync(interval)

    def stop_periodic_sync(self) -> None:
        self.coordinator.stop_periodic_sync()

    @property
    def periodic_sync_active(self) -> bool:
        return self.coordinator.is_periodic_sync_active

    # ─────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────

    def search(
        self,
        query: str,
        limit: int = 20,
        types: Iterable[str] | None = None,
    ) -> list[SearchResult]:
        """
        Search the index.

        Args:
            query: Free text; every word must match (typos tolerated)
            limit: Maximum results (default: 20)
            types: Optional filter keys ("documents", "pdfs", ...)

        Raises:
            ValueError: On an unknown filter key
        """
        predicate = filter_for_keys(types or ())
        self.engine.initialize()
        return self.engine.search(query, limit=limit, filter_predicate=predicate)

    def recent_files(self, limit: int = 20) -> list[MetadataRecord]:
        """Most recently modified files first (the empty-query listing)."""
        if limit <= 0:
            return []
        self.engine.initialize()
        records = self.engine.records()
        records.sort(key=lambda r: r.name.lower())
        records.sort(
            key=lambda r: parse_timestamp(r.modified_at) or _EPOCH,
            reverse=True,
        )
        return records[:limit]

    def track_open(self, file_id: str) -> bool:
        """
        Record that a file was opened.

        Returns:
            False if the file is not indexed
        """
        self.engine.initialize()
        return self.engine.track_usage(file_id)

    def get_file(self, file_id: str) -> MetadataRecord | None:
        self.engine.initialize()
        return self.engine.get_record(file_id)

    # ─────────────────────────────────────────────────────────────────
    # Status
    # ─────────────────────────────────────────────────────────────────

    @property
    def last_sync(self) -> datetime | None:
        """Most recent successful sync or rebuild in this process."""
        times = [
            t
            for t in (self.coordinator.last_sync_at, self._last_rebuild_at)
            if t is not None
        ]
        return max(times) if times else None

    def get_stats(self) -> IndexStats:
        """
        Get index statistics.

        Returns:
            IndexStats with counts, size, and staleness info
        """
        self.engine.initialize()
        engine_stats = self.engine.stats()

        last_sync = self.last_sync
        staleness = None
        if last_sync is not None:
            delta = datetime.now(timezone.utc) - last_sync
            staleness = delta.total_seconds() / 60

        size_mb = getattr(self.store, "size_mb", None)
        return IndexStats(
            file_count=engine_stats.document_count,
            last_sync=last_sync,
            db_size_mb=size_mb() if size_mb is not None else 0.0,
            staleness_minutes=staleness,
            periodic_sync_active=self.periodic_sync_active,
            pending_usage=engine_stats.pending_usage,
        )

    def is_stale(self) -> bool:
        """Check if the index needs a sync."""
        last_sync = self.last_sync
        if last_sync is None:
            return True
        age = datetime.now(timezone.utc) - last_sync
        return age.total_seconds() / 60 > self.staleness_minutes
