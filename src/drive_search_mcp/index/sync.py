"""Incremental sync from the source change feed.

Catches the index up from the persisted change cursor:
- No cursor yet → bootstrap one (nothing to apply)
- Otherwise page through changes, apply them in one pass, then persist
  the terminal cursor

The cursor is written only after the changes are applied and the index
snapshot persisted. A crash in between leaves an index newer than the
cursor; replaying the same changes on the next sync is idempotent.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ..errors import (
    AuthenticationError,
    DriveSearchError,
    StoreError,
    TransientFetchError,
)
from .schema import is_folder

if TYPE_CHECKING:
    from ..source import Change, SourceConnector
    from .cursor import ChangeTracker
    from .engine import SearchIndexEngine

logger = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL = 300.0
STOP_TIMEOUT = 5.0


@dataclass
class SyncResult:
    """Result of one incremental sync."""

    success: bool
    changes_applied: int = 0
    error: str | None = None
    added: int = 0
    updated: int = 0
    removed: int = 0
    errors: list[str] = field(default_factory=list)
    elapsed_time: float = 0.0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "changesApplied": self.changes_applied,
            "error": self.error,
            "added": self.added,
            "updated": self.updated,
            "removed": self.removed,
            "errors": list(self.errors),
            "elapsedTime": round(self.elapsed_time, 3),
        }


def _keep_change(change: Change) -> bool:
    """Drop folders and payload-less entries that are not removals."""
    if change.removed:
        return True
    if change.record is None:
        return False
    return not is_folder(change.record)


class SyncCoordinator:
    """
    Runs incremental syncs on demand and on a fixed schedule.

    Usage:
        coordinator = SyncCoordinator(engine, connector, tracker, lock)
        coordinator.start_periodic_sync(300)
        # ... later ...
        coordinator.stop_periodic_sync()

    A sync never queues: a call made while another sync runs returns a
    failed result immediately. The maintenance lock is shared with
    RebuildJob, so a sync waits for a running rebuild.
    """

    def __init__(
        self,
        engine: SearchIndexEngine,
        connector: SourceConnector,
        tracker: ChangeTracker,
        lock: threading.Lock | None = None,
    ):
        self._engine = engine
        self._connector = connector
        self._tracker = tracker
        self._lock = lock or threading.Lock()

        self._state_lock = threading.Lock()
        self._syncing = False
        self._last_sync_at: datetime | None = None
        self._last_result: SyncResult | None = None

        self._stop_event: threading.Event | None = None
        self._thread: threading.Thread | None = None
        self._interval: float | None = None

    # ─────────────────────────────────────────────────────────────────
    # State
    # ─────────────────────────────────────────────────────────────────

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def is_periodic_sync_active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def interval(self) -> float | None:
        return self._interval

    @property
    def last_sync_at(self) -> datetime | None:
        """Completion time of the last successful sync (UTC)."""
        return self._last_sync_at

    @property
    def last_result(self) -> SyncResult | None:
        return self._last_result

    # ─────────────────────────────────────────────────────────────────
    # Sync
    # ─────────────────────────────────────────────────────────────────

    def initialize_change_tracking(self) -> str:
        """Fetch and persist a fresh change cursor."""
        return self._tracker.initialize()

    def sync_once(self) -> SyncResult:
        """
        Run one incremental sync.

        Returns:
            SyncResult; never raises for fetch or auth failures
        """
        with self._state_lock:
            if self._syncing:
                logger.debug("Sync already in progress, skipping")
                return SyncResult(
                    success=False, error="Sync already in progress"
                )
            self._syncing = True

        start = time.perf_counter()
        try:
            result = self._sync(start)
        finally:
            with self._state_lock:
                self._syncing = False

        result.elapsed_time = time.perf_counter() - start
        self._last_result = result
        if result.success:
            self._last_sync_at = datetime.now(timezone.utc)
        return result

    def _sync(self, start: float) -> SyncResult:
        if not self._connector.is_authenticated():
            logger.warning("Sync skipped: source not authenticated")
            return SyncResult(success=False, error="Not authenticated")

        with self._lock:
            self._engine.initialize()

            cursor = self._tracker.load()
            if cursor is None:
                try:
                    self._tracker.ensure()
                except (
                    AuthenticationError,
                    TransientFetchError,
                    StoreError,
                ) as e:
                    logger.error("Failed to initialize change tracking: %s", e)
                    return SyncResult(success=False, error=str(e))
                return SyncResult(success=True)

            errors: list[str] = []
            try:
                changes, terminal = self._fetch_changes(cursor, errors)
            except DriveSearchError as e:
                logger.error("Sync failed: %s", e)
                return SyncResult(success=False, error=str(e), errors=errors)

            counts = self._engine.apply_changes(changes) if changes else None
            if counts is not None and not counts.persisted:
                errors.append(
                    "Changes applied but index not persisted: "
                    f"{self._engine.last_save_error}"
                )
                if terminal:
                    # Keep the old cursor so the changes are replayed
                    errors.append(
                        "Change token not advanced; changes will be "
                        "fetched again on the next sync"
                    )
                    terminal = None

            if terminal:
                try:
                    self._tracker.save(terminal)
                except StoreError as e:
                    msg = f"Failed to persist change token: {e}"
                    logger.error(msg)
                    errors.append(msg)

        result = SyncResult(
            success=True,
            changes_applied=len(changes),
            errors=errors,
        )
        if counts is not None:
            result.added = counts.added
            result.updated = counts.updated
            result.removed = counts.removed
            if counts.failed:
                errors.append(f"{counts.failed} changes could not be applied")

        logger.info(
            "Sync completed: %d changes applied in %.0fms",
            result.changes_applied,
            (time.perf_counter() - start) * 1000,
        )
        return result

    def _fetch_changes(
        self, cursor: str, errors: list[str]
    ) -> tuple[list[Change], str | None]:
        """
        Page through the change feed from cursor.

        Returns:
            (kept changes, terminal cursor or None). The terminal cursor
            is None when paging stopped early.

        Raises:
            AuthenticationError: Credentials rejected mid-feed
        """
        changes: list[Change] = []
        page_cursor: str | None = cursor
        page_count = 0

        while page_cursor:
            try:
                page = self._connector.get_changes_page(page_cursor)
            except TransientFetchError as e:
                msg = f"Failed to fetch changes page {page_count + 1}: {e}"
                logger.warning(msg)
                errors.append(msg)
                return changes, None

            page_count += 1
            kept = [c for c in page.changes if _keep_change(c)]
            changes.extend(kept)
            logger.debug(
                "Changes page %d: %d entries, %d kept",
                page_count,
                len(page.changes),
                len(kept),
            )

            if page.terminal_cursor:
                return changes, page.terminal_cursor
            page_cursor = page.next_page_cursor

        return changes, None

    # ─────────────────────────────────────────────────────────────────
    # Periodic sync
    # ─────────────────────────────────────────────────────────────────

    def start_periodic_sync(
        self, interval: float = DEFAULT_SYNC_INTERVAL
    ) -> None:
        """
        Sync now, then every interval seconds in a daemon thread.

        Replaces any running schedule. Ticks missed while a sync overran
        are dropped.
        """
        if interval <= 0:
            raise ValueError(f"Sync interval must be positive: {interval}")

        self.stop_periodic_sync()

        stop_event = threading.Event()
        self._stop_event = stop_event
        self._interval = interval
        self._thread = threading.Thread(
            target=self._sync_loop,
            args=(interval, stop_event),
            name="PeriodicSync",
            daemon=True,
        )
        self._thread.start()
        logger.info("Periodic sync started (every %ss)", interval)

    def stop_periodic_sync(self, timeout: float = STOP_TIMEOUT) -> None:
        """Stop the schedule and wait briefly for the thread."""
        if self._stop_event is None:
            return
        self._stop_event.set()
        if (
            self._thread is not None
            and self._thread.is_alive()
            and self._thread is not threading.current_thread()
        ):
            self._thread.join(timeout=timeout)
        self._thread = None
        self._stop_event = None
        self._interval = None
        logger.info("Periodic sync stopped")

    def _sync_loop(self, interval: float, stop_event: threading.Event) -> None:
        """Fixed-rate schedule (runs in background thread)."""
        next_run = time.monotonic()
        while not stop_event.is_set():
            try:
                result = self.sync_once()
            except Exception:  # Broad: any failure in one tick
                logger.exception("Scheduled sync crashed")
            else:
                if not result.success:
                    logger.warning("Scheduled sync failed: %s", result.error)

            next_run += interval
            now = time.monotonic()
            if next_run <= now:
                missed = int((now - next_run) // interval) + 1
                logger.debug("Sync overran, dropping %d ticks", missed)
                next_run += missed * interval

            if stop_event.wait(next_run - now):
                break
