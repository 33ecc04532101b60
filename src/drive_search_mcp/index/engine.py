"""SearchIndexEngine - owner of the inverted index and metadata map.

Provides:
- initialize(): Load the persisted snapshot (corruption degrades to empty)
- add/update/remove/replace_all/apply_changes(): Batch mutations, each
  followed by one snapshot write
- search(): Field-weighted fuzzy/prefix search with ranking boosts
- track_usage(): Open counters, persisted by a debounced flush

Thread Safety:
- Every operation runs under one instance-level RLock, so a mutation
  never interleaves with another mutation or a search
- The usage flush timer runs in a daemon thread and takes the same lock
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..errors import (
    CorruptPersistedStateError,
    IndexNotReadyError,
    InvalidRecordError,
    StoreError,
)
from .schema import (
    SNAPSHOT_VERSION,
    MetadataRecord,
    StoreKeys,
    project,
    record_from_dict,
    utc_now_iso,
)
from .search import InvertedIndex, SearchResult, rank

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from datetime import datetime

    from ..source import Change
    from ..store import DurableStore

logger = logging.getLogger(__name__)

DEFAULT_USAGE_FLUSH_SECONDS = 30.0
DEFAULT_USAGE_FLUSH_THRESHOLD = 25


@dataclass
class EngineStats:
    """Statistics about the in-memory index."""

    document_count: int
    is_ready: bool
    pending_usage: int


@dataclass
class ChangeCounts:
    """Outcome of applying a batch of change entries."""

    added: int = 0
    updated: int = 0
    removed: int = 0
    failed: int = 0
    persisted: bool = True


class SearchIndexEngine:
    """
    In-memory search index persisted to a DurableStore.

    The index snapshot and the metadata snapshot are written together
    (atomically when the store offers write_many()). On load, a pair whose
    id sets disagree is treated as corrupt and discarded.
    """

    def __init__(
        self,
        store: DurableStore,
        user_id: str = "default",
        usage_flush_seconds: float = DEFAULT_USAGE_FLUSH_SECONDS,
        usage_flush_threshold: int = DEFAULT_USAGE_FLUSH_THRESHOLD,
    ):
        """
        Initialize the engine (call initialize() before mutating).

        Args:
            store: Durable key-value store
            user_id: Namespace for store keys
            usage_flush_seconds: Max delay before usage changes are saved
            usage_flush_threshold: Pending usage changes forcing a save
        """
        self._store = store
        self.keys = StoreKeys.for_user(user_id)
        self._index = InvertedIndex()
        self._records: dict[str, MetadataRecord] = {}
        self._lock = threading.RLock()
        self._ready = False

        self._usage_flush_seconds = usage_flush_seconds
        self._usage_flush_threshold = max(usage_flush_threshold, 1)
        self._pending_usage = 0
        self._usage_timer: threading.Timer | None = None
        self.last_save_error: str | None = None

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def document_count(self) -> int:
        with self._lock:
            return len(self._index)

    # ─────────────────────────────────────────────────────────────────
    # Loading and saving
    # ─────────────────────────────────────────────────────────────────

    def initialize(self) -> None:
        """
        Load the persisted snapshot if one exists.

        Never raises for bad persisted data: a corrupt snapshot is
        discarded and the engine starts empty. Safe to call repeatedly.
        """
        with self._lock:
            if self._ready:
                return

            start = time.perf_counter()
            try:
                if self._store.exists(self.keys.index) and self._store.exists(
                    self.keys.metadata
                ):
                    index_json = self._store.read(self.keys.index)
                    metadata_json = self._store.read(self.keys.metadata)
                    try:
                        self._index, self._records = self.load_snapshot(
                            index_json, metadata_json
                        )
                        logger.info(
                            "Loaded search index with %d files in %.0fms",
                            len(self._index),
                            (time.perf_counter() - start) * 1000,
                        )
                    except CorruptPersistedStateError as e:
                        logger.warning(
                            "Failed to load existing index, "
                            "clearing corrupted data: %s",
                            e,
                        )
                        self._index = InvertedIndex()
                        self._records = {}
                        self._discard_persisted()
                else:
                    logger.info("No existing index found, starting fresh")
            except (StoreError, KeyError, OSError) as e:
                logger.error("Failed to load search index: %s", e)
                self._index = InvertedIndex()
                self._records = {}

            self._ready = True

    @staticmethod
    def load_snapshot(
        index_json: str, metadata_json: str
    ) -> tuple[InvertedIndex, dict[str, MetadataRecord]]:
        """
        Parse an index/metadata snapshot pair.

        Raises:
            CorruptPersistedStateError: On malformed JSON, an unknown
                snapshot version, or mismatched id sets
        """
        try:
            index_data = json.loads(index_json)
            metadata_data = json.loads(metadata_json)
        except (ValueError, TypeError, RecursionError) as e:
            raise CorruptPersistedStateError(f"Invalid JSON: {e}") from e

        if not isinstance(index_data, dict):
            raise CorruptPersistedStateError("Index snapshot is not an object")
        version = index_data.get("version")
        if version != SNAPSHOT_VERSION:
            raise CorruptPersistedStateError(
                f"Unsupported snapshot version {version!r}"
            )

        index = InvertedIndex.from_dict(index_data)

        records: dict[str, MetadataRecord] = {}
        try:
            for record_id, raw in metadata_data:
                record = record_from_dict(raw)
                if record.id != record_id:
                    raise CorruptPersistedStateError(
                        f"Metadata key {record_id!r} holds {record.id!r}"
                    )
                records[record_id] = record
        except (TypeError, ValueError, AttributeError) as e:
            raise CorruptPersistedStateError(
                f"Malformed metadata snapshot: {e}"
            ) from e

        if index.ids() != set(records):
            raise CorruptPersistedStateError(
                f"Index holds {len(index)} documents but metadata holds "
                f"{len(records)} records"
            )
        return index, records

    def to_snapshot(self) -> tuple[str, str]:
        """Serialize the index and metadata map to JSON strings."""
        with self._lock:
            index_json = json.dumps(
                {"version": SNAPSHOT_VERSION, **self._index.to_dict()},
                separators=(",", ":"),
            )
            metadata_json = json.dumps(
                [[rid, rec.to_dict()] for rid, rec in self._records.items()],
                separators=(",", ":"),
            )
        return index_json, metadata_json

    def save(self) -> bool:
        """
        Persist the snapshot pair.

        Returns:
            True if written; False if the store failed (the in-memory
            index stays authoritative for this run)
        """
        with self._lock:
            start = time.perf_counter()
            index_json, metadata_json = self.to_snapshot()
            items = [
                (self.keys.index, index_json),
                (self.keys.metadata, metadata_json),
            ]
            try:
                write_many = getattr(self._store, "write_many", None)
                if write_many is not None:
                    write_many(items)
                else:
                    for key, data in items:
                        self._store.write(key, data)
            except (StoreError, OSError) as e:
                self.last_save_error = str(e)
                logger.error("Failed to save search index: %s", e)
                return False

            self.last_save_error = None
            self._pending_usage = 0
            self._cancel_usage_timer()
            logger.debug(
                "Saved search index (%d files) in %.0fms",
                len(self._index),
                (time.perf_counter() - start) * 1000,
            )
            return True

    def _discard_persisted(self) -> None:
        """Drop this instance's persisted keys after corruption."""
        delete = getattr(self._store, "delete", None)
        clear = getattr(self._store, "clear", None)
        try:
            if delete is not None:
                for key in (self.keys.index, self.keys.metadata,
                            self.keys.cursor):
                    delete(key)
            elif clear is not None:
                clear()
            else:
                return
            logger.info("Cleared corrupted storage, starting fresh")
        except (StoreError, OSError) as e:
            logger.error("Could not clear corrupted storage: %s", e)

    # ─────────────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────────────

    def _require_ready(self) -> None:
        if not self._ready:
            raise IndexNotReadyError(
                "Search index not initialized. Call initialize() first."
            )

    def _insert(self, record: MetadataRecord) -> None:
        self._index.add(project(record))
        self._records[record.id] = record

    def _delete(self, record_id: str) -> bool:
        removed = self._index.remove(record_id)
        self._records.pop(record_id, None)
        return removed

    @staticmethod
    def _check_unique(records: list[MetadataRecord]) -> None:
        seen: set[str] = set()
        for record in records:
            if not record.id:
                raise InvalidRecordError(f"Record without id: {record!r}")
            if record.id in seen:
                raise InvalidRecordError(
                    f"Record {record.id!r} appears twice in one batch"
                )
            seen.add(record.id)

    def _check_new(self, records: list[MetadataRecord]) -> None:
        self._check_unique(records)
        for record in records:
            if record.id in self._records:
                raise InvalidRecordError(
                    f"Record {record.id!r} is already indexed"
                )

    def add_records(self, records: Iterable[MetadataRecord]) -> bool:
        """
        Add records whose ids are not yet indexed.

        Raises:
            InvalidRecordError: Missing or already-present ids (nothing is
                mutated in that case)
            IndexNotReadyError: Before initialize()

        Returns:
            True if the snapshot was persisted
        """
        batch = list(records)
        with self._lock:
            self._require_ready()
            self._check_new(batch)
            for record in batch:
                self._insert(record)
            return self.save()

    def update_records(self, records: Iterable[MetadataRecord]) -> bool:
        """Replace records by id (remove then re-add). Idempotent."""
        batch = list(records)
        with self._lock:
            self._require_ready()
            for record in batch:
                if not record.id:
                    raise InvalidRecordError(f"Record without id: {record!r}")
            for record in batch:
                self._delete(record.id)
                self._insert(record)
            return self.save()

    def remove_records(self, record_ids: Iterable[str]) -> bool:
        """Remove records by id; unknown ids are ignored."""
        ids = list(record_ids)
        with self._lock:
            self._require_ready()
            for record_id in ids:
                self._delete(record_id)
            return self.save()

    def replace_all(self, records: Iterable[MetadataRecord]) -> bool:
        """Clear the index and metadata, then repopulate."""
        batch = list(records)
        with self._lock:
            self._require_ready()
            self._check_unique(batch)
            self._index.clear()
            self._records.clear()
            for record in batch:
                self._insert(record)
            return self.save()

    def apply_changes(self, changes: Iterable[Change]) -> ChangeCounts:
        """
        Apply change-feed entries in order, then persist once.

        - removed, or no payload → remove (unknown ids ignored)
        - payload with a known id → update
        - otherwise → add
        """
        batch = list(changes)
        counts = ChangeCounts()
        with self._lock:
            self._require_ready()
            for change in batch:
                try:
                    if change.removed or change.record is None:
                        if self._delete(change.id):
                            counts.removed += 1
                    elif change.record.id in self._records:
                        self._delete(change.record.id)
                        self._insert(change.record)
                        counts.updated += 1
                    else:
                        self._check_new([change.record])
                        self._insert(change.record)
                        counts.added += 1
                except (ValueError, TypeError, AttributeError) as e:
                    logger.warning(
                        "Failed to process change for file %s: %s",
                        change.id,
                        e,
                    )
                    counts.failed += 1

            if batch:
                counts.persisted = self.save()

        logger.info(
            "Processed %d changes: +%d added, ~%d updated, -%d removed",
            len(batch),
            counts.added,
            counts.updated,
            counts.removed,
        )
        return counts

    # ─────────────────────────────────────────────────────────────────
    # Usage tracking
    # ─────────────────────────────────────────────────────────────────

    def track_usage(self, record_id: str) -> bool:
        """
        Count an open of a record for frequency ranking.

        The change is persisted by the usage flush: immediately once
        usage_flush_threshold changes are pending, otherwise at most
        usage_flush_seconds after the first pending change.

        Returns:
            False if the id is not indexed
        """
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return False
            record.open_count += 1
            record.last_opened_at = utc_now_iso()
            self._pending_usage += 1

            if self._pending_usage >= self._usage_flush_threshold:
                self.save()
            elif self._usage_timer is None:
                self._usage_timer = threading.Timer(
                    self._usage_flush_seconds, self._on_usage_timer
                )
                self._usage_timer.daemon = True
                self._usage_timer.start()
            return True

    def flush_usage(self) -> bool:
        """Persist pending usage changes now."""
        with self._lock:
            if self._pending_usage == 0:
                return True
            return self.save()

    def _on_usage_timer(self) -> None:
        with self._lock:
            self._usage_timer = None
            if self._pending_usage:
                self.save()

    def _cancel_usage_timer(self) -> None:
        if self._usage_timer is not None:
            self._usage_timer.cancel()
            self._usage_timer = None

    def close(self) -> None:
        """Flush pending usage and stop the flush timer."""
        with self._lock:
            if self._ready:
                self.flush_usage()
            self._cancel_usage_timer()

    # ─────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────

    def search(
        self,
        query: str,
        limit: int = 20,
        filter_predicate: Callable[[MetadataRecord], bool] | None = None,
        now: datetime | None = None,
    ) -> list[SearchResult]:
        """
        Search the index.

        Args:
            query: Free text; every token must match (fuzzy/prefix allowed)
            limit: Maximum results (default: 20)
            filter_predicate: Optional record filter applied before limit
            now: Reference time for recency (defaults to current UTC)

        Returns:
            Results in descending score order; [] for an empty query
        """
        if not query or not query.strip():
            return []

        with self._lock:
            if not self._ready:
                return []
            start = time.perf_counter()
            relevance = self._index.match(query)
            results = rank(
                relevance, self._records, limit, filter_predicate, now
            )

        logger.debug(
            "Search %r found %d results in %.1fms",
            query,
            len(results),
            (time.perf_counter() - start) * 1000,
        )
        return results

    def get_record(self, record_id: str) -> MetadataRecord | None:
        with self._lock:
            return self._records.get(record_id)

    def records(self) -> list[MetadataRecord]:
        with self._lock:
            return list(self._records.values())

    def indexed_ids(self) -> set[str]:
        with self._lock:
            return self._index.ids()

    def record_ids(self) -> set[str]:
        with self._lock:
            return set(self._records)

    def stats(self) -> EngineStats:
        with self._lock:
            return EngineStats(
                document_count=len(self._index),
                is_ready=self._ready,
                pending_usage=self._pending_usage,
            )
