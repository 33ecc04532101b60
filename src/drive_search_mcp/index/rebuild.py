"""Full rebuild of the search index from the source listing.

Steps:
1. Skip if the index is populated (unless forced)
2. Fetch every page of the listing, tolerating a bounded number of
   page failures
3. Clear the index and re-add records in fixed-size batches
4. Bootstrap the change cursor so incremental sync can take over
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..errors import (
    AggregateFailureError,
    DriveSearchError,
    InvalidRecordError,
    TransientFetchError,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from ..source import SourceConnector
    from .cursor import ChangeTracker
    from .engine import SearchIndexEngine
    from .schema import MetadataRecord

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_PAGE_DELAY = 0.1
DEFAULT_BATCH_DELAY = 0.05
DEFAULT_MAX_FETCH_FAILURES = 5
MAX_PAGE_ATTEMPTS = 3


@dataclass
class JobResult:
    """Result of a full rebuild."""

    success: bool
    records_indexed: int = 0
    elapsed_time: float = 0.0
    errors: list[str] = field(default_factory=list)
    skipped: bool = False
    message: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "recordsIndexed": self.records_indexed,
            "elapsedTime": round(self.elapsed_time, 3),
            "errors": list(self.errors),
            "skipped": self.skipped,
            "message": self.message,
        }


class RebuildJob:
    """
    Populates the index from a full source listing.

    The maintenance lock is shared with SyncCoordinator, so a rebuild and
    an incremental sync never mutate the index at the same time.
    """

    def __init__(
        self,
        engine: SearchIndexEngine,
        connector: SourceConnector,
        tracker: ChangeTracker,
        lock: threading.Lock | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        page_delay: float = DEFAULT_PAGE_DELAY,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        max_fetch_failures: int = DEFAULT_MAX_FETCH_FAILURES,
        max_page_attempts: int = MAX_PAGE_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._engine = engine
        self._connector = connector
        self._tracker = tracker
        self._lock = lock or threading.Lock()
        self.batch_size = max(batch_size, 1)
        self.page_delay = page_delay
        self.batch_delay = batch_delay
        self.max_fetch_failures = max_fetch_failures
        self.max_page_attempts = max(max_page_attempts, 1)
        self._sleep = sleep

    def full_rebuild(
        self,
        force: bool = False,
        progress_callback: Callable[[int, int | None, str], None] | None = None,
    ) -> JobResult:
        """
        Rebuild the index from the source.

        Args:
            force: Rebuild even if the index already holds documents
            progress_callback: Optional callback(current, total, message)

        Returns:
            JobResult; success is True when at least one record was
            indexed, even if some batches failed
        """
        start = time.perf_counter()
        errors: list[str] = []

        def result(success: bool, indexed: int = 0, **kwargs) -> JobResult:
            return JobResult(
                success=success,
                records_indexed=indexed,
                elapsed_time=time.perf_counter() - start,
                errors=errors,
                **kwargs,
            )

        with self._lock:
            logger.info("Starting full index rebuild (force=%s)", force)
            self._engine.initialize()

            existing = self._engine.document_count
            if existing > 0 and not force:
                logger.info(
                    "Index already exists with %d files. "
                    "Use force to re-index.",
                    existing,
                )
                return result(
                    True,
                    skipped=True,
                    message=f"Index already exists with {existing} files",
                )

            if not self._connector.is_authenticated():
                msg = "Source not authenticated. Please authenticate first."
                logger.error(msg)
                errors.append(msg)
                return result(False)

            try:
                fetched = self._fetch_all(errors, progress_callback)
            except DriveSearchError as e:
                msg = f"Indexing job failed: {e}"
                logger.error(msg)
                errors.append(msg)
                return result(False)

            logger.info("Fetched %d total files from source", len(fetched))
            if not fetched:
                return result(True, message="No files found")

            # Listings can repeat a file across pages; the last copy wins
            unique = list({record.id: record for record in fetched}.values())
            if len(unique) < len(fetched):
                logger.debug(
                    "Dropped %d duplicate records", len(fetched) - len(unique)
                )

            indexed = self._populate(unique, errors, progress_callback)

            final_count = self._engine.document_count
            logger.info(
                "Index verification: %d files in search index", final_count
            )
            if final_count != indexed:
                errors.append(
                    f"Index verification failed: indexed {indexed} "
                    f"but index holds {final_count}"
                )

            if indexed > 0:
                try:
                    self._tracker.initialize()
                except (DriveSearchError, OSError) as e:
                    msg = f"Failed to initialize change tracking: {e}"
                    logger.error(msg)
                    errors.append(msg)

            job = result(indexed > 0, indexed)

        logger.info(
            "Rebuild completed: %d/%d files indexed in %.0fms, %d errors",
            indexed,
            len(unique),
            job.elapsed_time * 1000,
            len(errors),
        )
        return job

    def _fetch_all(
        self,
        errors: list[str],
        progress_callback: Callable[[int, int | None, str], None] | None,
    ) -> list[MetadataRecord]:
        """
        Page through the full listing.

        A failed page is retried at the same cursor. After
        max_page_attempts failures of one page, pagination stops and the
        job continues with what was fetched. Once total failures exceed
        max_fetch_failures, the job is aborted.

        Raises:
            AuthenticationError: Credentials rejected mid-listing
            AggregateFailureError: Failure budget exhausted
        """
        records: list[MetadataRecord] = []
        cursor: str | None = None
        page_count = 0
        failures = 0
        attempts = 0

        while True:
            try:
                page = self._connector.list_page(cursor)
            except TransientFetchError as e:
                failures += 1
                attempts += 1
                msg = f"Failed to fetch page {page_count + 1}: {e}"
                logger.warning(msg)
                errors.append(msg)

                if failures > self.max_fetch_failures:
                    raise AggregateFailureError(
                        f"Too many page fetch failures ({failures})", errors
                    ) from e
                if attempts >= self.max_page_attempts:
                    logger.warning(
                        "Giving up on page %d, continuing with %d records",
                        page_count + 1,
                        len(records),
                    )
                    break
                self._sleep(self.page_delay)
                continue

            attempts = 0
            page_count += 1
            records.extend(page.records)
            logger.debug(
                "Page %d: fetched %d files (total: %d)",
                page_count,
                len(page.records),
                len(records),
            )
            if progress_callback:
                progress_callback(
                    len(records), None, f"Fetched {len(records)} files..."
                )

            cursor = page.next_cursor
            if not cursor:
                break
            self._sleep(self.page_delay)

        return records

    def _populate(
        self,
        records: list[MetadataRecord],
        errors: list[str],
        progress_callback: Callable[[int, int | None, str], None] | None,
    ) -> int:
        """Clear the index and add records batch by batch."""
        logger.info("Clearing existing index...")
        if not self._engine.replace_all([]):
            errors.append(
                f"Failed to persist cleared index: "
                f"{self._engine.last_save_error}"
            )

        total = len(records)
        indexed = 0
        for batch_number, offset in enumerate(
            range(0, total, self.batch_size), start=1
        ):
            batch = records[offset : offset + self.batch_size]
            try:
                persisted = self._engine.add_records(batch)
            except InvalidRecordError as e:
                msg = f"Failed to index batch {batch_number}: {e}"
                logger.error(msg)
                errors.append(msg)
                continue

            indexed += len(batch)
            if not persisted:
                errors.append(
                    f"Batch {batch_number} indexed but not persisted: "
                    f"{self._engine.last_save_error}"
                )
            logger.debug(
                "Indexed batch %d: %d files (total: %d/%d)",
                batch_number,
                len(batch),
                indexed,
                total,
            )
            if progress_callback:
                progress_callback(
                    indexed, total, f"Indexed {indexed} files..."
                )

            if offset + self.batch_size < total:
                self._sleep(self.batch_delay)

        return indexed
