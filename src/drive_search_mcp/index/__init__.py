"""In-memory search index over Drive file metadata.

This module provides:
- IndexManager: Main interface for rebuilding, syncing, and searching
- SearchIndexEngine: Inverted index + metadata map with snapshot persistence
- RebuildJob: Paginated full rebuild from the source listing
- SyncCoordinator: Periodic and on-demand incremental sync
- ChangeTracker: Change cursor persistence and bootstrap
"""

from .cursor import ChangeTracker
from .engine import SearchIndexEngine
from .manager import IndexManager, IndexStats
from .rebuild import JobResult, RebuildJob
from .schema import MetadataRecord
from .search import SearchResult
from .sync import SyncCoordinator, SyncResult

__all__ = [
    "ChangeTracker",
    "IndexManager",
    "IndexStats",
    "JobResult",
    "MetadataRecord",
    "RebuildJob",
    "SearchIndexEngine",
    "SearchResult",
    "SyncCoordinator",
    "SyncResult",
]
