"""
Drive Search MCP Server

Provides MCP tools for finding Google Drive files by name and type.
Search runs against an in-memory index kept fresh by incremental sync.

TOOLS (5 total):
- search(query, limit?, types?) - Fuzzy/prefix file search
- recent_files(limit?) - Most recently modified files
- track_open(file_id) - Record a file open (boosts its ranking)
- index_status() - Index statistics
- sync_now() - Apply pending Drive changes immediately
"""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING

from typing_extensions import TypedDict

from fastmcp import FastMCP

if TYPE_CHECKING:
    from .index import IndexManager
    from .index.schema import MetadataRecord

mcp = FastMCP("Drive Search")


# ========== Response Type Definitions ==========


class FileSummary(TypedDict, total=False):
    """A Drive file (used in search and listing results)."""

    id: str
    name: str
    mimeType: str
    category: str
    modifiedTime: str | None
    size: int | None
    webViewLink: str | None
    openCount: int
    score: float


class TrackResult(TypedDict):
    """Result of recording a file open."""

    success: bool
    fileId: str
    openCount: int


class IndexStatus(TypedDict):
    """Index statistics."""

    fileCount: int
    lastSync: str | None
    stalenessMinutes: float | None
    isStale: bool
    periodicSyncActive: bool
    authenticated: bool
    databaseSizeMb: float


# ========== Helper Functions ==========

_manager: IndexManager | None = None
_manager_lock = threading.Lock()


def set_index_manager(manager: IndexManager | None) -> None:
    """Install the IndexManager the tools operate on."""
    global _manager
    with _manager_lock:
        _manager = manager


def _get_index_manager() -> IndexManager:
    """Get the installed IndexManager, building one from config if unset."""
    global _manager
    with _manager_lock:
        if _manager is None:
            from .index import IndexManager

            _manager = IndexManager.from_config()
        return _manager


def _file_summary(record: MetadataRecord) -> FileSummary:
    return {
        "id": record.id,
        "name": record.name,
        "mimeType": record.mime_type,
        "category": record.category,
        "modifiedTime": record.modified_at,
        "size": record.size,
        "webViewLink": record.web_view_link,
        "openCount": record.open_count,
    }


# Module-level lock to prevent duplicate concurrent syncs
_sync_lock = asyncio.Lock()


# ========== MCP Tools (5 total) ==========


@mcp.tool
async def search(
    query: str,
    limit: int = 20,
    types: list[str] | None = None,
) -> list[FileSummary]:
    """
    Search Drive files by name and type.

    Every word in the query must match. Typos and partial words are
    tolerated ("budgt" finds "Budget", "pres" finds "presentation").
    Recently modified and frequently opened files rank higher.

    Args:
        query: Search words
        limit: Maximum results (default: 20)
        types: Optional file type filters. Any of: documents,
            spreadsheets, presentations, folders, pdfs, images,
            videos, audio

    Returns:
        Matching files, best match first

    Examples:
        >>> search("budget 2024")
        >>> search("roadmap", types=["presentations"])
    """
    manager = _get_index_manager()

    # Auto-sync stale index before search
    if manager.is_stale():
        async with _sync_lock:
            if manager.is_stale():  # double-check
                await asyncio.to_thread(manager.sync)

    results = await asyncio.to_thread(manager.search, query, limit, types)
    return [
        {**_file_summary(r.record), "score": round(r.score, 4)}
        for r in results
    ]


@mcp.tool
async def recent_files(limit: int = 20) -> list[FileSummary]:
    """
    List the most recently modified files.

    Args:
        limit: Maximum files (default: 20)
    """
    manager = _get_index_manager()
    records = await asyncio.to_thread(manager.recent_files, limit)
    return [_file_summary(r) for r in records]


@mcp.tool
async def track_open(file_id: str) -> TrackResult:
    """
    Record that a file was opened.

    Frequently opened files rank higher in search results.

    Args:
        file_id: Drive file id
    """
    manager = _get_index_manager()
    tracked = await asyncio.to_thread(manager.track_open, file_id)
    record = manager.get_file(file_id) if tracked else None
    return {
        "success": tracked,
        "fileId": file_id,
        "openCount": record.open_count if record else 0,
    }


@mcp.tool
async def index_status() -> IndexStatus:
    """Show index statistics (file count, last sync, staleness)."""
    manager = _get_index_manager()
    stats = await asyncio.to_thread(manager.get_stats)
    return {
        "fileCount": stats.file_count,
        "lastSync": stats.last_sync.isoformat() if stats.last_sync else None,
        "stalenessMinutes": (
            round(stats.staleness_minutes, 1)
            if stats.staleness_minutes is not None
            else None
        ),
        "isStale": manager.is_stale(),
        "periodicSyncActive": stats.periodic_sync_active,
        "authenticated": manager.connector.is_authenticated(),
        "databaseSizeMb": round(stats.db_size_mb, 2),
    }


@mcp.tool
async def sync_now() -> dict:
    """
    Apply pending Drive changes to the index now.

    Returns:
        Sync result with changesApplied, added, updated, removed
    """
    manager = _get_index_manager()
    async with _sync_lock:
        result = await asyncio.to_thread(manager.sync)
    return result.to_dict()

