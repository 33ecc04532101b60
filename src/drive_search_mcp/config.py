"""Configuration for the Drive search index."""

import os
from pathlib import Path

# Default store location
DEFAULT_INDEX_PATH = Path.home() / ".drive-search-mcp" / "index.db"


def get_index_path() -> Path:
    """
    Get the SQLite store path holding the index snapshot and change cursor.

    Set DRIVE_SEARCH_INDEX_PATH to customize the location.
    Defaults to ~/.drive-search-mcp/index.db

    Returns:
        Path to the store database file.
    """
    env_path = os.environ.get("DRIVE_SEARCH_INDEX_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_INDEX_PATH


def get_user_id() -> str:
    """
    Get the user id used to namespace store keys.

    Set DRIVE_SEARCH_USER_ID to keep several indexes in one store.
    Defaults to "default".
    """
    return os.environ.get("DRIVE_SEARCH_USER_ID", "default")


def get_access_token() -> str | None:
    """
    Get the Drive API bearer token.

    Token acquisition (OAuth) happens outside this package; export an
    already-issued token as DRIVE_SEARCH_ACCESS_TOKEN.

    Returns:
        Token string or None when not configured.
    """
    return os.environ.get("DRIVE_SEARCH_ACCESS_TOKEN") or None


# ========== Sync Configuration ==========


def get_sync_interval_seconds() -> float:
    """
    Get the periodic sync interval.

    Set DRIVE_SEARCH_SYNC_INTERVAL to customize.
    Defaults to 300 seconds (5 minutes).
    """
    return float(os.environ.get("DRIVE_SEARCH_SYNC_INTERVAL", "300"))


def get_staleness_minutes() -> float:
    """
    Get the staleness threshold for the index.

    After this many minutes without a successful sync, searches served by
    the MCP server trigger a catch-up sync first.

    Set DRIVE_SEARCH_STALENESS_MINUTES to customize.
    Defaults to 15 minutes.
    """
    return float(os.environ.get("DRIVE_SEARCH_STALENESS_MINUTES", "15"))


# ========== Rebuild Configuration ==========


def get_page_size() -> int:
    """
    Get the number of files requested per listing page.

    Set DRIVE_SEARCH_PAGE_SIZE to customize. Defaults to 100.
    """
    return int(os.environ.get("DRIVE_SEARCH_PAGE_SIZE", "100"))


def get_batch_size() -> int:
    """
    Get the number of records added to the index per rebuild batch.

    Set DRIVE_SEARCH_BATCH_SIZE to customize. Defaults to 100.
    """
    return int(os.environ.get("DRIVE_SEARCH_BATCH_SIZE", "100"))


def get_page_delay_seconds() -> float:
    """
    Get the pause between listing pages (rate-limit courtesy).

    Set DRIVE_SEARCH_PAGE_DELAY_MS to customize. Defaults to 100 ms.
    """
    return int(os.environ.get("DRIVE_SEARCH_PAGE_DELAY_MS", "100")) / 1000


def get_batch_delay_seconds() -> float:
    """
    Get the pause between rebuild batches.

    Set DRIVE_SEARCH_BATCH_DELAY_MS to customize. Defaults to 50 ms.
    """
    return int(os.environ.get("DRIVE_SEARCH_BATCH_DELAY_MS", "50")) / 1000


def get_max_fetch_failures() -> int:
    """
    Get the number of page fetch failures a rebuild tolerates.

    A rebuild aborts once accumulated failures exceed this value.
    Set DRIVE_SEARCH_MAX_FETCH_FAILURES to customize. Defaults to 5.
    """
    return int(os.environ.get("DRIVE_SEARCH_MAX_FETCH_FAILURES", "5"))


# ========== Usage Tracking Configuration ==========


def get_usage_flush_seconds() -> float:
    """
    Get the maximum delay before usage-tracking changes are persisted.

    Set DRIVE_SEARCH_USAGE_FLUSH_SECONDS to customize. Defaults to 30.
    """
    return float(os.environ.get("DRIVE_SEARCH_USAGE_FLUSH_SECONDS", "30"))


def get_usage_flush_threshold() -> int:
    """
    Get the number of pending usage changes that forces an immediate flush.

    Set DRIVE_SEARCH_USAGE_FLUSH_THRESHOLD to customize. Defaults to 25.
    """
    return int(os.environ.get("DRIVE_SEARCH_USAGE_FLUSH_THRESHOLD", "25"))
