"""Command-line interface for drive-search-mcp.

Provides commands for:
- index: Build the search index from Drive
- sync: Apply pending Drive changes
- status: Show index statistics
- search: Search the index from the terminal
- serve: Run the MCP server (default)

Usage:
    drive-search-mcp                  # Run MCP server (default)
    drive-search-mcp serve            # Run MCP server explicitly
    drive-search-mcp index --force    # Rebuild the index from scratch
    drive-search-mcp sync             # Apply pending changes
    drive-search-mcp status           # Show index status
    drive-search-mcp search budget    # Search from the terminal
"""

import logging
import sys
import time
from typing import Annotated

import cyclopts

from .config import get_index_path, get_sync_interval_seconds
from .errors import DriveSearchError

app = cyclopts.App(
    name="drive-search-mcp",
    help="Fast MCP server for fuzzy search over Google Drive files.",
)

_TOKEN_HINT = (
    "Export an OAuth access token as DRIVE_SEARCH_ACCESS_TOKEN and retry."
)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _format_size(size_mb: float) -> str:
    """Format file size for display."""
    if size_mb < 1:
        return f"{size_mb * 1024:.1f} KB"
    return f"{size_mb:.1f} MB"


def _format_time(seconds: float) -> str:
    """Format duration for display."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    return f"{minutes}m {secs:.1f}s"


def _format_staleness(minutes: float) -> str:
    if minutes < 60:
        return f"{minutes:.0f} minutes ago"
    if minutes < 24 * 60:
        return f"{minutes / 60:.1f} hours ago"
    return f"{minutes / (24 * 60):.1f} days ago"


def _progress_bar(current: int, total: int | None, width: int = 40) -> str:
    """Create a progress bar string."""
    if total is None or total == 0:
        # Indeterminate progress
        return f"[{'=' * (current % width)}>]"

    pct = min(current / total, 1.0)
    filled = int(width * pct)
    bar = "=" * filled + "-" * (width - filled)
    return f"[{bar}] {pct * 100:.0f}%"


def _create_manager():
    from .index import IndexManager

    return IndexManager.from_config()


def _run_serve(sync_interval: float | None = None) -> None:
    """Internal function to run the MCP server."""
    from .server import mcp, set_index_manager

    manager = _create_manager()
    set_index_manager(manager)

    count = manager.initialize()
    if count:
        print(f"Loaded index with {count:,} files", file=sys.stderr)
    else:
        print(
            "No index found. Run 'drive-search-mcp index' to build it.",
            file=sys.stderr,
        )

    if manager.connector.is_authenticated():
        interval = sync_interval or get_sync_interval_seconds()
        manager.start_periodic_sync(interval)
        print(
            f"Periodic sync every {_format_time(interval)}", file=sys.stderr
        )
    else:
        print(
            f"Warning: Drive not authenticated, sync disabled. {_TOKEN_HINT}",
            file=sys.stderr,
        )

    try:
        mcp.run()
    finally:
        manager.close()


@app.command
def serve(
    sync_interval: Annotated[
        float | None,
        cyclopts.Parameter(
            name=["--sync-interval", "-i"],
            help="Seconds between background syncs (default: 300)",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--verbose", "-v"],
            help="Enable verbose output",
        ),
    ] = False,
) -> None:
    """
    Run the MCP server.

    This is the default command when no subcommand is specified.
    The server provides Drive file search tools to MCP clients.

    The persisted index is loaded at startup and kept fresh by a
    background sync against the Drive change feed.
    """
    _configure_logging(verbose)
    _run_serve(sync_interval=sync_interval)


@app.command
def index(
    force: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--force", "-f"],
            help="Rebuild even if an index already exists",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        cyclopts.Parameter(name=["--verbose", "-v"], help="Show progress"),
    ] = False,
) -> None:
    """
    Build the search index from Drive.

    Lists every non-trashed file, indexes it, then records a change
    cursor so later syncs only fetch what changed.
    """
    _configure_logging(verbose)

    print("Building search index from Google Drive...")
    print(f"Index location: {get_index_path()}")
    print()

    manager = _create_manager()
    last_report = time.time()

    def progress(current: int, total: int | None, message: str) -> None:
        nonlocal last_report
        now = time.time()

        # Throttle updates to avoid spam
        if now - last_report < 0.5 and total is None:
            return
        last_report = now

        if total:
            bar = _progress_bar(current, total)
            print(f"\r{bar} {message}", end="", flush=True)
        else:
            print(f"\r{message}", end="", flush=True)

    try:
        result = manager.rebuild(
            force=force, progress_callback=progress if verbose else None
        )
    finally:
        manager.close()

    if verbose:
        print()  # Newline after progress

    print()
    if result.skipped:
        print(f"✓ {result.message}. Use --force to re-index.")
        return

    if not result.success:
        for error in result.errors:
            print(f"✗ {error}", file=sys.stderr)
        if not manager.connector.is_authenticated():
            print(f"\n{_TOKEN_HINT}", file=sys.stderr)
        sys.exit(1)

    if result.message:
        print(f"✓ {result.message}")
    else:
        print(
            f"✓ Indexed {result.records_indexed:,} files in "
            f"{_format_time(result.elapsed_time)}"
        )
    if result.errors:
        print(f"  {len(result.errors)} warnings:")
        for error in result.errors:
            print(f"  - {error}")


@app.command
def sync(
    verbose: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--verbose", "-v"],
            help="Enable verbose output",
        ),
    ] = False,
) -> None:
    """
    Apply pending Drive changes to the index.

    The first sync after a fresh install only records a change cursor.
    """
    _configure_logging(verbose)
    manager = _create_manager()
    try:
        result = manager.sync()
    finally:
        manager.close()

    if not result.success:
        print(f"✗ Sync failed: {result.error}", file=sys.stderr)
        if not manager.connector.is_authenticated():
            print(_TOKEN_HINT, file=sys.stderr)
        sys.exit(1)

    print(
        f"✓ Applied {result.changes_applied} changes "
        f"(+{result.added} ~{result.updated} -{result.removed}) "
        f"in {_format_time(result.elapsed_time)}"
    )
    for error in result.errors:
        print(f"  - {error}")


@app.command
def status(
    verbose: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--verbose", "-v"],
            help="Enable verbose output",
        ),
    ] = False,
) -> None:
    """
    Show index statistics.

    Displays:
    - File count
    - Store file size
    - Whether Drive credentials are configured
    """
    _configure_logging(verbose)
    manager = _create_manager()
    try:
        if not manager.has_index():
            print("No index found.")
            print(f"Expected location: {get_index_path()}")
            print()
            print("Run 'drive-search-mcp index' to build the index.")
            sys.exit(1)

        stats = manager.get_stats()
    finally:
        manager.close()

    print("Drive Search MCP Index Status")
    print("=" * 40)
    print(f"Location:     {get_index_path()}")
    print(f"Files:        {stats.file_count:,}")
    print(f"Database:     {_format_size(stats.db_size_mb)}")
    auth = "yes" if manager.connector.is_authenticated() else "no"
    print(f"Credentials:  {auth}")
    if stats.last_sync and stats.staleness_minutes is not None:
        print(
            f"Last sync:    {stats.last_sync.strftime('%Y-%m-%d %H:%M:%S')}"
            f" ({_format_staleness(stats.staleness_minutes)})"
        )


@app.command
def search(
    query: str,
    limit: Annotated[
        int,
        cyclopts.Parameter(name=["--limit", "-n"], help="Maximum results"),
    ] = 20,
    types: Annotated[
        list[str] | None,
        cyclopts.Parameter(
            name=["--type", "-t"],
            help="Filter by type: documents, spreadsheets, presentations, "
            "folders, pdfs, images, videos, audio (repeatable)",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--verbose", "-v"],
            help="Enable verbose output",
        ),
    ] = False,
) -> None:
    """
    Search the index from the terminal.

    Uses the persisted index as-is; run 'sync' first for fresh results.
    """
    _configure_logging(verbose)
    manager = _create_manager()
    try:
        results = manager.search(query, limit=limit, types=types)
    except (ValueError, DriveSearchError) as e:
        print(f"✗ Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        manager.close()

    if not results:
        print("No matching files.")
        return

    for result in results:
        record = result.record
        modified = (record.modified_at or "")[:10]
        print(f"{result.score:8.3f}  {record.name}")
        print(f"          {record.category:<13} {modified}  {record.id}")


@app.default
def default_handler(
    sync_interval: Annotated[
        float | None,
        cyclopts.Parameter(
            name=["--sync-interval", "-i"],
            help="Seconds between background syncs (default: 300)",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--verbose", "-v"],
            help="Enable verbose output",
        ),
    ] = False,
) -> None:
    """Run the MCP server (default when no command specified)."""
    _configure_logging(verbose)
    _run_serve(sync_interval=sync_interval)


def main() -> None:
    """Entry point for the CLI."""
    app()
