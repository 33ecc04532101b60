"""Durable key-value store for index snapshots and the change cursor.

The schema uses:
- kv: One row per key (index snapshot, metadata snapshot, change cursor)
- schema_version: Records the store layout version

Keys are written independently by default. write_many() writes several
keys in one transaction so the index and metadata snapshots can never
disagree on disk.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from .errors import StoreError

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

# Version recorded in schema_version for new stores
SCHEMA_VERSION = 1

# Default PRAGMAs for all connections (centralized to avoid drift)
DEFAULT_PRAGMAS = {
    "journal_mode": "WAL",  # Better concurrent read performance
    "synchronous": "NORMAL",  # Good balance of safety and speed
    "busy_timeout": 5000,  # Wait up to 5s for locks
}

UPSERT_SQL = """INSERT OR REPLACE INTO kv (key, value, updated_at)
    VALUES (?, ?, datetime('now'))"""


@runtime_checkable
class DurableStore(Protocol):
    """Key-value persistence consumed by the index.

    Optional extensions recognised by callers (checked with getattr):
    clear(), delete(key) and write_many(items).
    """

    def exists(self, key: str) -> bool: ...

    def read(self, key: str) -> str: ...

    def write(self, key: str, data: str) -> None: ...


def create_connection(db_path: Path) -> sqlite3.Connection:
    """
    Create a database connection with standard configuration.

    Args:
        db_path: Path to the SQLite database file

    Returns:
        Configured connection with WAL mode, busy timeout, and Row factory
    """
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    for pragma, value in DEFAULT_PRAGMAS.items():
        conn.execute(f"PRAGMA {pragma}={value}")

    return conn


def get_schema_sql() -> str:
    """Return the complete schema creation SQL."""
    return """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Snapshot and cursor payloads, one row per key
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now'))
);
"""


def init_database(db_path: Path) -> sqlite3.Connection:
    """
    Initialize the store database, creating parent directories if needed.

    Args:
        db_path: Path to the SQLite database file

    Returns:
        Open database connection

    Security:
        Sets file permissions to 0600 on new databases; the metadata
        snapshot lists file names from the user's Drive.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    is_new_db = not db_path.exists()

    conn = create_connection(db_path)

    if is_new_db:
        try:
            os.chmod(db_path, 0o600)
            logger.debug("Set secure permissions (0600) on %s", db_path)
        except OSError as e:
            logger.warning(
                "Could not set secure permissions on %s: %s", db_path, e
            )

    sql = "SELECT name FROM sqlite_master "
    sql += "WHERE type='table' AND name='schema_version'"
    cursor = conn.execute(sql)
    if cursor.fetchone() is None:
        logger.info("Creating fresh store schema (version %d)", SCHEMA_VERSION)
        conn.executescript(get_schema_sql())
        conn.execute(
            "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
        )
        conn.commit()

    return conn


class SqliteStore:
    """
    DurableStore backed by a single SQLite file.

    Thread Safety:
    - One connection shared across threads (check_same_thread=False)
    - All access serialized by an instance-level lock
    """

    def __init__(self, db_path: Path):
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._conn_lock = threading.Lock()

    @property
    def db_path(self) -> Path:
        """Get the database file path."""
        return self._db_path

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create the database connection. Caller holds the lock."""
        if self._conn is None:
            try:
                self._conn = init_database(self._db_path)
            except (sqlite3.Error, OSError) as e:
                raise StoreError(
                    f"Cannot open store {self._db_path}: {e}"
                ) from e
        return self._conn

    def close(self) -> None:
        """Close the database connection."""
        with self._conn_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def exists(self, key: str) -> bool:
        with self._conn_lock:
            try:
                cursor = self._get_conn().execute(
                    "SELECT 1 FROM kv WHERE key = ?", (key,)
                )
                return cursor.fetchone() is not None
            except sqlite3.Error as e:
                raise StoreError(f"exists({key!r}) failed: {e}") from e

    def read(self, key: str) -> str:
        """
        Read the value stored under key.

        Raises:
            KeyError: If the key is absent
            StoreError: On SQLite failure
        """
        with self._conn_lock:
            try:
                cursor = self._get_conn().execute(
                    "SELECT value FROM kv WHERE key = ?", (key,)
                )
                row = cursor.fetchone()
            except sqlite3.Error as e:
                raise StoreError(f"read({key!r}) failed: {e}") from e
        if row is None:
            raise KeyError(key)
        return row["value"]

    def write(self, key: str, data: str) -> None:
        self.write_many([(key, data)])

    def write_many(self, items: Iterable[tuple[str, str]]) -> None:
        """Write several keys in one transaction (all or nothing)."""
        rows = list(items)
        with self._conn_lock:
            conn = self._get_conn()
            try:
                with conn:
                    conn.executemany(UPSERT_SQL, rows)
            except sqlite3.Error as e:
                keys = ", ".join(k for k, _ in rows)
                raise StoreError(f"write({keys}) failed: {e}") from e
        logger.debug(
            "Stored %s (%d chars)",
            ", ".join(k for k, _ in rows),
            sum(len(v) for _, v in rows),
        )

    def delete(self, key: str) -> None:
        with self._conn_lock:
            conn = self._get_conn()
            try:
                with conn:
                    conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            except sqlite3.Error as e:
                raise StoreError(f"delete({key!r}) failed: {e}") from e

    def clear(self) -> None:
        """Remove every key."""
        with self._conn_lock:
            conn = self._get_conn()
            try:
                with conn:
                    conn.execute("DELETE FROM kv")
            except sqlite3.Error as e:
                raise StoreError(f"clear() failed: {e}") from e

    def size_mb(self) -> float:
        """Size of the database file in megabytes (0 when absent)."""
        if self._db_path.exists():
            return self._db_path.stat().st_size / (1024 * 1024)
        return 0.0
