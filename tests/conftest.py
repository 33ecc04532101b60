"""Shared pytest fixtures for drive-search-mcp tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from drive_search_mcp.errors import StoreError
from drive_search_mcp.index.engine import SearchIndexEngine
from drive_search_mcp.index.manager import IndexManager
from drive_search_mcp.index.schema import MetadataRecord
from drive_search_mcp.source import ChangesPage, ListPage

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

MIME = {
    "doc": "application/vnd.google-apps.document",
    "sheet": "application/vnd.google-apps.spreadsheet",
    "slides": "application/vnd.google-apps.presentation",
    "pdf": "application/pdf",
    "folder": "application/vnd.google-apps.folder",
    "image": "image/png",
    "xlsx": (
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    ),
}


def iso(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


class MemoryStore:
    """Dict-backed DurableStore with failure injection."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.fail_writes = False
        self.write_count = 0

    def exists(self, key: str) -> bool:
        return key in self.data

    def read(self, key: str) -> str:
        return self.data[key]

    def write(self, key: str, data: str) -> None:
        self.write_many([(key, data)])

    def write_many(self, items) -> None:
        if self.fail_writes:
            raise StoreError("disk full")
        self.write_count += 1
        self.data.update(items)

    def delete(self, key: str) -> None:
        self.data.pop(key, None)

    def clear(self) -> None:
        self.data.clear()


class FakeConnector:
    """
    Scripted SourceConnector.

    list_responses and change_responses hold ListPage/ChangesPage objects
    or exceptions, consumed in order.
    """

    def __init__(self, authenticated: bool = True):
        self.authenticated = authenticated
        self.list_responses: list = []
        self.change_responses: dict[str, list] = {}
        self.fresh_cursors: list = ["token-1"]
        self.list_calls: list[str | None] = []
        self.change_calls: list[str] = []
        self.fresh_calls = 0

    def set_listing(self, records: list[MetadataRecord], page_size: int = 2):
        pages = [
            records[i : i + page_size]
            for i in range(0, len(records), page_size)
        ] or [[]]
        self.list_responses = [
            ListPage(
                records=page,
                next_cursor=f"page-{n + 1}" if n + 1 < len(pages) else None,
            )
            for n, page in enumerate(pages)
        ]

    def add_changes(self, cursor: str, *responses) -> None:
        self.change_responses.setdefault(cursor, []).extend(responses)

    def authenticate(self) -> bool:
        return self.authenticated

    def is_authenticated(self) -> bool:
        return self.authenticated

    def list_page(self, cursor: str | None = None) -> ListPage:
        self.list_calls.append(cursor)
        response = self.list_responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get_changes_page(self, cursor: str) -> ChangesPage:
        self.change_calls.append(cursor)
        queue = self.change_responses.get(cursor)
        if not queue:
            # Nothing new since cursor
            return ChangesPage(
                changes=[], next_page_cursor=None, terminal_cursor=cursor
            )
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get_fresh_cursor(self) -> str:
        self.fresh_calls += 1
        response = (
            self.fresh_cursors.pop(0)
            if len(self.fresh_cursors) > 1
            else self.fresh_cursors[0]
        )
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def make_record():
    """Factory for MetadataRecords with sensible defaults."""

    def factory(
        record_id: str,
        name: str,
        kind: str = "doc",
        age_days: float | None = 10,
        open_count: int = 0,
    ) -> MetadataRecord:
        modified = (
            iso(NOW - timedelta(days=age_days))
            if age_days is not None
            else None
        )
        return MetadataRecord(
            id=record_id,
            name=name,
            mime_type=MIME.get(kind, kind),
            modified_at=modified,
            open_count=open_count,
        )

    return factory


@pytest.fixture
def sample_records(make_record) -> list[MetadataRecord]:
    """A small Drive with mixed file types."""
    return [
        make_record("f1", "Quarterly Report.docx", "doc", age_days=3),
        make_record("f2", "Budget 2024.xlsx", "sheet", age_days=20),
        make_record("f3", "Product Roadmap", "slides", age_days=1),
        make_record("f4", "invoice_march.pdf", "pdf", age_days=60),
        make_record("f5", "Team Photos", "folder", age_days=5),
        make_record("f6", "teamOffsite-agenda.docx", "doc", age_days=40),
    ]


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def fake_connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def engine(memory_store):
    """Initialized engine over an empty in-memory store."""
    engine = SearchIndexEngine(
        memory_store, user_id="test", usage_flush_seconds=60
    )
    engine.initialize()
    yield engine
    engine.close()


@pytest.fixture
def manager(memory_store, fake_connector):
    """IndexManager wired to in-memory collaborators, no sleeping."""
    manager = IndexManager(
        memory_store,
        fake_connector,
        user_id="test",
        batch_size=2,
        page_delay=0,
        batch_delay=0,
        max_fetch_failures=5,
        usage_flush_seconds=60,
        usage_flush_threshold=3,
        staleness_minutes=15,
        sleep=lambda seconds: None,
    )
    yield manager
    manager.close()


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Return a temporary path for a database file."""
    return tmp_path / "test_index.db"
