"""Tests for IndexManager class.

Tests the central wiring of the search index:
- Explicit construction from collaborators and from config
- Rebuild and sync delegation
- Search, recent files and usage tracking
- Staleness detection and statistics
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from drive_search_mcp.index.manager import IndexManager, IndexStats
from drive_search_mcp.source import Change, ChangesPage


class TestConstruction:
    """Tests for component wiring."""

    def test_components_share_state(self, manager, memory_store):
        assert manager.engine.keys.index == "test-search.json"
        assert manager.tracker.key == "test-change-token"
        assert manager.rebuild_job._lock is manager.coordinator._lock
        assert manager.rebuild_job._engine is manager.engine
        assert manager.coordinator._engine is manager.engine

    def test_two_managers_are_independent(self, memory_store, fake_connector):
        first = IndexManager(memory_store, fake_connector, user_id="one")
        second = IndexManager(memory_store, fake_connector, user_id="two")
        assert first.engine is not second.engine
        assert first.engine.keys != second.engine.keys

    def test_from_config(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DRIVE_SEARCH_INDEX_PATH", str(tmp_path / "i.db"))
        monkeypatch.setenv("DRIVE_SEARCH_USER_ID", "carol")
        monkeypatch.setenv("DRIVE_SEARCH_ACCESS_TOKEN", "tok")

        manager = IndexManager.from_config()
        try:
            assert manager.store.db_path == tmp_path / "i.db"
            assert manager.user_id == "carol"
            assert manager.connector.is_authenticated()
        finally:
            manager.close()

    def test_config_defaults_applied(self, memory_store, fake_connector):
        with patch(
            "drive_search_mcp.index.manager.get_batch_size", return_value=7
        ):
            manager = IndexManager(memory_store, fake_connector)
        assert manager.rebuild_job.batch_size == 7


class TestRebuildAndSync:
    """Tests for maintenance delegation."""

    def test_rebuild_then_sync(
        self, manager, fake_connector, sample_records, make_record
    ):
        fake_connector.set_listing(sample_records)
        result = manager.rebuild()
        assert result.success
        assert manager.has_index()
        assert manager.last_sync is not None

        fake_connector.add_changes(
            "token-1",
            ChangesPage(
                changes=[Change(id="z", record=make_record("z", "Zebra"))],
                terminal_cursor="token-2",
            ),
        )
        sync = manager.sync()
        assert sync.success
        assert sync.changes_applied == 1
        assert manager.get_file("z") is not None

    def test_skipped_rebuild_does_not_mark_sync(
        self, manager, sample_records
    ):
        manager.initialize()
        manager.engine.add_records(sample_records)
        result = manager.rebuild()
        assert result.skipped
        assert manager.last_sync is None

    def test_periodic_sync_controls(self, manager):
        manager.start_periodic_sync(60)
        assert manager.periodic_sync_active
        manager.stop_periodic_sync()
        assert not manager.periodic_sync_active


class TestQueries:
    """Tests for search, recent files and usage."""

    def test_search_with_types(self, manager, sample_records):
        manager.engine.initialize()
        manager.engine.add_records(sample_records)

        results = manager.search("team", types=["folders"])
        assert [r.record.id for r in results] == ["f5"]

        assert {r.record.id for r in manager.search("team")} == {"f5", "f6"}

    def test_search_unknown_type(self, manager):
        with pytest.raises(ValueError):
            manager.search("x", types=["gifs"])

    def test_recent_files(self, manager, sample_records, make_record):
        manager.initialize()
        manager.engine.add_records(
            [*sample_records, make_record("undated", "No date", age_days=None)]
        )

        recent = manager.recent_files(3)
        assert [r.id for r in recent] == ["f3", "f1", "f5"]
        assert manager.recent_files(100)[-1].id == "undated"
        assert manager.recent_files(0) == []

    def test_track_open(self, manager, sample_records):
        manager.initialize()
        manager.engine.add_records(sample_records)

        assert manager.track_open("f1") is True
        assert manager.track_open("missing") is False
        assert manager.get_file("f1").open_count == 1

    def test_close_flushes_usage(
        self, memory_store, fake_connector, sample_records
    ):
        manager = IndexManager(
            memory_store, fake_connector, user_id="u", usage_flush_seconds=60
        )
        manager.initialize()
        manager.engine.add_records(sample_records)
        manager.track_open("f2")
        manager.close()

        reopened = IndexManager(memory_store, fake_connector, user_id="u")
        assert reopened.get_file("f2").open_count == 1
        reopened.close()


class TestStaleness:
    """Tests for staleness detection."""

    def test_stale_without_sync(self, manager):
        assert manager.is_stale()

    def test_fresh_after_sync(self, manager):
        assert manager.sync().success
        assert not manager.is_stale()

    def test_stale_after_threshold(self, manager):
        manager.sync()
        old = datetime.now(timezone.utc) - timedelta(minutes=20)
        manager.coordinator._last_sync_at = old
        assert manager.is_stale()


class TestGetStats:
    """Tests for statistics."""

    def test_stats(self, manager, sample_records):
        manager.initialize()
        manager.engine.add_records(sample_records)
        manager.sync()

        stats = manager.get_stats()

        assert isinstance(stats, IndexStats)
        assert stats.file_count == len(sample_records)
        assert stats.last_sync is not None
        assert stats.staleness_minutes is not None
        assert stats.staleness_minutes < 1
        assert stats.db_size_mb == 0.0  # MemoryStore has no file
        assert stats.periodic_sync_active is False

    def test_stats_before_sync(self, manager):
        stats = manager.get_stats()
        assert stats.file_count == 0
        assert stats.last_sync is None
        assert stats.staleness_minutes is None
