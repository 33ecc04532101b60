"""Tests for SyncCoordinator and ChangeTracker."""

from __future__ import annotations

import threading
import time

import pytest

from drive_search_mcp.errors import (
    AuthenticationError,
    StoreError,
    TransientFetchError,
)
from drive_search_mcp.index.cursor import ChangeTracker
from drive_search_mcp.index.engine import SearchIndexEngine
from drive_search_mcp.index.sync import SyncCoordinator, SyncResult
from drive_search_mcp.source import Change, ChangesPage


@pytest.fixture
def tracker(memory_store, fake_connector):
    return ChangeTracker(memory_store, fake_connector, user_id="test")


@pytest.fixture
def coordinator(engine, fake_connector, tracker):
    coordinator = SyncCoordinator(engine, fake_connector, tracker)
    yield coordinator
    coordinator.stop_periodic_sync()


def wait_for(condition, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


class TestChangeTracker:
    """Tests for cursor persistence and bootstrap."""

    def test_load_absent(self, tracker):
        assert tracker.load() is None

    def test_save_and_load(self, tracker, memory_store):
        tracker.save("c9")
        assert tracker.load() == "c9"
        assert memory_store.data["test-change-token"] == "c9"

    def test_ensure_bootstraps_once(self, tracker, fake_connector):
        assert tracker.ensure() == ("token-1", True)
        assert tracker.ensure() == ("token-1", False)
        assert fake_connector.fresh_calls == 1

    def test_initialize_always_fetches(self, tracker, fake_connector):
        fake_connector.fresh_cursors = ["t1", "t2"]
        tracker.initialize()
        assert tracker.initialize() == "t2"
        assert tracker.load() == "t2"

    def test_reset(self, tracker):
        tracker.save("c1")
        tracker.reset()
        assert tracker.load() is None

    def test_unreadable_store_counts_as_absent(self, tracker, memory_store):
        def broken_exists(key):
            raise StoreError("locked")

        memory_store.exists = broken_exists
        assert tracker.load() is None


class TestBootstrap:
    """First sync without a persisted cursor."""

    def test_persists_cursor_and_applies_nothing(
        self, coordinator, fake_connector, tracker, engine
    ):
        result = coordinator.sync_once()

        assert result.success
        assert result.changes_applied == 0
        assert tracker.load() == "token-1"
        assert fake_connector.change_calls == []
        assert engine.document_count == 0

    def test_bootstrap_failure(self, coordinator, fake_connector):
        fake_connector.fresh_cursors = [TransientFetchError("HTTP 500")]

        result = coordinator.sync_once()

        assert not result.success
        assert "HTTP 500" in result.error

    def test_initialize_change_tracking(self, coordinator, tracker):
        assert coordinator.initialize_change_tracking() == "token-1"
        assert tracker.load() == "token-1"


class TestSyncOnce:
    """Tests for applying the change feed."""

    def test_applies_all_pages_then_saves_cursor(
        self,
        coordinator,
        engine,
        tracker,
        fake_connector,
        sample_records,
        make_record,
    ):
        engine.add_records(sample_records)
        tracker.save("c1")
        fake_connector.add_changes(
            "c1",
            ChangesPage(
                changes=[
                    Change(id="n1", record=make_record("n1", "New plan")),
                    Change(id="f1", record=make_record("f1", "Report v2")),
                ],
                next_page_cursor="c1b",
            ),
        )
        fake_connector.add_changes(
            "c1b",
            ChangesPage(
                changes=[Change(id="f2", removed=True)],
                terminal_cursor="c2",
            ),
        )

        result = coordinator.sync_once()

        assert result.success
        assert result.changes_applied == 3
        assert (result.added, result.updated, result.removed) == (1, 1, 1)
        assert fake_connector.change_calls == ["c1", "c1b"]
        assert tracker.load() == "c2"
        assert engine.get_record("f1").name == "Report v2"
        assert engine.get_record("f2") is None
        assert coordinator.last_sync_at is not None
        assert coordinator.last_result is result

    def test_filters_folders_and_empty_payloads(
        self, coordinator, engine, tracker, fake_connector, make_record
    ):
        tracker.save("c1")
        fake_connector.add_changes(
            "c1",
            ChangesPage(
                changes=[
                    Change(id="d", record=make_record("d", "Dir", "folder")),
                    Change(id="x", removed=False, record=None),
                    Change(id="f", record=make_record("f", "File")),
                    Change(id="gone", removed=True),
                ],
                terminal_cursor="c2",
            ),
        )

        result = coordinator.sync_once()

        assert result.changes_applied == 2
        assert engine.record_ids() == {"f"}

    def test_page_without_cursors_stops_without_saving(
        self, coordinator, engine, tracker, fake_connector, make_record
    ):
        tracker.save("c1")
        fake_connector.add_changes(
            "c1",
            ChangesPage(changes=[Change(id="a", record=make_record("a", "A"))]),
        )

        result = coordinator.sync_once()

        assert result.success
        assert engine.record_ids() == {"a"}
        assert tracker.load() == "c1"

    def test_transient_failure_applies_partial_changes(
        self, coordinator, engine, tracker, fake_connector, make_record
    ):
        tracker.save("c1")
        fake_connector.add_changes(
            "c1",
            ChangesPage(
                changes=[Change(id="a", record=make_record("a", "Alpha"))],
                next_page_cursor="c1b",
            ),
        )
        fake_connector.add_changes("c1b", TransientFetchError("HTTP 503"))

        result = coordinator.sync_once()

        assert result.success
        assert result.changes_applied == 1
        assert len(result.errors) == 1
        assert engine.record_ids() == {"a"}
        # Cursor not advanced; the next sync replays from c1
        assert tracker.load() == "c1"

    def test_auth_failure_applies_nothing(
        self, coordinator, engine, tracker, fake_connector, make_record
    ):
        tracker.save("c1")
        fake_connector.add_changes(
            "c1",
            ChangesPage(
                changes=[Change(id="a", record=make_record("a", "Alpha"))],
                next_page_cursor="c1b",
            ),
        )
        fake_connector.add_changes("c1b", AuthenticationError("expired"))

        result = coordinator.sync_once()

        assert not result.success
        assert result.error == "expired"
        assert engine.document_count == 0
        assert tracker.load() == "c1"

    def test_not_authenticated(self, coordinator, fake_connector):
        fake_connector.authenticated = False

        result = coordinator.sync_once()

        assert not result.success
        assert result.error == "Not authenticated"
        assert coordinator.last_sync_at is None

    def test_to_dict(self):
        result = SyncResult(True, 2, added=1, removed=1, elapsed_time=0.5)
        data = result.to_dict()
        assert data["changesApplied"] == 2
        assert data["elapsedTime"] == 0.5
        assert data["error"] is None


class TestCrashBetweenWrites:
    """Index persisted but cursor not: replaying is idempotent."""

    def test_replay_after_lost_cursor_write(
        self,
        memory_store,
        fake_connector,
        engine,
        tracker,
        make_record,
        monkeypatch,
    ):
        page = ChangesPage(
            changes=[
                Change(id="a", record=make_record("a", "Alpha")),
                Change(id="b", record=make_record("b", "Beta")),
                Change(id="a", record=make_record("a", "Alpha v2")),
            ],
            terminal_cursor="c2",
        )
        tracker.save("c1")
        fake_connector.add_changes("c1", page, page)

        def lost_write(cursor):
            raise StoreError("crashed before cursor write")

        monkeypatch.setattr(tracker, "save", lost_write)
        first = SyncCoordinator(engine, fake_connector, tracker).sync_once()
        assert first.success
        assert any("change token" in e for e in first.errors)
        monkeypatch.undo()

        # Restart: fresh engine from the store, cursor still at c1
        restarted = SearchIndexEngine(memory_store, user_id="test")
        restarted.initialize()
        assert restarted.record_ids() == {"a", "b"}
        tracker = ChangeTracker(memory_store, fake_connector, user_id="test")
        assert tracker.load() == "c1"

        second = SyncCoordinator(
            restarted, fake_connector, tracker
        ).sync_once()

        assert second.success
        assert restarted.record_ids() == {"a", "b"}
        assert restarted.get_record("a").name == "Alpha v2"
        assert restarted.indexed_ids() == restarted.record_ids()
        assert tracker.load() == "c2"

    def test_cursor_held_back_when_index_not_persisted(
        self,
        memory_store,
        fake_connector,
        engine,
        tracker,
        make_record,
        monkeypatch,
    ):
        page = ChangesPage(
            changes=[Change(id="a", record=make_record("a", "Alpha"))],
            terminal_cursor="c1",
        )
        tracker.save("c0")
        fake_connector.add_changes("c0", page, page)

        write_many = memory_store.write_many

        def snapshot_writes_fail(items):
            items = list(items)
            if any(key.endswith(".json") for key, _ in items):
                raise StoreError("disk full")
            write_many(items)

        monkeypatch.setattr(memory_store, "write_many", snapshot_writes_fail)
        first = SyncCoordinator(engine, fake_connector, tracker).sync_once()
        assert first.success
        assert any("not advanced" in e for e in first.errors)
        assert tracker.load() == "c0"
        monkeypatch.undo()

        # Restart: nothing was saved, so the changes are fetched again
        restarted = SearchIndexEngine(memory_store, user_id="test")
        restarted.initialize()
        assert restarted.record_ids() == set()

        second = SyncCoordinator(
            restarted, fake_connector, tracker
        ).sync_once()

        assert second.success
        assert restarted.record_ids() == {"a"}
        assert tracker.load() == "c1"


class TestConcurrency:
    """Tests for re-entrancy and the shared maintenance lock."""

    def test_overlapping_sync_is_rejected(
        self, coordinator, engine, tracker, fake_connector, make_record
    ):
        tracker.save("c1")
        fake_connector.add_changes(
            "c1",
            ChangesPage(
                changes=[Change(id="a", record=make_record("a", "Alpha"))],
                terminal_cursor="c2",
            ),
        )
        entered = threading.Event()
        release = threading.Event()
        original = fake_connector.get_changes_page

        def slow_changes(cursor):
            entered.set()
            release.wait(5)
            return original(cursor)

        fake_connector.get_changes_page = slow_changes

        results = []
        worker = threading.Thread(
            target=lambda: results.append(coordinator.sync_once())
        )
        worker.start()
        assert entered.wait(5)
        assert coordinator.is_syncing

        second = coordinator.sync_once()
        assert not second.success
        assert second.error == "Sync already in progress"

        release.set()
        worker.join(5)
        assert results[0].success
        assert results[0].changes_applied == 1
        assert fake_connector.change_calls == ["c1"]
        assert engine.record_ids() == {"a"}
        assert not coordinator.is_syncing

    def test_waits_for_maintenance_lock(
        self, engine, fake_connector, tracker
    ):
        lock = threading.Lock()
        coordinator = SyncCoordinator(engine, fake_connector, tracker, lock)

        lock.acquire()
        results = []
        worker = threading.Thread(
            target=lambda: results.append(coordinator.sync_once())
        )
        worker.start()
        worker.join(0.2)
        assert worker.is_alive()
        assert fake_connector.fresh_calls == 0

        lock.release()
        worker.join(5)
        assert results[0].success


class TestPeriodicSync:
    """Tests for the background schedule."""

    def test_syncs_immediately_and_repeatedly(
        self, coordinator, fake_connector, tracker
    ):
        tracker.save("c1")
        coordinator.start_periodic_sync(0.05)
        assert coordinator.is_periodic_sync_active
        assert coordinator.interval == 0.05

        assert wait_for(lambda: len(fake_connector.change_calls) >= 2)

        coordinator.stop_periodic_sync()
        assert not coordinator.is_periodic_sync_active
        calls = len(fake_connector.change_calls)
        time.sleep(0.15)
        assert len(fake_connector.change_calls) == calls

    def test_schedule_survives_a_crashing_tick(self, coordinator):
        calls = []
        sync_once = coordinator.sync_once

        def crash_first(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise KeyError("fileId")
            return sync_once(*args, **kwargs)

        coordinator.sync_once = crash_first
        coordinator.start_periodic_sync(0.05)

        assert wait_for(lambda: len(calls) >= 3)
        assert coordinator.is_periodic_sync_active

    def test_restart_replaces_schedule(self, coordinator, tracker):
        tracker.save("c1")
        coordinator.start_periodic_sync(60)
        first = coordinator._thread
        coordinator.start_periodic_sync(30)
        assert coordinator._thread is not first
        assert not first.is_alive()
        assert coordinator.interval == 30

    def test_stop_is_idempotent(self, coordinator):
        coordinator.stop_periodic_sync()
        coordinator.stop_periodic_sync()
        assert not coordinator.is_periodic_sync_active

    def test_rejects_non_positive_interval(self, coordinator):
        with pytest.raises(ValueError):
            coordinator.start_periodic_sync(0)
