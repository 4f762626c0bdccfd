"""Tests for the SQLite store, settings parsing and change notifications."""

import sqlite3

import pytest

from conftest import add_closed, add_open, at
from slice_tracker.config import EngineSettings, RunnerSettings
from slice_tracker.db import SqliteSliceStore
from slice_tracker.errors import PersistenceError, SliceNotFoundError, ValidationError
from slice_tracker.models import SyncSnapshot
from slice_tracker.notify import ChangeNotifier, StoreChangeWatcher


class TestSqliteSliceStore:
    def test_round_trips_open_and_closed_slices(self, store):
        closed = add_closed(store, 1, at(9), at(10), "notes")
        opened = add_open(store, 2, at(10))

        loaded = store.get_slice(closed.id)
        assert loaded.end_time == at(10)
        assert loaded.notes == "notes"
        assert store.get_slice(opened.id).is_open
        assert [s.id for s in store.find_open_slices()] == [opened.id]

    def test_update_only_touches_given_fields(self, store):
        time_slice = add_closed(store, 1, at(9), at(10), "keep me")
        store.update_slice(time_slice.id, start_time=at(9, 15))

        loaded = store.get_slice(time_slice.id)
        assert loaded.start_time == at(9, 15)
        assert loaded.end_time == at(10)
        assert loaded.notes == "keep me"

    def test_update_can_reopen_and_close(self, store):
        time_slice = add_closed(store, 1, at(9), at(10))
        store.update_slice(time_slice.id, end_time=None)
        assert store.get_slice(time_slice.id).is_open

    def test_sync_snapshot_is_stored(self, store):
        time_slice = add_closed(store, 1, at(9), at(10))
        store.update_slice(
            time_slice.id,
            sync=SyncSnapshot(synced=True, remote_id="R-1", synced_start=at(9), synced_end=at(10)),
        )
        loaded = store.get_slice(time_slice.id)
        assert loaded.sync.synced
        assert loaded.sync.remote_id == "R-1"
        assert not loaded.is_out_of_sync

    def test_missing_slice_raises(self, store):
        with pytest.raises(SliceNotFoundError):
            store.get_slice(42)
        with pytest.raises(SliceNotFoundError):
            store.update_slice(42, notes="x")
        with pytest.raises(SliceNotFoundError):
            store.delete_slice(42)

    def test_range_query_uses_overlap(self, store):
        before = add_closed(store, 1, at(7), at(8))
        touching = add_closed(store, 1, at(8), at(9))
        inside = add_closed(store, 1, at(9, 30), at(10))
        running = add_open(store, 2, at(8, 30))

        found = {s.id for s in store.find_slices_in_range(at(9), at(11))}
        assert found == {inside.id, running.id}
        assert before.id not in found
        assert touching.id not in found

    def test_transaction_rolls_back(self, store):
        add_closed(store, 1, at(9), at(10))
        with pytest.raises(RuntimeError):
            with store.transaction():
                add_closed(store, 2, at(10), at(11))
                raise RuntimeError("boom")
        assert len(store.find_slices_for_work_item(2)) == 0

    def test_heartbeat_round_trip(self, store):
        assert store.read_heartbeat() is None
        store.write_heartbeat(at(9, 1))
        store.write_heartbeat(at(9, 2))
        assert store.read_heartbeat() == at(9, 2)

    def test_sqlite_errors_become_persistence_errors(self, store):
        store.connection.execute("DROP TABLE time_slices")
        with pytest.raises(PersistenceError) as excinfo:
            store.find_open_slices()
        assert isinstance(excinfo.value.__cause__, sqlite3.Error)


class TestSettings:
    def test_defaults(self):
        settings = EngineSettings.from_mapping({})
        assert settings.rounding_enabled is False
        assert settings.rounding_interval_minutes == 15
        assert settings.away_threshold_seconds == 300
        assert settings.away_detection_enabled is True

    def test_parses_strings(self):
        settings = EngineSettings.from_mapping(
            {"rounding_enabled": "yes", "rounding_interval_minutes": " 6 "}
        )
        assert settings.rounding.enabled
        assert settings.rounding.interval_minutes == 6

    @pytest.mark.parametrize("value", ["abc", "0", "-5"])
    def test_rejects_bad_interval(self, value):
        with pytest.raises(ValidationError) as excinfo:
            EngineSettings.from_mapping({"rounding_interval_minutes": value})
        assert excinfo.value.rule == "invalid_setting"

    def test_to_mapping_round_trips(self):
        settings = EngineSettings(rounding_enabled=True, away_threshold_seconds=60)
        assert EngineSettings.from_mapping(settings.to_mapping()) == settings

    def test_store_persists_settings(self, store):
        store.save_setting("rounding_enabled", "true")
        assert store.load_settings() == {"rounding_enabled": "true"}

    def test_runner_intervals(self):
        settings = RunnerSettings.from_intervals(idle_poll_seconds=2)
        assert settings.idle_poll_interval.total_seconds() == 2
        assert settings.heartbeat_interval.total_seconds() == 60


class TestNotifications:
    def test_subscribe_and_unsubscribe(self):
        notifier = ChangeNotifier()
        calls = []
        unsubscribe = notifier.subscribe(lambda: calls.append(1))
        notifier.notify_slices_changed()
        unsubscribe()
        notifier.notify_slices_changed()
        assert calls == [1]

    def test_failing_listener_does_not_block_others(self):
        notifier = ChangeNotifier()
        calls = []

        def broken():
            raise RuntimeError("listener bug")

        notifier.subscribe(broken)
        notifier.subscribe(lambda: calls.append(1))
        notifier.notify_slices_changed()
        assert calls == [1]

    def test_watcher_sees_commits_from_other_connections(self, store, db_path):
        notifier = ChangeNotifier()
        calls = []
        notifier.subscribe(lambda: calls.append(1))
        watcher_store = SqliteSliceStore.open(db_path)
        try:
            watcher = StoreChangeWatcher(watcher_store, notifier)
            assert watcher.poll() is False
            add_closed(store, 1, at(9), at(10))
            assert watcher.poll() is True
            assert watcher.poll() is False
        finally:
            watcher_store.close()
        assert calls == [1]


class TestNotificationTiming:
    def test_listeners_run_after_the_outer_commit(self, engine, store, clock):
        seen = []
        engine.notifier.subscribe(lambda: seen.append(store.connection.in_transaction))

        engine.start(1)
        clock.set(9, 30)
        engine.start(2)

        assert seen == [False, False]

    def test_rolled_back_changes_are_not_announced(self, engine, store):
        seen = []
        engine.notifier.subscribe(lambda: seen.append(1))

        with pytest.raises(RuntimeError):
            with store.transaction():
                engine.active.open_slice(1)
                raise RuntimeError("abort")

        assert seen == []
        assert store.find_open_slices() == []

    def test_callback_without_transaction_runs_immediately(self, store):
        seen = []
        store.call_after_commit(lambda: seen.append(1))
        assert seen == [1]


class TestPaths:
    def test_files_live_in_platform_dirs(self, tmp_path, monkeypatch):
        from types import SimpleNamespace

        from slice_tracker import paths

        dirs = SimpleNamespace(
            user_data_path=tmp_path / "data", user_log_path=tmp_path / "logs"
        )
        monkeypatch.setattr(paths, "_dirs", lambda: dirs)

        assert paths.get_db_path() == tmp_path / "data" / "slices.sqlite3"
        assert paths.get_log_path() == tmp_path / "logs" / "monitor.log"
        assert (tmp_path / "logs").is_dir()
