"""Tests for away detection and reconciliation."""

import psutil
import pytest

from conftest import all_slices, at
from slice_tracker.config import RunnerSettings
from slice_tracker.db import SqliteSliceStore
from slice_tracker.engine import EngineRunner
from slice_tracker.errors import StaleAwaySessionError, ValidationError
from slice_tracker.models import AwayDecision, AwayState


@pytest.fixture
def tracking(engine, clock):
    """Track work item 1 from 09:00, away 09:10-09:20 (lock/unlock)."""
    opened = engine.start(1)
    clock.set(9, 10)
    engine.away.on_lock()
    clock.set(9, 20)
    session = engine.away.on_unlock()
    return opened, session


def _ranges(slices):
    return [(s.work_item_id, s.start_time, s.end_time) for s in slices]


class TestDetection:
    def test_long_absence_creates_pending_session(self, engine, tracking):
        _, session = tracking
        assert session is not None
        assert session.away_start == at(9, 10)
        assert session.away_duration_seconds == 600
        assert session.source_work_item_id == 1
        assert session.reason == "lock"
        assert engine.away.pending is session
        assert engine.away.state == AwayState.AWAY_PENDING

    def test_short_absence_is_ignored(self, engine, clock):
        engine.start(1)
        clock.set(9, 10)
        engine.away.on_lock()
        clock.set(9, 12)
        assert engine.away.on_unlock() is None
        assert engine.away.pending is None
        assert engine.away.state == AwayState.TRACKING

    def test_nothing_is_recorded_when_not_tracking(self, engine, clock):
        assert engine.away.state == AwayState.IDLE
        engine.away.on_suspend()
        clock.set(11)
        assert engine.away.on_resume() is None

    def test_second_absence_extends_the_pending_session(self, engine, clock, tracking):
        _, session = tracking
        clock.set(9, 21)
        engine.away.on_lock()
        clock.set(9, 40)
        extended = engine.away.on_unlock()

        assert extended is session
        assert extended.away_start == at(9, 10)
        assert extended.away_duration_seconds == 1800

    def test_idle_polling(self, engine, clock):
        engine.start(1)
        clock.set(9, 20)
        assert engine.away.poll_idle(400) is None
        clock.set(9, 30)
        session = engine.away.poll_idle(2)

        assert session is not None
        assert session.away_start == at(9, 13, 20)
        assert session.reason == "idle"

    def test_return_threshold_comes_from_runner_settings(self, engine, clock):
        EngineRunner(engine, RunnerSettings(return_idle_seconds=30.0), clock=clock)
        engine.start(1)
        clock.set(9, 20)
        engine.away.poll_idle(400)
        clock.set(9, 30)
        session = engine.away.poll_idle(20)
        assert session is not None
        assert session.away_start == at(9, 13, 20)

    def test_session_remembers_the_running_slice(self, tracking):
        opened, session = tracking
        assert session.source_slice_id == opened.id

    def test_disabled_detection(self, engine, clock):
        engine.update_settings(away_detection_enabled="false")
        engine.start(1)
        clock.set(9, 20)
        engine.away.poll_idle(900)
        clock.set(9, 30)
        assert engine.away.poll_idle(1) is None
        assert engine.away.pending is None


class TestResolve:
    def test_keep_writes_nothing(self, engine, store, db_path, tracking):
        opened, _ = tracking
        observer = SqliteSliceStore.open(db_path)
        try:
            version = observer.data_version()
            assert engine.resolve_away(AwayDecision.KEEP) == []
            assert observer.data_version() == version
        finally:
            observer.close()

        assert [s.id for s in store.find_open_slices()] == [opened.id]
        assert engine.away.pending is None

    def test_reassign_produces_three_slices(self, engine, store, tracking):
        engine.resolve_away(AwayDecision.REASSIGN, 2)

        assert _ranges(all_slices(store)) == [
            (1, at(9), at(9, 10)),
            (2, at(9, 10), at(9, 20)),
            (1, at(9, 20), None),
        ]
        assert engine.away.pending is None

    def test_discard_drops_the_away_time(self, engine, store, tracking):
        engine.resolve_away(AwayDecision.DISCARD)

        assert _ranges(all_slices(store)) == [
            (1, at(9), at(9, 10)),
            (1, at(9, 20), None),
        ]

    def test_reassign_needs_a_target(self, engine, tracking):
        with pytest.raises(ValidationError) as excinfo:
            engine.resolve_away(AwayDecision.REASSIGN)
        assert excinfo.value.rule == "missing_work_item"
        assert engine.away.pending is not None

    def test_nothing_pending(self, engine):
        with pytest.raises(ValidationError) as excinfo:
            engine.resolve_away(AwayDecision.KEEP)
        assert excinfo.value.rule == "no_pending_away"

    def test_stopped_slice_can_only_be_kept(self, engine, tracking):
        engine.stop()
        with pytest.raises(ValidationError) as excinfo:
            engine.resolve_away(AwayDecision.DISCARD)
        assert excinfo.value.rule == "not_tracking"
        assert engine.away.pending is not None
        assert engine.resolve_away(AwayDecision.KEEP) == []


    def test_switching_work_items_makes_the_session_stale(self, engine, store, clock, tracking):
        clock.set(9, 25)
        engine.start(2)
        clock.set(9, 30)
        before = all_slices(store)

        with pytest.raises(StaleAwaySessionError):
            engine.resolve_away(AwayDecision.DISCARD)

        assert all_slices(store) == before
        assert _ranges(before) == [(1, at(9), at(9, 25)), (2, at(9, 25), None)]
        assert engine.resolve_away(AwayDecision.KEEP) == []


class TestHeartbeatGap:
    @pytest.mark.parametrize("boot_hour, reason", [(8, "heartbeat_gap"), (10, "restart")])
    def test_gap_since_last_heartbeat(self, engine, store, clock, monkeypatch, boot_hour, reason):
        monkeypatch.setattr(psutil, "boot_time", lambda: at(boot_hour).timestamp())
        engine.start(1)
        store.write_heartbeat(at(9, 30))
        clock.set(11)
        seen = []
        runner = EngineRunner(engine, on_away=seen.append, clock=clock)

        session = runner.reconcile_startup()

        assert seen == [session]
        assert session.away_start == at(9, 30)
        assert session.away_duration_seconds == 5400
        assert session.reason == reason

    def test_recent_heartbeat_is_not_a_gap(self, engine, store, clock):
        engine.start(1)
        store.write_heartbeat(at(9, 30))
        clock.set(9, 31)
        assert EngineRunner(engine, clock=clock).reconcile_startup() is None
