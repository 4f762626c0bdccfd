"""Facade that every surface (CLI, dashboard, monitor) uses to change slices.

Each intent reads the current store state, computes the resulting slice set,
writes it in one store transaction and then broadcasts a change hint.
"""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from .active import ActiveSliceManager, Clock
from .away import AwayReconciler
from .config import EngineSettings, RunnerSettings
from .db import SqliteSliceStore
from .drag import MoveResult, drag_bounds, find_overlaps, propose_move, resolve_conflict
from .errors import ValidationError
from .idle import IdleSource
from .merge import merge_slices
from .models import (
    AwayDecision,
    AwaySession,
    ConflictStrategy,
    DragMode,
    MoveApplied,
    MoveConflict,
    SplitSegment,
    SyncSnapshot,
    TimeSlice,
    TrackingState,
)
from .notify import ChangeNotifier, StoreChangeWatcher
from .split import apply_split, plan_split

logger = logging.getLogger(__name__)


class SliceEngine:
    """Time-slice operations over a :class:`SqliteSliceStore`."""

    def __init__(
        self,
        store: SqliteSliceStore,
        *,
        notifier: Optional[ChangeNotifier] = None,
        clock: Clock = datetime.now,
        settings: Optional[Callable[[], EngineSettings]] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier or ChangeNotifier()
        self._clock = clock
        self._settings_provider = settings or self._load_settings
        self.active = ActiveSliceManager(store, self.notifier, self.settings, clock)
        self.away = AwayReconciler(store, self.active, self.notifier, self.settings, clock)

    @classmethod
    def open(cls, db_path: Path, *, check_same_thread: bool = True) -> "SliceEngine":
        return cls(SqliteSliceStore.open(db_path, check_same_thread=check_same_thread))

    def close(self) -> None:
        self.store.close()

    def settings(self) -> EngineSettings:
        return self._settings_provider()

    def update_settings(self, **changes: str) -> EngineSettings:
        merged = {**self.store.load_settings(), **changes}
        parsed = EngineSettings.from_mapping(merged)
        with self.store.transaction():
            for key, value in parsed.to_mapping().items():
                self.store.save_setting(key, value)
        return parsed

    def current(self) -> TrackingState:
        return self.active.current()

    def start(self, work_item_id: int, notes: str = "") -> TimeSlice:
        """Start tracking ``work_item_id``, stopping whatever runs now.

        With rounding enabled the new slice starts where the stopped one was
        rounded to end, unless that end is still in the future; a slice never
        opens after "now".
        """
        with self.store.transaction():
            stopped = self.active.stop()
            start: Optional[datetime] = None
            if (
                stopped is not None
                and stopped.end_time is not None
                and self.settings().rounding_enabled
            ):
                start = min(stopped.end_time, self._clock())
            return self.active.open_slice(work_item_id, start=start, notes=notes)

    def stop(self) -> Optional[TimeSlice]:
        return self.active.stop()

    def split(self, base_id: int, segments: Sequence[SplitSegment]) -> list[TimeSlice]:
        base = self.store.get_slice(base_id)
        planned = plan_split(base, segments, self._clock())
        created = apply_split(self.store, base, planned)
        self._notify()
        if base.is_open or any(time_slice.is_open for time_slice in created):
            self.active.reconcile()
        return created

    def merge(self, slice_ids: Sequence[int]) -> TimeSlice:
        merged = merge_slices(self.store, slice_ids)
        self._notify()
        return merged

    def propose_move(
        self, slice_id: int, new_start: datetime, new_end: datetime
    ) -> MoveResult:
        result = propose_move(self.store, slice_id, new_start, new_end, self._clock())
        if isinstance(result, MoveApplied):
            self._notify()
        return result

    def propose_drag(
        self,
        slice_id: int,
        mode: DragMode,
        delta: timedelta,
        snap: bool = False,
    ) -> MoveResult:
        """Translate a pointer delta into a proposed move, snapping when asked."""
        time_slice = self.store.get_slice(slice_id)
        snap_minutes = self.settings().rounding_interval_minutes if snap else None
        new_start, new_end = drag_bounds(time_slice, mode, delta, snap_minutes)
        return self.propose_move(slice_id, new_start, new_end)

    def resolve_conflict(
        self, conflict: MoveConflict, strategy: ConflictStrategy
    ) -> list[TimeSlice]:
        written = resolve_conflict(self.store, conflict, strategy, self._clock())
        self._notify()
        return written

    def resolve_away(
        self, decision: AwayDecision, target_work_item_id: Optional[int] = None
    ) -> list[TimeSlice]:
        return self.away.resolve(decision, target_work_item_id)

    def add_slice(
        self, work_item_id: int, start: datetime, end: datetime, notes: str = ""
    ) -> TimeSlice:
        _require_duration(start, end)
        new_slice = TimeSlice(
            work_item_id=work_item_id, start_time=start, end_time=end, notes=notes.strip()
        )
        new_slice.id = self.store.insert_slice(new_slice)
        self._notify()
        return new_slice

    def edit_slice(
        self,
        slice_id: int,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> TimeSlice:
        with self.store.transaction():
            current = self.store.get_slice(slice_id)
            if end is not None and current.is_open:
                raise ValidationError(
                    "slice_open", "Stop the running slice instead of setting its end."
                )
            updated = current.copy(
                start_time=start or current.start_time,
                end_time=end or current.end_time,
                notes=notes.strip() if notes is not None else current.notes,
            )
            if updated.end_time is not None:
                _require_duration(updated.start_time, updated.end_time)
            elif updated.start_time > self._clock():
                raise ValidationError(
                    "start_in_future", "A running slice cannot start in the future."
                )
            changes: dict[str, object] = {}
            if start is not None:
                changes["start_time"] = start
            if end is not None:
                changes["end_time"] = end
            if notes is not None:
                changes["notes"] = updated.notes
            self.store.update_slice(slice_id, **changes)
        self._notify()
        return updated

    def delete_slice(self, slice_id: int) -> None:
        self.store.delete_slice(slice_id)
        self._notify()

    def reassign_slice(self, slice_id: int, work_item_id: int) -> TimeSlice:
        with self.store.transaction():
            current = self.store.get_slice(slice_id)
            self.store.update_slice(slice_id, work_item_id=work_item_id)
        self._notify()
        return current.copy(work_item_id=work_item_id)

    def copy_slice(
        self, slice_id: int, days: Iterable[date], include_notes: bool = True
    ) -> list[TimeSlice]:
        """Repeat a closed slice's time-of-day range on each of ``days``."""
        source = self.store.get_slice(slice_id)
        if source.end_time is None:
            raise ValidationError(
                "slice_open", "A running slice cannot be copied; stop it first."
            )
        span = source.end_time - source.start_time
        copies: list[TimeSlice] = []
        with self.store.transaction():
            for day in days:
                start = datetime.combine(day, source.start_time.time())
                copy = TimeSlice(
                    work_item_id=source.work_item_id,
                    start_time=start,
                    end_time=start + span,
                    notes=source.notes if include_notes else "",
                )
                copy.id = self.store.insert_slice(copy)
                copies.append(copy)
        if copies:
            self._notify()
        return copies

    def slices_for_day(self, day: date) -> list[TimeSlice]:
        start = datetime.combine(day, datetime.min.time())
        return self.store.find_slices_in_range(start, start + timedelta(days=1))

    def overlaps_for_day(self, day: date) -> list[tuple[TimeSlice, TimeSlice]]:
        return find_overlaps(self.slices_for_day(day), self._clock())

    def mark_synced(self, slice_id: int, remote_id: str) -> TimeSlice:
        """Record that the slice's current boundaries were pushed to the tracker."""
        with self.store.transaction():
            current = self.store.get_slice(slice_id)
            if current.is_open:
                raise ValidationError(
                    "slice_open", "A running slice cannot be synced; stop it first."
                )
            snapshot = SyncSnapshot(
                synced=True,
                remote_id=remote_id,
                synced_start=current.start_time,
                synced_end=current.end_time,
            )
            self.store.update_slice(slice_id, sync=snapshot)
        self._notify()
        return current.copy(sync=snapshot)

    def clear_sync(self, slice_id: int) -> TimeSlice:
        with self.store.transaction():
            current = self.store.get_slice(slice_id)
            self.store.update_slice(slice_id, sync=SyncSnapshot())
        self._notify()
        return current.copy(sync=SyncSnapshot())

    def out_of_sync_for_day(self, day: date) -> list[TimeSlice]:
        return [time_slice for time_slice in self.slices_for_day(day) if time_slice.is_out_of_sync]

    def _notify(self) -> None:
        self.store.call_after_commit(self.notifier.notify_slices_changed)

    def _load_settings(self) -> EngineSettings:
        return EngineSettings.from_mapping(self.store.load_settings())


class _NonReentrantJob:
    """Run ``func`` unless a previous run is still in progress."""

    def __init__(self, name: str, func: Callable[[], None]) -> None:
        self.name = name
        self._func = func
        self._busy = threading.Lock()

    def __call__(self) -> bool:
        if not self._busy.acquire(blocking=False):
            logger.debug("Skipping %s tick; previous run still in progress.", self.name)
            return False
        try:
            self._func()
        except Exception:
            logger.exception("%s tick failed.", self.name)
        finally:
            self._busy.release()
        return True


class EngineRunner:
    """Drive heartbeats, idle polling and change watching on a background thread."""

    def __init__(
        self,
        engine: SliceEngine,
        settings: Optional[RunnerSettings] = None,
        *,
        idle_source: Optional[IdleSource] = None,
        watcher_store: Optional[SqliteSliceStore] = None,
        on_away: Optional[Callable[[AwaySession], None]] = None,
        clock: Clock = datetime.now,
    ) -> None:
        self.engine = engine
        self.settings = settings or RunnerSettings()
        self._idle_source = idle_source
        self._watcher = (
            StoreChangeWatcher(watcher_store, engine.notifier) if watcher_store else None
        )
        engine.away.return_idle_seconds = self.settings.return_idle_seconds
        self._on_away = on_away
        self._clock = clock
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None
        self._last_heartbeat: Optional[datetime] = None
        self._last_idle_poll: Optional[datetime] = None
        self.heartbeat = _NonReentrantJob("heartbeat", self._write_heartbeat)
        self.idle_poll = _NonReentrantJob("idle poll", self._poll_idle)
        self.watch = _NonReentrantJob("change watch", self._poll_watcher)

    def reconcile_startup(self) -> Optional[AwaySession]:
        """Check the gap since the last heartbeat and repair stray open slices."""
        self.engine.active.reconcile()
        last = self.engine.store.read_heartbeat()
        session = self.engine.away.check_heartbeat_gap(last)
        if session is not None:
            self._emit_away(session)
        return session

    def tick(self) -> None:
        """Run every job that is due; safe to call from a UI timer as well."""
        now = self._clock()
        if self._watcher is not None:
            self.watch()
        if self._due(self._last_heartbeat, self.settings.heartbeat_interval, now):
            if self.heartbeat():
                self._last_heartbeat = now
        if self._idle_source is not None and self._due(
            self._last_idle_poll, self.settings.idle_poll_interval, now
        ):
            if self.idle_poll():
                self._last_idle_poll = now

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self.run_until_stopped, args=(stop_event,), daemon=True
            )
            self._thread = thread
            self._stop_event = stop_event
            thread.start()
            logger.info("Monitor background thread started.")

    def stop(self) -> None:
        thread: Optional[threading.Thread] = None
        with self._lock:
            if not self._thread or not self._thread.is_alive() or not self._stop_event:
                return
            self._stop_event.set()
            thread = self._thread
            self._thread = None
            self._stop_event = None
        if thread:
            thread.join(timeout=10)
            logger.info("Monitor background thread stopped.")

    def is_running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())

    def run_forever(self) -> None:
        stop_event = threading.Event()
        try:
            self.run_until_stopped(stop_event)
        except KeyboardInterrupt:
            logger.info("Monitor interrupted.")

    def run_until_stopped(self, stop_event: threading.Event) -> None:
        logger.info("Starting monitor; heartbeat every %ss.", self.settings.heartbeat_interval.total_seconds())
        self.reconcile_startup()
        interval = self.settings.ui_tick.total_seconds()
        try:
            while not stop_event.is_set():
                self.tick()
                stop_event.wait(interval)
        finally:
            self.heartbeat()
            logger.info("Monitor stopped.")

    def _write_heartbeat(self) -> None:
        self.engine.store.write_heartbeat(self._clock())

    def _poll_idle(self) -> None:
        assert self._idle_source is not None
        session = self.engine.away.poll_idle(self._idle_source())
        if session is not None:
            self._emit_away(session)

    def _poll_watcher(self) -> None:
        assert self._watcher is not None
        self._watcher.poll()

    def _emit_away(self, session: AwaySession) -> None:
        if self._on_away is None:
            return
        try:
            self._on_away(session)
        except Exception:
            logger.exception("Away listener failed.")

    @staticmethod
    def _due(last: Optional[datetime], interval: timedelta, now: datetime) -> bool:
        return last is None or now - last >= interval


def _require_duration(start: datetime, end: datetime) -> None:
    if end <= start:
        raise ValidationError("invalid_duration", "A slice must end after it starts.")
