"""Enforce the single-open-slice invariant across every writer of the store.

There is no cross-process lock. Instead every "open" first discovers *all*
open slices and closes them before inserting its own, so racing writers
converge on exactly one open slice (the one requested last). Repeating the
sequence after a failure only re-closes already closed slices.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from .config import EngineSettings, RoundingConfig
from .db import SliceStore
from .errors import ValidationError
from .models import TimeSlice, TrackingState
from .notify import ChangeNotifier
from .rounding import round_on_stop

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
SettingsProvider = Callable[[], EngineSettings]


class ActiveSliceManager:
    def __init__(
        self,
        store: SliceStore,
        notifier: ChangeNotifier,
        settings: SettingsProvider,
        clock: Clock = datetime.now,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._settings = settings
        self._clock = clock

    def open_slice(
        self, work_item_id: int, start: Optional[datetime] = None, notes: str = ""
    ) -> TimeSlice:
        """Close every open slice, then open a new one for ``work_item_id``."""
        now = self._clock()
        if start is not None and start > now:
            raise ValidationError(
                "start_in_future", "A running slice cannot start in the future."
            )
        new_slice = TimeSlice(
            work_item_id=work_item_id, start_time=start or now, notes=notes
        )
        with self._store.transaction():
            closed = self._close_orphans(now)
            new_slice.id = self._store.insert_slice(new_slice)
        if closed:
            logger.info("Closed %d orphaned open slice(s) before opening a new one.", closed)
        logger.info("Opened slice %d for work item %d", new_slice.id, work_item_id)
        self._store.call_after_commit(self._notifier.notify_slices_changed)
        return new_slice

    def close_slice(
        self,
        slice_id: int,
        end_time: datetime,
        rounding: Optional[RoundingConfig] = None,
    ) -> TimeSlice:
        """Close an open slice, applying rounding when it is enabled."""
        with self._store.transaction():
            closed = self._close(slice_id, end_time, rounding)
        self._store.call_after_commit(self._notifier.notify_slices_changed)
        return closed

    def stop(self) -> Optional[TimeSlice]:
        """Close the running slice using the configured rounding grid.

        Returns the closed slice, or ``None`` when nothing was running. Any
        extra open slices left by racing writers are closed too. An open slice
        that starts at or after "now" has no time to keep and is removed.
        """
        now = self._clock()
        rounding = self._settings().rounding
        stopped: Optional[TimeSlice] = None
        removed = False
        with self._store.transaction():
            for open_slice in self._store.find_open_slices():
                assert open_slice.id is not None
                if open_slice.start_time >= now:
                    self._close_orphan(open_slice, now)
                    removed = True
                    continue
                stopped = self._close(open_slice.id, now, rounding)
        if stopped is not None or removed:
            self._store.call_after_commit(self._notifier.notify_slices_changed)
        return stopped

    def reconcile(self) -> TrackingState:
        """Rediscover the open slice, closing any extra ones but the newest."""
        now = self._clock()
        repaired = 0
        with self._store.transaction():
            open_slices = self._store.find_open_slices()
            for orphan in open_slices[:-1]:
                self._close_orphan(orphan, now)
                repaired += 1
        if repaired:
            logger.warning("Closed %d extra open slice(s) during rediscovery.", repaired)
            self._store.call_after_commit(self._notifier.notify_slices_changed)
        return self.current()

    def current(self) -> TrackingState:
        """Re-derive the "currently tracking" projection from the store."""
        open_slices = self._store.find_open_slices()
        if not open_slices:
            return TrackingState(slice=None)
        latest = open_slices[-1]
        elapsed = (self._clock() - latest.start_time).total_seconds()
        return TrackingState(slice=latest, elapsed_seconds=max(0, int(elapsed)))

    def _close(
        self,
        slice_id: int,
        end_time: datetime,
        rounding: Optional[RoundingConfig],
    ) -> TimeSlice:
        current = self._store.get_slice(slice_id)
        if not current.is_open:
            logger.debug("Slice %d is already closed; nothing to do.", slice_id)
            return current

        start = current.start_time
        end = end_time
        if rounding is not None and rounding.enabled:
            start, end = round_on_stop(start, end, rounding.interval_minutes)
            logger.debug(
                "Rounded slice %d from %s-%s to %s-%s (interval %dm)",
                slice_id,
                current.start_time,
                end_time,
                start,
                end,
                rounding.interval_minutes,
            )
        if end <= start:
            raise ValidationError(
                "invalid_duration", "A slice must end after it starts."
            )
        self._store.update_slice(slice_id, start_time=start, end_time=end)
        return current.copy(start_time=start, end_time=end)

    def _close_orphans(self, now: datetime) -> int:
        count = 0
        for orphan in self._store.find_open_slices():
            self._close_orphan(orphan, now)
            count += 1
        return count

    def _close_orphan(self, orphan: TimeSlice, now: datetime) -> None:
        assert orphan.id is not None
        if orphan.start_time >= now:
            # Closing at "now" would leave a zero or negative duration.
            self._store.delete_slice(orphan.id)
            logger.warning("Removed empty open slice %d.", orphan.id)
        else:
            self._store.update_slice(orphan.id, end_time=now)
