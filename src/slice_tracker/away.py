"""Detect time that passed unobserved while a slice was open and reconcile it.

The reconciler moves between three states:

* ``TRACKING``: a slice is open and no decision is outstanding.
* ``AWAY_PENDING``: an :class:`AwaySession` waits for the user's decision.
* ``IDLE``: nothing is being tracked.

Gaps are reported by idle polling, lock/unlock and suspend/resume hooks, and
once at startup by comparing the last heartbeat with the current time. A
pending session never times out; a further gap detected while one is pending
extends it instead of creating a second one.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Optional

import psutil

from .active import ActiveSliceManager, Clock, SettingsProvider
from .db import SliceStore
from .errors import StaleAwaySessionError, ValidationError
from .models import AwayDecision, AwaySession, AwayState, TimeSlice
from .notify import ChangeNotifier

logger = logging.getLogger(__name__)


class AwayReconciler:
    def __init__(
        self,
        store: SliceStore,
        active: ActiveSliceManager,
        notifier: ChangeNotifier,
        settings: SettingsProvider,
        clock: Clock = datetime.now,
        return_idle_seconds: float = 10.0,
    ) -> None:
        self._store = store
        self._active = active
        self._notifier = notifier
        self._settings = settings
        self._clock = clock
        self.return_idle_seconds = return_idle_seconds
        self._lock = threading.RLock()
        self._away_start: Optional[datetime] = None
        self._away_reason: Optional[str] = None
        self._away_work_item: Optional[int] = None
        self._away_slice_id: Optional[int] = None
        self._was_idle = False
        self._pending: Optional[AwaySession] = None

    @property
    def pending(self) -> Optional[AwaySession]:
        with self._lock:
            return self._pending

    @property
    def state(self) -> AwayState:
        if self.pending is not None:
            return AwayState.AWAY_PENDING
        if self._active.current().is_tracking:
            return AwayState.TRACKING
        return AwayState.IDLE

    def on_lock(self) -> None:
        logger.info("Screen locked.")
        self.mark_away("lock")

    def on_unlock(self) -> Optional[AwaySession]:
        logger.info("Screen unlocked.")
        return self.mark_return("unlock")

    def on_suspend(self) -> None:
        logger.info("System suspended.")
        self.mark_away("suspend")

    def on_resume(self) -> Optional[AwaySession]:
        logger.info("System resumed.")
        return self.mark_return("resume")

    def poll_idle(self, idle_seconds: float) -> Optional[AwaySession]:
        """Feed one idle-time sample; returns a session when the user came back."""
        settings = self._settings()
        if not settings.away_detection_enabled:
            return None
        with self._lock:
            if idle_seconds >= settings.away_threshold_seconds and not self._was_idle:
                self._was_idle = True
                became_idle = self._clock() - timedelta(seconds=idle_seconds)
                self.mark_away("idle", at=became_idle)
                return None
            if idle_seconds < self.return_idle_seconds and self._was_idle:
                logger.info("User returned from idle.")
                return self.mark_return("idle")
        return None

    def mark_away(self, reason: str, at: Optional[datetime] = None) -> None:
        with self._lock:
            if self._away_start is not None:
                return
            tracking = self._active.current()
            if tracking.slice is None:
                return
            self._away_start = at or self._clock()
            self._away_reason = reason
            self._away_work_item = tracking.slice.work_item_id
            self._away_slice_id = tracking.slice.id
            logger.info("User went away (%s) at %s.", reason, self._away_start)

    def mark_return(self, reason: str) -> Optional[AwaySession]:
        with self._lock:
            away_start = self._away_start
            work_item = self._away_work_item
            slice_id = self._away_slice_id
            away_reason = self._away_reason or reason
            self._reset_away()
            if away_start is None or work_item is None:
                return None
            settings = self._settings()
            if not settings.away_detection_enabled:
                return None
            now = self._clock()
            duration = (now - away_start).total_seconds()
            logger.info(
                "User returned (%s). Away for %ds (threshold: %ds).",
                reason,
                duration,
                settings.away_threshold_seconds,
            )
            if duration < settings.away_threshold_seconds:
                return None
            return self._record(away_start, now, work_item, away_reason, slice_id)

    def check_heartbeat_gap(self, last_heartbeat: Optional[datetime]) -> Optional[AwaySession]:
        """At startup, turn a long silence since the last heartbeat into a session."""
        if last_heartbeat is None:
            return None
        settings = self._settings()
        if not settings.away_detection_enabled:
            return None
        tracking = self._active.current()
        if tracking.slice is None:
            return None
        now = self._clock()
        away_start = max(last_heartbeat, tracking.slice.start_time)
        gap = (now - away_start).total_seconds()
        if gap < settings.away_threshold_seconds:
            return None
        reason = "restart" if psutil.boot_time() > last_heartbeat.timestamp() else "heartbeat_gap"
        logger.warning("No heartbeat since %s (%ds); treating the gap as away time.", last_heartbeat, gap)
        with self._lock:
            return self._record(
                away_start, now, tracking.slice.work_item_id, reason, tracking.slice.id
            )

    def resolve(
        self, decision: AwayDecision, target_work_item_id: Optional[int] = None
    ) -> list[TimeSlice]:
        """Apply the user's decision to the pending session and consume it.

        Returns the slices written by the decision.
        """
        with self._lock:
            session = self._pending
            if session is None:
                raise ValidationError(
                    "no_pending_away", "There is no away time waiting for a decision."
                )
            if decision == AwayDecision.REASSIGN and target_work_item_id is None:
                raise ValidationError(
                    "missing_work_item", "Choose a work item to assign the away time to."
                )
            if decision == AwayDecision.KEEP:
                self._pending = None
                logger.info("Away time kept on the running slice.")
                return []

            written = self._split_off_away_time(session, decision, target_work_item_id)
            self._pending = None
        logger.info("Away time resolved with %s.", decision.value)
        self._store.call_after_commit(self._notifier.notify_slices_changed)
        return written

    def _split_off_away_time(
        self,
        session: AwaySession,
        decision: AwayDecision,
        target_work_item_id: Optional[int],
    ) -> list[TimeSlice]:
        now = self._clock()
        written: list[TimeSlice] = []
        with self._store.transaction():
            open_slices = self._store.find_open_slices()
            if not open_slices:
                raise ValidationError(
                    "not_tracking",
                    "No slice is running any more; the away time can only be kept.",
                )
            current = open_slices[-1]
            assert current.id is not None
            if session.source_slice_id is not None and current.id != session.source_slice_id:
                raise StaleAwaySessionError()
            if session.away_start <= current.start_time:
                self._store.delete_slice(current.id)
            else:
                self._store.update_slice(current.id, end_time=session.away_start)
                written.append(current.copy(end_time=session.away_start))

            if decision == AwayDecision.REASSIGN and now > session.away_start:
                away_slice = TimeSlice(
                    work_item_id=target_work_item_id,  # type: ignore[arg-type]
                    start_time=session.away_start,
                    end_time=now,
                )
                away_slice.id = self._store.insert_slice(away_slice)
                written.append(away_slice)

            written.append(self._active.open_slice(current.work_item_id, start=now))
        return written

    def _record(
        self,
        away_start: datetime,
        now: datetime,
        work_item_id: int,
        reason: str,
        slice_id: Optional[int],
    ) -> AwaySession:
        if self._pending is not None:
            if self._pending.source_slice_id != slice_id:
                logger.info(
                    "Away time on slice %s ignored; a decision for slice %s is still pending.",
                    slice_id,
                    self._pending.source_slice_id,
                )
                return self._pending
            self._pending.away_duration_seconds = (now - self._pending.away_start).total_seconds()
            logger.info(
                "Extended pending away time to %ds.", self._pending.away_duration_seconds
            )
            return self._pending
        self._pending = AwaySession(
            away_start=away_start,
            away_duration_seconds=(now - away_start).total_seconds(),
            source_work_item_id=work_item_id,
            reason=reason,
            source_slice_id=slice_id,
        )
        logger.info(
            "Away time detected (%s): %ds since %s.",
            reason,
            self._pending.away_duration_seconds,
            away_start,
        )
        return self._pending

    def _reset_away(self) -> None:
        self._away_start = None
        self._away_reason = None
        self._away_work_item = None
        self._away_slice_id = None
        self._was_idle = False
