"""Domain models for recorded time slices."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, time
from enum import Enum
from typing import Optional


@dataclass(slots=True)
class SyncSnapshot:
    """Boundaries of a slice as of its last successful push to the tracker."""

    synced: bool = False
    remote_id: Optional[str] = None
    synced_start: Optional[datetime] = None
    synced_end: Optional[datetime] = None


@dataclass(slots=True)
class TimeSlice:
    """A contiguous interval of work attached to a single work item.

    ``end_time`` is ``None`` while the slice is open (still accumulating time).
    """

    work_item_id: int
    start_time: datetime
    end_time: Optional[datetime] = None
    notes: str = ""
    sync: SyncSnapshot = field(default_factory=SyncSnapshot)
    id: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def is_out_of_sync(self) -> bool:
        if not self.sync.synced:
            return False
        return (
            self.start_time != self.sync.synced_start
            or self.end_time != self.sync.synced_end
        )

    def effective_end(self, now: datetime) -> datetime:
        return self.end_time if self.end_time is not None else max(now, self.start_time)

    def duration_seconds(self, now: datetime) -> float:
        return (self.effective_end(now) - self.start_time).total_seconds()

    def overlaps(self, start: datetime, end: datetime, now: datetime) -> bool:
        return start < self.effective_end(now) and self.start_time < end

    def copy(self, **changes) -> "TimeSlice":
        return replace(self, **changes)


@dataclass(slots=True)
class SplitSegment:
    """One assigned piece of a split, as time-of-day offsets on the base slice's day."""

    start: time
    end: Optional[time]
    work_item_id: Optional[int]
    notes: str = ""


@dataclass(slots=True)
class AwaySession:
    """An unobserved gap detected while a slice was open."""

    away_start: datetime
    away_duration_seconds: float
    source_work_item_id: int
    reason: str = "idle"
    source_slice_id: Optional[int] = None


@dataclass(slots=True)
class TrackingState:
    """Projection of the store's open slice for display purposes."""

    slice: Optional[TimeSlice]
    elapsed_seconds: int = 0

    @property
    def is_tracking(self) -> bool:
        return self.slice is not None


class ConflictStrategy(str, Enum):
    SPLIT_PRESERVE_DURATION = "split_preserve_duration"
    SPLIT_PRESERVE_ENDTIME = "split_preserve_endtime"


class DragMode(str, Enum):
    MOVE = "move"
    RESIZE_START = "resize_start"
    RESIZE_END = "resize_end"


class AwayDecision(str, Enum):
    KEEP = "keep"
    DISCARD = "discard"
    REASSIGN = "reassign"


class AwayState(str, Enum):
    TRACKING = "tracking"
    AWAY_PENDING = "away_pending"
    IDLE = "idle"


@dataclass(slots=True)
class MoveApplied:
    """Result of a move that had no overlap and was persisted."""

    slice: TimeSlice


@dataclass(slots=True)
class MoveConflict:
    """A proposed move overlapping exactly one neighbour; nothing was written."""

    moved: TimeSlice
    new_start: datetime
    new_end: datetime
    conflicting: TimeSlice
