"""Time-slice tracking engine with a single running slice across surfaces."""

from .engine import EngineRunner, SliceEngine
from .errors import (
    MultipleConflictsError,
    PersistenceError,
    SliceNotFoundError,
    SliceTrackerError,
    StaleAwaySessionError,
    StaleConflictError,
    ValidationError,
)
from .models import (
    AwayDecision,
    AwaySession,
    AwayState,
    ConflictStrategy,
    DragMode,
    MoveApplied,
    MoveConflict,
    SplitSegment,
    SyncSnapshot,
    TimeSlice,
    TrackingState,
)

__all__ = [
    "AwayDecision",
    "AwaySession",
    "AwayState",
    "ConflictStrategy",
    "DragMode",
    "EngineRunner",
    "MoveApplied",
    "MoveConflict",
    "MultipleConflictsError",
    "PersistenceError",
    "SliceEngine",
    "SliceNotFoundError",
    "SliceTrackerError",
    "SplitSegment",
    "StaleAwaySessionError",
    "StaleConflictError",
    "SyncSnapshot",
    "TimeSlice",
    "TrackingState",
    "ValidationError",
]
