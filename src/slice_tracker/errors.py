"""Exceptions raised by the time-slice engine."""

from __future__ import annotations


class SliceTrackerError(Exception):
    """Base class for engine errors."""


class ValidationError(SliceTrackerError):
    """An intent was rejected before any store write.

    ``rule`` is a short machine-readable name for the rule that failed.
    """

    def __init__(self, rule: str, message: str) -> None:
        super().__init__(message)
        self.rule = rule
        self.message = message


class SliceNotFoundError(ValidationError):
    def __init__(self, slice_id: int) -> None:
        super().__init__("slice_not_found", f"No time slice found for id={slice_id}")
        self.slice_id = slice_id


class MultipleConflictsError(ValidationError):
    """A move overlapped more than one neighbouring slice."""

    def __init__(self, slice_ids: list[int]) -> None:
        ids = ", ".join(str(slice_id) for slice_id in slice_ids)
        super().__init__(
            "multiple_conflicts",
            f"The new range overlaps {len(slice_ids)} slices ({ids}); "
            "resolve one conflict at a time.",
        )
        self.slice_ids = slice_ids


class StaleConflictError(ValidationError):
    def __init__(self) -> None:
        super().__init__(
            "stale_conflict",
            "The slices changed since the conflict was detected; move the slice again.",
        )


class StaleAwaySessionError(ValidationError):
    """The slice that was running when the away time began is no longer running."""

    def __init__(self) -> None:
        super().__init__(
            "stale_away",
            "Tracking changed since the away time was detected; it can only be kept.",
        )


class PersistenceError(SliceTrackerError):
    """A store call failed; raised from the underlying database error."""
