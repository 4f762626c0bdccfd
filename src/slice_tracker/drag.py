"""Move or resize a closed slice and resolve overlaps with its neighbours.

A proposed range that overlaps exactly one other slice is returned as a
:class:`MoveConflict` and nothing is written until the caller picks a
:class:`ConflictStrategy`. Dropping the conflict leaves the store untouched.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence, Union

from .db import SliceStore
from .errors import (
    MultipleConflictsError,
    StaleConflictError,
    ValidationError,
)
from .models import (
    ConflictStrategy,
    DragMode,
    MoveApplied,
    MoveConflict,
    TimeSlice,
)
from .rounding import snap_to_grid

logger = logging.getLogger(__name__)

MoveResult = Union[MoveApplied, MoveConflict]


def drag_bounds(
    time_slice: TimeSlice,
    mode: DragMode,
    delta: timedelta,
    snap_minutes: Optional[int] = None,
) -> tuple[datetime, datetime]:
    """Compute the proposed range for a pointer drag of ``delta``."""
    if time_slice.end_time is None:
        raise ValidationError("slice_open", "A running slice cannot be moved or resized.")
    start, end = time_slice.start_time, time_slice.end_time
    if mode == DragMode.MOVE:
        start, end = start + delta, end + delta
        if snap_minutes:
            snapped = snap_to_grid(start, snap_minutes)
            end += snapped - start
            start = snapped
    elif mode == DragMode.RESIZE_START:
        start = start + delta
        if snap_minutes:
            start = snap_to_grid(start, snap_minutes)
    else:
        end = end + delta
        if snap_minutes:
            end = snap_to_grid(end, snap_minutes)
    return start, end


def propose_move(
    store: SliceStore,
    slice_id: int,
    new_start: datetime,
    new_end: datetime,
    now: datetime,
) -> MoveResult:
    """Persist the new range when it is free, otherwise report the conflict."""
    with store.transaction():
        moved = store.get_slice(slice_id)
        conflicting = _single_conflict(store, moved, new_start, new_end, now)
        if conflicting is not None:
            logger.info(
                "Move of slice %d to %s-%s conflicts with slice %d.",
                slice_id,
                new_start,
                new_end,
                conflicting.id,
            )
            return MoveConflict(
                moved=moved,
                new_start=new_start,
                new_end=new_end,
                conflicting=conflicting,
            )
        store.update_slice(slice_id, start_time=new_start, end_time=new_end)
    logger.info("Moved slice %d to %s-%s.", slice_id, new_start, new_end)
    return MoveApplied(slice=moved.copy(start_time=new_start, end_time=new_end))


def resolve_conflict(
    store: SliceStore,
    conflict: MoveConflict,
    strategy: ConflictStrategy,
    now: datetime,
) -> list[TimeSlice]:
    """Apply ``strategy`` to the conflicting slice, then persist the move.

    Returns the slices written (the moved slice first).
    """
    moved_id = conflict.moved.id
    other_id = conflict.conflicting.id
    assert moved_id is not None and other_id is not None
    new_start, new_end = conflict.new_start, conflict.new_end

    with store.transaction():
        moved = store.get_slice(moved_id)
        other = store.get_slice(other_id)
        if (moved.start_time, moved.end_time) != (
            conflict.moved.start_time,
            conflict.moved.end_time,
        ) or (other.start_time, other.end_time) != (
            conflict.conflicting.start_time,
            conflict.conflicting.end_time,
        ):
            raise StaleConflictError()
        current = _single_conflict(store, moved, new_start, new_end, now)
        if current is None or current.id != other_id:
            raise StaleConflictError()

        if strategy == ConflictStrategy.SPLIT_PRESERVE_DURATION:
            written = _preserve_duration(store, moved, other, new_start, new_end, now)
        elif strategy == ConflictStrategy.SPLIT_PRESERVE_ENDTIME:
            written = _preserve_endtime(store, other, new_start, new_end)
        else:
            raise ValidationError("unknown_strategy", f"Unknown strategy: {strategy}")

        store.update_slice(moved_id, start_time=new_start, end_time=new_end)
    logger.info(
        "Resolved conflict between slices %d and %d using %s.",
        moved_id,
        other_id,
        strategy.value,
    )
    return [moved.copy(start_time=new_start, end_time=new_end), *written]


def _single_conflict(
    store: SliceStore,
    moved: TimeSlice,
    new_start: datetime,
    new_end: datetime,
    now: datetime,
) -> Optional[TimeSlice]:
    if moved.is_open:
        raise ValidationError("slice_open", "A running slice cannot be moved or resized.")
    if new_end <= new_start:
        raise ValidationError("invalid_duration", "A slice must end after it starts.")
    overlapping = [
        other
        for other in store.find_slices_in_range(new_start, new_end)
        if other.id != moved.id and other.overlaps(new_start, new_end, now)
    ]
    if not overlapping:
        return None
    if len(overlapping) > 1:
        raise MultipleConflictsError([other.id for other in overlapping if other.id is not None])
    conflicting = overlapping[0]
    if conflicting.is_open:
        raise ValidationError(
            "overlaps_running_slice", "A slice cannot be moved over the running slice."
        )
    return conflicting


def _preserve_duration(
    store: SliceStore,
    moved: TimeSlice,
    other: TimeSlice,
    new_start: datetime,
    new_end: datetime,
    now: datetime,
) -> list[TimeSlice]:
    """Keep all of ``other``'s time: the part displaced by the move follows it.

    The relocated time must land on free time; otherwise the whole resolution
    is rejected.
    """
    assert other.id is not None and other.end_time is not None
    total = other.end_time - other.start_time
    if other.start_time < new_start:
        remaining = total - (new_start - other.start_time)
        _require_free(store, (moved.id, other.id), new_end, new_end + remaining, now)
        head = other.copy(end_time=new_start)
        store.update_slice(other.id, end_time=new_start)
        tail = TimeSlice(
            work_item_id=other.work_item_id,
            start_time=new_end,
            end_time=new_end + remaining,
            notes=other.notes,
        )
        tail.id = store.insert_slice(tail)
        return [head, tail]

    shifted = other.copy(start_time=new_end, end_time=new_end + total)
    _require_free(store, (moved.id, other.id), new_end, new_end + total, now)
    store.update_slice(other.id, start_time=shifted.start_time, end_time=shifted.end_time)
    return [shifted]


def _require_free(
    store: SliceStore,
    ignored: tuple[Optional[int], ...],
    start: datetime,
    end: datetime,
    now: datetime,
) -> None:
    blocking = [
        other
        for other in store.find_slices_in_range(start, end)
        if other.id not in ignored and other.overlaps(start, end, now)
    ]
    if blocking:
        ids = ", ".join(str(other.id) for other in blocking)
        raise ValidationError(
            "resolution_overlaps",
            f"The displaced time would overlap slice(s) {ids}; "
            "choose the other strategy or free that time first.",
        )


def _preserve_endtime(
    store: SliceStore, other: TimeSlice, new_start: datetime, new_end: datetime
) -> list[TimeSlice]:
    """Cut the moved range out of ``other``; the covered time is dropped."""
    assert other.id is not None and other.end_time is not None
    has_head = other.start_time < new_start
    has_tail = other.end_time > new_end

    if has_head and has_tail:
        head = other.copy(end_time=new_start)
        store.update_slice(other.id, end_time=new_start)
        tail = TimeSlice(
            work_item_id=other.work_item_id,
            start_time=new_end,
            end_time=other.end_time,
            notes=other.notes,
        )
        tail.id = store.insert_slice(tail)
        return [head, tail]
    if has_head:
        store.update_slice(other.id, end_time=new_start)
        return [other.copy(end_time=new_start)]
    if has_tail:
        store.update_slice(other.id, start_time=new_end)
        return [other.copy(start_time=new_end)]

    store.delete_slice(other.id)
    logger.info("Slice %d was fully covered by the move and was removed.", other.id)
    return []


def find_overlaps(
    slices: Sequence[TimeSlice], now: datetime
) -> list[tuple[TimeSlice, TimeSlice]]:
    """Return every pair of slices whose ranges overlap, in start order."""
    ordered = sorted(slices, key=lambda time_slice: (time_slice.start_time, time_slice.id or 0))
    pairs: list[tuple[TimeSlice, TimeSlice]] = []
    for index, first in enumerate(ordered):
        first_end = first.effective_end(now)
        for second in ordered[index + 1 :]:
            if second.start_time >= first_end:
                break
            if second.overlaps(first.start_time, first_end, now):
                pairs.append((first, second))
    return pairs
