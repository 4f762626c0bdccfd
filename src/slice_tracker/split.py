"""Decompose one slice into assigned segments plus gap fillers."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence

from .db import SliceStore
from .errors import ValidationError
from .models import SplitSegment, TimeSlice

logger = logging.getLogger(__name__)


def plan_split(
    base: TimeSlice, segments: Sequence[SplitSegment], now: datetime
) -> list[TimeSlice]:
    """Return the slices that replace ``base``; nothing is written.

    Uncovered time between segments is filled with gap slices that keep the
    base slice's work item and notes, so the output covers exactly the base
    range. For an open base the remainder after the last closed segment stays
    open on the base work item.
    """
    if not segments:
        raise ValidationError("no_segments", "A split needs at least one segment.")

    day = base.start_time.date()
    limit = base.end_time if base.end_time is not None else now
    resolved: list[tuple[datetime, Optional[datetime], SplitSegment]] = []
    for segment in segments:
        if segment.work_item_id is None:
            raise ValidationError(
                "missing_work_item", "Every segment must be assigned to a work item."
            )
        start = datetime.combine(day, segment.start)
        end = datetime.combine(day, segment.end) if segment.end is not None else None
        if end is not None and end <= start:
            raise ValidationError(
                "invalid_duration", "Each segment must end after it starts."
            )
        resolved.append((start, end, segment))

    resolved.sort(key=lambda item: item[0])
    last_index = len(resolved) - 1
    previous_end: Optional[datetime] = None
    for index, (start, end, _segment) in enumerate(resolved):
        if start < base.start_time:
            raise ValidationError(
                "segment_before_base", "Segments cannot start before the original slice."
            )
        if start >= limit or (end is not None and end > limit):
            raise ValidationError(
                "segment_after_base", "Segments cannot extend past the original slice."
            )
        if end is None:
            if not base.is_open:
                raise ValidationError(
                    "open_segment_on_closed_slice",
                    "Only a slice that is still running can end in an open segment.",
                )
            if index != last_index:
                raise ValidationError(
                    "open_segment_not_last", "Only the last segment may be left open."
                )
        if previous_end is not None and start < previous_end:
            raise ValidationError("segments_overlap", "Segments cannot overlap.")
        previous_end = end

    planned: list[TimeSlice] = []
    cursor: Optional[datetime] = base.start_time
    for start, end, segment in resolved:
        assert cursor is not None
        if start > cursor:
            planned.append(_gap(base, cursor, start))
        planned.append(
            TimeSlice(
                work_item_id=segment.work_item_id,  # type: ignore[arg-type]
                start_time=start,
                end_time=end,
                notes=segment.notes.strip(),
            )
        )
        cursor = end

    if cursor is not None:
        if base.is_open:
            planned.append(_gap(base, cursor, None))
        elif base.end_time is not None and cursor < base.end_time:
            planned.append(_gap(base, cursor, base.end_time))
    return planned


def apply_split(
    store: SliceStore, base: TimeSlice, planned: Sequence[TimeSlice]
) -> list[TimeSlice]:
    """Insert the replacement slices, then delete the base, in one transaction."""
    assert base.id is not None
    created: list[TimeSlice] = []
    with store.transaction():
        for time_slice in planned:
            new_slice = time_slice.copy()
            new_slice.id = store.insert_slice(new_slice)
            created.append(new_slice)
        store.delete_slice(base.id)
    logger.info("Split slice %d into %d slice(s).", base.id, len(created))
    return created


def _gap(base: TimeSlice, start: datetime, end: Optional[datetime]) -> TimeSlice:
    return TimeSlice(
        work_item_id=base.work_item_id,
        start_time=start,
        end_time=end,
        notes=base.notes,
    )
