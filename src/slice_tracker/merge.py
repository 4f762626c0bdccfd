"""Collapse several slices of one work item into a single slice."""

from __future__ import annotations

import logging
from typing import Sequence

from .db import SliceStore
from .errors import SliceNotFoundError, ValidationError
from .models import SyncSnapshot, TimeSlice

logger = logging.getLogger(__name__)


def merge_notes(notes: Sequence[str]) -> str:
    return "\n".join(note.strip() for note in notes if note and note.strip())


def plan_merge(slices: Sequence[TimeSlice]) -> TimeSlice:
    """Validate ``slices`` and build the merged slice (not yet persisted)."""
    if len(slices) < 2:
        raise ValidationError("merge_too_few", "Select at least two slices to merge.")
    work_items = {time_slice.work_item_id for time_slice in slices}
    if len(work_items) > 1:
        raise ValidationError(
            "merge_different_work_items",
            "All selected slices must belong to the same work item to be merged.",
        )
    if any(time_slice.sync.synced for time_slice in slices):
        raise ValidationError(
            "merge_synced_slices",
            "Slices that have already been synced cannot be merged.",
        )

    ordered = sorted(slices, key=lambda time_slice: time_slice.start_time)
    return TimeSlice(
        work_item_id=ordered[0].work_item_id,
        start_time=ordered[0].start_time,
        end_time=ordered[-1].end_time,
        notes=merge_notes([time_slice.notes for time_slice in ordered]),
        sync=SyncSnapshot(),
    )


def merge_slices(store: SliceStore, slice_ids: Sequence[int]) -> TimeSlice:
    unique_ids = list(dict.fromkeys(slice_ids))
    if len(unique_ids) < 2:
        raise ValidationError("merge_too_few", "Select at least two slices to merge.")
    with store.transaction():
        slices = store.get_slices(unique_ids)
        found = {time_slice.id for time_slice in slices}
        for slice_id in unique_ids:
            if slice_id not in found:
                raise SliceNotFoundError(slice_id)
        merged = plan_merge(slices)
        merged.id = store.insert_slice(merged)
        store.delete_slices(unique_ids)
    logger.info("Merged slices %s into slice %d.", unique_ids, merged.id)
    return merged
