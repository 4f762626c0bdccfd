"""Console rendering of a day's slices."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from .engine import SliceEngine
from .models import TimeSlice, TrackingState


class SlicePrinter:
    """Render human-readable slice listings in the console."""

    def __init__(self, engine: SliceEngine, now: Optional[datetime] = None) -> None:
        self.engine = engine
        self.now = now or datetime.now()

    def print_day(self, day: date) -> None:
        slices = self.engine.slices_for_day(day)
        if not slices:
            print("No time slices recorded for the selected day.")
            return

        print(f"Time slices for {day.strftime('%Y-%m-%d')}")
        print("-" * 60)
        for time_slice in slices:
            print(format_slice(time_slice, self.now))

        overlaps = self.engine.overlaps_for_day(day)
        if overlaps:
            print()
            print("Overlapping slices:")
            for first, second in overlaps:
                print(f"  #{first.id} and #{second.id}")

    def print_status(self, state: TrackingState) -> None:
        if state.slice is None:
            print("Not tracking.")
            return
        print(
            f"Tracking work item {state.slice.work_item_id} (slice #{state.slice.id}) "
            f"since {state.slice.start_time.strftime('%H:%M:%S')}: "
            f"{format_duration(state.elapsed_seconds)}"
        )


def format_slice(time_slice: TimeSlice, now: datetime) -> str:
    end = time_slice.end_time.strftime("%H:%M") if time_slice.end_time else "now"
    flags = []
    if time_slice.is_open:
        flags.append("running")
    if time_slice.sync.synced:
        flags.append("out of sync" if time_slice.is_out_of_sync else "synced")
    suffix = f" [{', '.join(flags)}]" if flags else ""
    line = (
        f"#{time_slice.id:<5} {time_slice.start_time.strftime('%H:%M')}-{end:<5} "
        f"item {time_slice.work_item_id:<6} "
        f"{format_duration(time_slice.duration_seconds(now))}{suffix}"
    )
    notes = first_line(time_slice.notes)
    return f"{line}  {notes}" if notes else line


def first_line(notes: Optional[str]) -> str:
    if not notes:
        return ""
    return notes.strip().splitlines()[0][:45] if notes.strip() else ""


def format_duration(seconds: float) -> str:
    total_seconds = int(round(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
