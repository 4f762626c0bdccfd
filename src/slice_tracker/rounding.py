"""Snap slice boundaries to a fixed rounding grid."""

from __future__ import annotations

from datetime import datetime, timedelta

from .errors import ValidationError

_EPOCH = datetime(1970, 1, 1)


def _grid(interval_minutes: int) -> timedelta:
    if interval_minutes <= 0:
        raise ValidationError(
            "invalid_interval", "Rounding interval must be a positive number of minutes."
        )
    return timedelta(minutes=interval_minutes)


def floor_to_grid(instant: datetime, interval_minutes: int) -> datetime:
    step = _grid(interval_minutes)
    return instant - (instant - _EPOCH) % step


def ceil_to_grid(instant: datetime, interval_minutes: int) -> datetime:
    floored = floor_to_grid(instant, interval_minutes)
    if floored == instant:
        return instant
    return floored + _grid(interval_minutes)


def snap_to_grid(instant: datetime, interval_minutes: int) -> datetime:
    """Round to the nearest grid boundary; exact halves round up."""
    floored = floor_to_grid(instant, interval_minutes)
    step = _grid(interval_minutes)
    if instant - floored >= step / 2:
        return floored + step
    return floored


def round_on_stop(
    start_time: datetime, raw_end_time: datetime, interval_minutes: int
) -> tuple[datetime, datetime]:
    """Normalize the boundaries of a slice that is being closed.

    The start is floored and the end ceiled to the grid. A slice that would
    come out shorter than one interval is stretched to exactly one.
    """
    start = floor_to_grid(start_time, interval_minutes)
    end = ceil_to_grid(raw_end_time, interval_minutes)
    if end - start < _grid(interval_minutes):
        end = start + _grid(interval_minutes)
    return start, end
