from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from slice_tracker.db import SqliteSliceStore
from slice_tracker.engine import SliceEngine
from slice_tracker.models import TimeSlice


class FakeClock:
    """Deterministic stand-in for ``datetime.now``."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, hour: int, minute: int = 0, second: int = 0) -> datetime:
        self.now = self.now.replace(hour=hour, minute=minute, second=second, microsecond=0)
        return self.now


def at(hour: int, minute: int = 0, second: int = 0) -> datetime:
    return datetime(2024, 3, 4, hour, minute, second)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(at(9))


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "slices.sqlite3"


@pytest.fixture
def store(db_path):
    store = SqliteSliceStore.open(db_path, check_same_thread=False)
    yield store
    store.close()


@pytest.fixture
def engine(store, clock) -> SliceEngine:
    return SliceEngine(store, clock=clock)


def add_closed(store, work_item_id: int, start: datetime, end: datetime, notes: str = "") -> TimeSlice:
    time_slice = TimeSlice(work_item_id=work_item_id, start_time=start, end_time=end, notes=notes)
    time_slice.id = store.insert_slice(time_slice)
    return time_slice


def add_open(store, work_item_id: int, start: datetime, notes: str = "") -> TimeSlice:
    time_slice = TimeSlice(work_item_id=work_item_id, start_time=start, notes=notes)
    time_slice.id = store.insert_slice(time_slice)
    return time_slice


def all_slices(store) -> list[TimeSlice]:
    return store.find_slices_in_range(datetime(2000, 1, 1), datetime(2100, 1, 1))
