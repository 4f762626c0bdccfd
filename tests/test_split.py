"""Tests for splitting a slice into assigned segments."""

from datetime import time

import pytest

from conftest import add_closed, add_open, all_slices, at
from slice_tracker.errors import ValidationError
from slice_tracker.models import SplitSegment


def _coverage(slices):
    ordered = sorted(slices, key=lambda s: s.start_time)
    for first, second in zip(ordered, ordered[1:]):
        assert first.end_time == second.start_time
    return ordered[0].start_time, ordered[-1].end_time


class TestSplitClosedSlice:
    def test_gaps_are_filled_with_the_base_work_item(self, engine, store):
        base = add_closed(store, 1, at(9), at(12), "base notes")
        created = engine.split(
            base.id,
            [
                SplitSegment(time(11), time(11, 30), 3, "review"),
                SplitSegment(time(9, 30), time(10), 2),
            ],
        )

        assert [(s.work_item_id, s.start_time, s.end_time) for s in created] == [
            (1, at(9), at(9, 30)),
            (2, at(9, 30), at(10)),
            (1, at(10), at(11)),
            (3, at(11), at(11, 30)),
            (1, at(11, 30), at(12)),
        ]
        assert created[0].notes == "base notes"
        assert created[3].notes == "review"
        assert _coverage(created) == (at(9), at(12))

        stored = all_slices(store)
        assert base.id not in {s.id for s in stored}
        assert len(stored) == 5

    def test_segment_covering_whole_slice(self, engine, store):
        base = add_closed(store, 1, at(9), at(10))
        created = engine.split(base.id, [SplitSegment(time(9), time(10), 2)])
        assert [(s.work_item_id, s.start_time, s.end_time) for s in created] == [
            (2, at(9), at(10)),
        ]

    def test_overlapping_segments_are_rejected_without_writes(self, engine, store):
        base = add_closed(store, 1, at(9), at(12))
        before = all_slices(store)

        with pytest.raises(ValidationError) as excinfo:
            engine.split(
                base.id,
                [
                    SplitSegment(time(10), time(10, 30), 2),
                    SplitSegment(time(10, 15), time(10, 45), 3),
                ],
            )

        assert excinfo.value.rule == "segments_overlap"
        assert all_slices(store) == before

    @pytest.mark.parametrize(
        "segment, rule",
        [
            (SplitSegment(time(8, 30), time(9, 30), 2), "segment_before_base"),
            (SplitSegment(time(11, 30), time(12, 30), 2), "segment_after_base"),
            (SplitSegment(time(10), time(9, 30), 2), "invalid_duration"),
            (SplitSegment(time(10), time(10, 30), None), "missing_work_item"),
            (SplitSegment(time(10), None, 2), "open_segment_on_closed_slice"),
        ],
    )
    def test_invalid_segments(self, engine, store, segment, rule):
        base = add_closed(store, 1, at(9), at(12))
        with pytest.raises(ValidationError) as excinfo:
            engine.split(base.id, [segment])
        assert excinfo.value.rule == rule
        assert [s.id for s in all_slices(store)] == [base.id]

    def test_empty_split_is_rejected(self, engine, store):
        base = add_closed(store, 1, at(9), at(12))
        with pytest.raises(ValidationError) as excinfo:
            engine.split(base.id, [])
        assert excinfo.value.rule == "no_segments"


class TestSplitOpenSlice:
    def test_remainder_stays_open_on_base_item(self, engine, store, clock):
        base = add_open(store, 1, at(9))
        clock.set(10)

        created = engine.split(base.id, [SplitSegment(time(9), time(9, 30), 2)])

        assert [(s.work_item_id, s.start_time, s.end_time) for s in created] == [
            (2, at(9), at(9, 30)),
            (1, at(9, 30), None),
        ]
        assert [s.id for s in store.find_open_slices()] == [created[-1].id]

    def test_last_segment_may_stay_open(self, engine, store, clock):
        base = add_open(store, 1, at(9))
        clock.set(10)

        created = engine.split(base.id, [SplitSegment(time(9, 30), None, 2)])

        assert [(s.work_item_id, s.start_time, s.end_time) for s in created] == [
            (1, at(9), at(9, 30)),
            (2, at(9, 30), None),
        ]
        assert len(store.find_open_slices()) == 1

    def test_only_last_segment_may_be_open(self, engine, store, clock):
        base = add_open(store, 1, at(9))
        clock.set(10)
        with pytest.raises(ValidationError) as excinfo:
            engine.split(
                base.id,
                [SplitSegment(time(9, 10), None, 2), SplitSegment(time(9, 40), time(9, 50), 3)],
            )
        assert excinfo.value.rule in {"open_segment_not_last", "segments_overlap"}
        assert store.get_slice(base.id).is_open

    def test_segments_cannot_reach_into_the_future(self, engine, store, clock):
        base = add_open(store, 1, at(9))
        clock.set(10)
        with pytest.raises(ValidationError) as excinfo:
            engine.split(base.id, [SplitSegment(time(9, 30), time(10, 30), 2)])
        assert excinfo.value.rule == "segment_after_base"
