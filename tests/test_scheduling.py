"""Tests for conflict detection and free-slot search."""

from __future__ import annotations

from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo

import pytest

from studycal.errors import InvalidArgumentError
from studycal.scheduling import (
    Interval,
    PreferredHours,
    find_conflicts,
    find_free_slots,
    find_next_free_slot,
    free_gaps,
    has_conflict,
    merge_intervals,
    plan_study_sessions,
    subtract_interval,
    suggest_alternatives,
)

pytestmark = pytest.mark.unit

DAY = datetime(2026, 3, 2, tzinfo=UTC)  # a Monday


def _at(hour: int, minute: int = 0, *, day: int = 0) -> datetime:
    return DAY + timedelta(days=day, hours=hour, minutes=minute)


def _iv(start: tuple[int, int], end: tuple[int, int], *, day: int = 0, id: str | None = None):
    return Interval(_at(*start, day=day), _at(*end, day=day), id)


BUSY = [_iv((9, 0), (10, 0)), _iv((11, 0), (12, 0))]
WORKDAY = _iv((8, 0), (18, 0))


# ---------------------------------------------------------------------------
# Interval
# ---------------------------------------------------------------------------


class TestInterval:
    def test_naive_boundaries_rejected(self):
        with pytest.raises(InvalidArgumentError, match="timezone-aware"):
            Interval(datetime(2026, 3, 2, 9), datetime(2026, 3, 2, 10))

    def test_empty_interval_rejected(self):
        with pytest.raises(InvalidArgumentError):
            Interval(_at(9), _at(9))

    def test_half_open_overlap(self):
        assert not _iv((9, 0), (10, 0)).overlaps(_iv((10, 0), (11, 0)))
        assert _iv((9, 0), (10, 1)).overlaps(_iv((10, 0), (11, 0)))

    def test_mixed_timezones_compare_by_instant(self):
        berlin = ZoneInfo("Europe/Berlin")
        local = Interval(
            datetime(2026, 3, 2, 10, 30, tzinfo=berlin), datetime(2026, 3, 2, 11, 0, tzinfo=berlin)
        )
        assert local.overlaps(_iv((9, 0), (10, 0)))


# ---------------------------------------------------------------------------
# Conflict detection
# ---------------------------------------------------------------------------


class TestConflicts:
    def test_back_to_back_is_not_a_conflict(self):
        assert not has_conflict(_iv((10, 0), (11, 0)), BUSY)

    def test_overlap_detected(self):
        assert has_conflict(_iv((9, 30), (10, 30)), BUSY)

    def test_excluded_id_ignored(self):
        existing = [_iv((9, 0), (10, 0), id="self"), _iv((11, 0), (12, 0), id="other")]
        assert not has_conflict(_iv((9, 15), (9, 45)), existing, exclude_id="self")
        assert has_conflict(_iv((11, 15), (11, 45)), existing, exclude_id="self")

    def test_find_conflicts_sorted(self):
        conflicts = find_conflicts(_iv((8, 0), (18, 0)), list(reversed(BUSY)))
        assert conflicts == BUSY

    def test_inputs_not_mutated(self):
        busy = list(reversed(BUSY))
        snapshot = list(busy)
        find_next_free_slot(busy, WORKDAY, timedelta(minutes=30))
        merge_intervals(busy)
        assert busy == snapshot


class TestMergeAndGaps:
    def test_merges_overlapping_and_adjacent(self):
        merged = merge_intervals(
            [_iv((11, 0), (12, 0)), _iv((9, 0), (10, 0)), _iv((9, 30), (11, 0))]
        )
        assert merged == [_iv((9, 0), (12, 0))]

    def test_merged_interval_drops_ids(self):
        merged = merge_intervals([_iv((9, 0), (10, 0), id="a"), _iv((9, 30), (10, 30), id="b")])
        assert merged[0].id is None

    def test_free_gaps_inside_window(self):
        assert free_gaps(BUSY, WORKDAY) == [
            _iv((8, 0), (9, 0)),
            _iv((10, 0), (11, 0)),
            _iv((12, 0), (18, 0)),
        ]

    def test_subtract_splits_merged_block(self):
        block = _iv((9, 0), (12, 0))
        assert subtract_interval([block], _iv((10, 0), (11, 0))) == [
            _iv((9, 0), (10, 0)),
            _iv((11, 0), (12, 0)),
        ]

    def test_subtract_trims_edges_and_drops_covered(self):
        busy = [_iv((9, 0), (10, 30)), _iv((10, 0), (10, 45)), _iv((13, 0), (14, 0))]
        assert subtract_interval(busy, _iv((10, 0), (11, 0))) == [
            _iv((9, 0), (10, 0)),
            _iv((13, 0), (14, 0)),
        ]


# ---------------------------------------------------------------------------
# find_next_free_slot
# ---------------------------------------------------------------------------


class TestFindNextFreeSlot:
    def test_forty_five_minutes_fits_before_first_meeting(self):
        slot = find_next_free_slot(BUSY, WORKDAY, timedelta(minutes=45))
        assert slot == _iv((8, 0), (8, 45))

    def test_ninety_minutes_skips_gap_too_short(self):
        slot = find_next_free_slot(BUSY, WORKDAY, timedelta(minutes=90))
        assert slot == _iv((12, 0), (13, 30))
        assert not has_conflict(slot, BUSY)

    def test_unsorted_overlapping_input(self):
        busy = [_iv((11, 0), (12, 0)), _iv((8, 0), (9, 30)), _iv((9, 0), (10, 0))]
        slot = find_next_free_slot(busy, WORKDAY, timedelta(minutes=60))
        assert slot == _iv((10, 0), (11, 0))

    def test_breaks_pad_only_next_to_busy_time(self):
        slot = find_next_free_slot(
            BUSY,
            _iv((9, 0), (18, 0)),
            timedelta(minutes=30),
            break_before=timedelta(minutes=15),
            break_after=timedelta(minutes=15),
        )
        assert slot == _iv((10, 15), (10, 45))

    def test_window_edge_not_padded(self):
        slot = find_next_free_slot(
            BUSY, WORKDAY, timedelta(minutes=30), break_before=timedelta(minutes=15)
        )
        assert slot == _iv((8, 0), (8, 30))

    def test_no_slot_returns_none(self):
        assert find_next_free_slot(BUSY, _iv((9, 0), (12, 0)), timedelta(hours=2)) is None

    def test_search_limited_to_max_days(self):
        window = Interval(_at(0), _at(0, day=5))
        busy = [Interval(_at(0), _at(0, day=3))]
        assert find_next_free_slot(busy, window, timedelta(hours=1), max_days=2) is None
        assert find_next_free_slot(busy, window, timedelta(hours=1), max_days=4) == Interval(
            _at(0, day=3), _at(1, day=3)
        )

    def test_preferred_hours_tried_first(self):
        preferred = PreferredHours(time(14, 0), time(16, 0))
        slot = find_next_free_slot(
            BUSY, WORKDAY, timedelta(minutes=45), preferred_hours=preferred
        )
        assert slot == _iv((14, 0), (14, 45))

    def test_preferred_hours_fall_back_to_any_gap_that_day(self):
        preferred = PreferredHours(time(9, 0), time(10, 0))
        slot = find_next_free_slot(
            BUSY, WORKDAY, timedelta(minutes=45), preferred_hours=preferred
        )
        assert slot == _iv((8, 0), (8, 45))

    def test_preferred_hours_in_local_timezone(self):
        berlin = ZoneInfo("Europe/Berlin")
        preferred = PreferredHours(time(14, 0), time(15, 0))
        slot = find_next_free_slot(
            [], WORKDAY, timedelta(minutes=30), preferred_hours=preferred, tz=berlin
        )
        # 14:00 in Berlin (CET, UTC+1) is 13:00 UTC.
        assert slot == _iv((13, 0), (13, 30))

    @pytest.mark.parametrize("duration", [timedelta(0), timedelta(minutes=-5)])
    def test_non_positive_duration_rejected(self, duration):
        with pytest.raises(InvalidArgumentError, match="duration"):
            find_next_free_slot(BUSY, WORKDAY, duration)

    def test_negative_break_rejected(self):
        with pytest.raises(InvalidArgumentError, match="breaks"):
            find_next_free_slot(
                BUSY, WORKDAY, timedelta(minutes=30), break_after=timedelta(minutes=-1)
            )


# ---------------------------------------------------------------------------
# Listings, alternatives, and study plans
# ---------------------------------------------------------------------------


class TestFindFreeSlots:
    def test_steps_by_duration_plus_break(self):
        slots = find_free_slots(
            BUSY,
            _iv((12, 0), (15, 0)),
            timedelta(minutes=60),
            break_between=timedelta(minutes=30),
        )
        assert slots == [_iv((12, 0), (13, 0)), _iv((13, 30), (14, 30))]

    def test_preferred_weekdays_filter(self):
        window = Interval(_at(8), _at(18, day=1))
        tuesdays = PreferredHours(time(8, 0), time(10, 0), weekdays=frozenset({1}))
        slots = find_free_slots([], window, timedelta(hours=1), preferred_hours=tuesdays)
        assert slots == [_iv((8, 0), (9, 0), day=1), _iv((9, 0), (10, 0), day=1)]

    def test_invalid_weekday_rejected(self):
        with pytest.raises(InvalidArgumentError, match="weekdays"):
            PreferredHours(time(8, 0), time(9, 0), weekdays=frozenset({7}))


class TestSuggestAlternatives:
    def test_nearest_first(self):
        candidate = _iv((9, 30), (10, 30))
        suggestions = suggest_alternatives(
            candidate, BUSY, count=2, search_window=WORKDAY
        )
        assert suggestions == [_iv((10, 0), (11, 0)), _iv((8, 0), (9, 0))]

    def test_zero_count(self):
        assert suggest_alternatives(_iv((9, 30), (10, 30)), BUSY, count=0) == []

    def test_excluded_event_frees_its_own_slot(self):
        busy = [_iv((9, 0), (10, 0), id="self")]
        suggestions = suggest_alternatives(
            _iv((9, 0), (10, 0)), busy, count=1, search_window=WORKDAY, exclude_id="self"
        )
        assert suggestions == [_iv((9, 0), (10, 0))]


class TestPlanStudySessions:
    def test_spreads_sessions_across_days(self):
        window = Interval(_at(9), _at(12, day=2))
        busy = [Interval(_at(0), _at(9))]
        planned = plan_study_sessions(
            busy,
            window,
            timedelta(hours=4),
            session=timedelta(minutes=60),
            break_between=timedelta(minutes=15),
            preferred_hours=PreferredHours(time(9, 0), time(12, 0)),
        )
        assert len(planned) == 4
        assert planned == sorted(planned, key=lambda s: s.start)
        per_day = {s.start.date() for s in planned}
        assert len(per_day) == 2
        assert planned[0] == _iv((9, 0), (10, 0))
        assert planned[1] == _iv((10, 15), (11, 15))
        for slot in planned:
            assert not has_conflict(slot, busy)

    def test_per_day_limit(self):
        window = Interval(_at(8), _at(18, day=3))
        planned = plan_study_sessions(
            [], window, timedelta(hours=3), session=timedelta(hours=1), per_day_limit=1
        )
        assert [s.start.date() for s in planned] == [
            (DAY + timedelta(days=d)).date() for d in range(3)
        ]

    def test_zero_total_plans_nothing(self):
        assert plan_study_sessions(BUSY, WORKDAY, timedelta(0)) == []

    def test_runs_out_of_free_time(self):
        planned = plan_study_sessions(
            BUSY, _iv((8, 0), (12, 0)), timedelta(hours=5), session=timedelta(hours=1)
        )
        assert planned == [_iv((8, 0), (9, 0)), _iv((10, 0), (11, 0))]
