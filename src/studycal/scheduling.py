"""Conflict detection and free-slot search over half-open time intervals.

Everything here is pure: no I/O, no clock reads, and input collections are
never mutated.  Intervals are half-open (``[start, end)``), so back-to-back
events do not conflict.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo

from studycal.errors import InvalidArgumentError

DEFAULT_MAX_SEARCH_DAYS = 14
DEFAULT_SUGGESTION_DAYS = 7
DEFAULT_SUGGESTION_COUNT = 3


@dataclass(frozen=True, slots=True)
class Interval:
    """A half-open ``[start, end)`` span of time with an optional owner id."""

    start: datetime
    end: datetime
    id: str | None = None

    def __post_init__(self) -> None:
        for boundary in (self.start, self.end):
            if boundary.tzinfo is None or boundary.utcoffset() is None:
                raise InvalidArgumentError("interval boundaries must be timezone-aware")
        if self.start >= self.end:
            raise InvalidArgumentError(
                f"interval start must be before end (got {self.start} >= {self.end})"
            )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: Interval) -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: Interval) -> bool:
        return self.start <= other.start and other.end <= self.end


@dataclass(frozen=True, slots=True)
class PreferredHours:
    """Daily local-time window (e.g. 14:00-16:00), optionally limited to weekdays.

    ``weekdays`` uses ``date.weekday()`` numbering (Monday is 0).
    """

    start: time
    end: time
    weekdays: frozenset[int] | None = None

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise InvalidArgumentError("preferred hours start must be before end")
        if self.weekdays is not None and any(d not in range(7) for d in self.weekdays):
            raise InvalidArgumentError("weekdays must be between 0 (Monday) and 6 (Sunday)")

    def allows(self, day: date) -> bool:
        return self.weekdays is None or day.weekday() in self.weekdays

    def window_for(self, day: date, tz: tzinfo) -> Interval:
        return Interval(
            datetime.combine(day, self.start, tzinfo=tz),
            datetime.combine(day, self.end, tzinfo=tz),
        )


def has_conflict(
    candidate: Interval,
    existing: Iterable[Interval],
    exclude_id: str | None = None,
) -> bool:
    """Return True iff *candidate* overlaps any interval in *existing*.

    The interval whose id equals *exclude_id* is ignored, which lets an
    update check whether an event still fits around everything else.
    """
    return any(
        candidate.overlaps(other)
        for other in existing
        if exclude_id is None or other.id != exclude_id
    )


def find_conflicts(
    candidate: Interval,
    existing: Iterable[Interval],
    exclude_id: str | None = None,
) -> list[Interval]:
    """Return the intervals overlapping *candidate*, sorted by start."""
    conflicts = [
        other
        for other in existing
        if (exclude_id is None or other.id != exclude_id) and candidate.overlaps(other)
    ]
    return sorted(conflicts, key=lambda i: (i.start, i.end))


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Sort by start and merge overlapping or adjacent intervals.

    A merged interval keeps an id only when it came from a single input.
    """
    ordered = sorted(intervals, key=lambda i: (i.start, i.end))
    merged: list[Interval] = []
    for current in ordered:
        if merged and current.start <= merged[-1].end:
            last = merged[-1]
            if current.end > last.end:
                merged[-1] = Interval(last.start, current.end)
            elif last.id is not None and current.id != last.id:
                merged[-1] = Interval(last.start, last.end)
            continue
        merged.append(current)
    return merged


def subtract_interval(intervals: Iterable[Interval], removed: Interval) -> list[Interval]:
    """Cut *removed* out of every interval, keeping the pieces on either side."""
    remaining: list[Interval] = []
    for interval in intervals:
        if not interval.overlaps(removed):
            remaining.append(interval)
            continue
        if interval.start < removed.start:
            remaining.append(Interval(interval.start, removed.start, interval.id))
        if removed.end < interval.end:
            remaining.append(Interval(removed.end, interval.end, interval.id))
    return remaining


def free_gaps(busy: Iterable[Interval], window: Interval) -> list[Interval]:
    """Free spans of *window* not covered by any busy interval."""
    gaps: list[Interval] = []
    cursor = window.start
    for block in merge_intervals(busy):
        if block.end <= window.start:
            continue
        if block.start >= window.end:
            break
        if block.start > cursor:
            gaps.append(Interval(cursor, block.start))
        cursor = max(cursor, block.end)
    if cursor < window.end:
        gaps.append(Interval(cursor, window.end))
    return gaps


def _padded_gaps(
    busy: Sequence[Interval],
    window: Interval,
    break_before: timedelta,
    break_after: timedelta,
) -> list[Interval]:
    # Padding applies only where a gap touches a busy interval, not at the
    # edges of the search window.
    busy_ends = {b.end for b in busy}
    busy_starts = {b.start for b in busy}
    padded: list[Interval] = []
    for gap in free_gaps(busy, window):
        start = gap.start + break_before if gap.start in busy_ends else gap.start
        end = gap.end - break_after if gap.end in busy_starts else gap.end
        if start < end:
            padded.append(Interval(start, end))
    return padded


def _iter_days(window: Interval, tz: tzinfo) -> Iterator[tuple[date, Interval]]:
    """Yield (local date, portion of *window* on that date) pairs."""
    day = window.start.astimezone(tz).date()
    while True:
        day_start = datetime.combine(day, time.min, tzinfo=tz)
        if day_start >= window.end:
            return
        day_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
        start = max(day_start, window.start)
        end = min(day_end, window.end)
        if start < end:
            yield day, Interval(start, end)
        day += timedelta(days=1)


def _clip(gaps: Iterable[Interval], bounds: Interval) -> list[Interval]:
    clipped: list[Interval] = []
    for gap in gaps:
        start = max(gap.start, bounds.start)
        end = min(gap.end, bounds.end)
        if start < end:
            clipped.append(Interval(start, end))
    return clipped


def _search_bounds(window: Interval, max_days: int | None) -> Interval:
    if max_days is None:
        return window
    if max_days < 1:
        raise InvalidArgumentError("max_days must be at least 1")
    return Interval(window.start, min(window.end, window.start + timedelta(days=max_days)))


def _check_duration(duration: timedelta, *breaks: timedelta) -> None:
    if duration <= timedelta(0):
        raise InvalidArgumentError("duration must be positive")
    if any(b < timedelta(0) for b in breaks):
        raise InvalidArgumentError("breaks must not be negative")


def find_next_free_slot(
    busy: Sequence[Interval],
    search_window: Interval,
    duration: timedelta,
    *,
    break_before: timedelta = timedelta(0),
    break_after: timedelta = timedelta(0),
    preferred_hours: PreferredHours | None = None,
    max_days: int | None = DEFAULT_MAX_SEARCH_DAYS,
    tz: tzinfo = UTC,
) -> Interval | None:
    """Return the earliest free interval of exactly *duration*, or None.

    Busy intervals are merged, free gaps inside *search_window* are shrunk by
    the break padding where they border a busy interval, then walked one
    local day at a time for at most *max_days* days.  With *preferred_hours*
    each day first tries a slot inside that day's preferred window and only
    then falls back to the earliest gap of the day.
    """
    _check_duration(duration, break_before, break_after)
    bounds = _search_bounds(search_window, max_days)
    gaps = _padded_gaps(busy, bounds, break_before, break_after)

    for day, day_bounds in _iter_days(bounds, tz):
        day_gaps = _clip(gaps, day_bounds)
        if not day_gaps:
            continue
        if preferred_hours is not None and preferred_hours.allows(day):
            window = preferred_hours.window_for(day, tz)
            for gap in _clip(day_gaps, window):
                if gap.duration >= duration:
                    return Interval(gap.start, gap.start + duration)
        for gap in day_gaps:
            if gap.duration >= duration:
                return Interval(gap.start, gap.start + duration)
    return None


def find_free_slots(
    busy: Sequence[Interval],
    search_window: Interval,
    duration: timedelta,
    *,
    break_between: timedelta = timedelta(0),
    preferred_hours: PreferredHours | None = None,
    max_days: int | None = None,
    tz: tzinfo = UTC,
) -> list[Interval]:
    """List every free slot of *duration* in *search_window*.

    Within a free gap, consecutive slots are spaced by ``duration +
    break_between``.  When *preferred_hours* is given it acts as a filter:
    only slots fully inside the preferred window on an allowed weekday are
    returned.
    """
    _check_duration(duration, break_between)
    bounds = _search_bounds(search_window, max_days)
    gaps = free_gaps(busy, bounds)
    step = duration + break_between

    slots: list[Interval] = []
    for day, day_bounds in _iter_days(bounds, tz):
        day_gaps = _clip(gaps, day_bounds)
        if preferred_hours is not None:
            if not preferred_hours.allows(day):
                continue
            day_gaps = _clip(day_gaps, preferred_hours.window_for(day, tz))
        for gap in day_gaps:
            cursor = gap.start
            while cursor + duration <= gap.end:
                slots.append(Interval(cursor, cursor + duration))
                cursor += step
    return slots


def suggest_alternatives(
    candidate: Interval,
    busy: Sequence[Interval],
    *,
    count: int = DEFAULT_SUGGESTION_COUNT,
    search_window: Interval | None = None,
    preferred_hours: PreferredHours | None = None,
    exclude_id: str | None = None,
    tz: tzinfo = UTC,
) -> list[Interval]:
    """Up to *count* free slots the length of *candidate*, nearest first."""
    if count <= 0:
        return []
    window = search_window or Interval(
        candidate.start, candidate.start + timedelta(days=DEFAULT_SUGGESTION_DAYS)
    )
    others = [b for b in busy if exclude_id is None or b.id != exclude_id]
    slots = find_free_slots(
        others,
        window,
        candidate.duration,
        preferred_hours=preferred_hours,
        tz=tz,
    )
    slots.sort(key=lambda s: (abs(s.start - candidate.start), s.start))
    return slots[:count]


def plan_study_sessions(
    busy: Sequence[Interval],
    window: Interval,
    total: timedelta,
    *,
    session: timedelta = timedelta(minutes=90),
    break_between: timedelta = timedelta(minutes=15),
    preferred_hours: PreferredHours | None = None,
    per_day_limit: int | None = None,
    tz: tzinfo = UTC,
) -> list[Interval]:
    """Spread ``ceil(total / session)`` sessions across the days of *window*.

    Each day takes at most *per_day_limit* sessions (default: an even share
    of the remaining days).  Returns the planned intervals in chronological
    order; fewer than requested when the window runs out of free time.
    """
    _check_duration(session, break_between)
    if total <= timedelta(0):
        return []
    wanted = math.ceil(total / session)
    days = list(_iter_days(window, tz))
    per_day = per_day_limit or math.ceil(wanted / max(len(days), 1))

    planned: list[Interval] = []
    for _day, day_bounds in days:
        if len(planned) >= wanted:
            break
        day_slots = find_free_slots(
            busy,
            day_bounds,
            session,
            break_between=break_between,
            preferred_hours=preferred_hours,
            tz=tz,
        )
        planned.extend(day_slots[: min(per_day, wanted - len(planned))])
    return planned
