"""Clock-time, weekday and preferred-window helpers shared by every service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Iterable, Iterator, Optional

if TYPE_CHECKING:
    from backend.domain.models import PreferredBlock


DAY_NAMES = {
    1: "monday",
    2: "tuesday",
    3: "wednesday",
    4: "thursday",
    5: "friday",
    6: "saturday",
    7: "sunday",
}
WEEKEND_DAYS = frozenset({6, 7})


class TimeFormatError(ValueError):
    """Raised when a clock time or date string is malformed."""


@dataclass(frozen=True, order=True)
class Interval:
    """Half-open interval of minutes since midnight."""

    start: int
    end: int

    @property
    def duration(self) -> int:
        return self.end - self.start

    def overlaps(self, other: "Interval") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end

    def padded(self, minutes: int) -> "Interval":
        return Interval(self.start - minutes, self.end + minutes)

    def to_labels(self) -> tuple[str, str]:
        return format_time(self.start), format_time(self.end)


def parse_time(value: str) -> int:
    """Convert ``HH:MM`` into minutes since midnight."""
    parts = value.strip().split(":")
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        raise TimeFormatError(f"time must follow HH:MM format, got '{value}'")
    hours, minutes = (int(part) for part in parts)
    if not 0 <= hours <= 24 or not 0 <= minutes < 60 or (hours == 24 and minutes):
        raise TimeFormatError(f"time out of range: '{value}'")
    return hours * 60 + minutes


def format_time(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def normalize_time(value: str) -> str:
    """Canonical zero-padded ``HH:MM`` label, so "9:00" and "09:00" compare equal."""
    return format_time(parse_time(value))


def parse_date(value: str | date) -> date:
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise TimeFormatError("date must follow YYYY-MM-DD format") from exc


def interval_from_labels(start_time: str, end_time: str) -> Interval:
    interval = Interval(parse_time(start_time), parse_time(end_time))
    if interval.start >= interval.end:
        raise TimeFormatError(
            f"start time must be before end time ({start_time}-{end_time})"
        )
    return interval


def day_of_week(on_date: date) -> int:
    return on_date.isoweekday()


def day_name(on_date: date) -> str:
    return DAY_NAMES[on_date.isoweekday()]


def is_weekday(on_date: date) -> bool:
    return on_date.isoweekday() not in WEEKEND_DAYS


def week_start(on_date: date) -> date:
    """Monday of the ISO week containing ``on_date``."""
    return on_date - timedelta(days=on_date.isoweekday() - 1)


def iter_weekdays(start_date: date, end_date: date) -> Iterator[date]:
    """Yield weekdays in ``[start_date, end_date)``."""
    current = start_date
    while current < end_date:
        if is_weekday(current):
            yield current
        current += timedelta(days=1)


def block_applies_to(block: PreferredBlock, on_date: date) -> bool:
    if block.specific_date is not None:
        return block.specific_date == on_date
    return block.day_of_week == on_date.isoweekday()


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Merge overlapping or touching intervals into continuous ones."""
    merged: list[Interval] = []
    for interval in sorted(intervals):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = Interval(last.start, max(last.end, interval.end))
        else:
            merged.append(interval)
    return merged


def merge_preferred_windows(
    blocks: Iterable[PreferredBlock],
    on_date: date,
    *,
    min_priority: int = 0,
    vicinity_days: Optional[int] = None,
) -> list[Interval]:
    """Return the merged availability windows a block list yields on a date.

    Recurring blocks match by ISO weekday; date-specific blocks match only
    their own date. With ``vicinity_days`` set, date-specific blocks further
    than that many days from ``on_date`` are discarded before matching.
    """
    intervals: list[Interval] = []
    for block in blocks:
        if block.priority < min_priority:
            continue
        if (
            vicinity_days is not None
            and block.specific_date is not None
            and abs((block.specific_date - on_date).days) > vicinity_days
        ):
            continue
        if not block_applies_to(block, on_date):
            continue
        intervals.append(interval_from_labels(block.start_time, block.end_time))
    return merge_intervals(intervals)


def is_within_windows(interval: Interval, windows: Iterable[Interval]) -> bool:
    return any(window.contains(interval) for window in windows)


def split_into_cells(interval: Interval, slot_minutes: int) -> list[int]:
    """Start minutes of every full cell an interval covers."""
    first = interval.start - (interval.start % slot_minutes)
    if first < interval.start:
        first += slot_minutes
    return list(range(first, interval.end - slot_minutes + 1, slot_minutes))
