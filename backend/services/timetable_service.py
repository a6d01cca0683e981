"""Candidate timetable construction.

The grid is rebuilt from durable state on every scheduling run and never
persisted. Cells are keyed ``YYYY-MM-DD|HH:MM`` and only exist on weekdays
inside the working-hours window.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from backend.domain.models import (
    AssignedSlot,
    CandidateAvailability,
    CandidateCell,
    Member,
    PreferredBlock,
)
from backend.utils.config import Settings, get_settings
from backend.utils.time_utils import (
    Interval,
    block_applies_to,
    day_of_week,
    format_time,
    interval_from_labels,
    iter_weekdays,
    merge_preferred_windows,
    parse_time,
    split_into_cells,
)


Timetable = dict[str, CandidateCell]


@dataclass(frozen=True)
class TimetableWindow:
    start_minute: int
    end_minute: int
    slot_minutes: int

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "TimetableWindow":
        resolved = settings or get_settings()
        return cls(
            start_minute=parse_time(resolved.schedule_start_time),
            end_minute=parse_time(resolved.schedule_end_time),
            slot_minutes=resolved.slot_minutes,
        )

    def clip(self, interval: Interval) -> Optional[Interval]:
        start = max(interval.start, self.start_minute)
        end = min(interval.end, self.end_minute)
        if start >= end:
            return None
        return Interval(start, end)


def cell_key(on_date: date, start_minute: int) -> str:
    return f"{on_date.isoformat()}|{format_time(start_minute)}"


def block_priority_at(
    blocks: Iterable[PreferredBlock],
    on_date: date,
    cell: Interval,
    default: int,
) -> int:
    """Highest priority among the blocks that cover a cell."""
    priorities = [
        block.priority
        for block in blocks
        if block_applies_to(block, on_date)
        and interval_from_labels(block.start_time, block.end_time).contains(cell)
    ]
    return max(priorities) if priorities else default


def _cell_for(timetable: Timetable, on_date: date, start_minute: int) -> CandidateCell:
    key = cell_key(on_date, start_minute)
    cell = timetable.get(key)
    if cell is None:
        cell = CandidateCell(
            date=on_date,
            start_minute=start_minute,
            day_of_week=day_of_week(on_date),
        )
        timetable[key] = cell
    return cell


def build_timetable(
    owner: Member,
    members: Iterable[Member],
    assigned_slots: Iterable[AssignedSlot],
    start_date: date,
    end_date: date,
    window: Optional[TimetableWindow] = None,
) -> Timetable:
    """Build the candidate grid for weekdays in ``[start_date, end_date)``.

    Owner windows mark cells ``owner_available``; member windows add one
    availability entry per member at the block's priority. Cells overlapping
    an existing slot start out assigned to its holder.
    """
    resolved_window = window or TimetableWindow.from_settings()
    slot_minutes = resolved_window.slot_minutes
    member_list = sorted(members, key=lambda member: member.user_id)
    slots = list(assigned_slots)
    timetable: Timetable = {}

    for on_date in iter_weekdays(start_date, end_date):
        for window_interval in merge_preferred_windows(owner.preferred_blocks, on_date):
            clipped = resolved_window.clip(window_interval)
            if clipped is None:
                continue
            for start_minute in split_into_cells(clipped, slot_minutes):
                cell = _cell_for(timetable, on_date, start_minute)
                cell.owner_available = True
                cell.available_members.append(
                    CandidateAvailability(
                        member_id=owner.user_id,
                        priority=owner.priority,
                        is_owner=True,
                    )
                )

        for member in member_list:
            if member.user_id == owner.user_id:
                continue
            for window_interval in merge_preferred_windows(member.preferred_blocks, on_date):
                clipped = resolved_window.clip(window_interval)
                if clipped is None:
                    continue
                for start_minute in split_into_cells(clipped, slot_minutes):
                    cell = _cell_for(timetable, on_date, start_minute)
                    cell.available_members.append(
                        CandidateAvailability(
                            member_id=member.user_id,
                            priority=block_priority_at(
                                member.preferred_blocks,
                                on_date,
                                Interval(start_minute, start_minute + slot_minutes),
                                member.priority,
                            ),
                        )
                    )

        for slot in slots:
            if slot.date != on_date:
                continue
            clipped = resolved_window.clip(slot.interval)
            if clipped is None:
                continue
            first = clipped.start - (clipped.start % slot_minutes)
            for start_minute in range(first, clipped.end, slot_minutes):
                _cell_for(timetable, on_date, start_minute).assigned_to = slot.user_id

    return dict(sorted(timetable.items()))

