"""Auto-assignment of owner time to room members.

Scheduling runs week by week over a candidate timetable in five ordered
phases. Each phase only assigns cells that are still free and inside the
owner's availability, and only to members still below their weekly quota.

1. deferred carry-over: members owed time from an earlier run go first,
   on their least contended cells;
2. undisputed: a cell with exactly one member goes to that member;
3. iterative greedy: the member furthest below quota takes its best scored
   cell, repeatedly;
4. owner arbitration: contested leftovers go to the owner;
5. finalize: best-effort fill, then shortfalls become carry-over. Phase 3
   already exhausts every eligible cell, so the fill only matters when an
   earlier phase is skipped.
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Iterable, Optional

from backend.domain.constraints import SchedulingConfig, validate_scheduling_config
from backend.domain.models import (
    ActivityAction,
    AssignedSlot,
    CandidateCell,
    Member,
    RoomState,
)
from backend.repository.data_repository import DataRepository
from backend.repository.optimistic import with_optimistic_retry
from backend.services.carry_over_service import CarryOverChange, CarryOverLedger
from backend.services.notification_service import (
    NotificationService,
    stage_activity,
    stage_event,
)
from backend.services.timetable_service import (
    Timetable,
    TimetableWindow,
    build_timetable,
    cell_key,
)
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger
from backend.utils.time_utils import (
    Interval,
    format_time,
    parse_date,
    parse_time,
    week_start,
)


logger = get_logger(__name__)

BASE_SCORE = 1000
CONTENDER_PENALTY = 10
PRIORITY_WEIGHT = 50
CONTIGUITY_BONUS = 200
PROXIMITY_MAX = 100
PROXIMITY_DECAY_PER_HOUR = 20


class SchedulingValidationError(Exception):
    """Raised when scheduling input is invalid."""


class RoomNotFoundError(Exception):
    """Raised when a room id does not resolve to stored state."""


class SchedulingPermissionError(Exception):
    """Raised when someone other than the owner triggers auto-scheduling."""


@dataclass
class MemberAssignment:
    member_id: str
    required_slots: int
    cells: list[tuple[date, int]] = field(default_factory=list)
    phase_counts: dict[int, int] = field(default_factory=lambda: defaultdict(int))

    @property
    def assigned_slots(self) -> int:
        return len(self.cells)


@dataclass(frozen=True)
class UnresolvedBlock:
    date: date
    start_time: str
    end_time: str
    member_ids: tuple[str, ...]

    def to_payload(self) -> dict[str, object]:
        return {
            "date": self.date.isoformat(),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "member_ids": list(self.member_ids),
        }


@dataclass
class ScheduleResult:
    run_number: int
    assignments: dict[str, MemberAssignment]
    owner_cells: list[tuple[date, int]]
    slots: list[AssignedSlot]
    carry_over_changes: list[CarryOverChange]
    unresolved_blocks: list[UnresolvedBlock]
    intervention_members: list[str]

    def slots_for(self, member_id: str) -> list[AssignedSlot]:
        return [slot for slot in self.slots if slot.user_id == member_id]


def merge_cells_into_slots(
    cells_by_member: dict[str, list[tuple[date, int]]],
    slot_minutes: int,
    subject: str,
) -> list[AssignedSlot]:
    """Collapse consecutive cells of one member into contiguous slots."""
    slots: list[AssignedSlot] = []
    for member_id in sorted(cells_by_member):
        run_start: Optional[tuple[date, int]] = None
        run_end = 0
        for on_date, start_minute in sorted(set(cells_by_member[member_id])):
            if run_start is not None and run_start[0] == on_date and run_end == start_minute:
                run_end = start_minute + slot_minutes
                continue
            if run_start is not None:
                slots.append(
                    AssignedSlot(
                        user_id=member_id,
                        date=run_start[0],
                        start_time=format_time(run_start[1]),
                        end_time=format_time(run_end),
                        subject=subject,
                    )
                )
            run_start = (on_date, start_minute)
            run_end = start_minute + slot_minutes
        if run_start is not None:
            slots.append(
                AssignedSlot(
                    user_id=member_id,
                    date=run_start[0],
                    start_time=format_time(run_start[1]),
                    end_time=format_time(run_end),
                    subject=subject,
                )
            )
    return sorted(slots, key=lambda slot: (slot.date, slot.start_time, slot.user_id))


class AutoAssignmentAlgorithm:
    """Five-phase assignment over one timetable. Mutates the cells it assigns."""

    def __init__(
        self,
        timetable: Timetable,
        members: Iterable[Member],
        owner_id: str,
        config: SchedulingConfig,
        ledger: CarryOverLedger,
    ) -> None:
        self._timetable = timetable
        self._members = {member.user_id: member for member in members}
        self._owner_id = owner_id
        self._config = config
        self._ledger = ledger
        self._base_quota = math.ceil(config.min_minutes_per_week / config.slot_minutes)

    # --- helpers -----------------------------------------------------------

    def _week_cells(self, week_monday: date) -> list[CandidateCell]:
        week_end = week_monday + timedelta(days=7)
        return [cell for cell in self._timetable.values() if week_monday <= cell.date < week_end]

    def _is_eligible(self, cell: CandidateCell, member_id: str) -> bool:
        return (
            cell.assigned_to is None
            and cell.owner_available
            and cell.entry_for(member_id) is not None
        )

    def _below_quota(self, assignment: MemberAssignment) -> bool:
        return assignment.assigned_slots < assignment.required_slots

    def _assign(
        self,
        cell: CandidateCell,
        assignment: MemberAssignment,
        phase: int,
    ) -> None:
        cell.assigned_to = assignment.member_id
        assignment.cells.append((cell.date, cell.start_minute))
        assignment.phase_counts[phase] += 1

    def score_cell(self, cell: CandidateCell, assignment: MemberAssignment) -> float:
        entry = cell.entry_for(assignment.member_id)
        priority = entry.priority if entry is not None else 0
        score = float(BASE_SCORE)
        score -= CONTENDER_PENALTY * len(cell.member_entries())
        score += PRIORITY_WEIGHT * (priority - self._config.phase_priority)

        previous = self._timetable.get(
            cell_key(cell.date, cell.start_minute - self._config.slot_minutes)
        )
        if previous is not None and previous.assigned_to == assignment.member_id:
            score += CONTIGUITY_BONUS

        if assignment.cells:
            average_start = sum(start for _, start in assignment.cells) / len(assignment.cells)
            hours_away = abs(cell.start_minute - average_start) / 60
            score += max(0.0, PROXIMITY_MAX - PROXIMITY_DECAY_PER_HOUR * hours_away)
        return score

    # --- phases -------------------------------------------------------------

    def _phase_carry_over(
        self,
        cells: list[CandidateCell],
        assignments: dict[str, MemberAssignment],
        owed: dict[str, int],
    ) -> None:
        ordered = sorted(
            (member_id for member_id, slots in owed.items() if slots > 0),
            key=lambda member_id: (
                -owed[member_id],
                -self._members[member_id].priority,
                member_id,
            ),
        )
        for member_id in ordered:
            assignment = assignments[member_id]
            candidates = sorted(
                (cell for cell in cells if self._is_eligible(cell, member_id)),
                key=lambda cell: (len(cell.member_entries()), cell.date, cell.start_minute),
            )
            granted = 0
            for cell in candidates:
                if granted >= owed[member_id] or not self._below_quota(assignment):
                    break
                self._assign(cell, assignment, phase=1)
                granted += 1

    def _phase_undisputed(
        self,
        cells: list[CandidateCell],
        assignments: dict[str, MemberAssignment],
    ) -> None:
        for cell in cells:
            entries = cell.member_entries()
            if len(entries) != 1:
                continue
            assignment = assignments.get(entries[0].member_id)
            if assignment is None or not self._below_quota(assignment):
                continue
            if self._is_eligible(cell, assignment.member_id):
                self._assign(cell, assignment, phase=2)

    def _phase_greedy(
        self,
        cells: list[CandidateCell],
        assignments: dict[str, MemberAssignment],
    ) -> None:
        while True:
            contenders = []
            for assignment in assignments.values():
                if not self._below_quota(assignment):
                    continue
                eligible = [cell for cell in cells if self._is_eligible(cell, assignment.member_id)]
                if eligible:
                    contenders.append((assignment, eligible))
            if not contenders:
                return

            assignment, eligible = min(
                contenders,
                key=lambda item: (
                    -(item[0].required_slots - item[0].assigned_slots),
                    -self._members[item[0].member_id].priority,
                    item[0].member_id,
                ),
            )
            best = min(
                eligible,
                key=lambda cell: (
                    -self.score_cell(cell, assignment),
                    cell.date,
                    cell.start_minute,
                ),
            )
            self._assign(best, assignment, phase=3)

    def _phase_owner_arbitration(self, cells: list[CandidateCell]) -> list[tuple[date, int]]:
        """Award every contested leftover to the owner.

        Cells inside the owner's preferred time of day are claimed first, which
        only orders the returned list; the set of awarded cells is the same.
        """
        preferred: Optional[Interval] = None
        if self._config.owner_time_preference is not None:
            start, end = self._config.time_of_day_windows[self._config.owner_time_preference]
            preferred = Interval(start, end)

        contested = [
            cell
            for cell in cells
            if cell.assigned_to is None
            and cell.owner_available
            and len(cell.member_entries()) > 1
        ]

        def order(cell: CandidateCell) -> tuple[int, date, int]:
            in_window = (
                preferred is not None
                and preferred.contains(
                    Interval(cell.start_minute, cell.start_minute + self._config.slot_minutes)
                )
            )
            return (0 if in_window else 1, cell.date, cell.start_minute)

        awarded: list[tuple[date, int]] = []
        for cell in sorted(contested, key=order):
            cell.assigned_to = self._owner_id
            awarded.append((cell.date, cell.start_minute))
        return awarded

    def _phase_finalize_fill(
        self,
        cells: list[CandidateCell],
        assignments: dict[str, MemberAssignment],
    ) -> None:
        """Best-effort fill for members still below quota, hour blocks first.

        Eligibility matches the greedy phase, so after a complete greedy pass
        nothing is left for it; it only picks up cells earlier phases left open.
        """
        slot_minutes = self._config.slot_minutes
        cells_per_hour = max(1, 60 // slot_minutes)
        for member_id in sorted(assignments):
            assignment = assignments[member_id]
            if not self._below_quota(assignment):
                continue
            eligible = [cell for cell in cells if self._is_eligible(cell, member_id)]

            # hour blocks first
            for cell in eligible:
                if not self._is_eligible(cell, member_id):
                    continue
                missing = assignment.required_slots - assignment.assigned_slots
                if missing < cells_per_hour:
                    break
                run = [cell]
                for step in range(1, cells_per_hour):
                    follower = self._timetable.get(
                        cell_key(cell.date, cell.start_minute + step * slot_minutes)
                    )
                    if follower is None or not self._is_eligible(follower, member_id):
                        break
                    run.append(follower)
                if len(run) == cells_per_hour and all(item.assigned_to is None for item in run):
                    for item in run:
                        self._assign(item, assignment, phase=5)

            for cell in eligible:
                if not self._below_quota(assignment):
                    break
                if self._is_eligible(cell, member_id):
                    self._assign(cell, assignment, phase=5)

    def _unresolved(self, cells: list[CandidateCell]) -> list[UnresolvedBlock]:
        """Contested cells outside the owner's time, joined into consecutive blocks.

        Adjacent cells on one date with the same contenders form one block.
        """
        slot_minutes = self._config.slot_minutes
        blocks: list[UnresolvedBlock] = []
        for cell in sorted(cells, key=lambda item: (item.date, item.start_minute)):
            entries = cell.member_entries()
            if cell.assigned_to is not None or cell.owner_available or len(entries) < 2:
                continue
            member_ids = tuple(sorted(entry.member_id for entry in entries))
            start_time = format_time(cell.start_minute)
            end_time = format_time(cell.start_minute + slot_minutes)
            last = blocks[-1] if blocks else None
            if (
                last is not None
                and last.date == cell.date
                and last.end_time == start_time
                and last.member_ids == member_ids
            ):
                blocks[-1] = replace(last, end_time=end_time)
                continue
            blocks.append(
                UnresolvedBlock(
                    date=cell.date,
                    start_time=start_time,
                    end_time=end_time,
                    member_ids=member_ids,
                )
            )
        return blocks

    # --- driver -------------------------------------------------------------

    def run(self, start_date: date) -> tuple[
        dict[str, MemberAssignment],
        list[tuple[date, int]],
        list[UnresolvedBlock],
        dict[str, tuple[int, date]],
    ]:
        """Schedule every week from the Monday of ``start_date``.

        Returns total assignments, owner-arbitrated cells, unresolved blocks
        and per-member shortfalls (missing slots, first short week).
        """
        totals: dict[str, MemberAssignment] = {
            member_id: MemberAssignment(member_id=member_id, required_slots=0)
            for member_id in self._members
        }
        owner_cells: list[tuple[date, int]] = []
        unresolved: list[UnresolvedBlock] = []
        shortfalls: dict[str, tuple[int, date]] = {}
        monday = week_start(start_date)

        for week_index in range(self._config.num_weeks):
            current_monday = monday + timedelta(days=7 * week_index)
            cells = self._week_cells(current_monday)
            owed = (
                {member_id: self._ledger.owed_slots(member) for member_id, member in self._members.items()}
                if week_index == 0
                else {}
            )
            assignments = {
                member_id: MemberAssignment(
                    member_id=member_id,
                    required_slots=self._base_quota + owed.get(member_id, 0),
                )
                for member_id in self._members
            }
            for cell in cells:
                if cell.assigned_to in assignments:
                    assignments[cell.assigned_to].cells.append((cell.date, cell.start_minute))

            self._phase_carry_over(cells, assignments, owed)
            self._phase_undisputed(cells, assignments)
            self._phase_greedy(cells, assignments)
            owner_cells.extend(self._phase_owner_arbitration(cells))
            self._phase_finalize_fill(cells, assignments)
            unresolved.extend(self._unresolved(cells))

            for member_id, assignment in assignments.items():
                total = totals[member_id]
                total.required_slots += assignment.required_slots
                total.cells.extend(assignment.cells)
                for phase, count in assignment.phase_counts.items():
                    total.phase_counts[phase] += count
                missing = assignment.required_slots - assignment.assigned_slots
                if missing > 0:
                    previous = shortfalls.get(member_id)
                    shortfalls[member_id] = (
                        (previous[0] if previous else 0) + missing,
                        previous[1] if previous else current_monday,
                    )

            logger.info(
                "Week scheduled | week_start=%s | cells=%s | owner_cells=%s | short_members=%s",
                current_monday.isoformat(),
                len(cells),
                len(owner_cells),
                sum(1 for a in assignments.values() if self._below_quota(a)),
            )

        return totals, owner_cells, unresolved, shortfalls


class AutoSchedulingService:
    """Orchestrates timetable build, assignment, ledger and persistence for a room."""

    def __init__(
        self,
        repository: DataRepository,
        notifications: Optional[NotificationService] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._repository = repository
        self._settings = settings or get_settings()
        self._notifications = notifications or NotificationService(repository)

    def build_config(
        self,
        min_minutes_per_week: int,
        num_weeks: int,
        owner_time_preference: Optional[str] = None,
    ) -> SchedulingConfig:
        settings = self._settings
        config = SchedulingConfig(
            min_minutes_per_week=min_minutes_per_week,
            num_weeks=num_weeks,
            schedule_start_minute=parse_time(settings.schedule_start_time),
            schedule_end_minute=parse_time(settings.schedule_end_time),
            slot_minutes=settings.slot_minutes,
            phase_priority=settings.phase_priority,
            min_quota_minutes=settings.min_quota_minutes,
            max_quota_minutes=settings.max_quota_minutes,
            owner_time_preference=owner_time_preference,
            time_of_day_windows={
                name: (parse_time(start), parse_time(end))
                for name, (start, end) in settings.time_of_day_windows.items()
            },
        )
        try:
            validate_scheduling_config(config)
        except ValueError as exc:
            raise SchedulingValidationError(str(exc)) from exc
        return config

    def schedule(
        self,
        state: RoomState,
        start_date: date,
        config: SchedulingConfig,
        replace_existing: bool = True,
    ) -> ScheduleResult:
        """Run one scheduling pass on an in-memory room aggregate.

        With ``replace_existing`` slots already inside the range are
        regenerated; otherwise they block their cells and count toward the
        holder's quota.
        """
        if not state.owner.preferred_blocks:
            raise SchedulingValidationError("Owner has no preferred blocks to schedule within")

        range_start = week_start(start_date)
        range_end = range_start + timedelta(days=7 * config.num_weeks)
        outside = [
            slot for slot in state.assigned_slots if not range_start <= slot.date < range_end
        ]
        inside = [slot for slot in state.assigned_slots if range_start <= slot.date < range_end]
        kept = [] if replace_existing else inside

        window = TimetableWindow(
            start_minute=config.schedule_start_minute,
            end_minute=config.schedule_end_minute,
            slot_minutes=config.slot_minutes,
        )
        timetable = build_timetable(
            state.owner,
            state.members.values(),
            kept,
            range_start,
            range_end,
            window,
        )
        run_number = state.schedule_run_count + 1
        ledger = CarryOverLedger(
            slot_minutes=config.slot_minutes,
            consecutive_runs=self._settings.intervention_consecutive_runs,
        )
        algorithm = AutoAssignmentAlgorithm(
            timetable,
            state.members.values(),
            state.owner_id,
            config,
            ledger,
        )
        assignments, owner_cells, unresolved, shortfalls = algorithm.run(range_start)

        kept_cells = {
            (slot.date, minute)
            for slot in kept
            for minute in range(slot.interval.start, slot.interval.end, config.slot_minutes)
        }
        new_cells: dict[str, list[tuple[date, int]]] = {
            member_id: [cell for cell in assignment.cells if cell not in kept_cells]
            for member_id, assignment in assignments.items()
        }
        new_cells[state.owner_id] = list(owner_cells)
        new_slots = merge_cells_into_slots(
            new_cells,
            config.slot_minutes,
            self._settings.auto_assignment_subject,
        )
        new_slots = [
            replace(slot, subject="Owner arbitration") if slot.user_id == state.owner_id else slot
            for slot in new_slots
        ]

        changes = ledger.apply(state.members.values(), shortfalls, run_number)
        intervention_members = [
            change.member_id for change in changes if change.intervention_required
        ]

        state.assigned_slots = sorted(
            outside + kept + new_slots,
            key=lambda slot: (slot.date, slot.start_time, slot.user_id),
        )
        state.schedule_run_count = run_number

        stage_activity(
            state,
            state.owner_id,
            ActivityAction.AUTO_ASSIGN,
            f"Auto-assigned {len(new_slots)} slots over {config.num_weeks} week(s)",
            {
                "run_number": run_number,
                "start_date": range_start.isoformat(),
                "num_weeks": config.num_weeks,
                "unresolved": len(unresolved),
                "intervention_members": intervention_members,
            },
        )
        stage_event(
            state,
            "slots_assigned",
            {
                "run_number": run_number,
                "slots": [slot.to_payload() for slot in new_slots],
                "unresolved_blocks": [block.to_payload() for block in unresolved],
            },
        )

        logger.info(
            "Auto-schedule completed | room_id=%s | run=%s | slots=%s | unresolved=%s | carry_over=%s",
            state.room_id,
            run_number,
            len(new_slots),
            len(unresolved),
            sum(1 for change in changes if change.needed_hours > 0),
        )
        return ScheduleResult(
            run_number=run_number,
            assignments=assignments,
            owner_cells=owner_cells,
            slots=new_slots,
            carry_over_changes=changes,
            unresolved_blocks=unresolved,
            intervention_members=intervention_members,
        )

    def run_auto_schedule(
        self,
        room_id: str,
        start_date: date | str,
        num_weeks: int = 1,
        min_minutes_per_week: Optional[int] = None,
        owner_time_preference: Optional[str] = None,
        replace_existing: bool = True,
        actor_id: Optional[str] = None,
    ) -> ScheduleResult:
        """Schedule a room and persist the outcome under optimistic retry."""
        try:
            resolved_start = parse_date(start_date)
        except ValueError as exc:
            raise SchedulingValidationError(str(exc)) from exc

        def attempt() -> tuple[RoomState, ScheduleResult]:
            state = self._repository.load_room_state(room_id)
            if state is None:
                raise RoomNotFoundError(f"Room {room_id} not found")
            if actor_id is not None and actor_id != state.owner_id:
                raise SchedulingPermissionError("Only the room owner can run auto-scheduling")
            config = self.build_config(
                min_minutes_per_week or state.min_minutes_per_week,
                num_weeks,
                owner_time_preference,
            )
            result = self.schedule(state, resolved_start, config, replace_existing)
            self._repository.save_room_state(state)
            return state, result

        state, result = with_optimistic_retry(
            self._settings.optimistic_retry_attempts,
            attempt,
            operation="auto_schedule",
        )
        self._notifications.flush(state)
        return result
