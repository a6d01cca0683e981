"""Carry-over ledger: unmet quota rolled into the next scheduling run."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from backend.domain.models import CarryOverRecord, Member
from backend.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class CarryOverChange:
    member_id: str
    previous_hours: float
    needed_hours: float
    run_number: int
    intervention_required: bool = False

    @property
    def cleared(self) -> bool:
        return self.needed_hours == 0 and self.previous_hours > 0


@dataclass
class CarryOverLedger:
    """Owed hours per member across runs.

    ``consecutive_runs`` is how many immediately preceding runs must all
    hold a shortfall before a new one flags the member for intervention.
    """

    slot_minutes: int = 30
    consecutive_runs: int = 2
    _changes: list[CarryOverChange] = field(default_factory=list, init=False, repr=False)

    def owed_slots(self, member: Member) -> int:
        if member.carry_over_hours <= 0:
            return 0
        return math.ceil(round(member.carry_over_hours * 60 / self.slot_minutes, 6))

    def shortfall_hours(self, missing_slots: int) -> float:
        return max(0, missing_slots) * self.slot_minutes / 60

    def needs_intervention(self, member: Member, run_number: int) -> bool:
        previous_runs = {record.run_number for record in member.carry_over_history}
        required = {run_number - offset for offset in range(1, self.consecutive_runs + 1)}
        return all(run > 0 for run in required) and required.issubset(previous_runs)

    def record_shortfall(
        self,
        member: Member,
        missing_slots: int,
        run_number: int,
        week_start: date,
    ) -> CarryOverChange:
        needed_hours = self.shortfall_hours(missing_slots)
        intervention = self.needs_intervention(member, run_number)
        change = CarryOverChange(
            member_id=member.user_id,
            previous_hours=member.carry_over_hours,
            needed_hours=needed_hours,
            run_number=run_number,
            intervention_required=intervention,
        )
        member.carry_over_hours = needed_hours
        member.carry_over_history.append(
            CarryOverRecord(
                run_number=run_number,
                week_start=week_start,
                needed_hours=needed_hours,
            )
        )
        self._changes.append(change)
        if intervention:
            logger.warning(
                "Carry-over intervention required | member_id=%s | run=%s | needed_hours=%.1f",
                member.user_id,
                run_number,
                needed_hours,
            )
        else:
            logger.info(
                "Carry-over recorded | member_id=%s | run=%s | needed_hours=%.1f",
                member.user_id,
                run_number,
                needed_hours,
            )
        return change

    def clear(self, member: Member, run_number: int) -> Optional[CarryOverChange]:
        """Mark owed hours as consumed. History is preserved."""
        if member.carry_over_hours <= 0:
            return None
        change = CarryOverChange(
            member_id=member.user_id,
            previous_hours=member.carry_over_hours,
            needed_hours=0.0,
            run_number=run_number,
        )
        member.carry_over_hours = 0.0
        self._changes.append(change)
        logger.info(
            "Carry-over settled | member_id=%s | run=%s | settled_hours=%.1f",
            member.user_id,
            run_number,
            change.previous_hours,
        )
        return change

    def apply(
        self,
        members: Iterable[Member],
        shortfalls: dict[str, tuple[int, date]],
        run_number: int,
    ) -> list[CarryOverChange]:
        """Settle a run's results onto members and return the ledger diff.

        ``shortfalls`` maps member id to missing slot count and the start of
        the first week that fell short.
        """
        self._changes = []
        for member in sorted(members, key=lambda item: item.user_id):
            missing = shortfalls.get(member.user_id)
            if missing is not None and missing[0] > 0:
                self.record_shortfall(member, missing[0], run_number, missing[1])
            else:
                self.clear(member, run_number)
        return list(self._changes)
