from __future__ import annotations

from datetime import date

import pytest

from backend.domain.models import CarryOverRecord, Member
from backend.services.carry_over_service import CarryOverLedger


MONDAY = date(2026, 3, 2)


def _member(user_id: str = "m1", hours: float = 0.0, runs: tuple[int, ...] = ()) -> Member:
    history = [CarryOverRecord(run_number=run, week_start=MONDAY, needed_hours=0.5) for run in runs]
    return Member(user_id=user_id, carry_over_hours=hours, carry_over_history=history)


def test_owed_slots_round_up_partial_cells() -> None:
    ledger = CarryOverLedger(slot_minutes=30)
    assert ledger.owed_slots(_member(hours=0)) == 0
    assert ledger.owed_slots(_member(hours=1.0)) == 2
    assert ledger.owed_slots(_member(hours=0.75)) == 2


def test_shortfall_sets_owed_hours_and_appends_history() -> None:
    ledger = CarryOverLedger(slot_minutes=30)
    member = _member(hours=0.5, runs=(1,))

    change = ledger.record_shortfall(member, 3, run_number=2, week_start=MONDAY)

    assert change.previous_hours == 0.5
    assert change.needed_hours == pytest.approx(1.5)
    assert member.carry_over_hours == pytest.approx(1.5)
    assert [record.run_number for record in member.carry_over_history] == [1, 2]
    assert not change.intervention_required


def test_intervention_needs_consecutive_preceding_runs() -> None:
    ledger = CarryOverLedger(consecutive_runs=2)
    assert ledger.needs_intervention(_member(runs=(1, 2)), run_number=3)
    assert not ledger.needs_intervention(_member(runs=(2,)), run_number=3)
    assert not ledger.needs_intervention(_member(runs=(1, 3)), run_number=4)
    assert not ledger.needs_intervention(_member(runs=(1,)), run_number=2)


def test_clear_keeps_history() -> None:
    ledger = CarryOverLedger()
    member = _member(hours=1.0, runs=(1,))

    change = ledger.clear(member, run_number=2)

    assert change is not None and change.cleared
    assert member.carry_over_hours == 0
    assert len(member.carry_over_history) == 1
    assert ledger.clear(member, run_number=3) is None


def test_apply_returns_only_members_that_changed() -> None:
    ledger = CarryOverLedger()
    short = _member("a")
    settled = _member("b", hours=0.5)
    untouched = _member("c")

    changes = ledger.apply([untouched, settled, short], {"a": (2, MONDAY)}, run_number=4)

    assert [(change.member_id, change.needed_hours) for change in changes] == [("a", 1.0), ("b", 0.0)]
    assert short.carry_over_history[-1].week_start == MONDAY
    assert untouched.carry_over_history == []
