"""Tests for scheduling and negotiation config validation.

Covers every rejection branch in validate_scheduling_config() and
validate_negotiation_config().
"""

from __future__ import annotations

import pytest

from backend.domain.constraints import (
    NegotiationConfig,
    SchedulingConfig,
    validate_negotiation_config,
    validate_scheduling_config,
)


def valid_config(**overrides) -> SchedulingConfig:
    """Return a valid baseline SchedulingConfig, optionally overriding fields."""
    defaults = {
        "min_minutes_per_week": 180,
        "num_weeks": 1,
        "schedule_start_minute": 9 * 60,
        "schedule_end_minute": 18 * 60,
        "slot_minutes": 30,
        "phase_priority": 2,
        "time_of_day_windows": {"morning": (540, 720), "evening": (1020, 1260)},
    }
    defaults.update(overrides)
    return SchedulingConfig(**defaults)


# --- Baseline pass ---

def test_valid_config_passes() -> None:
    validate_scheduling_config(valid_config())


def test_quota_bounds_are_inclusive() -> None:
    validate_scheduling_config(valid_config(min_minutes_per_week=10))
    validate_scheduling_config(valid_config(min_minutes_per_week=600))


# --- min_minutes_per_week ---

def test_quota_below_ten_minutes_raises() -> None:
    with pytest.raises(ValueError, match="min_minutes_per_week"):
        validate_scheduling_config(valid_config(min_minutes_per_week=9))


def test_quota_above_ten_hours_raises() -> None:
    with pytest.raises(ValueError, match="min_minutes_per_week"):
        validate_scheduling_config(valid_config(min_minutes_per_week=601))


# --- num_weeks / slot_minutes ---

def test_zero_weeks_raises() -> None:
    with pytest.raises(ValueError, match="num_weeks"):
        validate_scheduling_config(valid_config(num_weeks=0))


@pytest.mark.parametrize("slot_minutes", [0, -30, 25, 45])
def test_slot_minutes_must_divide_an_hour(slot_minutes: int) -> None:
    with pytest.raises(ValueError, match="slot_minutes"):
        validate_scheduling_config(valid_config(slot_minutes=slot_minutes))


# --- schedule window ---

def test_inverted_schedule_window_raises() -> None:
    with pytest.raises(ValueError, match="schedule window"):
        validate_scheduling_config(
            valid_config(schedule_start_minute=18 * 60, schedule_end_minute=9 * 60)
        )


def test_schedule_window_past_midnight_raises() -> None:
    with pytest.raises(ValueError, match="schedule window"):
        validate_scheduling_config(valid_config(schedule_end_minute=24 * 60 + 30))


# --- phase priority / owner preference ---

def test_negative_phase_priority_raises() -> None:
    with pytest.raises(ValueError, match="phase_priority"):
        validate_scheduling_config(valid_config(phase_priority=-1))


def test_unknown_owner_time_preference_raises() -> None:
    with pytest.raises(ValueError, match="owner_time_preference"):
        validate_scheduling_config(valid_config(owner_time_preference="midnight"))


def test_known_owner_time_preference_passes() -> None:
    validate_scheduling_config(valid_config(owner_time_preference="evening"))


# --- negotiation ---

def test_negotiation_config_passes() -> None:
    validate_negotiation_config(
        NegotiationConfig(max_chain_hops=5, chain_requires_confirmation=False, optimistic_retry_attempts=3)
    )


def test_zero_chain_hops_raises() -> None:
    with pytest.raises(ValueError, match="max_chain_hops"):
        validate_negotiation_config(
            NegotiationConfig(max_chain_hops=0, chain_requires_confirmation=False, optimistic_retry_attempts=3)
        )


def test_zero_retry_attempts_raises() -> None:
    with pytest.raises(ValueError, match="optimistic_retry_attempts"):
        validate_negotiation_config(
            NegotiationConfig(max_chain_hops=5, chain_requires_confirmation=True, optimistic_retry_attempts=0)
        )
