"""Domain-level validation rules for scheduling and negotiation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class SchedulingConfig:
    min_minutes_per_week: int
    num_weeks: int
    schedule_start_minute: int
    schedule_end_minute: int
    slot_minutes: int
    phase_priority: int
    min_quota_minutes: int = 10
    max_quota_minutes: int = 600
    owner_time_preference: Optional[str] = None
    time_of_day_windows: dict[str, tuple[int, int]] = field(default_factory=dict)


def validate_scheduling_config(config: SchedulingConfig) -> None:
    if not config.min_quota_minutes <= config.min_minutes_per_week <= config.max_quota_minutes:
        raise ValueError(
            "min_minutes_per_week must be between "
            f"{config.min_quota_minutes} and {config.max_quota_minutes} minutes"
        )
    if config.num_weeks <= 0:
        raise ValueError("num_weeks must be > 0")
    if config.slot_minutes <= 0 or 60 % config.slot_minutes != 0:
        raise ValueError("slot_minutes must divide an hour")
    if not 0 <= config.schedule_start_minute < config.schedule_end_minute <= 24 * 60:
        raise ValueError("schedule window boundaries are invalid")
    if config.phase_priority < 0:
        raise ValueError("phase_priority must be >= 0")
    if (
        config.owner_time_preference is not None
        and config.owner_time_preference not in config.time_of_day_windows
    ):
        raise ValueError(
            f"owner_time_preference must be one of {sorted(config.time_of_day_windows)}"
        )


@dataclass(frozen=True)
class NegotiationConfig:
    max_chain_hops: int
    chain_requires_confirmation: bool
    optimistic_retry_attempts: int


def validate_negotiation_config(config: NegotiationConfig) -> None:
    if config.max_chain_hops <= 0:
        raise ValueError("max_chain_hops must be > 0")
    if config.optimistic_retry_attempts <= 0:
        raise ValueError("optimistic_retry_attempts must be > 0")
