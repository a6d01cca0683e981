"""Runtime settings loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _default_time_of_day_windows() -> dict[str, tuple[str, str]]:
    return {
        "morning": ("09:00", "12:00"),
        "lunch": ("12:00", "13:00"),
        "afternoon": ("13:00", "17:00"),
        "evening": ("17:00", "21:00"),
    }


@dataclass(frozen=True)
class Settings:
    app_name: str = "Room Coordination Engine"
    app_version: str = "1.0.0"
    log_level: str = "INFO"
    database_path: Path = Path("data/coordination.db")
    log_file: Optional[Path] = None

    schedule_start_time: str = "09:00"
    schedule_end_time: str = "18:00"
    slot_minutes: int = 30
    default_min_minutes_per_week: int = 180
    min_quota_minutes: int = 10
    max_quota_minutes: int = 600
    phase_priority: int = 2
    default_block_priority: int = 2

    optimistic_retry_attempts: int = 3
    max_chain_hops: int = 5
    chain_requires_confirmation: bool = False
    relocation_vicinity_days: int = 3
    intervention_consecutive_runs: int = 2

    auto_assignment_subject: str = "Auto-assigned"
    time_of_day_windows: dict[str, tuple[str, str]] = field(
        default_factory=_default_time_of_day_windows
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return process-wide settings, honouring COORD_* overrides."""
    base = Settings()
    return Settings(
        app_name=os.getenv("COORD_APP_NAME", base.app_name),
        app_version=os.getenv("COORD_APP_VERSION", base.app_version),
        log_level=os.getenv("COORD_LOG_LEVEL", base.log_level),
        database_path=Path(os.getenv("COORD_DATABASE_PATH", str(base.database_path))),
        log_file=Path(os.environ["COORD_LOG_FILE"]) if os.getenv("COORD_LOG_FILE") else None,
        schedule_start_time=os.getenv("COORD_SCHEDULE_START", base.schedule_start_time),
        schedule_end_time=os.getenv("COORD_SCHEDULE_END", base.schedule_end_time),
        slot_minutes=_env_int("COORD_SLOT_MINUTES", base.slot_minutes),
        default_min_minutes_per_week=_env_int(
            "COORD_MIN_MINUTES_PER_WEEK",
            base.default_min_minutes_per_week,
        ),
        phase_priority=_env_int("COORD_PHASE_PRIORITY", base.phase_priority),
        optimistic_retry_attempts=_env_int(
            "COORD_OPTIMISTIC_RETRY_ATTEMPTS",
            base.optimistic_retry_attempts,
        ),
        max_chain_hops=_env_int("COORD_MAX_CHAIN_HOPS", base.max_chain_hops),
        chain_requires_confirmation=_env_bool(
            "COORD_CHAIN_REQUIRES_CONFIRMATION",
            base.chain_requires_confirmation,
        ),
        relocation_vicinity_days=_env_int(
            "COORD_RELOCATION_VICINITY_DAYS",
            base.relocation_vicinity_days,
        ),
    )
