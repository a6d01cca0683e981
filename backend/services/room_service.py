"""Room setup, membership and preference management."""

from __future__ import annotations

from typing import Any, Iterable, Optional

from backend.domain.models import ActivityRecord, PreferredBlock, RoomState, new_id
from backend.repository.data_repository import DataRepository
from backend.services.scheduling_service import RoomNotFoundError
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger
from backend.utils.time_utils import TimeFormatError, interval_from_labels, parse_date


logger = get_logger(__name__)


class RoomValidationError(Exception):
    """Raised when room, member or preference input is invalid."""


def validate_preferred_blocks(blocks: Iterable[PreferredBlock]) -> list[PreferredBlock]:
    validated = []
    for block in blocks:
        try:
            interval_from_labels(block.start_time, block.end_time)
        except TimeFormatError as exc:
            raise RoomValidationError(str(exc)) from exc
        if block.specific_date is None and block.day_of_week is None:
            raise RoomValidationError("A preferred block needs a day_of_week or a specific_date")
        if block.day_of_week is not None and not 1 <= block.day_of_week <= 7:
            raise RoomValidationError("day_of_week must be between 1 (Monday) and 7 (Sunday)")
        if not 1 <= block.priority <= 3:
            raise RoomValidationError("priority must be between 1 and 3")
        validated.append(block)
    return validated


class RoomService:
    def __init__(
        self,
        repository: DataRepository,
        settings: Optional[Settings] = None,
    ) -> None:
        self._repository = repository
        self._settings = settings or get_settings()

    def register_user(
        self,
        user_id: str,
        display_name: str = "",
        location: Optional[str] = None,
    ) -> None:
        if not user_id.strip():
            raise RoomValidationError("user_id must not be empty")
        self._repository.create_user(user_id, display_name, location)

    def set_preferred_blocks(self, user_id: str, blocks: Iterable[PreferredBlock]) -> list[PreferredBlock]:
        if not self._repository.user_exists(user_id):
            raise RoomValidationError(f"Unknown user {user_id}")
        validated = validate_preferred_blocks(blocks)
        self._repository.replace_preferred_blocks(user_id, validated)
        return validated

    def create_room(
        self,
        owner_id: str,
        name: str,
        min_minutes_per_week: Optional[int] = None,
    ) -> str:
        minutes = (
            self._settings.default_min_minutes_per_week
            if min_minutes_per_week is None
            else min_minutes_per_week
        )
        if not self._settings.min_quota_minutes <= minutes <= self._settings.max_quota_minutes:
            raise RoomValidationError(
                "min_minutes_per_week must be between "
                f"{self._settings.min_quota_minutes} and {self._settings.max_quota_minutes}"
            )
        if not self._repository.user_exists(owner_id):
            raise RoomValidationError(f"Unknown owner {owner_id}")
        room_id = new_id()
        self._repository.create_room(room_id, name or "Room", owner_id, minutes)
        return room_id

    def join_room(self, room_id: str, user_id: str, priority: Optional[int] = None) -> RoomState:
        state = self.get_room(room_id)
        if user_id == state.owner_id:
            raise RoomValidationError("The owner is already part of the room")
        if not self._repository.user_exists(user_id):
            raise RoomValidationError(f"Unknown user {user_id}")
        resolved_priority = self._settings.default_block_priority if priority is None else priority
        if not 1 <= resolved_priority <= 3:
            raise RoomValidationError("priority must be between 1 and 3")
        self._repository.add_member(room_id, user_id, resolved_priority)
        logger.info("Member joined | room_id=%s | user_id=%s", room_id, user_id)
        return self.get_room(room_id)

    def get_room(self, room_id: str) -> RoomState:
        state = self._repository.load_room_state(room_id)
        if state is None:
            raise RoomNotFoundError(f"Room {room_id} not found")
        return state

    def list_slots(
        self,
        room_id: str,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        self.get_room(room_id)
        try:
            start = parse_date(start_date) if start_date else None
            end = parse_date(end_date) if end_date else None
        except TimeFormatError as exc:
            raise RoomValidationError(str(exc)) from exc
        return [
            slot.to_payload()
            for slot in self._repository.get_assigned_slots(room_id, start, end)
        ]

    def list_activities(self, room_id: str, limit: int = 50) -> list[ActivityRecord]:
        self.get_room(room_id)
        return self._repository.list_activities(room_id, limit)

