"""Ad-hoc relocation of a member's slot to another date or time.

Checks run in a fixed order and the first failure decides the outcome:
weekday, owner availability, the member's own availability near the
target date, conflicts with other members, conflicts with the member's own
calendar. Conflicts never fail outright when a free interval can be found
or a holder can be asked; only what is left over is rejected.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional

from backend.domain.models import (
    ActivityAction,
    AssignedSlot,
    Request,
    RequestType,
    RoomState,
    TimeSlotRef,
)
from backend.repository.data_repository import DataRepository
from backend.repository.optimistic import with_optimistic_retry
from backend.services.exchange_service import (
    ExchangeService,
    ExchangeValidationError,
    RequestPermissionError,
    find_free_interval,
    ref_from_interval,
)
from backend.services.notification_service import (
    NotificationService,
    stage_activity,
    stage_event,
)
from backend.services.scheduling_service import RoomNotFoundError
from backend.services.travel_service import NoTravelTimeProvider, TravelTimeProvider
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger
from backend.utils.time_utils import (
    Interval,
    TimeFormatError,
    is_weekday,
    is_within_windows,
    merge_preferred_windows,
    parse_date,
    parse_time,
)


logger = get_logger(__name__)


class RelocationValidationError(Exception):
    """Raised when a move fails one of its hard preconditions."""


@dataclass(frozen=True)
class RelocationResult:
    status: str
    message: str
    slot: Optional[AssignedSlot] = None
    request: Optional[Request] = None

    @property
    def moved(self) -> bool:
        return self.status == "moved"

    def to_payload(self) -> dict[str, object]:
        return {
            "status": self.status,
            "message": self.message,
            "slot": self.slot.to_payload() if self.slot else None,
            "request": self.request.to_payload() if self.request else None,
        }


def _intersect(left: list[Interval], right: list[Interval]) -> list[Interval]:
    overlaps = []
    for first in left:
        for second in right:
            start = max(first.start, second.start)
            end = min(first.end, second.end)
            if start < end:
                overlaps.append(Interval(start, end))
    return sorted(overlaps)


class RelocationService:
    """Validates and executes single-slot date or time changes."""

    def __init__(
        self,
        repository: DataRepository,
        exchange_service: ExchangeService,
        notifications: Optional[NotificationService] = None,
        travel_provider: Optional[TravelTimeProvider] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._repository = repository
        self._exchange = exchange_service
        self._settings = settings or get_settings()
        self._notifications = notifications or NotificationService(repository)
        self._travel = travel_provider or NoTravelTimeProvider()

    def _source_slots(
        self,
        state: RoomState,
        member_id: str,
        source_date: date,
        source_minute: Optional[int],
    ) -> list[AssignedSlot]:
        slots = [slot for slot in state.slots_for(member_id) if slot.date == source_date]
        if source_minute is not None:
            slots = [
                slot
                for slot in slots
                if slot.interval.start <= source_minute < slot.interval.end
            ]
        return sorted(slots, key=lambda slot: slot.interval.start)

    def _travel_padding(self, state: RoomState, member_id: str, travel_mode: Optional[str]) -> int:
        if not travel_mode:
            return 0
        member = state.member(member_id)
        minutes = self._travel.get_travel_minutes(
            member.location if member else None,
            state.owner.location,
            travel_mode,
        )
        logger.debug(
            "Travel padding resolved | member_id=%s | mode=%s | minutes=%s",
            member_id,
            travel_mode,
            minutes,
        )
        return max(0, int(minutes))

    def move_slot(
        self,
        state: RoomState,
        member_id: str,
        source_date: date | str,
        target_date: date | str,
        source_start_time: Optional[str] = None,
        target_start_time: Optional[str] = None,
        travel_mode: Optional[str] = None,
    ) -> RelocationResult:
        try:
            source_day = parse_date(source_date)
            target_day = parse_date(target_date)
            source_minute = parse_time(source_start_time) if source_start_time else None
            target_minute = parse_time(target_start_time) if target_start_time else None
        except TimeFormatError as exc:
            raise RelocationValidationError(str(exc)) from exc

        member = state.members.get(member_id)
        if member is None:
            if member_id == state.owner_id:
                raise RelocationValidationError("The room owner has no member slots to move")
            raise RelocationValidationError(f"{member_id} is not a member of room {state.room_id}")

        sources = self._source_slots(state, member_id, source_day, source_minute)
        if not sources:
            raise RelocationValidationError(
                f"No slot held by {member_id} on {source_day.isoformat()}"
            )
        duration = sum(slot.interval.duration for slot in sources)
        source_ids = {slot.slot_id for slot in sources}
        anchor_start = sources[0].interval.start

        if not is_weekday(target_day):
            raise RelocationValidationError("Target date must be a weekday")

        owner_windows = merge_preferred_windows(state.owner.preferred_blocks, target_day)
        member_windows = merge_preferred_windows(
            member.preferred_blocks,
            target_day,
            vicinity_days=self._settings.relocation_vicinity_days,
        )
        pinned = target_minute is not None

        if pinned:
            proposed = Interval(target_minute, target_minute + duration)
            if not is_within_windows(proposed, owner_windows):
                raise RelocationValidationError("Target time is outside the owner's availability")
            if not is_within_windows(proposed, member_windows):
                raise RelocationValidationError("Target time is outside your preferred times")
        else:
            if not any(window.duration >= duration for window in owner_windows):
                raise RelocationValidationError("Owner has no availability on the target date")
            usable = [
                window
                for window in _intersect(owner_windows, member_windows)
                if window.duration >= duration
            ]
            if not usable:
                raise RelocationValidationError("No preferred time of yours fits on the target date")
            proposed = self._nearest_fit(usable, anchor_start, duration)

        padding = self._travel_padding(state, member_id, travel_mode)
        padded = proposed.padded(padding) if padding else proposed
        others = [
            slot
            for slot in state.assigned_slots
            if slot.date == target_day
            and slot.slot_id not in source_ids
            and slot.user_id != member_id
            and slot.interval.overlaps(padded)
        ]
        own = [
            slot
            for slot in state.assigned_slots
            if slot.date == target_day
            and slot.slot_id not in source_ids
            and slot.user_id == member_id
            and slot.interval.overlaps(padded)
        ]

        if others or own:
            placed = None
            if not pinned:
                placed = find_free_interval(
                    state.owner,
                    member,
                    duration,
                    target_day,
                    anchor_start,
                    state.assigned_slots,
                    slot_minutes=self._settings.slot_minutes,
                    dates=[target_day],
                    ignore_ids=source_ids,
                    padding=padding,
                    vicinity_days=self._settings.relocation_vicinity_days,
                )
            if placed is not None:
                return self._apply_move(state, member_id, sources, placed, auto_placed=True)
            holders = sorted({slot.user_id for slot in others})
            if not holders:
                raise RelocationValidationError("Target time overlaps your own slots")
            return self._escalate(state, member_id, sources, proposed, target_day, holders)

        return self._apply_move(
            state,
            member_id,
            sources,
            ref_from_interval(target_day, proposed),
            auto_placed=False,
        )

    def _nearest_fit(self, windows: list[Interval], anchor_start: int, duration: int) -> Interval:
        slot_minutes = self._settings.slot_minutes
        starts: set[int] = set()
        for window in windows:
            starts.add(window.start)
            first = window.start + (-window.start % slot_minutes)
            starts.update(range(first, window.end - duration + 1, slot_minutes))
        fitting = [
            start
            for start in starts
            if is_within_windows(Interval(start, start + duration), windows)
        ]
        best = min(fitting, key=lambda value: (abs(value - anchor_start), value))
        return Interval(best, best + duration)

    def _escalate(
        self,
        state: RoomState,
        member_id: str,
        sources: list[AssignedSlot],
        proposed: Interval,
        target_day: date,
        holders: list[str],
    ) -> RelocationResult:
        if len(holders) > 1:
            raise RelocationValidationError(
                f"Target time overlaps slots of several members ({', '.join(holders)})"
            )
        start_time, end_time = proposed.to_labels()
        try:
            request = self._exchange.create_request(
                state,
                member_id,
                RequestType.TIME_CHANGE,
                TimeSlotRef(date=target_day, start_time=start_time, end_time=end_time),
                target_user=holders[0],
                requester_slot_ids=[slot.slot_id for slot in sources],
                message=f"Move from {sources[0].date.isoformat()} {sources[0].start_time}",
            )
        except (ExchangeValidationError, RequestPermissionError) as exc:
            raise RelocationValidationError(str(exc)) from exc
        logger.info(
            "Relocation escalated | room_id=%s | member_id=%s | holder=%s | request_id=%s",
            state.room_id,
            member_id,
            holders[0],
            request.request_id,
        )
        return RelocationResult(
            status="escalated",
            message=f"Target time is held by {holders[0]}; a change request was sent",
            request=request,
        )

    def _apply_move(
        self,
        state: RoomState,
        member_id: str,
        sources: list[AssignedSlot],
        target: TimeSlotRef,
        auto_placed: bool,
    ) -> RelocationResult:
        source_ids = {slot.slot_id for slot in sources}
        moved = AssignedSlot(
            user_id=member_id,
            date=target.date,
            start_time=target.start_time,
            end_time=target.end_time,
            subject=sources[0].subject,
        )
        state.assigned_slots = sorted(
            [slot for slot in state.assigned_slots if slot.slot_id not in source_ids] + [moved],
            key=lambda slot: (slot.date, slot.start_time, slot.user_id),
        )
        self._exchange.ensure_preference(state, moved)

        details = (
            f"Moved {sources[0].date.isoformat()} {sources[0].start_time}-{sources[-1].end_time} "
            f"to {target.date.isoformat()} {target.start_time}-{target.end_time}"
        )
        stage_activity(
            state,
            member_id,
            ActivityAction.SCHEDULE_UPDATE,
            details,
            {
                "removed": sorted(source_ids),
                "slot_id": moved.slot_id,
                "auto_placed": auto_placed,
            },
        )
        stage_event(
            state,
            "slots_updated",
            {
                "reason": "relocation",
                "actor_id": member_id,
                "removed": sorted(source_ids),
                "created": [moved.to_payload()],
            },
        )
        logger.info(
            "Slot relocated | room_id=%s | member_id=%s | auto_placed=%s | %s",
            state.room_id,
            member_id,
            auto_placed,
            details,
        )
        message = "Moved to the nearest free time" if auto_placed else "Moved"
        return RelocationResult(status="moved", message=message, slot=moved)

    def relocate(
        self,
        room_id: str,
        member_id: str,
        source_date: date | str,
        target_date: date | str,
        source_start_time: Optional[str] = None,
        target_start_time: Optional[str] = None,
        travel_mode: Optional[str] = None,
    ) -> RelocationResult:
        """Persisted variant of :meth:`move_slot` under optimistic retry."""

        def attempt() -> tuple[RoomState, RelocationResult]:
            state = self._repository.load_room_state(room_id)
            if state is None:
                raise RoomNotFoundError(f"Room {room_id} not found")
            result = self.move_slot(
                state,
                member_id,
                source_date,
                target_date,
                source_start_time,
                target_start_time,
                travel_mode,
            )
            self._repository.save_room_state(state)
            return state, result

        state, result = with_optimistic_retry(
            self._settings.optimistic_retry_attempts,
            attempt,
            operation="relocate_slot",
        )
        self._notifications.flush(state)
        return result
