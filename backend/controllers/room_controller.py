"""HTTP controller layer for users, rooms and preferred blocks."""

from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator

from backend.controllers.dependencies import get_room_service, require_actor
from backend.domain.models import PreferredBlock
from backend.services.room_service import RoomService, RoomValidationError
from backend.services.scheduling_service import RoomNotFoundError
from backend.utils.logger import get_logger
from backend.utils.time_utils import TimeFormatError, normalize_time, parse_time


logger = get_logger(__name__)

router = APIRouter(tags=["rooms"])


class RegisterUserRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    display_name: str = ""
    location: Optional[str] = None


class PreferredBlockPayload(BaseModel):
    """Recurring (day_of_week) or one-off (specific_date) availability."""

    start_time: str
    end_time: str
    day_of_week: Optional[int] = Field(default=None, ge=1, le=7)
    specific_date: Optional[date] = None
    priority: int = Field(default=2, ge=1, le=3)

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_clock_time(cls, value: str) -> str:
        try:
            return normalize_time(value)
        except TimeFormatError as exc:
            raise ValueError(str(exc)) from exc

    @model_validator(mode="after")
    def validate_anchor(self) -> "PreferredBlockPayload":
        if self.day_of_week is None and self.specific_date is None:
            raise ValueError("day_of_week or specific_date is required")
        if parse_time(self.start_time) >= parse_time(self.end_time):
            raise ValueError("start_time must be before end_time")
        return self

    def to_domain(self) -> PreferredBlock:
        return PreferredBlock(
            start_time=self.start_time,
            end_time=self.end_time,
            day_of_week=self.day_of_week,
            specific_date=self.specific_date,
            priority=self.priority,
        )


class ReplaceBlocksRequest(BaseModel):
    blocks: list[PreferredBlockPayload]


class CreateRoomRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    min_minutes_per_week: Optional[int] = Field(default=None, gt=0)


class JoinRoomRequest(BaseModel):
    priority: Optional[int] = Field(default=None, ge=1, le=3)


class MemberResponse(BaseModel):
    user_id: str
    priority: int
    carry_over_hours: float
    block_count: int


class RoomResponse(BaseModel):
    room_id: str
    name: str
    owner_id: str
    min_minutes_per_week: int
    schedule_run_count: int
    members: list[MemberResponse]
    slots: list[dict]
    requests: list[dict]


class ActivityResponse(BaseModel):
    actor_id: str
    action: str
    details: str
    metadata: dict
    created_at: str


def _room_response(state) -> RoomResponse:
    return RoomResponse(
        room_id=state.room_id,
        name=state.name,
        owner_id=state.owner_id,
        min_minutes_per_week=state.min_minutes_per_week,
        schedule_run_count=state.schedule_run_count,
        members=[
            MemberResponse(
                user_id=member.user_id,
                priority=member.priority,
                carry_over_hours=member.carry_over_hours,
                block_count=len(member.preferred_blocks),
            )
            for member in state.members.values()
        ],
        slots=[slot.to_payload() for slot in state.assigned_slots],
        requests=[request.to_payload() for request in state.requests],
    )


def _translate(exc: Exception) -> HTTPException:
    if isinstance(exc, RoomNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.post("/users", status_code=status.HTTP_201_CREATED)
async def register_user(
    payload: RegisterUserRequest,
    service: RoomService = Depends(get_room_service),
) -> dict[str, str]:
    try:
        service.register_user(payload.user_id, payload.display_name, payload.location)
    except RoomValidationError as exc:
        raise _translate(exc) from exc
    return {"user_id": payload.user_id}


@router.put("/users/{user_id}/preferred_blocks")
async def replace_preferred_blocks(
    user_id: str,
    payload: ReplaceBlocksRequest,
    actor_id: str = Depends(require_actor),
    service: RoomService = Depends(get_room_service),
) -> dict[str, object]:
    if actor_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Users can only replace their own preferred blocks",
        )
    try:
        blocks = service.set_preferred_blocks(
            user_id,
            [block.to_domain() for block in payload.blocks],
        )
    except RoomValidationError as exc:
        raise _translate(exc) from exc
    return {"user_id": user_id, "block_count": len(blocks)}


@router.post("/rooms", response_model=RoomResponse, status_code=status.HTTP_201_CREATED)
async def create_room(
    payload: CreateRoomRequest,
    actor_id: str = Depends(require_actor),
    service: RoomService = Depends(get_room_service),
) -> RoomResponse:
    """The caller becomes the room owner."""
    try:
        room_id = service.create_room(actor_id, payload.name, payload.min_minutes_per_week)
        return _room_response(service.get_room(room_id))
    except (RoomValidationError, RoomNotFoundError) as exc:
        raise _translate(exc) from exc


@router.post("/rooms/{room_id}/members", response_model=RoomResponse)
async def join_room(
    room_id: str,
    payload: JoinRoomRequest,
    actor_id: str = Depends(require_actor),
    service: RoomService = Depends(get_room_service),
) -> RoomResponse:
    try:
        return _room_response(service.join_room(room_id, actor_id, payload.priority))
    except (RoomValidationError, RoomNotFoundError) as exc:
        raise _translate(exc) from exc


@router.get("/rooms/{room_id}", response_model=RoomResponse)
async def get_room(
    room_id: str,
    service: RoomService = Depends(get_room_service),
) -> RoomResponse:
    try:
        return _room_response(service.get_room(room_id))
    except RoomNotFoundError as exc:
        raise _translate(exc) from exc


@router.get("/rooms/{room_id}/slots")
async def list_slots(
    room_id: str,
    start_date: Optional[str] = Query(default=None),
    end_date: Optional[str] = Query(default=None),
    service: RoomService = Depends(get_room_service),
) -> dict[str, object]:
    try:
        slots = service.list_slots(room_id, start_date, end_date)
    except (RoomValidationError, RoomNotFoundError) as exc:
        raise _translate(exc) from exc
    return {"room_id": room_id, "slots": slots}


@router.get("/rooms/{room_id}/activities", response_model=list[ActivityResponse])
async def list_activities(
    room_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    service: RoomService = Depends(get_room_service),
) -> list[ActivityResponse]:
    try:
        records = service.list_activities(room_id, limit)
    except RoomNotFoundError as exc:
        raise _translate(exc) from exc
    return [
        ActivityResponse(
            actor_id=record.actor_id,
            action=record.action.value,
            details=record.details,
            metadata=record.metadata,
            created_at=record.created_at.isoformat(),
        )
        for record in records
    ]
