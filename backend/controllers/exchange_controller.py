"""HTTP controller layer for exchange requests and slot relocation."""

from __future__ import annotations

from datetime import date
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from backend.controllers.dependencies import (
    get_exchange_service,
    get_relocation_service,
    require_actor,
)
from backend.domain.models import RequestType, TimeSlotRef
from backend.repository.optimistic import OptimisticRetryExhaustedError
from backend.services.exchange_service import (
    ExchangeService,
    ExchangeValidationError,
    RequestNotFoundError,
    RequestPermissionError,
    RequestStateError,
)
from backend.services.relocation_service import RelocationService, RelocationValidationError
from backend.services.scheduling_service import RoomNotFoundError
from backend.utils.logger import get_logger
from backend.utils.time_utils import TimeFormatError, normalize_time


logger = get_logger(__name__)

router = APIRouter(tags=["exchange"])


class TimeSlotPayload(BaseModel):
    date: date
    start_time: str
    end_time: str

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_clock_time(cls, value: str) -> str:
        try:
            return normalize_time(value)
        except TimeFormatError as exc:
            raise ValueError(str(exc)) from exc


class CreateExchangeRequest(BaseModel):
    type: Literal["time_request", "time_change", "slot_swap", "slot_release"]
    time_slot: TimeSlotPayload
    target_user: Optional[str] = None
    requester_slot_ids: list[str] = Field(default_factory=list)
    message: str = Field(default="", max_length=1000)


class RespondRequest(BaseModel):
    action: Literal["approved", "rejected"]
    message: str = Field(default="", max_length=1000)


class MoveSlotRequest(BaseModel):
    source_date: date
    target_date: date
    source_start_time: Optional[str] = None
    target_start_time: Optional[str] = None
    travel_mode: Optional[str] = None

    @field_validator("source_start_time", "target_start_time")
    @classmethod
    def validate_optional_time(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            return normalize_time(value)
        except TimeFormatError as exc:
            raise ValueError(str(exc)) from exc


_STATUS_BY_ERROR: tuple[tuple[type[Exception], int], ...] = (
    (ExchangeValidationError, status.HTTP_400_BAD_REQUEST),
    (RelocationValidationError, status.HTTP_400_BAD_REQUEST),
    (RequestPermissionError, status.HTTP_403_FORBIDDEN),
    (RequestNotFoundError, status.HTTP_404_NOT_FOUND),
    (RoomNotFoundError, status.HTTP_404_NOT_FOUND),
    (RequestStateError, status.HTTP_409_CONFLICT),
    (OptimisticRetryExhaustedError, status.HTTP_409_CONFLICT),
)
_HANDLED = tuple(error for error, _ in _STATUS_BY_ERROR)


def _translate(exc: Exception) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    logger.exception("Unexpected exchange failure")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Failed to process exchange request",
    )


@router.post("/rooms/{room_id}/requests", status_code=status.HTTP_201_CREATED)
async def create_request(
    room_id: str,
    payload: CreateExchangeRequest,
    actor_id: str = Depends(require_actor),
    service: ExchangeService = Depends(get_exchange_service),
) -> dict:
    try:
        request = service.submit_request(
            room_id=room_id,
            requester=actor_id,
            kind=RequestType(payload.type),
            time_slot=TimeSlotRef(
                date=payload.time_slot.date,
                start_time=payload.time_slot.start_time,
                end_time=payload.time_slot.end_time,
            ),
            target_user=payload.target_user,
            requester_slot_ids=payload.requester_slot_ids,
            message=payload.message,
        )
    except _HANDLED as exc:
        raise _translate(exc) from exc
    return request.to_payload()


@router.post("/rooms/{room_id}/requests/{request_id}/respond")
async def respond_to_request(
    room_id: str,
    request_id: str,
    payload: RespondRequest,
    actor_id: str = Depends(require_actor),
    service: ExchangeService = Depends(get_exchange_service),
) -> dict:
    try:
        request = service.respond_to_request(
            room_id, request_id, actor_id, payload.action, payload.message
        )
    except _HANDLED as exc:
        raise _translate(exc) from exc
    return request.to_payload()


@router.post("/rooms/{room_id}/requests/{request_id}/confirm_chain")
async def confirm_chain(
    room_id: str,
    request_id: str,
    actor_id: str = Depends(require_actor),
    service: ExchangeService = Depends(get_exchange_service),
) -> dict:
    try:
        request = service.confirm_chain_request(room_id, request_id, actor_id)
    except _HANDLED as exc:
        raise _translate(exc) from exc
    return request.to_payload()


@router.post("/rooms/{room_id}/requests/{request_id}/cancel")
async def cancel_request(
    room_id: str,
    request_id: str,
    actor_id: str = Depends(require_actor),
    service: ExchangeService = Depends(get_exchange_service),
) -> dict:
    try:
        request = service.cancel_request(room_id, request_id, actor_id)
    except _HANDLED as exc:
        raise _translate(exc) from exc
    return request.to_payload()


@router.post("/rooms/{room_id}/slots/move")
async def move_slot(
    room_id: str,
    payload: MoveSlotRequest,
    actor_id: str = Depends(require_actor),
    service: RelocationService = Depends(get_relocation_service),
) -> dict:
    """Move the caller's slot; conflicts may turn into a change request."""
    try:
        result = service.relocate(
            room_id=room_id,
            member_id=actor_id,
            source_date=payload.source_date,
            target_date=payload.target_date,
            source_start_time=payload.source_start_time,
            target_start_time=payload.target_start_time,
            travel_mode=payload.travel_mode,
        )
    except _HANDLED as exc:
        raise _translate(exc) from exc
    return result.to_payload()
