"""HTTP controller layer for auto-scheduling."""

from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from backend.controllers.dependencies import get_scheduling_service, require_actor
from backend.repository.optimistic import OptimisticRetryExhaustedError
from backend.services.scheduling_service import (
    AutoSchedulingService,
    RoomNotFoundError,
    SchedulingPermissionError,
    SchedulingValidationError,
)
from backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["scheduling"])


class AutoScheduleRequest(BaseModel):
    start_date: date
    num_weeks: int = Field(default=1, ge=1, le=12)
    min_minutes_per_week: Optional[int] = Field(default=None, gt=0)
    owner_time_preference: Optional[str] = None
    replace_existing: bool = True


class MemberAssignmentResponse(BaseModel):
    member_id: str
    required_slots: int
    assigned_slots: int
    phase_counts: dict[int, int]


class CarryOverResponse(BaseModel):
    member_id: str
    previous_hours: float
    needed_hours: float
    intervention_required: bool


class AutoScheduleResponse(BaseModel):
    run_number: int
    slots: list[dict]
    assignments: list[MemberAssignmentResponse]
    owner_slot_count: int
    carry_over_changes: list[CarryOverResponse]
    unresolved_blocks: list[dict]
    intervention_members: list[str]


@router.post(
    "/rooms/{room_id}/auto_schedule",
    response_model=AutoScheduleResponse,
    status_code=status.HTTP_200_OK,
)
async def auto_schedule(
    room_id: str,
    payload: AutoScheduleRequest,
    actor_id: str = Depends(require_actor),
    service: AutoSchedulingService = Depends(get_scheduling_service),
) -> AutoScheduleResponse:
    """Partition the owner's time among members for the requested weeks."""
    try:
        result = service.run_auto_schedule(
            room_id=room_id,
            start_date=payload.start_date,
            num_weeks=payload.num_weeks,
            min_minutes_per_week=payload.min_minutes_per_week,
            owner_time_preference=payload.owner_time_preference,
            replace_existing=payload.replace_existing,
            actor_id=actor_id,
        )
    except SchedulingValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except SchedulingPermissionError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(exc),
        ) from exc
    except RoomNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except OptimisticRetryExhaustedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Unexpected auto-schedule failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to run auto-scheduling",
        ) from exc

    return AutoScheduleResponse(
        run_number=result.run_number,
        slots=[slot.to_payload() for slot in result.slots],
        assignments=[
            MemberAssignmentResponse(
                member_id=assignment.member_id,
                required_slots=assignment.required_slots,
                assigned_slots=assignment.assigned_slots,
                phase_counts=dict(assignment.phase_counts),
            )
            for assignment in result.assignments.values()
        ],
        owner_slot_count=len(result.owner_cells),
        carry_over_changes=[
            CarryOverResponse(
                member_id=change.member_id,
                previous_hours=change.previous_hours,
                needed_hours=change.needed_hours,
                intervention_required=change.intervention_required,
            )
            for change in result.carry_over_changes
        ],
        unresolved_blocks=[block.to_payload() for block in result.unresolved_blocks],
        intervention_members=result.intervention_members,
    )
