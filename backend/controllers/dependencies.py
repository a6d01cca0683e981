"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from backend.services.exchange_service import ExchangeService
from backend.services.relocation_service import RelocationService
from backend.services.room_service import RoomService
from backend.services.scheduling_service import AutoSchedulingService


def _from_state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name.replace('_', ' ').capitalize()} is not initialized",
        )
    return service


def get_room_service(request: Request) -> RoomService:
    return _from_state(request, "room_service")


def get_scheduling_service(request: Request) -> AutoSchedulingService:
    return _from_state(request, "scheduling_service")


def get_exchange_service(request: Request) -> ExchangeService:
    return _from_state(request, "exchange_service")


def get_relocation_service(request: Request) -> RelocationService:
    return _from_state(request, "relocation_service")


async def require_actor(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity; authentication itself happens upstream."""
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )
    return x_user_id.strip()
