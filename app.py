"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires all services, registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from backend.controllers.exchange_controller import router as exchange_router
from backend.controllers.room_controller import router as room_router
from backend.controllers.scheduling_controller import router as scheduling_router
from backend.repository.data_repository import DataRepository
from backend.services.exchange_service import ExchangeService
from backend.services.notification_service import NotificationService
from backend.services.relocation_service import RelocationService
from backend.services.room_service import RoomService
from backend.services.scheduling_service import AutoSchedulingService
from backend.services.travel_service import StaticTravelTimeProvider, TravelTimeProvider
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    travel_provider: Optional[TravelTimeProvider] = None,
) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Instantiates all services with explicit dependency injection via app.state.
    Every dependency is traceable from this function.
    """
    settings = settings or get_settings()

    # --- Repository (SQLite connection factory) ---
    repository = DataRepository(settings)

    # --- Services ---
    notifications = NotificationService(repository)
    room_service = RoomService(repository=repository, settings=settings)
    scheduling_service = AutoSchedulingService(
        repository=repository,
        notifications=notifications,
        settings=settings,
    )
    exchange_service = ExchangeService(
        repository=repository,
        notifications=notifications,
        settings=settings,
    )
    relocation_service = RelocationService(
        repository=repository,
        exchange_service=exchange_service,
        notifications=notifications,
        travel_provider=travel_provider or StaticTravelTimeProvider(),
        settings=settings,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(room_router)
    app.include_router(scheduling_router)
    app.include_router(exchange_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.repository = repository
    app.state.notifications = notifications
    app.state.room_service = room_service
    app.state.scheduling_service = scheduling_service
    app.state.exchange_service = exchange_service
    app.state.relocation_service = relocation_service

    return app


def _startup(app: FastAPI) -> None:
    """Idempotent startup sequence. Safe to re-run on server restarts."""
    repository: DataRepository = app.state.repository

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    logger.info("Startup complete, coordination engine ready")


# Module-level app object for uvicorn
app = create_app()
