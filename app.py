"""
app.py - FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires repositories and services, registers routers, and runs the
startup/shutdown sequence.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from booking_core.controllers.availability_controller import router as availability_router
from booking_core.controllers.booking_controller import router as booking_router
from booking_core.controllers.directory_controller import router as directory_router
from booking_core.repository.booking_repository import BookingRepository
from booking_core.repository.data_repository import DataRepository
from booking_core.repository.hold_repository import HoldRepository
from booking_core.services.booking_service import BookingService
from booking_core.services.directory_service import DirectoryService
from booking_core.services.hold_service import HoldService
from booking_core.services.hold_sweeper import HoldExpirySweeper
from booking_core.services.slot_service import SlotGenerationService
from booking_core.utils.clock import SystemClock, UuidGenerator
from booking_core.utils.config import Settings, get_settings
from booking_core.utils.logger import configure_logging, get_logger


logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    clock: Optional[SystemClock] = None,
) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every collaborator is constructed here and exposed through app.state;
    tests pass their own settings and a fixed clock.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    clock = clock or SystemClock()
    id_generator = UuidGenerator()

    # --- Repositories (one SQLite connection per unit of work) ---
    repository = DataRepository(settings)
    booking_repository = BookingRepository(repository)
    hold_repository = HoldRepository(repository)

    # --- Services ---
    directory_service = DirectoryService(
        repository=repository,
        settings=settings,
        id_generator=id_generator,
    )
    slot_service = SlotGenerationService(
        repository=repository,
        booking_repository=booking_repository,
        hold_repository=hold_repository,
        settings=settings,
        clock=clock,
    )
    hold_service = HoldService(
        repository=repository,
        hold_repository=hold_repository,
        settings=settings,
        clock=clock,
        id_generator=id_generator,
    )
    booking_service = BookingService(
        repository=repository,
        booking_repository=booking_repository,
        hold_repository=hold_repository,
        settings=settings,
        clock=clock,
        id_generator=id_generator,
    )
    hold_sweeper = HoldExpirySweeper(
        hold_service,
        interval_seconds=settings.hold_sweep_interval_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _startup(app)
        yield
        _shutdown(app)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(availability_router)
    app.include_router(booking_router)
    app.include_router(directory_router)

    # --- Inject collaborators into app.state for dependency resolution ---
    app.state.settings = settings
    app.state.repository = repository
    app.state.directory_service = directory_service
    app.state.slot_service = slot_service
    app.state.hold_service = hold_service
    app.state.booking_service = booking_service
    app.state.hold_sweeper = hold_sweeper

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Order matters:
      1. Schema must exist before seeding.
      2. Demo directory data is optional and upserted.
      3. The sweeper starts last, once the Holds table exists.
    """
    settings: Settings = app.state.settings
    repository: DataRepository = app.state.repository

    logger.info("Startup: initializing database schema | path=%s", repository.database_path)
    repository.initialize_database()

    if settings.seed_demo_data:
        logger.info("Startup: seeding demo directory data")
        repository.seed_demo_data()

    if settings.hold_sweep_enabled:
        app.state.hold_sweeper.start()

    logger.info("Startup complete - system ready")


def _shutdown(app: FastAPI) -> None:
    sweeper: HoldExpirySweeper = app.state.hold_sweeper
    sweeper.stop()
    logger.info("Shutdown complete")


# Module-level app object for uvicorn
app = create_app()
