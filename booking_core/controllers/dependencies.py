"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from typing import Optional

from fastapi import Header, HTTPException, Request, status

from booking_core.domain.errors import (
    EntityNotFoundError,
    SchedulingConflictError,
    SchedulingValidationError,
)
from booking_core.repository.data_repository import PersistenceError
from booking_core.services.booking_service import BookingService
from booking_core.services.directory_service import DirectoryService
from booking_core.services.hold_service import HoldService
from booking_core.services.slot_service import SlotGenerationService
from booking_core.utils.logger import get_logger


logger = get_logger(__name__)


def _require_state(request: Request, attribute: str, label: str):
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_slot_service(request: Request) -> SlotGenerationService:
    return _require_state(request, "slot_service", "Slot service")


def get_hold_service(request: Request) -> HoldService:
    return _require_state(request, "hold_service", "Hold service")


def get_booking_service(request: Request) -> BookingService:
    return _require_state(request, "booking_service", "Booking service")


def get_directory_service(request: Request) -> DirectoryService:
    return _require_state(request, "directory_service", "Directory service")


def get_tenant_id(x_tenant_id: str = Header(..., alias="X-Tenant-Id")) -> str:
    tenant_id = x_tenant_id.strip()
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-Id header must be non-empty",
        )
    return tenant_id


def get_idempotency_key(
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
) -> Optional[str]:
    if idempotency_key is None or not idempotency_key.strip():
        return None
    return idempotency_key.strip()


def to_http_exception(exc: Exception, failure_detail: str) -> HTTPException:
    """Map a service-layer exception to the HTTP status clients act on."""
    if isinstance(exc, SchedulingValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, EntityNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, SchedulingConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, PersistenceError):
        logger.warning("Persistence failure | detail=%s", exc)
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Storage temporarily unavailable; retry the request",
        )
    logger.exception(failure_detail)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=failure_detail,
    )
