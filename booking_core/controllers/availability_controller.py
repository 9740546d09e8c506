"""HTTP controller layer for availability slot generation."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from booking_core.controllers.dependencies import get_slot_service, get_tenant_id, to_http_exception
from booking_core.domain.errors import SchedulingError
from booking_core.domain.models import TimeSlot
from booking_core.repository.data_repository import PersistenceError
from booking_core.services.slot_service import SlotGenerationService
from booking_core.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/availability", tags=["availability"])


class TimeSlotResponse(BaseModel):
    start_at: datetime
    end_at: datetime
    resource_id: str
    staff_id: Optional[str] = None
    staff_name: Optional[str] = None

    @classmethod
    def from_domain(cls, slot: TimeSlot) -> "TimeSlotResponse":
        return cls(
            start_at=slot.start_at,
            end_at=slot.end_at,
            resource_id=slot.resource_id,
            staff_id=slot.staff_id,
            staff_name=slot.staff_name,
        )


class AvailabilityResponse(BaseModel):
    available_days: list[date]
    selected_day: Optional[date] = None
    time_slots: list[TimeSlotResponse]


@router.get(
    "/slots",
    response_model=AvailabilityResponse,
    status_code=status.HTTP_200_OK,
)
def list_available_slots(
    service_id: str = Query(min_length=1),
    from_at: datetime = Query(alias="from"),
    to_at: datetime = Query(alias="to"),
    staff_id: Optional[str] = Query(default=None),
    day: Optional[date] = Query(default=None),
    tenant_id: str = Depends(get_tenant_id),
    service: SlotGenerationService = Depends(get_slot_service),
) -> AvailabilityResponse:
    """Bookable windows for a service; advisory until a booking commits."""
    try:
        result = service.generate_slots(
            tenant_id,
            service_id,
            from_at=from_at,
            to_at=to_at,
            staff_id=staff_id,
            day=day,
        )
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to generate availability") from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected availability failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to generate availability",
        ) from exc

    return AvailabilityResponse(
        available_days=result.available_days,
        selected_day=result.selected_day,
        time_slots=[TimeSlotResponse.from_domain(slot) for slot in result.time_slots],
    )
