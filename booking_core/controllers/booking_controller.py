"""HTTP controller layer for holds and bookings."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from booking_core.controllers.dependencies import (
    get_booking_service,
    get_hold_service,
    get_idempotency_key,
    get_slot_service,
    get_tenant_id,
    to_http_exception,
)
from booking_core.domain.errors import (
    SchedulingConflictError,
    SchedulingError,
    SchedulingValidationError,
)
from booking_core.domain.models import (
    Allocation,
    BookerDetails,
    Booking,
    BookingFilters,
    BookingStatus,
    Hold,
    HoldStatus,
)
from booking_core.repository.data_repository import PersistenceError
from booking_core.services.booking_service import BookingService
from booking_core.services.hold_service import HoldService
from booking_core.services.slot_service import SlotGenerationService
from booking_core.utils.config import get_settings
from booking_core.utils.logger import get_logger


logger = get_logger(__name__)
settings = get_settings()

router = APIRouter(tags=["bookings"])


class BookerPayload(BaseModel):
    party_id: Optional[str] = None
    name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[str] = Field(default=None, max_length=320)
    notes: Optional[str] = Field(default=None, max_length=2000)

    def to_domain(self) -> BookerDetails:
        return BookerDetails(
            party_id=self.party_id,
            name=self.name,
            email=self.email,
            notes=self.notes,
        )

    @classmethod
    def from_domain(cls, booker: BookerDetails) -> "BookerPayload":
        return cls(
            party_id=booker.party_id,
            name=booker.name,
            email=booker.email,
            notes=booker.notes,
        )


class HoldCreateRequest(BaseModel):
    """Either explicit resource ids, or a service to auto-select a resource for."""

    start_at: datetime
    end_at: Optional[datetime] = None
    resource_ids: list[str] = Field(default_factory=list)
    service_id: Optional[str] = None
    staff_id: Optional[str] = None
    resource_id: Optional[str] = None
    ttl_seconds: Optional[int] = Field(default=None, gt=0)
    idempotency_key: Optional[str] = None
    booker: BookerPayload = Field(default_factory=BookerPayload)

    @field_validator("resource_ids")
    @classmethod
    def validate_resource_ids(cls, value: list[str]) -> list[str]:
        for resource_id in value:
            if not resource_id.strip():
                raise ValueError("resource_ids values must be non-empty")
        return value


class HoldResponse(BaseModel):
    hold_id: str
    status: HoldStatus
    stored_status: HoldStatus
    start_at: datetime
    end_at: datetime
    resource_ids: list[str]
    expires_at: datetime
    service_offering_id: Optional[str] = None
    confirmed_booking_id: Optional[str] = None
    booker: BookerPayload

    @classmethod
    def from_domain(cls, hold: Hold, effective_status: HoldStatus) -> "HoldResponse":
        return cls(
            hold_id=hold.hold_id,
            status=effective_status,
            stored_status=hold.status,
            start_at=hold.start_at,
            end_at=hold.end_at,
            resource_ids=list(hold.resource_ids),
            expires_at=hold.expires_at,
            service_offering_id=hold.service_offering_id,
            confirmed_booking_id=hold.confirmed_booking_id,
            booker=BookerPayload.from_domain(hold.booker),
        )


class ExpireHoldsResponse(BaseModel):
    expired_count: int = Field(ge=0)


class BookingCreateRequest(BaseModel):
    hold_id: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    resource_ids: list[str] = Field(default_factory=list)
    service_offering_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    booker: Optional[BookerPayload] = None


class RescheduleRequest(BaseModel):
    start_at: datetime
    end_at: datetime


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class AllocationResponse(BaseModel):
    allocation_id: str
    resource_id: str
    role: str
    start_at: datetime
    end_at: datetime

    @classmethod
    def from_domain(cls, allocation: Allocation) -> "AllocationResponse":
        return cls(
            allocation_id=allocation.allocation_id,
            resource_id=allocation.resource_id,
            role=allocation.role.value,
            start_at=allocation.start_at,
            end_at=allocation.end_at,
        )


class BookingResponse(BaseModel):
    booking_id: str
    reference_number: str
    status: BookingStatus
    start_at: datetime
    end_at: datetime
    service_offering_id: Optional[str] = None
    hold_id: Optional[str] = None
    booker: BookerPayload
    cancelled_at: Optional[datetime] = None
    cancelled_reason: Optional[str] = None
    allocations: list[AllocationResponse]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, booking: Booking) -> "BookingResponse":
        return cls(
            booking_id=booking.booking_id,
            reference_number=booking.reference_number,
            status=booking.status,
            start_at=booking.start_at,
            end_at=booking.end_at,
            service_offering_id=booking.service_offering_id,
            hold_id=booking.hold_id,
            booker=BookerPayload.from_domain(booking.booker),
            cancelled_at=booking.cancelled_at,
            cancelled_reason=booking.cancelled_reason,
            allocations=[AllocationResponse.from_domain(item) for item in booking.allocations],
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class BookingListResponse(BaseModel):
    items: list[BookingResponse]
    total: int = Field(ge=0)
    page: int = Field(ge=1)
    page_size: int = Field(ge=1)


def _resolve_hold_target(
    tenant_id: str,
    payload: HoldCreateRequest,
    slot_service: SlotGenerationService,
) -> tuple[list[str], datetime]:
    """Resource ids and end time for a hold request, auto-selecting when needed."""
    if payload.resource_ids:
        if payload.end_at is None:
            raise SchedulingValidationError("end_at is required when resource_ids are given")
        return payload.resource_ids, payload.end_at
    if not payload.service_id:
        raise SchedulingValidationError("Either resource_ids or service_id is required")

    offering = slot_service.get_bookable_service(tenant_id, payload.service_id)
    end_at = payload.end_at or payload.start_at + timedelta(minutes=offering.total_slot_minutes)
    resource = slot_service.select_resource_for_slot(
        tenant_id,
        offering,
        payload.start_at,
        end_at,
        resource_id=payload.resource_id,
        staff_id=payload.staff_id,
    )
    if resource is None:
        raise SchedulingConflictError("No resource available for the selected time")
    return [resource.resource_id], end_at


@router.post(
    "/holds",
    response_model=HoldResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_hold(
    payload: HoldCreateRequest,
    tenant_id: str = Depends(get_tenant_id),
    header_key: Optional[str] = Depends(get_idempotency_key),
    hold_service: HoldService = Depends(get_hold_service),
    slot_service: SlotGenerationService = Depends(get_slot_service),
) -> HoldResponse:
    try:
        resource_ids, end_at = _resolve_hold_target(tenant_id, payload, slot_service)
        hold = hold_service.create_hold(
            tenant_id,
            resource_ids,
            payload.start_at,
            end_at,
            ttl_seconds=payload.ttl_seconds,
            idempotency_key=payload.idempotency_key or header_key,
            service_offering_id=payload.service_id,
            booker=payload.booker.to_domain(),
        )
        return HoldResponse.from_domain(hold, hold_service.effective_status(hold))
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to create hold") from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected hold creation failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create hold",
        ) from exc


@router.post(
    "/holds/expire",
    response_model=ExpireHoldsResponse,
    status_code=status.HTTP_200_OK,
)
def expire_holds(
    tenant_id: str = Depends(get_tenant_id),
    hold_service: HoldService = Depends(get_hold_service),
) -> ExpireHoldsResponse:
    try:
        return ExpireHoldsResponse(expired_count=hold_service.expire_stale_holds(tenant_id))
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to expire holds") from exc


@router.get(
    "/holds/{hold_id}",
    response_model=HoldResponse,
    status_code=status.HTTP_200_OK,
)
def get_hold(
    hold_id: str,
    tenant_id: str = Depends(get_tenant_id),
    hold_service: HoldService = Depends(get_hold_service),
) -> HoldResponse:
    try:
        hold = hold_service.get_hold(tenant_id, hold_id)
        return HoldResponse.from_domain(hold, hold_service.effective_status(hold))
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to load hold") from exc


@router.post(
    "/holds/{hold_id}/cancel",
    response_model=HoldResponse,
    status_code=status.HTTP_200_OK,
)
def cancel_hold(
    hold_id: str,
    tenant_id: str = Depends(get_tenant_id),
    hold_service: HoldService = Depends(get_hold_service),
) -> HoldResponse:
    try:
        hold = hold_service.cancel_hold(tenant_id, hold_id)
        return HoldResponse.from_domain(hold, hold_service.effective_status(hold))
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to cancel hold") from exc


@router.post(
    "/bookings",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_booking(
    payload: BookingCreateRequest,
    tenant_id: str = Depends(get_tenant_id),
    header_key: Optional[str] = Depends(get_idempotency_key),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """Create a CONFIRMED booking; 409 means re-fetch availability and pick again."""
    try:
        booking = booking_service.create_booking(
            tenant_id,
            hold_id=payload.hold_id,
            start_at=payload.start_at,
            end_at=payload.end_at,
            resource_ids=payload.resource_ids,
            service_offering_id=payload.service_offering_id,
            booker=payload.booker.to_domain() if payload.booker is not None else None,
            idempotency_key=payload.idempotency_key or header_key,
        )
        return BookingResponse.from_domain(booking)
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to create booking") from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected booking creation failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create booking",
        ) from exc


@router.get(
    "/bookings",
    response_model=BookingListResponse,
    status_code=status.HTTP_200_OK,
)
def list_bookings(
    q: Optional[str] = Query(default=None),
    booking_status: Optional[BookingStatus] = Query(default=None, alias="status"),
    service_offering_id: Optional[str] = Query(default=None),
    resource_id: Optional[str] = Query(default=None),
    booked_by_party_id: Optional[str] = Query(default=None),
    from_date: Optional[datetime] = Query(default=None),
    to_date: Optional[datetime] = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=settings.default_page_size, ge=1),
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingListResponse:
    filters = BookingFilters(
        q=q,
        status=booking_status,
        service_offering_id=service_offering_id,
        resource_id=resource_id,
        booked_by_party_id=booked_by_party_id,
        from_date=from_date,
        to_date=to_date,
    )
    try:
        result = booking_service.list_bookings(tenant_id, filters, page=page, page_size=page_size)
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to list bookings") from exc
    return BookingListResponse(
        items=[BookingResponse.from_domain(item) for item in result.items],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )


@router.get(
    "/bookings/{booking_id}",
    response_model=BookingResponse,
    status_code=status.HTTP_200_OK,
)
def get_booking(
    booking_id: str,
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        return BookingResponse.from_domain(booking_service.get_booking(tenant_id, booking_id))
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to load booking") from exc


@router.post(
    "/bookings/{booking_id}/reschedule",
    response_model=BookingResponse,
    status_code=status.HTTP_200_OK,
)
def reschedule_booking(
    booking_id: str,
    payload: RescheduleRequest,
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = booking_service.reschedule_booking(
            tenant_id,
            booking_id,
            payload.start_at,
            payload.end_at,
        )
        return BookingResponse.from_domain(booking)
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to reschedule booking") from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected reschedule failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reschedule booking",
        ) from exc


@router.post(
    "/bookings/{booking_id}/cancel",
    response_model=BookingResponse,
    status_code=status.HTTP_200_OK,
)
def cancel_booking(
    booking_id: str,
    payload: Optional[CancelRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    reason = payload.reason if payload is not None else None
    try:
        return BookingResponse.from_domain(
            booking_service.cancel_booking(tenant_id, booking_id, reason=reason)
        )
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to cancel booking") from exc


@router.post(
    "/bookings/{booking_id}/confirm",
    response_model=BookingResponse,
    status_code=status.HTTP_200_OK,
)
def confirm_booking(
    booking_id: str,
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        return BookingResponse.from_domain(booking_service.confirm_booking(tenant_id, booking_id))
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to confirm booking") from exc


@router.post(
    "/bookings/{booking_id}/complete",
    response_model=BookingResponse,
    status_code=status.HTTP_200_OK,
)
def complete_booking(
    booking_id: str,
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        return BookingResponse.from_domain(booking_service.complete_booking(tenant_id, booking_id))
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to complete booking") from exc


@router.post(
    "/bookings/{booking_id}/no-show",
    response_model=BookingResponse,
    status_code=status.HTTP_200_OK,
)
def mark_no_show(
    booking_id: str,
    tenant_id: str = Depends(get_tenant_id),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        return BookingResponse.from_domain(booking_service.mark_no_show(tenant_id, booking_id))
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to mark booking as no-show") from exc
