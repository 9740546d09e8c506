"""Booking and allocation engine: create, reschedule, cancel and lifecycle moves."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Optional, Sequence

from booking_core.domain.constraints import (
    RESCHEDULABLE_STATUSES,
    assert_valid_transition,
    validate_time_range,
)
from booking_core.domain.errors import (
    EntityNotFoundError,
    HoldNotActiveError,
    ResourceUnavailableError,
    SchedulingConflictError,
    SchedulingValidationError,
)
from booking_core.domain.models import (
    Allocation,
    AllocationRole,
    BookerDetails,
    Booking,
    BookingFilters,
    BookingPage,
    BookingStatus,
    HoldStatus,
)
from booking_core.repository.booking_repository import BookingRepository
from booking_core.repository.data_repository import DataRepository
from booking_core.repository.hold_repository import HoldRepository
from booking_core.utils.clock import SystemClock, UuidGenerator, to_utc
from booking_core.utils.config import Settings, get_settings
from booking_core.utils.logger import get_logger


logger = get_logger(__name__)

BOOKING_CREATE_ACTION = "booking.create"

EVENT_BOOKING_CREATED = "booking.created"
EVENT_BOOKING_RESCHEDULED = "booking.rescheduled"
EVENT_BOOKING_CANCELLED = "booking.cancelled"


@dataclass(frozen=True)
class _BookingRequest:
    start_at: datetime
    end_at: datetime
    resource_ids: tuple[str, ...]
    service_offering_id: Optional[str]
    booker: BookerDetails


def _merge_booker(primary: Optional[BookerDetails], fallback: BookerDetails) -> BookerDetails:
    if primary is None:
        return fallback
    return BookerDetails(
        party_id=primary.party_id or fallback.party_id,
        name=primary.name or fallback.name,
        email=primary.email or fallback.email,
        notes=primary.notes or fallback.notes,
    )


def _event_payload(booking: Booking, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "booking_id": booking.booking_id,
        "reference_number": booking.reference_number,
        "status": booking.status.value,
        "start_at": booking.start_at.isoformat(),
        "end_at": booking.end_at.isoformat(),
        "resource_ids": list(booking.resource_ids),
        "service_offering_id": booking.service_offering_id,
    }
    payload.update(extra)
    return payload


class BookingService:
    """Sole entry point that creates or replaces allocations.

    Every write path ends in a repository transaction that re-checks overlap
    against CONFIRMED/HOLD allocations before inserting.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        booking_repository: Optional[BookingRepository] = None,
        hold_repository: Optional[HoldRepository] = None,
        settings: Optional[Settings] = None,
        clock: Optional[SystemClock] = None,
        id_generator: Optional[UuidGenerator] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._booking_repository = booking_repository or BookingRepository(self._repository)
        self._hold_repository = hold_repository or HoldRepository(self._repository)
        self._clock = clock or SystemClock()
        self._ids = id_generator or UuidGenerator()

    def _new_reference_number(self, now: datetime) -> str:
        return f"{self._settings.reference_number_prefix}-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"

    def _replay(self, tenant_id: str, idempotency_key: Optional[str]) -> Optional[Booking]:
        if not idempotency_key:
            return None
        previous = self._repository.get_idempotent_result(
            BOOKING_CREATE_ACTION,
            tenant_id,
            idempotency_key,
        )
        if previous is None:
            return None
        logger.info(
            "Booking create replayed | tenant_id=%s | booking_id=%s",
            tenant_id,
            previous["booking_id"],
        )
        return self.get_booking(tenant_id, str(previous["booking_id"]))

    def _request_from_hold(
        self,
        tenant_id: str,
        hold_id: str,
        booker: Optional[BookerDetails],
        now: datetime,
    ) -> _BookingRequest:
        hold = self._hold_repository.find_by_id(tenant_id, hold_id)
        if hold is None:
            raise EntityNotFoundError(f"Hold {hold_id} not found")
        if hold.effective_status(now) is not HoldStatus.ACTIVE:
            raise HoldNotActiveError("Hold no longer active")
        return _BookingRequest(
            start_at=hold.start_at,
            end_at=hold.end_at,
            resource_ids=hold.resource_ids,
            service_offering_id=hold.service_offering_id,
            booker=_merge_booker(booker, hold.booker),
        )

    def _direct_request(
        self,
        tenant_id: str,
        start_at: Optional[datetime],
        end_at: Optional[datetime],
        resource_ids: Optional[Sequence[str]],
        service_offering_id: Optional[str],
        booker: Optional[BookerDetails],
    ) -> _BookingRequest:
        validate_time_range(start_at, end_at)
        unique_resource_ids = tuple(dict.fromkeys(resource_ids or ()))
        if not unique_resource_ids:
            raise SchedulingValidationError("resource_ids must be non-empty")
        for resource_id in unique_resource_ids:
            if self._repository.find_active_resource(tenant_id, resource_id) is None:
                raise EntityNotFoundError(f"Resource {resource_id} not found or inactive")
        if (
            service_offering_id is not None
            and self._repository.get_service_offering(tenant_id, service_offering_id) is None
        ):
            raise EntityNotFoundError("Service not found")
        return _BookingRequest(
            start_at=to_utc(start_at),
            end_at=to_utc(end_at),
            resource_ids=unique_resource_ids,
            service_offering_id=service_offering_id,
            booker=booker or BookerDetails(),
        )

    def create_booking(
        self,
        tenant_id: str,
        *,
        hold_id: Optional[str] = None,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
        resource_ids: Optional[Sequence[str]] = None,
        service_offering_id: Optional[str] = None,
        booker: Optional[BookerDetails] = None,
        idempotency_key: Optional[str] = None,
    ) -> Booking:
        """Create a CONFIRMED booking from a hold or from explicit times and resources.

        The overlap check, the booking insert and the hold confirmation share
        one write transaction. Raises ResourceUnavailableError when another
        booking took the interval first.
        """
        replayed = self._replay(tenant_id, idempotency_key)
        if replayed is not None:
            return replayed

        now = self._clock.now()
        if hold_id:
            request = self._request_from_hold(tenant_id, hold_id, booker, now)
        else:
            request = self._direct_request(
                tenant_id,
                start_at,
                end_at,
                resource_ids,
                service_offering_id,
                booker,
            )

        booking_id = self._ids.new_id()
        booking = Booking(
            booking_id=booking_id,
            tenant_id=tenant_id,
            status=BookingStatus.CONFIRMED,
            start_at=request.start_at,
            end_at=request.end_at,
            reference_number=self._new_reference_number(now),
            created_at=now,
            updated_at=now,
            service_offering_id=request.service_offering_id,
            hold_id=hold_id or None,
            booker=request.booker,
        )
        allocations = [
            Allocation(
                allocation_id=self._ids.new_id(),
                tenant_id=tenant_id,
                booking_id=booking_id,
                resource_id=resource_id,
                role=AllocationRole.PRIMARY,
                start_at=request.start_at,
                end_at=request.end_at,
                created_at=now,
            )
            for resource_id in request.resource_ids
        ]

        try:
            created = self._booking_repository.create(booking, allocations, now)
        except ResourceUnavailableError:
            # A concurrent request with the same key may have won the race.
            replayed = self._replay(tenant_id, idempotency_key)
            if replayed is not None:
                return replayed
            raise

        if idempotency_key:
            self._repository.store_idempotent_result(
                BOOKING_CREATE_ACTION,
                tenant_id,
                idempotency_key,
                {"booking_id": created.booking_id},
            )
        self._repository.enqueue_event(
            tenant_id,
            EVENT_BOOKING_CREATED,
            _event_payload(created, hold_id=created.hold_id),
        )
        logger.info(
            "Booking created | tenant_id=%s | booking_id=%s | reference=%s | resources=%s | hold_id=%s",
            tenant_id,
            created.booking_id,
            created.reference_number,
            ",".join(created.resource_ids),
            created.hold_id,
        )
        return created

    def get_booking(self, tenant_id: str, booking_id: str) -> Booking:
        booking = self._booking_repository.find_by_id(tenant_id, booking_id)
        if booking is None:
            raise EntityNotFoundError(f"Booking {booking_id} not found")
        return booking

    def list_bookings(
        self,
        tenant_id: str,
        filters: Optional[BookingFilters] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> BookingPage:
        if page < 1:
            raise SchedulingValidationError("page must be >= 1")
        size = self._settings.default_page_size if page_size is None else page_size
        if size < 1:
            raise SchedulingValidationError("page_size must be >= 1")
        size = min(size, self._settings.max_page_size)

        filters = filters or BookingFilters()
        if filters.from_date is not None or filters.to_date is not None:
            filters = replace(
                filters,
                from_date=to_utc(filters.from_date) if filters.from_date else None,
                to_date=to_utc(filters.to_date) if filters.to_date else None,
            )
        return self._booking_repository.find_many(tenant_id, filters, page, size)

    def reschedule_booking(
        self,
        tenant_id: str,
        booking_id: str,
        new_start_at: datetime,
        new_end_at: datetime,
    ) -> Booking:
        """Move a booking and its whole allocation set to a new interval.

        Either allocations and times both change or neither does.
        """
        validate_time_range(new_start_at, new_end_at)
        new_start_at = to_utc(new_start_at)
        new_end_at = to_utc(new_end_at)

        booking = self.get_booking(tenant_id, booking_id)
        if booking.status not in RESCHEDULABLE_STATUSES:
            raise SchedulingConflictError(
                f"Cannot reschedule booking in status {booking.status.value}"
            )

        now = self._clock.now()
        allocations = [
            Allocation(
                allocation_id=self._ids.new_id(),
                tenant_id=tenant_id,
                booking_id=booking_id,
                resource_id=current.resource_id,
                role=current.role,
                start_at=new_start_at,
                end_at=new_end_at,
                created_at=now,
            )
            for current in booking.allocations
        ]
        updated = self._booking_repository.replace_allocations(
            booking_id,
            tenant_id,
            allocations,
            new_start_at,
            new_end_at,
            now,
        )
        self._repository.enqueue_event(
            tenant_id,
            EVENT_BOOKING_RESCHEDULED,
            _event_payload(
                updated,
                previous_start_at=booking.start_at.isoformat(),
                previous_end_at=booking.end_at.isoformat(),
            ),
        )
        logger.info(
            "Booking rescheduled | tenant_id=%s | booking_id=%s | start_at=%s | end_at=%s",
            tenant_id,
            booking_id,
            new_start_at.isoformat(),
            new_end_at.isoformat(),
        )
        return updated

    def cancel_booking(
        self,
        tenant_id: str,
        booking_id: str,
        reason: Optional[str] = None,
    ) -> Booking:
        """Cancel a booking. Cancelling an already cancelled booking is a no-op."""
        booking = self.get_booking(tenant_id, booking_id)
        if booking.status is BookingStatus.CANCELLED:
            return booking
        assert_valid_transition(booking.status, BookingStatus.CANCELLED)

        now = self._clock.now()
        try:
            cancelled = self._booking_repository.save_status_change(
                replace(
                    booking,
                    status=BookingStatus.CANCELLED,
                    cancelled_at=now,
                    cancelled_reason=reason,
                    updated_at=now,
                ),
                booking.status,
            )
        except SchedulingConflictError:
            current = self.get_booking(tenant_id, booking_id)
            if current.status is BookingStatus.CANCELLED:
                return current
            raise

        self._repository.enqueue_event(
            tenant_id,
            EVENT_BOOKING_CANCELLED,
            _event_payload(cancelled, reason=reason),
        )
        logger.info(
            "Booking cancelled | tenant_id=%s | booking_id=%s | reason=%s",
            tenant_id,
            booking_id,
            reason,
        )
        return cancelled

    def _transition(self, tenant_id: str, booking_id: str, target: BookingStatus) -> Booking:
        booking = self.get_booking(tenant_id, booking_id)
        assert_valid_transition(booking.status, target)
        updated = self._booking_repository.save_status_change(
            replace(booking, status=target, updated_at=self._clock.now()),
            booking.status,
        )
        logger.info(
            "Booking status changed | tenant_id=%s | booking_id=%s | from=%s | to=%s",
            tenant_id,
            booking_id,
            booking.status.value,
            target.value,
        )
        return updated

    def confirm_booking(self, tenant_id: str, booking_id: str) -> Booking:
        return self._transition(tenant_id, booking_id, BookingStatus.CONFIRMED)

    def complete_booking(self, tenant_id: str, booking_id: str) -> Booking:
        return self._transition(tenant_id, booking_id, BookingStatus.COMPLETED)

    def mark_no_show(self, tenant_id: str, booking_id: str) -> Booking:
        return self._transition(tenant_id, booking_id, BookingStatus.NO_SHOW)

    def has_conflict(
        self,
        tenant_id: str,
        resource_id: str,
        start_at: datetime,
        end_at: datetime,
        exclude_booking_id: Optional[str] = None,
    ) -> bool:
        return self._booking_repository.has_conflict(
            tenant_id,
            resource_id,
            to_utc(start_at),
            to_utc(end_at),
            exclude_booking_id,
        )
