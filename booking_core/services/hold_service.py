"""Hold manager: time-boxed soft reservations ahead of a firm booking."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Sequence

from booking_core.domain.constraints import assert_valid_hold_transition, validate_time_range
from booking_core.domain.errors import (
    EntityNotFoundError,
    HoldNotActiveError,
    SchedulingValidationError,
)
from booking_core.domain.models import BookerDetails, Hold, HoldStatus
from booking_core.repository.data_repository import DataRepository
from booking_core.repository.hold_repository import HoldRepository
from booking_core.utils.clock import SystemClock, UuidGenerator, to_utc
from booking_core.utils.config import Settings, get_settings
from booking_core.utils.logger import get_logger


logger = get_logger(__name__)

HOLD_CREATE_ACTION = "hold.create"


class HoldService:
    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        hold_repository: Optional[HoldRepository] = None,
        settings: Optional[Settings] = None,
        clock: Optional[SystemClock] = None,
        id_generator: Optional[UuidGenerator] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._hold_repository = hold_repository or HoldRepository(self._repository)
        self._clock = clock or SystemClock()
        self._ids = id_generator or UuidGenerator()

    def create_hold(
        self,
        tenant_id: str,
        resource_ids: Sequence[str],
        start_at: datetime,
        end_at: datetime,
        *,
        ttl_seconds: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        service_offering_id: Optional[str] = None,
        booker: Optional[BookerDetails] = None,
    ) -> Hold:
        """Reserve every resource for [start_at, end_at) until the TTL lapses.

        A repeated call with the same idempotency key returns the hold the
        first call produced instead of reserving again.
        """
        if idempotency_key:
            previous = self._repository.get_idempotent_result(
                HOLD_CREATE_ACTION,
                tenant_id,
                idempotency_key,
            )
            if previous is not None:
                logger.info(
                    "Hold create replayed | tenant_id=%s | hold_id=%s",
                    tenant_id,
                    previous["hold_id"],
                )
                return self.get_hold(tenant_id, str(previous["hold_id"]))

        validate_time_range(start_at, end_at)
        start_at = to_utc(start_at)
        end_at = to_utc(end_at)
        unique_resource_ids = tuple(dict.fromkeys(resource_ids))
        if not unique_resource_ids:
            raise SchedulingValidationError("resource_ids must be non-empty")

        ttl = self._settings.hold_default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise SchedulingValidationError("ttl_seconds must be > 0")
        if ttl > self._settings.hold_max_ttl_seconds:
            raise SchedulingValidationError(
                f"ttl_seconds must be <= {self._settings.hold_max_ttl_seconds}"
            )

        for resource_id in unique_resource_ids:
            if self._repository.find_active_resource(tenant_id, resource_id) is None:
                raise EntityNotFoundError(f"Resource {resource_id} not found or inactive")
        if (
            service_offering_id is not None
            and self._repository.get_service_offering(tenant_id, service_offering_id) is None
        ):
            raise EntityNotFoundError("Service not found")

        now = self._clock.now()
        hold = Hold(
            hold_id=self._ids.new_id(),
            tenant_id=tenant_id,
            status=HoldStatus.ACTIVE,
            start_at=start_at,
            end_at=end_at,
            resource_ids=unique_resource_ids,
            expires_at=now + timedelta(seconds=ttl),
            created_at=now,
            service_offering_id=service_offering_id,
            booker=booker or BookerDetails(),
        )
        created = self._hold_repository.create(hold)

        if idempotency_key:
            self._repository.store_idempotent_result(
                HOLD_CREATE_ACTION,
                tenant_id,
                idempotency_key,
                {"hold_id": created.hold_id},
            )
        logger.info(
            "Hold created | tenant_id=%s | hold_id=%s | resources=%s | expires_at=%s",
            tenant_id,
            created.hold_id,
            ",".join(created.resource_ids),
            created.expires_at.isoformat(),
        )
        return created

    def get_hold(self, tenant_id: str, hold_id: str) -> Hold:
        hold = self._hold_repository.find_by_id(tenant_id, hold_id)
        if hold is None:
            raise EntityNotFoundError(f"Hold {hold_id} not found")
        return hold

    def effective_status(self, hold: Hold) -> HoldStatus:
        return hold.effective_status(self._clock.now())

    def confirm_hold(self, tenant_id: str, hold_id: str, booking_id: str) -> Hold:
        """ACTIVE -> CONFIRMED. Expired, cancelled or confirmed holds conflict."""
        now = self._clock.now()
        hold = self.get_hold(tenant_id, hold_id)
        if hold.effective_status(now) is not HoldStatus.ACTIVE:
            raise HoldNotActiveError("Hold no longer active")
        confirmed = self._hold_repository.transition(
            tenant_id,
            hold_id,
            HoldStatus.CONFIRMED,
            now,
            confirmed_booking_id=booking_id,
        )
        logger.info(
            "Hold confirmed | tenant_id=%s | hold_id=%s | booking_id=%s",
            tenant_id,
            hold_id,
            booking_id,
        )
        return confirmed

    def cancel_hold(self, tenant_id: str, hold_id: str) -> Hold:
        now = self._clock.now()
        hold = self.get_hold(tenant_id, hold_id)
        assert_valid_hold_transition(hold.effective_status(now), HoldStatus.CANCELLED)
        cancelled = self._hold_repository.transition(
            tenant_id,
            hold_id,
            HoldStatus.CANCELLED,
            now,
        )
        logger.info("Hold cancelled | tenant_id=%s | hold_id=%s", tenant_id, hold_id)
        return cancelled

    def expire_stale_holds(self, tenant_id: Optional[str] = None) -> int:
        return self._hold_repository.expire_stale(self._clock.now(), tenant_id=tenant_id)

    def has_active_overlap(
        self,
        tenant_id: str,
        resource_id: str,
        start_at: datetime,
        end_at: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        return self._hold_repository.has_active_overlap(
            tenant_id,
            resource_id,
            to_utc(start_at),
            to_utc(end_at),
            to_utc(now) if now is not None else self._clock.now(),
        )
