"""Availability slot generation from weekly rules, blackouts, bookings and holds."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from booking_core.domain.constraints import (
    AvailabilityConfig,
    parse_clock_time,
    slot_duration_minutes,
    slot_step_minutes,
    to_rule_weekday,
    validate_availability_config,
    validate_availability_range,
)
from booking_core.domain.errors import EntityNotFoundError
from booking_core.domain.models import (
    AvailabilityResult,
    AvailabilityRule,
    Resource,
    ResourceType,
    ServiceOffering,
    TimeSlot,
)
from booking_core.repository.booking_repository import BookingRepository
from booking_core.repository.data_repository import DataRepository
from booking_core.repository.hold_repository import HoldRepository
from booking_core.utils.clock import SystemClock, to_utc
from booking_core.utils.config import Settings, get_settings
from booking_core.utils.logger import get_logger


logger = get_logger(__name__)


class SlotGenerationService:
    """Enumerates bookable windows for a service across candidate resources.

    Read-only: the result is advisory. Two callers may see the same free slot;
    the booking commit decides which of them gets it.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        booking_repository: Optional[BookingRepository] = None,
        hold_repository: Optional[HoldRepository] = None,
        settings: Optional[Settings] = None,
        clock: Optional[SystemClock] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._booking_repository = booking_repository or BookingRepository(self._repository)
        self._hold_repository = hold_repository or HoldRepository(self._repository)
        self._clock = clock or SystemClock()

    def _config(self) -> AvailabilityConfig:
        config = AvailabilityConfig(
            max_range_days=self._settings.availability_max_range_days,
            max_slots=self._settings.availability_max_slots,
            min_step_minutes=self._settings.availability_min_step_minutes,
            max_step_minutes=self._settings.availability_max_step_minutes,
        )
        validate_availability_config(config)
        return config

    def _get_active_service(self, tenant_id: str, service_id: str) -> ServiceOffering:
        service = self._repository.get_service_offering(tenant_id, service_id)
        if service is None or not service.is_active:
            raise EntityNotFoundError("Service not found")
        return service

    def generate_slots(
        self,
        tenant_id: str,
        service_id: str,
        *,
        from_at: datetime,
        to_at: datetime,
        staff_id: Optional[str] = None,
        day: Optional[date] = None,
    ) -> AvailabilityResult:
        config = self._config()
        from_at = to_utc(from_at)
        to_at = to_utc(to_at)
        validate_availability_range(from_at, to_at, config)

        service = self._get_active_service(tenant_id, service_id)
        if staff_id and self._repository.find_active_resource(tenant_id, staff_id) is None:
            raise EntityNotFoundError(f"Resource {staff_id} not found")
        candidates = self.resolve_candidate_resources(tenant_id, service, staff_id=staff_id)

        now = self._clock.now()
        duration = timedelta(minutes=slot_duration_minutes(service))
        step = timedelta(minutes=slot_step_minutes(service, config))

        slots: list[TimeSlot] = []
        for resource in candidates:
            if len(slots) >= config.max_slots:
                break
            rule = self._repository.find_rule_by_resource(tenant_id, resource.resource_id)
            if rule is None:
                continue
            self._collect_resource_slots(
                resource=resource,
                rule=rule,
                from_at=from_at,
                to_at=to_at,
                now=now,
                duration=duration,
                step=step,
                max_slots=config.max_slots,
                slots=slots,
            )

        slots.sort(key=lambda slot: slot.start_at)
        available_days = list(dict.fromkeys(slot.start_at.date() for slot in slots))
        selected_day = day or (available_days[0] if available_days else None)
        time_slots = (
            [slot for slot in slots if slot.start_at.date() == selected_day]
            if selected_day is not None
            else []
        )

        logger.info(
            (
                "Slots generated | tenant_id=%s | service_id=%s | candidates=%s | "
                "total_slots=%s | available_days=%s | selected_day=%s"
            ),
            tenant_id,
            service_id,
            len(candidates),
            len(slots),
            len(available_days),
            selected_day,
        )
        return AvailabilityResult(
            available_days=available_days,
            time_slots=time_slots,
            selected_day=selected_day,
        )

    def _rule_zone(self, rule: AvailabilityRule) -> tzinfo:
        # Weekly windows are evaluated on UTC calendar days unless the
        # rule-timezone switch is enabled.
        if not self._settings.availability_respect_rule_timezone:
            return timezone.utc
        try:
            return ZoneInfo(rule.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(
                "Unknown rule timezone, falling back to UTC | resource_id=%s | timezone=%s",
                rule.resource_id,
                rule.timezone,
            )
            return timezone.utc

    def _collect_resource_slots(
        self,
        *,
        resource: Resource,
        rule: AvailabilityRule,
        from_at: datetime,
        to_at: datetime,
        now: datetime,
        duration: timedelta,
        step: timedelta,
        max_slots: int,
        slots: list[TimeSlot],
    ) -> None:
        zone = self._rule_zone(rule)
        day_cursor = from_at.astimezone(zone).date()
        last_day = to_at.astimezone(zone).date()

        while day_cursor <= last_day:
            weekday = to_rule_weekday(day_cursor.weekday())
            for weekly_slot in rule.weekly_slots:
                if weekly_slot.day_of_week != weekday:
                    continue
                start_time = parse_clock_time(weekly_slot.start_time)
                end_time = parse_clock_time(weekly_slot.end_time)
                if start_time is None or end_time is None:
                    continue

                window_start = to_utc(datetime.combine(day_cursor, start_time, tzinfo=zone))
                window_end = to_utc(datetime.combine(day_cursor, end_time, tzinfo=zone))
                if window_end <= window_start:
                    continue

                cursor = window_start
                while cursor + duration <= window_end:
                    if len(slots) >= max_slots:
                        return
                    slot_end = cursor + duration
                    if self._is_bookable(resource, rule, cursor, slot_end, from_at, to_at, now):
                        slots.append(
                            TimeSlot(
                                start_at=cursor,
                                end_at=slot_end,
                                resource_id=resource.resource_id,
                                staff_id=(
                                    resource.resource_id
                                    if resource.resource_type is ResourceType.STAFF
                                    else None
                                ),
                                staff_name=(
                                    resource.name
                                    if resource.resource_type is ResourceType.STAFF
                                    else None
                                ),
                            )
                        )
                    cursor += step
            day_cursor += timedelta(days=1)

    def _is_bookable(
        self,
        resource: Resource,
        rule: AvailabilityRule,
        start_at: datetime,
        end_at: datetime,
        from_at: datetime,
        to_at: datetime,
        now: datetime,
    ) -> bool:
        if start_at < from_at or end_at > to_at or start_at <= now:
            return False
        if not rule.is_effective(start_at, end_at):
            return False
        if rule.is_blacked_out(start_at, end_at):
            return False
        if self._booking_repository.has_conflict(
            resource.tenant_id,
            resource.resource_id,
            start_at,
            end_at,
        ):
            return False
        if self._hold_repository.has_active_overlap(
            resource.tenant_id,
            resource.resource_id,
            start_at,
            end_at,
            now,
        ):
            return False
        return True

    def resolve_candidate_resources(
        self,
        tenant_id: str,
        service: ServiceOffering,
        staff_id: Optional[str] = None,
    ) -> list[Resource]:
        """Explicit staff wins; else preferred type with all required tags; else STAFF."""
        if staff_id:
            staff = self._repository.find_active_resource(tenant_id, staff_id)
            return [staff] if staff is not None else []

        preferred_type = service.preferred_resource_type
        required_tags = set(service.required_tags)
        matching = [
            resource
            for resource in self._repository.list_resources(
                tenant_id,
                resource_type=preferred_type,
                is_active=True,
            )
            if required_tags.issubset(resource.tags)
        ]
        if matching:
            return matching
        if preferred_type is ResourceType.STAFF:
            return []
        return self._repository.list_resources(
            tenant_id,
            resource_type=ResourceType.STAFF,
            is_active=True,
        )

    def select_resource_for_slot(
        self,
        tenant_id: str,
        service: ServiceOffering,
        start_at: datetime,
        end_at: datetime,
        *,
        resource_id: Optional[str] = None,
        staff_id: Optional[str] = None,
    ) -> Optional[Resource]:
        """Pick the resource a hold should reserve for a chosen slot."""
        explicit_id = resource_id or staff_id
        if explicit_id:
            return self._repository.find_active_resource(tenant_id, explicit_id)

        start_at = to_utc(start_at)
        end_at = to_utc(end_at)
        now = self._clock.now()
        for resource in self.resolve_candidate_resources(tenant_id, service):
            if self._booking_repository.has_conflict(
                tenant_id,
                resource.resource_id,
                start_at,
                end_at,
            ):
                continue
            if self._hold_repository.has_active_overlap(
                tenant_id,
                resource.resource_id,
                start_at,
                end_at,
                now,
            ):
                continue
            return resource
        return None

    def get_bookable_service(self, tenant_id: str, service_id: str) -> ServiceOffering:
        return self._get_active_service(tenant_id, service_id)
