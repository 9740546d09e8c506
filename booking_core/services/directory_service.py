"""Resource, service offering and availability rule administration."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from booking_core.domain.constraints import parse_clock_time
from booking_core.domain.errors import EntityNotFoundError, SchedulingValidationError
from booking_core.domain.models import (
    AvailabilityRule,
    BlackoutInterval,
    Resource,
    ResourceChanges,
    ResourceType,
    ServiceOffering,
    ServiceOfferingChanges,
    WeeklySlot,
    apply_resource_changes,
    apply_service_changes,
)
from booking_core.repository.data_repository import DataRepository
from booking_core.utils.clock import UuidGenerator, to_utc
from booking_core.utils.config import Settings, get_settings
from booking_core.utils.logger import get_logger


logger = get_logger(__name__)


def _validate_service_numbers(service: ServiceOffering) -> None:
    if service.duration_minutes <= 0:
        raise SchedulingValidationError("duration_minutes must be > 0")
    if service.buffer_before_minutes < 0 or service.buffer_after_minutes < 0:
        raise SchedulingValidationError("buffer minutes must be >= 0")


def _validate_weekly_slots(weekly_slots: tuple[WeeklySlot, ...]) -> None:
    for slot in weekly_slots:
        if not 0 <= slot.day_of_week <= 6:
            raise SchedulingValidationError("day_of_week must be between 0 (Sunday) and 6")
        start = parse_clock_time(slot.start_time)
        end = parse_clock_time(slot.end_time)
        if start is None or end is None:
            raise SchedulingValidationError("weekly slot times must follow HH:MM format")
        if start >= end:
            raise SchedulingValidationError("weekly slot start_time must be before end_time")


def _validate_timezone(name: str) -> None:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise SchedulingValidationError(f"Unknown timezone {name!r}") from exc


class DirectoryService:
    """Maintains the directory data the scheduling core reads."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        id_generator: Optional[UuidGenerator] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._ids = id_generator or UuidGenerator()

    def create_resource(
        self,
        tenant_id: str,
        *,
        resource_type: ResourceType,
        name: str,
        tags: tuple[str, ...] = (),
        is_active: bool = True,
        description: Optional[str] = None,
        location: Optional[str] = None,
        capacity: Optional[int] = None,
        resource_id: Optional[str] = None,
    ) -> Resource:
        if not name.strip():
            raise SchedulingValidationError("name must be non-empty")
        resource = Resource(
            resource_id=resource_id or self._ids.new_id(),
            tenant_id=tenant_id,
            resource_type=resource_type,
            name=name.strip(),
            tags=tuple(tags),
            is_active=is_active,
            description=description,
            location=location,
            capacity=capacity,
        )
        self._repository.save_resource(resource)
        logger.info(
            "Resource created | tenant_id=%s | resource_id=%s | type=%s",
            tenant_id,
            resource.resource_id,
            resource.resource_type.value,
        )
        return resource

    def get_resource(self, tenant_id: str, resource_id: str) -> Resource:
        resource = self._repository.get_resource(tenant_id, resource_id)
        if resource is None:
            raise EntityNotFoundError(f"Resource {resource_id} not found")
        return resource

    def list_resources(
        self,
        tenant_id: str,
        *,
        resource_type: Optional[ResourceType] = None,
        is_active: Optional[bool] = None,
    ) -> list[Resource]:
        return self._repository.list_resources(
            tenant_id,
            resource_type=resource_type,
            is_active=is_active,
        )

    def update_resource(
        self,
        tenant_id: str,
        resource_id: str,
        changes: ResourceChanges,
    ) -> Resource:
        current = self.get_resource(tenant_id, resource_id)
        if changes.name is not None and not changes.name.strip():
            raise SchedulingValidationError("name must be non-empty")
        updated = apply_resource_changes(current, changes)
        self._repository.save_resource(updated)
        return updated

    def create_service_offering(
        self,
        tenant_id: str,
        *,
        name: str,
        duration_minutes: int,
        buffer_before_minutes: int = 0,
        buffer_after_minutes: int = 0,
        required_resource_types: tuple[ResourceType, ...] = (),
        required_tags: tuple[str, ...] = (),
        is_active: bool = True,
        description: Optional[str] = None,
        service_id: Optional[str] = None,
    ) -> ServiceOffering:
        service = ServiceOffering(
            service_id=service_id or self._ids.new_id(),
            tenant_id=tenant_id,
            name=name,
            duration_minutes=duration_minutes,
            buffer_before_minutes=buffer_before_minutes,
            buffer_after_minutes=buffer_after_minutes,
            required_resource_types=tuple(required_resource_types),
            required_tags=tuple(required_tags),
            is_active=is_active,
            description=description,
        )
        _validate_service_numbers(service)
        self._repository.save_service_offering(service)
        logger.info(
            "Service offering created | tenant_id=%s | service_id=%s | total_slot_minutes=%s",
            tenant_id,
            service.service_id,
            service.total_slot_minutes,
        )
        return service

    def get_service_offering(self, tenant_id: str, service_id: str) -> ServiceOffering:
        service = self._repository.get_service_offering(tenant_id, service_id)
        if service is None:
            raise EntityNotFoundError(f"Service {service_id} not found")
        return service

    def list_service_offerings(
        self,
        tenant_id: str,
        *,
        is_active: Optional[bool] = None,
    ) -> list[ServiceOffering]:
        return self._repository.list_service_offerings(tenant_id, is_active=is_active)

    def update_service_offering(
        self,
        tenant_id: str,
        service_id: str,
        changes: ServiceOfferingChanges,
    ) -> ServiceOffering:
        updated = apply_service_changes(self.get_service_offering(tenant_id, service_id), changes)
        _validate_service_numbers(updated)
        self._repository.save_service_offering(updated)
        return updated

    def set_availability_rule(
        self,
        tenant_id: str,
        resource_id: str,
        *,
        timezone: str = "UTC",
        weekly_slots: tuple[WeeklySlot, ...] = (),
        blackouts: tuple[BlackoutInterval, ...] = (),
        effective_from: Optional[datetime] = None,
        effective_to: Optional[datetime] = None,
    ) -> AvailabilityRule:
        self.get_resource(tenant_id, resource_id)
        _validate_timezone(timezone)
        _validate_weekly_slots(weekly_slots)
        normalized_blackouts = tuple(
            BlackoutInterval(
                start_at=to_utc(blackout.start_at),
                end_at=to_utc(blackout.end_at),
                reason=blackout.reason,
            )
            for blackout in blackouts
        )
        for blackout in normalized_blackouts:
            if blackout.start_at >= blackout.end_at:
                raise SchedulingValidationError("blackout start_at must be before end_at")
        if effective_from is not None:
            effective_from = to_utc(effective_from)
        if effective_to is not None:
            effective_to = to_utc(effective_to)
        if effective_from is not None and effective_to is not None and effective_from >= effective_to:
            raise SchedulingValidationError("effective_from must be before effective_to")

        existing = self._repository.find_rule_by_resource(tenant_id, resource_id)
        rule = AvailabilityRule(
            rule_id=existing.rule_id if existing is not None else self._ids.new_id(),
            tenant_id=tenant_id,
            resource_id=resource_id,
            timezone=timezone,
            weekly_slots=tuple(weekly_slots),
            blackouts=normalized_blackouts,
            effective_from=effective_from,
            effective_to=effective_to,
        )
        saved = self._repository.save_availability_rule(rule)
        logger.info(
            "Availability rule saved | tenant_id=%s | resource_id=%s | weekly_slots=%s | blackouts=%s",
            tenant_id,
            resource_id,
            len(saved.weekly_slots),
            len(saved.blackouts),
        )
        return saved

    def get_availability_rule(self, tenant_id: str, resource_id: str) -> AvailabilityRule:
        rule = self._repository.find_rule_by_resource(tenant_id, resource_id)
        if rule is None:
            raise EntityNotFoundError(f"Availability rule for resource {resource_id} not found")
        return rule
