"""Domain models for resources, availability rules, holds and bookings."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Optional


class ResourceType(str, Enum):
    STAFF = "STAFF"
    ROOM = "ROOM"
    EQUIPMENT = "EQUIPMENT"


class AllocationRole(str, Enum):
    PRIMARY = "PRIMARY"
    SUPPORT = "SUPPORT"
    ROOM = "ROOM"
    EQUIPMENT = "EQUIPMENT"


class BookingStatus(str, Enum):
    DRAFT = "DRAFT"
    HOLD = "HOLD"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"
    COMPLETED = "COMPLETED"


class HoldStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CONFIRMED = "CONFIRMED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class Resource:
    resource_id: str
    tenant_id: str
    resource_type: ResourceType
    name: str
    tags: tuple[str, ...] = ()
    is_active: bool = True
    description: Optional[str] = None
    location: Optional[str] = None
    capacity: Optional[int] = None


@dataclass(frozen=True)
class ResourceChanges:
    """Partial update for a resource; `None` leaves a field unchanged."""

    resource_type: Optional[ResourceType] = None
    name: Optional[str] = None
    tags: Optional[tuple[str, ...]] = None
    is_active: Optional[bool] = None
    description: Optional[str] = None
    location: Optional[str] = None
    capacity: Optional[int] = None


@dataclass(frozen=True)
class ServiceOffering:
    service_id: str
    tenant_id: str
    name: str
    duration_minutes: int
    buffer_before_minutes: int = 0
    buffer_after_minutes: int = 0
    required_resource_types: tuple[ResourceType, ...] = ()
    required_tags: tuple[str, ...] = ()
    is_active: bool = True
    description: Optional[str] = None

    @property
    def total_slot_minutes(self) -> int:
        return self.buffer_before_minutes + self.duration_minutes + self.buffer_after_minutes

    @property
    def preferred_resource_type(self) -> ResourceType:
        if self.required_resource_types:
            return self.required_resource_types[0]
        return ResourceType.STAFF


@dataclass(frozen=True)
class ServiceOfferingChanges:
    name: Optional[str] = None
    duration_minutes: Optional[int] = None
    buffer_before_minutes: Optional[int] = None
    buffer_after_minutes: Optional[int] = None
    required_resource_types: Optional[tuple[ResourceType, ...]] = None
    required_tags: Optional[tuple[str, ...]] = None
    is_active: Optional[bool] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class WeeklySlot:
    day_of_week: int  # 0=Sunday ... 6=Saturday
    start_time: str  # "HH:MM"
    end_time: str


@dataclass(frozen=True)
class BlackoutInterval:
    start_at: datetime
    end_at: datetime
    reason: Optional[str] = None


@dataclass(frozen=True)
class AvailabilityRule:
    rule_id: str
    tenant_id: str
    resource_id: str
    timezone: str
    weekly_slots: tuple[WeeklySlot, ...] = ()
    blackouts: tuple[BlackoutInterval, ...] = ()
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None

    def is_blacked_out(self, start_at: datetime, end_at: datetime) -> bool:
        return any(
            blackout.start_at < end_at and blackout.end_at > start_at
            for blackout in self.blackouts
        )

    def is_effective(self, start_at: datetime, end_at: datetime) -> bool:
        if self.effective_from is not None and start_at < self.effective_from:
            return False
        if self.effective_to is not None and end_at > self.effective_to:
            return False
        return True


@dataclass(frozen=True)
class BookerDetails:
    party_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class Hold:
    hold_id: str
    tenant_id: str
    status: HoldStatus
    start_at: datetime
    end_at: datetime
    resource_ids: tuple[str, ...]
    expires_at: datetime
    created_at: datetime
    service_offering_id: Optional[str] = None
    booker: BookerDetails = field(default_factory=BookerDetails)
    confirmed_booking_id: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now

    def effective_status(self, now: datetime) -> HoldStatus:
        """Stored status, except ACTIVE past its TTL reads as EXPIRED."""
        if self.status is HoldStatus.ACTIVE and self.is_expired(now):
            return HoldStatus.EXPIRED
        return self.status


@dataclass(frozen=True)
class Allocation:
    allocation_id: str
    tenant_id: str
    booking_id: str
    resource_id: str
    role: AllocationRole
    start_at: datetime
    end_at: datetime
    created_at: datetime


@dataclass(frozen=True)
class Booking:
    booking_id: str
    tenant_id: str
    status: BookingStatus
    start_at: datetime
    end_at: datetime
    reference_number: str
    created_at: datetime
    updated_at: datetime
    service_offering_id: Optional[str] = None
    hold_id: Optional[str] = None
    booker: BookerDetails = field(default_factory=BookerDetails)
    cancelled_at: Optional[datetime] = None
    cancelled_reason: Optional[str] = None
    allocations: tuple[Allocation, ...] = ()

    @property
    def resource_ids(self) -> tuple[str, ...]:
        return tuple(allocation.resource_id for allocation in self.allocations)


@dataclass(frozen=True)
class TimeSlot:
    start_at: datetime
    end_at: datetime
    resource_id: str
    staff_id: Optional[str] = None
    staff_name: Optional[str] = None


@dataclass(frozen=True)
class AvailabilityResult:
    available_days: list[date]
    time_slots: list[TimeSlot]
    selected_day: Optional[date] = None


@dataclass(frozen=True)
class BookingFilters:
    q: Optional[str] = None
    status: Optional[BookingStatus] = None
    service_offering_id: Optional[str] = None
    resource_id: Optional[str] = None
    booked_by_party_id: Optional[str] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None


@dataclass(frozen=True)
class BookingPage:
    items: list[Booking]
    total: int
    page: int
    page_size: int


def apply_resource_changes(resource: Resource, changes: ResourceChanges) -> Resource:
    """Return a new resource snapshot with the non-empty change fields merged."""
    updated = resource
    if changes.resource_type is not None:
        updated = replace(updated, resource_type=changes.resource_type)
    if changes.name is not None:
        updated = replace(updated, name=changes.name)
    if changes.tags is not None:
        updated = replace(updated, tags=tuple(changes.tags))
    if changes.is_active is not None:
        updated = replace(updated, is_active=changes.is_active)
    if changes.description is not None:
        updated = replace(updated, description=changes.description)
    if changes.location is not None:
        updated = replace(updated, location=changes.location)
    if changes.capacity is not None:
        updated = replace(updated, capacity=changes.capacity)
    return updated


def apply_service_changes(
    service: ServiceOffering,
    changes: ServiceOfferingChanges,
) -> ServiceOffering:
    updated = service
    if changes.name is not None:
        updated = replace(updated, name=changes.name)
    if changes.duration_minutes is not None:
        updated = replace(updated, duration_minutes=changes.duration_minutes)
    if changes.buffer_before_minutes is not None:
        updated = replace(updated, buffer_before_minutes=changes.buffer_before_minutes)
    if changes.buffer_after_minutes is not None:
        updated = replace(updated, buffer_after_minutes=changes.buffer_after_minutes)
    if changes.required_resource_types is not None:
        updated = replace(
            updated,
            required_resource_types=tuple(changes.required_resource_types),
        )
    if changes.required_tags is not None:
        updated = replace(updated, required_tags=tuple(changes.required_tags))
    if changes.is_active is not None:
        updated = replace(updated, is_active=changes.is_active)
    if changes.description is not None:
        updated = replace(updated, description=changes.description)
    return updated
