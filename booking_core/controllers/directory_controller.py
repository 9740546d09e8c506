"""HTTP controller layer for resources, service offerings and availability rules."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator

from booking_core.controllers.dependencies import (
    get_directory_service,
    get_tenant_id,
    to_http_exception,
)
from booking_core.domain.errors import SchedulingError
from booking_core.domain.models import (
    AvailabilityRule,
    BlackoutInterval,
    Resource,
    ResourceChanges,
    ResourceType,
    ServiceOffering,
    ServiceOfferingChanges,
    WeeklySlot,
)
from booking_core.repository.data_repository import PersistenceError
from booking_core.services.directory_service import DirectoryService
from booking_core.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["directory"])

_CLOCK_PATTERN = r"^\d{2}:\d{2}$"


def _clean_tags(value: Optional[list[str]]) -> Optional[list[str]]:
    if value is None:
        return None
    cleaned = [tag.strip() for tag in value]
    if any(not tag for tag in cleaned):
        raise ValueError("tags must be non-empty strings")
    return list(dict.fromkeys(cleaned))


class ResourceCreateRequest(BaseModel):
    resource_id: Optional[str] = None
    resource_type: ResourceType
    name: str = Field(min_length=1, max_length=200)
    tags: list[str] = Field(default_factory=list)
    is_active: bool = True
    description: Optional[str] = None
    location: Optional[str] = None
    capacity: Optional[int] = Field(default=None, gt=0)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, value: list[str]) -> list[str]:
        return _clean_tags(value) or []


class ResourceUpdateRequest(BaseModel):
    resource_type: Optional[ResourceType] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    tags: Optional[list[str]] = None
    is_active: Optional[bool] = None
    description: Optional[str] = None
    location: Optional[str] = None
    capacity: Optional[int] = Field(default=None, gt=0)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        return _clean_tags(value)

    def to_changes(self) -> ResourceChanges:
        return ResourceChanges(
            resource_type=self.resource_type,
            name=self.name,
            tags=tuple(self.tags) if self.tags is not None else None,
            is_active=self.is_active,
            description=self.description,
            location=self.location,
            capacity=self.capacity,
        )


class ResourceResponse(BaseModel):
    resource_id: str
    resource_type: ResourceType
    name: str
    tags: list[str]
    is_active: bool
    description: Optional[str] = None
    location: Optional[str] = None
    capacity: Optional[int] = None

    @classmethod
    def from_domain(cls, resource: Resource) -> "ResourceResponse":
        return cls(
            resource_id=resource.resource_id,
            resource_type=resource.resource_type,
            name=resource.name,
            tags=list(resource.tags),
            is_active=resource.is_active,
            description=resource.description,
            location=resource.location,
            capacity=resource.capacity,
        )


class ServiceCreateRequest(BaseModel):
    service_id: Optional[str] = None
    name: str = Field(min_length=1, max_length=200)
    duration_minutes: int = Field(gt=0)
    buffer_before_minutes: int = Field(default=0, ge=0)
    buffer_after_minutes: int = Field(default=0, ge=0)
    required_resource_types: list[ResourceType] = Field(default_factory=list)
    required_tags: list[str] = Field(default_factory=list)
    is_active: bool = True
    description: Optional[str] = None

    @field_validator("required_tags")
    @classmethod
    def validate_required_tags(cls, value: list[str]) -> list[str]:
        return _clean_tags(value) or []


class ServiceUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    buffer_before_minutes: Optional[int] = Field(default=None, ge=0)
    buffer_after_minutes: Optional[int] = Field(default=None, ge=0)
    required_resource_types: Optional[list[ResourceType]] = None
    required_tags: Optional[list[str]] = None
    is_active: Optional[bool] = None
    description: Optional[str] = None

    def to_changes(self) -> ServiceOfferingChanges:
        return ServiceOfferingChanges(
            name=self.name,
            duration_minutes=self.duration_minutes,
            buffer_before_minutes=self.buffer_before_minutes,
            buffer_after_minutes=self.buffer_after_minutes,
            required_resource_types=(
                tuple(self.required_resource_types)
                if self.required_resource_types is not None
                else None
            ),
            required_tags=tuple(self.required_tags) if self.required_tags is not None else None,
            is_active=self.is_active,
            description=self.description,
        )


class ServiceResponse(BaseModel):
    service_id: str
    name: str
    duration_minutes: int
    buffer_before_minutes: int
    buffer_after_minutes: int
    total_slot_minutes: int
    required_resource_types: list[ResourceType]
    required_tags: list[str]
    is_active: bool
    description: Optional[str] = None

    @classmethod
    def from_domain(cls, service: ServiceOffering) -> "ServiceResponse":
        return cls(
            service_id=service.service_id,
            name=service.name,
            duration_minutes=service.duration_minutes,
            buffer_before_minutes=service.buffer_before_minutes,
            buffer_after_minutes=service.buffer_after_minutes,
            total_slot_minutes=service.total_slot_minutes,
            required_resource_types=list(service.required_resource_types),
            required_tags=list(service.required_tags),
            is_active=service.is_active,
            description=service.description,
        )


class WeeklySlotPayload(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: str = Field(pattern=_CLOCK_PATTERN)
    end_time: str = Field(pattern=_CLOCK_PATTERN)


class BlackoutPayload(BaseModel):
    start_at: datetime
    end_at: datetime
    reason: Optional[str] = None


class AvailabilityRuleRequest(BaseModel):
    timezone: str = Field(default="UTC", min_length=1)
    weekly_slots: list[WeeklySlotPayload] = Field(default_factory=list)
    blackouts: list[BlackoutPayload] = Field(default_factory=list)
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None


class AvailabilityRuleResponse(BaseModel):
    rule_id: str
    resource_id: str
    timezone: str
    weekly_slots: list[WeeklySlotPayload]
    blackouts: list[BlackoutPayload]
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None

    @classmethod
    def from_domain(cls, rule: AvailabilityRule) -> "AvailabilityRuleResponse":
        return cls(
            rule_id=rule.rule_id,
            resource_id=rule.resource_id,
            timezone=rule.timezone,
            weekly_slots=[
                WeeklySlotPayload(
                    day_of_week=slot.day_of_week,
                    start_time=slot.start_time,
                    end_time=slot.end_time,
                )
                for slot in rule.weekly_slots
            ],
            blackouts=[
                BlackoutPayload(
                    start_at=blackout.start_at,
                    end_at=blackout.end_at,
                    reason=blackout.reason,
                )
                for blackout in rule.blackouts
            ],
            effective_from=rule.effective_from,
            effective_to=rule.effective_to,
        )


@router.post(
    "/resources",
    response_model=ResourceResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_resource(
    payload: ResourceCreateRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: DirectoryService = Depends(get_directory_service),
) -> ResourceResponse:
    try:
        resource = service.create_resource(
            tenant_id,
            resource_type=payload.resource_type,
            name=payload.name,
            tags=tuple(payload.tags),
            is_active=payload.is_active,
            description=payload.description,
            location=payload.location,
            capacity=payload.capacity,
            resource_id=payload.resource_id,
        )
        return ResourceResponse.from_domain(resource)
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to create resource") from exc


@router.get(
    "/resources",
    response_model=list[ResourceResponse],
    status_code=status.HTTP_200_OK,
)
def list_resources(
    resource_type: Optional[ResourceType] = Query(default=None),
    is_active: Optional[bool] = Query(default=None),
    tenant_id: str = Depends(get_tenant_id),
    service: DirectoryService = Depends(get_directory_service),
) -> list[ResourceResponse]:
    try:
        resources = service.list_resources(
            tenant_id,
            resource_type=resource_type,
            is_active=is_active,
        )
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to list resources") from exc
    return [ResourceResponse.from_domain(item) for item in resources]


@router.get(
    "/resources/{resource_id}",
    response_model=ResourceResponse,
    status_code=status.HTTP_200_OK,
)
def get_resource(
    resource_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: DirectoryService = Depends(get_directory_service),
) -> ResourceResponse:
    try:
        return ResourceResponse.from_domain(service.get_resource(tenant_id, resource_id))
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to load resource") from exc


@router.patch(
    "/resources/{resource_id}",
    response_model=ResourceResponse,
    status_code=status.HTTP_200_OK,
)
def update_resource(
    resource_id: str,
    payload: ResourceUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: DirectoryService = Depends(get_directory_service),
) -> ResourceResponse:
    try:
        resource = service.update_resource(tenant_id, resource_id, payload.to_changes())
        return ResourceResponse.from_domain(resource)
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to update resource") from exc


@router.put(
    "/resources/{resource_id}/availability-rule",
    response_model=AvailabilityRuleResponse,
    status_code=status.HTTP_200_OK,
)
def set_availability_rule(
    resource_id: str,
    payload: AvailabilityRuleRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: DirectoryService = Depends(get_directory_service),
) -> AvailabilityRuleResponse:
    try:
        rule = service.set_availability_rule(
            tenant_id,
            resource_id,
            timezone=payload.timezone,
            weekly_slots=tuple(
                WeeklySlot(
                    day_of_week=slot.day_of_week,
                    start_time=slot.start_time,
                    end_time=slot.end_time,
                )
                for slot in payload.weekly_slots
            ),
            blackouts=tuple(
                BlackoutInterval(
                    start_at=blackout.start_at,
                    end_at=blackout.end_at,
                    reason=blackout.reason,
                )
                for blackout in payload.blackouts
            ),
            effective_from=payload.effective_from,
            effective_to=payload.effective_to,
        )
        return AvailabilityRuleResponse.from_domain(rule)
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to save availability rule") from exc


@router.get(
    "/resources/{resource_id}/availability-rule",
    response_model=AvailabilityRuleResponse,
    status_code=status.HTTP_200_OK,
)
def get_availability_rule(
    resource_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: DirectoryService = Depends(get_directory_service),
) -> AvailabilityRuleResponse:
    try:
        return AvailabilityRuleResponse.from_domain(
            service.get_availability_rule(tenant_id, resource_id)
        )
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to load availability rule") from exc


@router.post(
    "/services",
    response_model=ServiceResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_service_offering(
    payload: ServiceCreateRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: DirectoryService = Depends(get_directory_service),
) -> ServiceResponse:
    try:
        offering = service.create_service_offering(
            tenant_id,
            name=payload.name,
            duration_minutes=payload.duration_minutes,
            buffer_before_minutes=payload.buffer_before_minutes,
            buffer_after_minutes=payload.buffer_after_minutes,
            required_resource_types=tuple(payload.required_resource_types),
            required_tags=tuple(payload.required_tags),
            is_active=payload.is_active,
            description=payload.description,
            service_id=payload.service_id,
        )
        return ServiceResponse.from_domain(offering)
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to create service offering") from exc


@router.get(
    "/services",
    response_model=list[ServiceResponse],
    status_code=status.HTTP_200_OK,
)
def list_service_offerings(
    is_active: Optional[bool] = Query(default=None),
    tenant_id: str = Depends(get_tenant_id),
    service: DirectoryService = Depends(get_directory_service),
) -> list[ServiceResponse]:
    try:
        offerings = service.list_service_offerings(tenant_id, is_active=is_active)
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to list service offerings") from exc
    return [ServiceResponse.from_domain(item) for item in offerings]


@router.get(
    "/services/{service_id}",
    response_model=ServiceResponse,
    status_code=status.HTTP_200_OK,
)
def get_service_offering(
    service_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: DirectoryService = Depends(get_directory_service),
) -> ServiceResponse:
    try:
        return ServiceResponse.from_domain(service.get_service_offering(tenant_id, service_id))
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to load service offering") from exc


@router.patch(
    "/services/{service_id}",
    response_model=ServiceResponse,
    status_code=status.HTTP_200_OK,
)
def update_service_offering(
    service_id: str,
    payload: ServiceUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: DirectoryService = Depends(get_directory_service),
) -> ServiceResponse:
    try:
        offering = service.update_service_offering(tenant_id, service_id, payload.to_changes())
        return ServiceResponse.from_domain(offering)
    except (SchedulingError, PersistenceError) as exc:
        raise to_http_exception(exc, "Failed to update service offering") from exc
