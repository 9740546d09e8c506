"""Domain error taxonomy shared by the scheduling services."""

from __future__ import annotations


class SchedulingError(Exception):
    """Base exception for booking, hold and availability failures."""


class SchedulingValidationError(SchedulingError):
    """Raised when request inputs are malformed or out of bounds."""


class EntityNotFoundError(SchedulingError):
    """Raised when a booking, hold, resource or service id is unknown."""


class SchedulingConflictError(SchedulingError):
    """Raised when the request conflicts with current persisted state."""


class IllegalTransitionError(SchedulingConflictError):
    """Raised when a lifecycle transition is not in the transition table."""

    def __init__(self, current: str, target: str, entity: str = "booking") -> None:
        self.current = current
        self.target = target
        self.entity = entity
        super().__init__(f"Invalid {entity} status transition: {current} -> {target}")


class HoldNotActiveError(SchedulingConflictError):
    """Raised when a hold is expired, cancelled or already confirmed."""


class ResourceUnavailableError(SchedulingConflictError):
    """Raised when an allocation overlaps an existing one at commit time.

    Clients should re-query availability and pick another slot; replaying the
    identical request will conflict again.
    """

    def __init__(self, resource_id: str, message: str | None = None) -> None:
        self.resource_id = resource_id
        super().__init__(message or f"Resource {resource_id} is no longer available.")
