"""Domain-level rules: lifecycle transitions, intervals and slot sizing."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Optional

from booking_core.domain.errors import IllegalTransitionError, SchedulingValidationError
from booking_core.domain.models import BookingStatus, HoldStatus, ServiceOffering
from booking_core.utils.clock import to_utc


BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.DRAFT: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.HOLD: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.CANCELLED, BookingStatus.NO_SHOW, BookingStatus.COMPLETED}
    ),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
}

HOLD_TRANSITIONS: dict[HoldStatus, frozenset[HoldStatus]] = {
    HoldStatus.ACTIVE: frozenset(
        {HoldStatus.CONFIRMED, HoldStatus.EXPIRED, HoldStatus.CANCELLED}
    ),
    HoldStatus.CONFIRMED: frozenset(),
    HoldStatus.EXPIRED: frozenset(),
    HoldStatus.CANCELLED: frozenset(),
}

TERMINAL_BOOKING_STATUSES = frozenset(
    status for status, targets in BOOKING_TRANSITIONS.items() if not targets
)
RESCHEDULABLE_STATUSES = frozenset({BookingStatus.DRAFT, BookingStatus.CONFIRMED})

# Only allocations of bookings in these states occupy a resource.
BLOCKING_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.HOLD)

_TIME_PATTERN = re.compile(r"^(\d{2}):(\d{2})$")


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in BOOKING_TRANSITIONS[current]


def assert_valid_transition(current: BookingStatus, target: BookingStatus) -> None:
    if not can_transition(current, target):
        raise IllegalTransitionError(current.value, target.value)


def assert_valid_hold_transition(current: HoldStatus, target: HoldStatus) -> None:
    if target not in HOLD_TRANSITIONS[current]:
        raise IllegalTransitionError(current.value, target.value, entity="hold")


def intervals_overlap(
    first_start: datetime,
    first_end: datetime,
    second_start: datetime,
    second_end: datetime,
) -> bool:
    """Half-open overlap: [a, b) and [c, d) overlap iff a < d and b > c."""
    return first_start < second_end and first_end > second_start


def validate_time_range(start_at: Optional[datetime], end_at: Optional[datetime]) -> None:
    if start_at is None or end_at is None:
        raise SchedulingValidationError("start_at and end_at are required")
    # Naive values are UTC; compare both sides normalized.
    if to_utc(start_at) >= to_utc(end_at):
        raise SchedulingValidationError("start_at must be before end_at")


def parse_clock_time(value: str) -> Optional[time]:
    """Parse "HH:MM"; returns None when malformed or out of range."""
    match = _TIME_PATTERN.match(value or "")
    if match is None:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if not 0 <= hours <= 23 or not 0 <= minutes <= 59:
        return None
    return time(hour=hours, minute=minutes)


def to_rule_weekday(moment_weekday: int) -> int:
    """Map Python's Monday=0 weekday onto the rule convention Sunday=0."""
    return (moment_weekday + 1) % 7


@dataclass(frozen=True)
class AvailabilityConfig:
    max_range_days: int
    max_slots: int
    min_step_minutes: int
    max_step_minutes: int


def validate_availability_config(config: AvailabilityConfig) -> None:
    if config.max_range_days <= 0:
        raise ValueError("max_range_days must be > 0")
    if config.max_slots <= 0:
        raise ValueError("max_slots must be > 0")
    if config.min_step_minutes <= 0:
        raise ValueError("min_step_minutes must be > 0")
    if config.max_step_minutes < config.min_step_minutes:
        raise ValueError("max_step_minutes must be >= min_step_minutes")


def validate_availability_range(
    from_at: datetime,
    to_at: datetime,
    config: AvailabilityConfig,
) -> None:
    if from_at >= to_at:
        raise SchedulingValidationError("Invalid availability range")
    day_span = math.ceil((to_at - from_at) / timedelta(days=1))
    if day_span > config.max_range_days:
        raise SchedulingValidationError(
            f"Availability range too large. Maximum {config.max_range_days} days."
        )


def slot_duration_minutes(service: ServiceOffering) -> int:
    return max(1, service.total_slot_minutes)


def slot_step_minutes(service: ServiceOffering, config: AvailabilityConfig) -> int:
    return max(config.min_step_minutes, min(config.max_step_minutes, service.duration_minutes))
