from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest

from booking_core.domain.errors import EntityNotFoundError, SchedulingValidationError
from booking_core.domain.models import (
    BlackoutInterval,
    ResourceChanges,
    ResourceType,
    WeeklySlot,
)
from booking_core.repository.data_repository import DataRepository
from booking_core.services.booking_service import BookingService
from booking_core.services.directory_service import DirectoryService
from booking_core.services.hold_service import HoldService
from booking_core.services.slot_service import SlotGenerationService
from booking_core.utils.clock import FixedClock
from booking_core.utils.config import get_settings


TENANT = "tenant-a"
MONDAY = datetime(2026, 1, 5, tzinfo=timezone.utc)


def _build_test_settings(tmp_path, filename: str, **overrides):
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        hold_sweep_enabled=False,
        **overrides,
    )


def _utc(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 1, day, hour, minute, tzinfo=timezone.utc)


class _Fixture:
    def __init__(self, tmp_path, filename: str, **overrides) -> None:
        self.settings = _build_test_settings(tmp_path, filename, **overrides)
        self.repository = DataRepository(self.settings)
        self.repository.initialize_database()
        self.clock = FixedClock(datetime(2026, 1, 1, tzinfo=timezone.utc))
        self.directory = DirectoryService(repository=self.repository, settings=self.settings)
        self.slots = SlotGenerationService(
            repository=self.repository,
            settings=self.settings,
            clock=self.clock,
        )
        self.bookings = BookingService(
            repository=self.repository,
            settings=self.settings,
            clock=self.clock,
        )
        self.holds = HoldService(
            repository=self.repository,
            settings=self.settings,
            clock=self.clock,
        )

    def add_staff(
        self,
        resource_id: str,
        weekly_slots: tuple[WeeklySlot, ...],
        *,
        tags: tuple[str, ...] = ("massage",),
        blackouts: tuple[BlackoutInterval, ...] = (),
        timezone_name: str = "UTC",
        effective_from: datetime | None = None,
    ) -> None:
        self.directory.create_resource(
            TENANT,
            resource_type=ResourceType.STAFF,
            name=resource_id.title(),
            tags=tags,
            resource_id=resource_id,
        )
        self.directory.set_availability_rule(
            TENANT,
            resource_id,
            timezone=timezone_name,
            weekly_slots=weekly_slots,
            blackouts=blackouts,
            effective_from=effective_from,
        )

    def add_service(self, service_id: str = "svc-60", **fields) -> None:
        values = {
            "name": "Massage",
            "duration_minutes": 60,
            "required_resource_types": (ResourceType.STAFF,),
            "required_tags": ("massage",),
        }
        values.update(fields)
        self.directory.create_service_offering(TENANT, service_id=service_id, **values)

    def monday_slots(self, service_id: str = "svc-60", **kwargs):
        return self.slots.generate_slots(
            TENANT,
            service_id,
            from_at=MONDAY,
            to_at=MONDAY + timedelta(hours=23, minutes=59),
            **kwargs,
        )


def _starts(result) -> list[datetime]:
    return [slot.start_at for slot in result.time_slots]


def test_monday_morning_window_yields_two_hourly_slots(tmp_path):
    fx = _Fixture(tmp_path, "two_slots.db")
    fx.add_staff("staff-1", (WeeklySlot(1, "09:00", "11:00"),))
    fx.add_service()

    result = fx.monday_slots()

    assert result.available_days == [date(2026, 1, 5)]
    assert result.selected_day == date(2026, 1, 5)
    assert [(slot.start_at, slot.end_at) for slot in result.time_slots] == [
        (_utc(5, 9), _utc(5, 10)),
        (_utc(5, 10), _utc(5, 11)),
    ]
    assert all(slot.staff_id == "staff-1" for slot in result.time_slots)
    assert all(slot.staff_name == "Staff-1" for slot in result.time_slots)


def test_blackout_interval_is_never_offered(tmp_path):
    fx = _Fixture(tmp_path, "blackout.db")
    fx.add_staff(
        "staff-1",
        (WeeklySlot(1, "09:00", "17:00"),),
        blackouts=(BlackoutInterval(_utc(5, 12), _utc(5, 13), "lunch"),),
    )
    fx.add_service()

    result = fx.monday_slots()

    assert _starts(result) == [_utc(5, hour) for hour in (9, 10, 11, 13, 14, 15, 16)]
    for slot in result.time_slots:
        assert not (slot.start_at < _utc(5, 13) and slot.end_at > _utc(5, 12))


def test_buffers_extend_duration_and_short_services_step_finer(tmp_path):
    fx = _Fixture(tmp_path, "buffers.db")
    fx.add_staff("staff-1", (WeeklySlot(1, "09:00", "11:00"),))
    fx.add_service(duration_minutes=30, buffer_after_minutes=15)

    result = fx.monday_slots()

    assert [(slot.start_at, slot.end_at) for slot in result.time_slots] == [
        (_utc(5, 9), _utc(5, 9, 45)),
        (_utc(5, 9, 30), _utc(5, 10, 15)),
        (_utc(5, 10), _utc(5, 10, 45)),
    ]


def test_slots_starting_now_or_earlier_are_skipped(tmp_path):
    fx = _Fixture(tmp_path, "past.db")
    fx.add_staff("staff-1", (WeeklySlot(1, "09:00", "11:00"),))
    fx.add_service()
    fx.clock.set(_utc(5, 9, 30))

    assert _starts(fx.monday_slots()) == [_utc(5, 10)]


def test_range_must_be_ordered_and_bounded(tmp_path):
    fx = _Fixture(tmp_path, "range.db")
    fx.add_staff("staff-1", (WeeklySlot(1, "09:00", "11:00"),))
    fx.add_service()

    with pytest.raises(SchedulingValidationError, match="Invalid availability range"):
        fx.slots.generate_slots(TENANT, "svc-60", from_at=MONDAY, to_at=MONDAY)
    with pytest.raises(SchedulingValidationError, match="too large"):
        fx.slots.generate_slots(
            TENANT,
            "svc-60",
            from_at=MONDAY,
            to_at=MONDAY + timedelta(days=46),
        )


def test_global_cap_stops_generation(tmp_path):
    fx = _Fixture(tmp_path, "cap.db", availability_max_slots=3)
    weekdays = tuple(WeeklySlot(day, "09:00", "17:00") for day in range(1, 6))
    fx.add_staff("staff-1", weekdays)
    fx.add_staff("staff-2", weekdays)
    fx.add_service()

    result = fx.slots.generate_slots(
        TENANT,
        "svc-60",
        from_at=MONDAY,
        to_at=MONDAY + timedelta(days=5),
    )

    assert result.available_days == [date(2026, 1, 5)]
    assert _starts(result) == [_utc(5, 9), _utc(5, 10), _utc(5, 11)]
    assert {slot.resource_id for slot in result.time_slots} == {"staff-1"}


def test_day_filter_selects_requested_day(tmp_path):
    fx = _Fixture(tmp_path, "day_filter.db")
    fx.add_staff(
        "staff-1",
        (WeeklySlot(1, "09:00", "10:00"), WeeklySlot(2, "14:00", "15:00")),
    )
    fx.add_service()

    window = {"from_at": MONDAY, "to_at": MONDAY + timedelta(days=2)}
    default_result = fx.slots.generate_slots(TENANT, "svc-60", **window)
    tuesday_result = fx.slots.generate_slots(TENANT, "svc-60", day=date(2026, 1, 6), **window)

    assert default_result.available_days == [date(2026, 1, 5), date(2026, 1, 6)]
    assert _starts(default_result) == [_utc(5, 9)]
    assert _starts(tuesday_result) == [_utc(6, 14)]


def test_slots_are_merged_across_resources_in_time_order(tmp_path):
    fx = _Fixture(tmp_path, "merge.db")
    fx.add_staff("staff-1", (WeeklySlot(1, "10:00", "11:00"),))
    fx.add_staff("staff-2", (WeeklySlot(1, "09:00", "11:00"),))
    fx.add_service()

    result = fx.monday_slots()

    assert [(slot.start_at, slot.resource_id) for slot in result.time_slots] == [
        (_utc(5, 9), "staff-2"),
        (_utc(5, 10), "staff-1"),
        (_utc(5, 10), "staff-2"),
    ]


def test_confirmed_booking_and_active_hold_remove_slots(tmp_path):
    fx = _Fixture(tmp_path, "exclusions.db")
    fx.add_staff("staff-1", (WeeklySlot(1, "09:00", "12:00"),))
    fx.add_service()

    fx.bookings.create_booking(
        TENANT,
        start_at=_utc(5, 9),
        end_at=_utc(5, 10),
        resource_ids=["staff-1"],
    )
    fx.holds.create_hold(TENANT, ["staff-1"], _utc(5, 10), _utc(5, 11), ttl_seconds=60)

    assert _starts(fx.monday_slots()) == [_utc(5, 11)]

    # The hold lapses by TTL alone; no sweep needed.
    fx.clock.advance(seconds=61)
    assert _starts(fx.monday_slots()) == [_utc(5, 10), _utc(5, 11)]


def test_cancelled_booking_frees_its_slot(tmp_path):
    fx = _Fixture(tmp_path, "cancelled.db")
    fx.add_staff("staff-1", (WeeklySlot(1, "09:00", "10:00"),))
    fx.add_service()
    booking = fx.bookings.create_booking(
        TENANT,
        start_at=_utc(5, 9),
        end_at=_utc(5, 10),
        resource_ids=["staff-1"],
    )
    assert fx.monday_slots().time_slots == []

    fx.bookings.cancel_booking(TENANT, booking.booking_id)

    assert _starts(fx.monday_slots()) == [_utc(5, 9)]


def test_unknown_or_inactive_service_is_not_found(tmp_path):
    fx = _Fixture(tmp_path, "missing_service.db")
    fx.add_staff("staff-1", (WeeklySlot(1, "09:00", "11:00"),))
    fx.add_service(service_id="svc-off", is_active=False)

    with pytest.raises(EntityNotFoundError, match="Service not found"):
        fx.monday_slots("svc-missing")
    with pytest.raises(EntityNotFoundError, match="Service not found"):
        fx.monday_slots("svc-off")


def test_explicit_staff_limits_candidates(tmp_path):
    fx = _Fixture(tmp_path, "explicit_staff.db")
    fx.add_staff("staff-1", (WeeklySlot(1, "09:00", "10:00"),))
    fx.add_staff("staff-2", (WeeklySlot(1, "11:00", "12:00"),))
    fx.add_service()

    result = fx.monday_slots(staff_id="staff-2")
    assert _starts(result) == [_utc(5, 11)]

    fx.directory.update_resource(TENANT, "staff-2", ResourceChanges(is_active=False))
    with pytest.raises(EntityNotFoundError):
        fx.monday_slots(staff_id="staff-2")


def test_candidate_resolution_falls_back_to_staff(tmp_path):
    fx = _Fixture(tmp_path, "fallback.db")
    fx.add_staff("staff-1", (WeeklySlot(1, "09:00", "10:00"),), tags=())
    fx.add_service(
        service_id="svc-room",
        required_resource_types=(ResourceType.ROOM,),
        required_tags=("spa",),
    )
    fx.add_service(service_id="svc-facial", required_tags=("facial",))

    room_service = fx.directory.get_service_offering(TENANT, "svc-room")
    facial_service = fx.directory.get_service_offering(TENANT, "svc-facial")

    fallback = fx.slots.resolve_candidate_resources(TENANT, room_service)
    assert [resource.resource_id for resource in fallback] == ["staff-1"]
    assert fx.slots.resolve_candidate_resources(TENANT, facial_service) == []
    assert _starts(fx.monday_slots("svc-room")) == [_utc(5, 9)]


def test_required_tags_must_all_be_present(tmp_path):
    fx = _Fixture(tmp_path, "tags.db")
    fx.add_staff("staff-1", (WeeklySlot(1, "09:00", "10:00"),), tags=("massage",))
    fx.add_staff("staff-2", (WeeklySlot(1, "09:00", "10:00"),), tags=("massage", "facial"))
    fx.add_service(required_tags=("massage", "facial"))

    result = fx.monday_slots()

    assert [slot.resource_id for slot in result.time_slots] == ["staff-2"]


def test_select_resource_skips_booked_and_held_candidates(tmp_path):
    fx = _Fixture(tmp_path, "select.db")
    for resource_id in ("staff-1", "staff-2", "staff-3"):
        fx.add_staff(resource_id, (WeeklySlot(1, "09:00", "12:00"),))
    fx.add_service()
    service = fx.directory.get_service_offering(TENANT, "svc-60")

    fx.bookings.create_booking(
        TENANT,
        start_at=_utc(5, 9),
        end_at=_utc(5, 10),
        resource_ids=["staff-1"],
    )
    fx.holds.create_hold(TENANT, ["staff-2"], _utc(5, 9, 30), _utc(5, 10, 30))

    chosen = fx.slots.select_resource_for_slot(TENANT, service, _utc(5, 9), _utc(5, 10))
    assert chosen is not None and chosen.resource_id == "staff-3"

    explicit = fx.slots.select_resource_for_slot(
        TENANT, service, _utc(5, 9), _utc(5, 10), staff_id="staff-1"
    )
    assert explicit is not None and explicit.resource_id == "staff-1"


def test_rule_effective_range_is_honoured(tmp_path):
    fx = _Fixture(tmp_path, "effective.db")
    fx.add_staff(
        "staff-1",
        (WeeklySlot(1, "09:00", "11:00"),),
        effective_from=_utc(12, 0),
    )
    fx.add_service()

    assert fx.monday_slots().time_slots == []
    later = fx.slots.generate_slots(
        TENANT,
        "svc-60",
        from_at=_utc(12, 0),
        to_at=_utc(12, 23, 59),
    )
    assert _starts(later) == [_utc(12, 9), _utc(12, 10)]


def test_weekly_windows_use_utc_days_unless_rule_timezone_enabled(tmp_path):
    try:
        ZoneInfo("America/New_York")
    except ZoneInfoNotFoundError:
        pytest.skip("IANA timezone database not available")

    utc_fx = _Fixture(tmp_path, "tz_utc.db")
    utc_fx.add_staff("staff-1", (WeeklySlot(1, "09:00", "11:00"),), timezone_name="America/New_York")
    utc_fx.add_service()
    assert _starts(utc_fx.monday_slots()) == [_utc(5, 9), _utc(5, 10)]

    local_fx = _Fixture(tmp_path, "tz_local.db", availability_respect_rule_timezone=True)
    local_fx.add_staff("staff-1", (WeeklySlot(1, "09:00", "11:00"),), timezone_name="America/New_York")
    local_fx.add_service()
    assert _starts(local_fx.monday_slots()) == [_utc(5, 14), _utc(5, 15)]
