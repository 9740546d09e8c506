from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from booking_core.domain.errors import (
    EntityNotFoundError,
    HoldNotActiveError,
    IllegalTransitionError,
    ResourceUnavailableError,
    SchedulingConflictError,
    SchedulingValidationError,
)
from booking_core.domain.models import (
    AllocationRole,
    BookerDetails,
    BookingFilters,
    BookingStatus,
    HoldStatus,
    ResourceType,
)
from booking_core.repository.data_repository import DataRepository
from booking_core.services.booking_service import BookingService
from booking_core.services.directory_service import DirectoryService
from booking_core.services.hold_service import HoldService
from booking_core.utils.clock import FixedClock
from booking_core.utils.config import get_settings


TENANT = "tenant-a"
T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _build_test_settings(tmp_path, filename: str):
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        hold_sweep_enabled=False,
        sqlite_busy_timeout_seconds=10.0,
    )


def _utc(hour: int, minute: int = 0, day: int = 5) -> datetime:
    return datetime(2026, 1, day, hour, minute, tzinfo=timezone.utc)


def _build_services(tmp_path, filename: str):
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    directory = DirectoryService(repository=repository, settings=settings)
    directory.create_resource(TENANT, resource_type=ResourceType.STAFF, name="Alex", resource_id="staff-1")
    directory.create_resource(TENANT, resource_type=ResourceType.STAFF, name="Sam", resource_id="staff-2")
    directory.create_resource(TENANT, resource_type=ResourceType.ROOM, name="Room 1", resource_id="room-1")
    directory.create_service_offering(
        TENANT,
        name="Massage",
        duration_minutes=60,
        service_id="svc-60",
    )
    clock = FixedClock(T0)
    holds = HoldService(repository=repository, settings=settings, clock=clock)
    bookings = BookingService(repository=repository, settings=settings, clock=clock)
    return repository, holds, bookings, clock


def _book(bookings: BookingService, start: datetime, end: datetime, *resource_ids: str, **kwargs):
    return bookings.create_booking(
        TENANT,
        start_at=start,
        end_at=end,
        resource_ids=list(resource_ids or ("staff-1",)),
        **kwargs,
    )


def _assert_no_double_booking(repository: DataRepository, resource_ids) -> None:
    with repository.connection() as conn:
        for resource_id in resource_ids:
            rows = conn.execute(
                """
                SELECT a.booking_id, a.start_at, a.end_at FROM Allocations AS a
                INNER JOIN Bookings AS b ON b.id = a.booking_id
                WHERE a.tenant_id = ? AND a.resource_id = ? AND b.status IN ('CONFIRMED', 'HOLD')
                ORDER BY a.start_at ASC;
                """,
                (TENANT, resource_id),
            ).fetchall()
            for first, second in itertools.combinations(rows, 2):
                if first["booking_id"] == second["booking_id"]:
                    continue
                # Stored timestamps are fixed-width UTC text, so string order is time order.
                assert not (first["start_at"] < second["end_at"] and first["end_at"] > second["start_at"])


def test_booking_from_hold_confirms_hold_in_same_commit(tmp_path):
    repository, holds, bookings, _ = _build_services(tmp_path, "from_hold.db")
    hold = holds.create_hold(
        TENANT,
        ["staff-1", "room-1"],
        _utc(9),
        _utc(10),
        service_offering_id="svc-60",
        booker=BookerDetails(name="Dana", email="dana@example.com"),
    )

    booking = bookings.create_booking(TENANT, hold_id=hold.hold_id)

    assert booking.status is BookingStatus.CONFIRMED
    assert booking.hold_id == hold.hold_id
    assert (booking.start_at, booking.end_at) == (_utc(9), _utc(10))
    assert booking.service_offering_id == "svc-60"
    assert booking.booker.name == "Dana"
    assert booking.resource_ids == ("staff-1", "room-1")
    assert {allocation.role for allocation in booking.allocations} == {AllocationRole.PRIMARY}

    stored_hold = holds.get_hold(TENANT, hold.hold_id)
    assert stored_hold.status is HoldStatus.CONFIRMED
    assert stored_hold.confirmed_booking_id == booking.booking_id
    assert repository.count_outbox_events(TENANT, "booking.created") == 1


def test_booking_from_expired_hold_conflicts_and_writes_nothing(tmp_path):
    repository, holds, bookings, clock = _build_services(tmp_path, "expired_hold.db")
    hold = holds.create_hold(TENANT, ["staff-1"], _utc(9), _utc(10), ttl_seconds=600)
    clock.advance(seconds=601)

    with pytest.raises(HoldNotActiveError, match="Hold no longer active"):
        bookings.create_booking(TENANT, hold_id=hold.hold_id)

    assert bookings.list_bookings(TENANT).total == 0
    assert repository.count_outbox_events(TENANT) == 0


def test_booking_from_consumed_hold_conflicts(tmp_path):
    _, holds, bookings, _ = _build_services(tmp_path, "consumed_hold.db")
    hold = holds.create_hold(TENANT, ["staff-1"], _utc(9), _utc(10))
    bookings.create_booking(TENANT, hold_id=hold.hold_id)

    with pytest.raises(HoldNotActiveError):
        bookings.create_booking(TENANT, hold_id=hold.hold_id)


def test_unknown_hold_is_not_found(tmp_path):
    _, _, bookings, _ = _build_services(tmp_path, "unknown_hold.db")

    with pytest.raises(EntityNotFoundError):
        bookings.create_booking(TENANT, hold_id="missing")


def test_direct_booking_validates_inputs(tmp_path):
    _, _, bookings, _ = _build_services(tmp_path, "direct_validation.db")

    with pytest.raises(SchedulingValidationError):
        bookings.create_booking(TENANT, start_at=_utc(10), end_at=_utc(9), resource_ids=["staff-1"])
    with pytest.raises(SchedulingValidationError):
        bookings.create_booking(TENANT, start_at=_utc(9), end_at=_utc(10), resource_ids=[])
    with pytest.raises(SchedulingValidationError):
        bookings.create_booking(TENANT, resource_ids=["staff-1"])
    with pytest.raises(EntityNotFoundError):
        bookings.create_booking(TENANT, start_at=_utc(9), end_at=_utc(10), resource_ids=["ghost"])


def test_overlapping_direct_booking_is_rejected(tmp_path):
    repository, _, bookings, _ = _build_services(tmp_path, "overlap.db")
    _book(bookings, _utc(9), _utc(10), "staff-1", "room-1")

    with pytest.raises(ResourceUnavailableError, match="room-1 is no longer available"):
        _book(bookings, _utc(9, 30), _utc(10, 30), "staff-2", "room-1")

    adjacent = _book(bookings, _utc(10), _utc(11), "staff-1")
    assert adjacent.status is BookingStatus.CONFIRMED
    assert bookings.list_bookings(TENANT).total == 2
    _assert_no_double_booking(repository, ["staff-1", "staff-2", "room-1"])


def test_concurrent_bookings_for_same_slot_have_one_winner(tmp_path):
    repository, _, bookings, _ = _build_services(tmp_path, "race.db")
    barrier = threading.Barrier(2)
    outcomes: list[object] = []
    lock = threading.Lock()

    def attempt() -> None:
        barrier.wait()
        try:
            result: object = _book(bookings, _utc(9), _utc(10), "staff-1")
        except SchedulingConflictError as exc:
            result = exc
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    confirmed = [item for item in outcomes if not isinstance(item, Exception)]
    conflicts = [item for item in outcomes if isinstance(item, ResourceUnavailableError)]
    assert len(confirmed) == 1
    assert len(conflicts) == 1
    assert confirmed[0].status is BookingStatus.CONFIRMED
    _assert_no_double_booking(repository, ["staff-1"])


def test_reschedule_moves_all_allocations(tmp_path):
    repository, _, bookings, _ = _build_services(tmp_path, "reschedule.db")
    booking = _book(bookings, _utc(9), _utc(10), "staff-1", "room-1")

    moved = bookings.reschedule_booking(TENANT, booking.booking_id, _utc(9, 30), _utc(10, 30))

    assert (moved.start_at, moved.end_at) == (_utc(9, 30), _utc(10, 30))
    assert moved.resource_ids == ("staff-1", "room-1")
    assert all(
        (allocation.start_at, allocation.end_at) == (_utc(9, 30), _utc(10, 30))
        for allocation in moved.allocations
    )
    events = repository.list_outbox_events(TENANT, "booking.rescheduled")
    assert len(events) == 1
    assert events[0]["payload"]["previous_start_at"] == _utc(9).isoformat()


def test_failed_reschedule_leaves_booking_untouched(tmp_path):
    repository, _, bookings, _ = _build_services(tmp_path, "reschedule_conflict.db")
    target = _book(bookings, _utc(9), _utc(10), "staff-1", "room-1")
    _book(bookings, _utc(11), _utc(12), "room-1")

    with pytest.raises(ResourceUnavailableError, match="for new time"):
        bookings.reschedule_booking(TENANT, target.booking_id, _utc(11, 30), _utc(12, 30))

    reloaded = bookings.get_booking(TENANT, target.booking_id)
    assert (reloaded.start_at, reloaded.end_at) == (_utc(9), _utc(10))
    assert [item.allocation_id for item in reloaded.allocations] == [
        item.allocation_id for item in target.allocations
    ]
    assert all(
        (item.start_at, item.end_at) == (_utc(9), _utc(10)) for item in reloaded.allocations
    )
    assert repository.count_outbox_events(TENANT, "booking.rescheduled") == 0


def test_reschedule_only_while_reschedulable(tmp_path):
    _, _, bookings, _ = _build_services(tmp_path, "reschedule_status.db")
    booking = _book(bookings, _utc(9), _utc(10))
    bookings.cancel_booking(TENANT, booking.booking_id)

    with pytest.raises(SchedulingConflictError, match="Cannot reschedule"):
        bookings.reschedule_booking(TENANT, booking.booking_id, _utc(11), _utc(12))
    with pytest.raises(SchedulingValidationError):
        bookings.reschedule_booking(TENANT, booking.booking_id, _utc(12), _utc(11))


def test_cancel_is_idempotent_and_emits_one_event(tmp_path):
    repository, _, bookings, clock = _build_services(tmp_path, "cancel.db")
    booking = _book(bookings, _utc(9), _utc(10))

    first = bookings.cancel_booking(TENANT, booking.booking_id, reason="client request")
    clock.advance(minutes=5)
    second = bookings.cancel_booking(TENANT, booking.booking_id, reason="again")

    assert first.status is BookingStatus.CANCELLED
    assert first.cancelled_reason == "client request"
    assert first.cancelled_at == T0
    assert second == first
    assert repository.count_outbox_events(TENANT, "booking.cancelled") == 1


def test_lifecycle_moves_follow_transition_table(tmp_path):
    _, _, bookings, _ = _build_services(tmp_path, "lifecycle.db")
    completed = _book(bookings, _utc(9), _utc(10))
    no_show = _book(bookings, _utc(11), _utc(12))

    assert bookings.complete_booking(TENANT, completed.booking_id).status is BookingStatus.COMPLETED
    assert bookings.mark_no_show(TENANT, no_show.booking_id).status is BookingStatus.NO_SHOW

    with pytest.raises(IllegalTransitionError, match="COMPLETED -> CANCELLED"):
        bookings.cancel_booking(TENANT, completed.booking_id)
    with pytest.raises(IllegalTransitionError, match="CONFIRMED -> CONFIRMED"):
        bookings.confirm_booking(TENANT, _book(bookings, _utc(13), _utc(14)).booking_id)


def test_completed_booking_no_longer_blocks_the_resource(tmp_path):
    _, _, bookings, _ = _build_services(tmp_path, "completed_frees.db")
    booking = _book(bookings, _utc(9), _utc(10))
    bookings.complete_booking(TENANT, booking.booking_id)

    assert not bookings.has_conflict(TENANT, "staff-1", _utc(9), _utc(10))


def test_has_conflict_can_exclude_a_booking(tmp_path):
    _, _, bookings, _ = _build_services(tmp_path, "exclude.db")
    booking = _book(bookings, _utc(9), _utc(10))

    assert bookings.has_conflict(TENANT, "staff-1", _utc(9, 30), _utc(9, 45))
    assert not bookings.has_conflict(
        TENANT, "staff-1", _utc(9, 30), _utc(9, 45), exclude_booking_id=booking.booking_id
    )
    assert not bookings.has_conflict(TENANT, "staff-1", _utc(10), _utc(11))
    assert not bookings.has_conflict("tenant-b", "staff-1", _utc(9), _utc(10))


def test_idempotency_key_returns_original_booking(tmp_path):
    repository, _, bookings, _ = _build_services(tmp_path, "idempotent.db")

    first = _book(bookings, _utc(9), _utc(10), idempotency_key="abc")
    second = _book(bookings, _utc(9), _utc(10), idempotency_key="abc")

    assert second.booking_id == first.booking_id
    assert bookings.list_bookings(TENANT).total == 1
    assert repository.count_outbox_events(TENANT, "booking.created") == 1


def test_reference_numbers_use_prefix_and_date(tmp_path):
    _, _, bookings, _ = _build_services(tmp_path, "reference.db")

    booking = _book(bookings, _utc(9), _utc(10))

    prefix, day, suffix = booking.reference_number.split("-")
    assert prefix == "BK"
    assert day == "20260101"
    assert len(suffix) == 6


def test_list_bookings_filters_and_paginates(tmp_path):
    _, _, bookings, _ = _build_services(tmp_path, "listing.db")
    dana = _book(bookings, _utc(9), _utc(10), "staff-1", booker=BookerDetails(name="Dana Scully"))
    _book(
        bookings,
        _utc(9),
        _utc(10),
        "staff-2",
        service_offering_id="svc-60",
        booker=BookerDetails(name="Fox", party_id="party-7"),
    )
    cancelled = _book(bookings, _utc(11), _utc(12, day=6), "room-1")
    bookings.cancel_booking(TENANT, cancelled.booking_id)

    def ids(**filters) -> list[str]:
        return [item.booking_id for item in bookings.list_bookings(TENANT, BookingFilters(**filters)).items]

    assert ids(q="scully") == [dana.booking_id]
    assert ids(q=dana.reference_number) == [dana.booking_id]
    assert len(ids(status=BookingStatus.CONFIRMED)) == 2
    assert ids(status=BookingStatus.CANCELLED) == [cancelled.booking_id]
    assert len(ids(service_offering_id="svc-60")) == 1
    assert len(ids(booked_by_party_id="party-7")) == 1
    assert ids(resource_id="room-1") == [cancelled.booking_id]
    assert ids(from_date=_utc(10)) == [cancelled.booking_id]
    assert len(ids(to_date=_utc(10))) == 2

    first_page = bookings.list_bookings(TENANT, page=1, page_size=2)
    second_page = bookings.list_bookings(TENANT, page=2, page_size=2)
    assert first_page.total == 3
    assert len(first_page.items) == 2
    assert len(second_page.items) == 1
    assert [item.start_at for item in first_page.items + second_page.items] == sorted(
        item.start_at for item in first_page.items + second_page.items
    )
    assert bookings.list_bookings(TENANT, page_size=10_000).page_size == 100
    with pytest.raises(SchedulingValidationError):
        bookings.list_bookings(TENANT, page=0)


def test_bookings_are_tenant_scoped(tmp_path):
    _, _, bookings, _ = _build_services(tmp_path, "tenancy.db")
    booking = _book(bookings, _utc(9), _utc(10))

    with pytest.raises(EntityNotFoundError):
        bookings.get_booking("tenant-b", booking.booking_id)
    assert bookings.list_bookings("tenant-b").total == 0
