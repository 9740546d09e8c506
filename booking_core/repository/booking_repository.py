"""Booking and allocation persistence, including the transactional overlap check."""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from booking_core.domain.constraints import BLOCKING_STATUSES, RESCHEDULABLE_STATUSES
from booking_core.domain.errors import (
    HoldNotActiveError,
    SchedulingConflictError,
    EntityNotFoundError,
    ResourceUnavailableError,
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
from booking_core.repository.data_repository import (
    DataRepository,
    from_db_timestamp,
    to_db_timestamp,
)
from booking_core.utils.logger import get_logger


logger = get_logger(__name__)

_BLOCKING_STATUS_VALUES = tuple(status.value for status in BLOCKING_STATUSES)


def allocation_conflict_exists(
    conn: sqlite3.Connection,
    tenant_id: str,
    resource_id: str,
    start_at: datetime,
    end_at: datetime,
    exclude_booking_id: Optional[str] = None,
) -> bool:
    """True when a CONFIRMED/HOLD allocation on the resource overlaps [start, end)."""
    placeholders = ",".join("?" for _ in _BLOCKING_STATUS_VALUES)
    params: list[Any] = [
        tenant_id,
        resource_id,
        to_db_timestamp(end_at),
        to_db_timestamp(start_at),
        *_BLOCKING_STATUS_VALUES,
    ]
    exclusion = ""
    if exclude_booking_id is not None:
        exclusion = "AND a.booking_id <> ?"
        params.append(exclude_booking_id)
    row = conn.execute(
        f"""
        SELECT 1
        FROM Allocations AS a
        INNER JOIN Bookings AS b ON b.id = a.booking_id
        WHERE a.tenant_id = ?
          AND a.resource_id = ?
          AND a.start_at < ?
          AND a.end_at > ?
          AND b.status IN ({placeholders})
          {exclusion}
        LIMIT 1;
        """,
        tuple(params),
    ).fetchone()
    return row is not None


def _insert_allocations(conn: sqlite3.Connection, allocations: Iterable[Allocation]) -> None:
    conn.executemany(
        """
        INSERT INTO Allocations (
            id, tenant_id, booking_id, resource_id, role, start_at, end_at, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?);
        """,
        [
            (
                allocation.allocation_id,
                allocation.tenant_id,
                allocation.booking_id,
                allocation.resource_id,
                allocation.role.value,
                to_db_timestamp(allocation.start_at),
                to_db_timestamp(allocation.end_at),
                to_db_timestamp(allocation.created_at),
            )
            for allocation in allocations
        ],
    )


class BookingRepository:
    """Sole writer of Allocation rows; every write re-checks overlap under lock."""

    def __init__(self, data_repository: DataRepository) -> None:
        self._data = data_repository

    def has_conflict(
        self,
        tenant_id: str,
        resource_id: str,
        start_at: datetime,
        end_at: datetime,
        exclude_booking_id: Optional[str] = None,
    ) -> bool:
        with self._data.connection() as conn:
            return allocation_conflict_exists(
                conn,
                tenant_id,
                resource_id,
                start_at,
                end_at,
                exclude_booking_id,
            )

    def create(
        self,
        booking: Booking,
        allocations: Sequence[Allocation],
        now: datetime,
    ) -> Booking:
        """Insert booking + allocations atomically, confirming its hold if any.

        Raises ResourceUnavailableError when any allocation overlaps, and
        HoldNotActiveError when the source hold stopped being active between
        the caller's read and this commit.
        """
        with self._data.transaction() as conn:
            for allocation in allocations:
                if allocation_conflict_exists(
                    conn,
                    booking.tenant_id,
                    allocation.resource_id,
                    allocation.start_at,
                    allocation.end_at,
                ):
                    logger.warning(
                        "Allocation conflict at commit | tenant_id=%s | resource_id=%s | start_at=%s",
                        booking.tenant_id,
                        allocation.resource_id,
                        allocation.start_at.isoformat(),
                    )
                    raise ResourceUnavailableError(allocation.resource_id)

            if booking.hold_id is not None:
                hold_row = conn.execute(
                    "SELECT status, expires_at FROM Holds WHERE id = ? AND tenant_id = ?;",
                    (booking.hold_id, booking.tenant_id),
                ).fetchone()
                if hold_row is None:
                    raise EntityNotFoundError(f"Hold {booking.hold_id} not found")
                still_active = (
                    hold_row["status"] == HoldStatus.ACTIVE.value
                    and str(hold_row["expires_at"]) >= to_db_timestamp(now)
                )
                if not still_active:
                    raise HoldNotActiveError("Hold no longer active")

            conn.execute(
                """
                INSERT INTO Bookings (
                    id, tenant_id, status, start_at, end_at, reference_number,
                    service_offering_id, hold_id, booked_by_party_id, booked_by_name,
                    booked_by_email, notes, cancelled_at, cancelled_reason,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    booking.booking_id,
                    booking.tenant_id,
                    booking.status.value,
                    to_db_timestamp(booking.start_at),
                    to_db_timestamp(booking.end_at),
                    booking.reference_number,
                    booking.service_offering_id,
                    booking.hold_id,
                    booking.booker.party_id,
                    booking.booker.name,
                    booking.booker.email,
                    booking.booker.notes,
                    to_db_timestamp(booking.cancelled_at),
                    booking.cancelled_reason,
                    to_db_timestamp(booking.created_at),
                    to_db_timestamp(booking.updated_at),
                ),
            )
            _insert_allocations(conn, allocations)

            if booking.hold_id is not None:
                conn.execute(
                    """
                    UPDATE Holds
                    SET status = ?, confirmed_booking_id = ?, updated_at = ?
                    WHERE id = ? AND tenant_id = ? AND status = ?;
                    """,
                    (
                        HoldStatus.CONFIRMED.value,
                        booking.booking_id,
                        to_db_timestamp(now),
                        booking.hold_id,
                        booking.tenant_id,
                        HoldStatus.ACTIVE.value,
                    ),
                )

        created = self.find_by_id(booking.tenant_id, booking.booking_id)
        if created is None:  # pragma: no cover - committed row must be readable
            raise EntityNotFoundError(f"Booking {booking.booking_id} not found after insert")
        return created

    def find_by_id(self, tenant_id: str, booking_id: str) -> Optional[Booking]:
        with self._data.connection() as conn:
            row = conn.execute(
                "SELECT * FROM Bookings WHERE id = ? AND tenant_id = ?;",
                (booking_id, tenant_id),
            ).fetchone()
            if row is None:
                return None
            allocations = self._load_allocations(conn, [booking_id])
        return _row_to_booking(row, allocations.get(booking_id, ()))

    def find_many(
        self,
        tenant_id: str,
        filters: BookingFilters,
        page: int,
        page_size: int,
    ) -> BookingPage:
        clauses = ["b.tenant_id = ?"]
        params: list[Any] = [tenant_id]
        if filters.q:
            clauses.append("(b.booked_by_name LIKE ? OR b.reference_number LIKE ?)")
            pattern = f"%{filters.q}%"
            params.extend([pattern, pattern])
        if filters.status is not None:
            clauses.append("b.status = ?")
            params.append(filters.status.value)
        if filters.service_offering_id:
            clauses.append("b.service_offering_id = ?")
            params.append(filters.service_offering_id)
        if filters.booked_by_party_id:
            clauses.append("b.booked_by_party_id = ?")
            params.append(filters.booked_by_party_id)
        if filters.resource_id:
            clauses.append(
                "EXISTS (SELECT 1 FROM Allocations AS a WHERE a.booking_id = b.id AND a.resource_id = ?)"
            )
            params.append(filters.resource_id)
        if filters.from_date is not None:
            clauses.append("b.start_at >= ?")
            params.append(to_db_timestamp(filters.from_date))
        if filters.to_date is not None:
            clauses.append("b.start_at <= ?")
            params.append(to_db_timestamp(filters.to_date))

        where_sql = " AND ".join(clauses)
        with self._data.connection() as conn:
            total = int(
                conn.execute(
                    f"SELECT COUNT(*) AS count FROM Bookings AS b WHERE {where_sql};",
                    tuple(params),
                ).fetchone()["count"]
            )
            rows = conn.execute(
                f"""
                SELECT b.* FROM Bookings AS b
                WHERE {where_sql}
                ORDER BY b.start_at ASC, b.rowid ASC
                LIMIT ? OFFSET ?;
                """,
                (*params, page_size, (page - 1) * page_size),
            ).fetchall()
            allocations = self._load_allocations(conn, [str(row["id"]) for row in rows])

        return BookingPage(
            items=[_row_to_booking(row, allocations.get(str(row["id"]), ())) for row in rows],
            total=total,
            page=page,
            page_size=page_size,
        )

    def save_status_change(self, booking: Booking, previous_status: BookingStatus) -> Booking:
        """Persist a lifecycle change guarded by the status the caller observed.

        A move into a blocking status re-checks the booking's allocations, so a
        DRAFT cannot be confirmed on top of an occupied interval.
        """
        with self._data.transaction() as conn:
            if booking.status in BLOCKING_STATUSES and previous_status not in BLOCKING_STATUSES:
                for allocation in self._load_allocations(conn, [booking.booking_id]).get(
                    booking.booking_id, ()
                ):
                    if allocation_conflict_exists(
                        conn,
                        booking.tenant_id,
                        allocation.resource_id,
                        allocation.start_at,
                        allocation.end_at,
                        exclude_booking_id=booking.booking_id,
                    ):
                        raise ResourceUnavailableError(allocation.resource_id)
            cursor = conn.execute(
                """
                UPDATE Bookings
                SET status = ?, cancelled_at = ?, cancelled_reason = ?, updated_at = ?
                WHERE id = ? AND tenant_id = ? AND status = ?;
                """,
                (
                    booking.status.value,
                    to_db_timestamp(booking.cancelled_at),
                    booking.cancelled_reason,
                    to_db_timestamp(booking.updated_at),
                    booking.booking_id,
                    booking.tenant_id,
                    previous_status.value,
                ),
            )
            if cursor.rowcount == 0:
                raise SchedulingConflictError(
                    f"Booking {booking.booking_id} was modified concurrently; reload and retry"
                )
        updated = self.find_by_id(booking.tenant_id, booking.booking_id)
        if updated is None:  # pragma: no cover - row was just updated
            raise EntityNotFoundError(f"Booking {booking.booking_id} not found")
        return updated

    def replace_allocations(
        self,
        booking_id: str,
        tenant_id: str,
        allocations: Sequence[Allocation],
        start_at: datetime,
        end_at: datetime,
        updated_at: datetime,
    ) -> Booking:
        """Swap a booking's allocation set and times in one transaction.

        The booking's own rows are excluded from the overlap scan. Any conflict
        rolls back the whole swap, leaving times and allocations untouched.
        """
        with self._data.transaction() as conn:
            row = conn.execute(
                "SELECT status FROM Bookings WHERE id = ? AND tenant_id = ?;",
                (booking_id, tenant_id),
            ).fetchone()
            if row is None:
                raise EntityNotFoundError(f"Booking {booking_id} not found")
            status = BookingStatus(row["status"])
            if status not in RESCHEDULABLE_STATUSES:
                raise SchedulingConflictError(
                    f"Cannot reschedule booking in status {status.value}"
                )

            for allocation in allocations:
                if allocation_conflict_exists(
                    conn,
                    tenant_id,
                    allocation.resource_id,
                    allocation.start_at,
                    allocation.end_at,
                    exclude_booking_id=booking_id,
                ):
                    logger.warning(
                        "Reschedule conflict | booking_id=%s | resource_id=%s | start_at=%s",
                        booking_id,
                        allocation.resource_id,
                        allocation.start_at.isoformat(),
                    )
                    raise ResourceUnavailableError(
                        allocation.resource_id,
                        f"Resource {allocation.resource_id} is no longer available for new time.",
                    )

            conn.execute(
                "DELETE FROM Allocations WHERE booking_id = ? AND tenant_id = ?;",
                (booking_id, tenant_id),
            )
            _insert_allocations(conn, allocations)
            conn.execute(
                """
                UPDATE Bookings
                SET start_at = ?, end_at = ?, updated_at = ?
                WHERE id = ? AND tenant_id = ?;
                """,
                (
                    to_db_timestamp(start_at),
                    to_db_timestamp(end_at),
                    to_db_timestamp(updated_at),
                    booking_id,
                    tenant_id,
                ),
            )

        updated = self.find_by_id(tenant_id, booking_id)
        if updated is None:  # pragma: no cover - row was just updated
            raise EntityNotFoundError(f"Booking {booking_id} not found")
        return updated

    def _load_allocations(
        self,
        conn: sqlite3.Connection,
        booking_ids: Sequence[str],
    ) -> dict[str, tuple[Allocation, ...]]:
        if not booking_ids:
            return {}
        placeholders = ",".join("?" for _ in booking_ids)
        rows = conn.execute(
            f"""
            SELECT * FROM Allocations
            WHERE booking_id IN ({placeholders})
            ORDER BY booking_id ASC, rowid ASC;
            """,
            tuple(booking_ids),
        ).fetchall()
        grouped: dict[str, list[Allocation]] = {}
        for row in rows:
            grouped.setdefault(str(row["booking_id"]), []).append(_row_to_allocation(row))
        return {booking_id: tuple(items) for booking_id, items in grouped.items()}


def _row_to_allocation(row: sqlite3.Row) -> Allocation:
    return Allocation(
        allocation_id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        booking_id=str(row["booking_id"]),
        resource_id=str(row["resource_id"]),
        role=AllocationRole(row["role"]),
        start_at=from_db_timestamp(row["start_at"]),
        end_at=from_db_timestamp(row["end_at"]),
        created_at=from_db_timestamp(row["created_at"]),
    )


def _row_to_booking(row: sqlite3.Row, allocations: tuple[Allocation, ...]) -> Booking:
    return Booking(
        booking_id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        status=BookingStatus(row["status"]),
        start_at=from_db_timestamp(row["start_at"]),
        end_at=from_db_timestamp(row["end_at"]),
        reference_number=str(row["reference_number"]),
        created_at=from_db_timestamp(row["created_at"]),
        updated_at=from_db_timestamp(row["updated_at"]),
        service_offering_id=row["service_offering_id"],
        hold_id=row["hold_id"],
        booker=BookerDetails(
            party_id=row["booked_by_party_id"],
            name=row["booked_by_name"],
            email=row["booked_by_email"],
            notes=row["notes"],
        ),
        cancelled_at=from_db_timestamp(row["cancelled_at"]),
        cancelled_reason=row["cancelled_reason"],
        allocations=allocations,
    )
