"""Hold persistence: soft reservations with lazy and swept expiry."""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Optional

from booking_core.domain.errors import (
    EntityNotFoundError,
    HoldNotActiveError,
    ResourceUnavailableError,
)
from booking_core.domain.models import BookerDetails, Hold, HoldStatus
from booking_core.repository.booking_repository import allocation_conflict_exists
from booking_core.repository.data_repository import (
    DataRepository,
    from_db_timestamp,
    to_db_timestamp,
)
from booking_core.utils.logger import get_logger


logger = get_logger(__name__)


class HoldRepository:
    def __init__(self, data_repository: DataRepository) -> None:
        self._data = data_repository

    def create(self, hold: Hold) -> Hold:
        """Insert the hold after checking every resource in the same transaction.

        Only firm allocations are checked; overlapping holds are advisory and
        do not block one another.
        """
        with self._data.transaction() as conn:
            for resource_id in hold.resource_ids:
                if allocation_conflict_exists(
                    conn,
                    hold.tenant_id,
                    resource_id,
                    hold.start_at,
                    hold.end_at,
                ):
                    raise ResourceUnavailableError(resource_id)

            conn.execute(
                """
                INSERT INTO Holds (
                    id, tenant_id, status, start_at, end_at, expires_at,
                    service_offering_id, booked_by_party_id, booked_by_name,
                    booked_by_email, notes, confirmed_booking_id, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    hold.hold_id,
                    hold.tenant_id,
                    hold.status.value,
                    to_db_timestamp(hold.start_at),
                    to_db_timestamp(hold.end_at),
                    to_db_timestamp(hold.expires_at),
                    hold.service_offering_id,
                    hold.booker.party_id,
                    hold.booker.name,
                    hold.booker.email,
                    hold.booker.notes,
                    hold.confirmed_booking_id,
                    to_db_timestamp(hold.created_at),
                    to_db_timestamp(hold.created_at),
                ),
            )
            conn.executemany(
                "INSERT INTO HoldResources (hold_id, resource_id, position) VALUES (?, ?, ?);",
                [
                    (hold.hold_id, resource_id, position)
                    for position, resource_id in enumerate(hold.resource_ids)
                ],
            )
        return hold

    def find_by_id(self, tenant_id: str, hold_id: str) -> Optional[Hold]:
        with self._data.connection() as conn:
            row = conn.execute(
                "SELECT * FROM Holds WHERE id = ? AND tenant_id = ?;",
                (hold_id, tenant_id),
            ).fetchone()
            if row is None:
                return None
            resource_rows = conn.execute(
                """
                SELECT resource_id FROM HoldResources
                WHERE hold_id = ?
                ORDER BY position ASC;
                """,
                (hold_id,),
            ).fetchall()
        return _row_to_hold(row, tuple(str(item["resource_id"]) for item in resource_rows))

    def transition(
        self,
        tenant_id: str,
        hold_id: str,
        target: HoldStatus,
        now: datetime,
        confirmed_booking_id: Optional[str] = None,
    ) -> Hold:
        """Move an effectively ACTIVE hold to `target`; anything else is a conflict."""
        now_text = to_db_timestamp(now)
        with self._data.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE Holds
                SET status = ?,
                    confirmed_booking_id = COALESCE(?, confirmed_booking_id),
                    updated_at = ?
                WHERE id = ? AND tenant_id = ? AND status = ? AND expires_at >= ?;
                """,
                (
                    target.value,
                    confirmed_booking_id,
                    now_text,
                    hold_id,
                    tenant_id,
                    HoldStatus.ACTIVE.value,
                    now_text,
                ),
            )
            if cursor.rowcount == 0:
                exists = conn.execute(
                    "SELECT 1 FROM Holds WHERE id = ? AND tenant_id = ?;",
                    (hold_id, tenant_id),
                ).fetchone()
                if exists is None:
                    raise EntityNotFoundError(f"Hold {hold_id} not found")
                raise HoldNotActiveError("Hold no longer active")

        updated = self.find_by_id(tenant_id, hold_id)
        if updated is None:  # pragma: no cover - row was just updated
            raise EntityNotFoundError(f"Hold {hold_id} not found")
        return updated

    def has_active_overlap(
        self,
        tenant_id: str,
        resource_id: str,
        start_at: datetime,
        end_at: datetime,
        now: datetime,
    ) -> bool:
        with self._data.connection() as conn:
            row = conn.execute(
                """
                SELECT 1
                FROM Holds AS h
                INNER JOIN HoldResources AS hr ON hr.hold_id = h.id
                WHERE h.tenant_id = ?
                  AND hr.resource_id = ?
                  AND h.status = ?
                  AND h.expires_at >= ?
                  AND h.start_at < ?
                  AND h.end_at > ?
                LIMIT 1;
                """,
                (
                    tenant_id,
                    resource_id,
                    HoldStatus.ACTIVE.value,
                    to_db_timestamp(now),
                    to_db_timestamp(end_at),
                    to_db_timestamp(start_at),
                ),
            ).fetchone()
        return row is not None

    def expire_stale(self, now: datetime, tenant_id: Optional[str] = None) -> int:
        """Mark ACTIVE holds past their TTL as EXPIRED; returns rows affected."""
        now_text = to_db_timestamp(now)
        params: list[str] = [HoldStatus.EXPIRED.value, now_text, HoldStatus.ACTIVE.value, now_text]
        tenant_clause = ""
        if tenant_id is not None:
            tenant_clause = "AND tenant_id = ?"
            params.append(tenant_id)
        with self._data.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE Holds
                SET status = ?, updated_at = ?
                WHERE status = ? AND expires_at < ? {tenant_clause};
                """,
                tuple(params),
            )
            affected = int(cursor.rowcount)
        if affected:
            logger.info("Expired stale holds | tenant_id=%s | count=%s", tenant_id, affected)
        return affected


def _row_to_hold(row: sqlite3.Row, resource_ids: tuple[str, ...]) -> Hold:
    return Hold(
        hold_id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        status=HoldStatus(row["status"]),
        start_at=from_db_timestamp(row["start_at"]),
        end_at=from_db_timestamp(row["end_at"]),
        resource_ids=resource_ids,
        expires_at=from_db_timestamp(row["expires_at"]),
        created_at=from_db_timestamp(row["created_at"]),
        service_offering_id=row["service_offering_id"],
        booker=BookerDetails(
            party_id=row["booked_by_party_id"],
            name=row["booked_by_name"],
            email=row["booked_by_email"],
            notes=row["notes"],
        ),
        confirmed_booking_id=row["confirmed_booking_id"],
    )
