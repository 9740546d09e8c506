"""Repository layer responsible for schema, directory data, outbox and idempotency."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from booking_core.domain.models import (
    AvailabilityRule,
    BlackoutInterval,
    Resource,
    ResourceType,
    ServiceOffering,
    WeeklySlot,
)
from booking_core.utils.clock import to_utc
from booking_core.utils.config import Settings, get_settings
from booking_core.utils.logger import get_logger


logger = get_logger(__name__)

_DB_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class PersistenceError(Exception):
    """Infrastructure failure (locked database, I/O); safe for the caller to retry."""


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC text so lexical comparison in SQL matches time order."""
    if value is None:
        return None
    return to_utc(value).strftime(_DB_TIMESTAMP_FORMAT)


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, _DB_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def _utc_now_text() -> str:
    return to_db_timestamp(datetime.now(timezone.utc))


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic.

    Reads use a short-lived autocommit connection; writes that must be atomic
    go through `transaction()`, which opens with ``BEGIN IMMEDIATE`` so the
    write lock is held from the first conflict query until commit.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.sqlite_busy_timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Yield an autocommit connection for read-only access."""
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Database connection failed: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise PersistenceError(f"Database read failed: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside a serialized write transaction."""
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Database connection failed: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE;")
            yield conn
            conn.execute("COMMIT;")
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK;")
            raise PersistenceError(f"Database transaction failed: {exc}") from exc
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK;")
            raise
        finally:
            conn.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            conn = self._connect()
            try:
                conn.execute("PRAGMA journal_mode = WAL;")
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS Resources (
                        id TEXT PRIMARY KEY,
                        tenant_id TEXT NOT NULL,
                        resource_type TEXT NOT NULL
                            CHECK (resource_type IN ('STAFF', 'ROOM', 'EQUIPMENT')),
                        name TEXT NOT NULL,
                        tags_json TEXT NOT NULL DEFAULT '[]',
                        is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0, 1)),
                        description TEXT,
                        location TEXT,
                        capacity INTEGER,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS ServiceOfferings (
                        id TEXT PRIMARY KEY,
                        tenant_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        description TEXT,
                        duration_minutes INTEGER NOT NULL CHECK (duration_minutes > 0),
                        buffer_before_minutes INTEGER NOT NULL DEFAULT 0,
                        buffer_after_minutes INTEGER NOT NULL DEFAULT 0,
                        required_resource_types_json TEXT NOT NULL DEFAULT '[]',
                        required_tags_json TEXT NOT NULL DEFAULT '[]',
                        is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0, 1)),
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS AvailabilityRules (
                        id TEXT PRIMARY KEY,
                        tenant_id TEXT NOT NULL,
                        resource_id TEXT NOT NULL,
                        timezone TEXT NOT NULL DEFAULT 'UTC',
                        weekly_slots_json TEXT NOT NULL DEFAULT '[]',
                        blackouts_json TEXT NOT NULL DEFAULT '[]',
                        effective_from TEXT,
                        effective_to TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        UNIQUE (tenant_id, resource_id)
                    );

                    CREATE TABLE IF NOT EXISTS Holds (
                        id TEXT PRIMARY KEY,
                        tenant_id TEXT NOT NULL,
                        status TEXT NOT NULL
                            CHECK (status IN ('ACTIVE', 'CONFIRMED', 'EXPIRED', 'CANCELLED')),
                        start_at TEXT NOT NULL,
                        end_at TEXT NOT NULL,
                        expires_at TEXT NOT NULL,
                        service_offering_id TEXT,
                        booked_by_party_id TEXT,
                        booked_by_name TEXT,
                        booked_by_email TEXT,
                        notes TEXT,
                        confirmed_booking_id TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        CHECK (start_at < end_at)
                    );

                    CREATE TABLE IF NOT EXISTS HoldResources (
                        hold_id TEXT NOT NULL,
                        resource_id TEXT NOT NULL,
                        position INTEGER NOT NULL,
                        PRIMARY KEY (hold_id, resource_id),
                        FOREIGN KEY (hold_id) REFERENCES Holds(id) ON DELETE CASCADE
                    );

                    CREATE TABLE IF NOT EXISTS Bookings (
                        id TEXT PRIMARY KEY,
                        tenant_id TEXT NOT NULL,
                        status TEXT NOT NULL CHECK (
                            status IN ('DRAFT', 'HOLD', 'CONFIRMED', 'CANCELLED', 'NO_SHOW', 'COMPLETED')
                        ),
                        start_at TEXT NOT NULL,
                        end_at TEXT NOT NULL,
                        reference_number TEXT NOT NULL UNIQUE,
                        service_offering_id TEXT,
                        hold_id TEXT,
                        booked_by_party_id TEXT,
                        booked_by_name TEXT,
                        booked_by_email TEXT,
                        notes TEXT,
                        cancelled_at TEXT,
                        cancelled_reason TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        CHECK (start_at < end_at)
                    );

                    CREATE TABLE IF NOT EXISTS Allocations (
                        id TEXT PRIMARY KEY,
                        tenant_id TEXT NOT NULL,
                        booking_id TEXT NOT NULL,
                        resource_id TEXT NOT NULL,
                        role TEXT NOT NULL
                            CHECK (role IN ('PRIMARY', 'SUPPORT', 'ROOM', 'EQUIPMENT')),
                        start_at TEXT NOT NULL,
                        end_at TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (booking_id) REFERENCES Bookings(id) ON DELETE CASCADE,
                        CHECK (start_at < end_at)
                    );

                    CREATE TABLE IF NOT EXISTS OutboxEvents (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        tenant_id TEXT NOT NULL,
                        event_type TEXT NOT NULL,
                        payload_json TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        dispatched_at TEXT
                    );

                    CREATE TABLE IF NOT EXISTS IdempotencyKeys (
                        action_key TEXT NOT NULL,
                        tenant_id TEXT NOT NULL,
                        idempotency_key TEXT NOT NULL,
                        result_json TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (action_key, tenant_id, idempotency_key)
                    );

                    CREATE INDEX IF NOT EXISTS idx_resources_tenant_type
                    ON Resources(tenant_id, resource_type, is_active);

                    CREATE INDEX IF NOT EXISTS idx_allocations_tenant_resource_time
                    ON Allocations(tenant_id, resource_id, start_at, end_at);

                    CREATE INDEX IF NOT EXISTS idx_allocations_booking
                    ON Allocations(booking_id);

                    CREATE INDEX IF NOT EXISTS idx_hold_resources_resource
                    ON HoldResources(resource_id);

                    CREATE INDEX IF NOT EXISTS idx_holds_tenant_status_expiry
                    ON Holds(tenant_id, status, expires_at);

                    CREATE INDEX IF NOT EXISTS idx_bookings_tenant_start
                    ON Bookings(tenant_id, start_at);
                    """
                )
            finally:
                conn.close()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_demo_data(self, tenant_id: str = "demo") -> None:
        """Seed a small bookable directory only when the tenant has no resources."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM Resources WHERE tenant_id = ?;",
                (tenant_id,),
            ).fetchone()
        if int(row["count"]) > 0:
            logger.info("Demo data already present for tenant %s; skipping seed", tenant_id)
            return

        resources = [
            Resource("res-staff-alex", tenant_id, ResourceType.STAFF, "Alex", ("massage",)),
            Resource("res-staff-sam", tenant_id, ResourceType.STAFF, "Sam", ("massage", "facial")),
            Resource("res-room-1", tenant_id, ResourceType.ROOM, "Treatment Room 1", ("spa",)),
        ]
        for resource in resources:
            self.save_resource(resource)
            self.save_availability_rule(
                AvailabilityRule(
                    rule_id=f"rule-{resource.resource_id}",
                    tenant_id=tenant_id,
                    resource_id=resource.resource_id,
                    timezone="UTC",
                    weekly_slots=tuple(
                        WeeklySlot(day_of_week=day, start_time="09:00", end_time="17:00")
                        for day in range(1, 6)
                    ),
                )
            )
        self.save_service_offering(
            ServiceOffering(
                service_id="svc-massage-60",
                tenant_id=tenant_id,
                name="Massage (60 min)",
                duration_minutes=60,
                buffer_after_minutes=15,
                required_resource_types=(ResourceType.STAFF,),
                required_tags=("massage",),
            )
        )
        logger.info("Demo data seeded for tenant %s", tenant_id)

    # --- Resources -----------------------------------------------------

    def save_resource(self, resource: Resource) -> Resource:
        now_text = _utc_now_text()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO Resources (
                    id, tenant_id, resource_type, name, tags_json, is_active,
                    description, location, capacity, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    resource_type = excluded.resource_type,
                    name = excluded.name,
                    tags_json = excluded.tags_json,
                    is_active = excluded.is_active,
                    description = excluded.description,
                    location = excluded.location,
                    capacity = excluded.capacity,
                    updated_at = excluded.updated_at
                WHERE Resources.tenant_id = excluded.tenant_id;
                """,
                (
                    resource.resource_id,
                    resource.tenant_id,
                    resource.resource_type.value,
                    resource.name,
                    json.dumps(list(resource.tags)),
                    int(resource.is_active),
                    resource.description,
                    resource.location,
                    resource.capacity,
                    now_text,
                    now_text,
                ),
            )
        return resource

    def get_resource(self, tenant_id: str, resource_id: str) -> Optional[Resource]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM Resources WHERE id = ? AND tenant_id = ?;",
                (resource_id, tenant_id),
            ).fetchone()
        return _row_to_resource(row) if row is not None else None

    def find_active_resource(self, tenant_id: str, resource_id: str) -> Optional[Resource]:
        resource = self.get_resource(tenant_id, resource_id)
        if resource is None or not resource.is_active:
            return None
        return resource

    def list_resources(
        self,
        tenant_id: str,
        *,
        resource_type: Optional[ResourceType] = None,
        is_active: Optional[bool] = None,
        limit: int = 200,
    ) -> list[Resource]:
        """Return resources in insertion order so candidate scans are stable."""
        clauses = ["tenant_id = ?"]
        params: list[Any] = [tenant_id]
        if resource_type is not None:
            clauses.append("resource_type = ?")
            params.append(resource_type.value)
        if is_active is not None:
            clauses.append("is_active = ?")
            params.append(int(is_active))
        params.append(limit)
        with self.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM Resources
                WHERE {" AND ".join(clauses)}
                ORDER BY rowid ASC
                LIMIT ?;
                """,
                tuple(params),
            ).fetchall()
        return [_row_to_resource(row) for row in rows]

    # --- Service offerings ----------------------------------------------

    def save_service_offering(self, service: ServiceOffering) -> ServiceOffering:
        now_text = _utc_now_text()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO ServiceOfferings (
                    id, tenant_id, name, description, duration_minutes,
                    buffer_before_minutes, buffer_after_minutes,
                    required_resource_types_json, required_tags_json, is_active,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    duration_minutes = excluded.duration_minutes,
                    buffer_before_minutes = excluded.buffer_before_minutes,
                    buffer_after_minutes = excluded.buffer_after_minutes,
                    required_resource_types_json = excluded.required_resource_types_json,
                    required_tags_json = excluded.required_tags_json,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                WHERE ServiceOfferings.tenant_id = excluded.tenant_id;
                """,
                (
                    service.service_id,
                    service.tenant_id,
                    service.name,
                    service.description,
                    service.duration_minutes,
                    service.buffer_before_minutes,
                    service.buffer_after_minutes,
                    json.dumps([item.value for item in service.required_resource_types]),
                    json.dumps(list(service.required_tags)),
                    int(service.is_active),
                    now_text,
                    now_text,
                ),
            )
        return service

    def get_service_offering(self, tenant_id: str, service_id: str) -> Optional[ServiceOffering]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM ServiceOfferings WHERE id = ? AND tenant_id = ?;",
                (service_id, tenant_id),
            ).fetchone()
        return _row_to_service(row) if row is not None else None

    def list_service_offerings(
        self,
        tenant_id: str,
        *,
        is_active: Optional[bool] = None,
        limit: int = 200,
    ) -> list[ServiceOffering]:
        clauses = ["tenant_id = ?"]
        params: list[Any] = [tenant_id]
        if is_active is not None:
            clauses.append("is_active = ?")
            params.append(int(is_active))
        params.append(limit)
        with self.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM ServiceOfferings
                WHERE {" AND ".join(clauses)}
                ORDER BY rowid ASC
                LIMIT ?;
                """,
                tuple(params),
            ).fetchall()
        return [_row_to_service(row) for row in rows]

    # --- Availability rules ---------------------------------------------

    def save_availability_rule(self, rule: AvailabilityRule) -> AvailabilityRule:
        """Upsert the single rule a resource may carry."""
        now_text = _utc_now_text()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO AvailabilityRules (
                    id, tenant_id, resource_id, timezone, weekly_slots_json,
                    blackouts_json, effective_from, effective_to, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, resource_id) DO UPDATE SET
                    timezone = excluded.timezone,
                    weekly_slots_json = excluded.weekly_slots_json,
                    blackouts_json = excluded.blackouts_json,
                    effective_from = excluded.effective_from,
                    effective_to = excluded.effective_to,
                    updated_at = excluded.updated_at;
                """,
                (
                    rule.rule_id,
                    rule.tenant_id,
                    rule.resource_id,
                    rule.timezone,
                    json.dumps(
                        [
                            {
                                "day_of_week": slot.day_of_week,
                                "start_time": slot.start_time,
                                "end_time": slot.end_time,
                            }
                            for slot in rule.weekly_slots
                        ]
                    ),
                    json.dumps(
                        [
                            {
                                "start_at": to_db_timestamp(blackout.start_at),
                                "end_at": to_db_timestamp(blackout.end_at),
                                "reason": blackout.reason,
                            }
                            for blackout in rule.blackouts
                        ]
                    ),
                    to_db_timestamp(rule.effective_from),
                    to_db_timestamp(rule.effective_to),
                    now_text,
                    now_text,
                ),
            )
        saved = self.find_rule_by_resource(rule.tenant_id, rule.resource_id)
        return saved if saved is not None else rule

    def find_rule_by_resource(
        self,
        tenant_id: str,
        resource_id: str,
    ) -> Optional[AvailabilityRule]:
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM AvailabilityRules
                WHERE tenant_id = ? AND resource_id = ?;
                """,
                (tenant_id, resource_id),
            ).fetchone()
        return _row_to_rule(row) if row is not None else None

    # --- Outbox ---------------------------------------------------------

    def enqueue_event(self, tenant_id: str, event_type: str, payload: dict[str, Any]) -> int:
        """Append an event for at-least-once delivery by an external relay."""
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO OutboxEvents (tenant_id, event_type, payload_json, created_at)
                VALUES (?, ?, ?, ?);
                """,
                (tenant_id, event_type, json.dumps(payload, sort_keys=True), _utc_now_text()),
            )
            return int(cursor.lastrowid)

    def list_outbox_events(
        self,
        tenant_id: str,
        event_type: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        clauses = ["tenant_id = ?"]
        params: list[Any] = [tenant_id]
        if event_type is not None:
            clauses.append("event_type = ?")
            params.append(event_type)
        with self.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT id, event_type, payload_json, created_at, dispatched_at
                FROM OutboxEvents
                WHERE {" AND ".join(clauses)}
                ORDER BY id ASC;
                """,
                tuple(params),
            ).fetchall()
        return [
            {
                "id": int(row["id"]),
                "event_type": str(row["event_type"]),
                "payload": json.loads(row["payload_json"]),
                "created_at": str(row["created_at"]),
                "dispatched_at": row["dispatched_at"],
            }
            for row in rows
        ]

    def count_outbox_events(self, tenant_id: str, event_type: Optional[str] = None) -> int:
        return len(self.list_outbox_events(tenant_id, event_type))

    # --- Idempotency ----------------------------------------------------

    def get_idempotent_result(
        self,
        action_key: str,
        tenant_id: str,
        idempotency_key: str,
    ) -> Optional[dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT result_json FROM IdempotencyKeys
                WHERE action_key = ? AND tenant_id = ? AND idempotency_key = ?;
                """,
                (action_key, tenant_id, idempotency_key),
            ).fetchone()
        if row is None:
            return None
        return json.loads(row["result_json"])

    def store_idempotent_result(
        self,
        action_key: str,
        tenant_id: str,
        idempotency_key: str,
        result: dict[str, Any],
    ) -> None:
        """First writer wins; later stores for the same key are ignored."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO IdempotencyKeys (
                    action_key, tenant_id, idempotency_key, result_json, created_at
                )
                VALUES (?, ?, ?, ?, ?);
                """,
                (
                    action_key,
                    tenant_id,
                    idempotency_key,
                    json.dumps(result, sort_keys=True),
                    _utc_now_text(),
                ),
            )


def _row_to_resource(row: sqlite3.Row) -> Resource:
    return Resource(
        resource_id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        resource_type=ResourceType(row["resource_type"]),
        name=str(row["name"]),
        tags=tuple(json.loads(row["tags_json"])),
        is_active=bool(row["is_active"]),
        description=row["description"],
        location=row["location"],
        capacity=int(row["capacity"]) if row["capacity"] is not None else None,
    )


def _row_to_service(row: sqlite3.Row) -> ServiceOffering:
    return ServiceOffering(
        service_id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        name=str(row["name"]),
        description=row["description"],
        duration_minutes=int(row["duration_minutes"]),
        buffer_before_minutes=int(row["buffer_before_minutes"]),
        buffer_after_minutes=int(row["buffer_after_minutes"]),
        required_resource_types=tuple(
            ResourceType(item) for item in json.loads(row["required_resource_types_json"])
        ),
        required_tags=tuple(json.loads(row["required_tags_json"])),
        is_active=bool(row["is_active"]),
    )


def _row_to_rule(row: sqlite3.Row) -> AvailabilityRule:
    return AvailabilityRule(
        rule_id=str(row["id"]),
        tenant_id=str(row["tenant_id"]),
        resource_id=str(row["resource_id"]),
        timezone=str(row["timezone"]),
        weekly_slots=tuple(
            WeeklySlot(
                day_of_week=int(item["day_of_week"]),
                start_time=str(item["start_time"]),
                end_time=str(item["end_time"]),
            )
            for item in json.loads(row["weekly_slots_json"])
        ),
        blackouts=tuple(
            BlackoutInterval(
                start_at=from_db_timestamp(item["start_at"]),
                end_at=from_db_timestamp(item["end_at"]),
                reason=item.get("reason"),
            )
            for item in json.loads(row["blackouts_json"])
        ),
        effective_from=from_db_timestamp(row["effective_from"]),
        effective_to=from_db_timestamp(row["effective_to"]),
    )
