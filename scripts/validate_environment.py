#!/usr/bin/env python3
"""Validate local booking-core environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from booking_core.domain.errors import ResourceUnavailableError
from booking_core.repository.data_repository import DataRepository
from booking_core.services.booking_service import BookingService
from booking_core.services.hold_service import HoldService
from booking_core.services.slot_service import SlotGenerationService
from booking_core.utils.clock import FixedClock
from booking_core.utils.config import get_settings

SEPARATOR_LINE = "=" * 44
DEMO_TENANT = "demo"


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def _next_monday(moment: datetime) -> datetime:
    days_ahead = (7 - moment.weekday()) % 7 or 7
    return (moment + timedelta(days=days_ahead)).replace(hour=0, minute=0, second=0, microsecond=0)


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="booking-env-")

    # CHECK 1 - Python version >= 3.11
    if sys.version_info >= (3, 11):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.11",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2 - Required packages importable
    package_specs = [
        ("fastapi", "fastapi"),
        ("uvicorn", "uvicorn"),
        ("pydantic", "pydantic"),
        ("httpx", "httpx"),
        ("pytest", "pytest"),
    ]
    from importlib.metadata import PackageNotFoundError, version

    import_errors: list[str] = []
    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except (ImportError, PackageNotFoundError) as exc:
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    try:
        validation_settings = replace(
            get_settings(),
            database_path=Path(temp_dir) / "booking_validation.db",
        )
        repository = DataRepository(validation_settings)
        clock = FixedClock(datetime.now(timezone.utc))

        # CHECK 3 - Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except Exception as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4 - Demo directory seeding
        try:
            repository.seed_demo_data(DEMO_TENANT)
            resources = repository.list_resources(DEMO_TENANT)
            if len(resources) != 3:
                raise RuntimeError(f"expected 3 resources, got {len(resources)}")
            ok, line = _print_result("Demo directory: 3 resources", True)
        except Exception as exc:
            ok, line = _print_result("Demo directory", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5 - Slot generation for next Monday
        slot_service = SlotGenerationService(repository=repository, settings=validation_settings, clock=clock)
        first_slot = None
        try:
            monday = _next_monday(clock.now())
            availability = slot_service.generate_slots(
                DEMO_TENANT,
                "svc-massage-60",
                from_at=monday,
                to_at=monday + timedelta(hours=23, minutes=59),
            )
            if not availability.time_slots:
                raise RuntimeError("no slots generated")
            first_slot = availability.time_slots[0]
            ok, line = _print_result(
                "Slot generation",
                True,
                f": {len(availability.time_slots)} slots on {availability.selected_day}",
            )
        except Exception as exc:
            ok, line = _print_result("Slot generation", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 6 - Hold, booking and double-booking rejection
        try:
            if first_slot is None:
                raise RuntimeError("no slot available to book")
            hold_service = HoldService(repository=repository, settings=validation_settings, clock=clock)
            booking_service = BookingService(repository=repository, settings=validation_settings, clock=clock)
            hold = hold_service.create_hold(
                DEMO_TENANT,
                [first_slot.resource_id],
                first_slot.start_at,
                first_slot.end_at,
            )
            booking = booking_service.create_booking(DEMO_TENANT, hold_id=hold.hold_id)
            try:
                booking_service.create_booking(
                    DEMO_TENANT,
                    start_at=first_slot.start_at,
                    end_at=first_slot.end_at,
                    resource_ids=[first_slot.resource_id],
                )
            except ResourceUnavailableError:
                pass
            else:
                raise RuntimeError("overlapping booking was accepted")
            ok, line = _print_result("Booking commit", True, f": {booking.reference_number}")
        except Exception as exc:
            ok, line = _print_result("Booking commit", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Booking Core Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
