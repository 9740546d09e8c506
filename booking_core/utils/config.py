"""Environment-driven runtime settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    database_path: Path
    log_level: str

    hold_default_ttl_seconds: int
    hold_max_ttl_seconds: int
    hold_sweep_enabled: bool
    hold_sweep_interval_seconds: float

    availability_max_range_days: int
    availability_max_slots: int
    availability_min_step_minutes: int
    availability_max_step_minutes: int
    availability_respect_rule_timezone: bool

    sqlite_busy_timeout_seconds: float
    reference_number_prefix: str
    default_page_size: int
    max_page_size: int
    seed_demo_data: bool


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process; tests derive variants with `replace`."""
    return Settings(
        app_name=_env_str("BOOKING_APP_NAME", "Booking Core"),
        app_version=_env_str("BOOKING_APP_VERSION", "1.0.0"),
        database_path=Path(_env_str("BOOKING_DATABASE_PATH", "data/booking.db")),
        log_level=_env_str("BOOKING_LOG_LEVEL", "INFO"),
        hold_default_ttl_seconds=_env_int("BOOKING_HOLD_DEFAULT_TTL_SECONDS", 600),
        hold_max_ttl_seconds=_env_int("BOOKING_HOLD_MAX_TTL_SECONDS", 86400),
        hold_sweep_enabled=_env_bool("BOOKING_HOLD_SWEEP_ENABLED", True),
        hold_sweep_interval_seconds=_env_float("BOOKING_HOLD_SWEEP_INTERVAL_SECONDS", 60.0),
        availability_max_range_days=_env_int("BOOKING_AVAILABILITY_MAX_RANGE_DAYS", 45),
        availability_max_slots=_env_int("BOOKING_AVAILABILITY_MAX_SLOTS", 600),
        availability_min_step_minutes=_env_int("BOOKING_AVAILABILITY_MIN_STEP_MINUTES", 15),
        availability_max_step_minutes=_env_int("BOOKING_AVAILABILITY_MAX_STEP_MINUTES", 60),
        availability_respect_rule_timezone=_env_bool(
            "BOOKING_AVAILABILITY_RESPECT_RULE_TIMEZONE", False
        ),
        sqlite_busy_timeout_seconds=_env_float("BOOKING_SQLITE_BUSY_TIMEOUT_SECONDS", 5.0),
        reference_number_prefix=_env_str("BOOKING_REFERENCE_PREFIX", "BK"),
        default_page_size=_env_int("BOOKING_DEFAULT_PAGE_SIZE", 20),
        max_page_size=_env_int("BOOKING_MAX_PAGE_SIZE", 100),
        seed_demo_data=_env_bool("BOOKING_SEED_DEMO_DATA", False),
    )
