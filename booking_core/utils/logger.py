"""Process-wide logging for the booking API, the hold sweeper thread and scripts.

Records go to stdout as `time | level | logger | thread | message`; services
append their context as `key=value` pairs separated by ` | `.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

from booking_core.utils.config import get_settings


_LOGGER_INITIALIZED = False


def configure_logging(level: Optional[str] = None) -> None:
    """Install the stdout handler once; later calls are no-ops.

    `level` overrides `Settings.log_level` (e.g. when `create_app` receives
    test settings). The thread name column separates request handlers from
    the hold sweeper.
    """
    global _LOGGER_INITIALIZED
    if _LOGGER_INITIALIZED:
        return

    settings = get_settings()
    resolved_level = (level or settings.log_level).upper()

    logging.basicConfig(
        level=resolved_level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(threadName)s | %(message)s",
        stream=sys.stdout,
    )
    _LOGGER_INITIALIZED = True


def get_logger(name: str) -> logging.Logger:
    """Logger named after the calling module, with the handler installed."""
    configure_logging()
    return logging.getLogger(name)
