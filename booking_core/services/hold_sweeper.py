"""Background timer that marks lapsed holds as EXPIRED."""

from __future__ import annotations

import threading
from typing import Optional

from booking_core.services.hold_service import HoldService
from booking_core.utils.logger import get_logger


logger = get_logger(__name__)


class HoldExpirySweeper:
    """Runs `HoldService.expire_stale_holds` on a fixed interval in a daemon thread.

    Reads never depend on the sweep: effective status already treats a lapsed
    hold as expired. The sweep only brings stored rows in line.
    """

    def __init__(self, hold_service: HoldService, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._hold_service = hold_service
        self._interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="hold-expiry-sweeper",
            daemon=True,
        )
        self._thread.start()
        logger.info("Hold sweeper started | interval_seconds=%s", self._interval_seconds)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Hold sweeper stopped")

    def run_once(self) -> int:
        try:
            return self._hold_service.expire_stale_holds()
        except Exception:
            # A failed sweep is retried on the next tick.
            logger.exception("Hold expiry sweep failed")
            return 0

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval_seconds):
            self.run_once()
