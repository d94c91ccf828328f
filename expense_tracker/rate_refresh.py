from __future__ import annotations

import threading

import structlog
from sqlalchemy.engine import Engine

from expense_tracker.currency_conversion import refresh_exchange_rates

log = structlog.get_logger(__name__)

FOUR_HOURS = 4 * 60 * 60


class RateRefreshScheduler:
    """Refreshes the exchange rate table on a daemon thread.

    The first refresh runs as soon as the thread starts, then once per
    interval. A failed tick is logged and the stored rates stay in place.
    """

    def __init__(self, engine: Engine, provider, interval_seconds: float = FOUR_HOURS) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be greater than zero.")
        self._engine = engine
        self._provider = provider
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.completed_runs = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="rate-refresh", daemon=True)
        self._thread.start()
        log.info("rate_refresh_started", interval_seconds=self._interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        log.info("rate_refresh_stopped")

    def run_once(self) -> bool:
        try:
            updated = refresh_exchange_rates(self._engine, self._provider)
        except Exception:
            # Any failure leaves the previous rates in place.
            log.exception("rate_refresh_tick_failed")
            updated = False
        self.completed_runs += 1
        return updated

    def _run(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            if self._stop.wait(self._interval):
                break
