"""Cancellable periodic tasks for rollout and drift monitoring loops."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs *fn* every *interval_seconds* on a daemon thread.

    The first run happens one interval after ``start()``. An exception
    raised by *fn* is logged and the loop keeps going. ``cancel()`` stops
    scheduling future runs; a run already in progress finishes normally.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        fn: Callable[[], Any],
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self._fn = fn
        self._stop = threading.Event()
        self._run_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self.run_count = 0
        self.error_count = 0
        self.last_run_at: float | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def start(self) -> PeriodicTask:
        if self._thread is not None:
            raise RuntimeError(f"Periodic task '{self.name}' already started")
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info("Periodic task '%s' started (interval %.1fs)", self.name, self.interval_seconds)
        return self

    def run_once(self) -> None:
        """Execute one run synchronously, logging any failure."""
        with self._run_lock:
            try:
                self._fn()
            except Exception:
                self.error_count += 1
                logger.exception("Periodic task '%s' run failed", self.name)
            finally:
                self.run_count += 1
                self.last_run_at = time.time()

    def cancel(self) -> None:
        self._stop.set()
        logger.info("Periodic task '%s' cancelled", self.name)

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()
