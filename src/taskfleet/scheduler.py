"""Background threads for the periodic control loops."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class PeriodicJob:
    """Runs one callable at a fixed interval in a daemon thread.

    Exceptions are logged and the loop keeps going. `stop()` wakes the thread
    immediately instead of waiting for the interval to elapse.
    """

    def __init__(
        self,
        name: str,
        action: Callable[[], object],
        *,
        interval_seconds: float,
        run_immediately: bool = True,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.name = name
        self.action = action
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self.runs = 0
        self.failures = 0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
        self._thread.start()
        logger.info("Periodic job %s started (every %.1fs)", self.name, self.interval_seconds)

    def stop(self, timeout: float = 15.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Periodic job %s stopped", self.name)

    def run_now(self) -> None:
        """Run the action once in the calling thread, logging failures."""

        try:
            self.action()
        except Exception:  # noqa: BLE001
            self.failures += 1
            logger.exception("Periodic job %s failed", self.name)
        finally:
            self.runs += 1

    def _loop(self) -> None:
        if not self.run_immediately and self._stop.wait(timeout=self.interval_seconds):
            return
        while not self._stop.is_set():
            self.run_now()
            self._stop.wait(timeout=self.interval_seconds)


class JobScheduler:
    """Owns a set of periodic jobs started and stopped together."""

    def __init__(self) -> None:
        self.jobs: list[PeriodicJob] = []

    def add(
        self,
        name: str,
        action: Callable[[], object],
        *,
        interval_seconds: float,
    ) -> PeriodicJob:
        job = PeriodicJob(name, action, interval_seconds=interval_seconds)
        self.jobs.append(job)
        return job

    def start(self) -> None:
        for job in self.jobs:
            job.start()

    def stop(self) -> None:
        for job in reversed(self.jobs):
            job.stop()
