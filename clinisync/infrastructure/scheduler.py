"""Periodic sync trigger.

Runs ``SyncCoordinator.run`` on a daemon thread every ``interval`` seconds.
Overlapping triggers are harmless: the coordinator's single-flight guard
turns them into skipped runs.
"""

import logging
import threading
from typing import Optional

from clinisync.domain.services.sync_coordinator import SyncCoordinator

logger = logging.getLogger(__name__)


class PeriodicSyncScheduler:
    """Background timer driving incremental syncs.

    Parameters:
        coordinator: Sync coordinator to trigger
        interval_seconds: Delay between runs
        run_on_start: Trigger one run as soon as the thread starts

    Example Usage:
        ```python
        scheduler = PeriodicSyncScheduler(coordinator, interval_seconds=600)
        scheduler.start()
        ...
        scheduler.stop()
        ```
    """

    def __init__(self, coordinator: SyncCoordinator, interval_seconds: float, run_on_start: bool = True):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.coordinator = coordinator
        self.interval_seconds = interval_seconds
        self.run_on_start = run_on_start
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="periodic-sync", daemon=True)
        self._thread.start()
        logger.info(f"Periodic sync started (every {self.interval_seconds:.0f}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Ask the loop to exit and wait for an in-flight run to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Periodic sync stopped")

    def _trigger(self) -> None:
        report = self.coordinator.run()
        logger.debug(f"Scheduled sync finished: {report.outcome}")

    def _loop(self) -> None:
        if self.run_on_start and not self._stop_event.is_set():
            self._trigger()
        while not self._stop_event.wait(self.interval_seconds):
            self._trigger()
