"""Tests for the periodic sync scheduler."""

import threading
from unittest.mock import Mock

import pytest

from clinisync.domain.models import SyncReport
from clinisync.infrastructure.scheduler import PeriodicSyncScheduler


@pytest.fixture
def coordinator():
    mock = Mock()
    mock.ran = threading.Event()

    def run():
        mock.ran.set()
        return SyncReport(outcome="success")

    mock.run.side_effect = run
    return mock


class TestPeriodicSyncScheduler:
    """Test the background trigger loop."""

    def test_invalid_interval(self, coordinator):
        """Test that a non-positive interval is rejected."""
        with pytest.raises(ValueError):
            PeriodicSyncScheduler(coordinator, interval_seconds=0)

    def test_runs_on_start(self, coordinator):
        """Test that a run is triggered as soon as the thread starts."""
        scheduler = PeriodicSyncScheduler(coordinator, interval_seconds=60)
        scheduler.start()
        try:
            assert coordinator.ran.wait(5)
            assert scheduler.is_running is True
        finally:
            scheduler.stop(timeout=5)

        assert scheduler.is_running is False
        assert coordinator.run.call_count == 1

    def test_repeats_every_interval(self, coordinator):
        """Test that the loop keeps triggering until stopped."""
        calls = threading.Semaphore(0)

        def run():
            calls.release()
            return SyncReport(outcome="skipped")

        coordinator.run.side_effect = run
        scheduler = PeriodicSyncScheduler(coordinator, interval_seconds=0.01, run_on_start=False)
        scheduler.start()
        try:
            assert calls.acquire(timeout=5)
            assert calls.acquire(timeout=5)
        finally:
            scheduler.stop(timeout=5)
        assert coordinator.run.call_count >= 2

    def test_stop_without_start(self, coordinator):
        """Test that stopping an idle scheduler is a no-op."""
        scheduler = PeriodicSyncScheduler(coordinator, interval_seconds=60, run_on_start=False)
        scheduler.stop()
        coordinator.run.assert_not_called()

    def test_start_is_idempotent(self, coordinator):
        """Test that a second start does not spawn another thread."""
        scheduler = PeriodicSyncScheduler(coordinator, interval_seconds=60, run_on_start=False)
        scheduler.start()
        thread = scheduler._thread
        try:
            scheduler.start()
            assert scheduler._thread is thread
        finally:
            scheduler.stop(timeout=5)
