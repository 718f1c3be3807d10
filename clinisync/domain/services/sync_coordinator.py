"""Sync Coordinator.

Brings durable raw lab storage up to date with the legacy lab ledger, one run
at a time.

Paging Contract:
    - batches are read in ascending observation-date order from ``from_date``
      inclusive
    - the next ``from_date`` is the latest date of the batch plus one day
    - a batch shorter than ``batch_size`` ends the run

Each batch is written in one transaction, the affected wide rows are
refreshed, and only then does the cursor advance. A crash mid-batch leaves the
cursor at the last committed boundary; the next run replays from there and the
replace-on-conflict writes make the replay harmless.
"""

import logging
import threading
from datetime import date, datetime
from typing import Callable, Sequence

from clinisync.domain import roc_calendar
from clinisync.domain.legacy_schema import LabFields
from clinisync.domain.models import LabObservation, SyncCursor, SyncReport, SyncStatus
from clinisync.domain.ports import (
    IllegalStateTransition,
    LabStorePort,
    LegacySourcePort,
    Record,
    SyncError,
    distinct_in_order,
)
from clinisync.domain.services.view_materializer import DerivedViewMaterializer

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "interrupted"


class SyncStateMachine:
    """Explicit sync lifecycle: Idle -> Running -> {Success, Failed} -> Idle.

    ``try_begin`` is the single-flight guard: it moves Idle -> Running and
    reports False instead of raising when a run is already in flight.
    """

    _TRANSITIONS = {
        SyncStatus.IDLE: frozenset({SyncStatus.RUNNING}),
        SyncStatus.RUNNING: frozenset({SyncStatus.SUCCESS, SyncStatus.FAILED}),
        SyncStatus.SUCCESS: frozenset({SyncStatus.IDLE}),
        SyncStatus.FAILED: frozenset({SyncStatus.IDLE}),
    }

    def __init__(self):
        self._state = SyncStatus.IDLE
        self._lock = threading.Lock()

    @property
    def state(self) -> SyncStatus:
        return self._state

    def try_begin(self) -> bool:
        with self._lock:
            if self._state is not SyncStatus.IDLE:
                return False
            self._state = SyncStatus.RUNNING
            return True

    def transition(self, target: SyncStatus) -> None:
        with self._lock:
            if target not in self._TRANSITIONS[self._state]:
                raise IllegalStateTransition(self._state.value, target.value)
            self._state = target


class SyncCoordinator:
    """Drives initial and incremental lab synchronization.

    Parameters:
        source: Legacy source adapter
        store: Durable lab store
        materializer: Wide-view materializer
        item_codes: Source item codes to synchronize
        batch_size: Page size requested from the source
        retention_years: Initial-import window in years (<= 0 imports everything)
        today: Clock for the initial-import window
        clock: Clock for run timestamps
    """

    def __init__(
        self,
        source: LegacySourcePort,
        store: LabStorePort,
        materializer: DerivedViewMaterializer,
        item_codes: Sequence[str],
        batch_size: int = 5000,
        retention_years: int = 3,
        today: Callable[[], date] = date.today,
        clock: Callable[[], datetime] = datetime.now,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.source = source
        self.store = store
        self.materializer = materializer
        self.item_codes = list(item_codes)
        self.batch_size = batch_size
        self.retention_years = retention_years
        self._today = today
        self._clock = clock
        self._state = SyncStateMachine()

    @property
    def state(self) -> SyncStatus:
        return self._state.state

    @property
    def is_running(self) -> bool:
        return self._state.state is SyncStatus.RUNNING

    def status(self) -> SyncCursor:
        return self.store.get_cursor()

    def recover_interrupted(self) -> bool:
        """Mark a run left ``running`` by a dead process as failed."""
        cursor = self.store.get_cursor()
        if cursor.last_run_status is not SyncStatus.RUNNING or self.is_running:
            return False
        logger.warning(f"Previous sync started at {cursor.last_run_started_at} never finished; marking as failed")
        self.store.update_cursor(
            last_run_status=SyncStatus.FAILED,
            last_run_finished_at=self._clock(),
            last_run_error=INTERRUPTED_ERROR,
        )
        return True

    def _initial_from_date(self) -> str:
        if self.retention_years <= 0:
            return roc_calendar.EARLIEST_ROC_DATE
        start = roc_calendar.years_before(self._today(), self.retention_years)
        if start is None:
            raise SyncError(f"Cannot compute initial import window for {self.retention_years} years")
        return start

    def run(self) -> SyncReport:
        """Run one sync; never raises.

        Returns a ``skipped`` report when another run is in flight. Any failure
        is recorded on the cursor and reported as ``failed``.
        """
        if not self._state.try_begin():
            logger.info("Sync already in progress, skipping this trigger")
            return SyncReport(outcome="skipped")

        report = SyncReport(outcome="failed")
        try:
            report = self._run_guarded()
        finally:
            self._state.transition(SyncStatus.IDLE)
        return report

    def _run_guarded(self) -> SyncReport:
        mode = None
        progress = {"batches": 0, "records": 0, "skipped": 0, "patients": set()}
        try:
            self.store.update_cursor(
                last_run_status=SyncStatus.RUNNING,
                last_run_started_at=self._clock(),
                last_run_finished_at=None,
                last_run_error=None,
            )
            cursor = self.store.get_cursor()
            if cursor.last_date_synced is None:
                mode = "initial"
                from_date = self._initial_from_date()
            else:
                mode = "incremental"
                from_date = cursor.last_date_synced

            logger.info(f"Starting {mode} sync from {from_date} for {len(self.item_codes)} lab items")
            self._page(from_date, progress)

            if mode == "initial":
                self.materializer.rebuild_all()

            self.store.update_cursor(
                last_run_status=SyncStatus.SUCCESS,
                last_run_finished_at=self._clock(),
                last_run_error=None,
            )
            cursor_date = self.store.get_cursor().last_date_synced
            self._state.transition(SyncStatus.SUCCESS)
            logger.info(
                f"Sync completed: {progress['batches']} batches, {progress['records']} records, "
                f"{len(progress['patients'])} patients, cursor at {cursor_date}"
            )
            return SyncReport(
                outcome="success",
                mode=mode,
                batches=progress["batches"],
                records=progress["records"],
                skipped_records=progress["skipped"],
                affected_patients=len(progress["patients"]),
                cursor_date=cursor_date,
            )

        except Exception as e:
            logger.error(f"Sync failed: {str(e)}", exc_info=True)
            self._state.transition(SyncStatus.FAILED)
            cursor_date = None
            try:
                self.store.update_cursor(
                    last_run_status=SyncStatus.FAILED,
                    last_run_finished_at=self._clock(),
                    last_run_error=str(e) or type(e).__name__,
                )
                cursor_date = self.store.get_cursor().last_date_synced
            except Exception as status_error:
                logger.error(f"Failed to record sync failure: {str(status_error)}", exc_info=True)
            return SyncReport(
                outcome="failed",
                mode=mode,
                batches=progress["batches"],
                records=progress["records"],
                skipped_records=progress["skipped"],
                affected_patients=len(progress["patients"]),
                cursor_date=cursor_date,
                error=str(e) or type(e).__name__,
            )

    def _normalize(self, rows: Sequence[Record], seen_at: datetime) -> tuple[list[LabObservation], int]:
        observations = []
        for row in rows:
            observation = LabObservation.from_record(row, seen_at)
            if observation is not None:
                observations.append(observation)
        skipped = len(rows) - len(observations)
        if skipped:
            logger.debug(f"Skipped {skipped} malformed lab rows in batch")
        return observations, skipped

    def _page(self, from_date: str, progress: dict) -> None:
        while True:
            rows = self.source.read_batch(self.item_codes, from_date, self.batch_size)
            if not rows:
                break

            progress["batches"] += 1
            observations, skipped = self._normalize(rows, self._clock())
            progress["skipped"] += skipped

            row_dates = [roc_calendar.normalize(row.get(LabFields.DATE)) for row in rows]
            row_dates = [d for d in row_dates if d is not None]
            if not row_dates:
                raise SyncError(f"Batch starting at {from_date} has no valid observation dates")
            last_date = max(row_dates)

            # The cursor moves only after the batch and its wide rows are committed.
            affected = distinct_in_order(o.patient_key for o in observations)
            if observations:
                self.store.upsert_raw_batch(observations)
                self.materializer.refresh(affected)
                self.store.advance_cursor(max(o.observation_date for o in observations))

            progress["records"] += len(observations)
            progress["patients"].update(affected)
            logger.info(
                f"Batch {progress['batches']}: {len(observations)} records from {from_date} to {last_date}"
            )

            if len(rows) < self.batch_size:
                break

            next_from = roc_calendar.add_days(last_date, 1)
            if next_from is None or next_from <= from_date:
                raise SyncError(f"Paging cannot advance past {last_date}")
            from_date = next_from
