"""Patient Query Service.

Assembles everything the presentation layer shows for one patient: snapshot
data from the RecordStore, the latest lab values from the wide view, and the
output of the EligibilityEngine.

Architecture:
    - Independent reads fan out on a thread pool and are joined before rules run
    - All reads of one query use the same snapshot generation
    - Failures are returned as Result.failure_result, never raised
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from typing import Any, Callable, Mapping, Optional, Sequence

from clinisync.domain import roc_calendar
from clinisync.domain.item_mapping import LabItemMapping
from clinisync.domain.legacy_schema import (
    APPOINTMENT_TABLE,
    MEDICATION_KIND,
    ORDER_TABLE,
    PATIENT_TABLE,
    PREVENTIVE_TAGS,
    REPORT_TABLE,
    VISIT_LEDGER_TABLE,
    VISIT_TABLE,
    AppointmentFields,
    OrderFields,
    PatientFields,
    ReportFields,
    VisitFields,
    VisitLedgerFields,
)
from clinisync.domain.models import (
    ClinicalEvent,
    ClinicalHistory,
    EventKind,
    LabSnapshot,
    LabValue,
    PatientQueryResult,
    PatientRecord,
    normalize_patient_key,
)
from clinisync.domain.ports import LabStorePort, Record, Result
from clinisync.domain.services.eligibility import EligibilityEngine, PatientContext
from clinisync.domain.services.record_store import RecordStore, SnapshotGeneration, TableRead

logger = logging.getLogger(__name__)


def normalize_field_names(record: Record) -> dict[str, Any]:
    """Lower-case field names and trimmed text values for presentation."""
    normalized = {}
    for name, value in record.items():
        normalized[name.lower()] = value.strip() if isinstance(value, str) else value
    return normalized


def lab_snapshot_from_row(row: Optional[Mapping[str, Any]], item_mapping: LabItemMapping) -> Optional[LabSnapshot]:
    """Group a wide row into category -> item -> (value, date)."""
    if row is None:
        return None
    categories: dict[str, dict[str, LabValue]] = {name: {} for name in item_mapping.categories}
    for item in item_mapping.tracked_items():
        categories[item.category][item.key] = LabValue(
            value=row.get(item.column),
            date=row.get(item.date_column),
        )
    return LabSnapshot(
        patient_key=row["patient_key"],
        categories=categories,
        updated_at=row.get("updated_at"),
    )


def _latest(records: Sequence[Record], date_field: str, time_field: str) -> Optional[Record]:
    if not records:
        return None
    return max(records, key=lambda r: (
        roc_calendar.normalize(r.get(date_field)) or "",
        str(r.get(time_field) or "").strip(),
    ))


class PatientQueryService:
    """The ``query_patient`` surface consumed by the API and the CLI.

    Parameters:
        record_store: In-memory legacy snapshot
        lab_store: Durable lab store holding the wide view
        item_mapping: Tracked lab items
        engine: Eligibility engine
        visit_history_limit: Maximum visit-history rows returned
        appointment_limit: Maximum appointment rows returned
        today: Clock for age and rule evaluation
        max_workers: Size of the fan-out pool
    """

    def __init__(
        self,
        record_store: RecordStore,
        lab_store: LabStorePort,
        item_mapping: LabItemMapping,
        engine: EligibilityEngine,
        visit_history_limit: int = 10,
        appointment_limit: int = 10,
        today: Callable[[], date] = date.today,
        max_workers: int = 6,
    ):
        self.record_store = record_store
        self.lab_store = lab_store
        self.item_mapping = item_mapping
        self.engine = engine
        self.visit_history_limit = visit_history_limit
        self.appointment_limit = appointment_limit
        self._today = today
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="patient-query")

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _patient_rows(self, generation: SnapshotGeneration, table: str, key_field: str,
                      patient_key: str) -> tuple[list[Record], TableRead]:
        read = self.record_store.read(table, generation)
        rows = [r for r in read.records if normalize_patient_key(r.get(key_field)) == patient_key]
        return rows, read

    def _demographics(self, generation, patient_key, today):
        rows, read = self._patient_rows(generation, PATIENT_TABLE, PatientFields.KEY, patient_key)
        record = PatientRecord.from_record(rows[0], today) if rows else None
        return record, read

    def _clinical_history(self, generation, patient_key):
        visits, visit_read = self._patient_rows(generation, VISIT_TABLE, VisitFields.KEY, patient_key)
        orders, order_read = self._patient_rows(generation, ORDER_TABLE, OrderFields.KEY, patient_key)
        medications = [r for r in orders if str(r.get(OrderFields.KIND) or "").strip() == MEDICATION_KIND]

        last_visit = _latest(visits, VisitFields.DATE, VisitFields.TIME)
        last_medication = _latest(medications, OrderFields.DATE, OrderFields.TIME)
        history = ClinicalHistory(
            last_visit=normalize_field_names(last_visit) if last_visit else None,
            last_medication=normalize_field_names(last_medication) if last_medication else None,
        )
        order_events = [
            e for e in (
                ClinicalEvent.from_record(r, EventKind.MANAGEMENT, OrderFields.KEY, OrderFields.DATE,
                                          OrderFields.TIME, code_field=OrderFields.CODE)
                for r in orders
            ) if e is not None
        ]
        return history, (order_events if order_read.available else None), [visit_read, order_read]

    def _appointments(self, generation, patient_key):
        rows, read = self._patient_rows(generation, APPOINTMENT_TABLE, AppointmentFields.KEY, patient_key)
        ordered = sorted(
            rows,
            key=lambda r: tuple(str(r.get(f) or "").strip() for f in (
                AppointmentFields.DATE, AppointmentFields.SESSION, AppointmentFields.NUMBER)),
            reverse=True,
        )
        return [normalize_field_names(r) for r in ordered[:self.appointment_limit]], read

    def _visit_ledger(self, generation, patient_key, today):
        """Split the visit ledger into visit history and the 5-year preventive history."""
        rows, read = self._patient_rows(generation, VISIT_LEDGER_TABLE, VisitLedgerFields.KEY, patient_key)
        window_start = self.engine.preventive_window_start(today)

        events = []
        preventive_rows = []
        for row in rows:
            event = ClinicalEvent.from_record(
                row, EventKind.PREVENTIVE_CARE, VisitLedgerFields.KEY, VisitLedgerFields.DATE,
                VisitLedgerFields.TIME, tag_field=VisitLedgerFields.TAG,
            )
            if event is None or event.tag not in PREVENTIVE_TAGS:
                continue
            if window_start is not None and event.event_date < window_start:
                continue
            events.append(event)
            preventive_rows.append((event.sort_key, row))

        visit_rows = sorted(
            rows,
            key=lambda r: (
                roc_calendar.normalize(r.get(VisitLedgerFields.DATE)) or "",
                str(r.get(VisitLedgerFields.TIME) or "").strip(),
            ),
            reverse=True,
        )
        preventive_rows.sort(key=lambda pair: pair[0], reverse=True)
        return (
            [normalize_field_names(r) for r in visit_rows[:self.visit_history_limit]],
            [normalize_field_names(r) for _, r in preventive_rows],
            events if read.available else None,
            read,
        )

    def _reports(self, generation, patient_key):
        rows, read = self._patient_rows(generation, REPORT_TABLE, ReportFields.KEY, patient_key)
        reports: dict[str, str] = {}
        for row in rows:
            report_date = roc_calendar.normalize(row.get(ReportFields.DATE))
            if report_date is not None and report_date not in reports:
                reports[report_date] = str(row.get(ReportFields.TEXT) or "").strip()
        return reports, read

    def lab_snapshot(self, patient_key: str) -> Optional[LabSnapshot]:
        return lab_snapshot_from_row(self.lab_store.get_wide_row(patient_key), self.item_mapping)

    def query_patient(self, patient_key: Any) -> Result[PatientQueryResult]:
        """Assemble the full query result for one patient.

        An unknown patient is a normal result with ``demographics=None``.
        A malformed key or a storage failure is a failure result.
        """
        normalized = normalize_patient_key(patient_key)
        if normalized is None:
            return Result.failure_result(
                f"Invalid patient key: {patient_key!r}",
                error_type="MalformedId",
                error_details={"patient_key": str(patient_key)},
            )

        start = time.perf_counter()
        timings: dict[str, float] = {}
        today = self._today()
        generation = self.record_store.generation

        try:
            lab_future = self._executor.submit(self.lab_snapshot, normalized)
            demographics_future = self._executor.submit(self._demographics, generation, normalized, today)
            history_future = self._executor.submit(self._clinical_history, generation, normalized)
            appointments_future = self._executor.submit(self._appointments, generation, normalized)
            ledger_future = self._executor.submit(self._visit_ledger, generation, normalized, today)
            reports_future = self._executor.submit(self._reports, generation, normalized)

            demographics, demographics_read = demographics_future.result()
            clinical_history, order_events, history_reads = history_future.result()
            appointments, appointments_read = appointments_future.result()
            visit_history, preventive_history, preventive_events, ledger_read = ledger_future.result()
            reports, reports_read = reports_future.result()
            timings["source_reads"] = round((time.perf_counter() - start) * 1000, 2)

            lab_start = time.perf_counter()
            lab_snapshot = lab_future.result()
            timings["lab_view"] = round((time.perf_counter() - lab_start) * 1000, 2)

            rules_start = time.perf_counter()
            context = PatientContext(
                patient_key=normalized,
                today=today,
                age=demographics.age if demographics else None,
                demographics=demographics,
                preventive_events=preventive_events,
                order_events=order_events,
                reports=reports,
                lab_snapshot=lab_snapshot,
            )
            evaluation = self.engine.evaluate(context)
            timings["rules"] = round((time.perf_counter() - rules_start) * 1000, 2)

        except Exception as e:
            logger.error(f"Error querying patient {normalized}: {str(e)}", exc_info=True)
            return Result.failure_result(e, error_details={"patient_key": normalized})

        reads = [demographics_read, appointments_read, ledger_read, reports_read, *history_reads]
        degraded = sorted({r.table for r in reads if r.degraded})
        timings["total"] = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            f"Query for patient {normalized}: total {timings['total']}ms "
            f"(source {timings['source_reads']}ms, labs {timings['lab_view']}ms, rules {timings['rules']}ms)"
        )

        return Result.success_result(PatientQueryResult(
            patient_key=normalized,
            demographics=demographics,
            lab_snapshot=lab_snapshot,
            clinical_history=clinical_history,
            appointments=appointments,
            visit_history=visit_history,
            preventive_care_history=preventive_history,
            chronic_disease_records=evaluation.chronic_disease_records,
            examination_records=evaluation.examination_records,
            eligibility=evaluation.eligibility,
            action_list=evaluation.action_list,
            degraded_tables=degraded,
            query_timestamp=datetime.now(),
            timings=timings,
        ))

    def find_patient_by_national_id(self, national_id: str) -> Optional[dict[str, Any]]:
        """Look up a patient by national ID (case-insensitive, trimmed)."""
        wanted = (national_id or "").strip().upper()
        if not wanted:
            return None
        for row in self.record_store.query(PATIENT_TABLE):
            if str(row.get(PatientFields.NATIONAL_ID) or "").strip().upper() == wanted:
                patient_key = normalize_patient_key(row.get(PatientFields.KEY))
                if patient_key is None:
                    continue
                return {
                    "patient_key": patient_key,
                    "name": str(row.get(PatientFields.NAME) or "").strip() or None,
                    "national_id": wanted,
                }
        return None
