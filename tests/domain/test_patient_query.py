"""Tests for the patient query surface, from synced labs to the action list."""

import pytest

from clinisync.domain.services.eligibility import EligibilityEngine
from clinisync.domain.services.patient_query import PatientQueryService, normalize_field_names
from clinisync.domain.services.record_store import RecordStore
from clinisync.domain.services.sync_coordinator import SyncCoordinator
from clinisync.domain.services.view_materializer import DerivedViewMaterializer

TABLES = {
    "CO01M": [
        {"KCSTMR": "1", "MNAME": "Chen", "MPERSONID": "A123456789", "MBIRTHDT": "0600101",
         "MSEX": "1", "MTELH": "", "MADDR": "Taipei"},
        {"KCSTMR": "2", "MNAME": "Wang", "MPERSONID": "B223456789", "MBIRTHDT": "0800315",
         "MSEX": "2", "MTELH": "0912", "MADDR": "Tainan"},
    ],
    "CO02M": [
        {"KCSTMR": "1", "IDATE": "1140201", "ITIME": "0900", "DNO": "A002", "PTP": "M"},
        {"KCSTMR": "1", "IDATE": "1140301", "ITIME": "0900", "DNO": "A001", "PTP": "M"},
        {"KCSTMR": "1", "IDATE": "1140501", "ITIME": "1000", "DNO": "09006C", "PTP": "L"},
    ],
    "CO02F": [],
    "CO03M": [
        {"KCSTMR": "1", "IDATE": "1140601", "ITIME": "0800"},
        {"KCSTMR": "1", "IDATE": "1140701", "ITIME": "0900"},
        {"KCSTMR": "2", "IDATE": "1140801", "ITIME": "0900"},
    ],
    "CO03L": [
        {"KCSTMR": "1", "DATE": "1130101", "TIME": "0800", "LISRS": "AU"},
        {"KCSTMR": "1", "DATE": "1140101", "TIME": "0800", "LISRS": "01"},
        {"KCSTMR": "1", "DATE": "1120101", "TIME": "0800", "LISRS": "3D"},
    ],
    "co05b": [
        {"KCSTMR": "1", "TBKDT": "1141120", "TSTS": "1", "TARTIME": "05"},
        {"KCSTMR": "1", "TBKDT": "1141201", "TSTS": "1", "TARTIME": "02"},
        {"KCSTMR": "1", "TBKDT": "1141120", "TSTS": "2", "TARTIME": "01"},
    ],
}


@pytest.fixture
def source(make_source):
    return make_source(tables={name: list(rows) for name, rows in TABLES.items()})


@pytest.fixture
def make_service(lab_store, item_mapping, today):
    services = []

    def factory(source, preload=True, **kwargs):
        record_store = RecordStore(source, retention_years_by_table={"CO03L": 5}, today=lambda: today)
        if preload:
            record_store.preload()
        service = PatientQueryService(
            record_store,
            lab_store,
            item_mapping,
            EligibilityEngine(),
            today=lambda: today,
            **kwargs,
        )
        services.append(service)
        return service

    yield factory
    for service in services:
        service.close()


def sync_labs(source, lab_store, item_mapping, today, clock):
    coordinator = SyncCoordinator(
        source,
        lab_store,
        DerivedViewMaterializer(lab_store, item_mapping),
        item_codes=item_mapping.item_codes(),
        today=lambda: today,
        clock=clock,
    )
    return coordinator.run()


class TestEndToEnd:
    """Test a lab observation flowing from the source to the action list."""

    def test_single_high_glycemic_observation(self, make_source, make_lab_row, make_service,
                                              lab_store, item_mapping, today, clock):
        """Test that one synced HbA1c of 9.5 yields the wide row and a priority-1 action."""
        source = make_source(
            tables={"CO01M": [{"KCSTMR": "1", "MNAME": "Chen", "MBIRTHDT": "0600101"}]},
            lab_rows=[make_lab_row("1", "09006C", "1130101", "9.5")],
        )
        assert sync_labs(source, lab_store, item_mapping, today, clock).outcome == "success"

        row = lab_store.get_wide_row("0000001")
        assert row["hba1c"] == 9.5
        assert row["hba1c_date"] == "1130101"

        result = make_service(source).query_patient("1")

        assert result.is_success()
        payload = result.value
        assert payload.lab_snapshot.get("HBA1C").value == 9.5
        assert payload.action_list[0].priority == 1
        assert payload.action_list[0].category == "lab"


class TestQueryPatient:
    """Test the assembled query result."""

    def test_malformed_key_is_a_failure(self, source, make_service):
        """Test that a non-numeric key is reported as MalformedId."""
        result = make_service(source).query_patient("12A")

        assert not result.is_success()
        assert result.error_type == "MalformedId"

    def test_unknown_patient_has_no_demographics(self, source, make_service):
        """Test that an unknown key is a normal result without demographics."""
        result = make_service(source).query_patient("999")

        assert result.is_success()
        assert result.value.patient_key == "0000999"
        assert result.value.demographics is None
        assert result.value.lab_snapshot is None
        assert result.value.appointments == []

    def test_demographics_and_contact_action(self, source, make_service):
        """Test demographics are parsed and a missing phone raises a contact action."""
        payload = make_service(source).query_patient("0000001").value

        assert payload.demographics.name == "Chen"
        assert payload.demographics.age == 54
        assert any(a.category == "contact" and "phone" in a.message for a in payload.action_list)

    def test_clinical_history(self, source, make_service):
        """Test that the latest visit and latest medication dispense are returned."""
        history = make_service(source).query_patient("1").value.clinical_history

        assert history.last_visit["idate"] == "1140701"
        assert history.last_medication["dno"] == "A001"

    def test_appointments_are_latest_first_and_limited(self, source, make_service):
        """Test appointment ordering by date, session and number, with a limit."""
        appointments = make_service(source, appointment_limit=2).query_patient("1").value.appointments

        assert [(a["tbkdt"], a["tsts"]) for a in appointments] == [("1141201", "1"), ("1141120", "2")]

    def test_visit_and_preventive_history(self, source, make_service):
        """Test the ledger is split into visit history and preventive-care history."""
        payload = make_service(source).query_patient("1").value

        assert [v["date"] for v in payload.visit_history] == ["1140101", "1130101", "1120101"]
        assert [p["lisrs"] for p in payload.preventive_care_history] == ["AU", "3D"]

    def test_every_rule_is_evaluated(self, source, make_service):
        """Test that the eligibility list covers all preventive-care rules."""
        eligibility = make_service(source).query_patient("1").value.eligibility

        assert {r.rule_id for r in eligibility} == {
            "adult_health_phase1",
            "adult_health_phase2",
            "colorectal_screening",
            "oral_screening",
            "flu_vaccine",
            "covid_vaccine",
            "pneumococcal_vaccine",
        }

    def test_degraded_tables_are_reported(self, source, make_service):
        """Test that reads served outside the snapshot are listed as degraded."""
        source.fail_tables.add("co05b")
        payload = make_service(source).query_patient("1").value

        assert payload.degraded_tables == ["co05b"]
        assert payload.appointments == []

    def test_timings_are_recorded(self, source, make_service):
        """Test that per-stage timings are part of the result."""
        timings = make_service(source).query_patient("1").value.timings
        assert {"source_reads", "lab_view", "rules", "total"} <= set(timings)


class TestNationalIdLookup:
    """Test patient lookup by national ID."""

    def test_lookup_is_case_insensitive(self, source, make_service):
        """Test that a lower-case, padded ID finds the patient."""
        found = make_service(source).find_patient_by_national_id("  b223456789 ")
        assert found == {"patient_key": "0000002", "name": "Wang", "national_id": "B223456789"}

    def test_lookup_miss(self, source, make_service):
        """Test that an unknown or blank ID returns None."""
        service = make_service(source)
        assert service.find_patient_by_national_id("Z999999999") is None
        assert service.find_patient_by_national_id("") is None


def test_normalize_field_names():
    """Test that field names are lower-cased and text values trimmed."""
    assert normalize_field_names({"IDATE": " 1140101 ", "QTY": 2}) == {"idate": "1140101", "qty": 2}
