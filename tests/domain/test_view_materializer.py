"""Tests for the latest-value wide view materializer."""

from datetime import datetime

import pytest

from clinisync.domain.models import LabObservation
from clinisync.domain.services.view_materializer import DerivedViewMaterializer, parse_numeric_value


def observation(patient_key, item_code, observation_date, value, seen_at=datetime(2025, 11, 1)):
    return LabObservation(
        patient_key=patient_key,
        item_code=item_code,
        observation_date=observation_date,
        value=value,
        source_seen_at=seen_at,
    )


@pytest.fixture
def materializer(lab_store, item_mapping):
    return DerivedViewMaterializer(lab_store, item_mapping)


class TestParseNumericValue:
    """Test leading-number parsing of legacy values."""

    @pytest.mark.parametrize("raw,expected", [
        ("9.5", 9.5),
        (" 7 ", 7.0),
        ("6.8%", 6.8),
        ("-1.5", -1.5),
        (".5", 0.5),
        ("1e2", 100.0),
    ])
    def test_numeric_prefix(self, raw, expected):
        """Test that the leading number is extracted."""
        assert parse_numeric_value(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "positive", "<5", "N/A"])
    def test_non_numeric(self, raw):
        """Test that non-numeric values become None."""
        assert parse_numeric_value(raw) is None


class TestRefresh:
    """Test per-patient refresh of the wide view."""

    def test_latest_observation_wins(self, lab_store, materializer):
        """Test that the wide row holds the value of the latest date."""
        lab_store.upsert_raw_batch([
            observation("0000001", "09006C", "1130101", "8.0"),
            observation("0000001", "09006C", "1130601", "6.5"),
            observation("0000001", "09006C", "1120101", "9.9"),
        ])
        materializer.refresh(["0000001"])

        row = lab_store.get_wide_row("0000001")
        assert row["hba1c"] == 6.5
        assert row["hba1c_date"] == "1130601"
        assert row["egfr"] is None

    def test_text_items_keep_text(self, lab_store, materializer):
        """Test that text-typed items are stored verbatim."""
        lab_store.upsert_raw_batch([observation("0000002", "14032C", "1130101", "Negative")])
        materializer.refresh(["0000002"])
        assert lab_store.get_wide_row("0000002")["hbsag"] == "Negative"

    def test_non_numeric_value_is_null(self, lab_store, materializer):
        """Test that an unparseable numeric item is stored as NULL with its date."""
        lab_store.upsert_raw_batch([observation("0000003", "09006C", "1130101", "hemolysis")])
        materializer.refresh(["0000003"])

        row = lab_store.get_wide_row("0000003")
        assert row["hba1c"] is None
        assert row["hba1c_date"] == "1130101"

    def test_refresh_is_idempotent(self, lab_store, materializer):
        """Test that a second refresh with no new data writes nothing."""
        lab_store.upsert_raw_batch([observation("0000001", "09006C", "1130101", "8.0")])
        assert materializer.refresh(["0000001"]) == 1
        before = lab_store.wide_table_frame()

        assert materializer.refresh(["0000001"]) == 0
        assert lab_store.wide_table_frame().equals(before)

    def test_refresh_updates_changed_columns(self, lab_store, materializer):
        """Test that a newer observation updates the existing wide row."""
        lab_store.upsert_raw_batch([observation("0000001", "09006C", "1130101", "8.0")])
        materializer.refresh(["0000001"])
        lab_store.upsert_raw_batch([observation("0000001", "09001C", "1130201", "180")])
        materializer.refresh(["0000001"])

        row = lab_store.get_wide_row("0000001")
        assert row["hba1c"] == 8.0
        assert row["chol"] == 180.0

    def test_untracked_patients_are_ignored(self, lab_store, materializer):
        """Test that patients without tracked observations get no wide row."""
        lab_store.upsert_raw_batch([observation("0000004", "99999X", "1130101", "1")])
        assert materializer.refresh(["0000004"]) == 0
        assert lab_store.get_wide_row("0000004") is None


class TestRebuildAll:
    """Test full rebuild of the wide view."""

    def test_rebuild_matches_incremental(self, lab_store, materializer):
        """Test that a rebuild produces the same values as per-patient refreshes."""
        lab_store.upsert_raw_batch([
            observation("0000001", "09006C", "1130101", "8.0"),
            observation("0000002", "09044C", "1130101", "120"),
        ])
        materializer.refresh(["0000001", "0000002"])
        incremental = lab_store.wide_table_frame().drop(columns=["updated_at"])

        assert materializer.rebuild_all() == 2
        rebuilt = lab_store.wide_table_frame().drop(columns=["updated_at"])
        assert rebuilt.equals(incremental)
        assert rebuilt.loc[rebuilt["patient_key"] == "0000002", "ldl_c"].iloc[0] == 120.0

    def test_rebuild_keeps_view_readable(self, lab_store, materializer, monkeypatch):
        """Test that existing rows stay visible until the rebuilt view is swapped in."""
        lab_store.upsert_raw_batch([observation("0000001", "09006C", "1130101", "8.0")])
        materializer.refresh(["0000001"])
        lab_store.apply_wide_changes({"0000009": {"hba1c": 5.0}}, {})

        seen_during_rebuild = []
        latest_observations = lab_store.latest_observations

        def observe(patient_keys, item_codes):
            seen_during_rebuild.append(lab_store.get_wide_row("0000001"))
            return latest_observations(patient_keys, item_codes)

        monkeypatch.setattr(lab_store, "latest_observations", observe)

        assert materializer.rebuild_all() == 1
        assert seen_during_rebuild and all(row["hba1c"] == 8.0 for row in seen_during_rebuild)
        assert lab_store.get_wide_row("0000001")["hba1c"] == 8.0
        assert lab_store.get_wide_row("0000009") is None
