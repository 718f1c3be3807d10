"""Unit tests for the DuckDB lab store adapter."""

from datetime import datetime

import pytest

from clinisync.adapters.storage.duckdb_lab_store import DuckDBLabStore
from clinisync.domain.models import LabObservation, SyncStatus
from clinisync.domain.ports import StorageError
from clinisync.infrastructure.config_manager import DatabaseConfig


def observation(patient_key, item_code, observation_date, value, seen_at=datetime(2025, 11, 1, 9, 0)):
    return LabObservation(
        patient_key=patient_key,
        item_code=item_code,
        observation_date=observation_date,
        value=value,
        unit="%",
        source_seen_at=seen_at,
    )


class TestInitialization:
    """Test construction and schema setup."""

    def test_rejects_other_database_types(self):
        """Test that a non-DuckDB config is refused."""
        config = DatabaseConfig.model_construct(db_type="postgresql", db_path=None)
        with pytest.raises(StorageError):
            DuckDBLabStore(db_config=config)

    def test_missing_directory(self, tmp_path):
        """Test that a database path in a missing directory is refused."""
        with pytest.raises(StorageError):
            DuckDBLabStore(db_path=str(tmp_path / "missing" / "labs.duckdb"))

    def test_schema_is_idempotent_and_adds_columns(self, lab_store, item_mapping):
        """Test that re-initializing keeps data and adds new wide columns."""
        lab_store.upsert_raw_batch([observation("0000001", "09006C", "1130101", "7.0")])
        columns = dict(item_mapping.value_columns(), ferritin="DOUBLE", ferritin_date="VARCHAR")

        result = lab_store.initialize_schema(columns)

        assert result.is_success()
        assert lab_store.raw_row_count() == 1
        assert "ferritin" in lab_store.wide_table_frame().columns

    def test_rejects_unsupported_column_type(self, lab_store):
        """Test that only DOUBLE and VARCHAR wide columns are accepted."""
        result = lab_store.initialize_schema({"blob_item": "BLOB"})
        assert result.is_failure()
        assert result.error_type == "StorageError"

    def test_file_database_persists(self, tmp_path, item_mapping):
        """Test that a file-backed store keeps rows across connections."""
        path = str(tmp_path / "labs.duckdb")
        store = DuckDBLabStore(db_config=DatabaseConfig(db_path=path))
        store.initialize_schema(item_mapping.value_columns())
        store.upsert_raw_batch([observation("0000001", "09006C", "1130101", "7.0")])
        store.close()

        reopened = DuckDBLabStore(db_path=path)
        try:
            assert reopened.raw_row_count() == 1
        finally:
            reopened.close()


class TestRawUpsert:
    """Test the replace-on-conflict raw table."""

    def test_conflict_replaces_value(self, lab_store):
        """Test that the same key is updated, not duplicated."""
        lab_store.upsert_raw_batch([observation("0000001", "09006C", "1130101", "7.0")])
        lab_store.upsert_raw_batch([observation("0000001", "09006C", "1130101", "7.4")])

        latest = lab_store.latest_observations(["0000001"], ["09006C"])
        assert lab_store.raw_row_count() == 1
        assert latest.iloc[0]["value"] == "7.4"

    def test_in_batch_duplicates_collapse(self, lab_store):
        """Test that duplicate keys inside one batch keep the last occurrence."""
        written = lab_store.upsert_raw_batch([
            observation("0000001", "09006C", "1130101", "7.0"),
            observation("0000001", "09006C", "1130101", "7.9"),
        ])
        assert written == 1
        assert lab_store.latest_observations(["0000001"], ["09006C"]).iloc[0]["value"] == "7.9"

    def test_empty_batch(self, lab_store):
        """Test that an empty batch writes nothing."""
        assert lab_store.upsert_raw_batch([]) == 0

    def test_latest_observation_per_item(self, lab_store):
        """Test that the latest date wins per patient and item."""
        lab_store.upsert_raw_batch([
            observation("0000001", "09006C", "1130101", "7.0"),
            observation("0000001", "09006C", "1130501", "6.4"),
            observation("0000001", "09001C", "1120101", "200"),
            observation("0000002", "09006C", "1140101", "9.1"),
        ])
        latest = lab_store.latest_observations(["0000001"], ["09006C", "09001C"])

        by_item = {row.item_code: row.observation_date for row in latest.itertuples()}
        assert by_item == {"09006C": "1130501", "09001C": "1120101"}
        assert lab_store.distinct_patients() == ["0000001", "0000002"]
        assert lab_store.max_observation_date() == "1140101"


class TestWideRows:
    """Test wide-row writes."""

    def test_insert_then_update_changed_columns(self, lab_store):
        """Test that updates touch only the supplied columns."""
        lab_store.apply_wide_changes({"0000001": {"hba1c": 7.0, "hba1c_date": "1130101"}}, {})
        lab_store.apply_wide_changes({}, {"0000001": {"chol": 180.0, "chol_date": "1130201"}})

        row = lab_store.get_wide_row("0000001")
        assert row["hba1c"] == 7.0
        assert row["chol"] == 180.0
        assert row["ldl_c"] is None
        assert row["updated_at"] is not None

    def test_fetch_and_replace(self, lab_store):
        """Test batch fetch by key and replacing the whole view."""
        lab_store.apply_wide_changes({
            "0000001": {"hba1c": 7.0},
            "0000002": {"hba1c": 8.0},
        }, {})
        assert set(lab_store.fetch_wide_rows(["0000002", "0000009"])) == {"0000002"}

        assert lab_store.replace_wide({"0000003": {"chol": 190.0, "chol_date": "1130301"}}) == 1
        assert lab_store.get_wide_row("0000001") is None
        assert lab_store.get_wide_row("0000003")["chol"] == 190.0

    def test_failed_replace_keeps_old_rows(self, lab_store):
        """Test that a failed replace leaves the previous view intact."""
        lab_store.apply_wide_changes({"0000001": {"hba1c": 7.0}}, {})

        with pytest.raises(StorageError):
            lab_store.replace_wide({
                "0000002": {"hba1c": 8.0},
                "0000003": {"no_such_column": 1.0},
            })

        assert lab_store.get_wide_row("0000001")["hba1c"] == 7.0
        assert lab_store.get_wide_row("0000002") is None

    def test_unknown_column_rolls_back(self, lab_store):
        """Test that a failed write leaves no partial rows behind."""
        with pytest.raises(StorageError):
            lab_store.apply_wide_changes({
                "0000001": {"hba1c": 7.0},
                "0000002": {"no_such_column": 1.0},
            }, {})
        assert lab_store.get_wide_row("0000001") is None

    def test_invalid_identifier(self, lab_store):
        """Test that column names are validated before reaching SQL."""
        with pytest.raises(StorageError):
            lab_store.apply_wide_changes({"0000001": {'hba1c"; DROP TABLE x; --': 1.0}}, {})


class TestCursor:
    """Test the single sync_meta row."""

    def test_initial_cursor_is_empty(self, lab_store):
        """Test that a new store has never synced."""
        cursor = lab_store.get_cursor()
        assert cursor.last_date_synced is None
        assert cursor.last_run_status is None

    def test_cursor_only_moves_forward(self, lab_store):
        """Test that advancing to an earlier date is ignored."""
        assert lab_store.advance_cursor("1130501") == "1130501"
        assert lab_store.advance_cursor("1130101") == "1130501"
        assert lab_store.get_cursor().last_date_synced == "1130501"

    def test_update_run_fields(self, lab_store):
        """Test persisting run status fields."""
        started = datetime(2025, 11, 15, 8, 30)
        lab_store.update_cursor(last_run_status=SyncStatus.FAILED, last_run_started_at=started,
                                last_run_error="boom")

        cursor = lab_store.get_cursor()
        assert cursor.last_run_status is SyncStatus.FAILED
        assert cursor.last_run_started_at == started
        assert cursor.last_run_error == "boom"

    def test_update_unknown_field(self, lab_store):
        """Test that unknown cursor fields raise StorageError."""
        with pytest.raises(StorageError):
            lab_store.update_cursor(last_mood="fine")


def test_ping_and_close():
    """Test ping reconnects lazily after close."""
    store = DuckDBLabStore()
    assert store.ping() is True
    store.close()
    assert store.ping() is True
    store.close()
