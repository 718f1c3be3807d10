"""Shared fixtures: an in-memory legacy source, a DuckDB lab store and a fixed clock."""

from datetime import date, datetime

import pytest

from clinisync.adapters.storage.duckdb_lab_store import DuckDBLabStore
from clinisync.domain import roc_calendar
from clinisync.domain.item_mapping import LabItemMapping
from clinisync.domain.legacy_schema import LabFields
from clinisync.domain.ports import LegacySourcePort, SourceUnavailableError

TODAY = date(2025, 11, 15)


class FakeLegacySource(LegacySourcePort):
    """Legacy source over in-memory rows, paging like the CSV export source."""

    def __init__(self, tables=None, lab_rows=None):
        self.tables = dict(tables or {})
        self.lab_rows = list(lab_rows or [])
        self.read_table_calls = []
        self.batch_calls = []
        self.fail_tables = set()

    def read_table(self, name):
        self.read_table_calls.append(name)
        if name in self.fail_tables or name not in self.tables:
            raise SourceUnavailableError(f"Legacy table not found: {name}", table=name)
        return [dict(row) for row in self.tables[name]]

    def read_batch(self, item_codes, from_date, limit):
        self.batch_calls.append((tuple(item_codes), from_date, limit))
        rows = []
        for row in self.lab_rows:
            row_date = roc_calendar.normalize(row.get(LabFields.DATE))
            if row_date is None or row_date < from_date:
                continue
            if item_codes and row.get(LabFields.ITEM) not in item_codes:
                continue
            rows.append((row_date, row.get(LabFields.TIME, ""), row))
        rows.sort(key=lambda r: (r[0], r[1]))
        if len(rows) > limit:
            boundary = rows[limit - 1][0]
            rows = [r for r in rows if r[0] <= boundary]
        return [dict(r[2]) for r in rows]

    def describe(self):
        return {"adapter": "fake", "tables": sorted(self.tables)}


def lab_row(patient_key, item_code, observation_date, value, unit="", time=""):
    return {
        LabFields.KEY: patient_key,
        LabFields.ITEM: item_code,
        LabFields.DATE: observation_date,
        LabFields.TIME: time,
        LabFields.VALUE: value,
        LabFields.UNIT: unit,
    }


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def clock():
    return lambda: datetime(2025, 11, 15, 8, 30)


@pytest.fixture
def item_mapping():
    return LabItemMapping.default()


@pytest.fixture
def fake_source():
    return FakeLegacySource()


@pytest.fixture
def make_source():
    return FakeLegacySource


@pytest.fixture
def make_lab_row():
    return lab_row


@pytest.fixture
def lab_store(item_mapping):
    """Initialized in-memory DuckDB lab store."""
    store = DuckDBLabStore(db_path=":memory:")
    result = store.initialize_schema(item_mapping.value_columns())
    assert result.is_success(), result.error
    yield store
    store.close()
