"""Derived View Materializer.

Keeps ``lab_results_wide`` a pure function of ``lab_results_raw``: for every
(patient, tracked item) pair with raw data, the wide row holds the value and
date of the latest observation (max observation date, ties broken by the most
recent ``source_seen_at``).

Architecture:
    - Pure domain service; all I/O goes through LabStorePort
    - Latest values are computed set-wise per refresh, then diffed against the
      existing wide rows so that only changed columns are written
    - Items without raw data are never nulled, so a wide row only improves
"""

import logging
import math
import re
from collections import defaultdict
from typing import Any, Iterable, Optional

from clinisync.domain.item_mapping import LabItemMapping, TrackedItem
from clinisync.domain.ports import LabStorePort, distinct_in_order

logger = logging.getLogger(__name__)

_NUMERIC_PREFIX = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")

REBUILD_CHUNK_SIZE = 500


def parse_numeric_value(value: Any) -> Optional[float]:
    """Permissive numeric parse of a lab value.

    Leading numeric text is accepted (``"9.5%"`` -> 9.5); anything else is absent.

    >>> parse_numeric_value(" 7.2 ")
    7.2
    >>> parse_numeric_value("Reactive") is None
    True
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return None if math.isnan(number) or math.isinf(number) else number
    match = _NUMERIC_PREFIX.match(str(value).strip())
    if not match:
        return None
    number = float(match.group(0))
    return None if math.isinf(number) else number


def _text_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    text = str(value).strip()
    return text or None


class DerivedViewMaterializer:
    """Maintains the latest-value-per-item wide view.

    Parameters:
        store: Durable lab store
        item_mapping: Tracked items and their wide-table columns
    """

    def __init__(self, store: LabStorePort, item_mapping: LabItemMapping):
        self.store = store
        self.item_mapping = item_mapping
        self._items_by_code: dict[str, list[TrackedItem]] = defaultdict(list)
        for item in item_mapping.tracked_items():
            self._items_by_code[item.source_code].append(item)

    def _desired_columns(self, patient_keys: list[str]) -> dict[str, dict[str, Any]]:
        latest = self.store.latest_observations(patient_keys, self.item_mapping.item_codes())
        desired: dict[str, dict[str, Any]] = defaultdict(dict)
        for row in latest.itertuples(index=False):
            for item in self._items_by_code.get(row.item_code, ()):
                if item.numeric:
                    value = parse_numeric_value(row.value)
                else:
                    value = _text_value(row.value)
                columns = desired[row.patient_key]
                columns[item.column] = value
                columns[item.date_column] = row.observation_date
        return desired

    def refresh(self, patient_keys: Iterable[str]) -> int:
        """Bring the wide rows of ``patient_keys`` in line with raw storage.

        Returns:
            Number of wide rows inserted or changed
        """
        keys = distinct_in_order(k for k in patient_keys if k)
        if not keys:
            return 0

        desired = self._desired_columns(keys)
        if not desired:
            return 0

        existing = self.store.fetch_wide_rows(list(desired))
        inserts: dict[str, dict[str, Any]] = {}
        updates: dict[str, dict[str, Any]] = {}

        for patient_key, columns in desired.items():
            current = existing.get(patient_key)
            if current is None:
                inserts[patient_key] = columns
                continue
            changed = {
                column: value
                for column, value in columns.items()
                if not _same_value(current.get(column), value)
            }
            if changed:
                updates[patient_key] = changed

        if not inserts and not updates:
            logger.debug(f"Wide view already current for {len(keys)} patients")
            return 0

        written = self.store.apply_wide_changes(inserts, updates)
        logger.info(
            f"Refreshed wide view: {len(inserts)} inserted, {len(updates)} updated "
            f"({len(keys)} patients requested)"
        )
        return written

    def rebuild_all(self) -> int:
        """Rebuild the wide view from every patient in raw storage.

        Rows are computed first and swapped in with one store transaction, so
        concurrent readers never see an empty view.
        """
        patients = self.store.distinct_patients()
        logger.info(f"Rebuilding wide view for {len(patients)} patients")

        rows: dict[str, dict[str, Any]] = {}
        for start in range(0, len(patients), REBUILD_CHUNK_SIZE):
            rows.update(self._desired_columns(patients[start:start + REBUILD_CHUNK_SIZE]))
        total = self.store.replace_wide(rows)
        logger.info(f"Wide view rebuilt: {total} rows")
        return total


def _same_value(current: Any, desired: Any) -> bool:
    if current is None or desired is None:
        return current is None and desired is None
    if isinstance(desired, float) and isinstance(current, (int, float)):
        return float(current) == desired
    return current == desired
