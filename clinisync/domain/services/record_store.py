"""Record Store Service.

Holds an in-memory, date-windowed snapshot of the legacy tables and serves all
read queries from it.

Architecture:
    - Pure domain service; reads the legacy source only through LegacySourcePort
    - Each preload builds a new SnapshotGeneration that is never mutated; the
      store swaps its reference atomically, so readers never observe a
      partially built table
    - A table that was never loaded is served by an uncached direct read and
      flagged as degraded
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from types import MappingProxyType
from typing import Callable, Iterator, Mapping, Optional, Sequence

from clinisync.domain import roc_calendar
from clinisync.domain.legacy_schema import DATE_FIELDS, DEFAULT_PRELOAD_TABLES
from clinisync.domain.models import PreloadProgress
from clinisync.domain.ports import LegacySourcePort, Record, SourceUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotGeneration:
    """One immutable snapshot of the preloaded legacy tables.

    Attributes:
        version: Monotonic generation number (0 = nothing loaded yet)
        tables: Table name -> tuple of read-only records
        loaded_at: When the generation finished loading
        failed_tables: Tables whose preload failed (served by fallback reads)
        windows: Table name -> lower date bound applied, None when unbounded
    """

    version: int
    tables: Mapping[str, tuple[Record, ...]] = field(default_factory=lambda: MappingProxyType({}))
    loaded_at: Optional[datetime] = None
    failed_tables: tuple[str, ...] = ()
    windows: Mapping[str, Optional[str]] = field(default_factory=lambda: MappingProxyType({}))

    def has(self, table: str) -> bool:
        return table in self.tables

    def get(self, table: str) -> Optional[tuple[Record, ...]]:
        return self.tables.get(table)

    @property
    def record_count(self) -> int:
        return sum(len(records) for records in self.tables.values())


@dataclass(frozen=True)
class TableRead:
    """Rows of one table plus whether they came from the degraded fallback path.

    ``available`` is False when neither the snapshot nor the source could
    provide the table; ``records`` is then empty.
    """

    table: str
    records: Sequence[Record]
    degraded: bool = False
    available: bool = True


class RecordStore:
    """In-memory windowed snapshot of the legacy tables.

    Parameters:
        source: Legacy source adapter
        tables: Tables to preload
        retention_years: Default window in years; <= 0 keeps all rows
        retention_years_by_table: Per-table window overrides
        date_fields: Table -> date field used for windowing
        today: Clock used to compute the window start

    Example Usage:
        ```python
        store = RecordStore(source, retention_years=3)
        for event in store.iter_preload():
            print(event.percentage, event.message)

        visits = store.query("CO03M")
        ```
    """

    def __init__(
        self,
        source: LegacySourcePort,
        tables: Sequence[str] = DEFAULT_PRELOAD_TABLES,
        retention_years: int = 3,
        retention_years_by_table: Optional[Mapping[str, int]] = None,
        date_fields: Mapping[str, str] = DATE_FIELDS,
        today: Callable[[], date] = date.today,
    ):
        self.source = source
        self.tables = list(tables)
        self.retention_years = retention_years
        self.retention_years_by_table = dict(retention_years_by_table or {})
        self.date_fields = dict(date_fields)
        self._today = today
        self._generation = SnapshotGeneration(version=0)
        self._swap_lock = threading.Lock()
        self._load_lock = threading.Lock()

    @property
    def generation(self) -> SnapshotGeneration:
        """The current generation; callers should hold on to it for a whole query."""
        return self._generation

    @property
    def is_loaded(self) -> bool:
        return self._generation.version > 0

    def window_start(self, table: str) -> Optional[str]:
        """Lower ROC date bound for a table, or None when every row is kept."""
        if table not in self.date_fields:
            return None
        years = self.retention_years_by_table.get(table, self.retention_years)
        if years is None or years <= 0:
            return None
        return roc_calendar.years_before(self._today(), years)

    def _apply_window(self, table: str, records: Sequence[Record]) -> tuple[Record, ...]:
        start = self.window_start(table)
        if start is None:
            return tuple(MappingProxyType(dict(r)) for r in records)

        date_field = self.date_fields[table]
        kept = []
        for record in records:
            record_date = roc_calendar.normalize(record.get(date_field))
            if record_date is not None and record_date >= start:
                kept.append(MappingProxyType(dict(record)))
        logger.info(
            f"[PRELOAD] {table} filtered: {len(records)} -> {len(kept)} records "
            f"(removed {len(records) - len(kept)} rows before {start})"
        )
        return tuple(kept)

    def iter_preload(self, tables: Optional[Sequence[str]] = None) -> Iterator[PreloadProgress]:
        """Build a new generation table by table, yielding progress events.

        The new generation replaces the current one only after the last table
        has been processed. A table that fails to load is logged and left out;
        the remaining tables still load.
        """
        table_names = list(tables) if tables is not None else self.tables
        total = len(table_names)

        with self._load_lock:
            start_time = time.time()
            loaded: dict[str, tuple[Record, ...]] = {}
            windows: dict[str, Optional[str]] = {}
            failed: list[str] = []

            for index, table in enumerate(table_names, start=1):
                yield PreloadProgress(
                    stage="preload",
                    table_name=table,
                    current=index,
                    total=total,
                    percentage=round(index / total * 100) if total else 100,
                    message=f"Loading table {table} ({index}/{total})",
                )
                table_start = time.time()
                try:
                    records = self.source.read_table(table)
                    loaded[table] = self._apply_window(table, records)
                    windows[table] = self.window_start(table)
                except Exception as e:
                    failed.append(table)
                    logger.error(f"Failed to preload {table}: {str(e)}", exc_info=not isinstance(e, SourceUnavailableError))
                    continue

                elapsed_ms = (time.time() - table_start) * 1000
                logger.info(f"[PRELOAD] {table} loaded: {len(loaded[table])} records in {elapsed_ms:.0f}ms")

            with self._swap_lock:
                generation = SnapshotGeneration(
                    version=self._generation.version + 1,
                    tables=MappingProxyType(loaded),
                    loaded_at=datetime.now(),
                    failed_tables=tuple(failed),
                    windows=MappingProxyType(windows),
                )
                self._generation = generation

            total_ms = (time.time() - start_time) * 1000
            logger.info(
                f"[PRELOAD] Completed generation {generation.version}: "
                f"{generation.record_count} records from {len(loaded)}/{total} tables in {total_ms:.0f}ms"
            )
            yield PreloadProgress(
                stage="complete",
                current=total,
                total=total,
                percentage=100,
                message=f"Loaded {len(loaded)}/{total} tables",
                record_count=generation.record_count,
            )

    def preload(self, tables: Optional[Sequence[str]] = None) -> SnapshotGeneration:
        """Run a full preload without consuming progress events."""
        for _ in self.iter_preload(tables):
            pass
        return self._generation

    def reload(self) -> SnapshotGeneration:
        """Build a fresh generation from the source and swap it in."""
        logger.info(f"Reloading snapshot (current generation {self._generation.version})")
        return self.preload()

    def read(self, table: str, generation: Optional[SnapshotGeneration] = None) -> TableRead:
        """Rows of ``table`` from the snapshot, falling back to an uncached source read."""
        current = generation or self._generation
        records = current.get(table)
        if records is not None:
            logger.debug(f"{table} - snapshot hit ({len(records)} records)")
            return TableRead(table=table, records=records)

        logger.warning(f"{table} - not in snapshot generation {current.version}, reading from source (degraded)")
        try:
            fallback = self.source.read_table(table)
        except SourceUnavailableError as e:
            logger.error(f"{table} - fallback read failed: {str(e)}")
            return TableRead(table=table, records=(), degraded=True, available=False)
        return TableRead(table=table, records=tuple(fallback), degraded=True)

    def query(self, table: str) -> Sequence[Record]:
        return self.read(table).records

    def degraded_tables(self) -> list[str]:
        """Configured tables that the current generation does not hold."""
        current = self._generation
        return [table for table in self.tables if not current.has(table)]
