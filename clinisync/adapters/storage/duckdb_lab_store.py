"""DuckDB Lab Store Adapter.

This adapter implements the LabStorePort contract on DuckDB, an in-process
OLAP database. It owns three tables:

    - lab_results_raw: one row per (patient_key, item_code, observation_date)
    - lab_results_wide: one row per patient with a value/date column pair per
      tracked item; columns are added as the item mapping grows
    - sync_meta: the single sync cursor row (id = 1)

Architecture:
    - Implements LabStorePort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
    - Every write runs in one transaction: all-or-nothing per call
    - One connection guarded by a re-entrant lock; the query fan-out and the
      sync thread share it safely
"""

import logging
import re
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import duckdb
import pandas as pd

from clinisync.domain.models import LabObservation, SyncCursor, SyncStatus
from clinisync.domain.ports import LabStorePort, Result, StorageError
from clinisync.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[a-z][a-z0-9_]*$")
_ALLOWED_SQL_TYPES = {"DOUBLE", "VARCHAR"}
_CURSOR_FIELDS = (
    "last_date_synced",
    "last_run_started_at",
    "last_run_finished_at",
    "last_run_status",
    "last_run_error",
)
_WIDE_FIXED_COLUMNS = ("patient_key", "updated_at")


def _quote(identifier: str) -> str:
    if not _IDENTIFIER.match(identifier):
        raise StorageError(f"Invalid column name: {identifier}", operation="quote")
    return f'"{identifier}"'


class DuckDBLabStore(LabStorePort):
    """DuckDB implementation of LabStorePort.

    Parameters:
        db_config: DatabaseConfig from the configuration manager (preferred)
        db_path: Path to the DuckDB file, or ':memory:'

    Example Usage:
        ```python
        store = DuckDBLabStore(db_path="data/labs.duckdb")
        result = store.initialize_schema(mapping.value_columns())
        if result.is_success():
            store.upsert_raw_batch(observations)
        ```
    """

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        db_path: Optional[str] = None,
    ):
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        else:
            self.db_path = db_path or ":memory:"

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self._wide_columns: list[str] = []

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except Exception as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def _existing_wide_columns(self, conn: duckdb.DuckDBPyConnection) -> list[str]:
        rows = conn.execute("PRAGMA table_info('lab_results_wide')").fetchall()
        return [row[1] for row in rows]

    def initialize_schema(self, value_columns: Mapping[str, str]) -> Result[None]:
        """Create the tables and add any wide columns the mapping introduces.

        Parameters:
            value_columns: Wide column name -> SQL type (DOUBLE or VARCHAR)

        Returns:
            Result[None]: Success or failure result
        """
        with self._lock:
            try:
                conn = self._get_connection()

                conn.execute("""
                    CREATE TABLE IF NOT EXISTS lab_results_raw (
                        patient_key VARCHAR NOT NULL,
                        item_code VARCHAR NOT NULL,
                        observation_date VARCHAR NOT NULL,
                        value VARCHAR,
                        unit VARCHAR,
                        source_seen_at TIMESTAMP NOT NULL,
                        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                        PRIMARY KEY (patient_key, item_code, observation_date)
                    )
                """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS lab_results_wide (
                        patient_key VARCHAR PRIMARY KEY,
                        updated_at TIMESTAMP
                    )
                """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS sync_meta (
                        id INTEGER PRIMARY KEY CHECK (id = 1),
                        last_date_synced VARCHAR,
                        last_run_started_at TIMESTAMP,
                        last_run_finished_at TIMESTAMP,
                        last_run_status VARCHAR,
                        last_run_error VARCHAR
                    )
                """)
                conn.execute("INSERT OR IGNORE INTO sync_meta (id) VALUES (1)")

                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_lab_raw_lookup "
                    "ON lab_results_raw(patient_key, item_code, observation_date)"
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_lab_raw_date ON lab_results_raw(observation_date)")

                existing = set(self._existing_wide_columns(conn))
                for column, sql_type in value_columns.items():
                    if sql_type.upper() not in _ALLOWED_SQL_TYPES:
                        raise StorageError(f"Unsupported column type {sql_type} for {column}",
                                           operation="initialize_schema")
                    if column in _WIDE_FIXED_COLUMNS:
                        raise StorageError(f"Reserved wide column name: {column}", operation="initialize_schema")
                    if column not in existing:
                        conn.execute(f"ALTER TABLE lab_results_wide ADD COLUMN {_quote(column)} {sql_type.upper()}")
                        logger.info(f"Added wide column {column} ({sql_type})")

                self._wide_columns = [c for c in self._existing_wide_columns(conn) if c not in _WIDE_FIXED_COLUMNS]
                logger.info("Lab store schema initialized successfully")
                return Result.success_result(None)

            except Exception as e:
                error_msg = f"Failed to initialize schema: {str(e)}"
                logger.error(error_msg, exc_info=True)
                return Result.failure_result(
                    StorageError(error_msg, operation="initialize_schema"),
                    error_type="StorageError"
                )

    def upsert_raw_batch(self, observations: Sequence[LabObservation]) -> int:
        """Replace-on-conflict insert of one batch in a single transaction.

        Duplicate keys inside the batch collapse to the last occurrence.
        """
        if not observations:
            return 0

        deduped: dict[tuple[str, str, str], LabObservation] = {}
        for observation in observations:
            deduped[observation.key] = observation

        now = datetime.now()
        df = pd.DataFrame(
            [
                {
                    "patient_key": o.patient_key,
                    "item_code": o.item_code,
                    "observation_date": o.observation_date,
                    "value": o.value,
                    "unit": o.unit,
                    "source_seen_at": o.source_seen_at,
                    "created_at": now,
                    "updated_at": now,
                }
                for o in deduped.values()
            ],
        ).astype({"value": "object", "unit": "object"})

        with self._lock:
            conn = self._get_connection()
            conn.begin()
            try:
                conn.register('df_temp', df)
                conn.execute("""
                    INSERT INTO lab_results_raw (
                        patient_key, item_code, observation_date, value, unit,
                        source_seen_at, created_at, updated_at
                    )
                    SELECT
                        patient_key, item_code, observation_date,
                        CAST(value AS VARCHAR), CAST(unit AS VARCHAR),
                        source_seen_at, created_at, updated_at
                    FROM df_temp
                    ON CONFLICT (patient_key, item_code, observation_date) DO UPDATE SET
                        value = excluded.value,
                        unit = excluded.unit,
                        source_seen_at = excluded.source_seen_at,
                        updated_at = excluded.updated_at
                """)
                conn.unregister('df_temp')
                conn.commit()
            except Exception as e:
                conn.rollback()
                raise StorageError(
                    f"Failed to upsert lab batch: {str(e)}",
                    operation="upsert_raw_batch",
                    details={"row_count": len(df)}
                ) from e

        logger.debug(f"Upserted {len(df)} raw lab rows ({len(observations) - len(df)} in-batch duplicates)")
        return len(df)

    def latest_observations(self, patient_keys: Sequence[str], item_codes: Sequence[str]) -> pd.DataFrame:
        """Latest raw row per (patient, item), ordered by date then source-seen time."""
        columns = ["patient_key", "item_code", "observation_date", "value", "unit"]
        if not patient_keys or not item_codes:
            return pd.DataFrame(columns=columns)

        keys_df = pd.DataFrame({"patient_key": list(patient_keys)})
        codes_df = pd.DataFrame({"item_code": list(item_codes)})
        with self._lock:
            conn = self._get_connection()
            try:
                conn.register('keys_temp', keys_df)
                conn.register('codes_temp', codes_df)
                result = conn.execute("""
                    SELECT r.patient_key, r.item_code, r.observation_date, r.value, r.unit
                    FROM lab_results_raw r
                    WHERE r.patient_key IN (SELECT patient_key FROM keys_temp)
                      AND r.item_code IN (SELECT item_code FROM codes_temp)
                    QUALIFY row_number() OVER (
                        PARTITION BY r.patient_key, r.item_code
                        ORDER BY r.observation_date DESC, r.source_seen_at DESC, r.updated_at DESC
                    ) = 1
                """).df()
            except Exception as e:
                raise StorageError(f"Failed to read latest observations: {str(e)}",
                                   operation="latest_observations") from e
            finally:
                conn.unregister('keys_temp')
                conn.unregister('codes_temp')
        return result

    def distinct_patients(self) -> list[str]:
        with self._lock:
            rows = self._get_connection().execute(
                "SELECT DISTINCT patient_key FROM lab_results_raw ORDER BY patient_key"
            ).fetchall()
        return [row[0] for row in rows]

    def _rows_as_dicts(self, conn: duckdb.DuckDBPyConnection, sql: str, params: Optional[list] = None) -> list[dict]:
        cursor = conn.execute(sql, params or [])
        names = [d[0] for d in cursor.description]
        return [dict(zip(names, row)) for row in cursor.fetchall()]

    def fetch_wide_rows(self, patient_keys: Sequence[str]) -> dict[str, dict]:
        if not patient_keys:
            return {}
        keys_df = pd.DataFrame({"patient_key": list(patient_keys)})
        with self._lock:
            conn = self._get_connection()
            try:
                conn.register('keys_temp', keys_df)
                rows = self._rows_as_dicts(
                    conn,
                    "SELECT * FROM lab_results_wide WHERE patient_key IN (SELECT patient_key FROM keys_temp)"
                )
            finally:
                conn.unregister('keys_temp')
        return {row["patient_key"]: row for row in rows}

    @staticmethod
    def _insert_wide_row(
        conn: duckdb.DuckDBPyConnection,
        patient_key: str,
        columns: Mapping[str, Any],
        now: datetime
    ) -> None:
        names = list(columns)
        column_sql = ", ".join(["patient_key", *(_quote(n) for n in names), "updated_at"])
        placeholders = ", ".join(["?"] * (len(names) + 2))
        conn.execute(
            f"INSERT INTO lab_results_wide ({column_sql}) VALUES ({placeholders})",
            [patient_key, *(columns[n] for n in names), now],
        )

    def apply_wide_changes(
        self,
        inserts: Mapping[str, Mapping[str, Any]],
        updates: Mapping[str, Mapping[str, Any]]
    ) -> int:
        """Insert new wide rows and update changed columns in one transaction."""
        if not inserts and not updates:
            return 0

        now = datetime.now()
        with self._lock:
            conn = self._get_connection()
            conn.begin()
            try:
                for patient_key, columns in inserts.items():
                    self._insert_wide_row(conn, patient_key, columns, now)
                for patient_key, columns in updates.items():
                    names = list(columns)
                    assignments = ", ".join(f"{_quote(n)} = ?" for n in names)
                    conn.execute(
                        f"UPDATE lab_results_wide SET {assignments}, updated_at = ? WHERE patient_key = ?",
                        [*(columns[n] for n in names), now, patient_key],
                    )
                conn.commit()
            except Exception as e:
                conn.rollback()
                raise StorageError(
                    f"Failed to write wide rows: {str(e)}",
                    operation="apply_wide_changes",
                    details={"inserts": len(inserts), "updates": len(updates)}
                ) from e
        return len(inserts) + len(updates)

    def replace_wide(self, rows: Mapping[str, Mapping[str, Any]]) -> int:
        """Swap the whole wide view; readers see either the old rows or the new ones."""
        now = datetime.now()
        with self._lock:
            conn = self._get_connection()
            conn.begin()
            try:
                conn.execute("DELETE FROM lab_results_wide")
                for patient_key, columns in rows.items():
                    self._insert_wide_row(conn, patient_key, columns, now)
                conn.commit()
            except Exception as e:
                conn.rollback()
                raise StorageError(
                    f"Failed to replace wide rows: {str(e)}",
                    operation="replace_wide",
                    details={"rows": len(rows)}
                ) from e
        logger.info(f"Replaced lab_results_wide with {len(rows)} rows")
        return len(rows)

    def get_wide_row(self, patient_key: str) -> Optional[dict]:
        with self._lock:
            try:
                rows = self._rows_as_dicts(
                    self._get_connection(),
                    "SELECT * FROM lab_results_wide WHERE patient_key = ?",
                    [patient_key],
                )
            except duckdb.Error as e:
                raise StorageError(f"Failed to read wide row: {str(e)}", operation="get_wide_row",
                                   details={"patient_key": patient_key}) from e
        return rows[0] if rows else None

    def wide_table_frame(self) -> pd.DataFrame:
        """The whole wide view, ordered by patient (used for status screens and tests)."""
        with self._lock:
            return self._get_connection().execute(
                "SELECT * FROM lab_results_wide ORDER BY patient_key"
            ).df()

    def get_cursor(self) -> SyncCursor:
        with self._lock:
            rows = self._rows_as_dicts(
                self._get_connection(),
                f"SELECT {', '.join(_CURSOR_FIELDS)} FROM sync_meta WHERE id = 1"
            )
        if not rows:
            return SyncCursor()
        return SyncCursor(**rows[0])

    def update_cursor(self, **fields: Any) -> None:
        unknown = set(fields) - set(_CURSOR_FIELDS)
        if unknown:
            raise StorageError(f"Unknown sync_meta fields: {sorted(unknown)}", operation="update_cursor")
        if not fields:
            return
        values = [v.value if isinstance(v, SyncStatus) else v for v in fields.values()]
        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self._lock:
            self._get_connection().execute(f"UPDATE sync_meta SET {assignments} WHERE id = 1", values)

    def advance_cursor(self, observation_date: str) -> str:
        with self._lock:
            conn = self._get_connection()
            conn.execute(
                """
                UPDATE sync_meta SET last_date_synced = ?
                WHERE id = 1 AND (last_date_synced IS NULL OR last_date_synced < ?)
                """,
                [observation_date, observation_date],
            )
            row = conn.execute("SELECT last_date_synced FROM sync_meta WHERE id = 1").fetchone()
        return row[0]

    def max_observation_date(self) -> Optional[str]:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT max(observation_date) FROM lab_results_raw"
            ).fetchone()
        return row[0] if row else None

    def raw_row_count(self) -> int:
        with self._lock:
            return self._get_connection().execute("SELECT count(*) FROM lab_results_raw").fetchone()[0]

    def ping(self) -> bool:
        try:
            with self._lock:
                self._get_connection().execute("SELECT 1").fetchone()
            return True
        except (duckdb.Error, StorageError) as e:
            logger.warning(f"DuckDB ping failed: {str(e)}")
            return False

    def close(self) -> None:
        """Close storage connection and release resources."""
        with self._lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                    self._connection = None
                    logger.info("Closed DuckDB connection")
                except Exception as e:
                    logger.warning(f"Error closing connection: {str(e)}")
