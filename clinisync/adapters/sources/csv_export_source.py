"""CSV Export Source Adapter.

This adapter implements the LegacySourcePort contract over delimited exports
of the legacy fixed-record tables: one file per table, named after the table
(``CO01M.csv``, ``co05b.csv``, ``CO18H.csv`` ...), with a header row of the
original field names.

Architecture:
    - Implements LegacySourcePort (Hexagonal Architecture)
    - Every column is read as text and trimmed; dates stay fixed-width digit
      strings and are interpreted by the domain
    - The lab ledger is streamed in chunks and filtered before paging
    - Paging never splits one observation date across two batches, so
      advancing the next page by one day cannot skip rows
"""

import logging
from pathlib import Path
from typing import Any, Optional, Sequence, Union

import pandas as pd

from clinisync.domain import roc_calendar
from clinisync.domain.legacy_schema import LAB_TABLE, LabFields
from clinisync.domain.ports import LegacySourcePort, Record, SourceUnavailableError

logger = logging.getLogger(__name__)

_DATE_COLUMN = "__observation_date"


class CsvExportSource(LegacySourcePort):
    """Legacy source backed by per-table CSV exports.

    Parameters:
        root: Directory holding the exports
        file_extension: Export file extension (matched case-insensitively)
        delimiter: Field delimiter
        encoding: Text encoding of the exports (utf-8, big5, cp950 ...)
        chunk_size: Rows per chunk when streaming the lab ledger
        lab_table: Name of the lab results table

    Example Usage:
        ```python
        source = CsvExportSource("/srv/clinic/export", encoding="cp950")
        patients = source.read_table("CO01M")
        page = source.read_batch(["09006C"], from_date="1130101", limit=5000)
        ```
    """

    def __init__(
        self,
        root: Union[str, Path],
        file_extension: str = ".csv",
        delimiter: str = ",",
        encoding: str = "utf-8",
        chunk_size: int = 50000,
        lab_table: str = LAB_TABLE,
    ):
        self.root = Path(root)
        self.file_extension = file_extension if file_extension.startswith(".") else f".{file_extension}"
        self.delimiter = delimiter
        self.encoding = encoding
        self.chunk_size = chunk_size
        self.lab_table = lab_table

    def _path(self, name: str) -> Path:
        exact = self.root / f"{name}{self.file_extension}"
        if exact.exists():
            return exact
        if self.root.is_dir():
            wanted = f"{name}{self.file_extension}".lower()
            for candidate in self.root.iterdir():
                if candidate.name.lower() == wanted:
                    return candidate
        raise SourceUnavailableError(f"Legacy table not found: {exact}", table=name)

    def _read_csv(self, path: Path, **kwargs: Any):
        return pd.read_csv(
            path,
            sep=self.delimiter,
            dtype=str,
            keep_default_na=False,
            encoding=self.encoding,
            **kwargs,
        )

    @staticmethod
    def _clean(df: pd.DataFrame) -> pd.DataFrame:
        df.columns = [str(c).strip() for c in df.columns]
        for column in df.columns:
            df[column] = df[column].str.strip()
        return df

    def read_table(self, name: str) -> list[Record]:
        """Read every row of ``name`` as trimmed text records."""
        path = self._path(name)
        try:
            df = self._clean(self._read_csv(path))
        except (OSError, UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise SourceUnavailableError(f"Cannot read legacy table {name}: {str(e)}", table=name)
        logger.debug(f"Read {len(df)} rows from {path}")
        return df.to_dict(orient="records")

    @staticmethod
    def _sorted_page(df: pd.DataFrame, limit: int) -> pd.DataFrame:
        """Sort ascending and keep the first ``limit`` rows plus the rest of their last date."""
        sort_columns = [_DATE_COLUMN] + ([LabFields.TIME] if LabFields.TIME in df.columns else [])
        df = df.sort_values(sort_columns, kind="mergesort")
        if len(df) > limit:
            boundary = df[_DATE_COLUMN].iloc[limit - 1]
            df = df[df[_DATE_COLUMN] <= boundary]
        return df

    def _lab_page_from(self, item_codes: Sequence[str], from_date: str, limit: int) -> pd.DataFrame:
        path = self._path(self.lab_table)
        wanted = set(item_codes)
        page = pd.DataFrame()
        try:
            for chunk in self._read_csv(path, chunksize=self.chunk_size):
                chunk = self._clean(chunk)
                missing = {LabFields.ITEM, LabFields.DATE} - set(chunk.columns)
                if missing:
                    raise SourceUnavailableError(
                        f"Lab ledger is missing columns: {sorted(missing)}", table=self.lab_table
                    )
                if wanted:
                    chunk = chunk[chunk[LabFields.ITEM].isin(wanted)]
                chunk = chunk.assign(**{_DATE_COLUMN: chunk[LabFields.DATE].map(roc_calendar.normalize)})
                chunk = chunk[chunk[_DATE_COLUMN].notna()]
                chunk = chunk[chunk[_DATE_COLUMN] >= from_date]
                if chunk.empty:
                    continue
                # Rows past the running boundary date can never reach this page.
                page = chunk if page.empty else pd.concat([page, chunk], ignore_index=True)
                page = self._sorted_page(page, limit)
        except pd.errors.EmptyDataError:
            return pd.DataFrame()
        except (OSError, UnicodeDecodeError, pd.errors.ParserError) as e:
            raise SourceUnavailableError(f"Cannot read lab ledger: {str(e)}", table=self.lab_table)
        return page

    def read_batch(self, item_codes: Sequence[str], from_date: str, limit: int) -> list[Record]:
        """One ascending page of lab rows dated ``from_date`` or later.

        The export is unordered, so each page scans the whole ledger, keeping at
        most one page of rows in memory. A page may exceed ``limit`` when needed
        to finish its last date.
        """
        start = roc_calendar.normalize(from_date)
        if start is None:
            raise ValueError(f"Invalid from_date: {from_date!r}")
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")

        df = self._lab_page_from(item_codes, start, limit)
        if df.empty:
            return []
        return df.drop(columns=[_DATE_COLUMN]).to_dict(orient="records")

    def describe(self) -> Optional[dict]:
        tables = []
        if self.root.is_dir():
            tables = sorted(
                p.stem for p in self.root.iterdir()
                if p.suffix.lower() == self.file_extension.lower()
            )
        return {
            "adapter": "csv_export",
            "root": str(self.root),
            "encoding": self.encoding,
            "tables": tables,
        }
