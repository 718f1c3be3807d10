"""Domain Ports - Abstract Contracts for the Legacy Source and the Lab Store.

This module defines the Port interfaces (abstract contracts) that Adapters must implement.
Following Hexagonal Architecture, the Domain Core defines what it needs, not how it's provided.

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - The legacy fixed-record reader and the durable lab store are adapters
    - Domain services (RecordStore, SyncCoordinator, DerivedViewMaterializer)
      only ever talk to these ports
    - Result type communicates query-path failures without raising across
      the external interface boundary
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, Iterable, Mapping, Optional, Sequence, TypeVar, Union

import pandas as pd

from clinisync.domain.models import LabObservation, SyncCursor

T = TypeVar('T')

# A legacy row: field name -> trimmed text value
Record = Mapping[str, Any]


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Query handlers return a Result so that the presentation layer receives a
    structured failure instead of an exception crossing the interface boundary.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (MalformedId, StorageError, etc.)
        error_details: Additional error context (patient_key, table, etc.)

    Example:
        ```python
        result = query_service.query_patient("123")
        if result.is_success():
            render(result.value)
        else:
            show_error(result.error_type, result.error)
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result."""
        return cls(success=True, value=value)

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error; defaults to the exception class name
            error_details: Additional context

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class ClinicSyncError(Exception):
    """Base exception for all clinisync errors."""
    pass


class SourceUnavailableError(ClinicSyncError):
    """Raised when a legacy table is missing, unreadable or corrupt.

    Attributes:
        table: The legacy table that could not be read
    """

    def __init__(self, message: str, table: Optional[str] = None):
        super().__init__(message)
        self.table = table


class StorageError(ClinicSyncError):
    """Raised when a durable-store operation fails.

    Attributes:
        operation: The store operation that failed
        details: Additional error context
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


class SyncError(ClinicSyncError):
    """Raised inside a sync run; the coordinator records it on the cursor."""
    pass


class IllegalStateTransition(ClinicSyncError):
    """Raised when the sync state machine is driven through a forbidden edge."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal sync state transition: {current} -> {target}")
        self.current = current
        self.target = target


class ConfigurationError(ClinicSyncError):
    """Raised when configuration cannot be loaded or is inconsistent."""
    pass


# ============================================================================
# Ports
# ============================================================================

class LegacySourcePort(ABC):
    """Abstract contract for the legacy fixed-record data source.

    Adapters hide the file format entirely; the domain only sees normalized
    records whose text fields are already trimmed.

    Paging Contract (read_batch):
        - rows are returned in ascending observation-date order
        - `from_date` is inclusive
        - a batch shorter than `limit` means the source is exhausted
    """

    @abstractmethod
    def read_table(self, name: str) -> Sequence[Record]:
        """Read every row of a legacy table.

        Raises:
            SourceUnavailableError: If the table is missing or cannot be parsed
        """
        pass

    @abstractmethod
    def read_batch(self, item_codes: Sequence[str], from_date: str, limit: int) -> Sequence[Record]:
        """Read one ascending page of lab observations.

        Parameters:
            item_codes: Source item codes to include (empty means all)
            from_date: Inclusive lower bound, ROC-encoded (YYYMMDD)
            limit: Requested page size

        Raises:
            SourceUnavailableError: If the lab ledger cannot be read
        """
        pass

    def describe(self) -> Optional[dict]:
        """Return adapter metadata for status screens (optional)."""
        return None


class LabStorePort(ABC):
    """Abstract contract for the durable lab store.

    The store holds three tables: the raw observations, the wide
    latest-value view and the single-row sync cursor. Every write method
    is transactional: a call either fully applies or leaves no trace.
    """

    @abstractmethod
    def initialize_schema(self, value_columns: Mapping[str, str]) -> Result[None]:
        """Create tables and indexes; add missing wide columns.

        Parameters:
            value_columns: Wide-table column name -> SQL type for every tracked item
        """
        pass

    @abstractmethod
    def upsert_raw_batch(self, observations: Sequence[LabObservation]) -> int:
        """Replace-on-conflict insert of a batch keyed by (patient, item, date)."""
        pass

    @abstractmethod
    def latest_observations(
        self,
        patient_keys: Sequence[str],
        item_codes: Sequence[str]
    ) -> pd.DataFrame:
        """Latest raw observation per (patient, item) for the given patients."""
        pass

    @abstractmethod
    def distinct_patients(self) -> list[str]:
        """Every patient key present in raw storage."""
        pass

    @abstractmethod
    def fetch_wide_rows(self, patient_keys: Sequence[str]) -> dict[str, dict]:
        """Existing wide rows keyed by patient."""
        pass

    @abstractmethod
    def apply_wide_changes(
        self,
        inserts: Mapping[str, Mapping[str, Any]],
        updates: Mapping[str, Mapping[str, Any]]
    ) -> int:
        """Insert new wide rows and update changed columns in one transaction."""
        pass

    @abstractmethod
    def replace_wide(self, rows: Mapping[str, Mapping[str, Any]]) -> int:
        """Replace every wide row with ``rows`` in one transaction."""
        pass

    @abstractmethod
    def get_wide_row(self, patient_key: str) -> Optional[dict]:
        """One wide row, or None when the patient has no lab data."""
        pass

    @abstractmethod
    def get_cursor(self) -> SyncCursor:
        """Read the single sync_meta row."""
        pass

    @abstractmethod
    def update_cursor(self, **fields: Any) -> None:
        """Update columns of the single sync_meta row."""
        pass

    @abstractmethod
    def advance_cursor(self, observation_date: str) -> str:
        """Move last_date_synced forward (never backward); returns the stored value."""
        pass

    @abstractmethod
    def max_observation_date(self) -> Optional[str]:
        """Maximum observation date in raw storage."""
        pass

    def ping(self) -> bool:
        """Connectivity probe used by health checks."""
        return True

    def close(self) -> None:
        """Release resources."""
        pass


def distinct_in_order(values: Iterable[str]) -> list[str]:
    """Deduplicate while keeping first-seen order."""
    return list(dict.fromkeys(values))
