"""Storage adapters implementing LabStorePort."""

from clinisync.adapters.storage.duckdb_lab_store import DuckDBLabStore

__all__ = ["DuckDBLabStore"]
