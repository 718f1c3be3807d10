"""Response models for the query API."""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field

from clinisync.domain.models import SyncReport


class LabStoreHealth(BaseModel):
    """Durable store connectivity.

    Attributes:
        status: Connection status
        type: Database type
        response_time_ms: Ping round trip in milliseconds (optional)
    """
    status: Literal["connected", "disconnected"]
    type: str = "duckdb"
    response_time_ms: float | None = Field(None, description="Store response time in milliseconds")


class SnapshotHealth(BaseModel):
    generation: int = Field(..., description="Snapshot generation number (0 = not loaded)")
    loaded_at: Optional[datetime] = None
    record_count: int = 0
    degraded_tables: list[str] = Field(default_factory=list, description="Tables served by fallback reads")


class HealthResponse(BaseModel):
    """Health check response model.

    ``degraded`` means the store is reachable but some tables are missing
    from the snapshot.
    """
    status: Literal["healthy", "degraded", "unhealthy"]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = "1.0.0"
    lab_store: LabStoreHealth
    snapshot: SnapshotHealth
    sync_running: bool = False


class SyncTriggerResponse(BaseModel):
    status: Literal["started", "skipped", "success", "failed"]
    report: Optional[SyncReport] = Field(None, description="Present when the run was awaited")


class SnapshotReloadResponse(BaseModel):
    generation: int
    record_count: int
    failed_tables: list[str] = Field(default_factory=list)


class PatientLookupResponse(BaseModel):
    patient_key: str
    name: Optional[str] = None
    national_id: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    error_type: Optional[str] = None
