"""Health check endpoint."""

import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException

from clinisync.api.dependencies import ServicesDep
from clinisync.api.models import HealthResponse, LabStoreHealth, SnapshotHealth
from clinisync.domain.ports import LabStorePort
from clinisync.infrastructure.settings import APP_VERSION

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


def check_lab_store_health(lab_store: LabStorePort) -> LabStoreHealth:
    """Ping the durable store and time the round trip."""
    start_time = time.time()
    if lab_store.ping():
        response_time = (time.time() - start_time) * 1000
        return LabStoreHealth(status="connected", response_time_ms=round(response_time, 2))
    logger.warning("Lab store ping failed")
    return LabStoreHealth(status="disconnected")


@router.get("/health", response_model=HealthResponse)
def health_check(services: ServicesDep) -> HealthResponse:
    """System health: store connectivity, snapshot generation and degraded tables."""
    try:
        store_health = check_lab_store_health(services.lab_store)
        generation = services.record_store.generation
        degraded = services.record_store.degraded_tables()

        if store_health.status == "disconnected":
            overall_status = "unhealthy"
        elif degraded:
            overall_status = "degraded"
        else:
            overall_status = "healthy"

        return HealthResponse(
            status=overall_status,
            timestamp=datetime.now(timezone.utc),
            version=APP_VERSION,
            lab_store=store_health,
            snapshot=SnapshotHealth(
                generation=generation.version,
                loaded_at=generation.loaded_at,
                record_count=generation.record_count,
                degraded_tables=degraded,
            ),
            sync_running=services.coordinator.is_running,
        )

    except Exception as e:
        logger.error(f"Health check failed: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Health check failed")
