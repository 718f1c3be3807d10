"""Sync trigger, sync status and snapshot reload endpoints."""

import logging

from fastapi import APIRouter, BackgroundTasks, Query

from clinisync.api.dependencies import CoordinatorDep, ServicesDep
from clinisync.api.models import SnapshotReloadResponse, SyncTriggerResponse
from clinisync.domain.models import SyncCursor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sync"])


@router.post("/sync", response_model=SyncTriggerResponse)
def trigger_sync(
    coordinator: CoordinatorDep,
    background_tasks: BackgroundTasks,
    wait: bool = Query(False, description="Run inline and return the report"),
) -> SyncTriggerResponse:
    """Start an incremental sync.

    Returns ``skipped`` when a run is already in flight.
    """
    if wait:
        report = coordinator.run()
        return SyncTriggerResponse(status=report.outcome, report=report)
    if coordinator.is_running:
        return SyncTriggerResponse(status="skipped")
    background_tasks.add_task(coordinator.run)
    logger.info("Sync triggered through the API")
    return SyncTriggerResponse(status="started")


@router.get("/sync/status", response_model=SyncCursor)
def sync_status(coordinator: CoordinatorDep) -> SyncCursor:
    return coordinator.status()


@router.post("/snapshot/reload", response_model=SnapshotReloadResponse)
def reload_snapshot(services: ServicesDep) -> SnapshotReloadResponse:
    generation = services.record_store.reload()
    return SnapshotReloadResponse(
        generation=generation.version,
        record_count=generation.record_count,
        failed_tables=list(generation.failed_tables),
    )
