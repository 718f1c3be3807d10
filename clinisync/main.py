"""Composition root for the clinic sync engine.

This module wires adapters and domain services together from the validated
configuration. The API, the CLI and the tests all obtain their collaborators
here.

Architecture:
    - Follows Hexagonal Architecture principles
    - Source and storage adapters are selected from configuration
    - Domain services receive their ports through constructors
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional

from clinisync.adapters.sources.csv_export_source import CsvExportSource
from clinisync.adapters.storage.duckdb_lab_store import DuckDBLabStore
from clinisync.domain.item_mapping import LabItemMapping
from clinisync.domain.models import SyncReport
from clinisync.domain.ports import LabStorePort, LegacySourcePort, StorageError
from clinisync.domain.services.eligibility import EligibilityEngine
from clinisync.domain.services.patient_query import PatientQueryService
from clinisync.domain.services.record_store import RecordStore
from clinisync.domain.services.sync_coordinator import SyncCoordinator
from clinisync.domain.services.view_materializer import DerivedViewMaterializer
from clinisync.infrastructure.config_manager import AppConfig, SourceConfig
from clinisync.infrastructure.scheduler import PeriodicSyncScheduler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Every long-lived collaborator of one running process."""

    config: AppConfig
    source: LegacySourcePort
    lab_store: LabStorePort
    item_mapping: LabItemMapping
    record_store: RecordStore
    materializer: DerivedViewMaterializer
    coordinator: SyncCoordinator
    engine: EligibilityEngine
    query_service: PatientQueryService
    scheduler: PeriodicSyncScheduler


def create_source(source_config: SourceConfig) -> LegacySourcePort:
    """Create the legacy source adapter from configuration."""
    logger.info(f"Initializing CSV export source at: {source_config.root}")
    return CsvExportSource(
        root=source_config.root,
        file_extension=source_config.file_extension,
        delimiter=source_config.delimiter,
        encoding=source_config.encoding,
    )


def create_lab_store(config: AppConfig) -> LabStorePort:
    """Create the durable lab store from configuration.

    Raises:
        ValueError: If database type is unsupported
    """
    db_config = config.database
    if db_config.db_type == "duckdb":
        logger.info(f"Initializing DuckDB lab store with path: {db_config.db_path or ':memory:'}")
        return DuckDBLabStore(db_config=db_config)
    raise ValueError(f"Unsupported database type: {db_config.db_type}")


def load_item_mapping(config: AppConfig) -> LabItemMapping:
    if config.labs.item_map_path:
        return LabItemMapping.from_file(config.labs.item_map_path)
    return LabItemMapping.default()


def build_services(
    config: AppConfig,
    source: Optional[LegacySourcePort] = None,
    lab_store: Optional[LabStorePort] = None,
    today: Callable[[], date] = date.today,
) -> Services:
    """Build the service graph. Nothing is read or synced until ``startup``."""
    source = source or create_source(config.source)
    lab_store = lab_store or create_lab_store(config)
    item_mapping = load_item_mapping(config)

    record_store = RecordStore(
        source,
        tables=config.preload.tables,
        retention_years=config.preload.retention_years,
        retention_years_by_table=config.preload.retention_years_by_table,
        today=today,
    )
    materializer = DerivedViewMaterializer(lab_store, item_mapping)
    coordinator = SyncCoordinator(
        source,
        lab_store,
        materializer,
        item_codes=item_mapping.item_codes(),
        batch_size=config.sync.batch_size,
        retention_years=config.labs.data_retention_years,
        today=today,
    )
    rules = config.rules
    engine = EligibilityEngine(
        glycemic_item=rules.glycemic_item,
        glycemic_high_threshold=rules.glycemic_high_threshold,
        glycemic_moderate_threshold=rules.glycemic_moderate_threshold,
        max_action_items=rules.max_action_items,
        flu_min_age=rules.flu_min_age,
        covid_min_age=rules.covid_min_age,
    )
    query_service = PatientQueryService(
        record_store,
        lab_store,
        item_mapping,
        engine,
        visit_history_limit=rules.visit_history_limit,
        appointment_limit=rules.appointment_limit,
        today=today,
    )
    scheduler = PeriodicSyncScheduler(
        coordinator,
        interval_seconds=config.sync.interval_minutes * 60,
        run_on_start=config.sync.sync_on_startup,
    )
    return Services(
        config=config,
        source=source,
        lab_store=lab_store,
        item_mapping=item_mapping,
        record_store=record_store,
        materializer=materializer,
        coordinator=coordinator,
        engine=engine,
        query_service=query_service,
        scheduler=scheduler,
    )


def initialize_storage(services: Services) -> None:
    """Create the durable schema and recover a run left behind by a crash.

    Raises:
        StorageError: If the schema cannot be created
    """
    result = services.lab_store.initialize_schema(services.item_mapping.value_columns())
    if result.is_failure():
        raise StorageError(f"Failed to initialize lab store: {result.error}", operation="initialize_schema")
    services.coordinator.recover_interrupted()


def startup(services: Services, preload: bool = True, start_scheduler: bool = False) -> Optional[SyncReport]:
    """Bring a process up: schema, snapshot preload, then syncing.

    With ``start_scheduler`` the periodic scheduler owns the startup sync;
    otherwise one sync runs inline when ``sync.sync_on_startup`` is set and its
    report is returned.
    """
    initialize_storage(services)
    if preload:
        generation = services.record_store.preload()
        logger.info(
            f"Snapshot generation {generation.version} ready: {generation.record_count} records, "
            f"failed tables: {list(generation.failed_tables) or 'none'}"
        )
    if start_scheduler:
        services.scheduler.start()
        return None
    if services.config.sync.sync_on_startup:
        return services.coordinator.run()
    return None


def shutdown(services: Services) -> None:
    services.scheduler.stop()
    services.query_service.close()
    services.lab_store.close()
    logger.info("Services shut down")
