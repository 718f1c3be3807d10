"""Dependency injection for the query API.

The service graph is built once per process from the global settings and
shared by every request. Tests replace ``get_services`` through
``app.dependency_overrides``.
"""

import logging
from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from clinisync.domain.services.patient_query import PatientQueryService
from clinisync.domain.services.sync_coordinator import SyncCoordinator
from clinisync.infrastructure.settings import settings
from clinisync.main import Services, build_services

logger = logging.getLogger(__name__)


@lru_cache()
def get_services() -> Services:
    """Get the process-wide service graph (cached).

    Raises:
        pydantic.ValidationError: If the configuration is invalid
    """
    logger.debug("Building service graph from settings")
    return build_services(settings.config)


ServicesDep = Annotated[Services, Depends(get_services)]


def get_query_service(services: ServicesDep) -> PatientQueryService:
    return services.query_service


def get_coordinator(services: ServicesDep) -> SyncCoordinator:
    return services.coordinator


QueryServiceDep = Annotated[PatientQueryService, Depends(get_query_service)]
CoordinatorDep = Annotated[SyncCoordinator, Depends(get_coordinator)]
