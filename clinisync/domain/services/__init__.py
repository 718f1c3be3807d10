"""Domain services: snapshot store, sync, lab view, rules and patient query."""

from .eligibility import EligibilityEngine
from .patient_query import PatientQueryService
from .record_store import RecordStore
from .sync_coordinator import SyncCoordinator
from .view_materializer import DerivedViewMaterializer

__all__ = [
    "EligibilityEngine",
    "PatientQueryService",
    "RecordStore",
    "SyncCoordinator",
    "DerivedViewMaterializer",
]
