"""Domain layer for ClinicSync.

Calendar arithmetic, legacy table vocabulary, models and the services that
keep the snapshot and the lab view consistent. No I/O beyond the ports.
"""

from .models import (
    LabObservation,
    PatientQueryResult,
    PatientRecord,
    SyncCursor,
    SyncStatus,
)
from .ports import LabStorePort, LegacySourcePort, Result

__all__ = [
    "LabObservation",
    "PatientQueryResult",
    "PatientRecord",
    "SyncCursor",
    "SyncStatus",
    "LabStorePort",
    "LegacySourcePort",
    "Result",
]
