"""Domain Models.

Canonical shapes for everything that flows through the core: the legacy
snapshot entities, raw and derived lab data, the sync cursor and the per-query
eligibility output.

Architecture:
    - Pure domain models validated with Pydantic V2
    - Snapshot entities (PatientRecord, ClinicalEvent) are frozen
    - Constructors from legacy rows fail closed: a malformed id or date
      yields None so the caller can drop the row instead of aborting
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinisync.domain import roc_calendar
from clinisync.domain.legacy_schema import LabFields, PatientFields

PATIENT_KEY_WIDTH = 7


def normalize_patient_key(value: Any) -> Optional[str]:
    """Normalize a patient key to its zero-padded 7-digit form.

    Returns None for blank, non-numeric or over-long keys (MalformedId).

    >>> normalize_patient_key(" 123 ")
    '0000123'
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text.isdigit():
        return None
    numeric = text.lstrip("0") or "0"
    if len(numeric) > PATIENT_KEY_WIDTH:
        return None
    return numeric.zfill(PATIENT_KEY_WIDTH)


def _text(record: Mapping[str, Any], field: str) -> str:
    value = record.get(field)
    if value is None:
        return ""
    return str(value).strip()


def _optional_text(record: Mapping[str, Any], field: str) -> Optional[str]:
    return _text(record, field) or None


# ============================================================================
# Enumerations
# ============================================================================

class SyncStatus(str, Enum):
    """Lifecycle of a sync run."""
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class EventKind(str, Enum):
    VISIT = "visit"
    PRESCRIPTION = "prescription"
    PREVENTIVE_CARE = "preventive_care"
    APPOINTMENT = "appointment"
    EXAMINATION = "examination"
    MANAGEMENT = "management"


class ReasonCode(str, Enum):
    """Why a rule did or did not make a patient eligible."""
    INSUFFICIENT_DATA = "insufficient_data"
    BELOW_MIN_AGE = "below_min_age"
    AGE_OUT_OF_RANGE = "age_out_of_range"
    NEVER_PERFORMED = "never_performed"
    BAND_TRANSITION = "band_transition"
    INTERVAL_ELAPSED = "interval_elapsed"
    INTERVAL_NOT_ELAPSED = "interval_not_elapsed"
    PHASE1_REQUIRED = "phase1_required"
    PHASE1_COMPLETED = "phase1_completed"
    DONE_THIS_YEAR = "done_this_year"
    OUT_OF_SEASON = "out_of_season"
    NEW_SEASON = "new_season"
    DONE_THIS_SEASON = "done_this_season"
    LIFETIME_DOSE_GIVEN = "lifetime_dose_given"


# ============================================================================
# Snapshot entities
# ============================================================================

class PatientRecord(BaseModel):
    """Patient master data from one snapshot generation.

    Parameters:
        patient_key: Zero-padded 7-digit chart number
        national_id: National identification number
        name: Patient name
        birth_date: Raw birth date (7-digit ROC or 8-digit Gregorian)
        birth_date_display: "YYY/MM/DD (YYYY/MM/DD)" or None when malformed
        sex: Sex code as stored in the ledger
        phone: Mobile phone
        address: Postal address
        age: Calendar-year age, None when the birth date is malformed
    """

    model_config = ConfigDict(frozen=True)

    patient_key: str = Field(..., description="Zero-padded chart number")
    national_id: Optional[str] = Field(None, description="National ID")
    name: Optional[str] = Field(None, description="Patient name")
    birth_date: Optional[str] = Field(None, description="Raw birth date")
    birth_date_display: Optional[str] = Field(None, description="Formatted birth date")
    sex: Optional[str] = Field(None, description="Sex code")
    phone: Optional[str] = Field(None, description="Mobile phone")
    address: Optional[str] = Field(None, description="Postal address")
    age: Optional[int] = Field(None, ge=0, description="Calendar-year age")

    @classmethod
    def from_record(cls, record: Mapping[str, Any], today: Optional[date] = None) -> Optional['PatientRecord']:
        """Build from a patient-master row; None when the key is malformed."""
        patient_key = normalize_patient_key(record.get(PatientFields.KEY))
        if patient_key is None:
            return None
        birth_date = _optional_text(record, PatientFields.BIRTH_DATE)
        return cls(
            patient_key=patient_key,
            national_id=_optional_text(record, PatientFields.NATIONAL_ID),
            name=_optional_text(record, PatientFields.NAME),
            birth_date=birth_date,
            birth_date_display=roc_calendar.format_birth_date(birth_date),
            sex=_optional_text(record, PatientFields.SEX),
            phone=_optional_text(record, PatientFields.PHONE),
            address=_optional_text(record, PatientFields.ADDRESS),
            age=roc_calendar.calculate_age(birth_date, today),
        )

    def missing_contact_fields(self) -> list[str]:
        missing = []
        if not self.phone:
            missing.append("phone")
        if not self.address:
            missing.append("address")
        return missing


class ClinicalEvent(BaseModel):
    """A dated, coded act tied to a patient (visit, dispense, card, appointment)."""

    model_config = ConfigDict(frozen=True)

    patient_key: str
    kind: EventKind
    event_date: str = Field(..., description="ROC-encoded event date")
    event_time: str = ""
    code: Optional[str] = Field(None, description="Order or event code")
    tag: Optional[str] = Field(None, description="Card sequence / category tag")

    @classmethod
    def from_record(
        cls,
        record: Mapping[str, Any],
        kind: EventKind,
        key_field: str,
        date_field: str,
        time_field: Optional[str] = None,
        code_field: Optional[str] = None,
        tag_field: Optional[str] = None,
    ) -> Optional['ClinicalEvent']:
        """Build from a ledger row; None when the key or the date is malformed."""
        patient_key = normalize_patient_key(record.get(key_field))
        event_date = roc_calendar.normalize(record.get(date_field))
        if patient_key is None or event_date is None:
            return None
        return cls(
            patient_key=patient_key,
            kind=kind,
            event_date=event_date,
            event_time=_text(record, time_field) if time_field else "",
            code=_optional_text(record, code_field) if code_field else None,
            tag=_optional_text(record, tag_field) if tag_field else None,
        )

    @property
    def sort_key(self) -> tuple[str, str]:
        return self.event_date, self.event_time


# ============================================================================
# Lab data
# ============================================================================

class LabObservation(BaseModel):
    """One raw lab result, unique per (patient_key, item_code, observation_date)."""

    patient_key: str
    item_code: str
    observation_date: str = Field(..., description="ROC-encoded observation date")
    value: Optional[str] = None
    unit: Optional[str] = None
    source_seen_at: datetime = Field(default_factory=datetime.now)

    @field_validator("item_code")
    @classmethod
    def validate_item_code(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("item_code cannot be empty")
        return v

    @classmethod
    def from_record(cls, record: Mapping[str, Any], seen_at: Optional[datetime] = None) -> Optional['LabObservation']:
        """Build from a lab-ledger row; None when key, item or date is malformed."""
        patient_key = normalize_patient_key(record.get(LabFields.KEY))
        observation_date = roc_calendar.normalize(record.get(LabFields.DATE))
        item_code = _text(record, LabFields.ITEM)
        if patient_key is None or observation_date is None or not item_code:
            return None
        return cls(
            patient_key=patient_key,
            item_code=item_code,
            observation_date=observation_date,
            value=_optional_text(record, LabFields.VALUE),
            unit=_optional_text(record, LabFields.UNIT),
            source_seen_at=seen_at or datetime.now(),
        )

    @property
    def key(self) -> tuple[str, str, str]:
        return self.patient_key, self.item_code, self.observation_date


class LabValue(BaseModel):
    value: Optional[Union[float, str]] = None
    date: Optional[str] = None


class LabSnapshot(BaseModel):
    """Latest value per tracked item for one patient, grouped by category."""

    patient_key: str
    categories: dict[str, dict[str, LabValue]] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None

    def get(self, item_key: str) -> Optional[LabValue]:
        for items in self.categories.values():
            if item_key in items:
                return items[item_key]
        return None


class SyncCursor(BaseModel):
    """The single persisted sync_meta row."""

    last_date_synced: Optional[str] = Field(None, description="Max observation date fully merged")
    last_run_started_at: Optional[datetime] = None
    last_run_finished_at: Optional[datetime] = None
    last_run_status: Optional[SyncStatus] = None
    last_run_error: Optional[str] = None


# ============================================================================
# Rule and query outputs
# ============================================================================

class EligibilityResult(BaseModel):
    rule_id: str
    label: str = ""
    eligible: bool
    last_event_date: Optional[str] = None
    reason_code: ReasonCode
    warning: Optional[str] = Field(None, description="Data-consistency warning")


class ActionItem(BaseModel):
    priority: int = Field(..., ge=1, description="Lower number = more urgent")
    title: str
    message: str
    category: str = "general"


class ChronicDiseaseRecord(BaseModel):
    program: str
    date: str
    code: str
    code_name: str
    next_executable_date: Optional[str] = None
    is_executable: bool = False


class ExaminationRecord(BaseModel):
    family: str
    name: str
    code: str
    date: str
    report_content: str = ""
    next_follow_up_date: Optional[str] = None


class ClinicalHistory(BaseModel):
    last_visit: Optional[dict[str, Any]] = None
    last_medication: Optional[dict[str, Any]] = None


class PatientQueryResult(BaseModel):
    """Everything the presentation layer renders for one patient."""

    patient_key: str
    demographics: Optional[PatientRecord] = None
    lab_snapshot: Optional[LabSnapshot] = None
    clinical_history: ClinicalHistory = Field(default_factory=ClinicalHistory)
    appointments: list[dict[str, Any]] = Field(default_factory=list)
    visit_history: list[dict[str, Any]] = Field(default_factory=list)
    preventive_care_history: list[dict[str, Any]] = Field(default_factory=list)
    chronic_disease_records: dict[str, list[ChronicDiseaseRecord]] = Field(default_factory=dict)
    examination_records: dict[str, Optional[ExaminationRecord]] = Field(default_factory=dict)
    eligibility: list[EligibilityResult] = Field(default_factory=list)
    action_list: list[ActionItem] = Field(default_factory=list)
    degraded_tables: list[str] = Field(default_factory=list)
    query_timestamp: datetime = Field(default_factory=datetime.now)
    timings: dict[str, float] = Field(default_factory=dict)


class PreloadProgress(BaseModel):
    """One event of the preload progress stream."""

    stage: Literal["preload", "complete"]
    table_name: Optional[str] = None
    current: int
    total: int
    percentage: int = Field(..., ge=0, le=100)
    message: str
    record_count: Optional[int] = None


class SyncReport(BaseModel):
    """Outcome of one SyncCoordinator.run() call."""

    outcome: Literal["skipped", "success", "failed"]
    mode: Optional[Literal["initial", "incremental"]] = None
    batches: int = 0
    records: int = 0
    skipped_records: int = 0
    affected_patients: int = 0
    cursor_date: Optional[str] = None
    error: Optional[str] = None
