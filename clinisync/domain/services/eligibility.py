"""Eligibility Engine.

Evaluates preventive-care and chronic-disease eligibility for one patient and
builds the prioritized action list.

Rules are a closed set of variants, one per rule family. Each variant is a
frozen dataclass whose ``evaluate(context)`` is a pure function of the
patient context. Calendar arithmetic is done on ROC-encoded dates through
``roc_calendar``; "year(d)" always means the Gregorian year of ``d``.

A missing age, or a history that could not be read at all (``None``), yields
``eligible=False`` with reason ``insufficient_data``. An empty history means
the act was never performed.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Literal, Mapping, Optional, Sequence, Union

from clinisync.domain import roc_calendar
from clinisync.domain.legacy_schema import (
    COLORECTAL_TAG,
    COVID_TAG,
    DIABETES_OFFSETS,
    FLU_TAG,
    KIDNEY_OFFSETS,
    METABOLIC_OFFSETS,
    NO_REPORT_CODES,
    ORAL_TAG,
    PHASE1_TAGS,
    PHASE2_TAGS,
    PNEUMOCOCCAL_TAG,
    order_name,
)
from clinisync.domain.models import (
    ActionItem,
    ChronicDiseaseRecord,
    ClinicalEvent,
    EligibilityResult,
    ExaminationRecord,
    LabSnapshot,
    PatientRecord,
    ReasonCode,
)

logger = logging.getLogger(__name__)

PREVENTIVE_LOOKBACK_YEARS = 5
CHRONIC_LOOKBACK_DAYS = 730
EXAMINATION_LOOKBACK_DAYS = 1095

PRIORITY_LAB_HIGH = 1
PRIORITY_LAB_MODERATE = 2
PRIORITY_PREVENTIVE = 3
PRIORITY_CHRONIC = 4
PRIORITY_CONTACT = 5

PHASE_MISMATCH_WARNING = "Phase 2 recorded without any phase 1 record"


@dataclass(frozen=True)
class PatientContext:
    """Everything the rules look at for one patient.

    ``preventive_events`` hold card-tagged ledger rows; ``order_events`` hold
    order rows (management and examination codes). Either may be None when
    the underlying table could not be read.
    """

    patient_key: str
    today: date
    age: Optional[int]
    demographics: Optional[PatientRecord] = None
    preventive_events: Optional[Sequence[ClinicalEvent]] = None
    order_events: Optional[Sequence[ClinicalEvent]] = None
    reports: Mapping[str, str] = field(default_factory=dict)
    lab_snapshot: Optional[LabSnapshot] = None

    @property
    def today_roc(self) -> str:
        return roc_calendar.today_roc(self.today)

    def latest(self, tags: Sequence[str]) -> Optional[ClinicalEvent]:
        """Most recent preventive event carrying one of ``tags``."""
        if not self.preventive_events:
            return None
        matches = [e for e in self.preventive_events if e.tag in tags]
        return max(matches, key=lambda e: e.sort_key) if matches else None


def years_since(event: ClinicalEvent, today: date) -> Optional[int]:
    event_year = roc_calendar.gregorian_year(event.event_date)
    return None if event_year is None else today.year - event_year


def vaccine_season(year: int, month: int) -> Optional[int]:
    """Season year of a month: Oct-Dec -> year, Jan-Jun -> year - 1, Jul-Sep -> None.

    >>> vaccine_season(2025, 6)
    2024
    """
    if month >= 10:
        return year
    if month <= 6:
        return year - 1
    return None


def _insufficient(rule_id: str, label: str, last: Optional[ClinicalEvent] = None) -> EligibilityResult:
    return EligibilityResult(
        rule_id=rule_id,
        label=label,
        eligible=False,
        last_event_date=last.event_date if last else None,
        reason_code=ReasonCode.INSUFFICIENT_DATA,
    )


def _result(rule_id: str, label: str, eligible: bool, reason: ReasonCode,
            last: Optional[ClinicalEvent]) -> EligibilityResult:
    return EligibilityResult(
        rule_id=rule_id,
        label=label,
        eligible=eligible,
        last_event_date=last.event_date if last else None,
        reason_code=reason,
    )


# ============================================================================
# Preventive rule variants
# ============================================================================

@dataclass(frozen=True)
class AgeBand:
    min_age: int
    max_age: Optional[int]
    tag: str
    interval_years: int

    def contains(self, age: int) -> bool:
        return age >= self.min_age and (self.max_age is None or age < self.max_age)


@dataclass(frozen=True)
class AgeBandScreeningRule:
    """Screening whose renewal interval depends on the current age band.

    Eligible when there is no prior event, when the latest event belongs to a
    different band than the current one, or when at least the band's interval
    has passed in calendar years.
    """

    rule_id: str
    label: str
    bands: tuple[AgeBand, ...]

    @property
    def tags(self) -> tuple[str, ...]:
        return tuple(band.tag for band in self.bands)

    def band_for_age(self, age: int) -> Optional[AgeBand]:
        for band in self.bands:
            if band.contains(age):
                return band
        return None

    def band_for_tag(self, tag: Optional[str]) -> Optional[AgeBand]:
        for band in self.bands:
            if band.tag == tag:
                return band
        return None

    def evaluate(self, context: PatientContext) -> EligibilityResult:
        last = context.latest(self.tags)
        if context.age is None or context.preventive_events is None:
            return _insufficient(self.rule_id, self.label, last)

        band = self.band_for_age(context.age)
        if band is None:
            return _result(self.rule_id, self.label, False, ReasonCode.BELOW_MIN_AGE, last)
        if last is None:
            return _result(self.rule_id, self.label, True, ReasonCode.NEVER_PERFORMED, last)
        if self.band_for_tag(last.tag) != band:
            return _result(self.rule_id, self.label, True, ReasonCode.BAND_TRANSITION, last)

        elapsed = years_since(last, context.today)
        if elapsed is None:
            return _insufficient(self.rule_id, self.label, last)
        if elapsed >= band.interval_years:
            return _result(self.rule_id, self.label, True, ReasonCode.INTERVAL_ELAPSED, last)
        return _result(self.rule_id, self.label, False, ReasonCode.INTERVAL_NOT_ELAPSED, last)


@dataclass(frozen=True)
class DependentPhaseRule:
    """Second phase of a screening: needs the first phase in the current year."""

    rule_id: str
    label: str
    tags: tuple[str, ...]
    prerequisite_tags: tuple[str, ...]
    min_age: int

    def evaluate(self, context: PatientContext) -> EligibilityResult:
        last = context.latest(self.tags)
        if context.age is None or context.preventive_events is None:
            return _insufficient(self.rule_id, self.label, last)
        if context.age < self.min_age:
            return _result(self.rule_id, self.label, False, ReasonCode.BELOW_MIN_AGE, last)

        prerequisite = context.latest(self.prerequisite_tags)
        if prerequisite is None or roc_calendar.gregorian_year(prerequisite.event_date) != context.today.year:
            return _result(self.rule_id, self.label, False, ReasonCode.PHASE1_REQUIRED, last)
        if last is not None and roc_calendar.gregorian_year(last.event_date) == context.today.year:
            return _result(self.rule_id, self.label, False, ReasonCode.DONE_THIS_YEAR, last)
        return _result(self.rule_id, self.label, True, ReasonCode.PHASE1_COMPLETED, last)


@dataclass(frozen=True)
class FixedIntervalScreeningRule:
    """Screening for a fixed age range, repeated every ``interval_years``."""

    rule_id: str
    label: str
    tags: tuple[str, ...]
    min_age: int
    max_age: Optional[int]
    interval_years: int

    def evaluate(self, context: PatientContext) -> EligibilityResult:
        last = context.latest(self.tags)
        if context.age is None or context.preventive_events is None:
            return _insufficient(self.rule_id, self.label, last)
        if context.age < self.min_age:
            reason = ReasonCode.BELOW_MIN_AGE if self.max_age is None else ReasonCode.AGE_OUT_OF_RANGE
            return _result(self.rule_id, self.label, False, reason, last)
        if self.max_age is not None and context.age > self.max_age:
            return _result(self.rule_id, self.label, False, ReasonCode.AGE_OUT_OF_RANGE, last)
        if last is None:
            return _result(self.rule_id, self.label, True, ReasonCode.NEVER_PERFORMED, last)

        elapsed = years_since(last, context.today)
        if elapsed is None:
            return _insufficient(self.rule_id, self.label, last)
        if elapsed >= self.interval_years:
            return _result(self.rule_id, self.label, True, ReasonCode.INTERVAL_ELAPSED, last)
        return _result(self.rule_id, self.label, False, ReasonCode.INTERVAL_NOT_ELAPSED, last)


@dataclass(frozen=True)
class SeasonalVaccineRule:
    """Once-per-season vaccination (October to June) above a minimum age."""

    rule_id: str
    label: str
    tags: tuple[str, ...]
    min_age: int

    def evaluate(self, context: PatientContext) -> EligibilityResult:
        last = context.latest(self.tags)
        if context.age is None or context.preventive_events is None:
            return _insufficient(self.rule_id, self.label, last)
        if context.age < self.min_age:
            return _result(self.rule_id, self.label, False, ReasonCode.BELOW_MIN_AGE, last)

        current_season = vaccine_season(context.today.year, context.today.month)
        if current_season is None:
            return _result(self.rule_id, self.label, False, ReasonCode.OUT_OF_SEASON, last)
        if last is None:
            return _result(self.rule_id, self.label, True, ReasonCode.NEVER_PERFORMED, last)

        parts = roc_calendar.to_gregorian(last.event_date)
        if parts is None:
            return _insufficient(self.rule_id, self.label, last)
        last_season = vaccine_season(parts[0], parts[1])
        if last_season != current_season:
            return _result(self.rule_id, self.label, True, ReasonCode.NEW_SEASON, last)
        return _result(self.rule_id, self.label, False, ReasonCode.DONE_THIS_SEASON, last)


@dataclass(frozen=True)
class LifetimeOnceRule:
    """Single lifetime dose above a minimum age."""

    rule_id: str
    label: str
    tags: tuple[str, ...]
    min_age: int

    def evaluate(self, context: PatientContext) -> EligibilityResult:
        last = context.latest(self.tags)
        if context.age is None or context.preventive_events is None:
            return _insufficient(self.rule_id, self.label, last)
        if context.age < self.min_age:
            return _result(self.rule_id, self.label, False, ReasonCode.BELOW_MIN_AGE, last)
        if last is None:
            return _result(self.rule_id, self.label, True, ReasonCode.NEVER_PERFORMED, last)
        return _result(self.rule_id, self.label, False, ReasonCode.LIFETIME_DOSE_GIVEN, last)


PreventiveRule = Union[
    AgeBandScreeningRule,
    DependentPhaseRule,
    FixedIntervalScreeningRule,
    SeasonalVaccineRule,
    LifetimeOnceRule,
]


def default_preventive_rules(flu_min_age: int = 50, covid_min_age: int = 50) -> tuple[PreventiveRule, ...]:
    phase1_30, phase1_40, phase1_65 = PHASE1_TAGS
    return (
        AgeBandScreeningRule(
            rule_id="adult_health_phase1",
            label="Adult health check (phase 1)",
            bands=(
                AgeBand(30, 40, phase1_30, 5),
                AgeBand(40, 65, phase1_40, 3),
                AgeBand(65, None, phase1_65, 1),
            ),
        ),
        DependentPhaseRule(
            rule_id="adult_health_phase2",
            label="Adult health check (phase 2)",
            tags=PHASE2_TAGS,
            prerequisite_tags=PHASE1_TAGS,
            min_age=30,
        ),
        FixedIntervalScreeningRule(
            rule_id="colorectal_screening",
            label="Colorectal cancer screening",
            tags=(COLORECTAL_TAG,),
            min_age=45,
            max_age=74,
            interval_years=2,
        ),
        FixedIntervalScreeningRule(
            rule_id="oral_screening",
            label="Oral cancer screening",
            tags=(ORAL_TAG,),
            min_age=30,
            max_age=None,
            interval_years=2,
        ),
        SeasonalVaccineRule(
            rule_id="flu_vaccine",
            label="Influenza vaccine",
            tags=(FLU_TAG,),
            min_age=flu_min_age,
        ),
        SeasonalVaccineRule(
            rule_id="covid_vaccine",
            label="COVID-19 vaccine",
            tags=(COVID_TAG,),
            min_age=covid_min_age,
        ),
        LifetimeOnceRule(
            rule_id="pneumococcal_vaccine",
            label="Pneumococcal vaccine",
            tags=(PNEUMOCOCCAL_TAG,),
            min_age=65,
        ),
    )


# ============================================================================
# Chronic-disease and examination follow-up
# ============================================================================

@dataclass(frozen=True)
class ChronicProgram:
    """Management program: next claim date = event date + per-code day offset."""

    program_id: str
    label: str
    offsets: Mapping[str, int]

    def evaluate(self, context: PatientContext) -> list[ChronicDiseaseRecord]:
        if not context.order_events:
            return []
        window_start = roc_calendar.add_days(context.today_roc, -CHRONIC_LOOKBACK_DAYS)
        events = sorted(
            (e for e in context.order_events
             if e.code in self.offsets and e.event_date >= window_start),
            key=lambda e: e.sort_key,
            reverse=True,
        )
        records = []
        for index, event in enumerate(events):
            next_date = None
            executable = False
            # Only the most recent claim drives the next executable date.
            if index == 0:
                next_date = roc_calendar.add_days(event.event_date, self.offsets[event.code])
                executable = next_date is not None and next_date <= context.today_roc
            records.append(ChronicDiseaseRecord(
                program=self.program_id,
                date=event.event_date,
                code=event.code,
                code_name=order_name(event.code),
                next_executable_date=next_date,
                is_executable=executable,
            ))
        return records


@dataclass(frozen=True)
class ExaminationFamily:
    family: str
    name: str
    codes: tuple[str, ...]
    interval: int
    unit: Literal["months", "years"]

    def next_follow_up(self, event_date: str) -> Optional[str]:
        if self.unit == "months":
            return roc_calendar.add_months(event_date, self.interval)
        return roc_calendar.add_days(event_date, self.interval * 365)

    def evaluate(self, context: PatientContext) -> Optional[ExaminationRecord]:
        if not context.order_events:
            return None
        window_start = roc_calendar.add_days(context.today_roc, -EXAMINATION_LOOKBACK_DAYS)
        matches = [
            e for e in context.order_events
            if e.code in self.codes and e.event_date >= window_start
        ]
        if not matches:
            return None
        latest = max(matches, key=lambda e: e.sort_key)
        report = "" if latest.code in NO_REPORT_CODES else context.reports.get(latest.event_date, "")
        return ExaminationRecord(
            family=self.family,
            name=self.name,
            code=latest.code,
            date=latest.event_date,
            report_content=report,
            next_follow_up_date=self.next_follow_up(latest.event_date),
        )


DEFAULT_CHRONIC_PROGRAMS = (
    ChronicProgram("diabetes", "Diabetes care", DIABETES_OFFSETS),
    ChronicProgram("kidney", "Chronic kidney disease care", KIDNEY_OFFSETS),
    ChronicProgram("metabolic", "Metabolic syndrome care", METABOLIC_OFFSETS),
)

DEFAULT_EXAMINATION_FAMILIES = (
    ExaminationFamily("abdomen", "Abdominal ultrasound", ("19001C", "19009C"), 6, "months"),
    ExaminationFamily("thyroid", "Thyroid ultrasound", ("19012C",), 6, "months"),
    ExaminationFamily("puncture", "Fine-needle aspiration", ("15021C",), 1, "years"),
    ExaminationFamily("lung", "Pulmonary function test", ("17003C", "17006C"), 6, "months"),
    ExaminationFamily("urine", "Uroflowmetry", ("21004C",), 1, "years"),
)


# ============================================================================
# Engine
# ============================================================================

@dataclass
class Evaluation:
    eligibility: list[EligibilityResult]
    chronic_disease_records: dict[str, list[ChronicDiseaseRecord]]
    examination_records: dict[str, Optional[ExaminationRecord]]
    action_list: list[ActionItem]


class EligibilityEngine:
    """Evaluates the fixed rule set and assembles the action list.

    Parameters:
        glycemic_item: Tracked lab item checked against the thresholds
        glycemic_high_threshold: Value at or above which the alert is priority 1
        glycemic_moderate_threshold: Value at or above which the alert is priority 2
        max_action_items: Maximum length of the action list
        preventive_rules: Rule variants to evaluate (defaults to the clinic set)
    """

    def __init__(
        self,
        glycemic_item: str = "HBA1C",
        glycemic_high_threshold: float = 9.0,
        glycemic_moderate_threshold: float = 7.0,
        max_action_items: int = 10,
        flu_min_age: int = 50,
        covid_min_age: int = 50,
        preventive_rules: Optional[Sequence[PreventiveRule]] = None,
        chronic_programs: Sequence[ChronicProgram] = DEFAULT_CHRONIC_PROGRAMS,
        examination_families: Sequence[ExaminationFamily] = DEFAULT_EXAMINATION_FAMILIES,
    ):
        if glycemic_moderate_threshold > glycemic_high_threshold:
            raise ValueError("glycemic_moderate_threshold must not exceed glycemic_high_threshold")
        self.glycemic_item = glycemic_item
        self.glycemic_high_threshold = glycemic_high_threshold
        self.glycemic_moderate_threshold = glycemic_moderate_threshold
        self.max_action_items = max_action_items
        self.preventive_rules = tuple(preventive_rules or default_preventive_rules(flu_min_age, covid_min_age))
        self.chronic_programs = tuple(chronic_programs)
        self.examination_families = tuple(examination_families)

    @staticmethod
    def preventive_window_start(today: date) -> Optional[str]:
        return roc_calendar.years_before(today, PREVENTIVE_LOOKBACK_YEARS)

    def evaluate_preventive(self, context: PatientContext) -> list[EligibilityResult]:
        results = [rule.evaluate(context) for rule in self.preventive_rules]

        phase1 = context.latest(PHASE1_TAGS)
        phase2 = context.latest(PHASE2_TAGS)
        if phase2 is not None and phase1 is None:
            results = [
                r.model_copy(update={"warning": PHASE_MISMATCH_WARNING})
                if r.rule_id in ("adult_health_phase1", "adult_health_phase2") else r
                for r in results
            ]
        return results

    def chronic_records(self, context: PatientContext) -> dict[str, list[ChronicDiseaseRecord]]:
        return {program.program_id: program.evaluate(context) for program in self.chronic_programs}

    def examination_records(self, context: PatientContext) -> dict[str, Optional[ExaminationRecord]]:
        return {family.family: family.evaluate(context) for family in self.examination_families}

    def _lab_actions(self, snapshot: Optional[LabSnapshot]) -> list[ActionItem]:
        if snapshot is None:
            return []
        lab = snapshot.get(self.glycemic_item)
        if lab is None or not isinstance(lab.value, (int, float)):
            return []
        if lab.value >= self.glycemic_high_threshold:
            priority = PRIORITY_LAB_HIGH
        elif lab.value >= self.glycemic_moderate_threshold:
            priority = PRIORITY_LAB_MODERATE
        else:
            return []
        tested = roc_calendar.format_display(lab.date) or "-"
        return [ActionItem(
            priority=priority,
            title=f"{self.glycemic_item} above target",
            message=f"{self.glycemic_item}: {lab.value:g}% (tested {tested})",
            category="lab",
        )]

    def action_list(
        self,
        context: PatientContext,
        eligibility: Sequence[EligibilityResult],
        chronic: Mapping[str, Sequence[ChronicDiseaseRecord]],
    ) -> list[ActionItem]:
        """Prioritized actions, most urgent first, truncated to ``max_action_items``."""
        actions = self._lab_actions(context.lab_snapshot)

        for result in eligibility:
            if result.eligible:
                actions.append(ActionItem(
                    priority=PRIORITY_PREVENTIVE,
                    title=f"{result.label} available",
                    message=f"Last performed: {roc_calendar.format_display(result.last_event_date) or 'never'}",
                    category="preventive",
                ))

        labels = {p.program_id: p.label for p in self.chronic_programs}
        for program_id, records in chronic.items():
            if records and records[0].is_executable:
                latest = records[0]
                actions.append(ActionItem(
                    priority=PRIORITY_CHRONIC,
                    title=f"{labels.get(program_id, program_id)} follow-up due",
                    message=(
                        f"{latest.code_name} on {roc_calendar.format_display(latest.date)}, "
                        f"next claim from {roc_calendar.format_display(latest.next_executable_date)}"
                    ),
                    category="chronic",
                ))

        if context.demographics is not None:
            missing = context.demographics.missing_contact_fields()
            if missing:
                actions.append(ActionItem(
                    priority=PRIORITY_CONTACT,
                    title="Incomplete contact details",
                    message=f"Missing: {', '.join(missing)}",
                    category="contact",
                ))

        actions.sort(key=lambda a: a.priority)
        return actions[:self.max_action_items]

    def evaluate(self, context: PatientContext) -> Evaluation:
        eligibility = self.evaluate_preventive(context)
        chronic = self.chronic_records(context)
        examinations = self.examination_records(context)
        actions = self.action_list(context, eligibility, chronic)
        logger.debug(
            f"Evaluated {len(eligibility)} rules for patient {context.patient_key}: "
            f"{sum(r.eligible for r in eligibility)} eligible, {len(actions)} actions"
        )
        return Evaluation(
            eligibility=eligibility,
            chronic_disease_records=chronic,
            examination_records=examinations,
            action_list=actions,
        )
