"""Legacy Ledger Layout.

Table names, field names and the fixed code tables of the legacy clinic
system. Tables are addressed by their original file names; every field is
fixed-width text that the source adapter has already trimmed.
"""

# Patient master
PATIENT_TABLE = "CO01M"
# Orders / prescriptions / dispenses (also carries management and exam codes)
ORDER_TABLE = "CO02M"
# Free-text examination reports
REPORT_TABLE = "CO02F"
# Visit headers
VISIT_TABLE = "CO03M"
# Visit ledger with card sequence tags
VISIT_LEDGER_TABLE = "CO03L"
# Appointments
APPOINTMENT_TABLE = "co05b"
# Lab results ledger (synchronized, never preloaded)
LAB_TABLE = "CO18H"

DEFAULT_PRELOAD_TABLES = (
    PATIENT_TABLE,
    ORDER_TABLE,
    REPORT_TABLE,
    VISIT_TABLE,
    VISIT_LEDGER_TABLE,
    APPOINTMENT_TABLE,
)

# Date field used to window each table during preload; the patient master has none.
DATE_FIELDS = {
    ORDER_TABLE: "IDATE",
    REPORT_TABLE: "FDATE",
    VISIT_TABLE: "IDATE",
    VISIT_LEDGER_TABLE: "DATE",
    APPOINTMENT_TABLE: "TBKDT",
}


class PatientFields:
    KEY = "KCSTMR"
    NAME = "MNAME"
    BIRTH_DATE = "MBIRTHDT"
    SEX = "MSEX"
    NATIONAL_ID = "MPERSONID"
    PHONE = "MTELH"
    ADDRESS = "MADDR"


class OrderFields:
    KEY = "KCSTMR"
    DATE = "IDATE"
    TIME = "ITIME"
    CODE = "DNO"
    KIND = "PTP"


# PTP value marking a medication dispense
MEDICATION_KIND = "M"


class ReportFields:
    KEY = "KCSTMR"
    DATE = "FDATE"
    TEXT = "FTEXT"


class VisitFields:
    KEY = "KCSTMR"
    DATE = "IDATE"
    TIME = "ITIME"


class VisitLedgerFields:
    KEY = "KCSTMR"
    DATE = "DATE"
    TIME = "TIME"
    TAG = "LISRS"


class AppointmentFields:
    KEY = "KCSTMR"
    DATE = "TBKDT"
    SESSION = "TSTS"
    NUMBER = "TARTIME"


class LabFields:
    KEY = "KCSTMR"
    ITEM = "HITEM"
    DATE = "HDATE"
    TIME = "HTIME"
    VALUE = "HVAL"
    UNIT = "HUNIT"


# Card sequence tags of the preventive-care programs
PHASE1_TAGS = ("3D", "21", "22")
PHASE2_TAGS = ("3E", "23", "24")
COLORECTAL_TAG = "85"
ORAL_TAG = "95"
FLU_TAG = "AU"
COVID_TAG = "VU"
PNEUMOCOCCAL_TAG = "DU"

PREVENTIVE_TAGS = PHASE1_TAGS + PHASE2_TAGS + (
    COLORECTAL_TAG,
    ORAL_TAG,
    FLU_TAG,
    COVID_TAG,
    PNEUMOCOCCAL_TAG,
)

# Chronic-disease management programs: order code -> days until the next claim
DIABETES_OFFSETS = {
    "P1407C": 50,
    "P1408C": 71,
    "P1409C": 71,
    "P7001C": 71,
    "P7002C": 71,
}
KIDNEY_OFFSETS = {
    "P4301C": 77,
    "P4302C": 161,
}
METABOLIC_OFFSETS = {
    "P7501C": 71,
    "P7502C": 71,
    "P7503C": 71,
}

ORDER_NAMES = {
    "P1407C": "DM - enrolment",
    "P1408C": "DM - follow-up",
    "P1409C": "DM - annual review",
    "P7001C": "DKD - follow-up",
    "P7002C": "DKD - annual review",
    "P4301C": "CKD - enrolment",
    "P4302C": "CKD - follow-up",
    "P7501C": "Metabolic syndrome - enrolment",
    "P7502C": "Metabolic syndrome - follow-up",
    "P7503C": "Metabolic syndrome - annual review",
    "19001C": "Abdominal ultrasound (initial)",
    "19009C": "Abdominal ultrasound (follow-up)",
    "19012C": "Thyroid ultrasound",
    "15021C": "Fine-needle aspiration",
    "17003C": "Pulmonary function test",
    "17006C": "Pulmonary function test (bronchodilator)",
    "21004C": "Uroflowmetry",
}

# Examination codes that never carry a free-text report
NO_REPORT_CODES = frozenset({"15021C", "21004C"})


def order_name(code: str) -> str:
    """Human-readable name of an order code, falling back to the code itself."""
    return ORDER_NAMES.get(code, code)
