"""Value normalization shared by every importer.

Source files spell the same clinical facts in many ways ("male", "m", "1";
"15.01.2024", "2024-01-15T08:30:00Z"). The helpers in this module collapse
those spellings onto the canonical codes used by the domain models. They never
raise on bad input: unparseable values come back as ``None`` (or the
documented default) and the caller decides whether that deserves a warning.
"""

import json
import math
import re
from datetime import date, datetime
from typing import Any, Optional

from clinical_import.domain.enums import AdmissionClass, ObservationCategory, Sex, ValueType

_SEX_MAPPING = {
    "m": Sex.MALE,
    "male": Sex.MALE,
    "man": Sex.MALE,
    "1": Sex.MALE,
    "f": Sex.FEMALE,
    "female": Sex.FEMALE,
    "woman": Sex.FEMALE,
    "w": Sex.FEMALE,
    "2": Sex.FEMALE,
    "u": Sex.UNKNOWN,
    "unknown": Sex.UNKNOWN,
    "other": Sex.UNKNOWN,
    "3": Sex.UNKNOWN,
}

_ADMISSION_MAPPING = {
    "i": AdmissionClass.INPATIENT,
    "inpatient": AdmissionClass.INPATIENT,
    "in": AdmissionClass.INPATIENT,
    "imp": AdmissionClass.INPATIENT,
    "1": AdmissionClass.INPATIENT,
    "o": AdmissionClass.OUTPATIENT,
    "outpatient": AdmissionClass.OUTPATIENT,
    "out": AdmissionClass.OUTPATIENT,
    "amb": AdmissionClass.OUTPATIENT,
    "ambulatory": AdmissionClass.OUTPATIENT,
    "2": AdmissionClass.OUTPATIENT,
    "e": AdmissionClass.EMERGENCY,
    "emergency": AdmissionClass.EMERGENCY,
    "er": AdmissionClass.EMERGENCY,
    "emer": AdmissionClass.EMERGENCY,
    "3": AdmissionClass.EMERGENCY,
}

# Accepted date layouts, tried in order. ISO forms are handled separately.
_DATE_FORMATS = ("%d.%m.%Y", "%m/%d/%Y", "%Y/%m/%d", "%m-%d-%Y", "%Y%m%d")

_DATE_LIKE_PATTERNS = (
    re.compile(r"^\d{4}-\d{2}-\d{2}"),
    re.compile(r"^\d{2}/\d{2}/\d{4}$"),
    re.compile(r"^\d{2}\.\d{2}\.\d{4}$"),
    re.compile(r"^\d{4}/\d{2}/\d{2}$"),
    re.compile(r"^\d{2}-\d{2}-\d{4}$"),
)

_NUMERIC_PATTERN = re.compile(r"^[+-]?(\d+([.,]\d*)?|[.,]\d+)([eE][+-]?\d+)?$")

_CATEGORY_KEYWORDS = (
    (("questionnaire", "survey", "fragebogen", "score"), ObservationCategory.SURVEY_BEST),
    (("diagnos", "condition", "icd"), ObservationCategory.DIAGNOSIS),
    (("lab", "blood", "serum", "urine", "glucose", "hemoglobin"), ObservationCategory.LAB),
    (("insurance", "admin", "billing"), ObservationCategory.ADMINISTRATIVE),
    (("vital", "pressure", "heart rate", "pulse", "temperature", "weight", "height", "bmi"),
     ObservationCategory.VITAL_SIGNS),
    (("medication", "drug", "dose", "prescription"), ObservationCategory.MEDICATION),
    (("smok", "alcohol", "social", "occupation"), ObservationCategory.SOCIAL_HISTORY),
    (("assessment", "evaluation", "impression"), ObservationCategory.ASSESSMENT),
)


def normalize_sex(value: Any) -> Sex:
    """Map any sex/gender spelling onto M/F/U. Unknown spellings become U."""
    if isinstance(value, Sex):
        return value
    if value is None:
        return Sex.UNKNOWN
    return _SEX_MAPPING.get(str(value).strip().lower(), Sex.UNKNOWN)


def normalize_admission_class(value: Any, default: AdmissionClass = AdmissionClass.OUTPATIENT) -> AdmissionClass:
    """Map an in/out code, FHIR class code or display word onto I/O/E."""
    if isinstance(value, AdmissionClass):
        return value
    if value is None:
        return default
    if isinstance(value, dict):
        value = value.get("code") or value.get("display")
        if value is None:
            return default
    return _ADMISSION_MAPPING.get(str(value).strip().lower(), default)


def admission_class_from_location(location: Optional[str]) -> AdmissionClass:
    """Guess the admission class from a free text location."""
    text = (location or "").lower()
    if "emergency" in text or "notaufnahme" in text:
        return AdmissionClass.EMERGENCY
    if "hospital" in text or "ward" in text or "station" in text:
        return AdmissionClass.INPATIENT
    return AdmissionClass.OUTPATIENT


def parse_date(value: Any) -> Optional[date]:
    """Parse a date from the layouts seen in clinical exports.

    Datetimes are truncated to their date part. Returns None when the value
    cannot be interpreted as a real calendar date.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    if re.match(r"^\d{4}-\d{2}-\d{2}", text):
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def normalize_date(value: Any) -> Optional[str]:
    """Return the ISO ``YYYY-MM-DD`` rendering of a date value, or None."""
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else None


def parse_numeric(value: Any) -> Optional[float]:
    """Parse a number, accepting comma decimal separators. Booleans are not numbers."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not _NUMERIC_PATTERN.match(text):
        return None
    result = float(text.replace(",", "."))
    return result if math.isfinite(result) else None


def is_date_like(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    if not isinstance(value, str):
        return False
    text = value.strip()
    return any(pattern.match(text) for pattern in _DATE_LIKE_PATTERNS) and parse_date(text) is not None


def infer_value_type(value: Any) -> ValueType:
    """Infer the observation value type from a raw value.

    Numbers map to N, date-like strings to D, objects and arrays (or strings
    holding JSON objects/arrays) to R, everything else to T.
    """
    if isinstance(value, bool):
        return ValueType.TEXT
    if parse_numeric(value) is not None:
        return ValueType.NUMERIC
    if is_date_like(value):
        return ValueType.DATE
    if isinstance(value, (dict, list)):
        return ValueType.RAW
    if isinstance(value, str):
        text = value.strip()
        if text[:1] in ("{", "[") and text[-1:] in ("}", "]"):
            try:
                json.loads(text)
                return ValueType.RAW
            except json.JSONDecodeError:
                pass
    return ValueType.TEXT


def parse_value_type(value: Any) -> Optional[ValueType]:
    """Read a VALTYPE_CD code. Blob ('B') is accepted as an alias of raw."""
    if isinstance(value, ValueType):
        return value
    if not value:
        return None
    code = str(value).strip().upper()
    if code == "B":
        return ValueType.RAW
    try:
        return ValueType(code)
    except ValueError:
        return None


def determine_category(text: Optional[str]) -> ObservationCategory:
    """Assign an observation category from a title or concept code keyword."""
    lowered = (text or "").lower()
    for keywords, category in _CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return ObservationCategory.CLINICAL


def boolean_to_text(value: bool) -> str:
    return "Yes" if value else "No"


def format_concept_code(code: Any, system: Optional[str] = None) -> Optional[str]:
    """Build a prefixed concept code from a code and its coding system.

    Codes that already carry a prefix are kept as is. LOINC codes become
    ``LID: <code>`` and SNOMED codes ``SCTID: <code>``.
    """
    if code is None or str(code).strip() == "":
        return None
    text = str(code).strip()
    if ":" in text:
        return text
    system_text = (system or "").lower()
    if "loinc" in system_text:
        return f"LID: {text}"
    if "snomed" in system_text:
        return f"SCTID: {text}"
    return text


def first_present(record: dict, *keys: str, default: Any = None) -> Any:
    """Return the first non-empty value among ``keys`` in ``record``."""
    for key in keys:
        value = record.get(key)
        if value is not None and value != "":
            return value
    return default
