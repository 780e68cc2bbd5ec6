"""Enumerations shared across the clinical import domain.

The single-letter codes mirror the columns of the dimensional clinical data
store (SEX_CD, INOUT_CD, VALTYPE_CD) so that entities can be rendered to rows
without a translation table.
"""

from enum import Enum


class ImportFormat(str, Enum):
    """Closed set of import formats understood by the dispatcher."""
    CSV = "csv"
    JSON = "json"
    HL7 = "hl7"
    HTML = "html"


class Sex(str, Enum):
    """Administrative sex as stored in SEX_CD."""
    MALE = "M"
    FEMALE = "F"
    UNKNOWN = "U"


class AdmissionClass(str, Enum):
    """Visit admission class as stored in INOUT_CD."""
    INPATIENT = "I"
    OUTPATIENT = "O"
    EMERGENCY = "E"


class ValueType(str, Enum):
    """Observation value type (VALTYPE_CD).

    The value type selects which slot of an observation carries the value:
    numeric types use the numeric slot, textual types the text slot and
    structured types the blob slot.
    """
    NUMERIC = "N"
    TEXT = "T"
    DATE = "D"
    SELECTION = "S"
    FINDING = "F"
    ANSWER = "A"
    RAW = "R"
    MEDICATION = "M"
    QUESTIONNAIRE = "Q"

    @property
    def uses_numeric_slot(self) -> bool:
        return self is ValueType.NUMERIC

    @property
    def uses_blob_slot(self) -> bool:
        return self in (ValueType.RAW, ValueType.MEDICATION, ValueType.QUESTIONNAIRE)

    @property
    def uses_text_slot(self) -> bool:
        return not (self.uses_numeric_slot or self.uses_blob_slot)


class Severity(str, Enum):
    """Severity attached to import and validation issues."""
    ERROR = "error"
    WARNING = "warning"
    CRITICAL = "critical"


class DataType(str, Enum):
    """Data types accepted by the DataValidator type gate."""
    NUMERIC = "numeric"
    TEXT = "text"
    DATE = "date"
    BLOB = "blob"
    BOOLEAN = "boolean"


class ObservationCategory(str, Enum):
    """Observation categories (CATEGORY_CHAR) assigned during import."""
    CLINICAL = "CLINICAL"
    SURVEY_BEST = "SURVEY_BEST"
    DIAGNOSIS = "DIAGNOSIS"
    LAB = "LAB"
    ADMINISTRATIVE = "ADMINISTRATIVE"
    VITAL_SIGNS = "VITAL_SIGNS"
    MEDICATION = "MEDICATION"
    SOCIAL_HISTORY = "SOCIAL_HISTORY"
    ASSESSMENT = "ASSESSMENT"
    DEMOGRAPHICS = "DEMOGRAPHICS"
