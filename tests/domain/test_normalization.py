"""Tests for value normalization helpers."""

from datetime import date, datetime

from clinical_import.domain.enums import AdmissionClass, ObservationCategory, Sex, ValueType
from clinical_import.domain.normalization import (
    admission_class_from_location,
    boolean_to_text,
    determine_category,
    first_present,
    format_concept_code,
    infer_value_type,
    normalize_admission_class,
    normalize_date,
    normalize_sex,
    parse_date,
    parse_numeric,
    parse_value_type,
)


class TestDates:
    """Date parsing across export layouts."""

    def test_layouts(self):
        assert parse_date("2024-01-15") == date(2024, 1, 15)
        assert parse_date("2024-01-15T08:30:00Z") == date(2024, 1, 15)
        assert parse_date("15.01.2024") == date(2024, 1, 15)
        assert parse_date("01/15/2024") == date(2024, 1, 15)
        assert parse_date("2024/01/15") == date(2024, 1, 15)
        assert parse_date("20240115") == date(2024, 1, 15)

    def test_date_objects(self):
        assert parse_date(datetime(2024, 1, 15, 8, 30)) == date(2024, 1, 15)
        assert parse_date(date(2024, 1, 15)) == date(2024, 1, 15)

    def test_invalid_dates(self):
        """Impossible calendar dates and junk come back as None."""
        assert parse_date("2024-02-30") is None
        assert parse_date("yesterday") is None
        assert parse_date("") is None
        assert parse_date(None) is None
        assert parse_date(20240115) is None

    def test_normalize_date(self):
        assert normalize_date("15.01.2024") == "2024-01-15"
        assert normalize_date("junk") is None


class TestNumbers:
    """Numeric parsing."""

    def test_parse_numeric(self):
        assert parse_numeric("72") == 72.0
        assert parse_numeric("37,5") == 37.5
        assert parse_numeric(" -1.5e2 ") == -150.0
        assert parse_numeric(3) == 3.0

    def test_non_numbers(self):
        assert parse_numeric(True) is None
        assert parse_numeric("12 mmHg") is None
        assert parse_numeric("") is None
        assert parse_numeric(float("nan")) is None
        assert parse_numeric(None) is None


class TestCodes:
    """Sex, admission class and value type codes."""

    def test_normalize_sex(self):
        assert normalize_sex("M") is Sex.MALE
        assert normalize_sex(" Female ") is Sex.FEMALE
        assert normalize_sex("w") is Sex.FEMALE
        assert normalize_sex(None) is Sex.UNKNOWN
        assert normalize_sex("x") is Sex.UNKNOWN

    def test_normalize_admission_class(self):
        assert normalize_admission_class("AMB") is AdmissionClass.OUTPATIENT
        assert normalize_admission_class({"code": "IMP"}) is AdmissionClass.INPATIENT
        assert normalize_admission_class({"display": "emergency"}) is AdmissionClass.EMERGENCY
        assert normalize_admission_class("unknown") is AdmissionClass.OUTPATIENT

    def test_admission_class_from_location(self):
        assert admission_class_from_location("Emergency Department") is AdmissionClass.EMERGENCY
        assert admission_class_from_location("University Hospital") is AdmissionClass.INPATIENT
        assert admission_class_from_location("GP practice") is AdmissionClass.OUTPATIENT
        assert admission_class_from_location(None) is AdmissionClass.OUTPATIENT

    def test_parse_value_type(self):
        assert parse_value_type("n") is ValueType.NUMERIC
        assert parse_value_type("B") is ValueType.RAW
        assert parse_value_type("Z") is None
        assert parse_value_type(None) is None

    def test_infer_value_type(self):
        assert infer_value_type(72) is ValueType.NUMERIC
        assert infer_value_type("72,5") is ValueType.NUMERIC
        assert infer_value_type("2024-01-15") is ValueType.DATE
        assert infer_value_type({"a": 1}) is ValueType.RAW
        assert infer_value_type('[1, 2]') is ValueType.RAW
        assert infer_value_type("{not json}") is ValueType.TEXT
        assert infer_value_type(True) is ValueType.TEXT
        assert infer_value_type("positive") is ValueType.TEXT


class TestConcepts:
    """Concept codes and categories."""

    def test_format_concept_code(self):
        assert format_concept_code("8867-4", "http://loinc.org") == "LID: 8867-4"
        assert format_concept_code("38341003", "http://snomed.info/sct") == "SCTID: 38341003"
        assert format_concept_code("LID: 8867-4", "http://loinc.org") == "LID: 8867-4"
        assert format_concept_code("LOCAL1") == "LOCAL1"
        assert format_concept_code("  ") is None

    def test_determine_category(self):
        assert determine_category("Serum glucose") is ObservationCategory.LAB
        assert determine_category("Heart rate") is ObservationCategory.VITAL_SIGNS
        assert determine_category("PHQ-9 Questionnaire") is ObservationCategory.SURVEY_BEST
        assert determine_category("Primary diagnosis") is ObservationCategory.DIAGNOSIS
        assert determine_category(None) is ObservationCategory.CLINICAL

    def test_helpers(self):
        assert boolean_to_text(True) == "Yes"
        assert boolean_to_text(False) == "No"
        assert first_present({"a": "", "b": None, "c": 0}, "a", "b", "c") == 0
        assert first_present({}, "a", default="x") == "x"
