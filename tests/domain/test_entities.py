"""Tests for the canonical clinical entities.

These tests verify that:
- Source spellings are normalized by the entity validators
- Observations populate exactly the value slot their type selects
- Entities render the dimensional column layout
"""

from datetime import date

import pytest
from pydantic import ValidationError

from clinical_import.domain.entities import ClinicalData, Observation, Patient, Visit
from clinical_import.domain.enums import AdmissionClass, Sex, ValueType
from clinical_import.domain.payloads import MedicationPayload, QuestionnaireItem, QuestionnairePayload


class TestPatient:
    """Test suite for the Patient entity."""

    def test_sex_is_normalized(self):
        """Test that sex spellings collapse onto M/F/U."""
        assert Patient(local_id=1, external_identifier="P1", sex="female").sex is Sex.FEMALE
        assert Patient(local_id=1, external_identifier="P1", sex="1").sex is Sex.MALE
        assert Patient(local_id=1, external_identifier="P1", sex="divers").sex is Sex.UNKNOWN
        assert Patient(local_id=1, external_identifier="P1").sex is Sex.UNKNOWN

    def test_numeric_identifier_is_stringified(self):
        """Test that numeric identifiers are stored as text."""
        patient = Patient(local_id=1, external_identifier=12345)
        assert patient.external_identifier == "12345"

    def test_birth_date_formats(self):
        """Test that German and ISO birth dates are accepted."""
        assert Patient(local_id=1, external_identifier="P1", birth_date="15.01.1980").birth_date == date(1980, 1, 15)
        assert Patient(local_id=1, external_identifier="P1", birth_date="1980-01-15T00:00:00Z").birth_date == date(1980, 1, 15)
        assert Patient(local_id=1, external_identifier="P1", birth_date="").birth_date is None

    def test_invalid_birth_date_rejected(self):
        """Test that an impossible birth date is a validation error."""
        with pytest.raises(ValidationError):
            Patient(local_id=1, external_identifier="P1", birth_date="not a date")

    def test_local_id_must_be_positive(self):
        """Test that local ids start at 1."""
        with pytest.raises(ValidationError):
            Patient(local_id=0, external_identifier="P1")

    def test_patient_is_immutable(self):
        """Test that patients are frozen."""
        patient = Patient(local_id=1, external_identifier="P1")
        with pytest.raises(ValidationError):
            patient.sex = Sex.MALE

    def test_to_row(self):
        """Test the dimensional column rendering."""
        row = Patient(
            local_id=3, external_identifier="P3", sex="m", birth_date="1970-05-01", source_system="CSV_IMPORT"
        ).to_row()
        assert row == {
            "PATIENT_NUM": 3,
            "PATIENT_CD": "P3",
            "SEX_CD": "M",
            "BIRTH_DATE": "1970-05-01",
            "AGE_IN_YEARS": None,
            "SOURCESYSTEM_CD": "CSV_IMPORT",
        }


class TestVisit:
    """Test suite for the Visit entity."""

    def test_start_date_is_truncated(self):
        """Test that a timestamp start becomes a date."""
        visit = Visit(local_id=1, patient_ref=1, start_date="2024-01-15T08:30:00Z")
        assert visit.start_date == date(2024, 1, 15)

    def test_admission_class_normalization(self):
        """Test in/out code spellings."""
        assert Visit(local_id=1, patient_ref=1, start_date="2024-01-15", admission_class="IMP").admission_class is AdmissionClass.INPATIENT
        assert Visit(local_id=1, patient_ref=1, start_date="2024-01-15", admission_class="er").admission_class is AdmissionClass.EMERGENCY
        assert Visit(local_id=1, patient_ref=1, start_date="2024-01-15", admission_class=None).admission_class is AdmissionClass.OUTPATIENT

    def test_start_date_required(self):
        """Test that a visit without a start date is rejected."""
        with pytest.raises(ValidationError):
            Visit(local_id=1, patient_ref=1, start_date=None)

    def test_to_row(self):
        """Test the dimensional column rendering."""
        row = Visit(local_id=2, patient_ref=1, start_date="2024-01-15", location="Ward 3", admission_class="I").to_row()
        assert row["ENCOUNTER_NUM"] == 2
        assert row["PATIENT_NUM"] == 1
        assert row["START_DATE"] == "2024-01-15"
        assert row["END_DATE"] is None
        assert row["LOCATION_CD"] == "Ward 3"
        assert row["INOUT_CD"] == "I"


class TestObservation:
    """Test suite for the Observation entity."""

    def test_numeric_observation(self):
        """Test that N observations use the numeric slot."""
        observation = Observation(
            patient_ref=1, concept_code="LID: 8867-4", value_type=ValueType.NUMERIC, numeric_value=72.0, unit="/min"
        )
        assert observation.value == 72.0
        row = observation.to_row()
        assert row["NVAL_NUM"] == 72
        assert isinstance(row["NVAL_NUM"], int)
        assert row["TVAL_CHAR"] is None
        assert row["PROVIDER_ID"] == "@"
        assert row["CATEGORY_CHAR"] == "CLINICAL"

    def test_text_types_use_text_slot(self):
        """Test that T, D, S, F and A use the text slot."""
        for value_type in ("T", "D", "S", "F", "A"):
            observation = Observation(concept_code="C", value_type=value_type, text_value="x")
            assert observation.value == "x"

    def test_wrong_slot_rejected(self):
        """Test that a text value on a numeric observation is invalid."""
        with pytest.raises(ValidationError):
            Observation(concept_code="C", value_type="N", text_value="72")

    def test_two_slots_rejected(self):
        """Test that exactly one slot may be populated."""
        with pytest.raises(ValidationError):
            Observation(concept_code="C", value_type="N", numeric_value=1.0, text_value="1")

    def test_empty_slots_rejected(self):
        """Test that an observation without a value is invalid."""
        with pytest.raises(ValidationError):
            Observation(concept_code="C", value_type="T")

    def test_questionnaire_requires_payload(self):
        """Test that Q observations need a QuestionnairePayload blob."""
        with pytest.raises(ValidationError):
            Observation(concept_code="C", value_type="Q", blob='{"items": []}')

    def test_medication_requires_payload(self):
        """Test that M observations need a MedicationPayload blob."""
        with pytest.raises(ValidationError):
            Observation(concept_code="C", value_type="M", blob="Aspirin")

        observation = Observation(concept_code="C", value_type="M", blob=MedicationPayload(name="Aspirin", dose="100"))
        assert observation.blob.dose == 100.0

    def test_questionnaire_row_serializes_blob(self):
        """Test that structured blobs are rendered as JSON with a summary."""
        payload = QuestionnairePayload(
            code="PHQ9",
            title="Patient Health Questionnaire",
            items=[QuestionnaireItem(id="q1", value=2), QuestionnaireItem(id="q2", value=None)],
        )
        observation = Observation(
            concept_code="CUSTOM: QUESTIONNAIRE",
            value_type="Q",
            blob=payload,
            summary=payload.summary(),
        )
        row = observation.to_row()
        assert row["VALTYPE_CD"] == "Q"
        assert '"code":"PHQ9"' in row["OBSERVATION_BLOB"]
        assert row["TVAL_CHAR"] == "Patient Health Questionnaire: 1 answers"

    def test_missing_start_date_defaults_to_today(self):
        """Test that observations without a date are dated today."""
        observation = Observation(concept_code="C", value_type="T", text_value="x", start_date=None)
        assert observation.start_date == date.today()

    def test_concept_code_required(self):
        """Test that an empty concept code is rejected."""
        with pytest.raises(ValidationError):
            Observation(concept_code="", value_type="T", text_value="x")


class TestClinicalData:
    """Test suite for the ClinicalData triad."""

    def test_counts_and_empty(self):
        """Test entity counts."""
        assert ClinicalData().is_empty()
        data = ClinicalData(
            patients=[Patient(local_id=1, external_identifier="P1")],
            observations=[Observation(patient_ref=1, concept_code="C", value_type="T", text_value="x")],
        )
        assert data.counts() == {"patients": 1, "visits": 0, "observations": 1}
        assert not data.is_empty()
