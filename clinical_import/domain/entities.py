"""Canonical clinical entities produced by every importer.

Patients, visits and observations are immutable value objects. They are built
once per import call with provisional local ids and handed to the persistence
layer, which replaces those ids with durable ones.

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Lenient ``mode="before"`` validators normalize source spellings
    - ``to_row()`` renders the dimensional column layout of the data store
"""

from datetime import date
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from clinical_import.domain.enums import AdmissionClass, ObservationCategory, Sex, ValueType
from clinical_import.domain.normalization import normalize_admission_class, normalize_sex, parse_date
from clinical_import.domain.payloads import MedicationPayload, QuestionnairePayload, serialize_blob

DEFAULT_PROVIDER_ID = "@"


def _coerce_date(value: Any) -> Any:
    if value is None or value == "":
        return None
    parsed = parse_date(value)
    # Leave unparseable input to pydantic so the error names the field.
    return parsed if parsed is not None else value


class Patient(BaseModel):
    """Patient dimension entity.

    Parameters:
        local_id: Provisional id assigned during the import run (PATIENT_NUM)
        external_identifier: Identifier from the source system (PATIENT_CD)
        sex: Administrative sex, normalized to M/F/U
        birth_date: Date of birth if known
        age_in_years: Age in years if the source carries it instead of a birth date
        source_system: Source system tag (SOURCESYSTEM_CD)
    """

    local_id: int = Field(..., ge=1)
    external_identifier: str = Field(..., min_length=1, max_length=200)
    sex: Sex = Sex.UNKNOWN
    birth_date: Optional[date] = None
    age_in_years: Optional[int] = Field(None, ge=0)
    source_system: Optional[str] = None

    @field_validator("external_identifier", mode="before")
    @classmethod
    def stringify_identifier(cls, v):
        return str(v) if isinstance(v, (int, float)) and not isinstance(v, bool) else v

    @field_validator("sex", mode="before")
    @classmethod
    def validate_sex(cls, v) -> Sex:
        return normalize_sex(v)

    @field_validator("birth_date", mode="before")
    @classmethod
    def validate_birth_date(cls, v):
        return _coerce_date(v)

    def to_row(self) -> dict[str, Any]:
        return {
            "PATIENT_NUM": self.local_id,
            "PATIENT_CD": self.external_identifier,
            "SEX_CD": self.sex.value,
            "BIRTH_DATE": self.birth_date.isoformat() if self.birth_date else None,
            "AGE_IN_YEARS": self.age_in_years,
            "SOURCESYSTEM_CD": self.source_system,
        }

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)


class Visit(BaseModel):
    """Visit (encounter) dimension entity.

    Parameters:
        local_id: Provisional id assigned during the import run (ENCOUNTER_NUM)
        patient_ref: local_id of the owning patient
        start_date: Visit start, date-truncated
        end_date: Visit end if known
        location: Free text location (LOCATION_CD)
        admission_class: Inpatient, outpatient or emergency (INOUT_CD)
        source_system: Source system tag
    """

    local_id: int = Field(..., ge=1)
    patient_ref: int = Field(..., ge=1)
    start_date: date
    end_date: Optional[date] = None
    location: Optional[str] = None
    admission_class: AdmissionClass = AdmissionClass.OUTPATIENT
    source_system: Optional[str] = None

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def validate_dates(cls, v):
        return _coerce_date(v)

    @field_validator("admission_class", mode="before")
    @classmethod
    def validate_admission_class(cls, v) -> AdmissionClass:
        return normalize_admission_class(v)

    def to_row(self) -> dict[str, Any]:
        return {
            "ENCOUNTER_NUM": self.local_id,
            "PATIENT_NUM": self.patient_ref,
            "START_DATE": self.start_date.isoformat(),
            "END_DATE": self.end_date.isoformat() if self.end_date else None,
            "LOCATION_CD": self.location,
            "INOUT_CD": self.admission_class.value,
            "SOURCESYSTEM_CD": self.source_system,
        }

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)


class Observation(BaseModel):
    """Observation fact with a single typed value slot.

    Exactly one of ``numeric_value``, ``text_value`` and ``blob`` is populated,
    chosen by ``value_type``: N uses the numeric slot; T, D, S, F and A use the
    text slot; R, M and Q use the blob slot. Medication and questionnaire blobs
    are typed payloads, raw blobs are strings. ``summary`` is a display string
    for structured observations and is not a value slot.

    Parameters:
        patient_ref: local_id of the owning patient
        visit_ref: local_id of the visit, None for patient-level facts
        concept_code: Concept code (CONCEPT_CD)
        value_type: Value type tag (VALTYPE_CD)
        numeric_value: Numeric value (NVAL_NUM)
        text_value: Text, selection or ISO date value (TVAL_CHAR)
        blob: Structured value (OBSERVATION_BLOB)
        summary: Human readable rendering of a structured value
        unit: Unit of measurement (UNIT_CD)
        start_date: Date of the observation
        category: Observation category (CATEGORY_CHAR)
        provider_id: Observing provider, "@" when unknown
        source_system: Source system tag
    """

    patient_ref: Optional[int] = Field(None, ge=1)
    visit_ref: Optional[int] = Field(None, ge=1)
    concept_code: str = Field(..., min_length=1, max_length=250)
    value_type: ValueType
    numeric_value: Optional[float] = None
    text_value: Optional[str] = None
    blob: Optional[Union[QuestionnairePayload, MedicationPayload, str]] = None
    summary: Optional[str] = None
    unit: Optional[str] = None
    start_date: date = Field(default_factory=date.today)
    category: str = ObservationCategory.CLINICAL.value
    provider_id: str = DEFAULT_PROVIDER_ID
    source_system: Optional[str] = None

    @field_validator("start_date", mode="before")
    @classmethod
    def validate_start_date(cls, v):
        if v is None or v == "":
            return date.today()
        return _coerce_date(v)

    @field_validator("category", mode="before")
    @classmethod
    def validate_category(cls, v) -> str:
        if isinstance(v, ObservationCategory):
            return v.value
        return v or ObservationCategory.CLINICAL.value

    @model_validator(mode="after")
    def check_value_slot(self) -> "Observation":
        populated = [
            slot for slot, value in (
                ("numeric_value", self.numeric_value),
                ("text_value", self.text_value),
                ("blob", self.blob),
            )
            if value is not None
        ]
        if len(populated) != 1:
            raise ValueError(
                f"Observation must populate exactly one value slot, got {populated or 'none'}"
            )
        vt = self.value_type
        if vt.uses_numeric_slot and populated[0] != "numeric_value":
            raise ValueError(f"Value type {vt.value} requires numeric_value")
        if vt.uses_text_slot and populated[0] != "text_value":
            raise ValueError(f"Value type {vt.value} requires text_value")
        if vt.uses_blob_slot and populated[0] != "blob":
            raise ValueError(f"Value type {vt.value} requires blob")
        if vt is ValueType.QUESTIONNAIRE and not isinstance(self.blob, QuestionnairePayload):
            raise ValueError("Questionnaire observations require a QuestionnairePayload")
        if vt is ValueType.MEDICATION and not isinstance(self.blob, MedicationPayload):
            raise ValueError("Medication observations require a MedicationPayload")
        return self

    @property
    def value(self) -> Any:
        """The populated value slot."""
        if self.numeric_value is not None:
            return self.numeric_value
        if self.text_value is not None:
            return self.text_value
        return self.blob

    def to_row(self) -> dict[str, Any]:
        """Render the observation in the dimensional column layout.

        Structured payloads are serialized to JSON here and their summary is
        written to TVAL_CHAR, which is where the data store expects a display
        value for blob-typed facts.
        """
        numeric = self.numeric_value
        if numeric is not None and numeric.is_integer():
            numeric = int(numeric)
        return {
            "PATIENT_NUM": self.patient_ref,
            "ENCOUNTER_NUM": self.visit_ref,
            "CONCEPT_CD": self.concept_code,
            "VALTYPE_CD": self.value_type.value,
            "NVAL_NUM": numeric,
            "TVAL_CHAR": self.text_value if self.text_value is not None else self.summary,
            "OBSERVATION_BLOB": serialize_blob(self.blob),
            "UNIT_CD": self.unit,
            "START_DATE": self.start_date.isoformat(),
            "CATEGORY_CHAR": self.category,
            "PROVIDER_ID": self.provider_id,
            "SOURCESYSTEM_CD": self.source_system,
        }

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)


class ClinicalData(BaseModel):
    """The patient/visit/observation triad returned by an import."""

    patients: list[Patient] = Field(default_factory=list)
    visits: list[Visit] = Field(default_factory=list)
    observations: list[Observation] = Field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "patients": len(self.patients),
            "visits": len(self.visits),
            "observations": len(self.observations),
        }

    def is_empty(self) -> bool:
        return not (self.patients or self.visits or self.observations)

    model_config = ConfigDict(frozen=True)
