"""JSON Import Adapter.

This adapter imports generic JSON exports. Four shapes are accepted:

    - envelope: ``{"metadata": {...}, "data": {"patients": [], "visits": [], "observations": []}}``
    - bare graph: ``{"patients": [], "visits": [], "observations": []}``
    - a single flat patient with nested ``visits`` (each with optional
      ``observations``) and patient-level ``observations``
    - a list of flat patients

Structural validation (root type, array types) runs before any field is
mapped. Field names are matched against the dimensional column names and
their common camelCase spellings. Visits and observations reference patients
and visits by the source ids used in the file; references that cannot be
resolved are reported as warnings and the record is skipped.
"""

import json
import logging
from typing import Any, Optional

from clinical_import.adapters.importers.base_importer import BaseImporter, ImportSession
from clinical_import.domain.entities import ClinicalData, Observation, Patient, Visit
from clinical_import.domain.enums import ImportFormat, ValueType
from clinical_import.domain.import_structure import ImportContext, ImportOptions, ImportStructure
from clinical_import.domain.normalization import first_present, parse_value_type
from clinical_import.domain.ports import ContentParseError, StructureError

logger = logging.getLogger(__name__)

PATIENT_KEYS = {
    "source_id": ("PATIENT_NUM", "id", "patientNum"),
    "external_identifier": ("PATIENT_CD", "patientId", "patient_cd", "patientCode", "identifier"),
    "sex": ("SEX_CD", "sex", "gender"),
    "birth_date": ("BIRTH_DATE", "birthDate", "dob"),
    "age": ("AGE_IN_YEARS", "age"),
}
VISIT_KEYS = {
    "source_id": ("ENCOUNTER_NUM", "id", "encounterNum", "visitId"),
    "patient": ("PATIENT_NUM", "patientNum", "patientId", "PATIENT_CD"),
    "start_date": ("START_DATE", "startDate", "visitDate"),
    "end_date": ("END_DATE", "endDate"),
    "admission_class": ("INOUT_CD", "inOut", "visitType"),
    "location": ("LOCATION_CD", "location"),
}
OBSERVATION_KEYS = {
    "patient": ("PATIENT_NUM", "patientId", "patientNum", "PATIENT_CD"),
    "visit": ("ENCOUNTER_NUM", "encounterId", "visitId", "encounterNum"),
    "concept_code": ("CONCEPT_CD", "conceptCode", "concept_cd", "code"),
    "value_type": ("VALTYPE_CD", "valtypeCd", "valueType"),
    "numeric": ("NVAL_NUM", "numericValue"),
    "text": ("TVAL_CHAR", "textValue"),
    "blob": ("OBSERVATION_BLOB", "blob", "data"),
    "value": ("value",),
    "unit": ("UNIT_CD", "unit"),
    "start_date": ("START_DATE", "startDate", "observationDate"),
    "category": ("CATEGORY_CHAR", "category"),
    "provider_id": ("PROVIDER_ID", "providerId"),
}
COLLECTIONS = (
    ("patients", "INVALID_PATIENTS_FORMAT"),
    ("visits", "INVALID_VISITS_FORMAT"),
    ("observations", "INVALID_OBSERVATIONS_FORMAT"),
)


def _pick(record: dict, keys: dict, name: str) -> Any:
    return first_present(record, *keys[name])


def _ref(value: Any) -> Optional[str]:
    return None if value in (None, "") else str(value)


def _code_text(value: Any) -> Any:
    """JSON numbers in unit, category and provider fields are read as codes."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class JsonImporter(BaseImporter):
    """JSON import adapter for generic patient/visit/observation graphs."""

    format = ImportFormat.JSON
    source_system = "JSON_IMPORT"

    def import_from_json(
        self,
        content: str,
        options: Optional[ImportOptions] = None,
        context: Optional[ImportContext] = None,
    ) -> ImportStructure:
        return self.import_content(content, options, context)

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def _parse(self, content: str, session: ImportSession) -> Optional[ClinicalData]:
        try:
            document = json.loads(content.lstrip("\ufeff"))
        except json.JSONDecodeError as e:
            raise ContentParseError(
                "Invalid JSON content", code="INVALID_JSON", details=f"{e.msg} at line {e.lineno} column {e.colno}"
            )

        if isinstance(document, list):
            if not all(isinstance(record, dict) for record in document):
                raise StructureError("INVALID_PATIENTS_FORMAT", "Every element of a patient list must be an object")
            session.metadata["jsonShape"] = "patient_list"
            return self._import_flat(document, session)

        if not isinstance(document, dict):
            raise StructureError("INVALID_JSON_STRUCTURE", "JSON root must be an object or an array")

        if "data" in document and isinstance(document.get("data"), dict):
            session.metadata["jsonShape"] = "envelope"
            source_metadata = document.get("metadata")
            if isinstance(source_metadata, dict):
                session.metadata["sourceMetadata"] = source_metadata
            else:
                session.warning("MISSING_METADATA", "JSON envelope has no metadata block")
            return self._import_collections(document["data"], session)

        # A flat patient carries its own identifier and may nest visits/observations.
        is_patient = _pick(document, PATIENT_KEYS, "external_identifier") is not None or (
            _pick(document, PATIENT_KEYS, "source_id") is not None
        )
        if is_patient and "patients" not in document:
            session.metadata["jsonShape"] = "single_patient"
            return self._import_flat([document], session)

        if any(name in document for name, _ in COLLECTIONS):
            session.metadata["jsonShape"] = "graph"
            return self._import_collections(document, session)

        raise StructureError(
            "MISSING_CLINICAL_DATA", "JSON contains no patients, visits or observations"
        )

    def _import_collections(self, data: dict, session: ImportSession) -> Optional[ClinicalData]:
        if not any(name in data for name, _ in COLLECTIONS):
            raise StructureError("MISSING_CLINICAL_DATA", "JSON data block contains no clinical collections")

        collections: dict[str, list] = {}
        for name, code in COLLECTIONS:
            value = data.get(name, [])
            if value is None:
                value = []
            if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
                session.error(code, f"'{name}' must be an array of objects", field=name)
                continue
            collections[name] = value
        if session.errors:
            return None

        return self._import_graph(collections["patients"], collections["visits"], collections["observations"], session)

    # ------------------------------------------------------------------
    # Graph shape
    # ------------------------------------------------------------------

    def _import_graph(self, patient_records: list, visit_records: list, observation_records: list, session: ImportSession) -> ClinicalData:
        patients: list[Patient] = []
        patient_index: dict[str, Patient] = {}
        for index, record in enumerate(patient_records):
            patient = self._patient(record, session, {"patient": index})
            if patient is None:
                continue
            patients.append(patient)
            for key in (_pick(record, PATIENT_KEYS, "source_id"), patient.external_identifier):
                if _ref(key) is not None:
                    patient_index.setdefault(_ref(key), patient)

        visits: list[Visit] = []
        visit_index: dict[str, Visit] = {}
        for index, record in enumerate(visit_records):
            where = {"visit": index}
            patient = self._resolve_patient(record, VISIT_KEYS, patients, patient_index, session, where)
            if patient is None:
                continue
            visit = self._visit(record, patient, session, where)
            if visit is None:
                continue
            visits.append(visit)
            source_id = _ref(_pick(record, VISIT_KEYS, "source_id"))
            if source_id is not None:
                visit_index.setdefault(source_id, visit)

        observations: list[Observation] = []
        for index, record in enumerate(observation_records):
            where = {"observation": index}
            patient = self._resolve_patient(record, OBSERVATION_KEYS, patients, patient_index, session, where)
            if patient is None:
                continue
            visit = None
            visit_ref = _ref(_pick(record, OBSERVATION_KEYS, "visit"))
            if visit_ref is not None:
                visit = visit_index.get(visit_ref)
                if visit is None:
                    session.warning(
                        "UNRESOLVED_REFERENCE",
                        f"Observation {index + 1} references unknown visit {visit_ref}; recorded at patient level",
                        field="ENCOUNTER_NUM", context=where,
                    )
            observation = self._observation(record, patient, visit, session, where)
            if observation is not None:
                observations.append(observation)

        return ClinicalData(patients=patients, visits=visits, observations=observations)

    def _resolve_patient(
        self,
        record: dict,
        keys: dict,
        patients: list[Patient],
        patient_index: dict[str, Patient],
        session: ImportSession,
        where: dict,
    ) -> Optional[Patient]:
        reference = _ref(_pick(record, keys, "patient"))
        if reference is None:
            if len(patients) == 1:
                return patients[0]
            session.warning(
                "MISSING_REQUIRED_FIELD", "Record skipped: no patient reference",
                field="PATIENT_NUM", context=where,
            )
            return None
        patient = patient_index.get(reference)
        if patient is None:
            session.warning(
                "UNRESOLVED_REFERENCE", f"Record skipped: unknown patient {reference}",
                field="PATIENT_NUM", context=where,
            )
        return patient

    # ------------------------------------------------------------------
    # Flat shape
    # ------------------------------------------------------------------

    def _import_flat(self, records: list[dict], session: ImportSession) -> ClinicalData:
        patients, visits, observations = [], [], []
        for index, record in enumerate(records):
            patient = self._patient(record, session, {"patient": index})
            if patient is None:
                continue
            patients.append(patient)

            nested_visits = record.get("visits") or []
            nested_observations = record.get("observations") or []
            if not isinstance(nested_visits, list) or not isinstance(nested_observations, list):
                session.warning(
                    "INVALID_NESTED_FORMAT", f"Patient {patient.external_identifier}: visits and observations must be arrays",
                    context={"patient": index},
                )
                continue

            visit_index: dict[str, Visit] = {}
            for visit_number, visit_record in enumerate(nested_visits):
                where = {"patient": index, "visit": visit_number}
                if not isinstance(visit_record, dict):
                    continue
                visit = self._visit(visit_record, patient, session, where)
                if visit is None:
                    continue
                visits.append(visit)
                source_id = _ref(_pick(visit_record, VISIT_KEYS, "source_id"))
                if source_id is not None:
                    visit_index[source_id] = visit
                visit_observations = visit_record.get("observations") or []
                if not isinstance(visit_observations, list):
                    session.warning(
                        "INVALID_OBSERVATIONS_FORMAT", f"Visit {visit_number + 1}: observations must be an array",
                        field="observations", context=where,
                    )
                    visit_observations = []
                for obs_number, obs_record in enumerate(visit_observations):
                    if isinstance(obs_record, dict):
                        observation = self._observation(
                            obs_record, patient, visit, session, {**where, "observation": obs_number}
                        )
                        if observation is not None:
                            observations.append(observation)

            for obs_number, obs_record in enumerate(nested_observations):
                if not isinstance(obs_record, dict):
                    continue
                visit = visit_index.get(_ref(_pick(obs_record, OBSERVATION_KEYS, "visit")) or "")
                observation = self._observation(obs_record, patient, visit, session, {"patient": index, "observation": obs_number})
                if observation is not None:
                    observations.append(observation)

        return ClinicalData(patients=patients, visits=visits, observations=observations)

    # ------------------------------------------------------------------
    # Record mapping
    # ------------------------------------------------------------------

    def _patient(self, record: dict, session: ImportSession, where: dict) -> Optional[Patient]:
        external = _pick(record, PATIENT_KEYS, "external_identifier") or _pick(record, PATIENT_KEYS, "source_id")
        if external is None:
            session.warning(
                "MISSING_REQUIRED_FIELD", "Patient skipped: no PATIENT_CD",
                field="PATIENT_CD", context=where,
            )
            return None
        return self.build_patient(
            session,
            external_identifier=external,
            sex=_pick(record, PATIENT_KEYS, "sex"),
            birth_date=_pick(record, PATIENT_KEYS, "birth_date"),
            age_in_years=_pick(record, PATIENT_KEYS, "age"),
            location=where,
        )

    def _visit(self, record: dict, patient: Patient, session: ImportSession, where: dict) -> Optional[Visit]:
        start = _pick(record, VISIT_KEYS, "start_date")
        if start is None:
            session.warning(
                "MISSING_REQUIRED_FIELD", "Visit skipped: no START_DATE",
                field="START_DATE", context=where,
            )
            return None
        return self.build_visit(
            session,
            patient_ref=patient.local_id,
            start_date=start,
            end_date=_pick(record, VISIT_KEYS, "end_date"),
            location=_pick(record, VISIT_KEYS, "location"),
            admission_class=_pick(record, VISIT_KEYS, "admission_class"),
            where=where,
        )

    def _observation(
        self, record: dict, patient: Patient, visit: Optional[Visit], session: ImportSession, where: dict
    ) -> Optional[Observation]:
        declared = parse_value_type(_pick(record, OBSERVATION_KEYS, "value_type"))
        raw_value = self._raw_value(record, declared)
        if raw_value is None:
            session.warning(
                "MISSING_REQUIRED_FIELD", "Observation skipped: no value",
                field="VALUE", context=where,
            )
            return None
        return self.build_observation(
            session,
            concept_code=_pick(record, OBSERVATION_KEYS, "concept_code"),
            raw_value=raw_value,
            patient_ref=patient.local_id,
            visit_ref=visit.local_id if visit else None,
            start_date=_pick(record, OBSERVATION_KEYS, "start_date") or (visit.start_date if visit else None),
            declared_type=declared,
            unit=_code_text(_pick(record, OBSERVATION_KEYS, "unit")),
            category=_code_text(_pick(record, OBSERVATION_KEYS, "category")),
            provider_id=_code_text(_pick(record, OBSERVATION_KEYS, "provider_id")),
            where=where,
        )

    def _raw_value(self, record: dict, declared: Optional[ValueType]) -> Any:
        """Select the source field that carries the value for the declared type."""
        if declared is None:
            order = ("numeric", "text", "blob", "value")
        elif declared.uses_numeric_slot:
            order = ("numeric", "value", "text")
        elif declared.uses_blob_slot:
            order = ("blob", "value", "text")
        else:
            order = ("text", "value", "numeric")
        for name in order:
            value = _pick(record, OBSERVATION_KEYS, name)
            if value is not None:
                return value
        return None
