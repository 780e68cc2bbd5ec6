"""HL7 Import Adapter.

This adapter imports HL7 CDA documents encoded as JSON. XML CDA is rejected
with a dedicated error. A document is either wrapped (``{"cda": {...}}``) or
bare (``{"type" or "resourceType", "section": [...]}``).

Two entry layouts are understood inside sections:

    - FHIR resources (Patient, Encounter, Observation,
      QuestionnaireResponse), optionally wrapped under ``resource``
    - titled entries as written by the application's own CDA export: a
      ``Patient Information`` section with ``Patient: <id>``/``Gender``/
      ``Age`` entries and one ``Visit N: <id>`` section per visit with
      ``Visit Date``/``Location``/``Type`` entries followed by observations

Observation values are decoded by ``decode_hl7_value`` into one tagged
variant, probing the value keys in a fixed priority order.

Security Impact:
    - Documents are parsed with json.loads only, never evaluated
    - Metadata-only documents are legal and produce a warning, not an error
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Optional, Union

from clinical_import.adapters.importers.base_importer import BaseImporter, ImportSession
from clinical_import.domain.entities import ClinicalData, Observation, Patient, Visit
from clinical_import.domain.enums import ImportFormat, ObservationCategory, ValueType
from clinical_import.domain.import_structure import ImportContext, ImportOptions, ImportStructure
from clinical_import.domain.normalization import (
    admission_class_from_location,
    boolean_to_text,
    determine_category,
    format_concept_code,
    normalize_date,
    parse_date,
    parse_numeric,
)
from clinical_import.domain.ports import ContentParseError, StructureError

logger = logging.getLogger(__name__)

SOURCE_SYSTEM = "HL7_IMPORT"
UNKNOWN_CONCEPT_CODE = "UNKNOWN"
QUESTIONNAIRE_CONCEPT_CODE = "CUSTOM: QUESTIONNAIRE"

PATIENT_SECTION_TITLE = "Patient Information"
VISIT_SECTION_PREFIX = "Visit "
_VISIT_DETAIL_TITLES = {"Visit Date", "Location", "Type", "Patient"}


# ----------------------------------------------------------------------
# Tagged observation values
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class QuantityValue:
    """``valueQuantity``: a number with an optional unit."""

    amount: float
    unit: Optional[str] = None
    value_type: ClassVar[ValueType] = ValueType.NUMERIC

    @property
    def raw(self) -> float:
        return self.amount


@dataclass(frozen=True)
class StringValue:
    """``valueString``."""

    text: str
    value_type: ClassVar[ValueType] = ValueType.TEXT

    @property
    def raw(self) -> str:
        return self.text


@dataclass(frozen=True)
class DateTimeValue:
    """``valueDateTime``, truncated to an ISO date."""

    iso_date: str
    value_type: ClassVar[ValueType] = ValueType.DATE

    @property
    def raw(self) -> str:
        return self.iso_date


@dataclass(frozen=True)
class BooleanValue:
    """``valueBoolean``, rendered as Yes/No text."""

    flag: bool
    value_type: ClassVar[ValueType] = ValueType.TEXT

    @property
    def raw(self) -> str:
        return boolean_to_text(self.flag)


@dataclass(frozen=True)
class GenericValue:
    """A plain ``value`` field, always stored as text."""

    text: str
    value_type: ClassVar[ValueType] = ValueType.TEXT

    @property
    def raw(self) -> str:
        return self.text


Hl7Value = Union[QuantityValue, StringValue, DateTimeValue, BooleanValue, GenericValue]

VALUE_KEY_PRIORITY = ("valueQuantity", "valueString", "valueDateTime", "valueBoolean", "value")


def _decode_quantity(raw: Any) -> Optional[QuantityValue]:
    if isinstance(raw, dict):
        amount = parse_numeric(raw.get("value"))
        unit = raw.get("unit") or raw.get("code")
    else:
        amount, unit = parse_numeric(raw), None
    if amount is None:
        return None
    return QuantityValue(amount=amount, unit=str(unit) if unit else None)


def _decode_string(raw: Any) -> Optional[StringValue]:
    return StringValue(text=str(raw)) if raw is not None and str(raw).strip() else None


def _decode_datetime(raw: Any) -> Optional[Union[DateTimeValue, StringValue]]:
    iso = normalize_date(raw)
    if iso is not None:
        return DateTimeValue(iso_date=iso)
    return _decode_string(raw)


def _decode_boolean(raw: Any) -> Optional[BooleanValue]:
    if isinstance(raw, bool):
        return BooleanValue(flag=raw)
    if isinstance(raw, str) and raw.strip().lower() in ("true", "false"):
        return BooleanValue(flag=raw.strip().lower() == "true")
    return None


def _decode_generic(raw: Any) -> Optional[GenericValue]:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    if isinstance(raw, bool):
        return GenericValue(text=boolean_to_text(raw))
    if isinstance(raw, (dict, list)):
        return GenericValue(text=json.dumps(raw, default=str))
    if isinstance(raw, float) and raw.is_integer():
        return GenericValue(text=str(int(raw)))
    return GenericValue(text=str(raw))


_DECODERS = {
    "valueQuantity": _decode_quantity,
    "valueString": _decode_string,
    "valueDateTime": _decode_datetime,
    "valueBoolean": _decode_boolean,
    "value": _decode_generic,
}


def decode_hl7_value(entry: dict) -> Optional[Hl7Value]:
    """Decode the value of an HL7 observation entry.

    Keys are checked in the order valueQuantity, valueString, valueDateTime,
    valueBoolean, value. A key whose content cannot be decoded (for example a
    quantity without a number) is skipped and the next key is tried.

    Parameters:
        entry: Observation entry or FHIR Observation resource

    Returns:
        The decoded variant, or None when the entry carries no usable value
    """
    if not isinstance(entry, dict):
        return None
    for key in VALUE_KEY_PRIORITY:
        if key not in entry:
            continue
        decoded = _DECODERS[key](entry[key])
        if decoded is not None:
            return decoded
    return None


# ----------------------------------------------------------------------
# Field helpers
# ----------------------------------------------------------------------


def _unwrap(entry: Any) -> Optional[dict]:
    if not isinstance(entry, dict):
        return None
    resource = entry.get("resource")
    return resource if isinstance(resource, dict) else entry


def _identifier_value(identifier: Any) -> Optional[str]:
    if isinstance(identifier, list):
        for item in identifier:
            value = _identifier_value(item)
            if value:
                return value
        return None
    if isinstance(identifier, dict):
        value = identifier.get("value") or identifier.get("extension") or identifier.get("root")
        return str(value) if value not in (None, "") else None
    if identifier not in (None, ""):
        return str(identifier)
    return None


def _reference_key(reference: Any) -> Optional[str]:
    """``{"reference": "Patient/123"}`` and ``"Patient/123"`` both give ``"123"``."""
    if isinstance(reference, dict):
        target = reference.get("reference")
        if target:
            return _reference_key(target)
        return _identifier_value(reference.get("identifier"))
    if isinstance(reference, str) and reference.strip():
        return reference.strip().rsplit("/", 1)[-1]
    return None


def _coding(concept: Any) -> Optional[dict]:
    if isinstance(concept, dict):
        codings = concept.get("coding")
        if isinstance(codings, list) and codings and isinstance(codings[0], dict):
            return codings[0]
        if concept.get("code"):
            return concept
    return None


def _display(value: Any) -> Optional[str]:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        coding = _coding(value)
        text = (
            value.get("display") or value.get("text") or value.get("name")
            or (coding.get("display") if coding else None)
        )
        if isinstance(text, list):
            text = " ".join(str(part) for part in text)
        return str(text) if text else None
    if value not in (None, ""):
        return str(value)
    return None


def observation_concept_code(entry: dict) -> str:
    """Concept code of an observation entry, ``UNKNOWN`` when it has none."""
    code = entry.get("code")
    coding = _coding(code)
    if coding is not None:
        formatted = format_concept_code(coding.get("code"), coding.get("system"))
        if formatted:
            return formatted
    if isinstance(code, (str, int)):
        formatted = format_concept_code(code)
        if formatted:
            return formatted
    return UNKNOWN_CONCEPT_CODE


def _observation_date(entry: dict) -> Any:
    period = entry.get("effectivePeriod")
    return (
        entry.get("effectiveDateTime")
        or (period.get("start") if isinstance(period, dict) else None)
        or entry.get("issued")
        or entry.get("authored")
        or entry.get("date")
    )


def _observation_category(entry: dict, concept_code: str) -> str:
    label = _display(entry.get("code")) or entry.get("title") or ""
    return determine_category(f"{label} {concept_code}").value


def create_observation_from_hl7(
    entry: dict,
    patient_ref: Optional[int] = None,
    visit_ref: Optional[int] = None,
) -> Optional[Observation]:
    """Build an Observation from a single HL7 observation entry.

    The value type follows the decoded value variant (quantity -> N, string ->
    T, dateTime -> D, boolean -> T with Yes/No, generic value -> T).

    Parameters:
        entry: Observation entry, optionally wrapped under ``resource``
        patient_ref: local_id of the owning patient
        visit_ref: local_id of the visit

    Returns:
        Observation, or None when the entry carries no usable value
    """
    resource = _unwrap(entry)
    decoded = decode_hl7_value(resource) if resource else None
    if decoded is None:
        return None
    concept_code = observation_concept_code(resource)
    slot = "numeric_value" if decoded.value_type is ValueType.NUMERIC else "text_value"
    return Observation(
        patient_ref=patient_ref,
        visit_ref=visit_ref,
        concept_code=concept_code,
        value_type=decoded.value_type,
        unit=decoded.unit if isinstance(decoded, QuantityValue) else None,
        start_date=parse_date(_observation_date(resource)),
        category=_observation_category(resource, concept_code),
        source_system=SOURCE_SYSTEM,
        **{slot: decoded.raw},
    )


def extract_hl7_metadata(document: dict) -> dict[str, Any]:
    """Best-effort document metadata.

    A missing id is synthesized from a hash of the document, a missing type
    becomes ``"HL7 CDA"`` and a missing author or custodian ``"Unknown"``.

    Parameters:
        document: Bare CDA document or a ``{"cda": ...}`` wrapper

    Returns:
        dict: id, type, title, date, author, custodian and section count
    """
    document = document if isinstance(document, dict) else {}
    doc = document.get("cda") if isinstance(document.get("cda"), dict) else document

    identifier = _identifier_value(doc.get("id")) or _identifier_value(doc.get("identifier"))
    if not identifier:
        digest = hashlib.sha256(json.dumps(doc, sort_keys=True, default=str).encode("utf-8")).hexdigest()
        identifier = f"HL7-{digest[:12]}"

    sections = doc.get("section") if isinstance(doc.get("section"), list) else []
    return {
        "id": identifier,
        "type": _display(doc.get("type")) or "HL7 CDA",
        "resourceType": doc.get("resourceType"),
        "title": doc.get("title"),
        "date": doc.get("date") or doc.get("effectiveTime"),
        "status": doc.get("status"),
        "author": _display(doc.get("author")) or "Unknown",
        "custodian": _display(doc.get("custodian")) or "Unknown",
        "sectionCount": len(sections),
    }


class Hl7Importer(BaseImporter):
    """HL7 CDA (JSON encoding) import adapter."""

    format = ImportFormat.HL7
    source_system = SOURCE_SYSTEM

    def import_from_hl7(
        self,
        content: str,
        options: Optional[ImportOptions] = None,
        context: Optional[ImportContext] = None,
    ) -> ImportStructure:
        return self.import_content(content, options, context)

    # ------------------------------------------------------------------
    # Document validation
    # ------------------------------------------------------------------

    def _parse(self, content: str, session: ImportSession) -> Optional[ClinicalData]:
        text = content.lstrip("\ufeff").strip()
        if text.startswith("<"):
            raise ContentParseError(
                "XML HL7 format not yet supported; export the document as JSON",
                code="XML_NOT_SUPPORTED",
            )
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise ContentParseError(
                "Invalid HL7 JSON content", code="INVALID_HL7_JSON",
                details=f"{e.msg} at line {e.lineno} column {e.colno}",
            )
        if parsed is None:
            raise StructureError("MISSING_DOCUMENT", "HL7 document is empty or null")
        if not isinstance(parsed, dict):
            raise StructureError("INVALID_CDA", "HL7 document must be a JSON object")

        document = self._resolve_document(parsed)
        if not (document.get("type") or document.get("resourceType")):
            raise StructureError(
                "MISSING_DOCUMENT_TYPE", "HL7 document has no type", field="type"
            )

        sections = document.get("section")
        if sections is not None and not isinstance(sections, list):
            raise StructureError("INVALID_CDA", "HL7 document 'section' must be an array", field="section")
        sections = [section for section in sections or [] if isinstance(section, dict)]
        bundle_entries = document.get("entry") if isinstance(document.get("entry"), list) else []
        if bundle_entries:
            sections.append({"entry": bundle_entries})

        if not any(isinstance(section.get("entry"), list) and section["entry"] for section in sections):
            session.warning(
                "MISSING_CLINICAL_CONTENT", "HL7 document contains no clinical sections or entries"
            )

        self._check_signature(parsed, document, session)
        session.metadata["document"] = extract_hl7_metadata(document)
        return self._extract(document, sections, session)

    def _resolve_document(self, parsed: dict) -> dict:
        if "cda" in parsed:
            document = parsed["cda"]
            if document is None:
                raise StructureError("MISSING_DOCUMENT", "HL7 document is empty or null", field="cda")
            if not isinstance(document, dict):
                raise StructureError("INVALID_CDA", "'cda' must be a JSON object", field="cda")
        else:
            document = parsed
        if not document:
            raise StructureError("MISSING_DOCUMENT", "HL7 document is empty or null")
        return document

    def _check_signature(self, wrapper: dict, document: dict, session: ImportSession) -> None:
        signature = wrapper.get("signature") if "signature" in wrapper else document.get("signature")
        if signature is None:
            return
        signatures = signature if isinstance(signature, list) else [signature]
        for item in signatures:
            if not isinstance(item, dict) or not item.get("type"):
                session.warning(
                    "MISSING_SIGNATURE_TYPE", "HL7 signature block has no type", field="signature.type"
                )
                return

    # ------------------------------------------------------------------
    # Entity extraction
    # ------------------------------------------------------------------

    def _extract(self, document: dict, sections: list[dict], session: ImportSession) -> ClinicalData:
        patient_resources, encounter_resources, observation_items = [], [], []
        titled_patients, titled_visits = [], []

        for section_index, section in enumerate(sections):
            entries = section.get("entry") if isinstance(section.get("entry"), list) else []
            title = str(section.get("title") or "")
            if title == PATIENT_SECTION_TITLE:
                titled_patients.extend(entry for entry in entries if isinstance(entry, dict))
                continue
            if title.startswith(VISIT_SECTION_PREFIX):
                titled_visits.append((section_index, title, entries))
                continue
            for entry_index, entry in enumerate(entries):
                resource = _unwrap(entry)
                if resource is None:
                    continue
                where = {"section": section_index, "entry": entry_index}
                resource_type = resource.get("resourceType")
                if resource_type == "Patient":
                    patient_resources.append((resource, where))
                elif resource_type == "Encounter":
                    encounter_resources.append((resource, where))
                elif resource_type in ("Observation", "QuestionnaireResponse") or "title" in resource:
                    observation_items.append((resource, None, where))

        patients: list[Patient] = []
        patient_index: dict[str, Patient] = {}
        for resource, where in patient_resources:
            self._add_patient(self._patient_from_resource(resource, session, where), resource, patients, patient_index)
        for patient in self._patients_from_titled_entries(titled_patients, session):
            self._add_patient(patient, {}, patients, patient_index)

        if not patients and (observation_items or encounter_resources or titled_visits):
            patient = self._synthesize_patient(document, observation_items, session)
            self._add_patient(patient, {}, patients, patient_index)

        visits: list[Visit] = []
        visit_index: dict[str, Visit] = {}
        for resource, where in encounter_resources:
            patient = self._resolve_patient(resource.get("subject") or resource.get("patient"), patients, patient_index, session, where)
            visit = self._visit_from_resource(resource, patient, session, where) if patient else None
            if visit is not None:
                visits.append(visit)
                key = _identifier_value(resource.get("id")) or _identifier_value(resource.get("identifier"))
                if key:
                    visit_index[key] = visit

        for section_index, title, entries in titled_visits:
            visit = self._visit_from_titled_section(title, entries, patients, patient_index, session, {"section": section_index})
            if visit is None:
                continue
            visits.append(visit)
            for entry_index, entry in enumerate(entries):
                if isinstance(entry, dict) and entry.get("title") not in _VISIT_DETAIL_TITLES:
                    observation_items.append((entry, visit, {"section": section_index, "entry": entry_index}))

        observations: list[Observation] = []
        for resource, visit, where in observation_items:
            if visit is None:
                encounter_key = _reference_key(resource.get("encounter") or resource.get("context"))
                visit = visit_index.get(encounter_key) if encounter_key else None
            if visit is not None:
                patient = next(p for p in patients if p.local_id == visit.patient_ref)
            else:
                patient = self._resolve_patient(resource.get("subject"), patients, patient_index, session, where)
            if patient is None:
                continue
            observation = self._observation_from_entry(resource, patient, visit, document, session, where)
            if observation is not None:
                observations.append(observation)

        return ClinicalData(patients=patients, visits=visits, observations=observations)

    @staticmethod
    def _add_patient(patient: Optional[Patient], resource: dict, patients: list, index: dict) -> None:
        if patient is None:
            return
        patients.append(patient)
        index.setdefault(patient.external_identifier, patient)
        resource_id = _identifier_value(resource.get("id"))
        if resource_id:
            index.setdefault(resource_id, patient)

    def _resolve_patient(
        self, reference: Any, patients: list[Patient], index: dict[str, Patient], session: ImportSession, where: dict
    ) -> Optional[Patient]:
        key = _reference_key(reference)
        if key and key in index:
            return index[key]
        if len(patients) == 1:
            return patients[0]
        session.warning(
            "UNRESOLVED_REFERENCE",
            f"Entry skipped: patient reference {key or '(none)'} matches no patient in the document",
            context=where,
        )
        return None

    def _patient_from_resource(self, resource: dict, session: ImportSession, where: dict) -> Optional[Patient]:
        identifier = _identifier_value(resource.get("identifier")) or _identifier_value(resource.get("id"))
        if not identifier:
            session.warning(
                "MISSING_REQUIRED_FIELD", "Patient resource skipped: no identifier",
                field="identifier", context=where,
            )
            return None
        return self.build_patient(
            session,
            external_identifier=identifier,
            sex=resource.get("gender"),
            birth_date=resource.get("birthDate"),
            location=where,
        )

    def _patients_from_titled_entries(self, entries: list[dict], session: ImportSession) -> list[Patient]:
        """Read ``Patient: <id>`` entries and the Gender/Age/Birth Date entries that follow them."""
        records: list[dict] = []
        for entry in entries:
            title = str(entry.get("title") or "")
            if title.startswith("Patient:"):
                records.append({"id": entry.get("value") or title.split(":", 1)[1].strip()})
            elif records and title == "Gender":
                records[-1]["sex"] = entry.get("value")
            elif records and title == "Age":
                records[-1]["age"] = entry.get("value")
            elif records and title in ("Birth Date", "Date of Birth"):
                records[-1]["birth_date"] = entry.get("value")

        patients = []
        for index, record in enumerate(records):
            patient = self.build_patient(
                session,
                external_identifier=record["id"],
                sex=record.get("sex"),
                birth_date=record.get("birth_date"),
                age_in_years=record.get("age"),
                location={"patient": index},
            )
            if patient is not None:
                patients.append(patient)
        return patients

    def _synthesize_patient(self, document: dict, observation_items: list, session: ImportSession) -> Optional[Patient]:
        subject = document.get("subject") or document.get("recordTarget")
        for resource, _, _ in observation_items:
            if subject:
                break
            subject = resource.get("subject")
        identifier = _reference_key(subject) or _display(subject) or "HL7_PATIENT"
        session.warning(
            "PATIENT_SYNTHESIZED",
            f"No patient resource found; patient {identifier} created from the document subject",
            field="subject",
        )
        return self.build_patient(session, external_identifier=identifier)

    def _visit_from_resource(self, resource: dict, patient: Patient, session: ImportSession, where: dict) -> Optional[Visit]:
        period = resource.get("period") if isinstance(resource.get("period"), dict) else {}
        start = period.get("start") or resource.get("date")
        if not start:
            session.warning(
                "MISSING_REQUIRED_FIELD", "Encounter skipped: no period.start",
                field="period.start", context=where,
            )
            return None
        location = self._encounter_location(resource)
        admission = resource.get("class")
        if isinstance(admission, list):
            admission = admission[0] if admission else None
        if isinstance(admission, dict) and not admission.get("code") and _coding(admission):
            admission = _coding(admission)
        return self.build_visit(
            session,
            patient_ref=patient.local_id,
            start_date=start,
            end_date=period.get("end"),
            location=location,
            admission_class=admission or admission_class_from_location(location),
            where=where,
        )

    @staticmethod
    def _encounter_location(resource: dict) -> Optional[str]:
        location = resource.get("location")
        if isinstance(location, list) and location:
            first = location[0]
            if isinstance(first, dict) and "location" in first:
                return _display(first["location"])
            return _display(first)
        return _display(location) or _display(resource.get("serviceProvider"))

    def _visit_from_titled_section(
        self, title: str, entries: list, patients: list[Patient], index: dict[str, Patient],
        session: ImportSession, where: dict,
    ) -> Optional[Visit]:
        details = {
            entry.get("title"): entry.get("value")
            for entry in entries
            if isinstance(entry, dict) and entry.get("title") in _VISIT_DETAIL_TITLES
        }
        patient = self._resolve_patient(details.get("Patient"), patients, index, session, where)
        if patient is None:
            return None
        start = details.get("Visit Date")
        if not start:
            session.warning(
                "MISSING_REQUIRED_FIELD", f"{title}: section skipped, no Visit Date entry",
                field="Visit Date", context=where,
            )
            return None
        location = details.get("Location")
        return self.build_visit(
            session,
            patient_ref=patient.local_id,
            start_date=start,
            location=location,
            admission_class=details.get("Type") or admission_class_from_location(location),
            where=where,
        )

    def _observation_from_entry(
        self, resource: dict, patient: Patient, visit: Optional[Visit], document: dict,
        session: ImportSession, where: dict,
    ) -> Optional[Observation]:
        start_date = _observation_date(resource) or (visit.start_date if visit else None) or document.get("date")

        if resource.get("resourceType") == "QuestionnaireResponse":
            concept_code = observation_concept_code(resource)
            return self.build_observation(
                session,
                concept_code=QUESTIONNAIRE_CONCEPT_CODE if concept_code == UNKNOWN_CONCEPT_CODE else concept_code,
                raw_value=resource,
                patient_ref=patient.local_id,
                visit_ref=visit.local_id if visit else None,
                start_date=start_date,
                declared_type=ValueType.QUESTIONNAIRE,
                category=ObservationCategory.SURVEY_BEST.value,
                where=where,
            )

        concept_code = observation_concept_code(resource)
        if concept_code == UNKNOWN_CONCEPT_CODE and resource.get("title"):
            concept_code = str(resource["title"]).strip()

        decoded = decode_hl7_value(resource)
        if decoded is None:
            session.warning(
                "MISSING_VALUE", f"Observation {concept_code or UNKNOWN_CONCEPT_CODE} skipped: no value",
                context=where,
            )
            return None

        return self.build_observation(
            session,
            concept_code=concept_code or UNKNOWN_CONCEPT_CODE,
            raw_value=decoded.raw,
            patient_ref=patient.local_id,
            visit_ref=visit.local_id if visit else None,
            start_date=start_date,
            declared_type=decoded.value_type,
            unit=decoded.unit if isinstance(decoded, QuantityValue) else None,
            category=_observation_category(resource, concept_code or ""),
            where=where,
        )
