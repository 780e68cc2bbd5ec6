"""HTML Survey Import Adapter.

This adapter imports HTML exports of completed questionnaires. Two sources
of answers are read from the page:

    - embedded JSON in ``<script>`` elements (``window.surveyData = {...}``
      assignments, ``application/json`` blocks, any object carrying ``cda``)
    - ``<form>`` elements: text and number inputs, checked radio buttons and
      checkboxes, selected options and textareas, labelled through
      ``<label for=...>``

Each questionnaire becomes one Q-typed observation whose blob is the parsed
QuestionnairePayload and whose summary is written for display. All
observations of a page belong to one patient and one outpatient visit dated
at the completion date.

Security Impact:
    - Scripts are never executed; embedded JSON is decoded with json only
    - lxml's HTML parser does not resolve external entities
"""

import json
import logging
from datetime import date
from typing import Any, Optional

from lxml import etree
from lxml import html as lxml_html

from clinical_import.adapters.importers.base_importer import BaseImporter, ImportSession
from clinical_import.adapters.importers.questionnaire import numeric_code
from clinical_import.domain.entities import ClinicalData, Observation, Patient
from clinical_import.domain.enums import AdmissionClass, ImportFormat, ObservationCategory, ValueType
from clinical_import.domain.import_structure import ImportContext, ImportOptions, ImportStructure
from clinical_import.domain.normalization import (
    boolean_to_text,
    first_present,
    is_date_like,
    normalize_date,
    parse_numeric,
)
from clinical_import.domain.ports import ContentParseError

logger = logging.getLogger(__name__)

QUESTIONNAIRE_CONCEPT_CODE = "CUSTOM: QUESTIONNAIRE"
SURVEY_LOCATION = "OUTPATIENT"

_JSON_SCRIPT_TYPES = ("application/json", "application/ld+json")
_SURVEY_KEYS = (
    "cda", "questionnaire", "survey", "assessment", "responses", "answers",
    "items", "item", "patient", "subject", "info", "PID",
)
_PATIENT_FIELD_NAMES = ("patient_id", "patientId", "PID", "PATIENT_CD")
_SKIPPED_INPUT_TYPES = ("submit", "button", "reset", "image", "file", "password", "hidden")
_INPUT_ITEM_TYPES = {"number": "number", "range": "number", "radio": "radio", "checkbox": "checkbox"}


def _typed_answer(value: Any) -> Any:
    """Type a raw answer: numbers stay numbers, booleans become Yes/No, dates become ISO dates."""
    if isinstance(value, bool):
        return boolean_to_text(value)
    if isinstance(value, list):
        return [_typed_answer(item) for item in value]
    if not isinstance(value, str):
        return value
    text = value.strip()
    if text.lower() in ("true", "false", "on"):
        return boolean_to_text(text.lower() != "false")
    number = parse_numeric(text)
    if number is not None:
        return int(number) if number.is_integer() else number
    if is_date_like(text):
        return normalize_date(text)
    return text


def extract_embedded_json(tree: Any) -> list[dict]:
    """Decode every JSON object embedded in the page's script elements.

    Whole ``application/json`` blocks are decoded as a unit; other scripts are
    scanned for JSON object literals (which covers ``var x = {...};``
    assignments). Only objects that look like survey data are returned.
    """
    decoder = json.JSONDecoder()
    documents: list[dict] = []
    for script in tree.iter("script"):
        text = script.text or ""
        if not text.strip():
            continue
        if (script.get("type") or "").strip().lower() in _JSON_SCRIPT_TYPES:
            try:
                decoded = json.loads(text)
            except json.JSONDecodeError:
                logger.debug("Skipping unparseable JSON script block")
                continue
            candidates = decoded if isinstance(decoded, list) else [decoded]
        else:
            candidates = []
            position = text.find("{")
            while position != -1:
                try:
                    decoded, end = decoder.raw_decode(text, position)
                except json.JSONDecodeError:
                    position = text.find("{", position + 1)
                    continue
                candidates.append(decoded)
                position = text.find("{", end)
        documents.extend(
            candidate for candidate in candidates
            if isinstance(candidate, dict) and any(key in candidate for key in _SURVEY_KEYS)
        )
    return documents


def _responses_to_items(responses: list) -> list[dict]:
    items = []
    for index, response in enumerate(responses):
        if not isinstance(response, dict):
            items.append({"id": f"q_{index + 1}", "value": response})
            continue
        code = response.get("code")
        if isinstance(code, list) and code and isinstance(code[0], dict):
            coding = code[0].get("coding")
            code = coding[0].get("code") if isinstance(coding, list) and coding else code[0].get("code")
        items.append({
            "id": str(first_present(response, "questionId", "id", "linkId", default=f"q_{index + 1}")),
            "label": first_present(response, "question", "text", "title", default=f"Question {index + 1}"),
            "type": first_present(response, "questionType", "type"),
            "value": _typed_answer(first_present(response, "answer", "response", "value")),
            "code": code if isinstance(code, (str, int)) else response.get("questionCode"),
        })
    return items


def embedded_questionnaire(document: dict) -> tuple[bool, Optional[dict]]:
    """Locate the questionnaire in an embedded survey object.

    Returns:
        (has_survey_data, raw_questionnaire): the raw questionnaire is None
        when the object announces a survey but carries no responses
    """
    cda = document.get("cda") if isinstance(document.get("cda"), dict) else {}
    questionnaire = first_present(document, "questionnaire", "survey", "assessment") or first_present(
        cda, "questionnaire", "survey"
    )
    questionnaire = questionnaire if isinstance(questionnaire, dict) else {}

    header = {
        "title": first_present(questionnaire, "title", "type") or first_present(document, "title", "surveyType"),
        "code": first_present(questionnaire, "code", "questionnaire_code") or document.get("questionnaire_code"),
        "short_title": first_present(questionnaire, "short_title", "shortTitle", "type"),
        "date_start": first_present(document, "startedAt", "date_start"),
        "date_end": first_present(document, "completedAt", "date_end", "date"),
        "results": questionnaire.get("results") or document.get("results"),
    }
    header = {key: value for key, value in header.items() if value is not None}

    if isinstance(document.get("items"), list) or isinstance(document.get("item"), list):
        return True, document
    if isinstance(questionnaire.get("items"), list) and any(
        isinstance(item, dict) and item.get("value") not in (None, "") for item in questionnaire["items"]
    ):
        return True, {**questionnaire, **header}

    sections = cda.get("section") or document.get("section")
    section_entries = (
        sections[0].get("entry") if isinstance(sections, list) and sections and isinstance(sections[0], dict) else None
    )
    responses = (
        first_present(document, "responses", "answers")
        or cda.get("responses")
        or section_entries
        or questionnaire.get("responses")
    )
    has_survey = bool(questionnaire) or any(
        key in document for key in ("responses", "answers", "survey", "assessment")
    ) or bool(cda)

    if isinstance(responses, dict) and responses:
        return True, {**header, "responses": {key: _typed_answer(value) for key, value in responses.items()}}
    if isinstance(responses, list) and responses:
        return True, {**header, "items": _responses_to_items(responses)}
    return has_survey, None


class SurveyImporter(BaseImporter):
    """HTML survey export import adapter."""

    format = ImportFormat.HTML
    source_system = "SURVEY_SYSTEM"

    def import_from_html(
        self,
        content: str,
        options: Optional[ImportOptions] = None,
        context: Optional[ImportContext] = None,
    ) -> ImportStructure:
        return self.import_content(content, options, context)

    def _parse(self, content: str, session: ImportSession) -> Optional[ClinicalData]:
        try:
            tree = lxml_html.document_fromstring(content)
        except (etree.ParserError, ValueError) as e:
            raise ContentParseError("HTML content could not be parsed", code="INVALID_HTML", details=str(e))

        title = (tree.findtext(".//title") or "").strip() or None
        embedded = extract_embedded_json(tree)
        forms = list(tree.iter("form"))
        if not embedded and not forms:
            session.error(
                "NO_SURVEY_DATA_FOUND", "HTML contains neither embedded survey data nor a form"
            )
            return None

        questionnaires: list[dict] = []
        for document in embedded:
            has_survey, raw = embedded_questionnaire(document)
            if raw is not None:
                questionnaires.append(raw)
            elif has_survey:
                session.warning(
                    "EMPTY_SURVEY_DATA", "Embedded survey data carries no responses", field="responses"
                )
        for index, form in enumerate(forms):
            raw = self._questionnaire_from_form(form, index, title, session)
            if raw is not None:
                questionnaires.append(raw)

        if not questionnaires:
            session.error("NO_SURVEY_RESPONSES", "Survey contains no answered questions")
            return None

        completed_at = self._completed_at(embedded, forms)
        session.metadata.update({
            "title": title,
            "surveyType": self._survey_type(embedded),
            "completedAt": completed_at,
            "questionnaireCount": len(questionnaires),
        })

        patient = self._patient(tree, embedded, session)
        if patient is None:
            session.error(
                "INVALID_PATIENT", "Survey patient could not be created; questionnaire responses were not imported",
                field="PATIENT_CD",
            )
            return None
        visit = self.build_visit(
            session,
            patient_ref=patient.local_id,
            start_date=completed_at or date.today(),
            location=SURVEY_LOCATION,
            admission_class=AdmissionClass.OUTPATIENT,
        )

        observations: list[Observation] = []
        for index, raw in enumerate(questionnaires):
            observation = self.build_observation(
                session,
                concept_code=numeric_code(raw.get("code")) or QUESTIONNAIRE_CONCEPT_CODE,
                raw_value=raw,
                patient_ref=patient.local_id,
                visit_ref=visit.local_id if visit else None,
                start_date=visit.start_date if visit else None,
                declared_type=ValueType.QUESTIONNAIRE,
                category=ObservationCategory.SURVEY_BEST.value,
                where={"questionnaire": index},
            )
            if observation is not None:
                observations.append(observation)

        session.metadata["responseCount"] = sum(
            len(observation.blob.answered_items()) for observation in observations
            if observation.value_type is ValueType.QUESTIONNAIRE
        )
        return ClinicalData(patients=[patient], visits=[visit] if visit else [], observations=observations)

    # ------------------------------------------------------------------
    # Forms
    # ------------------------------------------------------------------

    def _questionnaire_from_form(self, form: Any, index: int, page_title: Optional[str], session: ImportSession) -> Optional[dict]:
        labels = {
            label.get("for"): label.text_content().strip()
            for label in form.iter("label")
            if label.get("for")
        }
        answers: dict[str, dict] = {}

        def record(name: str, element: Any, item_type: str, value: Any) -> None:
            if value is None or (isinstance(value, str) and not value.strip()):
                return
            item = answers.setdefault(name, {
                "id": name,
                "label": labels.get(element.get("id")) or element.get("data-label") or element.get("title") or name,
                "type": item_type,
                "code": element.get("data-code"),
                "value": None,
            })
            value = _typed_answer(value)
            if item_type == "checkbox":
                item["value"] = (item["value"] or []) + [value]
            else:
                item["value"] = value

        for element in form.iter("input", "select", "textarea"):
            name = element.get("name") or element.get("id")
            if not name:
                continue
            if element.tag == "textarea":
                record(name, element, "text", element.text_content())
            elif element.tag == "select":
                selected = [option.get("value", option.text_content()) for option in element.iter("option") if option.get("selected") is not None]
                if selected:
                    record(name, element, "radio", selected if element.get("multiple") is not None else selected[0])
            else:
                input_type = (element.get("type") or "text").lower()
                if input_type in _SKIPPED_INPUT_TYPES:
                    continue
                if input_type in ("radio", "checkbox") and element.get("checked") is None:
                    continue
                default = "on" if input_type in ("radio", "checkbox") else None
                record(name, element, _INPUT_ITEM_TYPES.get(input_type, "text"), element.get("value", default))

        form_title = form.get("data-title") or form.get("title") or page_title or form.get("name") or form.get("id")
        if not answers:
            session.warning(
                "EMPTY_FORM", f"Form {form_title or index + 1} has no answered fields",
                context={"form": index},
            )
            return None
        return {
            "title": form_title or "Survey",
            "code": form.get("data-questionnaire-code") or form.get("data-code"),
            "date_end": form.get("data-completed") or form.get("data-completed-at"),
            "items": list(answers.values()),
        }

    # ------------------------------------------------------------------
    # Patient and metadata
    # ------------------------------------------------------------------

    def _patient(self, tree: Any, embedded: list[dict], session: ImportSession) -> Optional[Patient]:
        for document in embedded:
            cda = document.get("cda") if isinstance(document.get("cda"), dict) else {}
            info = document.get("info") if isinstance(document.get("info"), dict) else {}
            subject = first_present(document, "patient", "subject") or cda.get("patient")
            subject = subject if isinstance(subject, dict) else ({"identifier": subject} if subject else {})
            identifier = (
                info.get("PID")
                or document.get("PID")
                or first_present(subject, "identifier", "patientId", "id", "uid", "display")
                or document.get("identifier")
            )
            if isinstance(identifier, (dict, list)):
                identifier = self._identifier(identifier)
            if identifier:
                return self.build_patient(
                    session,
                    external_identifier=identifier,
                    sex=first_present(subject, "gender", "sex") or document.get("gender"),
                    birth_date=first_present(subject, "birthDate", "dob") or document.get("birthDate"),
                    age_in_years=first_present(subject, "age") or document.get("age"),
                )

        for element in tree.xpath("//*[@data-patient-id]"):
            identifier = element.get("data-patient-id").strip()
            if identifier:
                return self.build_patient(
                    session,
                    external_identifier=identifier,
                    sex=element.get("data-patient-sex"),
                    birth_date=element.get("data-patient-birth-date"),
                )
        for element in tree.iter("input"):
            if element.get("name") in _PATIENT_FIELD_NAMES and (element.get("value") or "").strip():
                return self.build_patient(session, external_identifier=element.get("value").strip())

        session.warning(
            "MISSING_PATIENT_INFO", "No patient information found in the survey; an unknown patient was created"
        )
        return self.build_patient(session, external_identifier="UNKNOWN")

    @staticmethod
    def _identifier(value: Any) -> Optional[str]:
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, dict):
            value = value.get("value") or value.get("id")
        return str(value) if value not in (None, "") else None

    @staticmethod
    def _completed_at(embedded: list[dict], forms: list) -> Optional[str]:
        for document in embedded:
            value = first_present(document, "completedAt", "date", "authored")
            if normalize_date(value):
                return normalize_date(value)
        for form in forms:
            value = form.get("data-completed") or form.get("data-completed-at")
            if normalize_date(value):
                return normalize_date(value)
        return None

    @staticmethod
    def _survey_type(embedded: list[dict]) -> Optional[str]:
        for document in embedded:
            for key in ("questionnaire", "survey"):
                block = document.get(key)
                if isinstance(block, dict) and block.get("type"):
                    return str(block["type"])
            if document.get("surveyType"):
                return str(document["surveyType"])
        return None
