"""Questionnaire payload construction shared by the JSON, HL7 and survey importers.

Questionnaire responses arrive in three shapes:

    - the application's own export: ``{"title", "items": [{"id", "label", "type", "value"}]}``
    - a flat answer map: ``{"title", "responses": {"q1": 3, "q2": "yes"}}``
    - FHIR QuestionnaireResponse: ``{"item": [{"linkId", "text", "answer": [{"valueInteger": 3}]}]}``

All three are parsed once into a QuestionnairePayload.
"""

import logging
from typing import Any, Optional

from clinical_import.domain.item_types import ItemTypeFallback, KeywordItemTypeFallback, resolve_item_type
from clinical_import.domain.normalization import first_present
from clinical_import.domain.payloads import QuestionnaireItem, QuestionnairePayload, calculate_scores

logger = logging.getLogger(__name__)

_ANSWER_KEYS = (
    "valueInteger", "valueDecimal", "valueQuantity", "valueString", "valueBoolean",
    "valueDate", "valueDateTime", "valueCoding", "value",
)


def numeric_code(code: Any) -> Optional[str]:
    """Prefix purely numeric codes as SNOMED CT ids; keep other codes unchanged."""
    if code is None or str(code).strip() == "":
        return None
    text = str(code).strip()
    return f"SCTID: {text}" if text.isdigit() else text


def _answer_value(answer: Any) -> Any:
    if not isinstance(answer, dict):
        return answer
    for key in _ANSWER_KEYS:
        if key not in answer:
            continue
        value = answer[key]
        if key == "valueQuantity" and isinstance(value, dict):
            return value.get("value")
        if key == "valueCoding" and isinstance(value, dict):
            return value.get("display") or value.get("code")
        return value
    return None


def _fhir_item_value(item: dict) -> Any:
    answers = item.get("answer")
    if not isinstance(answers, list) or not answers:
        return None
    values = [_answer_value(answer) for answer in answers]
    values = [value for value in values if value is not None]
    if not values:
        return None
    return values[0] if len(values) == 1 else values


def _items_from(raw: dict, fallback: ItemTypeFallback) -> list[QuestionnaireItem]:
    items: list[QuestionnaireItem] = []

    if isinstance(raw.get("items"), list):
        for index, item in enumerate(raw["items"]):
            if not isinstance(item, dict):
                continue
            label = str(first_present(item, "label", "text", "question", default=""))
            items.append(QuestionnaireItem(
                id=str(first_present(item, "id", "linkId", "name", default=f"item_{index + 1}")),
                label=label,
                type=resolve_item_type(item.get("type"), label, fallback),
                value=first_present(item, "value", "answer", "response"),
                coding=numeric_code(first_present(item, "code", "coding")),
            ))

    elif isinstance(raw.get("item"), list):
        for index, item in enumerate(raw["item"]):
            if not isinstance(item, dict):
                continue
            label = str(item.get("text") or "")
            items.append(QuestionnaireItem(
                id=str(item.get("linkId") or f"item_{index + 1}"),
                label=label,
                type=resolve_item_type(item.get("type"), label, fallback),
                value=_fhir_item_value(item),
                coding=numeric_code(item.get("code") if not isinstance(item.get("code"), list) else None),
            ))

    elif isinstance(raw.get("responses"), dict):
        for item_id, value in raw["responses"].items():
            items.append(QuestionnaireItem(
                id=str(item_id),
                label=str(item_id),
                type=resolve_item_type(None, str(item_id), fallback),
                value=value,
            ))

    return items


def build_questionnaire_payload(raw: dict, fallback: Optional[ItemTypeFallback] = None) -> QuestionnairePayload:
    """Parse a questionnaire response into a QuestionnairePayload.

    The title is taken from ``title``, then ``label``, then the questionnaire
    reference code. ``results`` (or ``scoring``) is read as a score
    configuration and the scores are always recomputed from the items; any
    precomputed values in it are ignored.

    Parameters:
        raw: Decoded questionnaire response
        fallback: Item type guesser for items without a declared type

    Returns:
        QuestionnairePayload: The parsed payload
    """
    fallback = fallback or KeywordItemTypeFallback()
    reference = raw.get("questionnaireReference") if isinstance(raw.get("questionnaireReference"), dict) else {}
    code = first_present(raw, "questionnaire_code", "questionnaireCode", "code") or reference.get("questionnaireCode")
    if isinstance(code, dict):
        coding = code.get("coding")
        first = coding[0] if isinstance(coding, list) and coding else None
        code = first.get("code") if isinstance(first, dict) else code.get("code")
    title = first_present(raw, "title", "label") or reference.get("questionnaireCode") or code or "Questionnaire"

    items = _items_from(raw, fallback)
    results_config = raw.get("results") if isinstance(raw.get("results"), (dict, list)) else raw.get("scoring")
    scores = calculate_scores(items, results_config) if results_config else []

    return QuestionnairePayload(
        code=str(code) if code is not None else None,
        title=str(title),
        short_title=_text(first_present(raw, "short_title", "shortTitle")),
        date_start=_text(first_present(raw, "date_start", "dateStart", "started", "authored")),
        date_end=_text(first_present(raw, "date_end", "dateEnd", "completedAt", "completed", "authored")),
        items=items,
        results=scores,
        coding=_text(first_present(raw, "coding", "system")),
    )


def _text(value: Any) -> Optional[str]:
    return str(value) if isinstance(value, (str, int, float)) and not isinstance(value, bool) else None
