"""Typed payloads for structured observation values.

Medication and questionnaire observations carry structured data in the blob
slot. These models are parsed once at the import boundary so that downstream
code never has to re-parse opaque JSON strings.
"""

import json
import logging
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)


class MedicationPayload(BaseModel):
    """Structured medication statement.

    Parameters:
        name: Display name of the drug
        code: Drug code (ATC, RxNorm, PZN, ...) if known
        dose: Dose amount
        dose_unit: Unit of the dose amount
        route: Route of administration (oral, iv, ...)
        frequency: Free text frequency ("1-0-1", "twice daily")
        start_date: ISO date the medication was started
        end_date: ISO date the medication was stopped
    """

    name: str = Field(..., min_length=1)
    code: Optional[str] = None
    dose: Optional[float] = None
    dose_unit: Optional[str] = None
    route: Optional[str] = None
    frequency: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None

    @field_validator("dose", mode="before")
    @classmethod
    def parse_dose(cls, v) -> Optional[float]:
        if v is None or v == "":
            return None
        if isinstance(v, str):
            return float(v.replace(",", "."))
        return v

    def summary(self) -> str:
        parts = [self.name]
        if self.dose is not None:
            parts.append(f"{self.dose:g}{' ' + self.dose_unit if self.dose_unit else ''}")
        if self.frequency:
            parts.append(self.frequency)
        return " ".join(parts)

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="ignore")


class QuestionnaireItem(BaseModel):
    """A single answered questionnaire item."""

    id: str
    label: str = ""
    type: str = "text"
    value: Any = None
    coding: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="ignore")


class QuestionnaireScore(BaseModel):
    """A computed questionnaire score together with its evaluation label."""

    name: str
    method: str
    value: Optional[float] = None
    evaluation: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class QuestionnairePayload(BaseModel):
    """Structured questionnaire response.

    Parameters:
        code: Questionnaire code (e.g. a LOINC panel code)
        title: Full questionnaire title
        short_title: Short display label
        date_start: ISO timestamp the questionnaire was started
        date_end: ISO timestamp the questionnaire was completed
        items: Answered items
        results: Computed scores, empty when no scoring is configured
        coding: Code system of the questionnaire code
    """

    code: Optional[str] = None
    title: str = "Questionnaire"
    short_title: Optional[str] = None
    date_start: Optional[str] = None
    date_end: Optional[str] = None
    items: list[QuestionnaireItem] = Field(default_factory=list)
    results: list[QuestionnaireScore] = Field(default_factory=list)
    coding: Optional[str] = None

    def answered_items(self) -> list[QuestionnaireItem]:
        return [item for item in self.items if item.value not in (None, "", [])]

    def summary(self) -> str:
        """Human readable one-line summary used as TVAL_CHAR."""
        text = f"{self.short_title or self.title}: {len(self.answered_items())} answers"
        if self.results:
            rendered = ", ".join(
                f"{score.name}={score.value:g}" + (f" ({score.evaluation})" if score.evaluation else "")
                for score in self.results
                if score.value is not None
            )
            if rendered:
                text = f"{text}; {rendered}"
        return text

    model_config = ConfigDict(frozen=True, extra="ignore")


ObservationPayload = Union[QuestionnairePayload, MedicationPayload]


def serialize_blob(blob: Union[ObservationPayload, str, None]) -> Optional[str]:
    """Render a blob slot value for the OBSERVATION_BLOB column."""
    if blob is None:
        return None
    if isinstance(blob, BaseModel):
        return blob.model_dump_json(exclude_none=True)
    return blob


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", "."))
        except ValueError:
            return None
    return None


def calculate_scores(items: list[QuestionnaireItem], results_config: Union[dict, list, None]) -> list[QuestionnaireScore]:
    """Compute questionnaire scores from a results configuration.

    The configuration is either a single score definition or a list of them:

        {"name": "total", "method": "sum", "items": ["q1", "q2"],
         "ranges": [{"min": 0, "max": 4, "label": "minimal"}, ...]}

    Supported methods are ``sum``, ``avg`` and ``count``. When ``items`` is
    omitted all items take part. Items whose value is not numeric are ignored
    by ``sum``/``avg``; ``count`` counts answered items.

    Returns:
        list[QuestionnaireScore]: One score per definition, in order
    """
    if not results_config:
        return []
    definitions = results_config if isinstance(results_config, list) else [results_config]
    scores: list[QuestionnaireScore] = []

    for index, definition in enumerate(definitions):
        if not isinstance(definition, dict):
            logger.debug(f"Ignoring score definition #{index}: not an object")
            continue
        method = str(definition.get("method", "sum")).lower()
        selected_ids = definition.get("items")
        selected = [item for item in items if not selected_ids or item.id in selected_ids]
        answered = [item for item in selected if item.value not in (None, "", [])]
        numbers = [n for n in (_number(item.value) for item in answered) if n is not None]

        if method == "sum":
            value = float(sum(numbers)) if numbers else None
        elif method in ("avg", "average", "mean"):
            value = round(sum(numbers) / len(numbers), 2) if numbers else None
        elif method == "count":
            value = float(len(answered))
        else:
            logger.debug(f"Unknown score method '{method}'")
            value = None

        scores.append(
            QuestionnaireScore(
                name=str(definition.get("name") or method),
                method=method,
                value=value,
                evaluation=_evaluate(value, definition.get("ranges")),
            )
        )
    return scores


def _evaluate(value: Optional[float], ranges: Any) -> Optional[str]:
    if value is None or not isinstance(ranges, list):
        return None
    for band in ranges:
        if not isinstance(band, dict):
            continue
        low = _number(band.get("min"))
        high = _number(band.get("max"))
        if (low is None or value >= low) and (high is None or value <= high):
            label = band.get("label") or band.get("text")
            return str(label) if label is not None else None
    return None


def parse_payload_json(raw: Union[str, dict, None]) -> Optional[dict]:
    """Decode a blob that may arrive as a JSON string or an already decoded dict."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return decoded if isinstance(decoded, dict) else None
    return None
