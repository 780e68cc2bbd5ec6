"""Tests for questionnaire payload parsing, scoring and item type guessing."""

import pytest

from clinical_import.adapters.importers.questionnaire import build_questionnaire_payload, numeric_code
from clinical_import.domain.item_types import KeywordItemTypeFallback, resolve_item_type
from clinical_import.domain.payloads import QuestionnaireItem, calculate_scores


@pytest.fixture
def items():
    return [
        QuestionnaireItem(id="q1", value=2),
        QuestionnaireItem(id="q2", value="3,5"),
        QuestionnaireItem(id="q3", value="often"),
        QuestionnaireItem(id="q4", value=None),
    ]


class TestScores:
    """Score calculation from a results configuration."""

    def test_sum_with_ranges(self, items):
        scores = calculate_scores(items, {
            "name": "total", "method": "sum",
            "ranges": [{"min": 0, "max": 4, "label": "low"}, {"min": 5, "label": "high"}],
        })
        assert len(scores) == 1
        assert scores[0].value == 5.5
        assert scores[0].evaluation == "high"

    def test_several_definitions(self, items):
        scores = calculate_scores(items, [
            {"name": "mean", "method": "avg", "items": ["q1", "q2"]},
            {"method": "count"},
            {"name": "odd", "method": "median"},
            "not a definition",
        ])
        assert [(s.name, s.value) for s in scores] == [("mean", 2.75), ("count", 3.0), ("odd", None)]

    def test_no_numbers(self):
        scores = calculate_scores([QuestionnaireItem(id="q", value="no")], {"method": "sum"})
        assert scores[0].value is None
        assert scores[0].evaluation is None

    def test_empty_configuration(self, items):
        assert calculate_scores(items, None) == []


class TestBuildPayload:
    """Questionnaire response layouts."""

    def test_fhir_questionnaire_response(self):
        payload = build_questionnaire_payload({
            "questionnaireCode": "PHQ9",
            "authored": "2024-03-01T10:00:00Z",
            "item": [
                {"linkId": "1", "text": "Wie oft", "answer": [{"valueInteger": 2}]},
                {"linkId": "2", "text": "Mood", "type": "choice",
                 "answer": [{"valueCoding": {"code": "a", "display": "Sometimes"}}]},
                {"linkId": "3", "text": "Symptoms", "answer": [{"valueString": "x"}, {"valueString": "y"}]},
            ],
        })
        assert payload.title == "PHQ9"
        assert payload.code == "PHQ9"
        assert payload.date_end == "2024-03-01T10:00:00Z"
        assert [item.value for item in payload.items] == [2, "Sometimes", ["x", "y"]]
        assert [item.type for item in payload.items] == ["number", "radio", "text"]

    def test_items_with_numeric_codes(self):
        payload = build_questionnaire_payload({
            "title": "Smoking", "items": [{"id": "s", "label": "Rauchen Sie?", "value": "Ja", "code": 77176002}],
        })
        item = payload.items[0]
        assert item.coding == "SCTID: 77176002"
        assert item.type == "radio"

    def test_coded_questionnaire_reference(self):
        payload = build_questionnaire_payload({"code": {"coding": [{"code": "44249-1"}]}, "responses": {}})
        assert payload.code == "44249-1"
        assert payload.items == []

    @pytest.mark.parametrize("code", [{"coding": ["x"]}, {"coding": []}, {"coding": [None]}])
    def test_unusable_coding(self, code):
        payload = build_questionnaire_payload({"code": code, "responses": {"q1": 1}})
        assert payload.code is None
        assert payload.title == "Questionnaire"


class TestItemTypes:
    """Declared and guessed item types."""

    @pytest.mark.parametrize("declared,expected", [
        ("NUMBER", "number"),
        ("integer", "number"),
        ("boolean", "radio"),
        ("textarea", "text"),
    ])
    def test_declared_types(self, declared, expected):
        assert resolve_item_type(declared, "ignored", KeywordItemTypeFallback()) == expected

    @pytest.mark.parametrize("label,expected", [
        ("Anzahl der Zigaretten", "number"),
        ("Haben Sie Schmerzen?", "radio"),
        ("Mehrfachauswahl: Beschwerden", "checkbox"),
        ("Bemerkungen", "text"),
        (None, "text"),
    ])
    def test_keyword_fallback(self, label, expected):
        assert KeywordItemTypeFallback()(label) == expected

    def test_custom_fallback(self):
        assert resolve_item_type("unknown", "label", lambda label: "checkbox") == "checkbox"

    def test_numeric_code(self):
        assert numeric_code("123") == "SCTID: 123"
        assert numeric_code("LID: 1-8") == "LID: 1-8"
        assert numeric_code(" ") is None
