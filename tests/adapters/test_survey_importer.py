"""Tests for the HTML survey import adapter.

These tests verify that the survey importer correctly:
- Reads answers from embedded JSON and from form controls
- Builds one questionnaire observation per survey
- Finds the patient in embedded data, data attributes or form fields
- Reports pages without answers as errors
"""

import pytest
from lxml import html as lxml_html

from clinical_import.adapters.importers import SurveyImporter
from clinical_import.adapters.importers.survey_importer import embedded_questionnaire, extract_embedded_json
from clinical_import.domain.enums import AdmissionClass, Sex, ValueType
from clinical_import.domain.payloads import QuestionnairePayload


@pytest.fixture
def embedded_survey_html():
    """Page whose answers live in a script assignment."""
    return """<html><head><title>Pain survey</title>
<script>
window.surveyData = {"patient": {"id": "P5", "gender": "female"},
                     "completedAt": "2024-04-02T10:00:00Z",
                     "questionnaire": {"title": "Pain", "code": "273249006"},
                     "responses": {"pain_level": "7", "comment": "sharp", "smoker": true}};
</script></head><body><p>Thank you</p></body></html>"""


@pytest.fixture
def form_survey_html():
    """Page whose answers live in a completed form."""
    return """<html><head><title>Intake</title></head><body>
<div data-patient-id="P9" data-patient-sex="M"></div>
<form data-title="PHQ-2" data-completed="2024-05-01" data-questionnaire-code="PHQ2">
  <label for="q1">Little interest</label><input id="q1" name="q1" type="number" value="2">
  <input type="radio" name="q2" value="1" checked><input type="radio" name="q2" value="3">
  <input type="checkbox" name="symptoms" value="headache" checked>
  <input type="checkbox" name="symptoms" value="nausea" checked>
  <input type="checkbox" name="symptoms" value="fever">
  <select name="mood"><option value="good">Good</option><option value="bad" selected>Bad</option></select>
  <textarea name="notes">feeling tired</textarea>
  <input type="hidden" name="token" value="abc">
  <input type="submit" value="Send">
</form></body></html>"""


class TestEmbeddedSurveys:
    """Surveys carried as embedded JSON."""

    def test_script_assignment(self, embedded_survey_html):
        result = SurveyImporter().import_content(embedded_survey_html)

        assert result.success, result.errors
        assert result.warnings == []
        data = result.data
        assert data.counts() == {"patients": 1, "visits": 1, "observations": 1}

        patient = data.patients[0]
        assert patient.external_identifier == "P5"
        assert patient.sex is Sex.FEMALE

        visit = data.visits[0]
        assert visit.start_date.isoformat() == "2024-04-02"
        assert visit.admission_class is AdmissionClass.OUTPATIENT

        observation = data.observations[0]
        assert observation.concept_code == "SCTID: 273249006"
        assert observation.value_type is ValueType.QUESTIONNAIRE
        assert observation.category == "SURVEY_BEST"
        assert observation.visit_ref == visit.local_id
        assert isinstance(observation.blob, QuestionnairePayload)
        answers = {item.id: item.value for item in observation.blob.items}
        assert answers == {"pain_level": 7, "comment": "sharp", "smoker": "Yes"}
        assert observation.summary == "Pain: 3 answers"

        assert result.metadata["title"] == "Pain survey"
        assert result.metadata["completedAt"] == "2024-04-02"
        assert result.metadata["questionnaireCount"] == 1
        assert result.metadata["responseCount"] == 3

    def test_json_block_with_response_list(self):
        content = """<html><body><script type="application/json">
{"PID": "P77", "answers": [{"questionId": "a1", "question": "Pain", "answer": "3", "code": "12345"}]}
</script></body></html>"""
        result = SurveyImporter().import_from_html(content)

        assert result.success
        assert result.data.patients[0].external_identifier == "P77"
        observation = result.data.observations[0]
        assert observation.concept_code == "CUSTOM: QUESTIONNAIRE"
        item = observation.blob.items[0]
        assert (item.id, item.label, item.value, item.coding) == ("a1", "Pain", 3, "SCTID: 12345")

    def test_survey_without_responses(self):
        content = '<html><body><script>var s = {"survey": {"type": "EQ-5D"}};</script></body></html>'
        result = SurveyImporter().import_content(content)

        assert not result.success
        assert result.warning_codes() == ["EMPTY_SURVEY_DATA"]
        assert result.error_codes() == ["NO_SURVEY_RESPONSES"]

    def test_missing_patient(self):
        content = '<html><body><script>var s = {"responses": {"q1": "yes"}};</script></body></html>'
        result = SurveyImporter().import_content(content)

        assert result.success
        assert result.warning_codes() == ["MISSING_PATIENT_INFO"]
        assert result.data.patients[0].external_identifier == "UNKNOWN"

    def test_patient_that_cannot_be_created(self):
        pid = "X" * 250
        content = (
            f'<html><body><script>var s = {{"PID": "{pid}", "responses": {{"q1": "yes"}}}};</script></body></html>'
        )
        result = SurveyImporter().import_content(content)

        assert not result.success
        assert result.error_codes() == ["INVALID_PATIENT"]
        assert "INVALID_PATIENT" in result.warning_codes()
        assert result.data is None

    def test_non_survey_scripts_ignored(self):
        tree = lxml_html.document_fromstring(
            '<html><head><script>var config = {"theme": "dark"};</script></head><body></body></html>'
        )
        assert extract_embedded_json(tree) == []


class TestFormSurveys:
    """Surveys carried as completed forms."""

    def test_form_controls(self, form_survey_html):
        result = SurveyImporter().import_content(form_survey_html)

        assert result.success, result.errors
        patient = result.data.patients[0]
        assert patient.external_identifier == "P9"
        assert patient.sex is Sex.MALE
        assert result.data.visits[0].start_date.isoformat() == "2024-05-01"

        observation = result.data.observations[0]
        assert observation.concept_code == "PHQ2"
        items = {item.id: item for item in observation.blob.items}
        assert set(items) == {"q1", "q2", "symptoms", "mood", "notes"}
        assert items["q1"].label == "Little interest"
        assert items["q1"].type == "number"
        assert items["q1"].value == 2
        assert items["q2"].value == 1
        assert items["symptoms"].value == ["headache", "nausea"]
        assert items["mood"].value == "bad"
        assert items["notes"].value == "feeling tired"
        assert observation.summary == "PHQ-2: 5 answers"

    def test_patient_from_form_field(self):
        content = """<html><body><form>
<input name="patient_id" value="P42"><input name="q1" value="yes">
</form></body></html>"""
        result = SurveyImporter().import_content(content)
        assert result.data.patients[0].external_identifier == "P42"

    def test_empty_form(self):
        content = '<html><body><form id="f"><input type="text" name="q1"></form></body></html>'
        result = SurveyImporter().import_content(content)

        assert not result.success
        assert result.warning_codes() == ["EMPTY_FORM"]
        assert result.error_codes() == ["NO_SURVEY_RESPONSES"]


class TestSurveyErrors:
    """Pages without survey data."""

    def test_no_survey_data(self):
        result = SurveyImporter().import_content("<html><body><p>Hello</p></body></html>")
        assert result.error_codes() == ["NO_SURVEY_DATA_FOUND"]
        assert result.data is None

    def test_empty_content(self):
        assert SurveyImporter().import_content("  ").error_codes() == ["INVALID_CONTENT"]


class TestEmbeddedQuestionnaire:
    """Questionnaire location inside embedded objects."""

    def test_items_passed_through(self):
        document = {"items": [{"id": "q1", "value": 1}]}
        assert embedded_questionnaire(document) == (True, document)

    def test_cda_section_entries(self):
        document = {"cda": {"section": [{"entry": [{"id": "q1", "text": "Sleep", "value": "good"}]}]}}
        has_survey, raw = embedded_questionnaire(document)
        assert has_survey
        assert raw["items"][0]["label"] == "Sleep"
        assert raw["items"][0]["value"] == "good"
