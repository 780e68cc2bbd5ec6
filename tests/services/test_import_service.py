"""Tests for the import dispatcher.

These tests verify that the import service correctly:
- Runs the pre-flight checks in order and reports the first failure
- Routes content to the importer registered for the detected format
- Contains importer crashes as IMPORT_FAILED results
- Rebinds observations to an existing patient and visit
"""

from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from clinical_import.adapters.importers import CsvImporter
from clinical_import.domain.enums import ImportFormat
from clinical_import.domain.import_structure import ImportContext, ImportStructure
from clinical_import.infrastructure.config_manager import ImportConfig
from clinical_import.services.import_service import FileAnalysis, ImportService

CSV_CONTENT = (
    "PATIENT_CD,START_DATE,CONCEPT_CD,VALUE\n"
    "P1,2024-01-15,LID: 8867-4,72\n"
    "P1,2024-01-15,SMOKER,no\n"
)


@pytest.fixture
def service():
    return ImportService()


class TestPreflight:
    """Input checks that run before any importer is called."""

    @pytest.mark.parametrize("import_format,filename", [
        (ImportFormat.CSV, "a.csv"),
        (ImportFormat.JSON, "a.json"),
        (ImportFormat.HL7, "a.hl7"),
        (ImportFormat.HTML, "a.html"),
    ])
    @pytest.mark.parametrize("content", ["", "   ", None])
    def test_empty_content_for_every_format(self, service, import_format, filename, content):
        result = service.import_file(content, filename)

        assert not result.success
        assert result.error_codes() == ["INVALID_CONTENT"]
        assert result.data is None
        assert result.metadata["service"] == "ImportService"
        assert "importDate" in result.metadata

    @pytest.mark.parametrize("filename", ["", "  ", None])
    def test_empty_filename(self, service, filename):
        result = service.import_file(CSV_CONTENT, filename)
        assert result.error_codes() == ["INVALID_FILENAME"]

    def test_file_too_large(self):
        service = ImportService(config=ImportConfig(max_file_size="10B"))
        result = service.import_file(CSV_CONTENT, "data.csv")

        assert result.error_codes() == ["FILE_TOO_LARGE"]
        assert "'maxSize': 10" in result.errors[0].details
        assert result.metadata["filename"] == "data.csv"

    def test_undetectable_format(self, service):
        result = service.import_file("plain words only", "notes.txt")
        assert result.error_codes() == ["UNSUPPORTED_FORMAT"]

    def test_disabled_format(self):
        service = ImportService(config=ImportConfig(supported_formats="csv,json"))
        result = service.import_file("<html><form><input name='q' value='1'></form></html>", "s.html")
        assert result.error_codes() == ["UNSUPPORTED_FORMAT"]

    def test_content_checked_before_filename(self, service):
        assert service.import_file("", "").error_codes() == ["INVALID_CONTENT"]


class TestDispatch:
    """Routing to the registered importers."""

    def test_csv_import(self, service):
        result = service.import_file(CSV_CONTENT, "ward.csv", {"limit": 10})

        assert result.success, result.errors
        assert result.metadata["format"] == "csv"
        assert result.metadata["filename"] == "ward.csv"
        assert result.data.counts() == {"patients": 1, "visits": 1, "observations": 2}

    def test_hl7_json_routed_to_hl7(self, service):
        result = service.import_file('{"resourceType": "Composition", "section": []}', "doc.json")
        assert result.metadata["format"] == "hl7"
        assert result.warning_codes() == ["MISSING_CLINICAL_CONTENT"]

    def test_importer_result_returned_unchanged(self):
        expected = ImportStructure.build(None, [], [], {"format": "csv"})
        importer = MagicMock()
        importer.import_content.return_value = expected
        service = ImportService(registry={ImportFormat.CSV: importer})

        result = service.import_file(CSV_CONTENT, "a.csv", {"limit": 5})

        assert result is expected
        content, options, context = importer.import_content.call_args.args
        assert content == CSV_CONTENT
        assert options == {"limit": 5}
        assert isinstance(context, ImportContext)
        assert context.filename == "a.csv"
        assert context.format is ImportFormat.CSV

    def test_no_service_available(self):
        service = ImportService(registry={ImportFormat.CSV: CsvImporter()})
        result = service.import_file('{"patients": []}', "a.json")

        assert result.error_codes() == ["NO_SERVICE_AVAILABLE"]
        assert "json" in result.errors[0].message

    def test_importer_crash_contained(self):
        importer = MagicMock()
        importer.import_content.side_effect = RuntimeError("disk on fire")
        service = ImportService(registry={ImportFormat.CSV: importer})

        result = service.import_file(CSV_CONTENT, "a.csv")

        assert not result.success
        assert result.error_codes() == ["IMPORT_FAILED"]
        assert result.errors[0].details == "disk on fire"

    def test_invalid_options_reported(self, service):
        result = service.import_file(CSV_CONTENT, "a.csv", {"limit": "many"})
        assert result.error_codes() == ["INVALID_OPTIONS"]


class TestAnalyzeFile:
    """Pre-flight analysis without importing."""

    def test_valid_file(self, service):
        content = "x" * 2048
        analysis = service.analyze_file("PATIENT_CD,VALUE\nP1,1\n" + content, "a.csv")

        assert isinstance(analysis, FileAnalysis)
        assert analysis.is_valid
        assert analysis.format is ImportFormat.CSV
        assert analysis.errors == []
        assert analysis.estimated_processing_time_ms == 2

    def test_small_file_estimate_at_least_one(self, service):
        assert service.analyze_file("a,b\n1,2\n", "a.csv").estimated_processing_time_ms == 1

    def test_invalid_file(self, service):
        analysis = service.analyze_file("", "a.csv")
        assert not analysis.is_valid
        assert analysis.errors == ["INVALID_CONTENT"]
        assert analysis.format is None
        assert analysis.estimated_processing_time_ms == 0

    def test_too_large_file_keeps_format(self):
        service = ImportService(config=ImportConfig(max_file_size="4B"))
        analysis = service.analyze_file('{"patients": []}', "a.json")
        assert analysis.errors == ["FILE_TOO_LARGE"]
        assert analysis.format is ImportFormat.JSON


class TestImportForPatient:
    """Rebinding imported observations."""

    def test_rebinds_observations(self, service):
        result = service.import_for_patient(CSV_CONTENT, "a.csv", patient_num=501, encounter_num=77)

        assert result.success
        assert {(o.patient_ref, o.visit_ref) for o in result.data.observations} == {(501, 77)}
        assert result.metadata["patientNum"] == 501
        assert result.metadata["encounterNum"] == 77

    def test_patient_level_facts(self, service):
        result = service.import_for_patient(CSV_CONTENT, "a.csv", patient_num=501)
        assert all(o.visit_ref is None for o in result.data.observations)

    @pytest.mark.parametrize("patient_num,encounter_num", [(0, None), ("5", None), (True, None), (5, -1)])
    def test_invalid_numbers(self, service, patient_num, encounter_num):
        result = service.import_for_patient(CSV_CONTENT, "a.csv", patient_num, encounter_num)
        assert result.error_codes() == ["PATIENT_IMPORT_FAILED"]

    def test_failed_import_passed_through(self, service):
        result = service.import_for_patient("", "a.csv", patient_num=1)
        assert result.error_codes() == ["INVALID_CONTENT"]


class TestConfiguration:
    """Configuration updates."""

    def test_update_config(self, service):
        config = service.update_config(max_file_size="1KB", supported_formats=["csv"])

        assert service.config is config
        assert config.max_file_size_bytes == 1024
        assert service.get_supported_formats() == ["csv"]
        assert config.batch_size == 1000

    def test_update_config_rejects_invalid_values(self, service):
        with pytest.raises(ValidationError):
            service.update_config(max_file_size="huge")
        assert service.config.max_file_size == "50MB"

    def test_default_supported_formats(self, service):
        assert service.get_supported_formats() == ["csv", "json", "hl7", "html"]
