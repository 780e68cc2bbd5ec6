"""Tests for format detection and file size helpers."""

import pytest

from clinical_import.domain.enums import ImportFormat
from clinical_import.domain.ports import UnsupportedFormatError
from clinical_import.services.format_detector import (
    DEFAULT_MAX_FILE_SIZE,
    FormatDetector,
    detect_csv_delimiter,
    get_format_from_filename,
    get_format_info,
    get_supported_formats,
    is_format_supported,
    is_valid_file_size,
    parse_file_size,
    validate_size,
)


@pytest.fixture
def detector():
    return FormatDetector()


class TestDetectByExtension:
    """The filename extension decides first."""

    @pytest.mark.parametrize("filename,content,expected", [
        ("data.csv", "a,b\n1,2\n", ImportFormat.CSV),
        ("DATA.CSV", "anything", ImportFormat.CSV),
        ("data.json", '{"patients": []}', ImportFormat.JSON),
        ("doc.json", '{"resourceType": "Composition"}', ImportFormat.HL7),
        ("doc.json", '{"cda": {}}', ImportFormat.HL7),
        ("doc.json", "not json at all", ImportFormat.JSON),
        ("doc.xml", "<ClinicalDocument/>", ImportFormat.HL7),
        ("doc.hl7", "{}", ImportFormat.HL7),
        ("survey.htm", "<p>x</p>", ImportFormat.HTML),
        ("survey.html", "<html></html>", ImportFormat.HTML),
    ])
    def test_extension(self, detector, filename, content, expected):
        assert detector.detect(content, filename) is expected


class TestDetectByContent:
    """Files without a known extension are sniffed."""

    @pytest.mark.parametrize("content,expected", [
        ('<?xml version="1.0"?><ClinicalDocument/>', ImportFormat.HL7),
        ("<!DOCTYPE html><html><body></body></html>", ImportFormat.HTML),
        ("<form><input name='q'></form>", ImportFormat.HTML),
        ('{"patients": [{"PATIENT_CD": "P1"}]}', ImportFormat.JSON),
        ('[{"PATIENT_CD": "P1"}]', ImportFormat.JSON),
        ('\ufeff{"resourceType": "Bundle"}', ImportFormat.HL7),
        ("PATIENT_CD;VALUE\nP1;3\n", ImportFormat.CSV),
        ("# comment\nPATIENT_CD,VALUE\nP1,3\n", ImportFormat.CSV),
    ])
    def test_sniff(self, detector, content, expected):
        assert detector.detect(content, "upload.dat") is expected

    @pytest.mark.parametrize("content", ["just some text", "a,b", "   ", "", None])
    def test_undetectable(self, detector, content):
        assert detector.detect(content, "upload") is None


class TestFileSize:
    """Size parsing and validation."""

    @pytest.mark.parametrize("size,expected", [
        ("50MB", 50 * 1024 * 1024),
        ("1.5 kb", 1536),
        ("100", 100),
        ("2GB", 2 * 1024 ** 3),
        (2048, 2048),
    ])
    def test_parse_file_size(self, size, expected):
        assert parse_file_size(size) == expected

    @pytest.mark.parametrize("size", ["fifty", "-1MB", "10TB", None, True])
    def test_malformed_size_uses_default(self, size):
        assert parse_file_size(size) == DEFAULT_MAX_FILE_SIZE

    def test_is_valid_file_size(self):
        assert is_valid_file_size("10MB")
        assert is_valid_file_size(0)
        assert not is_valid_file_size("10 MiB")
        assert not is_valid_file_size(-5)

    def test_validate_size(self, detector):
        assert validate_size("x" * 10, "10B")
        assert not validate_size("x" * 11, "10B")
        assert detector.validate_size("x" * 1025, "1KB") is False


class TestFormatHelpers:
    """Format listing and lookup helpers."""

    def test_supported_formats(self):
        assert get_supported_formats() == ["csv", "json", "hl7", "html"]
        assert is_format_supported("hl7")
        assert not is_format_supported("xlsx")

    def test_format_from_filename(self):
        assert get_format_from_filename("a/b/c.JSON") is ImportFormat.JSON
        assert get_format_from_filename("noext") is None
        assert get_format_from_filename("") is None

    def test_format_info(self):
        info = get_format_info("html")
        assert info["name"] == "HTML Survey"
        assert ".htm" in info["extensions"]

    def test_format_info_unknown_format(self):
        with pytest.raises(UnsupportedFormatError) as exc_info:
            get_format_info("xlsx")
        assert exc_info.value.format == "xlsx"

    @pytest.mark.parametrize("line,expected", [
        ("a,b,c", ","),
        ("a;b;c", ";"),
        ("a\tb\tc", "\t"),
        ("a|b", "|"),
        ("single", ","),
    ])
    def test_detect_csv_delimiter(self, line, expected):
        assert detect_csv_delimiter(line) == expected
