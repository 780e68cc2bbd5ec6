"""Format detection for in-memory import content.

Detection looks at the filename extension first and then sniffs the content.
A ``.json`` file whose top-level object carries ``resourceType`` or ``cda`` is
an HL7 document rather than generic JSON. Files without a known extension are
sniffed for XML, HTML, JSON and delimited text, in that order. ``detect``
returns None when nothing matches; it never raises.
"""

import json
import logging
import re
from pathlib import PurePath
from typing import Any, Optional, Union

from clinical_import.domain.enums import ImportFormat
from clinical_import.domain.ports import UnsupportedFormatError

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 50 * 1024 * 1024

_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(B|KB|MB|GB)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"B": 1, "KB": 1024, "MB": 1024 ** 2, "GB": 1024 ** 3}

_EXTENSIONS = {
    ".csv": ImportFormat.CSV,
    ".json": ImportFormat.JSON,
    ".xml": ImportFormat.HL7,
    ".hl7": ImportFormat.HL7,
    ".html": ImportFormat.HTML,
    ".htm": ImportFormat.HTML,
}

_HL7_KEYS = ("resourceType", "cda")
_CSV_DELIMITERS = (",", ";", "\t", "|")

FORMAT_INFO = {
    ImportFormat.CSV: {
        "name": "CSV",
        "description": "Delimited text export with concept code headers",
        "extensions": [".csv"],
        "mimeTypes": ["text/csv", "application/csv"],
    },
    ImportFormat.JSON: {
        "name": "JSON",
        "description": "Generic JSON with patients, visits and observations",
        "extensions": [".json"],
        "mimeTypes": ["application/json"],
    },
    ImportFormat.HL7: {
        "name": "HL7 CDA",
        "description": "HL7 CDA/FHIR document encoded as JSON",
        "extensions": [".json", ".hl7", ".xml"],
        "mimeTypes": ["application/fhir+json", "application/hl7-v3+json"],
    },
    ImportFormat.HTML: {
        "name": "HTML Survey",
        "description": "HTML export of a completed questionnaire",
        "extensions": [".html", ".htm"],
        "mimeTypes": ["text/html"],
    },
}


def is_valid_file_size(size: Union[str, int, None]) -> bool:
    if isinstance(size, int) and not isinstance(size, bool):
        return size >= 0
    return isinstance(size, str) and _SIZE_PATTERN.match(size) is not None


def parse_file_size(size: Union[str, int, None]) -> int:
    """Convert a size such as ``"50MB"`` to bytes.

    Units B, KB, MB and GB are 1024-based. Malformed sizes fall back to 50 MB.
    """
    if isinstance(size, int) and not isinstance(size, bool) and size >= 0:
        return size
    match = _SIZE_PATTERN.match(str(size or ""))
    if not match:
        logger.warning(f"Invalid file size {size!r}, using default of 50MB")
        return DEFAULT_MAX_FILE_SIZE
    unit = (match.group(2) or "B").upper()
    return int(float(match.group(1)) * _SIZE_UNITS[unit])


def validate_size(content: str, max_size: Union[str, int, None] = DEFAULT_MAX_FILE_SIZE) -> bool:
    """Check that content does not exceed the size limit (measured in characters)."""
    return len(content or "") <= parse_file_size(max_size)


def detect_csv_delimiter(line: str) -> str:
    """Pick the most frequent of ``,``, ``;``, tab and ``|`` in a header line."""
    counts = {delimiter: line.count(delimiter) for delimiter in _CSV_DELIMITERS}
    best = max(counts, key=counts.get)
    return best if counts[best] > 0 else ","


def get_format_from_filename(filename: str) -> Optional[ImportFormat]:
    """Map a filename extension to a format without looking at content."""
    if not filename:
        return None
    return _EXTENSIONS.get(PurePath(filename).suffix.lower())


def get_supported_formats() -> list[str]:
    return [member.value for member in ImportFormat]


def is_format_supported(name: str) -> bool:
    return name in get_supported_formats()


def get_format_info(format: Union[ImportFormat, str]) -> dict[str, Any]:
    """Name, description, extensions and MIME types of a format.

    Raises:
        UnsupportedFormatError: If ``format`` is not an import format
    """
    try:
        import_format = ImportFormat(format)
    except ValueError:
        raise UnsupportedFormatError(f"Unsupported format: {format}", format=str(format))
    return dict(FORMAT_INFO[import_format])


def _load_json(content: str) -> Optional[Any]:
    text = content.lstrip("\ufeff").strip()
    if not text or text[0] not in "{[":
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _is_hl7_json(parsed: Any) -> bool:
    return isinstance(parsed, dict) and any(key in parsed for key in _HL7_KEYS)


def _looks_like_xml(head: str) -> bool:
    return head.startswith("<?xml") or "<clinicaldocument" in head or "<hl7:" in head


def _looks_like_html(head: str) -> bool:
    return (
        "<!doctype html" in head
        or "<html" in head
        or ("<head" in head and "<body" in head)
        or "<form" in head
    )


def _looks_like_csv(content: str) -> bool:
    lines = [line for line in content.splitlines() if line.strip() and not line.lstrip().startswith("#")]
    return len(lines) >= 2 and ("," in lines[0] or ";" in lines[0] or "\t" in lines[0])


class FormatDetector:
    """Detect the import format of in-memory content.

    The detector is a pure function of its inputs; the class exists so the
    dispatcher can be given a different detector in tests.
    """

    def detect(self, content: str, filename: str) -> Optional[ImportFormat]:
        """Detect the format of ``content``.

        Parameters:
            content: Raw document text
            filename: Original filename (only the extension is used)

        Returns:
            ImportFormat, or None when the format cannot be determined
        """
        if not isinstance(content, str) or not content.strip():
            return None

        by_extension = get_format_from_filename(filename or "")
        if by_extension is ImportFormat.JSON:
            return ImportFormat.HL7 if _is_hl7_json(_load_json(content)) else ImportFormat.JSON
        if by_extension is not None:
            return by_extension
        return self.sniff(content)

    def sniff(self, content: str) -> Optional[ImportFormat]:
        """Detect the format from content alone."""
        head = content.lstrip("\ufeff").lstrip()[:4096].lower()
        if _looks_like_xml(head):
            return ImportFormat.HL7
        if _looks_like_html(head):
            return ImportFormat.HTML
        parsed = _load_json(content)
        if parsed is not None:
            return ImportFormat.HL7 if _is_hl7_json(parsed) else ImportFormat.JSON
        if _looks_like_csv(content):
            return ImportFormat.CSV
        logger.debug("Content format could not be determined")
        return None

    def validate_size(self, content: str, max_size: Union[str, int, None] = DEFAULT_MAX_FILE_SIZE) -> bool:
        return validate_size(content, max_size)
