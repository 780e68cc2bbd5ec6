"""Import dispatcher.

``ImportService.import_file`` is the single entry point for file imports: it
validates the input, detects the format, routes the content to the importer
registered for that format and returns the importer's ImportStructure
unchanged. No exception crosses this boundary; every failure path returns an
ImportStructure with ``success=False``.

Security Impact:
    - Oversized content is rejected before any parsing happens
    - Importer crashes are contained and reported as IMPORT_FAILED
"""

import logging
import math
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from clinical_import.adapters.importers import build_importer_registry
from clinical_import.domain.enums import ImportFormat
from clinical_import.domain.import_structure import ImportContext, ImportOptions, ImportStructure, utc_timestamp
from clinical_import.domain.item_types import ItemTypeFallback
from clinical_import.domain.ports import ConceptRepository, FormatImporter, Result
from clinical_import.infrastructure.config_manager import ImportConfig
from clinical_import.services.format_detector import FormatDetector
from clinical_import.validators.data_validator import DataValidator

logger = logging.getLogger(__name__)

SERVICE_NAME = "ImportService"

# Rough parsing cost per KiB, used only for pre-flight estimates
_MS_PER_KIB = {
    ImportFormat.CSV: 0.5,
    ImportFormat.JSON: 0.8,
    ImportFormat.HL7: 1.2,
    ImportFormat.HTML: 1.5,
}


class FileAnalysis(BaseModel):
    """Pre-flight analysis of a file, produced without parsing it.

    Parameters:
        format: Detected format, None when undetected
        size: Content length in characters
        estimated_processing_time_ms: Rough import time estimate
        is_valid: True when the file passed every pre-flight check
        errors: Codes of the failed checks
    """

    format: Optional[ImportFormat] = None
    size: int = 0
    estimated_processing_time_ms: int = 0
    is_valid: bool = False
    errors: list[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


def _error_result(code: str, message: str, details: Optional[str] = None, **metadata: Any) -> ImportStructure:
    return ImportStructure.failure(
        code,
        message,
        details=details,
        metadata={"importDate": utc_timestamp(), "service": SERVICE_NAME, **metadata},
    )


class ImportService:
    """Detects the format of a file and dispatches it to the matching importer.

    Parameters:
        registry: ImportFormat -> importer mapping. Built for every format
            from the collaborators below when omitted.
        detector: Format detector (FormatDetector by default)
        config: ImportConfig (defaults when omitted)
        concept_repository: Concept lookup handed to the default importers
        validator: DataValidator handed to the default importers
        item_type_fallback: Questionnaire item type guesser for the default importers

    Example Usage:
        ```python
        service = ImportService(concept_repository=concepts)
        result = service.import_file(content, "export.csv", {"limit": 100})
        if result.success:
            persist(result.data)
        ```
    """

    def __init__(
        self,
        registry: Optional[Mapping[ImportFormat, FormatImporter]] = None,
        detector: Optional[FormatDetector] = None,
        config: Optional[ImportConfig] = None,
        concept_repository: Optional[ConceptRepository] = None,
        validator: Optional[DataValidator] = None,
        item_type_fallback: Optional[ItemTypeFallback] = None,
    ):
        if registry is None:
            registry = build_importer_registry(concept_repository, validator, item_type_fallback)
        self.registry: dict[ImportFormat, FormatImporter] = dict(registry)
        self.detector = detector or FormatDetector()
        self.config = config or ImportConfig()

    # ------------------------------------------------------------------
    # Pre-flight checks
    # ------------------------------------------------------------------

    def _preflight(self, content: Any, filename: Any) -> Result[ImportFormat]:
        """Run the content, filename, size and format checks in order."""
        if not isinstance(content, str) or not content.strip():
            return Result.failure_result("Content must be a non-empty string", "INVALID_CONTENT")
        if not isinstance(filename, str) or not filename.strip():
            return Result.failure_result("Filename must be a non-empty string", "INVALID_FILENAME")
        if not self.detector.validate_size(content, self.config.max_file_size):
            return Result.failure_result(
                f"File exceeds the maximum size of {self.config.max_file_size}",
                "FILE_TOO_LARGE",
                {"size": len(content), "maxSize": self.config.max_file_size_bytes},
            )
        detected = self.detector.detect(content, filename)
        if detected is None:
            return Result.failure_result(f"Unsupported file format for {filename}", "UNSUPPORTED_FORMAT")
        if detected not in self.config.supported_formats:
            return Result.failure_result(
                f"Format {detected.value} is disabled in the import configuration",
                "UNSUPPORTED_FORMAT",
                {"format": detected.value},
            )
        return Result.success_result(detected)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def import_file(
        self,
        content: str,
        filename: str,
        options: Optional[Union[ImportOptions, dict]] = None,
    ) -> ImportStructure:
        """Import a file held in memory.

        Parameters:
            content: Raw file content
            filename: Original filename (used for format detection)
            options: ImportOptions or a dict with ``limit``/``context`` keys

        Returns:
            ImportStructure: The importer's result, or a failure envelope
            with INVALID_CONTENT, INVALID_FILENAME, FILE_TOO_LARGE,
            UNSUPPORTED_FORMAT, NO_SERVICE_AVAILABLE or IMPORT_FAILED
        """
        try:
            preflight = self._preflight(content, filename)
            if preflight.is_failure():
                logger.info(f"Import rejected: {preflight.error_type}", extra={"import_file": filename})
                return _error_result(
                    preflight.error_type,
                    preflight.error,
                    details=str(preflight.error_details) if preflight.error_details else None,
                    filename=filename if isinstance(filename, str) else None,
                )

            import_format = preflight.value
            importer = self.registry.get(import_format)
            if importer is None:
                return _error_result(
                    "NO_SERVICE_AVAILABLE",
                    f"No import service available for format: {import_format.value}",
                    format=import_format.value,
                )

            logger.info(
                f"Importing {filename} as {import_format.value}",
                extra={"import_file": filename, "content_length": len(content)},
            )
            context = ImportContext(filename=filename, format=import_format)
            result = importer.import_content(content, options, context)
            logger.info(
                f"Import of {filename} finished: success={result.success}, "
                f"{len(result.errors)} errors, {len(result.warnings)} warnings"
            )
            return result
        except Exception as e:
            logger.error(f"Import failed: {e}", exc_info=True)
            return _error_result("IMPORT_FAILED", "Import failed", details=str(e))

    def analyze_file(self, content: str, filename: str) -> FileAnalysis:
        """Run the pre-flight checks only and estimate the processing time.

        Parameters:
            content: Raw file content
            filename: Original filename

        Returns:
            FileAnalysis: Detected format, size, estimate and failed checks
        """
        size = len(content) if isinstance(content, str) else 0
        preflight = self._preflight(content, filename)
        detected = preflight.value if preflight.is_success() else None
        if detected is None and isinstance(content, str) and content.strip():
            detected = self.detector.detect(content, filename or "")

        estimate = 0
        if detected is not None:
            estimate = max(1, math.ceil(size / 1024 * _MS_PER_KIB[detected]))

        return FileAnalysis(
            format=detected,
            size=size,
            estimated_processing_time_ms=estimate,
            is_valid=preflight.is_success(),
            errors=[] if preflight.is_success() else [preflight.error_type],
        )

    def import_for_patient(
        self,
        content: str,
        filename: str,
        patient_num: int,
        encounter_num: Optional[int] = None,
        options: Optional[Union[ImportOptions, dict]] = None,
    ) -> ImportStructure:
        """Import a file and attach every observation to an existing patient and visit.

        Parameters:
            content: Raw file content
            filename: Original filename
            patient_num: Durable id of the target patient
            encounter_num: Durable id of the target visit (None for patient-level facts)
            options: Import options

        Returns:
            ImportStructure: The import result with rebound observations, or a
            PATIENT_IMPORT_FAILED failure
        """
        try:
            if isinstance(patient_num, bool) or not isinstance(patient_num, int) or patient_num < 1:
                raise ValueError(f"Invalid patient number: {patient_num!r}")
            if encounter_num is not None and (
                isinstance(encounter_num, bool) or not isinstance(encounter_num, int) or encounter_num < 1
            ):
                raise ValueError(f"Invalid encounter number: {encounter_num!r}")

            result = self.import_file(content, filename, options)
            if not result.success or result.data is None:
                return result

            observations = [
                observation.model_copy(update={"patient_ref": patient_num, "visit_ref": encounter_num})
                for observation in result.data.observations
            ]
            data = result.data.model_copy(update={"observations": observations})
            logger.info(
                f"Patient import completed: {len(observations)} observations bound to patient {patient_num}",
                extra={"patient_num": patient_num, "encounter_num": encounter_num},
            )
            return result.model_copy(update={"data": data}).with_metadata(
                patientNum=patient_num, encounterNum=encounter_num
            )
        except Exception as e:
            logger.error(f"Patient import failed: {e}")
            return _error_result("PATIENT_IMPORT_FAILED", "Patient import failed", details=str(e))

    def update_config(self, **changes: Any) -> ImportConfig:
        """Replace the configuration with a validated copy carrying ``changes``.

        Raises:
            pydantic.ValidationError: If a changed value is invalid
        """
        self.config = ImportConfig.model_validate({**self.config.model_dump(), **changes})
        return self.config

    def get_supported_formats(self) -> list[str]:
        return [import_format.value for import_format in self.config.supported_formats]
