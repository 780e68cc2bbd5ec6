"""Import adapters for clinical-import.

This module contains the format importers that implement the FormatImporter
interface, one per member of the closed ImportFormat enum (CSV, JSON, HL7,
HTML survey).
"""

from typing import Optional

from clinical_import.adapters.importers.base_importer import BaseImporter, ImportSession
from clinical_import.adapters.importers.csv_importer import CsvImporter
from clinical_import.adapters.importers.hl7_importer import (
    Hl7Importer,
    create_observation_from_hl7,
    decode_hl7_value,
    extract_hl7_metadata,
)
from clinical_import.adapters.importers.json_importer import JsonImporter
from clinical_import.adapters.importers.survey_importer import SurveyImporter
from clinical_import.domain.enums import ImportFormat
from clinical_import.domain.item_types import ItemTypeFallback
from clinical_import.domain.ports import ConceptRepository, FormatImporter
from clinical_import.validators.data_validator import DataValidator

__all__ = [
    "BaseImporter",
    "ImportSession",
    "CsvImporter",
    "JsonImporter",
    "Hl7Importer",
    "SurveyImporter",
    "IMPORTER_CLASSES",
    "build_importer_registry",
    "create_observation_from_hl7",
    "decode_hl7_value",
    "extract_hl7_metadata",
]

IMPORTER_CLASSES: dict[ImportFormat, type[BaseImporter]] = {
    ImportFormat.CSV: CsvImporter,
    ImportFormat.JSON: JsonImporter,
    ImportFormat.HL7: Hl7Importer,
    ImportFormat.HTML: SurveyImporter,
}


def build_importer_registry(
    concept_repository: Optional[ConceptRepository] = None,
    validator: Optional[DataValidator] = None,
    item_type_fallback: Optional[ItemTypeFallback] = None,
) -> dict[ImportFormat, FormatImporter]:
    """Build one importer per import format, sharing the given collaborators.

    Parameters:
        concept_repository: Concept lookup used for value type enrichment
        validator: DataValidator applied inline by every importer
        item_type_fallback: Guesser for questionnaire items without a type

    Returns:
        dict: ImportFormat -> importer instance, covering every format

    Example Usage:
        ```python
        registry = build_importer_registry(concept_repository=concepts)
        result = registry[ImportFormat.CSV].import_content(content)
        ```
    """
    registry = {
        import_format: importer_class(
            concept_repository=concept_repository,
            validator=validator,
            item_type_fallback=item_type_fallback,
        )
        for import_format, importer_class in IMPORTER_CLASSES.items()
    }
    missing = set(ImportFormat) - set(registry)
    if missing:
        raise RuntimeError(f"No importer registered for {sorted(m.value for m in missing)}")
    return registry
