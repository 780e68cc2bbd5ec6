"""Domain Ports - Abstract Contracts for Clinical Import.

This module defines the Port interfaces that adapters implement and the
collaborator interfaces the core consumes. Following Hexagonal Architecture,
the domain core defines what it needs, not how it's provided.

Architecture:
    - FormatImporter: one implementation per ImportFormat member
    - ConceptRepository / RuleRepository: read-only lookups owned by the
      persistence layer, consumed by importers and the validator
    - Result: explicit success/failure values for pre-flight checks
    - Exception hierarchy used inside importers and converted to structured
      issues at the importer boundary
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field

from clinical_import.domain.enums import ImportFormat, ValueType
from clinical_import.domain.import_structure import ImportContext, ImportOptions, ImportStructure

T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    The dispatcher uses it for its pre-flight checks (content, filename,
    size, format) so that import_file and analyze_file share one path.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error message (only present if success=False)
        error_type: Issue code for the failure (e.g. INVALID_JSON)
        error_details: Additional error context
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(success=True, value=value)

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Issue code of the failure
            error_details: Additional context

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")
        return cls(
            success=False,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class ClinicalImportError(Exception):
    """Base exception for all import-related errors."""
    pass


class ContentParseError(ClinicalImportError):
    """Raised when content cannot be parsed in its declared syntax.

    Attributes:
        code: Issue code reported to the caller
        details: Parser message or position information
    """

    def __init__(self, message: str, code: str = "PARSE_ERROR", details: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class StructureError(ClinicalImportError):
    """Raised when parsed content lacks the structure an importer needs.

    Attributes:
        code: Issue code reported to the caller (e.g. MISSING_HEADERS)
        details: Additional error details
        field: Offending field, if any
    """

    def __init__(self, code: str, message: str, details: Optional[str] = None, field: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.details = details
        self.field = field


class UnsupportedFormatError(ClinicalImportError):
    """Raised when no importer exists for the requested format.

    Attributes:
        format: The format that is not supported
    """

    def __init__(self, message: str, format: Optional[str] = None):
        super().__init__(message)
        self.format = format


class ConfigurationError(ClinicalImportError):
    """Raised when import or validation configuration is invalid."""
    pass


# ============================================================================
# Collaborator models
# ============================================================================

class ConceptMetadata(BaseModel):
    """Semantic metadata for a concept code.

    Parameters:
        concept_code: The coded term (e.g. ``LID: 8867-4``)
        name: Display name
        value_type: Declared value type of facts recorded against the concept
        category: Observation category for the concept
        source_system: Code system or source tag
        unit: Default unit of measurement
    """

    concept_code: str = Field(..., min_length=1)
    name: Optional[str] = None
    value_type: Optional[ValueType] = None
    category: Optional[str] = None
    source_system: Optional[str] = None
    unit: Optional[str] = None

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)


class Rule(BaseModel):
    """A validation rule attached to a concept.

    ``definition`` is opaque to importers. It may arrive as a decoded dict or
    as the JSON string stored by the persistence layer; only the validator's
    rule evaluator interprets it.
    """

    id: Union[int, str]
    name: str = ""
    concept_code: Optional[str] = None
    definition: Union[dict[str, Any], str]

    def parsed_definition(self) -> dict[str, Any]:
        """Decode the definition.

        Raises:
            ValueError: If the definition is not a JSON object
        """
        if isinstance(self.definition, dict):
            return self.definition
        decoded = json.loads(self.definition)
        if not isinstance(decoded, dict):
            raise ValueError("Rule definition must be a JSON object")
        return decoded

    model_config = ConfigDict(frozen=True)


# ============================================================================
# Port Interfaces
# ============================================================================

class ConceptRepository(ABC):
    """Read-only concept lookup provided by the persistence layer."""

    @abstractmethod
    def find_by_concept_code(self, concept_code: str) -> Optional[ConceptMetadata]:
        """Return the metadata for a concept code, or None when unknown."""
        pass


class RuleRepository(ABC):
    """Read-only rule lookup provided by the persistence layer."""

    @abstractmethod
    def find_by_concept_code(self, concept_code: str) -> list[Rule]:
        """Return the rules attached to a concept code (possibly empty)."""
        pass


class FormatImporter(ABC):
    """Port for a single-format importer.

    Implementations turn one concrete syntax into the patient/visit/observation
    triad. They must not raise: every failure is reported inside the returned
    ImportStructure.
    """

    format: ImportFormat

    @abstractmethod
    def import_content(
        self,
        content: str,
        options: Optional[ImportOptions] = None,
        context: Optional[ImportContext] = None,
    ) -> ImportStructure:
        """Import one in-memory document.

        Parameters:
            content: Raw document text
            options: Import options (limit, context, format extensions)
            context: Per-call dispatcher context (filename, id allocator)

        Returns:
            ImportStructure: The import envelope
        """
        pass
