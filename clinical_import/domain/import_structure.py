"""The canonical import envelope and the types that travel with it.

Every import operation returns an ``ImportStructure``. Its ``success`` flag is
derived from the error list and can never disagree with it: an envelope is
successful exactly when it carries no errors. Warnings are non-fatal and may
accompany a successful result.
"""

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from clinical_import.domain.entities import ClinicalData
from clinical_import.domain.enums import ImportFormat, Severity


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with a trailing Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ImportIssue(BaseModel):
    """A structured import error or warning.

    Parameters:
        code: Machine readable code (e.g. ``INVALID_CDA``)
        message: Human readable description
        field: Source field the issue refers to, if any
        details: Additional free text (exception messages, rule output)
        severity: error, warning or critical
        timestamp: ISO-8601 creation time
        context: Location data such as a row number or rule id
    """

    code: str = Field(..., min_length=1)
    message: str
    field: Optional[str] = None
    details: Optional[str] = None
    severity: Severity = Severity.ERROR
    timestamp: str = Field(default_factory=utc_timestamp)
    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def error(cls, code: str, message: str, **kwargs: Any) -> "ImportIssue":
        return cls(code=code, message=message, severity=Severity.ERROR, **kwargs)

    @classmethod
    def warning(cls, code: str, message: str, **kwargs: Any) -> "ImportIssue":
        return cls(code=code, message=message, severity=Severity.WARNING, **kwargs)

    @property
    def is_warning(self) -> bool:
        return self.severity is Severity.WARNING

    model_config = ConfigDict(frozen=True)


class ImportStructure(BaseModel):
    """Canonical success/error/data envelope.

    Build it through :meth:`build` or :meth:`failure`; both derive ``success``
    from the error list.
    """

    success: bool
    data: Optional[ClinicalData] = None
    errors: list[ImportIssue] = Field(default_factory=list)
    warnings: list[ImportIssue] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_success_matches_errors(self) -> "ImportStructure":
        if self.success == bool(self.errors):
            raise ValueError("success must be true exactly when errors is empty")
        return self

    @classmethod
    def build(
        cls,
        data: Optional[ClinicalData],
        errors: Optional[list[ImportIssue]] = None,
        warnings: Optional[list[ImportIssue]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> "ImportStructure":
        errors = list(errors or [])
        return cls(
            success=not errors,
            data=data,
            errors=errors,
            warnings=list(warnings or []),
            metadata=dict(metadata or {}),
        )

    @classmethod
    def failure(
        cls,
        code: str,
        message: str,
        details: Optional[str] = None,
        warnings: Optional[list[ImportIssue]] = None,
        metadata: Optional[dict[str, Any]] = None,
        **issue_kwargs: Any,
    ) -> "ImportStructure":
        error = ImportIssue.error(code, message, details=details, **issue_kwargs)
        return cls.build(None, [error], warnings, metadata)

    def error_codes(self) -> list[str]:
        return [issue.code for issue in self.errors]

    def warning_codes(self) -> list[str]:
        return [issue.code for issue in self.warnings]

    def with_metadata(self, **extra: Any) -> "ImportStructure":
        return self.model_copy(update={"metadata": {**self.metadata, **extra}})

    model_config = ConfigDict(frozen=True)


class ImportOptions(BaseModel):
    """Options accepted by every import call.

    Parameters:
        limit: Maximum number of observations to keep
        context: Opaque caller context echoed into the result metadata

    Unrecognized keys are ignored so that format-specific extensions can be
    passed through the dispatcher unchanged.
    """

    limit: Optional[int] = Field(None, ge=0)
    context: Optional[dict[str, Any]] = None

    model_config = ConfigDict(frozen=True, extra="ignore")


class IdAllocator:
    """Hands out provisional sequential local ids for one import run."""

    def __init__(self, start: int = 1):
        self._patients: Iterator[int] = itertools.count(start)
        self._visits: Iterator[int] = itertools.count(start)

    def next_patient_id(self) -> int:
        return next(self._patients)

    def next_visit_id(self) -> int:
        return next(self._visits)


@dataclass
class ImportContext:
    """Per-call context passed from the dispatcher to an importer."""

    filename: str = ""
    format: Optional[ImportFormat] = None
    ids: IdAllocator = field(default_factory=IdAllocator)
    started_at: str = field(default_factory=utc_timestamp)
