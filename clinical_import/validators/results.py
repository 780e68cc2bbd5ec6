"""Validation result types returned by the DataValidator."""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from clinical_import.domain.enums import Severity


class ValidationIssue(BaseModel):
    """A validation error or warning.

    ``rule_id`` and ``rule_name`` are set for concept rule violations.
    """

    code: str
    message: str
    field: Optional[str] = None
    details: Optional[str] = None
    severity: Severity = Severity.ERROR
    rule_id: Optional[Union[int, str]] = None
    rule_name: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ValidationResult(BaseModel):
    """Outcome of validating one value. ``is_valid`` is true exactly when there are no errors."""

    is_valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_validity(self) -> "ValidationResult":
        if self.is_valid == bool(self.errors):
            raise ValueError("is_valid must be true exactly when errors is empty")
        return self

    @classmethod
    def build(
        cls,
        errors: list[ValidationIssue],
        warnings: list[ValidationIssue],
        metadata: dict[str, Any],
    ) -> "ValidationResult":
        return cls(is_valid=not errors, errors=list(errors), warnings=list(warnings), metadata=dict(metadata))

    def error_codes(self) -> list[str]:
        return [issue.code for issue in self.errors]

    def warning_codes(self) -> list[str]:
        return [issue.code for issue in self.warnings]

    model_config = ConfigDict(frozen=True)
