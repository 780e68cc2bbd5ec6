"""Immutable validation rule configuration.

A ``ValidationConfig`` bundles the standard rules for every data type. It is a
frozen value: changing a rule produces a new config, and "reset" simply means
going back to ``DEFAULT_VALIDATION_CONFIG``. A validator instance holds one
config for the duration of an import session, and individual calls may pass
their own.
"""

import math
from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from clinical_import.domain.enums import DataType
from clinical_import.domain.ports import ConfigurationError

# Alias table so callers may use the camelCase rule names of exported rule sets.
_RULE_ALIASES = {
    "allowNegative": "allow_negative",
    "allowZero": "allow_zero",
    "minLength": "min_length",
    "maxLength": "max_length",
    "allowEmpty": "allow_empty",
    "minDate": "min_date",
    "maxDate": "max_date",
    "allowFuture": "allow_future",
    "allowPast": "allow_past",
    "maxSize": "max_size",
}


class NumericRules(BaseModel):
    """Standard rules for numeric values."""

    min: float = -math.inf
    max: float = math.inf
    precision: Optional[int] = Field(None, ge=0)
    allow_negative: bool = True
    allow_zero: bool = True

    model_config = ConfigDict(frozen=True, extra="forbid")


class TextRules(BaseModel):
    """Standard rules for text values."""

    min_length: int = Field(0, ge=0)
    max_length: int = Field(1000, ge=0)
    allow_empty: bool = True
    pattern: Optional[str] = None
    trim: bool = True

    model_config = ConfigDict(frozen=True, extra="forbid")


class DateRules(BaseModel):
    """Standard rules for date values. Open bounds when None."""

    min_date: Optional[date] = None
    max_date: Optional[date] = None
    allow_future: bool = True
    allow_past: bool = True

    model_config = ConfigDict(frozen=True, extra="forbid")


class BlobRules(BaseModel):
    """Standard rules for blob values."""

    max_size: Optional[int] = Field(1024 * 1024, ge=0)

    model_config = ConfigDict(frozen=True, extra="forbid")


class BooleanRules(BaseModel):
    """Booleans have no standard rules beyond the native type check."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class ValidationConfig(BaseModel):
    """Standard rules for all data types."""

    numeric: NumericRules = Field(default_factory=NumericRules)
    text: TextRules = Field(default_factory=TextRules)
    date: DateRules = Field(default_factory=DateRules)
    blob: BlobRules = Field(default_factory=BlobRules)
    boolean: BooleanRules = Field(default_factory=BooleanRules)

    def rules_for(self, data_type: DataType) -> BaseModel:
        return getattr(self, data_type.value)

    def with_rules(self, data_type: str, **partial_rules: Any) -> "ValidationConfig":
        """Return a copy with ``partial_rules`` merged into one type's rules.

        Unmentioned rules keep their current value.

        Raises:
            ConfigurationError: If the type or a rule name is unknown, or a
                value does not fit the rule
        """
        try:
            kind = DataType(data_type)
        except ValueError:
            raise ConfigurationError(f"Unknown data type for rule configuration: {data_type!r}")

        current = self.rules_for(kind)
        changes = {_RULE_ALIASES.get(name, name): value for name, value in partial_rules.items()}
        unknown = set(changes) - set(type(current).model_fields)
        if unknown:
            raise ConfigurationError(f"Unknown {kind.value} rules: {', '.join(sorted(unknown))}")

        try:
            merged = type(current).model_validate({**current.model_dump(), **changes})
        except ValueError as e:
            raise ConfigurationError(f"Invalid {kind.value} rules: {e}")
        return self.model_copy(update={kind.value: merged})

    model_config = ConfigDict(frozen=True)


DEFAULT_VALIDATION_CONFIG = ValidationConfig()
