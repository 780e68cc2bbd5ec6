"""Validation layer for Clinical Import.

This module contains the rule-driven DataValidator and its immutable
configuration.
"""

from .config import DEFAULT_VALIDATION_CONFIG, ValidationConfig
from .data_validator import DataValidator, is_valid_date
from .results import ValidationIssue, ValidationResult

__all__ = [
    "DEFAULT_VALIDATION_CONFIG",
    "ValidationConfig",
    "DataValidator",
    "is_valid_date",
    "ValidationIssue",
    "ValidationResult",
]
