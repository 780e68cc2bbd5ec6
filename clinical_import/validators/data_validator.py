"""Data Validator - rule-driven validation of single clinical values.

The validator checks one value against, in order:

    1. the type gate (numeric, text, date, blob, boolean)
    2. the native runtime type for the declared data type
    3. the standard rules of the active ValidationConfig
    4. the rules attached to the concept in the RuleRepository
    5. clinical plausibility heuristics keyed off ``metadata["field"]``

An unknown data type stops validation immediately. A failed native type check
skips the standard rules for that value only; concept and plausibility checks
still run. Every other check collects all of its violations.

Security Impact:
    - The validator never raises: unexpected failures are reported as a
      single critical VALIDATION_ERROR so bad input cannot crash an import
    - Concept rules are interpreted by a closed evaluator, never executed as code
"""

import json
import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import BaseModel

from clinical_import.domain.entities import Observation
from clinical_import.domain.enums import DataType, Severity, ValueType
from clinical_import.domain.normalization import parse_numeric
from clinical_import.domain.ports import RuleRepository
from clinical_import.domain.import_structure import utc_timestamp
from clinical_import.validators.config import DEFAULT_VALIDATION_CONFIG, ValidationConfig
from clinical_import.validators.results import ValidationIssue, ValidationResult
from clinical_import.validators.rule_engine import evaluate_rule

logger = logging.getLogger(__name__)

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# field name -> (low, high, code, message)
PLAUSIBILITY_RANGES = {
    "AGE_IN_YEARS": (0, 150, "INVALID_AGE_RANGE", "Age must be between 0 and 150 years"),
    "BLOOD_PRESSURE": (50, 300, "INVALID_BLOOD_PRESSURE", "Blood pressure must be between 50 and 300 mmHg"),
    "HEART_RATE": (30, 250, "INVALID_HEART_RATE", "Heart rate must be between 30 and 250 bpm"),
}

_VALUE_TYPE_TO_DATA_TYPE = {
    ValueType.NUMERIC: DataType.NUMERIC,
    ValueType.DATE: DataType.DATE,
    ValueType.RAW: DataType.BLOB,
    ValueType.MEDICATION: DataType.BLOB,
    ValueType.QUESTIONNAIRE: DataType.BLOB,
}


def is_valid_date(value: Any) -> bool:
    """Check that a value is a real calendar date in strict ``YYYY-MM-DD`` form.

    ``date`` objects are accepted as they are. Strings must match the lexical
    form exactly and name an existing day.
    """
    if isinstance(value, date):
        return True
    if not isinstance(value, str) or not _ISO_DATE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value if isinstance(value, date) else date.fromisoformat(value)


def _decimal_places(number: float) -> int:
    try:
        exponent = Decimal(repr(number)).normalize().as_tuple().exponent
    except InvalidOperation:
        return 0
    return max(0, -exponent) if isinstance(exponent, int) else 0


def _fmt(number: float) -> str:
    return f"{number:g}"


def _blob_size(value: Any) -> int:
    if isinstance(value, bytes):
        return len(value)
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    if isinstance(value, BaseModel):
        return len(value.model_dump_json().encode("utf-8"))
    return len(json.dumps(value, default=str).encode("utf-8"))


class DataValidator:
    """Format-agnostic validation engine.

    The validator holds one immutable ValidationConfig. ``set_custom_rules``
    swaps in a merged copy and ``reset_to_defaults`` goes back to the default
    constant; calls may also pass an explicit config. Callers that share one
    validator across threads must serialize rule changes themselves.

    Parameters:
        rule_repository: Concept rule lookup; concept checks report
            NO_CONCEPT_RULES when it is None
        config: Initial rule configuration (default: DEFAULT_VALIDATION_CONFIG)
    """

    def __init__(self, rule_repository: Optional[RuleRepository] = None, config: Optional[ValidationConfig] = None):
        self.rule_repository = rule_repository
        self.config = config or DEFAULT_VALIDATION_CONFIG

    # ------------------------------------------------------------------
    # Rule configuration
    # ------------------------------------------------------------------

    def set_custom_rules(self, data_type: str, rules: Optional[dict] = None, **partial_rules: Any) -> ValidationConfig:
        """Merge rules into the configuration of one data type.

        Parameters:
            data_type: numeric, text, date, blob or boolean
            rules: Rule values as a dict (camelCase names accepted)
            **partial_rules: Rule values as keyword arguments

        Returns:
            ValidationConfig: The new active configuration

        Raises:
            ConfigurationError: If the type or a rule is unknown
        """
        self.config = self.config.with_rules(data_type, **{**(rules or {}), **partial_rules})
        logger.debug(f"Custom {data_type} rules applied: {sorted({**(rules or {}), **partial_rules})}")
        return self.config

    def reset_to_defaults(self) -> ValidationConfig:
        """Discard custom rules and use the default configuration."""
        self.config = DEFAULT_VALIDATION_CONFIG
        return self.config

    def get_rules(self, data_type: str) -> BaseModel:
        """Return the active standard rules for a data type."""
        return self.config.rules_for(DataType(data_type))

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_data(
        self,
        value: Any,
        data_type: str,
        concept_code: Optional[str] = None,
        metadata: Optional[dict] = None,
        config: Optional[ValidationConfig] = None,
    ) -> ValidationResult:
        """Validate a single value.

        Parameters:
            value: The value to validate
            data_type: numeric, text, date, blob or boolean
            concept_code: Concept whose rules should be applied
            metadata: Caller context; ``metadata["field"]`` selects the
                plausibility heuristics and labels the issues
            config: Rule configuration for this call (default: the validator's)

        Returns:
            ValidationResult: All errors and warnings found
        """
        metadata = metadata or {}
        result_metadata = {
            "validatedAt": utc_timestamp(),
            "dataType": data_type,
            "conceptCode": concept_code,
            "value": value,
        }
        field = metadata.get("field") or "value"

        try:
            active = config or self.config
            errors: list[ValidationIssue] = []
            warnings: list[ValidationIssue] = []

            try:
                kind = DataType(data_type)
            except ValueError:
                invalid = ValidationIssue(
                    code="INVALID_DATA_TYPE",
                    field="type",
                    message=f"Invalid data type: {data_type}",
                )
                return ValidationResult.build([invalid], [], result_metadata)

            native_errors = self._check_native_type(kind, value, field)
            errors.extend(native_errors)
            if not native_errors:
                errors.extend(self._check_standard_rules(kind, value, field, active))

            if concept_code:
                concept_errors, concept_warnings = self._check_concept_rules(concept_code, value, field)
                errors.extend(concept_errors)
                warnings.extend(concept_warnings)

            errors.extend(self._check_plausibility(kind, value, metadata.get("field")))
            return ValidationResult.build(errors, warnings, result_metadata)

        except Exception as e:
            logger.error(f"Validation system error for {data_type} value: {e}", exc_info=True)
            system_error = ValidationIssue(
                code="VALIDATION_ERROR",
                field=field,
                message="Validation system error",
                details=str(e),
                severity=Severity.CRITICAL,
            )
            return ValidationResult.build([system_error], [], result_metadata)

    def validate_observation(self, observation: Observation, config: Optional[ValidationConfig] = None) -> ValidationResult:
        """Validate the populated value slot of an observation against its concept."""
        data_type = _VALUE_TYPE_TO_DATA_TYPE.get(observation.value_type, DataType.TEXT)
        return self.validate_data(
            observation.value,
            data_type.value,
            concept_code=observation.concept_code,
            metadata={"field": observation.concept_code},
            config=config,
        )

    def _check_native_type(self, kind: DataType, value: Any, field: str) -> list[ValidationIssue]:
        if kind is DataType.NUMERIC and parse_numeric(value) is None:
            message = "Value must be a valid number"
        elif kind is DataType.TEXT and not isinstance(value, str):
            message = "Value must be a string"
        elif kind is DataType.DATE and not is_valid_date(value):
            message = "Value must be a valid date in YYYY-MM-DD format"
        elif kind is DataType.BLOB and value is None:
            message = "BLOB value cannot be null"
        elif kind is DataType.BOOLEAN and not isinstance(value, bool):
            message = "Value must be a boolean"
        else:
            return []
        return [ValidationIssue(code=f"INVALID_{kind.value.upper()}_VALUE", field=field, message=message)]

    def _check_standard_rules(self, kind: DataType, value: Any, field: str, config: ValidationConfig) -> list[ValidationIssue]:
        if kind is DataType.NUMERIC:
            return self._check_numeric(parse_numeric(value), field, config)
        if kind is DataType.TEXT:
            return self._check_text(value, field, config)
        if kind is DataType.DATE:
            return self._check_date(_as_date(value), field, config)
        if kind is DataType.BLOB:
            return self._check_blob(value, field, config)
        return []

    def _check_numeric(self, number: float, field: str, config: ValidationConfig) -> list[ValidationIssue]:
        rules = config.numeric
        issues = []
        if number < rules.min:
            issues.append(ValidationIssue(
                code="VALUE_BELOW_MINIMUM", field=field,
                message=f"Value {_fmt(number)} is below minimum {_fmt(rules.min)}",
            ))
        if number > rules.max:
            issues.append(ValidationIssue(
                code="VALUE_ABOVE_MAXIMUM", field=field,
                message=f"Value {_fmt(number)} is above maximum {_fmt(rules.max)}",
            ))
        if not rules.allow_negative and number < 0:
            issues.append(ValidationIssue(
                code="NEGATIVE_VALUE_NOT_ALLOWED", field=field, message="Negative values are not allowed",
            ))
        if not rules.allow_zero and number == 0:
            issues.append(ValidationIssue(
                code="ZERO_VALUE_NOT_ALLOWED", field=field, message="Zero values are not allowed",
            ))
        if rules.precision is not None:
            places = _decimal_places(number)
            if places > rules.precision:
                issues.append(ValidationIssue(
                    code="PRECISION_EXCEEDED", field=field,
                    message=f"Precision exceeded: {places} decimal places (maximum {rules.precision})",
                ))
        return issues

    def _check_text(self, text: str, field: str, config: ValidationConfig) -> list[ValidationIssue]:
        rules = config.text
        if rules.trim:
            text = text.strip()
        issues = []
        if not rules.allow_empty and text == "":
            issues.append(ValidationIssue(
                code="EMPTY_TEXT_NOT_ALLOWED", field=field, message="Empty text is not allowed",
            ))
        if len(text) < rules.min_length:
            issues.append(ValidationIssue(
                code="TEXT_TOO_SHORT", field=field,
                message=f"Text length {len(text)} is below minimum {rules.min_length}",
            ))
        if len(text) > rules.max_length:
            issues.append(ValidationIssue(
                code="TEXT_TOO_LONG", field=field,
                message=f"Text length {len(text)} exceeds maximum {rules.max_length}",
            ))
        if rules.pattern and not re.search(rules.pattern, text):
            issues.append(ValidationIssue(
                code="PATTERN_MISMATCH", field=field,
                message=f"Text does not match required pattern {rules.pattern}",
            ))
        return issues

    def _check_date(self, value: date, field: str, config: ValidationConfig) -> list[ValidationIssue]:
        rules = config.date
        today = date.today()
        issues = []
        if rules.min_date is not None and value < rules.min_date:
            issues.append(ValidationIssue(
                code="DATE_TOO_EARLY", field=field,
                message=f"Date {value.isoformat()} is before minimum {rules.min_date.isoformat()}",
            ))
        if rules.max_date is not None and value > rules.max_date:
            issues.append(ValidationIssue(
                code="DATE_TOO_LATE", field=field,
                message=f"Date {value.isoformat()} is after maximum {rules.max_date.isoformat()}",
            ))
        if not rules.allow_future and value > today:
            issues.append(ValidationIssue(
                code="FUTURE_DATE_NOT_ALLOWED", field=field, message="Future dates are not allowed",
            ))
        if not rules.allow_past and value < today:
            issues.append(ValidationIssue(
                code="PAST_DATE_NOT_ALLOWED", field=field, message="Past dates are not allowed",
            ))
        return issues

    def _check_blob(self, value: Any, field: str, config: ValidationConfig) -> list[ValidationIssue]:
        max_size = config.blob.max_size
        if max_size is None:
            return []
        size = _blob_size(value)
        if size > max_size:
            return [ValidationIssue(
                code="BLOB_TOO_LARGE", field=field,
                message=f"BLOB size {size} exceeds maximum {max_size}",
            )]
        return []

    def _check_concept_rules(self, concept_code: str, value: Any, field: str) -> tuple[list[ValidationIssue], list[ValidationIssue]]:
        if self.rule_repository is None:
            rules = []
        else:
            try:
                rules = self.rule_repository.find_by_concept_code(concept_code)
            except Exception as e:
                logger.warning(f"Rule lookup failed for concept {concept_code}: {e}")
                return [ValidationIssue(
                    code="CONCEPT_VALIDATION_ERROR",
                    field=field,
                    message=f"Could not load rules for concept {concept_code}",
                    details=str(e),
                )], []

        if not rules:
            return [], [ValidationIssue(
                code="NO_CONCEPT_RULES",
                field=field,
                message=f"No validation rules found for concept {concept_code}",
                severity=Severity.WARNING,
            )]

        errors = []
        for rule in rules:
            try:
                outcome = evaluate_rule(rule.parsed_definition(), value)
            except Exception as e:
                # Malformed or failing rules are reported per rule; the rest still run.
                logger.warning(f"Rule {rule.id} ({rule.name}) failed to execute: {e}")
                errors.append(ValidationIssue(
                    code="CONCEPT_RULE_VIOLATION",
                    field=field,
                    message=f"Rule '{rule.name or rule.id}' could not be executed",
                    details=f"Rule execution failed: {e}",
                    rule_id=rule.id,
                    rule_name=rule.name,
                ))
                continue
            if not outcome.passed:
                errors.append(ValidationIssue(
                    code="CONCEPT_RULE_VIOLATION",
                    field=field,
                    message=outcome.message or f"Rule '{rule.name or rule.id}' violated",
                    details=f"Concept {concept_code} rule {rule.id}",
                    rule_id=rule.id,
                    rule_name=rule.name,
                ))
        return errors, []

    def _check_plausibility(self, kind: DataType, value: Any, field: Optional[str]) -> list[ValidationIssue]:
        if kind is not DataType.NUMERIC or not field:
            return []
        bounds = PLAUSIBILITY_RANGES.get(str(field).upper())
        number = parse_numeric(value)
        if bounds is None or number is None:
            return []
        low, high, code, message = bounds
        if low <= number <= high:
            return []
        return [ValidationIssue(code=code, field=field, message=message, details=f"Got {_fmt(number)}")]
