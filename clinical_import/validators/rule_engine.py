"""Built-in evaluator for concept rule definitions.

Rule definitions are small JSON objects stored alongside concepts:

    {"type": "range", "params": {"min": 0, "max": 10}}
    {"type": "enum", "params": {"values": ["low", "high"]}}
    {"type": "pattern", "params": {"regex": "^[A-Z]{3}$"}}

Parameters may also sit at the top level of the definition. Unknown rule
types are vacuously satisfied. Evaluation raises ``RuleExecutionError`` when a
definition is malformed or cannot be applied to the value; the validator turns
that into a rule violation without aborting the other rules.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from clinical_import.domain.normalization import parse_numeric


class RuleExecutionError(Exception):
    """Raised when a rule definition cannot be executed against a value."""
    pass


@dataclass(frozen=True)
class RuleOutcome:
    """Outcome of evaluating one rule.

    Attributes:
        passed: True if the value satisfies the rule
        message: Violation message when the rule failed
    """

    passed: bool
    message: Optional[str] = None


PASSED = RuleOutcome(passed=True)


def _params(definition: dict) -> dict:
    params = definition.get("params")
    if params is None:
        return {key: value for key, value in definition.items() if key != "type"}
    if not isinstance(params, dict):
        raise RuleExecutionError("Rule params must be an object")
    return params


def _bound(params: dict, key: str) -> Optional[float]:
    if params.get(key) is None:
        return None
    bound = parse_numeric(params[key])
    if bound is None:
        raise RuleExecutionError(f"Range bound '{key}' is not numeric: {params[key]!r}")
    return bound


def _evaluate_range(value: Any, params: dict) -> RuleOutcome:
    low = _bound(params, "min")
    high = _bound(params, "max")
    number = parse_numeric(value)
    if number is None:
        raise RuleExecutionError(f"Range rule requires a numeric value, got {value!r}")
    if low is not None and number < low:
        return RuleOutcome(False, f"Value {number:g} is below the allowed range minimum {low:g}")
    if high is not None and number > high:
        return RuleOutcome(False, f"Value {number:g} is above the allowed range maximum {high:g}")
    return PASSED


def _evaluate_enum(value: Any, params: dict) -> RuleOutcome:
    allowed = params.get("values")
    if not isinstance(allowed, list):
        raise RuleExecutionError("Enum rule requires a 'values' list")
    if value in allowed or str(value) in {str(item) for item in allowed}:
        return PASSED
    return RuleOutcome(False, f"Value {value!r} is not one of the allowed values {allowed}")


def _evaluate_pattern(value: Any, params: dict) -> RuleOutcome:
    expression = params.get("regex") or params.get("pattern")
    if not isinstance(expression, str):
        raise RuleExecutionError("Pattern rule requires a 'regex' string")
    try:
        compiled = re.compile(expression)
    except re.error as e:
        raise RuleExecutionError(f"Invalid pattern {expression!r}: {e}")
    if compiled.search(str(value)):
        return PASSED
    return RuleOutcome(False, f"Value {value!r} does not match pattern {expression!r}")


EVALUATORS: dict[str, Callable[[Any, dict], RuleOutcome]] = {
    "range": _evaluate_range,
    "enum": _evaluate_enum,
    "pattern": _evaluate_pattern,
}


def evaluate_rule(definition: dict, value: Any) -> RuleOutcome:
    """Evaluate a decoded rule definition against a value.

    Parameters:
        definition: Decoded rule definition
        value: The value under validation

    Returns:
        RuleOutcome: Passed, or failed with a violation message

    Raises:
        RuleExecutionError: If the definition cannot be executed
    """
    rule_type = definition.get("type")
    if not isinstance(rule_type, str):
        raise RuleExecutionError("Rule definition has no 'type'")
    evaluator = EVALUATORS.get(rule_type.lower())
    if evaluator is None:
        return PASSED
    return evaluator(value, _params(definition))
