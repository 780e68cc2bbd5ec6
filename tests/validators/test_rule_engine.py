"""Tests for the concept rule evaluator."""

import pytest

from clinical_import.domain.ports import Rule
from clinical_import.validators.rule_engine import RuleExecutionError, evaluate_rule


class TestRangeRule:
    """Range rules."""

    def test_inside_and_outside(self):
        definition = {"type": "range", "params": {"min": 0, "max": 10}}
        assert evaluate_rule(definition, 5).passed
        assert evaluate_rule(definition, "7,5").passed
        low = evaluate_rule(definition, -1)
        assert not low.passed
        assert "below" in low.message
        assert not evaluate_rule(definition, 11).passed

    def test_open_bound(self):
        assert evaluate_rule({"type": "range", "min": 0}, 10 ** 9).passed

    def test_non_numeric_value_raises(self):
        with pytest.raises(RuleExecutionError):
            evaluate_rule({"type": "range", "params": {"min": 0}}, "high")

    def test_non_numeric_bound_raises(self):
        with pytest.raises(RuleExecutionError):
            evaluate_rule({"type": "range", "params": {"min": "low"}}, 1)


class TestEnumAndPattern:
    """Enum and pattern rules."""

    def test_enum(self):
        definition = {"type": "ENUM", "params": {"values": ["1", "2"]}}
        assert evaluate_rule(definition, 1).passed
        assert not evaluate_rule(definition, 3).passed

    def test_enum_requires_list(self):
        with pytest.raises(RuleExecutionError):
            evaluate_rule({"type": "enum", "params": {"values": "a,b"}}, "a")

    def test_pattern(self):
        definition = {"type": "pattern", "params": {"regex": "^[A-Z]{3}$"}}
        assert evaluate_rule(definition, "ABC").passed
        assert not evaluate_rule(definition, "abc").passed

    def test_invalid_pattern_raises(self):
        with pytest.raises(RuleExecutionError):
            evaluate_rule({"type": "pattern", "regex": "("}, "x")


class TestDefinitions:
    """Definition handling."""

    def test_unknown_type_passes(self):
        assert evaluate_rule({"type": "cql", "expression": "x"}, "anything").passed

    def test_missing_type_raises(self):
        with pytest.raises(RuleExecutionError):
            evaluate_rule({"params": {}}, 1)

    def test_params_must_be_object(self):
        with pytest.raises(RuleExecutionError):
            evaluate_rule({"type": "range", "params": [0, 10]}, 1)

    def test_rule_definition_decoding(self):
        assert Rule(id=1, definition='{"type": "range"}').parsed_definition() == {"type": "range"}
        with pytest.raises(ValueError):
            Rule(id=1, definition="[1, 2]").parsed_definition()
