"""Tests for the in-memory concept and rule repositories."""

import json

import pytest

from clinical_import.adapters.repositories import InMemoryConceptRepository, InMemoryRuleRepository, load_seed_file
from clinical_import.domain.enums import ValueType


@pytest.fixture
def seed_file(tmp_path):
    """Seed file mixing snake_case rows and exported column rows."""
    seed = {
        "concepts": [
            {"concept_code": "LID: 8867-4", "name": "Heart rate", "value_type": "N", "unit": "/min"},
            {"CONCEPT_CD": "SCTID: 77176002", "NAME_CHAR": "Smoker", "VALTYPE_CD": "B"},
        ],
        "rules": [
            {"CQL_ID": 7, "NAME_CHAR": "HR", "CONCEPT_CD": "LID: 8867-4",
             "JSON_CHAR": '{"type": "range", "params": {"min": 30}}'},
        ],
    }
    path = tmp_path / "seed.json"
    path.write_text(json.dumps(seed), encoding="utf-8")
    return path


class TestInMemoryRepositories:
    """Test suite for the in-memory repositories."""

    def test_load_seed_file(self, seed_file):
        concepts, rules = load_seed_file(seed_file)

        assert len(concepts) == 2
        assert len(rules) == 1
        heart_rate = concepts.find_by_concept_code("lid:  8867-4")
        assert heart_rate.value_type is ValueType.NUMERIC
        assert heart_rate.unit == "/min"
        assert concepts.find_by_concept_code("SCTID: 77176002").value_type is ValueType.RAW
        assert rules.find_by_concept_code("LID: 8867-4")[0].id == 7
        assert rules.find_by_concept_code("LID: 8867-4")[0].parsed_definition()["type"] == "range"

    def test_unknown_codes(self):
        assert InMemoryConceptRepository().find_by_concept_code("X") is None
        assert InMemoryConceptRepository().find_by_concept_code("") is None
        assert InMemoryRuleRepository().find_by_concept_code("X") == []

    def test_rules_without_concept_ignored(self):
        repository = InMemoryRuleRepository([{"id": 1, "definition": {"type": "range"}}])
        assert len(repository) == 0

    def test_missing_seed_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_seed_file(tmp_path / "missing.json")

    def test_invalid_seed_file(self, tmp_path):
        bad_json = tmp_path / "bad.json"
        bad_json.write_text("{", encoding="utf-8")
        with pytest.raises(ValueError):
            load_seed_file(bad_json)

        not_object = tmp_path / "list.json"
        not_object.write_text("[]", encoding="utf-8")
        with pytest.raises(ValueError):
            load_seed_file(not_object)
