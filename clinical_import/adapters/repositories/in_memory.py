"""In-memory Concept and Rule repositories.

These adapters implement the read-only lookup ports from a seed document. They
serve the CLI and tests; production deployments plug in the persistence
layer's repositories instead.

Seed format:
    {
        "concepts": [{"concept_code": "LID: 8867-4", "name": "Heart rate",
                      "value_type": "N", "category": "VITAL_SIGNS", "unit": "/min"}],
        "rules": [{"id": 1, "name": "HR range", "concept_code": "LID: 8867-4",
                   "definition": {"type": "range", "params": {"min": 30, "max": 250}}}]
    }

Rows exported from the dimensional store (CONCEPT_CD, NAME_CHAR, VALTYPE_CD,
CATEGORY_CHAR, SOURCESYSTEM_CD, UNIT_CD; CQL_ID, NAME_CHAR, JSON_CHAR) are
accepted as well.
"""

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from clinical_import.domain.normalization import parse_value_type
from clinical_import.domain.ports import ConceptMetadata, ConceptRepository, Rule, RuleRepository

logger = logging.getLogger(__name__)


def _key(concept_code: str) -> str:
    return " ".join(str(concept_code).split()).upper()


def _concept_from_row(row: Union[dict, ConceptMetadata]) -> ConceptMetadata:
    if isinstance(row, ConceptMetadata):
        return row
    return ConceptMetadata(
        concept_code=row.get("concept_code") or row.get("CONCEPT_CD"),
        name=row.get("name") or row.get("NAME_CHAR"),
        value_type=parse_value_type(row.get("value_type") or row.get("VALTYPE_CD")),
        category=row.get("category") or row.get("CATEGORY_CHAR"),
        source_system=row.get("source_system") or row.get("SOURCESYSTEM_CD"),
        unit=row.get("unit") or row.get("UNIT_CD"),
    )


def _rule_from_row(row: Union[dict, Rule]) -> Rule:
    if isinstance(row, Rule):
        return row
    return Rule(
        id=row.get("id", row.get("CQL_ID")),
        name=row.get("name") or row.get("NAME_CHAR") or "",
        concept_code=row.get("concept_code") or row.get("CONCEPT_CD"),
        definition=row.get("definition", row.get("JSON_CHAR", "")),
    )


class InMemoryConceptRepository(ConceptRepository):
    """Concept lookup backed by a dict. Codes match case- and whitespace-insensitively."""

    def __init__(self, concepts: Iterable[Union[dict, ConceptMetadata]] = ()):
        self._concepts: dict[str, ConceptMetadata] = {}
        for row in concepts:
            self.add(_concept_from_row(row))

    def add(self, concept: ConceptMetadata) -> None:
        self._concepts[_key(concept.concept_code)] = concept

    def find_by_concept_code(self, concept_code: str) -> Optional[ConceptMetadata]:
        if not concept_code:
            return None
        return self._concepts.get(_key(concept_code))

    def __len__(self) -> int:
        return len(self._concepts)


class InMemoryRuleRepository(RuleRepository):
    """Rule lookup backed by a dict of concept code to rules."""

    def __init__(self, rules: Iterable[Union[dict, Rule]] = ()):
        self._rules: dict[str, list[Rule]] = {}
        for row in rules:
            self.add(_rule_from_row(row))

    def add(self, rule: Rule) -> None:
        if not rule.concept_code:
            logger.warning(f"Ignoring rule {rule.id}: no concept code")
            return
        self._rules.setdefault(_key(rule.concept_code), []).append(rule)

    def find_by_concept_code(self, concept_code: str) -> list[Rule]:
        if not concept_code:
            return []
        return list(self._rules.get(_key(concept_code), []))

    def __len__(self) -> int:
        return sum(len(rules) for rules in self._rules.values())


def load_seed_data(data: dict[str, Any]) -> tuple[InMemoryConceptRepository, InMemoryRuleRepository]:
    """Build both repositories from a decoded seed document."""
    concepts = InMemoryConceptRepository(data.get("concepts") or [])
    rules = InMemoryRuleRepository(data.get("rules") or [])
    logger.info(f"Loaded {len(concepts)} concepts and {len(rules)} rules")
    return concepts, rules


def load_seed_file(path: Union[str, Path]) -> tuple[InMemoryConceptRepository, InMemoryRuleRepository]:
    """Load both repositories from a JSON seed file.

    Raises:
        FileNotFoundError: If the seed file doesn't exist
        ValueError: If the seed file is not a JSON object
    """
    seed_path = Path(path)
    if not seed_path.exists():
        raise FileNotFoundError(f"Seed file not found: {path}")
    try:
        data = json.loads(seed_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in seed file: {e}")
    if not isinstance(data, dict):
        raise ValueError("Seed file must contain a JSON object")
    return load_seed_data(data)
