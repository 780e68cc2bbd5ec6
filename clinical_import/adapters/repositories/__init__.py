"""In-memory concept and rule repositories."""

from .in_memory import InMemoryConceptRepository, InMemoryRuleRepository, load_seed_file

__all__ = ["InMemoryConceptRepository", "InMemoryRuleRepository", "load_seed_file"]
