"""Domain layer for Clinical Import.

This module contains the canonical clinical entities, the import envelope and
the ports implemented by adapters. All domain models are pure Python with no
external dependencies beyond Pydantic.
"""

from .entities import ClinicalData, Observation, Patient, Visit
from .import_structure import ImportContext, ImportIssue, ImportOptions, ImportStructure

__all__ = [
    "ClinicalData",
    "Observation",
    "Patient",
    "Visit",
    "ImportContext",
    "ImportIssue",
    "ImportOptions",
    "ImportStructure",
]
