"""Fallback inference of questionnaire item types.

Questionnaire exports do not always state the input type of an item. The
fallback below guesses it from keywords in the item label. The keyword list is
German because the exporting application is German-language; it is locale
specific and known to be incomplete, so it is injected into the importers as a
replaceable collaborator and should not grow without product input.
"""

from typing import Optional, Protocol

ITEM_TYPES = ("text", "number", "radio", "checkbox")


class ItemTypeFallback(Protocol):
    """Callable contract for guessing an item type from its label."""

    def __call__(self, label: Optional[str]) -> str:
        ...


class KeywordItemTypeFallback:
    """German keyword heuristic for missing questionnaire item types."""

    NUMBER_KEYWORDS = ("anzahl", "alter", "wert", "gewicht", "größe", "punkte", "dauer", "wie viele", "wie oft")
    CHECKBOX_KEYWORDS = ("mehrfachauswahl", "mehrere", "alle zutreffenden", "zutreffendes ankreuzen")
    RADIO_KEYWORDS = ("ja/nein", "ja / nein", "haben sie", "sind sie", "leiden sie", "rauchen sie", "auswahl")

    def __call__(self, label: Optional[str]) -> str:
        text = (label or "").strip().lower()
        if not text:
            return "text"
        if any(keyword in text for keyword in self.CHECKBOX_KEYWORDS):
            return "checkbox"
        if any(keyword in text for keyword in self.RADIO_KEYWORDS):
            return "radio"
        if any(keyword in text for keyword in self.NUMBER_KEYWORDS):
            return "number"
        return "text"


def resolve_item_type(declared: Optional[str], label: Optional[str], fallback: ItemTypeFallback) -> str:
    """Use the declared type when it is one we know, else ask the fallback."""
    if declared:
        normalized = str(declared).strip().lower()
        if normalized in ITEM_TYPES:
            return normalized
        if normalized in ("integer", "decimal", "quantity"):
            return "number"
        if normalized in ("choice", "select", "boolean"):
            return "radio"
        if normalized in ("string", "textarea"):
            return "text"
    return fallback(label)
