"""Lightweight Spanish/English language detection."""

from __future__ import annotations

import re

from config import settings

_SPANISH_WORDS = frozenset(
    [
        "para",
        "con",
        "que",
        "una",
        "del",
        "las",
        "los",
        "por",
        "como",
        "pero",
        "muy",
        "hoy",
        "mañana",
        "nos",
        "vemos",
        "el",
        "la",
        "en",
        "de",
        "es",
        "pagar",
        "cita",
        "junta",
        "reunión",
    ]
)
_ENGLISH_WORDS = frozenset(
    [
        "the",
        "and",
        "for",
        "with",
        "today",
        "tomorrow",
        "meeting",
        "at",
        "on",
        "next",
        "pay",
        "is",
        "to",
        "of",
    ]
)
_ACCENTED = re.compile(r"[áéíóúñ¿¡]", re.IGNORECASE)
_WORD = re.compile(r"[a-záéíóúñü]+", re.IGNORECASE)


def detect_language(text: str, default: str | None = None) -> str:
    """Return ``"es"`` or ``"en"`` for the given text."""
    fallback = default or settings.extraction.default_language
    if not text:
        return fallback
    words = [word.lower() for word in _WORD.findall(text)]
    spanish = sum(1 for word in words if word in _SPANISH_WORDS)
    english = sum(1 for word in words if word in _ENGLISH_WORDS)
    if _ACCENTED.search(text):
        spanish += 2
    if spanish > english:
        return "es"
    if english > spanish:
        return "en"
    return fallback
