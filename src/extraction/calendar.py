"""Single-entity calendar event extraction."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta

from extraction.temporal import (
    combine,
    meal_duration,
    resolve_date,
    resolve_duration,
    resolve_time,
)
from extraction.types import CalendarDraft, CalendarPayload, ExtractedEntity

logger = logging.getLogger(__name__)

_MAX_TITLE = 100
_REQUIRED_FIELDS = 3  # title, date, start time

_MEETING_PROVIDERS = (
    ("zoom", re.compile(r"\bzoom\b", re.IGNORECASE)),
    ("google_meet", re.compile(r"\bgoogle\s+meet\b|\bmeet\.google\.com\b|\bmeet\b", re.IGNORECASE)),
    ("teams", re.compile(r"\bteams\b", re.IGNORECASE)),
    ("skype", re.compile(r"\bskype\b", re.IGNORECASE)),
)
_VIRTUAL_WORDS = re.compile(
    r"\b(?:videollamada|video\s*call|virtual|online|en\s+l[ií]nea|link|enlace|llamada)\b",
    re.IGNORECASE,
)
_LOCATION_PATTERNS = (
    re.compile(r"(?<!\S)@\s*([A-Za-zÁÉÍÓÚÑáéíóúñ][\w\s'&-]*?)(?=\s+(?:a\s+las|at)\b|[,.;!?]|$)"),
    re.compile(
        r"\ben\s+(?:(?:el|la|los|las)\s+)?([A-ZÁÉÍÓÚÑ][\wáéíóúñ'&-]*(?:\s+[A-ZÁÉÍÓÚÑ][\wáéíóúñ'&-]*)*)"
    ),
    re.compile(r"\bat\s+(?:the\s+)?([A-Z][\w'&-]*(?:\s+[A-Z][\w'&-]*)*)"),
)
_EMAIL = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")
_PHONE = re.compile(r"(?:\+?52\s?1?\s?)?\b\d{10}\b|\+\d{11,13}\b")
_TRAILING_FILLER = re.compile(
    r"(?:\s+(?:a|at|el|on|para|de|del|en|in|y|and|la|las|con|with))+$", re.IGNORECASE
)
_LEADING_FILLER = re.compile(
    r"^(?:agendar|agenda|programar|schedule|recordar|remind\s+me|book)\s*:?\s+", re.IGNORECASE
)


def extract_calendar(
    text: str,
    *,
    reference: datetime,
    language: str,
    default_minutes: int = 60,
) -> ExtractedEntity:
    """Extract one calendar event candidate from ``text``.

    Args:
        text: Free-text message content.
        reference: Aware "now" in the user's timezone; relative expressions
            resolve against it.
        language: ``"es"`` or ``"en"``.
        default_minutes: Duration used when the text gives no range, duration
            or meal cue.

    Returns:
        A valid candidate with resolved start and end, or an invalid candidate
        carrying only the time-independent draft fields.
    """
    source = text.strip()
    errors: list[str] = []

    date_match = resolve_date(source, reference, language=language)
    time_match = resolve_time(source)
    provider, is_virtual = _detect_meeting(source)
    location, location_span = _extract_location(source)
    attendees = _extract_attendees(source)

    removals = [span for span in (location_span,) if span is not None]
    if date_match is not None:
        removals.append(date_match.span)
    if time_match is not None:
        removals.append(time_match.span)
    title, title_ok = _derive_title(source, removals, language)

    draft = CalendarDraft(
        title=title,
        location=location,
        is_virtual=is_virtual,
        meeting_provider=provider,
        attendees=attendees,
    )
    resolved = (1.0 if title_ok else 0.0) + (1.0 if date_match is not None else 0.0)

    # Validate the start before anything is derived from it.
    start = None
    if time_match is None:
        errors.append("start_time_unresolved")
    else:
        day = date_match.value if date_match is not None else reference.date()
        start = combine(day, time_match.hour, time_match.minute, reference.tzinfo)
        if start is None:
            errors.append("start_time_invalid")
        elif date_match is None:
            # Time without a date: today, or tomorrow once that time has passed.
            resolved += 0.5
            if start < reference:
                start = start + timedelta(days=1)

    if start is None:
        confidence = round(resolved / _REQUIRED_FIELDS, 3)
        return ExtractedEntity(
            kind="calendar",
            source_text=source,
            language=language,
            payload=draft,
            confidence=confidence,
            is_valid=False,
            errors=tuple(errors),
        )

    resolved += 1.0
    end, duration = _derive_end(source, start, time_match, default_minutes)
    payload = CalendarPayload(
        title=draft.title,
        location=draft.location,
        is_virtual=draft.is_virtual,
        meeting_provider=draft.meeting_provider,
        attendees=draft.attendees,
        start=start,
        end=end,
        duration_minutes=duration,
    )
    return ExtractedEntity(
        kind="calendar",
        source_text=source,
        language=language,
        payload=payload,
        confidence=round(min(resolved / _REQUIRED_FIELDS, 1.0), 3),
        is_valid=True,
        errors=tuple(errors),
    )


def _derive_end(source, start: datetime, time_match, default_minutes: int) -> tuple[datetime, int]:
    """Derive the end time from a range, explicit duration, meal cue or default."""
    if time_match.is_range:
        end = combine(start.date(), time_match.end_hour, time_match.end_minute, start.tzinfo)
        if end is not None and end > start:
            return end, int((end - start).total_seconds() // 60)
    minutes = resolve_duration(source) or meal_duration(source) or default_minutes
    return start + timedelta(minutes=minutes), minutes


def _detect_meeting(text: str) -> tuple[str | None, bool]:
    for provider, pattern in _MEETING_PROVIDERS:
        if pattern.search(text):
            return provider, True
    return None, bool(_VIRTUAL_WORDS.search(text))


def _extract_location(text: str) -> tuple[str | None, tuple[int, int] | None]:
    for pattern in _LOCATION_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        value = match.group(1).strip(" ,.;")
        if len(value) < 2 or _MEETING_PROVIDERS[0][1].fullmatch(value):
            continue
        return value[:200], match.span()
    return None, None


def _extract_attendees(text: str) -> tuple[str, ...]:
    found: list[str] = []
    for pattern in (_EMAIL, _PHONE):
        for match in pattern.finditer(text):
            value = re.sub(r"\s+", "", match.group(0))
            if value not in found:
                found.append(value)
    return tuple(found)


def _derive_title(text: str, removals: list[tuple[int, int]], language: str) -> tuple[str, bool]:
    """Strip resolved temporal and location phrases and return the remaining title."""
    chars = list(text)
    for start, end in removals:
        for index in range(start, min(end, len(chars))):
            chars[index] = " "
    title = _EMAIL.sub(" ", "".join(chars))
    title = re.sub(r"\s+", " ", title).strip(" ,.;:-!?¡¿")
    title = _LEADING_FILLER.sub("", title)
    title = _TRAILING_FILLER.sub("", title).strip(" ,.;:-!?¡¿")
    if len(re.sub(r"[^\wáéíóúñ]", "", title, flags=re.IGNORECASE)) < 2:
        return ("Evento" if language == "es" else "Event"), False
    title = title[0].upper() + title[1:]
    if len(title) > _MAX_TITLE:
        title = title[: _MAX_TITLE - 3].rstrip() + "..."
    return title, True
