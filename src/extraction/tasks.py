"""Single-entity task extraction."""

from __future__ import annotations

import re
from datetime import datetime, timedelta

from extraction.temporal import combine, resolve_date, resolve_time
from extraction.types import ExtractedEntity, TaskPayload

_MAX_TITLE = 50
_DEFAULT_DUE_HOUR = 9

_HIGH_PRIORITY = re.compile(
    r"\b(?:urgente|importante|cr[ií]tico|prioritario|inmediato|urgent|important|critical|"
    r"priority|immediate|asap)\b",
    re.IGNORECASE,
)
_LOW_PRIORITY = re.compile(
    r"\b(?:cuando\s+puedas|tiempo\s+libre|opcional|sin\s+prisa|when\s+you\s+can|"
    r"optional|eventually|no\s+rush|someday)\b",
    re.IGNORECASE,
)
_TAGS = {
    "work": re.compile(
        r"\b(?:trabajo|oficina|junta|reuni[oó]n|cliente|proyecto|work|office|meeting|client|project)\b",
        re.IGNORECASE,
    ),
    "personal": re.compile(
        r"\b(?:casa|familia|personal|m[eé]dico|doctor|home|family|gym|gimnasio)\b",
        re.IGNORECASE,
    ),
}
_PREFIX = re.compile(
    r"^(?:tarea|task|todo|to-do|pendiente|recordatorio|reminder)\s*:\s*"
    r"|^(?:recu[eé]rdame|recordar|remind\s+me\s+to|no\s+olvidar|don'?t\s+forget\s+to)\s+",
    re.IGNORECASE,
)
_SENTENCE_END = re.compile(r"[.!?\n]")


def extract_task(text: str, *, reference: datetime, language: str) -> ExtractedEntity:
    """Extract one task candidate.

    The title and the due date are the required fields; a missing due date
    counts as half resolved since tasks without deadlines are common.
    """
    source = text.strip()
    title, title_ok = _derive_title(source, language)
    priority = _derive_priority(source)
    due_at = _derive_due(source, reference, language)
    tags = tuple(tag for tag, pattern in _TAGS.items() if pattern.search(source))

    resolved = (1.0 if title_ok else 0.0) + (1.0 if due_at is not None else 0.5)
    payload = TaskPayload(
        title=title,
        description=source,
        priority=priority,
        due_at=due_at,
        tags=tags,
    )
    return ExtractedEntity(
        kind="task",
        source_text=source,
        language=language,
        payload=payload,
        confidence=round(resolved / 2, 3),
        is_valid=title_ok,
        errors=() if title_ok else ("title_unresolved",),
    )


def _derive_title(text: str, language: str) -> tuple[str, bool]:
    first = _SENTENCE_END.split(text, maxsplit=1)[0].strip()
    first = _PREFIX.sub("", first).strip(" ,;:-")
    if len(first) < 2:
        return ("Nueva tarea" if language == "es" else "New task"), False
    first = first[0].upper() + first[1:]
    if len(first) > _MAX_TITLE:
        first = first[: _MAX_TITLE - 3].rstrip() + "..."
    return first, True


def _derive_priority(text: str) -> str:
    if _HIGH_PRIORITY.search(text):
        return "high"
    if _LOW_PRIORITY.search(text):
        return "low"
    return "medium"


def _derive_due(text: str, reference: datetime, language: str) -> datetime | None:
    date_match = resolve_date(text, reference, language=language)
    time_match = resolve_time(text)
    if date_match is None and time_match is None:
        return None
    if date_match is not None:
        day = date_match.value
    else:
        day = reference.date()
    if time_match is not None:
        due = combine(day, time_match.hour, time_match.minute, reference.tzinfo)
    else:
        due = combine(day, _DEFAULT_DUE_HOUR, 0, reference.tzinfo)
    if due is not None and date_match is None and due < reference:
        due = due + timedelta(days=1)
    return due
