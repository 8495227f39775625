"""Extraction entry points.

``extract`` is a pure function of its inputs and never raises; parse failures
resolve to invalid or low-confidence candidates, or to an empty list.
``ExtractionService`` wraps it and records one ``ExtractionLog`` row per call.
"""

from __future__ import annotations

import logging
import time
from contextlib import closing
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy.orm import Session

from config import settings
from extraction.bills import extract_bills
from extraction.calendar import extract_calendar
from extraction.language import detect_language
from extraction.tasks import extract_task
from extraction.types import ExtractedEntity, HintType
from models import ExtractionLog
from time_utils import get_local_timezone, to_local, utc_now

logger = logging.getLogger(__name__)


def extract(
    text: str,
    hint_type: HintType | str,
    *,
    reference_time: datetime | None = None,
    timezone: str | None = None,
    language: str | None = None,
) -> list[ExtractedEntity]:
    """Turn free text into typed candidates for the requested hint."""
    entities, _error, _language = _run(
        text,
        hint_type,
        reference_time=reference_time,
        timezone=timezone,
        language=language,
    )
    return entities


def partition_by_confidence(
    entities: Iterable[ExtractedEntity],
    threshold: float | None = None,
) -> tuple[list[ExtractedEntity], list[ExtractedEntity]]:
    """Split candidates into (accepted, fallback).

    Accepted candidates are valid and at or above the threshold; everything
    else goes to the clarification path.
    """
    minimum = settings.extraction.confidence_threshold if threshold is None else threshold
    accepted: list[ExtractedEntity] = []
    rejected: list[ExtractedEntity] = []
    for entity in entities:
        if entity.is_valid and entity.confidence >= minimum:
            accepted.append(entity)
        else:
            rejected.append(entity)
    return accepted, rejected


class ExtractionService:
    """Run extraction and persist a processing log entry for each call."""

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self._session_factory = session_factory

    def extract(
        self,
        text: str,
        hint_type: HintType | str,
        *,
        message_id: str | None = None,
        reference_time: datetime | None = None,
        timezone: str | None = None,
        language: str | None = None,
    ) -> list[ExtractedEntity]:
        started = time.monotonic()
        entities, error, detected = _run(
            text,
            hint_type,
            reference_time=reference_time,
            timezone=timezone,
            language=language,
        )
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Extraction hint=%s language=%s entities=%s elapsed_ms=%s",
            getattr(hint_type, "value", hint_type),
            detected,
            len(entities),
            elapsed_ms,
        )
        if self._session_factory is not None:
            self._record(message_id, hint_type, detected, entities, error, elapsed_ms)
        return entities

    def _record(
        self,
        message_id: str | None,
        hint_type: HintType | str,
        language: str | None,
        entities: list[ExtractedEntity],
        error: str | None,
        elapsed_ms: int,
    ) -> None:
        best = max((entity.confidence for entity in entities), default=None)
        row = ExtractionLog(
            message_id=message_id,
            hint_type=str(getattr(hint_type, "value", hint_type)),
            language=language,
            entity_count=len(entities),
            best_confidence=best,
            success=error is None and any(entity.is_valid for entity in entities),
            error=error,
            processing_time_ms=elapsed_ms,
        )
        try:
            with closing(self._session_factory()) as session:
                session.add(row)
                session.commit()
        except Exception:  # noqa: BLE001
            # The log row is diagnostic only; extraction results stand regardless.
            logger.exception("Failed to write extraction log for message %s", message_id)


def _run(
    text: str,
    hint_type: HintType | str,
    *,
    reference_time: datetime | None,
    timezone: str | None,
    language: str | None,
) -> tuple[list[ExtractedEntity], str | None, str | None]:
    try:
        hint = HintType(hint_type)
    except ValueError:
        logger.warning("Unknown extraction hint: %r", hint_type)
        return [], f"unknown_hint: {hint_type}", None
    if text is None:
        return [], "empty_text", None
    if not isinstance(text, str):
        logger.warning("Extraction text is %s, not str", type(text).__name__)
        return [], "invalid_text", None
    if not text.strip():
        return [], "empty_text", None

    detected = language
    try:
        detected = language or detect_language(text)
        tz = get_local_timezone(timezone)
        reference = to_local(reference_time or utc_now(), tz)
        config = settings.extraction
        if hint is HintType.CALENDAR:
            entities = [
                extract_calendar(
                    text,
                    reference=reference,
                    language=detected,
                    default_minutes=config.default_event_minutes,
                )
            ]
        elif hint is HintType.TASK:
            entities = [extract_task(text, reference=reference, language=detected)]
        else:
            entities = extract_bills(
                text,
                reference=reference,
                language=detected,
                default_currency=config.default_currency,
                due_soon_days=config.bill_due_soon_days,
                batch=hint is HintType.BILL_BATCH,
            )
    except Exception as exc:  # noqa: BLE001
        logger.exception("Extraction failed for hint %s", hint.value)
        return [], f"{type(exc).__name__}: {exc}", detected
    return entities, None, detected
