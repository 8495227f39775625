"""Typed candidates produced by the extraction stage."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Union


class HintType(str, Enum):
    """Extraction mode requested by the caller."""

    CALENDAR = "calendar"
    TASK = "task"
    BILL = "bill"
    BILL_BATCH = "bill_batch"


@dataclass(frozen=True)
class CalendarDraft:
    """Calendar fields that do not depend on a resolved start time.

    Invalid calendar candidates carry only a draft, so no code path can format
    or derive from a time value that was never resolved.
    """

    title: str
    location: str | None = None
    is_virtual: bool = False
    meeting_provider: str | None = None
    attendees: tuple[str, ...] = ()


@dataclass(frozen=True)
class CalendarPayload(CalendarDraft):
    """Fully resolved calendar event. ``start`` and ``end`` are always set."""

    start: datetime = field(default=None)  # type: ignore[assignment]
    end: datetime = field(default=None)  # type: ignore[assignment]
    duration_minutes: int = 60

    def __post_init__(self) -> None:
        if not isinstance(self.start, datetime) or not isinstance(self.end, datetime):
            raise ValueError("CalendarPayload requires resolved start and end datetimes.")
        if self.end < self.start:
            raise ValueError("CalendarPayload end must not precede start.")


@dataclass(frozen=True)
class TaskPayload:
    """Task candidate."""

    title: str
    description: str
    priority: str = "medium"
    due_at: datetime | None = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class BillPayload:
    """Bill candidate from one text segment."""

    vendor: str
    amount: Decimal
    currency: str
    due_date: date | None = None
    category: str = "personal"
    priority: str = "low"
    notes: str | None = None


Payload = Union[CalendarDraft, CalendarPayload, TaskPayload, BillPayload]


@dataclass(frozen=True)
class ExtractedEntity:
    """One candidate entity with its provenance and confidence."""

    kind: str
    source_text: str
    language: str
    payload: Payload
    confidence: float
    is_valid: bool
    errors: tuple[str, ...] = ()

    def summary(self) -> dict[str, Any]:
        """Return a JSON-safe description used in ledger metadata and templates."""
        data: dict[str, Any] = {
            "kind": self.kind,
            "language": self.language,
            "confidence": round(self.confidence, 3),
            "valid": self.is_valid,
        }
        payload = self.payload
        if isinstance(payload, CalendarDraft):
            data["title"] = payload.title
            if payload.location:
                data["location"] = payload.location
            data["is_virtual"] = payload.is_virtual
        if isinstance(payload, CalendarPayload):
            data["start"] = payload.start.isoformat()
            data["end"] = payload.end.isoformat()
        if isinstance(payload, TaskPayload):
            data["title"] = payload.title
            data["priority"] = payload.priority
            if payload.due_at is not None:
                data["due"] = payload.due_at.isoformat()
        if isinstance(payload, BillPayload):
            data["vendor"] = payload.vendor
            data["amount"] = str(payload.amount)
            data["currency"] = payload.currency
            data["priority"] = payload.priority
            if payload.due_date is not None:
                data["due"] = payload.due_date.isoformat()
        if self.errors:
            data["errors"] = list(self.errors)
        return data
