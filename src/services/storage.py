"""Relational storage collaborator for provider entities and action side effects.

Provider-identified entities (messages, reactions, contacts, groups) are
upserted on their natural keys so that a re-delivered webhook never produces a
second row. Records created by actions carry a ``source_key`` built from the
queue item, rule and action order, so a retried run finds the record it wrote
the first time instead of duplicating it.
"""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    Base,
    Bill,
    CalendarEvent,
    Contact,
    Group,
    Message,
    Note,
    Reaction,
    Reminder,
    Task,
)
from services.database import get_sync_session

logger = logging.getLogger(__name__)

GROUP_SUBJECT_PLACEHOLDER = "Group"

_UPDATABLE_ENTITIES: dict[str, tuple[type[Base], frozenset[str]]] = {
    "task": (
        Task,
        frozenset({"title", "description", "status", "priority", "due_at", "tags"}),
    ),
    "note": (Note, frozenset({"title", "content", "tags"})),
    "bill": (
        Bill,
        frozenset({"vendor", "amount", "currency", "due_date", "category", "priority", "status", "notes"}),
    ),
    "event": (
        CalendarEvent,
        frozenset({"title", "start_at", "end_at", "location", "description", "attendees"}),
    ),
}


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of a natural-key upsert."""

    id: int
    created: bool
    changed: tuple[str, ...] = ()


class Storage:
    """CRUD and idempotent upsert operations over the relational store."""

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self._session_factory = session_factory or get_sync_session

    # Provider entities -------------------------------------------------

    def upsert_message(self, values: dict[str, Any]) -> UpsertResult:
        """Insert or update a message keyed on (message_id, instance_id)."""
        return self._upsert(
            Message,
            {"message_id": values["message_id"], "instance_id": values["instance_id"]},
            values,
        )

    def upsert_reaction(self, values: dict[str, Any]) -> UpsertResult:
        """Insert or update a reaction keyed on (message_id, instance_id, reactor_jid)."""
        return self._upsert(
            Reaction,
            {
                "message_id": values["message_id"],
                "instance_id": values["instance_id"],
                "reactor_jid": values["reactor_jid"],
            },
            values,
        )

    def upsert_contact(self, values: dict[str, Any]) -> UpsertResult:
        """Insert or update a contact keyed on (jid, instance_id)."""
        return self._upsert(
            Contact,
            {"jid": values["jid"], "instance_id": values["instance_id"]},
            values,
        )

    def upsert_group(self, values: dict[str, Any]) -> UpsertResult:
        """Insert or update a group keyed on (group_jid, instance_id).

        A placeholder subject never overwrites a real one.
        """
        values = dict(values)
        subject = values.get("subject")
        if not subject or subject == GROUP_SUBJECT_PLACEHOLDER:
            values.pop("subject", None)

        def build(incoming: dict[str, Any]) -> Group:
            incoming.setdefault("subject", subject or GROUP_SUBJECT_PLACEHOLDER)
            return Group(**incoming)

        return self._upsert(
            Group,
            {"group_jid": values["group_jid"], "instance_id": values["instance_id"]},
            values,
            build=build,
        )

    def get_message(self, message_id: str, instance_id: str | None = None) -> Message | None:
        """Return a stored message by provider id."""

        def handler(session: Session) -> Message | None:
            query = session.query(Message).filter(Message.message_id == message_id)
            if instance_id is not None:
                query = query.filter(Message.instance_id == instance_id)
            return query.order_by(Message.id.asc()).first()

        return self._execute(handler)

    def set_media_path(self, message_id: str, instance_id: str, media_path: str) -> bool:
        """Record where a message's media was saved; return False if the message is unknown."""

        def handler(session: Session) -> bool:
            message = (
                session.query(Message)
                .filter(Message.message_id == message_id, Message.instance_id == instance_id)
                .first()
            )
            if message is None:
                return False
            message.media_path = media_path
            return True

        return self._execute(handler)

    def is_known_contact(self, jid: str, instance_id: str) -> bool:
        """Return whether the JID is a saved contact on the instance."""

        def handler(session: Session) -> bool:
            contact = (
                session.query(Contact)
                .filter(Contact.jid == jid, Contact.instance_id == instance_id)
                .first()
            )
            return bool(contact is not None and contact.is_my_contact)

        return self._execute(handler)

    # Action side effects ----------------------------------------------

    def create_task(self, values: dict[str, Any], *, source_key: str | None = None) -> Task:
        """Create a task, returning the existing one when the source key was seen."""
        return self._create_once(Task, values, source_key)

    def create_note(self, values: dict[str, Any], *, source_key: str | None = None) -> Note:
        """Create a note, returning the existing one when the source key was seen."""
        return self._create_once(Note, values, source_key)

    def create_reminder(self, values: dict[str, Any], *, source_key: str | None = None) -> Reminder:
        """Create a reminder, returning the existing one when the source key was seen."""
        return self._create_once(Reminder, values, source_key)

    def create_bill(self, values: dict[str, Any], *, source_key: str | None = None) -> Bill:
        """Create a bill, returning the existing one when the source key was seen."""
        values = dict(values)
        if values.get("amount") is not None:
            values["amount"] = Decimal(str(values["amount"]))
        return self._create_once(Bill, values, source_key)

    def create_calendar_event(
        self, values: dict[str, Any], *, source_key: str | None = None
    ) -> CalendarEvent:
        """Create a calendar event, returning the existing one when the source key was seen."""
        return self._create_once(CalendarEvent, values, source_key)

    def set_provider_event_id(self, event_id: int, provider_event_id: str) -> None:
        """Attach the calendar provider's id to a stored event."""

        def handler(session: Session) -> None:
            event = session.get(CalendarEvent, event_id)
            if event is None:
                raise ValueError(f"Calendar event not found: {event_id}")
            event.provider_event_id = provider_event_id
            event.updated_at = datetime.now(timezone.utc)

        self._execute(handler)

    def get_entity(self, entity_type: str, entity_id: int) -> Base | None:
        """Return a domain record by type and id."""
        model, _ = _resolve_entity(entity_type)
        return self._execute(lambda session: session.get(model, entity_id))

    def update_entity(self, entity_type: str, entity_id: int, fields: dict[str, Any]) -> Base:
        """Apply a field update to a task, note, bill or event.

        Raises:
            ValueError: If the entity type, id or any field name is not updatable.
        """
        model, allowed = _resolve_entity(entity_type)
        unknown = sorted(set(fields) - allowed)
        if unknown:
            raise ValueError(f"Fields not updatable on {entity_type}: {unknown}")

        def handler(session: Session) -> Base:
            record = session.get(model, entity_id)
            if record is None:
                raise ValueError(f"{entity_type} not found: {entity_id}")
            for key, value in _utc_values(fields).items():
                setattr(record, key, value)
            if hasattr(record, "updated_at"):
                record.updated_at = datetime.now(timezone.utc)
            session.flush()
            return record

        return self._execute(handler)

    # Internals ---------------------------------------------------------

    def _upsert(
        self,
        model: type[Base],
        natural_key: dict[str, Any],
        values: dict[str, Any],
        *,
        build: Callable[[dict[str, Any]], Any] | None = None,
    ) -> UpsertResult:
        """Insert or update a row identified by its natural key.

        A concurrent insert of the same key surfaces as an IntegrityError; the
        second writer then retries as an update.
        """

        def apply_update(existing: Any) -> tuple[str, ...]:
            changed = []
            for key, value in _utc_values(values).items():
                if getattr(existing, key) != value:
                    changed.append(key)
                setattr(existing, key, value)
            return tuple(changed)

        def handler(session: Session) -> UpsertResult:
            existing = session.query(model).filter_by(**natural_key).first()
            if existing is not None:
                return UpsertResult(id=existing.id, created=False, changed=apply_update(existing))
            incoming = _utc_values(values)
            record = build(incoming) if build is not None else model(**incoming)
            session.add(record)
            session.flush()
            return UpsertResult(id=record.id, created=True)

        try:
            return self._execute(handler)
        except IntegrityError:
            logger.info("Concurrent insert on %s %s; retrying as update", model.__tablename__, natural_key)

            def retry(session: Session) -> UpsertResult:
                existing = session.query(model).filter_by(**natural_key).one()
                return UpsertResult(id=existing.id, created=False, changed=apply_update(existing))

            return self._execute(retry)

    def _create_once(self, model: type[Base], values: dict[str, Any], source_key: str | None):
        def handler(session: Session):
            if source_key is not None:
                existing = session.query(model).filter_by(source_key=source_key).first()
                if existing is not None:
                    return existing
            record = model(**_utc_values(values), source_key=source_key)
            session.add(record)
            session.flush()
            return record

        return self._execute(handler)

    def _execute(self, handler):
        """Execute storage work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def _resolve_entity(entity_type: str) -> tuple[type[Base], frozenset[str]]:
    try:
        return _UPDATABLE_ENTITIES[entity_type]
    except KeyError as exc:
        raise ValueError(f"Unsupported entity type: {entity_type}") from exc


def _utc_values(values: dict[str, Any]) -> dict[str, Any]:
    """Return a copy with aware datetimes converted to UTC."""
    return {
        key: value.astimezone(timezone.utc)
        if isinstance(value, datetime) and value.tzinfo is not None
        else value
        for key, value in values.items()
    }
