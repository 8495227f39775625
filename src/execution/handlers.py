"""Side-effect handlers, one per action type."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Callable

import httpx
from dateutil import parser as date_parser

from execution.params import (
    ActionParams,
    CallWebhookParams,
    CreateEventParams,
    CreateNoteParams,
    CreateReminderParams,
    CreateTaskParams,
    SendEmailParams,
    SendMessageParams,
    UpdateEntityParams,
)
from execution.templates import render, render_value, template_values
from extraction.types import (
    BillPayload,
    CalendarPayload,
    ExtractedEntity,
    HintType,
    TaskPayload,
)
from rules.repository import ActionDefinition, RuleSnapshot
from services.calendar import CalendarClient, CalendarEventInput
from services.email import EmailSender
from services.errors import CollaboratorError, is_retryable_status
from services.http_client import HttpClient
from services.messaging import MessagingClient
from services.storage import Storage
from time_utils import get_local_timezone, to_local

logger = logging.getLogger(__name__)

_TITLE_LIMIT = 50
_DATETIME_FIELDS = frozenset(["due_at", "due_date", "start_at", "end_at", "remind_at"])


class ActionError(Exception):
    """Raised by a handler when an action cannot complete.

    ``retryable`` is False for faults another attempt cannot fix, such as a
    missing extraction result or an unparseable date.
    """

    def __init__(self, code: str, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


@dataclass(frozen=True)
class ActionContext:
    """Everything a handler may read while running one action."""

    rule: RuleSnapshot
    action: ActionDefinition
    trigger: Mapping[str, Any]
    extracted: Mapping[str, list[ExtractedEntity]] = field(default_factory=dict)
    results: Mapping[str, Any] = field(default_factory=dict)
    queue_item_id: int | None = None

    def source_key(self, index: int = 0, suffix: str = "") -> str | None:
        """Deterministic key for records created by this action, or None for ad hoc runs."""
        if self.queue_item_id is None:
            return None
        key = f"q{self.queue_item_id}-r{self.rule.id}-a{self.action.action_order}-{index}"
        return f"{key}-{suffix}" if suffix else key

    def values(self, entity: ExtractedEntity | None = None) -> dict[str, Any]:
        return template_values(self.trigger, entity=entity, results=self.results)

    def entities(self, hint: HintType) -> list[ExtractedEntity]:
        return list(self.extracted.get(hint.value, []))

    @property
    def source_message_id(self) -> str | None:
        value = self.trigger.get("messageId")
        return str(value) if value else None


def extraction_hint(params: ActionParams) -> HintType | None:
    """Return the extraction mode an action needs before it can run."""
    if isinstance(params, CreateEventParams):
        return HintType.CALENDAR
    if isinstance(params, CreateTaskParams):
        return None if params.extract == "none" else HintType(params.extract)
    if isinstance(params, CreateReminderParams) and not params.remind_at:
        return HintType.CALENDAR
    return None


class ActionHandlers:
    """Dispatch typed action parameters to their collaborator calls."""

    def __init__(
        self,
        storage: Storage | None = None,
        messaging: MessagingClient | None = None,
        calendar: CalendarClient | None = None,
        email: EmailSender | None = None,
        http_client: HttpClient | None = None,
    ) -> None:
        self._storage = storage or Storage()
        self._messaging = messaging or MessagingClient()
        self._calendar = calendar or CalendarClient()
        self._email = email or EmailSender()
        self._http = http_client or HttpClient()
        self._dispatch: dict[type, Callable[[Any, ActionContext], dict[str, Any]]] = {
            CreateTaskParams: self.create_task,
            CreateNoteParams: self.create_note,
            SendMessageParams: self.send_message,
            CreateReminderParams: self.create_reminder,
            UpdateEntityParams: self.update_entity,
            SendEmailParams: self.send_email,
            CallWebhookParams: self.call_webhook,
            CreateEventParams: self.create_event,
        }

    def handle(self, params: ActionParams, ctx: ActionContext) -> dict[str, Any]:
        """Run one action and return its JSON-safe output."""
        return self._dispatch[type(params)](params, ctx)

    # Local writes ------------------------------------------------------

    def create_task(self, params: CreateTaskParams, ctx: ActionContext) -> dict[str, Any]:
        if params.extract in ("bill", "bill_batch"):
            return self._create_bill_tasks(params, ctx)

        entity = None
        if params.extract == "task":
            entities = ctx.entities(HintType.TASK)
            if not entities:
                raise ActionError("no_candidate", "no confident task candidate was extracted")
            entity = entities[0]
        payload = entity.payload if entity is not None else None
        values = ctx.values(entity)

        title = render(params.title, values).strip() if params.title else ""
        if not title:
            title = payload.title if isinstance(payload, TaskPayload) else _shorten(values.get("content"))
        due_at = _parse_datetime(render(params.due_date, values)) if params.due_date else None
        if due_at is None and isinstance(payload, TaskPayload):
            due_at = payload.due_at
        tags = list(dict.fromkeys([*params.tags, *(payload.tags if isinstance(payload, TaskPayload) else ())]))
        task = self._storage.create_task(
            {
                "title": title or "Task",
                "description": render(params.description, values)
                if params.description
                else (payload.description if isinstance(payload, TaskPayload) else values.get("content")),
                "priority": params.priority
                or (payload.priority if isinstance(payload, TaskPayload) else "medium"),
                "due_at": due_at,
                "tags": tags,
                "source_message_id": ctx.source_message_id,
            },
            source_key=ctx.source_key(),
        )
        return {"entity_type": "task", "entity_id": task.id, "title": task.title}

    def _create_bill_tasks(self, params: CreateTaskParams, ctx: ActionContext) -> dict[str, Any]:
        entities = [
            entity
            for entity in ctx.entities(HintType(params.extract))
            if isinstance(entity.payload, BillPayload)
        ]
        if not entities:
            raise ActionError("no_candidate", "no confident bill candidate was extracted")

        tz = get_local_timezone()
        bill_ids: list[int] = []
        task_ids: list[int] = []
        for index, entity in enumerate(entities):
            bill_payload: BillPayload = entity.payload  # type: ignore[assignment]
            due_at = _end_of_day(bill_payload.due_date, tz) if bill_payload.due_date else None
            bill = self._storage.create_bill(
                {
                    "vendor": bill_payload.vendor,
                    "amount": bill_payload.amount,
                    "currency": bill_payload.currency,
                    "due_date": due_at,
                    "category": bill_payload.category,
                    "priority": bill_payload.priority,
                    "notes": bill_payload.notes,
                    "source_message_id": ctx.source_message_id,
                },
                source_key=ctx.source_key(index, "bill"),
            )
            task = self._storage.create_task(
                {
                    "title": f"Pay {bill_payload.vendor} (${bill_payload.amount:,.2f})",
                    "description": bill_payload.notes,
                    "priority": bill_payload.priority,
                    "due_at": due_at,
                    "tags": list(dict.fromkeys(["bill", *params.tags])),
                    "bill_id": bill.id,
                    "source_message_id": ctx.source_message_id,
                },
                source_key=ctx.source_key(index, "task"),
            )
            bill_ids.append(bill.id)
            task_ids.append(task.id)
        logger.info("Created %s bill task(s) for rule %s", len(task_ids), ctx.rule.id)
        return {
            "entity_type": "task",
            "entity_id": task_ids[0],
            "task_ids": task_ids,
            "bill_ids": bill_ids,
            "count": len(task_ids),
        }

    def create_note(self, params: CreateNoteParams, ctx: ActionContext) -> dict[str, Any]:
        values = ctx.values()
        content = render(params.content, values)
        title = render(params.title, values).strip() if params.title else ""
        note = self._storage.create_note(
            {
                "title": title or _shorten(content) or "Note",
                "content": content,
                "tags": list(params.tags),
                "source_message_id": ctx.source_message_id,
            },
            source_key=ctx.source_key(),
        )
        return {"entity_type": "note", "entity_id": note.id}

    def create_reminder(self, params: CreateReminderParams, ctx: ActionContext) -> dict[str, Any]:
        entity = None
        if params.remind_at:
            remind_at = _parse_datetime(render(params.remind_at, ctx.values()))
        else:
            entities = [
                candidate
                for candidate in ctx.entities(HintType.CALENDAR)
                if isinstance(candidate.payload, CalendarPayload)
            ]
            if not entities:
                raise ActionError("unresolved_time", "reminder time could not be resolved from the message")
            entity = entities[0]
            remind_at = entity.payload.start  # type: ignore[union-attr]
        values = ctx.values(entity)
        reminder = self._storage.create_reminder(
            {
                "title": render(params.title, values).strip() or "Reminder",
                "remind_at": remind_at,
                "target_id": render(params.target, values) or None,
                "source_message_id": ctx.source_message_id,
            },
            source_key=ctx.source_key(),
        )
        return {
            "entity_type": "reminder",
            "entity_id": reminder.id,
            "remind_at": remind_at.isoformat(),
        }

    def create_event(self, params: CreateEventParams, ctx: ActionContext) -> dict[str, Any]:
        entities = [
            entity
            for entity in ctx.entities(HintType.CALENDAR)
            if entity.is_valid and isinstance(entity.payload, CalendarPayload)
        ]
        if not entities:
            raise ActionError("no_candidate", "no valid calendar candidate was extracted")
        entity = entities[0]
        payload: CalendarPayload = entity.payload  # type: ignore[assignment]
        values = ctx.values(entity)

        title = (render(params.title, values).strip() if params.title else "") or payload.title
        end = payload.end
        if params.duration_minutes:
            end = payload.start + timedelta(minutes=params.duration_minutes)
        location = (render(params.location, values).strip() if params.location else "") or payload.location
        description = render(params.description, values) if params.description else entity.source_text

        stored = self._storage.create_calendar_event(
            {
                "title": title,
                "start_at": payload.start,
                "end_at": end,
                "location": location,
                "is_virtual": payload.is_virtual,
                "meeting_provider": payload.meeting_provider,
                "attendees": list(payload.attendees),
                "description": description,
                "source_message_id": ctx.source_message_id,
            },
            source_key=ctx.source_key(),
        )
        provider_event_id = stored.provider_event_id
        if params.sync_calendar and not provider_event_id:
            provider_event_id = self._calendar.create_event(
                CalendarEventInput(
                    title=title,
                    start=payload.start,
                    end=end,
                    location=location,
                    description=description,
                    attendees=payload.attendees,
                    is_virtual=payload.is_virtual,
                )
            )
            self._storage.set_provider_event_id(stored.id, provider_event_id)
        return {
            "entity_type": "event",
            "entity_id": stored.id,
            "provider_event_id": provider_event_id,
            "title": title,
            "start": payload.start.isoformat(),
            "end": end.isoformat(),
        }

    def update_entity(self, params: UpdateEntityParams, ctx: ActionContext) -> dict[str, Any]:
        values = ctx.values()
        raw_id = render(params.entity_id, values) if isinstance(params.entity_id, str) else params.entity_id
        try:
            entity_id = int(raw_id)
        except (TypeError, ValueError) as exc:
            raise ActionError("invalid_entity_id", f"entity_id {raw_id!r} is not an integer") from exc

        fields = render_value(params.fields, values)
        for key in list(fields):
            if key in _DATETIME_FIELDS and isinstance(fields[key], str):
                fields[key] = _parse_datetime(fields[key])
        try:
            record = self._storage.update_entity(params.entity_type, entity_id, fields)
        except ValueError as exc:
            raise ActionError("invalid_update", str(exc)) from exc

        output: dict[str, Any] = {"entity_type": params.entity_type, "entity_id": entity_id}
        if params.entity_type == "event" and getattr(record, "provider_event_id", None):
            self._calendar.update_event(
                record.provider_event_id,
                CalendarEventInput(
                    title=record.title,
                    start=record.start_at,
                    end=record.end_at,
                    location=record.location,
                    description=record.description,
                    attendees=tuple(record.attendees or ()),
                    is_virtual=bool(record.is_virtual),
                ),
            )
            output["provider_event_id"] = record.provider_event_id
        return output

    # External sends ----------------------------------------------------

    def send_message(self, params: SendMessageParams, ctx: ActionContext) -> dict[str, Any]:
        values = ctx.values()
        target = render(params.target, values).strip()
        if not target:
            raise ActionError("empty_target", "message target resolved to an empty value")
        ack = self._messaging.send_message(target, render(params.message, values))
        return {"target": target, "message_id": ack.message_id, "delivery": ack.status}

    def send_email(self, params: SendEmailParams, ctx: ActionContext) -> dict[str, Any]:
        values = ctx.values()
        recipients = [render(address, values).strip() for address in params.to]
        recipients = [address for address in recipients if address]
        if not recipients:
            raise ActionError("empty_target", "email recipients resolved to empty values")
        self._email.send(recipients, render(params.subject, values), render(params.body, values))
        return {"recipients": recipients}

    def call_webhook(self, params: CallWebhookParams, ctx: ActionContext) -> dict[str, Any]:
        values = ctx.values()
        url = render(params.url, values)
        headers = {key: render(value, values) for key, value in params.headers.items()}
        if params.body is not None:
            body = render_value(params.body, values)
        else:
            body = {
                "rule_id": ctx.rule.id,
                "rule_name": ctx.rule.name,
                "trigger": {key: _json_safe(value) for key, value in ctx.trigger.items()},
                "actions": _json_safe(dict(ctx.results)),
            }
        kwargs: dict[str, Any] = {"headers": headers}
        if params.method == "GET":
            kwargs["params"] = {key: str(value) for key, value in body.items() if not isinstance(value, (dict, list))}
        else:
            kwargs["json"] = body
        try:
            response = self._http.request(params.method, url, **kwargs)
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            raise CollaboratorError(
                "webhook",
                f"HTTP {status_code} from {url}",
                retryable=is_retryable_status(status_code),
            ) from exc
        except httpx.RequestError as exc:
            raise CollaboratorError("webhook", f"transport error: {exc}") from exc
        return {"url": url, "status_code": response.status_code}


def _shorten(value: Any) -> str:
    text = " ".join(str(value or "").split())
    if len(text) > _TITLE_LIMIT:
        return text[: _TITLE_LIMIT - 3].rstrip() + "..."
    return text


def _parse_datetime(value: str) -> datetime:
    """Parse an ISO or free-form timestamp, assuming the user timezone when naive."""
    try:
        parsed = date_parser.parse(value)
    except (ValueError, OverflowError) as exc:
        raise ActionError("invalid_datetime", f"could not parse datetime {value!r}") from exc
    return to_local(parsed, get_local_timezone())


def _end_of_day(day: date, tz) -> datetime:
    return datetime.combine(day, time(23, 59), tzinfo=tz)


def _json_safe(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value
