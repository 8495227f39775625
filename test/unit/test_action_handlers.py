"""Unit tests for action handlers against a SQLite store."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
import respx

from execution import ActionError
from execution.handlers import ActionContext, ActionHandlers
from execution.params import (
    CallWebhookParams,
    CreateEventParams,
    CreateReminderParams,
    CreateTaskParams,
    SendEmailParams,
    SendMessageParams,
    UpdateEntityParams,
)
from extraction.types import BillPayload, CalendarPayload, ExtractedEntity
from models import Bill, CalendarEvent, Task
from rules.repository import ActionDefinition, RuleSnapshot
from services.errors import CollaboratorError
from services.http_client import HttpClient
from services.storage import Storage

MEXICO = ZoneInfo("America/Mexico_City")
CHAT = "5215559998888@s.whatsapp.net"
TRIGGER = {
    "trigger_type": "reaction",
    "emoji": "📅",
    "chatId": CHAT,
    "sender": "Ana",
    "content": "Nos vemos hoy a las 3 pm",
    "messageId": "MSG-1",
}
RULE = RuleSnapshot(
    id=3,
    name="calendar-reaction",
    trigger_type="reaction",
    priority=10,
    created_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
)


@pytest.fixture
def storage(sqlite_session_factory) -> Storage:
    """Return storage bound to the test database."""
    return Storage(sqlite_session_factory)


@pytest.fixture
def handlers(storage, messaging, calendar, email) -> ActionHandlers:
    """Return handlers wired to recording collaborators."""
    return ActionHandlers(storage, messaging, calendar, email, HttpClient(timeout=5, connect_timeout=1))


def _ctx(action_type: str, *, extracted=None, trigger=None, queue_item_id: int | None = 5) -> ActionContext:
    return ActionContext(
        rule=RULE,
        action=ActionDefinition(action_order=1, action_type=action_type, parameters={}),
        trigger=trigger or TRIGGER,
        extracted=extracted or {},
        queue_item_id=queue_item_id,
    )


def _calendar_entity() -> ExtractedEntity:
    start = datetime(2025, 6, 1, 15, 0, tzinfo=MEXICO)
    return ExtractedEntity(
        kind="calendar",
        source_text="Nos vemos hoy a las 3 pm",
        language="es",
        payload=CalendarPayload(title="Nos vemos", start=start, end=start.replace(hour=16)),
        confidence=0.9,
        is_valid=True,
    )


def _bill_entity(vendor: str, amount: str, due: date | None = None) -> ExtractedEntity:
    return ExtractedEntity(
        kind="bill",
        source_text=f"{vendor} {amount}",
        language="es",
        payload=BillPayload(vendor=vendor, amount=Decimal(amount), currency="MXN", due_date=due),
        confidence=0.9,
        is_valid=True,
    )


def test_create_event_syncs_calendar_once(handlers, calendar, count_rows) -> None:
    """A retried event action reuses the stored event and provider id."""
    params = CreateEventParams(action_type="create_event")
    ctx = _ctx("create_event", extracted={"calendar": [_calendar_entity()]})

    first = handlers.handle(params, ctx)
    second = handlers.handle(params, ctx)

    assert first["provider_event_id"] == "gcal-1"
    assert first["start"] == "2025-06-01T15:00:00-06:00"
    assert second["entity_id"] == first["entity_id"]
    assert len(calendar.created) == 1
    assert calendar.created[0].title == "Nos vemos"
    assert count_rows(CalendarEvent) == 1


def test_create_event_duration_and_title_template(handlers, calendar) -> None:
    """Parameters override the extracted end time and title."""
    params = CreateEventParams(action_type="create_event", title="Cita: {{title}}", duration_minutes=30)
    output = handlers.handle(params, _ctx("create_event", extracted={"calendar": [_calendar_entity()]}))

    assert output["title"] == "Cita: Nos vemos"
    assert output["end"] == "2025-06-01T15:30:00-06:00"


def test_create_event_without_candidate_fails(handlers) -> None:
    """Missing calendar candidates are a permanent action error."""
    with pytest.raises(ActionError) as excinfo:
        handlers.handle(CreateEventParams(action_type="create_event"), _ctx("create_event"))
    assert excinfo.value.code == "no_candidate"
    assert excinfo.value.retryable is False


def test_bill_batch_creates_bill_and_task_per_candidate(handlers, storage, count_rows) -> None:
    """Each bill candidate yields a bill and a linked payment task."""
    params = CreateTaskParams(action_type="create_task", extract="bill_batch", tags=["casa"])
    ctx = _ctx(
        "create_task",
        extracted={"bill_batch": [_bill_entity("Luz", "450", date(2025, 6, 10)), _bill_entity("Braulio", "600")]},
    )

    output = handlers.handle(params, ctx)
    again = handlers.handle(params, ctx)

    assert output["count"] == 2
    assert again["task_ids"] == output["task_ids"]
    assert count_rows(Bill) == 2
    assert count_rows(Task) == 2
    task = storage.get_entity("task", output["task_ids"][0])
    assert task.title == "Pay Luz ($450.00)"
    assert task.tags == ["bill", "casa"]
    assert task.bill_id == output["bill_ids"][0]
    assert task.due_at == datetime(2025, 6, 10, 23, 59, tzinfo=MEXICO)


def test_task_extraction_without_candidate_fails(handlers) -> None:
    """Task actions needing extraction fail when nothing was extracted."""
    with pytest.raises(ActionError, match="task candidate"):
        handlers.handle(CreateTaskParams(action_type="create_task"), _ctx("create_task"))


def test_plain_task_uses_message_content(handlers, storage) -> None:
    """Tasks without extraction fall back to the message content."""
    output = handlers.handle(
        CreateTaskParams(action_type="create_task", extract="none", priority="high"),
        _ctx("create_task"),
    )

    task = storage.get_entity("task", output["entity_id"])
    assert task.title == "Nos vemos hoy a las 3 pm"
    assert task.priority == "high"
    assert task.source_message_id == "MSG-1"


def test_reminder_with_explicit_time_uses_local_timezone(handlers) -> None:
    """Naive reminder times are read in the user timezone."""
    output = handlers.handle(
        CreateReminderParams(action_type="create_reminder", remind_at="2025-06-02 09:00"),
        _ctx("create_reminder"),
    )
    assert output["remind_at"] == "2025-06-02T09:00:00-06:00"


def test_reminder_with_unparseable_time_fails(handlers) -> None:
    """Garbage reminder times are rejected."""
    with pytest.raises(ActionError) as excinfo:
        handlers.handle(
            CreateReminderParams(action_type="create_reminder", remind_at="whenever"),
            _ctx("create_reminder"),
        )
    assert excinfo.value.code == "invalid_datetime"


def test_send_message_defaults_to_trigger_chat(handlers, messaging) -> None:
    """Messages go to the triggering chat with rendered placeholders."""
    output = handlers.handle(
        SendMessageParams(action_type="send_message", message="Listo {{sender}} {{emoji}}"),
        _ctx("send_message"),
    )

    assert messaging.sent == [(CHAT, "Listo Ana 📅")]
    assert output["message_id"] == "out-1"


def test_send_message_with_empty_target_fails(handlers, messaging) -> None:
    """A target rendering to nothing is never sent."""
    with pytest.raises(ActionError) as excinfo:
        handlers.handle(
            SendMessageParams(action_type="send_message", message="hola", target="{{missing}}"),
            _ctx("send_message"),
        )
    assert excinfo.value.code == "empty_target"
    assert messaging.calls == 0


def test_send_email_renders_recipients(handlers, email) -> None:
    """Email fields are rendered before sending."""
    handlers.handle(
        SendEmailParams(action_type="send_email", to=["ana@example.com"], subject="Aviso de {{sender}}"),
        _ctx("send_email"),
    )
    assert email.sent == [(["ana@example.com"], "Aviso de Ana", "Nos vemos hoy a las 3 pm")]


def test_update_entity_applies_fields(handlers, storage) -> None:
    """Entity ids may come from templates."""
    task = storage.create_task({"title": "Pagar luz", "tags": []})
    trigger = dict(TRIGGER, task_id=task.id)

    handlers.handle(
        UpdateEntityParams(
            action_type="update_entity",
            entity_type="task",
            entity_id="{{task_id}}",
            fields={"status": "done"},
        ),
        _ctx("update_entity", trigger=trigger),
    )

    assert storage.get_entity("task", task.id).status == "done"


@pytest.mark.parametrize(
    ("entity_id", "fields", "code"),
    [
        ("abc", {"status": "done"}, "invalid_entity_id"),
        (999, {"status": "done"}, "invalid_update"),
        (1, {"owner": "ana"}, "invalid_update"),
    ],
)
def test_update_entity_rejects_bad_targets(handlers, storage, entity_id, fields, code) -> None:
    """Unknown ids and fields fail the action."""
    storage.create_task({"title": "Pagar luz", "tags": []})
    params = UpdateEntityParams(
        action_type="update_entity", entity_type="task", entity_id=entity_id, fields=fields
    )
    with pytest.raises(ActionError) as excinfo:
        handlers.handle(params, _ctx("update_entity"))
    assert excinfo.value.code == code


def test_update_event_propagates_to_calendar(handlers, storage, calendar) -> None:
    """Synced events are patched at the provider."""
    created = handlers.handle(
        CreateEventParams(action_type="create_event"),
        _ctx("create_event", extracted={"calendar": [_calendar_entity()]}),
    )
    output = handlers.handle(
        UpdateEntityParams(
            action_type="update_entity",
            entity_type="event",
            entity_id=created["entity_id"],
            fields={"location": "Café Central"},
        ),
        _ctx("update_entity"),
    )

    assert output["provider_event_id"] == "gcal-1"
    [(provider_id, event)] = calendar.updated
    assert provider_id == "gcal-1"
    assert event.location == "Café Central"


def test_call_webhook_posts_run_summary(handlers) -> None:
    """Without a body the webhook receives the rule and trigger."""
    with respx.mock(assert_all_called=True) as router:
        route = router.post("http://hooks.test/relay").respond(204)

        output = handlers.handle(
            CallWebhookParams(action_type="call_webhook", url="http://hooks.test/relay"),
            _ctx("call_webhook"),
        )

    assert output["status_code"] == 204
    body = json.loads(route.calls[0].request.content)
    assert body["rule_id"] == 3
    assert body["trigger"]["emoji"] == "📅"


def test_call_webhook_server_error_is_retryable(handlers) -> None:
    """Server errors surface as retryable collaborator errors."""
    with respx.mock(assert_all_called=True) as router:
        router.get("http://hooks.test/relay").respond(503)

        with pytest.raises(CollaboratorError) as excinfo:
            handlers.handle(
                CallWebhookParams(action_type="call_webhook", url="http://hooks.test/relay", method="GET"),
                _ctx("call_webhook"),
            )

    assert excinfo.value.retryable is True
