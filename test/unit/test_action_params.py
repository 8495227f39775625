"""Unit tests for typed action parameters and placeholder rendering."""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from execution import ActionParameterError, extraction_hint, parse_action
from execution.params import (
    CallWebhookParams,
    CreateEventParams,
    SendEmailParams,
    SendMessageParams,
)
from execution.templates import render, render_value, template_values
from extraction.types import BillPayload, ExtractedEntity, HintType
from rules.repository import ActionDefinition


def _action(action_type: str, **parameters) -> ActionDefinition:
    return ActionDefinition(action_order=1, action_type=action_type, parameters=parameters)


def test_parse_action_selects_model_by_type() -> None:
    """The action type picks the parameter model."""
    params = parse_action(_action("send_message", message="Listo"))

    assert isinstance(params, SendMessageParams)
    assert params.target == "{{chatId}}"


def test_send_email_accepts_comma_separated_recipients() -> None:
    """A recipient string is split on commas."""
    params = parse_action(_action("send_email", to="ana@example.com, luis@example.com", subject="Hola"))

    assert isinstance(params, SendEmailParams)
    assert params.to == ["ana@example.com", "luis@example.com"]
    assert params.body == "{{content}}"


def test_call_webhook_normalizes_method() -> None:
    """Webhook methods are upper-cased before validation."""
    params = parse_action(_action("call_webhook", url="https://hooks.example.com/x", method="put"))

    assert isinstance(params, CallWebhookParams)
    assert params.method == "PUT"


def test_unknown_parameters_are_ignored() -> None:
    """Extra stored keys do not fail validation."""
    params = parse_action(_action("create_event", legacy_flag=True, duration_minutes=30))

    assert isinstance(params, CreateEventParams)
    assert params.duration_minutes == 30


@pytest.mark.parametrize(
    ("action_type", "parameters"),
    [
        ("send_message", {}),
        ("send_message", {"message": ""}),
        ("send_email", {"to": "", "subject": "x"}),
        ("call_webhook", {"url": "ftp://example.com"}),
        ("call_webhook", {"url": "https://example.com", "method": "DELETE"}),
        ("create_event", {"duration_minutes": 0}),
        ("create_event", {"duration_minutes": 1441}),
        ("update_entity", {"entity_type": "task", "entity_id": 1, "fields": {}}),
        ("update_entity", {"entity_type": "contact", "entity_id": 1, "fields": {"a": 1}}),
        ("launch_rocket", {}),
    ],
)
def test_invalid_parameters_raise_typed_error(action_type, parameters) -> None:
    """Parameters that do not fit the action type raise ActionParameterError."""
    with pytest.raises(ActionParameterError) as excinfo:
        parse_action(_action(action_type, **parameters))

    assert excinfo.value.code == "invalid_parameters"
    assert excinfo.value.action_type == action_type


@pytest.mark.parametrize(
    ("action_type", "parameters", "expected"),
    [
        ("create_event", {}, HintType.CALENDAR),
        ("create_task", {}, HintType.TASK),
        ("create_task", {"extract": "bill_batch"}, HintType.BILL_BATCH),
        ("create_task", {"extract": "none"}, None),
        ("create_reminder", {}, HintType.CALENDAR),
        ("create_reminder", {"remind_at": "2025-06-02 09:00"}, None),
        ("send_message", {"message": "ok"}, None),
    ],
)
def test_extraction_hint(action_type, parameters, expected) -> None:
    """Only actions that consume extracted entities request a hint."""
    assert extraction_hint(parse_action(_action(action_type, **parameters))) is expected


def test_render_replaces_known_and_blanks_unknown_placeholders() -> None:
    """Unknown placeholders render as empty strings."""
    values = {"sender": "Ana", "actions": {"1": {"entity_id": 7}}}

    assert render("Hola {{sender}}, {{ missing }}!", values) == "Hola Ana, !"
    assert render("Tarea #{{actions.1.entity_id}}", values) == "Tarea #7"


def test_render_formats_dates_and_amounts() -> None:
    """Datetimes, dates and decimals have fixed display formats."""
    values = {
        "start": datetime(2025, 6, 1, 15, 0, tzinfo=timezone.utc),
        "due": date(2025, 6, 7),
        "amount": Decimal("80120.00"),
    }

    assert render("{{start}} / {{due}} / ${{amount}}", values) == "2025-06-01 15:00 / 2025-06-07 / $80,120.00"


def test_render_value_walks_nested_structures() -> None:
    """Strings inside dicts and lists are rendered; other values pass through."""
    rendered = render_value({"text": "{{content}}", "items": ["{{sender}}", 3], "flag": True}, {
        "content": "hola",
        "sender": "Ana",
    })

    assert rendered == {"text": "hola", "items": ["Ana", 3], "flag": True}


def test_template_values_merges_context_entity_and_results() -> None:
    """Entity fields and earlier results join the trigger context."""
    entity = ExtractedEntity(
        kind="bill",
        source_text="Braulio 600",
        language="es",
        payload=BillPayload(vendor="Braulio", amount=Decimal("600.00"), currency="MXN"),
        confidence=0.9,
        is_valid=True,
    )

    values = template_values(
        {"chatId": "123@s.whatsapp.net"},
        entity=entity,
        results={"1": {"status": "success"}},
    )

    assert values["chatId"] == "123@s.whatsapp.net"
    assert values["vendor"] == "Braulio"
    assert values["actions"]["1"]["status"] == "success"
    assert render("Pagar {{vendor}} ${{amount}}", values) == "Pagar Braulio $600.00"
