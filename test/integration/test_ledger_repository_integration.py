"""Integration tests for the rule repository, execution ledger and storage upserts."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from execution import RunResult
from ledger import ExecutionLedger
from models import Contact, Group, Message, Note
from rules.conditions import ConditionSpec
from rules.matching import RuleMatcher
from rules.repository import ActionDefinition, RuleCreateInput, RuleRepository
from services.storage import Storage

pytestmark = pytest.mark.integration

NOW = datetime(2025, 6, 1, 16, 0, tzinfo=timezone.utc)


@pytest.fixture
def rules(sqlite_session_factory) -> RuleRepository:
    """Return a rule repository over the test database."""
    return RuleRepository(sqlite_session_factory)


@pytest.fixture
def ledger(sqlite_session_factory) -> ExecutionLedger:
    """Return a ledger over the test database."""
    return ExecutionLedger(sqlite_session_factory, now=lambda: NOW)


@pytest.fixture
def storage(sqlite_session_factory) -> Storage:
    """Return storage over the test database."""
    return Storage(sqlite_session_factory)


def _rule_input(**overrides) -> RuleCreateInput:
    values = {
        "name": "bills",
        "trigger_type": "incoming_message",
        "priority": 20,
        "conditions": (ConditionSpec("content", "contains", "pagar"),),
        "actions": (
            ActionDefinition(2, "send_message", {"message": "Anotado"}),
            ActionDefinition(1, "create_task", {"extract": "bill_batch"}),
        ),
    }
    values.update(overrides)
    return RuleCreateInput(**values)


def test_rule_round_trip_keeps_children_ordered(rules) -> None:
    """Created rules come back with conditions and actions in order."""
    created = rules.create(_rule_input(), now=NOW)

    assert created.created_at == NOW
    assert [action.action_order for action in created.actions] == [1, 2]
    assert created.conditions[0].operator == "contains"
    assert created.conditions[0].value == "pagar"
    assert [rule.id for rule in rules.list_active("incoming_message")] == [created.id]


def test_list_active_orders_by_priority_then_creation(rules) -> None:
    """Lower priority numbers come first; ties go to the older rule."""
    late = rules.create(_rule_input(name="late", priority=5), now=NOW)
    early = rules.create(_rule_input(name="early", priority=5), now=NOW - timedelta(hours=1))
    low = rules.create(_rule_input(name="low", priority=50), now=NOW - timedelta(days=1))
    rules.set_active(low.id, False)

    assert [rule.name for rule in rules.list_active("incoming_message")] == ["early", "late"]
    assert late.id != early.id


def test_update_replaces_children_and_keeps_counters(rules, ledger) -> None:
    """Updates swap conditions and actions but keep run history."""
    created = rules.create(_rule_input())
    ledger.record(RunResult(rule_id=created.id, status="success", started_at=NOW))

    updated = rules.update(
        created.id,
        _rule_input(conditions=(), actions=(ActionDefinition(1, "create_note", {}),)),
    )

    assert updated.conditions == ()
    assert [action.action_type for action in updated.actions] == ["create_note"]
    assert ledger.rule_stats(created.id).execution_count == 1
    assert updated.last_executed_at == NOW


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"name": "  "}, "name is required"),
        ({"trigger_type": "telepathy"}, "Unsupported trigger type"),
        ({"performer_filter": "everyone"}, "Unsupported performer filter"),
        ({"conditions": (ConditionSpec("content", "like", "x"),)}, "Unsupported condition operator"),
        (
            {"actions": (ActionDefinition(1, "create_note", {}), ActionDefinition(1, "send_message", {}))},
            "must be unique",
        ),
        (
            {"actions": (ActionDefinition(1, "create_note", {}, is_conditional=True),)},
            "requires a condition expression",
        ),
        (
            {
                "actions": (
                    ActionDefinition(
                        1,
                        "create_note",
                        {},
                        is_conditional=True,
                        condition_expression={"field": "x", "operator": "eval"},
                    ),
                )
            },
            "invalid expression",
        ),
    ],
)
def test_invalid_rule_definitions_are_rejected(rules, overrides, message) -> None:
    """Definitions failing validation never reach the database."""
    with pytest.raises(ValueError, match=message):
        rules.create(_rule_input(**overrides))
    assert rules.list_active("incoming_message") == []


@pytest.mark.parametrize(
    ("condition", "context"),
    [
        (ConditionSpec("sender", "in_list", ["ana", "luis"]), {"sender": "Ana"}),
        (ConditionSpec("sender", "in_list", ("ana", "luis")), {"sender": "luis"}),
        (ConditionSpec("amount", "greater_than", 500), {"amount": "1,200"}),
        (ConditionSpec("urgent", "equals", True), {"urgent": True}),
    ],
)
def test_stored_condition_operands_still_match(rules, condition, context) -> None:
    """Non-string operands survive storage and match through the rule matcher."""
    created = rules.create(
        _rule_input(trigger_type="manual", conditions=(condition,), actions=())
    )

    matched = RuleMatcher(rules, instance_owners={}).match("manual", None, context)

    assert [rule.id for rule in matched] == [created.id]


def test_in_list_operand_is_stored_as_json(rules) -> None:
    """List operands round-trip as JSON text rather than a Python repr."""
    created = rules.create(
        _rule_input(conditions=(ConditionSpec("sender", "in_list", ["ana", "josé"]),))
    )

    assert created.conditions[0].value == '["ana", "josé"]'


def test_update_unknown_rule_raises(rules) -> None:
    """Updating a missing rule is an error."""
    with pytest.raises(ValueError, match="Rule not found"):
        rules.update(404, _rule_input())


def test_rule_missing_on_read_back_raises(rules, monkeypatch) -> None:
    """A rule deleted between write and read-back raises instead of returning None."""
    existing = rules.create(_rule_input())
    monkeypatch.setattr(rules, "get", lambda rule_id: None)

    with pytest.raises(ValueError, match="Rule not found"):
        rules.create(_rule_input())
    with pytest.raises(ValueError, match="Rule not found"):
        rules.update(existing.id, _rule_input())


def test_ledger_counters_track_non_skipped_runs(rules, ledger) -> None:
    """Counters move with every recorded run except skips."""
    rule = rules.create(_rule_input())
    ledger.record(RunResult(rule_id=rule.id, status="success", queue_item_id=1, started_at=NOW))
    ledger.record(RunResult(rule_id=rule.id, status="partial", queue_item_id=2, started_at=NOW))
    ledger.record(RunResult.skipped(rule.id, "cooldown", queue_item_id=3, started_at=NOW))

    stats = ledger.rule_stats(rule.id)
    assert (stats.execution_count, stats.success_count, stats.failure_count) == (2, 1, 1)
    assert stats.success_rate == 0.5
    assert stats.last_executed_at == NOW
    assert stats.status_counts == {"success": 1, "partial": 1, "skipped": 1}


def test_ledger_settlement_and_window_counts(rules, ledger) -> None:
    """Settlement checks and window counts read the ledger rows."""
    rule = rules.create(_rule_input())
    ledger.record(RunResult(rule_id=rule.id, status="failed", queue_item_id=7, started_at=NOW - timedelta(days=1)))
    ledger.record(RunResult.skipped(rule.id, "low_confidence", queue_item_id=8, started_at=NOW))
    ledger.record(RunResult(rule_id=rule.id, status="success", queue_item_id=9, started_at=NOW))

    assert ledger.has_succeeded(rule.id, 7) is False
    assert ledger.has_succeeded(rule.id, 8) is False
    assert ledger.has_succeeded(rule.id, 8, include_skipped=True) is True
    assert ledger.has_succeeded(rule.id, 9) is True
    assert ledger.count_since(rule.id, NOW - timedelta(hours=1)) == 1
    assert ledger.count_since(rule.id, NOW - timedelta(days=2)) == 2
    assert [record.queue_item_id for record in ledger.list_for_rule(rule.id, limit=2)] == [9, 8]


def test_ledger_rejects_unknown_rule(ledger) -> None:
    """Recording a run for a missing rule fails and writes nothing."""
    with pytest.raises(ValueError, match="Rule not found"):
        ledger.record(RunResult(rule_id=404, status="success", started_at=NOW))


def test_message_upsert_is_idempotent(storage, count_rows) -> None:
    """Re-delivered messages update the existing row."""
    values = {
        "message_id": "MSG-1",
        "instance_id": "main",
        "chat_id": "5215559998888@s.whatsapp.net",
        "sender_jid": "5215559998888@s.whatsapp.net",
        "content": "hola",
        "message_type": "text",
        "from_me": False,
    }
    first = storage.upsert_message(values)
    second = storage.upsert_message(values)
    edited = storage.upsert_message(dict(values, content="hola de nuevo"))

    assert first.created is True
    assert second.created is False
    assert second.id == first.id
    assert edited.changed == ("content",)
    assert count_rows(Message) == 1
    assert storage.get_message("MSG-1", "main").content == "hola de nuevo"
    assert storage.get_message("MSG-1", "other") is None


def test_group_placeholder_never_overwrites_subject(storage, count_rows) -> None:
    """A placeholder subject leaves a real subject in place."""
    storage.upsert_group({"group_jid": "120363@g.us", "instance_id": "main", "subject": "Group"})
    storage.upsert_group({"group_jid": "120363@g.us", "instance_id": "main", "subject": "Familia"})
    result = storage.upsert_group({"group_jid": "120363@g.us", "instance_id": "main", "subject": "Group"})

    assert result.changed == ()
    assert count_rows(Group) == 1


def test_saved_contact_lookup(storage, count_rows) -> None:
    """Only contacts flagged as saved count as known."""
    storage.upsert_contact({"jid": "a@s.whatsapp.net", "instance_id": "main", "is_my_contact": True})
    storage.upsert_contact({"jid": "b@s.whatsapp.net", "instance_id": "main", "is_my_contact": False})

    assert storage.is_known_contact("a@s.whatsapp.net", "main") is True
    assert storage.is_known_contact("b@s.whatsapp.net", "main") is False
    assert storage.is_known_contact("c@s.whatsapp.net", "main") is False
    assert count_rows(Contact) == 2


def test_source_key_makes_creation_idempotent(storage, count_rows) -> None:
    """Records created under the same source key are written once."""
    first = storage.create_note({"title": "Nota", "content": "uno", "tags": []}, source_key="q1-r1-a1-0")
    second = storage.create_note({"title": "Nota", "content": "dos", "tags": []}, source_key="q1-r1-a1-0")
    storage.create_note({"title": "Suelta", "content": "tres", "tags": []})

    assert second.id == first.id
    assert second.content == "uno"
    assert count_rows(Note) == 2


@pytest.mark.parametrize(
    ("entity_type", "fields", "message"),
    [
        ("contact", {"title": "x"}, "Unsupported entity type"),
        ("note", {"owner": "x"}, "not updatable"),
        ("note", {"title": "x"}, "not found"),
    ],
)
def test_update_entity_validation(storage, entity_type, fields, message) -> None:
    """Unknown types, fields and ids raise ValueError."""
    with pytest.raises(ValueError, match=message):
        storage.update_entity(entity_type, 99, fields)
