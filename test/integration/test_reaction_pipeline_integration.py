"""End-to-end pipeline tests: webhook ingestion through ledgered side effects."""

from __future__ import annotations

from contextlib import closing
from datetime import datetime, timezone

import pytest

from action_queue import ActionQueue
from execution import ActionExecutor
from execution.handlers import ActionHandlers
from extraction import ExtractionService
from ledger import ExecutionLedger
from models import CalendarEvent, ExtractionLog
from processing.ingest import ingest_event
from processing.processor import EventProcessor
from processing.worker import WorkerPool
from rules.matching import RuleMatcher
from rules.repository import ActionDefinition, RuleCreateInput, RuleRepository
from services.http_client import HttpClient
from services.storage import Storage

pytestmark = pytest.mark.integration

NOW = datetime(2025, 6, 1, 16, 0, tzinfo=timezone.utc)
SENDER = "5215559998888@s.whatsapp.net"


class Pipeline:
    """Relay components wired to one SQLite database and recording collaborators."""

    def __init__(self, session_factory, messaging, calendar, email) -> None:
        self.session_factory = session_factory
        self.storage = Storage(session_factory)
        self.queue = ActionQueue(session_factory, default_max_attempts=3)
        self.rules = RuleRepository(session_factory)
        self.ledger = ExecutionLedger(session_factory, now=lambda: NOW)
        self.processor = EventProcessor(
            matcher=RuleMatcher(self.rules, instance_owners={}),
            executor=ActionExecutor(ActionHandlers(self.storage, messaging, calendar, email, HttpClient())),
            ledger=self.ledger,
            extraction=ExtractionService(session_factory),
            storage=self.storage,
            messaging=messaging,
            now=lambda: NOW,
        )
        self.pool = WorkerPool(self.processor, self.queue, size=1, batch_size=10)

    def ingest(self, body: dict) -> dict:
        return ingest_event(body, storage=self.storage, queue=self.queue)

    def events(self) -> list[CalendarEvent]:
        with closing(self.session_factory()) as session:
            return session.query(CalendarEvent).order_by(CalendarEvent.id).all()


@pytest.fixture
def pipeline(sqlite_session_factory, messaging, calendar, email, fast_retries) -> Pipeline:
    """Return a pipeline over the test database."""
    return Pipeline(sqlite_session_factory, messaging, calendar, email)


def _message(text: str) -> dict:
    return {
        "event": "messages.upsert",
        "instance": "main",
        "data": {
            "key": {"id": "MSG-1", "remoteJid": SENDER, "fromMe": False},
            "message": {"conversation": text},
            "pushName": "Ana",
            "messageTimestamp": 1748790000,
        },
    }


def _reaction(emoji: str = "📅") -> dict:
    return {
        "event": "messages.upsert",
        "instance": "main",
        "data": {
            "key": {"id": "REACT-1", "remoteJid": SENDER, "fromMe": False},
            "message": {"reactionMessage": {"key": {"id": "MSG-1", "remoteJid": SENDER}, "text": emoji}},
            "messageTimestamp": 1748790060,
        },
    }


def _calendar_rule(*actions: ActionDefinition) -> RuleCreateInput:
    return RuleCreateInput(
        name="calendar-reaction",
        trigger_type="reaction",
        priority=10,
        trigger_config={"reactions": ["📅"]},
        actions=actions or (ActionDefinition(1, "create_event", {}),),
    )


def test_calendar_reaction_creates_synced_event(pipeline, messaging, calendar, count_rows) -> None:
    """A 📅 reaction turns the reacted message into a synced calendar event."""
    rule = pipeline.rules.create(
        _calendar_rule(
            ActionDefinition(1, "create_event", {}),
            ActionDefinition(2, "send_message", {"message": "Agendado: {{actions.1.title}}"}),
        )
    )
    assert pipeline.ingest(_message("Nos vemos hoy a las 3 pm"))["status"] == "queued"
    reaction = pipeline.ingest(_reaction())

    assert pipeline.pool.run_once(0) == 2

    [event] = pipeline.events()
    assert event.title == "Nos vemos"
    assert event.provider_event_id == "gcal-1"
    assert event.source_message_id == "MSG-1"
    assert event.start_at == datetime(2025, 6, 1, 21, 0, tzinfo=timezone.utc)
    assert len(calendar.created) == 1
    assert messaging.sent == [(SENDER, "Agendado: Nos vemos")]
    assert count_rows(ExtractionLog) == 1

    [record] = pipeline.ledger.list_for_rule(rule.id)
    assert record.status == "success"
    assert record.queue_item_id == reaction["queue_item_id"]
    assert record.trigger_data["emoji"] == "📅"
    stats = pipeline.ledger.rule_stats(rule.id)
    assert (stats.execution_count, stats.success_count, stats.failure_count) == (1, 1, 0)
    assert pipeline.queue.stats()["completed"] == 2


def test_redelivery_and_reprocessing_do_not_duplicate(pipeline, calendar) -> None:
    """Re-delivered webhooks and re-run items leave one event behind."""
    rule = pipeline.rules.create(_calendar_rule())
    pipeline.ingest(_message("Nos vemos hoy a las 3 pm"))
    reaction = pipeline.ingest(_reaction())
    pipeline.pool.run_once(0)

    assert pipeline.ingest(_reaction())["status"] == "duplicate"
    outcome = pipeline.processor.process(pipeline.queue.get(reaction["queue_item_id"]))

    assert outcome.completed is True
    assert len(pipeline.events()) == 1
    assert len(calendar.created) == 1
    assert len(pipeline.ledger.list_for_rule(rule.id)) == 1


def test_other_emoji_matches_nothing(pipeline, calendar) -> None:
    """Reactions outside the rule's allowed values do not run it."""
    rule = pipeline.rules.create(_calendar_rule())
    pipeline.ingest(_message("Nos vemos hoy a las 3 pm"))
    pipeline.ingest(_reaction("👍"))

    pipeline.pool.run_once(0)

    assert calendar.created == []
    assert pipeline.ledger.list_for_rule(rule.id) == []


def test_unresolvable_time_asks_for_clarification(pipeline, messaging, calendar) -> None:
    """Low-confidence extraction skips the rule and asks the reactor once."""
    rule = pipeline.rules.create(_calendar_rule())
    pipeline.ingest(_message("Reunión con el equipo mañana"))
    pipeline.ingest(_reaction())

    pipeline.pool.run_once(0)

    assert calendar.created == []
    [(target, text)] = messaging.sent
    assert target == SENDER
    assert "fecha y hora" in text
    [record] = pipeline.ledger.list_for_rule(rule.id)
    assert record.status == "skipped"
    assert record.error_message == "low_confidence"
    assert record.metadata["clarification_sent"] is True
    stats = pipeline.ledger.rule_stats(rule.id)
    assert stats.execution_count == 0
    assert stats.status_counts == {"skipped": 1}
    assert pipeline.queue.stats()["completed"] == 2


def test_calendar_outage_is_retried_without_duplicates(pipeline, calendar) -> None:
    """A failed sync returns the item to the queue; the retry reuses the stored event."""
    rule = pipeline.rules.create(_calendar_rule())
    pipeline.ingest(_message("Nos vemos hoy a las 3 pm"))
    reaction = pipeline.ingest(_reaction())
    calendar.fail = True

    pipeline.pool.run_once(0)

    pending = pipeline.queue.get(reaction["queue_item_id"])
    assert pending.status == "pending"
    assert pending.last_error.startswith(f"rule {rule.id} failed")
    assert pipeline.events()[0].provider_event_id is None

    calendar.fail = False
    pipeline.pool.run_once(0)

    [event] = pipeline.events()
    assert event.provider_event_id == "gcal-1"
    assert pipeline.queue.get(reaction["queue_item_id"]).status == "completed"
    assert [record.status for record in pipeline.ledger.list_for_rule(rule.id)] == ["success", "failed"]
    stats = pipeline.ledger.rule_stats(rule.id)
    assert (stats.execution_count, stats.success_count, stats.failure_count) == (2, 1, 1)
