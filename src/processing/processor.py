"""Per-item pipeline: context, matching, gates, extraction, execution, ledger."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from opentelemetry import trace

from action_queue import QueueItemSnapshot
from config import settings
from execution import ActionExecutor, ActionParameterError, RunResult, extraction_hint, parse_action
from execution.results import trigger_snapshot
from extraction import ExtractedEntity, ExtractionService, HintType, partition_by_confidence
from extraction.language import detect_language
from ledger import ExecutionLedger
from processing.events import MalformedEventError, TriggerEvent, parse_event
from rules.matching import RuleMatcher
from rules.performer import normalize_jid
from rules.repository import RuleSnapshot
from rules.throttle import throttle_reason
from services.errors import CollaboratorError
from services.messaging import MessagingClient
from services.storage import Storage
from time_utils import utc_now

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_CLARIFY_SUBJECT = {
    HintType.CALENDAR: ("la fecha y hora del evento", "the event date and time"),
    HintType.TASK: ("la tarea", "the task"),
    HintType.BILL: ("el pago", "the payment"),
    HintType.BILL_BATCH: ("los pagos", "the payments"),
}


@dataclass(frozen=True)
class ProcessOutcome:
    """What the worker should do with the queue item."""

    completed: bool
    error: str | None = None
    note: str | None = None
    runs: tuple[RunResult, ...] = field(default_factory=tuple)


class EventProcessor:
    """Turn one claimed queue item into ledgered rule runs."""

    def __init__(
        self,
        *,
        matcher: RuleMatcher | None = None,
        executor: ActionExecutor | None = None,
        ledger: ExecutionLedger | None = None,
        extraction: ExtractionService | None = None,
        storage: Storage | None = None,
        messaging: MessagingClient | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._storage = storage or Storage()
        self._matcher = matcher or RuleMatcher(contact_lookup=self._storage.is_known_contact)
        self._executor = executor or ActionExecutor()
        self._ledger = ledger or ExecutionLedger()
        self._extraction = extraction or ExtractionService()
        self._messaging = messaging or MessagingClient()
        self._now = now or utc_now

    def process(
        self,
        item: QueueItemSnapshot,
        cancel_event: threading.Event | None = None,
    ) -> ProcessOutcome:
        """Run every matching rule for ``item``.

        Malformed payloads complete without matching since a retry cannot fix
        them. Any run with failures sends the item back to the queue; rules
        that already settled for the item are not run again.
        """
        cancel_event = cancel_event or threading.Event()
        with tracer.start_as_current_span(
            "relay.queue_item",
            attributes={
                "relay.queue_item.id": item.id,
                "relay.queue_item.event_type": item.event_type,
                "relay.queue_item.attempt": item.attempts,
            },
        ) as span:
            outcome = self._process(item, cancel_event)
            span.set_attribute("relay.queue_item.completed", outcome.completed)
            span.set_attribute("relay.queue_item.runs", len(outcome.runs))
        return outcome

    def _process(self, item: QueueItemSnapshot, cancel_event: threading.Event) -> ProcessOutcome:
        try:
            event = parse_event(item.event_type, item.payload)
        except MalformedEventError as exc:
            logger.warning("Queue item %s has a malformed payload: %s", item.id, exc)
            return ProcessOutcome(completed=True, note=f"malformed: {exc}")

        context = self.build_context(event)
        rules = self._matcher.match(event.trigger_type, event.trigger_value, context)
        if not rules:
            logger.debug("Queue item %s matched no rules", item.id)
            return ProcessOutcome(completed=True, note="no matching rules")

        now = self._now()
        cache: dict[str, list[ExtractedEntity]] = {}
        clarified: set[str] = set()
        runs: list[RunResult] = []
        for rule in rules:
            if cancel_event.is_set():
                return ProcessOutcome(
                    completed=False,
                    error="worker stopped before all rules ran",
                    runs=tuple(runs),
                )
            if self._ledger.has_succeeded(rule.id, item.id, include_skipped=True):
                logger.info("Rule %s already settled for queue item %s", rule.id, item.id)
                continue

            reason = throttle_reason(rule, self._ledger, now)
            if reason is not None:
                run = RunResult.skipped(
                    rule.id,
                    reason,
                    queue_item_id=item.id,
                    trigger_data=trigger_snapshot(context),
                    started_at=now,
                )
                self._ledger.record(run)
                runs.append(run)
                continue

            extracted, fallback = self._extract_for(rule, event, context, cache, now)
            if fallback is not None:
                hint, candidates = fallback
                sent = False
                if hint.value not in clarified:
                    sent = self._clarify(hint, event, context)
                    clarified.add(hint.value)
                run = RunResult.skipped(
                    rule.id,
                    "low_confidence",
                    queue_item_id=item.id,
                    trigger_data=trigger_snapshot(context),
                    metadata={
                        "hint": hint.value,
                        "candidates": [entity.summary() for entity in candidates],
                        "clarification_sent": sent,
                    },
                    started_at=now,
                )
                self._ledger.record(run)
                runs.append(run)
                continue

            run = self._executor.execute(
                rule,
                context,
                extracted,
                queue_item_id=item.id,
                cancel_event=cancel_event,
            )
            self._ledger.record(run)
            runs.append(run)

        failures = [run for run in runs if run.has_failures]
        if failures:
            error = "; ".join(f"rule {run.rule_id} {run.status}: {run.error_message}" for run in failures)
            return ProcessOutcome(completed=False, error=error, runs=tuple(runs))
        return ProcessOutcome(completed=True, runs=tuple(runs))

    def build_context(self, event: TriggerEvent) -> dict[str, Any]:
        """Build the field namespace used by conditions, templates and expressions."""
        content = event.content
        message: dict[str, Any] = {}
        if event.trigger_type == "reaction" and event.message_id:
            stored = self._storage.get_message(event.message_id, event.instance_id)
            if stored is not None:
                content = stored.content or content
                message = {
                    "message_id": stored.message_id,
                    "content": stored.content,
                    "sender_jid": stored.sender_jid,
                    "chat_id": stored.chat_id,
                    "from_me": bool(stored.from_me),
                    "message_type": stored.message_type,
                }
            else:
                logger.info("Reacted message %s is not stored; using payload content", event.message_id)
        elif event.message_id:
            message = {
                "message_id": event.message_id,
                "content": content,
                "sender_jid": event.actor_jid,
                "chat_id": event.chat_id,
                "from_me": event.from_me,
                "message_type": event.message_type,
            }

        sender = event.actor_name or normalize_jid(event.actor_jid)
        context: dict[str, Any] = dict(event.extra)
        context.update(
            {
                "trigger_type": event.trigger_type,
                "trigger_value": event.trigger_value,
                "instance_id": event.instance_id,
                "content": content or "",
                "sender": sender,
                "senderJid": event.actor_jid,
                "actor_jid": event.actor_jid,
                "chatId": event.chat_id,
                "chat_id": event.chat_id,
                "messageId": event.message_id,
                "message_id": event.message_id,
                "emoji": event.trigger_value if event.trigger_type == "reaction" else None,
                "from_me": event.from_me,
                "is_group": bool(event.chat_id and event.chat_id.endswith("@g.us")),
                "message": message,
            }
        )
        return context

    def _extract_for(
        self,
        rule: RuleSnapshot,
        event: TriggerEvent,
        context: dict[str, Any],
        cache: dict[str, list[ExtractedEntity]],
        now: datetime,
    ) -> tuple[dict[str, list[ExtractedEntity]], tuple[HintType, list[ExtractedEntity]] | None]:
        """Run (or reuse) extraction for the hints a rule's actions need.

        Returns the accepted candidates per hint, or the first hint whose
        candidates all fell below the confidence threshold.
        """
        extracted: dict[str, list[ExtractedEntity]] = {}
        for hint in required_hints(rule):
            if hint.value not in cache:
                cache[hint.value] = self._extraction.extract(
                    context.get("content") or "",
                    hint,
                    message_id=event.message_id,
                    reference_time=now,
                )
            accepted, rejected = partition_by_confidence(
                cache[hint.value], settings.extraction.confidence_threshold
            )
            if not accepted:
                return extracted, (hint, rejected)
            extracted[hint.value] = accepted
        return extracted, None

    def _clarify(self, hint: HintType, event: TriggerEvent, context: dict[str, Any]) -> bool:
        """Ask the acting user to restate what could not be extracted."""
        target = event.actor_jid or event.chat_id
        if not target:
            return False
        content = str(context.get("content") or "")
        snippet = content if len(content) <= 80 else content[:77] + "..."
        spanish, english = _CLARIFY_SUBJECT[hint]
        if detect_language(content) == "es":
            text = f'No pude identificar {spanish} en el mensaje: "{snippet}". ¿Puedes darme más detalles?'
        else:
            text = f'I couldn\'t work out {english} from the message: "{snippet}". Could you add more detail?'
        try:
            self._messaging.send_message(target, text)
        except CollaboratorError as exc:
            logger.warning("Clarification to %s was not delivered: %s", target, exc)
            return False
        logger.info("Sent clarification for %s extraction to %s", hint.value, target)
        return True


def required_hints(rule: RuleSnapshot) -> list[HintType]:
    """Return the distinct extraction hints needed by a rule's actions, in order."""
    hints: list[HintType] = []
    for action in sorted(rule.actions, key=lambda item: item.action_order):
        try:
            params = parse_action(action)
        except ActionParameterError:
            continue
        hint = extraction_hint(params)
        if hint is not None and hint not in hints:
            hints.append(hint)
    return hints
