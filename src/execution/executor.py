"""Action executor.

Runs a rule's actions strictly in ascending order. Conditional actions are
gated by their stored expression, evaluated against the results of earlier
actions in the same run. A failed action is retried within its attempt
budget; once exhausted, the per-type policy either continues with the next
action or aborts the rest of the run.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping
from typing import Any, Callable

from opentelemetry import trace

from config import settings
from execution.handlers import ActionContext, ActionError, ActionHandlers
from execution.params import ActionParameterError, parse_action
from execution.results import ActionOutcome, RunResult, trigger_snapshot
from execution.retry import RetryPolicy, compute_backoff_delay_seconds, should_retry
from extraction.types import ExtractedEntity
from rules.expressions import ExpressionError, evaluate_expression, parse_expression
from rules.repository import ActionDefinition, RuleSnapshot
from time_utils import utc_now

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_TIMEOUT = "timeout"
_CANCELLED = "cancelled"


class ActionExecutor:
    """Execute rule actions against external collaborators."""

    def __init__(
        self,
        handlers: ActionHandlers | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._handlers = handlers or ActionHandlers()
        self._clock = clock

    def execute(
        self,
        rule: RuleSnapshot,
        context: Mapping[str, Any],
        extracted: Mapping[str, list[ExtractedEntity]] | None = None,
        *,
        queue_item_id: int | None = None,
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
    ) -> RunResult:
        """Run every action of ``rule`` and return the run outcome.

        Args:
            rule: Matched rule snapshot.
            context: Trigger context used for templates and expressions.
            extracted: Accepted extraction candidates keyed by hint value.
            queue_item_id: Originating queue item, used for idempotent writes.
            cancel_event: Set by the worker pool on shutdown; aborts the run.
            deadline: Monotonic clock value after which remaining actions are
                abandoned. Defaults to the configured run timeout.
        """
        extracted = dict(extracted or {})
        cancel_event = cancel_event or threading.Event()
        started_at = utc_now()
        start = self._clock()
        if deadline is None:
            deadline = start + settings.executor.run_timeout_seconds

        outcomes: list[ActionOutcome] = []
        results: dict[str, Any] = {}
        previous: dict[str, Any] = {}
        interrupted: str | None = None
        aborted_at: int | None = None

        with tracer.start_as_current_span(
            "relay.rule_run",
            attributes={
                "relay.rule.id": rule.id,
                "relay.rule.name": rule.name,
                "relay.queue_item.id": queue_item_id or 0,
            },
        ) as span:
            for action in sorted(rule.actions, key=lambda item: item.action_order):
                if cancel_event.is_set():
                    interrupted = _CANCELLED
                    break
                if self._clock() >= deadline:
                    interrupted = _TIMEOUT
                    break

                if action.is_conditional:
                    scope = {
                        "previous": previous,
                        "actions": results,
                        "context": dict(context),
                        "extracted": {
                            hint: [entity.summary() for entity in entities]
                            for hint, entities in extracted.items()
                        },
                    }
                    gate = _evaluate_gate(action, scope)
                    if gate is None:
                        outcome = ActionOutcome(
                            action.action_order,
                            action.action_type,
                            "failed",
                            error="invalid condition expression",
                        )
                    elif not gate:
                        outcome = ActionOutcome(action.action_order, action.action_type, "skipped")
                        outcomes.append(outcome)
                        results[str(action.action_order)] = outcome.as_scope()
                        logger.debug("Rule %s action %s skipped by condition", rule.id, action.action_order)
                        continue
                    else:
                        outcome, interrupted = self._run_action(
                            rule, action, context, extracted, results, queue_item_id, cancel_event, deadline
                        )
                else:
                    outcome, interrupted = self._run_action(
                        rule, action, context, extracted, results, queue_item_id, cancel_event, deadline
                    )

                outcomes.append(outcome)
                results[str(action.action_order)] = outcome.as_scope()
                previous = outcome.as_scope()
                if interrupted is not None:
                    break
                if outcome.status == "failed" and settings.executor.on_failure_for(action.action_type) == "abort":
                    aborted_at = action.action_order
                    logger.warning(
                        "Rule %s aborted after action %s (%s) failed",
                        rule.id,
                        action.action_order,
                        action.action_type,
                    )
                    break

            result = _build_result(
                rule,
                outcomes,
                queue_item_id=queue_item_id,
                context=context,
                extracted=extracted,
                interrupted=interrupted,
                aborted_at=aborted_at,
                started_at=started_at,
                duration_ms=int((self._clock() - start) * 1000),
                timeout_seconds=settings.executor.run_timeout_seconds,
            )
            span.set_attribute("relay.run.status", result.status)
            span.set_attribute("relay.run.actions_failed", result.actions_failed)
            if result.error_message:
                span.set_attribute("relay.run.error", result.error_message)

        logger.info(
            "Rule %s run finished: status=%s executed=%s failed=%s skipped=%s",
            rule.id,
            result.status,
            result.actions_executed,
            result.actions_failed,
            result.actions_skipped,
        )
        return result

    def _run_action(
        self,
        rule: RuleSnapshot,
        action: ActionDefinition,
        context: Mapping[str, Any],
        extracted: Mapping[str, list[ExtractedEntity]],
        results: Mapping[str, Any],
        queue_item_id: int | None,
        cancel_event: threading.Event,
        deadline: float,
    ) -> tuple[ActionOutcome, str | None]:
        """Run one action with bounded retries.

        Returns the outcome and, when the run must stop, the interruption reason.
        """
        try:
            params = parse_action(action)
        except ActionParameterError as exc:
            logger.error("Rule %s action %s has invalid parameters: %s", rule.id, action.action_order, exc)
            return (
                ActionOutcome(action.action_order, action.action_type, "failed", error=f"invalid_parameters: {exc}"),
                None,
            )

        ctx = ActionContext(
            rule=rule,
            action=action,
            trigger=context,
            extracted=extracted,
            results=dict(results),
            queue_item_id=queue_item_id,
        )
        policy = RetryPolicy.for_action(action.action_type)
        attempt = 0
        while True:
            attempt += 1
            with tracer.start_as_current_span(
                "relay.action",
                attributes={
                    "relay.action.order": action.action_order,
                    "relay.action.type": action.action_type,
                    "relay.action.attempt": attempt,
                },
            ) as span:
                try:
                    output = self._handlers.handle(params, ctx)
                except Exception as exc:  # noqa: BLE001
                    error_text = f"{type(exc).__name__}: {exc}"
                    span.set_attribute("relay.action.status", "failed")
                    span.set_attribute("relay.action.error", error_text)
                    retryable = _is_retryable(exc)
                    logger.warning(
                        "Rule %s action %s (%s) attempt %s failed: %s",
                        rule.id,
                        action.action_order,
                        action.action_type,
                        attempt,
                        error_text,
                    )
                else:
                    span.set_attribute("relay.action.status", "success")
                    return (
                        ActionOutcome(action.action_order, action.action_type, "success", attempt, output),
                        None,
                    )

            failed = ActionOutcome(action.action_order, action.action_type, "failed", attempt, error=error_text)
            if not retryable or not should_retry(attempt, policy.max_attempts):
                return failed, None
            delay = compute_backoff_delay_seconds(
                policy.backoff_strategy,
                attempt,
                policy.backoff_base_seconds,
                policy.max_backoff_seconds,
            )
            if self._clock() + delay >= deadline:
                return failed, _TIMEOUT
            if cancel_event.wait(delay):
                return failed, _CANCELLED


def _evaluate_gate(action: ActionDefinition, scope: Mapping[str, Any]) -> bool | None:
    """Evaluate a conditional action's expression; None when it is malformed."""
    try:
        expression = parse_expression(action.condition_expression)
    except ExpressionError as exc:
        logger.error("Action %s has a malformed condition expression: %s", action.action_order, exc)
        return None
    return evaluate_expression(expression, scope)


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, (ActionParameterError, ValueError, TypeError, KeyError)):
        return False
    if isinstance(exc, ActionError):
        return exc.retryable
    return bool(getattr(exc, "retryable", True))


def _build_result(
    rule: RuleSnapshot,
    outcomes: list[ActionOutcome],
    *,
    queue_item_id: int | None,
    context: Mapping[str, Any],
    extracted: Mapping[str, list[ExtractedEntity]],
    interrupted: str | None,
    aborted_at: int | None,
    started_at,
    duration_ms: int,
    timeout_seconds: float,
) -> RunResult:
    succeeded = sum(1 for outcome in outcomes if outcome.status == "success")
    failed = sum(1 for outcome in outcomes if outcome.status == "failed")
    skipped = sum(1 for outcome in outcomes if outcome.status == "skipped")

    error_message = None
    if interrupted == _TIMEOUT:
        status = "failed"
        error_message = f"run timed out after {timeout_seconds:g}s"
    elif interrupted == _CANCELLED:
        status = "failed"
        error_message = "run cancelled before completion"
    elif failed == 0:
        status = "success"
    elif succeeded == 0:
        status = "failed"
    else:
        status = "partial"

    if error_message is None and failed:
        first_error = next(outcome for outcome in outcomes if outcome.status == "failed")
        error_message = f"action {first_error.action_order} ({first_error.action_type}): {first_error.error}"

    metadata: dict[str, Any] = {
        "rule_name": rule.name,
        "extracted": {
            hint: [entity.summary() for entity in entities] for hint, entities in extracted.items()
        },
    }
    if aborted_at is not None:
        metadata["aborted_after"] = aborted_at
    if interrupted is not None:
        metadata["interrupted"] = interrupted

    return RunResult(
        rule_id=rule.id,
        status=status,
        queue_item_id=queue_item_id,
        actions_executed=succeeded + failed,
        actions_failed=failed,
        actions_skipped=skipped,
        outcomes=tuple(outcomes),
        error_message=error_message,
        trigger_data=trigger_snapshot(context),
        metadata=metadata,
        started_at=started_at,
        duration_ms=duration_ms,
    )
