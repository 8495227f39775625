"""Outcome records produced by the action executor."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

RunStatus = Literal["success", "partial", "failed", "skipped"]
ActionStatus = Literal["success", "failed", "skipped"]


@dataclass(frozen=True)
class ActionOutcome:
    """Result of one action within a run."""

    action_order: int
    action_type: str
    status: ActionStatus
    attempts: int = 0
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def as_scope(self) -> dict[str, Any]:
        """Return the view conditional actions and templates see for this result."""
        scope = dict(self.output)
        scope.update(
            {
                "status": self.status,
                "action_type": self.action_type,
                "attempts": self.attempts,
                "error": self.error,
            }
        )
        return scope

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": self.action_order,
            "type": self.action_type,
            "status": self.status,
            "attempts": self.attempts,
            "output": self.output,
            "error": self.error,
        }


@dataclass(frozen=True)
class RunResult:
    """Outcome of one rule invocation, ready to be written to the ledger."""

    rule_id: int
    status: RunStatus
    queue_item_id: int | None = None
    actions_executed: int = 0
    actions_failed: int = 0
    actions_skipped: int = 0
    outcomes: tuple[ActionOutcome, ...] = ()
    error_message: str | None = None
    trigger_data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    duration_ms: int = 0

    @property
    def has_failures(self) -> bool:
        return self.status in ("failed", "partial")

    def execution_result(self) -> dict[str, Any]:
        """Return the JSON document stored with the ledger record."""
        return {"actions": [outcome.to_dict() for outcome in self.outcomes]}

    @staticmethod
    def skipped(
        rule_id: int,
        reason: str,
        *,
        queue_item_id: int | None = None,
        trigger_data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        started_at: datetime | None = None,
    ) -> "RunResult":
        """Build a skipped run that records why nothing was executed."""
        details = dict(metadata or {})
        details["skip_reason"] = reason
        return RunResult(
            rule_id=rule_id,
            status="skipped",
            queue_item_id=queue_item_id,
            error_message=reason,
            trigger_data=dict(trigger_data or {}),
            metadata=details,
            started_at=started_at,
        )


def trigger_snapshot(context: Mapping[str, Any]) -> dict[str, Any]:
    """Return the subset of a trigger context stored with ledger rows."""
    keys = (
        "trigger_type",
        "trigger_value",
        "instance_id",
        "messageId",
        "chatId",
        "senderJid",
        "sender",
        "emoji",
        "content",
    )
    return {key: context[key] for key in keys if context.get(key) is not None}
