"""Append-only execution ledger.

Every rule invocation yields one ``RuleExecution`` row. The owning rule's
counters are incremented in the same transaction as the insert with SQL-side
arithmetic, so counters and ledger rows never diverge and concurrent workers
cannot lose each other's updates. Nothing else writes rule counters.
"""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from execution.results import RunResult
from models import Rule, RuleExecution
from services.database import get_sync_session
from time_utils import ensure_aware, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionRecord:
    """Read-only view of a ledger row."""

    id: int
    rule_id: int
    queue_item_id: int | None
    status: str
    error_message: str | None
    actions_executed: int
    actions_failed: int
    execution_time_ms: int
    executed_at: datetime
    trigger_data: dict[str, Any]
    execution_result: dict[str, Any]
    metadata: dict[str, Any]


@dataclass(frozen=True)
class RuleStats:
    """Counter and ledger summary for one rule."""

    rule_id: int
    execution_count: int
    success_count: int
    failure_count: int
    last_executed_at: datetime | None
    status_counts: dict[str, int]

    @property
    def success_rate(self) -> float:
        if self.execution_count == 0:
            return 0.0
        return self.success_count / self.execution_count


class ExecutionLedger:
    """Record run outcomes and answer retry and throttling questions."""

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory or get_sync_session
        self._now = now or utc_now

    def record(self, run: RunResult) -> int:
        """Append a ledger row for ``run`` and update the rule's counters.

        Returns:
            The new ledger row id.
        """
        executed_at = run.started_at or self._now()

        def handler(session: Session) -> int:
            metadata = dict(run.metadata)
            metadata["actions_skipped"] = run.actions_skipped
            row = RuleExecution(
                rule_id=run.rule_id,
                queue_item_id=run.queue_item_id,
                trigger_data=run.trigger_data,
                execution_result=run.execution_result(),
                status=run.status,
                error_message=run.error_message,
                actions_executed=run.actions_executed,
                actions_failed=run.actions_failed,
                execution_time_ms=run.duration_ms,
                executed_at=executed_at,
                run_metadata=metadata,
            )
            session.add(row)

            if run.status != "skipped":
                values: dict[str, Any] = {
                    "execution_count": Rule.execution_count + 1,
                    "last_executed_at": executed_at,
                }
                if run.status == "success":
                    values["success_count"] = Rule.success_count + 1
                else:
                    values["failure_count"] = Rule.failure_count + 1
                result = session.execute(update(Rule).where(Rule.id == run.rule_id).values(**values))
                if result.rowcount != 1:
                    raise ValueError(f"Rule not found: {run.rule_id}")
            session.flush()
            return row.id

        record_id = self._execute(handler)
        logger.info(
            "Recorded run %s for rule %s (queue item %s): %s",
            record_id,
            run.rule_id,
            run.queue_item_id,
            run.status,
        )
        return record_id

    def has_succeeded(
        self, rule_id: int, queue_item_id: int, *, include_skipped: bool = False
    ) -> bool:
        """Return whether a rule already completed successfully for a queue item.

        With ``include_skipped`` a deliberate skip (low confidence, throttling)
        also counts as settled.
        """
        statuses = ["success", "skipped"] if include_skipped else ["success"]

        def handler(session: Session) -> bool:
            found = (
                session.query(RuleExecution.id)
                .filter(
                    RuleExecution.rule_id == rule_id,
                    RuleExecution.queue_item_id == queue_item_id,
                    RuleExecution.status.in_(statuses),
                )
                .first()
            )
            return found is not None

        return self._execute(handler)

    def count_since(self, rule_id: int, since: datetime) -> int:
        """Count non-skipped runs of a rule at or after ``since``."""
        since = ensure_aware(since).astimezone(timezone.utc)

        def handler(session: Session) -> int:
            return int(
                session.query(func.count(RuleExecution.id))
                .filter(
                    RuleExecution.rule_id == rule_id,
                    RuleExecution.status != "skipped",
                    RuleExecution.executed_at >= since,
                )
                .scalar()
                or 0
            )

        return self._execute(handler)

    def list_for_rule(self, rule_id: int, limit: int = 50) -> list[ExecutionRecord]:
        """Return the most recent ledger rows for a rule, newest first."""

        def handler(session: Session) -> list[ExecutionRecord]:
            rows = (
                session.query(RuleExecution)
                .filter(RuleExecution.rule_id == rule_id)
                .order_by(RuleExecution.executed_at.desc(), RuleExecution.id.desc())
                .limit(limit)
                .all()
            )
            return [_to_record(row) for row in rows]

        return self._execute(handler)

    def rule_stats(self, rule_id: int) -> RuleStats:
        """Return counters and per-status ledger totals for a rule."""

        def handler(session: Session) -> RuleStats:
            rule = session.get(Rule, rule_id)
            if rule is None:
                raise ValueError(f"Rule not found: {rule_id}")
            counts = dict(
                session.query(RuleExecution.status, func.count(RuleExecution.id))
                .filter(RuleExecution.rule_id == rule_id)
                .group_by(RuleExecution.status)
                .all()
            )
            return RuleStats(
                rule_id=rule.id,
                execution_count=rule.execution_count,
                success_count=rule.success_count,
                failure_count=rule.failure_count,
                last_executed_at=ensure_aware(rule.last_executed_at),
                status_counts={str(key): int(value) for key, value in counts.items()},
            )

        return self._execute(handler)

    def _execute(self, handler):
        """Execute ledger work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def _to_record(row: RuleExecution) -> ExecutionRecord:
    return ExecutionRecord(
        id=row.id,
        rule_id=row.rule_id,
        queue_item_id=row.queue_item_id,
        status=row.status,
        error_message=row.error_message,
        actions_executed=row.actions_executed,
        actions_failed=row.actions_failed,
        execution_time_ms=row.execution_time_ms,
        executed_at=ensure_aware(row.executed_at),
        trigger_data=dict(row.trigger_data or {}),
        execution_result=dict(row.execution_result or {}),
        metadata=dict(row.run_metadata or {}),
    )
