"""Cooldown and daily-limit gates applied to matched rules."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Protocol

from rules.repository import RuleSnapshot
from time_utils import ensure_aware, get_local_timezone


class RunCounter(Protocol):
    def count_since(self, rule_id: int, since: datetime) -> int: ...


def throttle_reason(
    rule: RuleSnapshot,
    ledger: RunCounter,
    now: datetime,
    *,
    timezone_name: str | None = None,
) -> str | None:
    """Return why ``rule`` must not run now, or None when it may run.

    The daily limit counts non-skipped runs since local midnight in the user's
    timezone.
    """
    if rule.cooldown_minutes and rule.last_executed_at is not None:
        last = ensure_aware(rule.last_executed_at)
        if now - last < timedelta(minutes=rule.cooldown_minutes):
            return f"cooldown: last run {last.isoformat()} within {rule.cooldown_minutes} minutes"

    if rule.max_executions_per_day:
        tz = get_local_timezone(timezone_name)
        local_midnight = datetime.combine(now.astimezone(tz).date(), time(0, 0), tzinfo=tz)
        count = ledger.count_since(rule.id, local_midnight.astimezone(timezone.utc))
        if count >= rule.max_executions_per_day:
            return f"daily_limit: {count} of {rule.max_executions_per_day} runs today"
    return None
