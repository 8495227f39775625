"""Rule matching engine.

``match`` selects active rules for a trigger type, drops rules whose trigger
configuration does not accept the trigger value, evaluates condition groups,
applies the performer filter, and returns survivors in priority order (ties
broken by creation order).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Callable

from rules.conditions import evaluate_condition_groups
from rules.performer import performer_allowed
from rules.repository import RuleRepository, RuleSnapshot

logger = logging.getLogger(__name__)


class RuleMatcher:
    """Select the rules that should fire for a trigger."""

    def __init__(
        self,
        repository: RuleRepository | None = None,
        *,
        instance_owners: Mapping[str, str] | None = None,
        contact_lookup: Callable[[str, str], bool] | None = None,
    ) -> None:
        self._repository = repository or RuleRepository()
        self._instance_owners = instance_owners
        self._contact_lookup = contact_lookup

    def match(
        self,
        trigger_type: str,
        trigger_value: str | None,
        context: Mapping[str, Any],
    ) -> list[RuleSnapshot]:
        """Return matching rules ordered by priority, then creation order."""
        candidates = self._repository.list_active(trigger_type)
        matched: list[RuleSnapshot] = []
        for rule in candidates:
            if not rule.is_active:
                continue
            if not _accepts_trigger_value(rule, trigger_value):
                logger.debug("Rule %s skipped: trigger value %r not allowed", rule.id, trigger_value)
                continue
            if not evaluate_condition_groups(rule.conditions, context):
                logger.debug("Rule %s skipped: conditions not satisfied", rule.id)
                continue
            if not self._performer_ok(rule, context):
                logger.info(
                    "Rule %s skipped: actor %s outside performer scope %s",
                    rule.id,
                    context.get("actor_jid"),
                    rule.performer_filter,
                )
                continue
            matched.append(rule)
        matched.sort(key=lambda rule: (rule.priority, rule.created_at, rule.id))
        return matched

    def _performer_ok(self, rule: RuleSnapshot, context: Mapping[str, Any]) -> bool:
        allowed = rule.trigger_config.get("allowed_performers")
        if not performer_allowed(
            rule.performer_filter,
            context,
            allowed_performers=allowed if isinstance(allowed, list) else None,
            instance_owners=self._instance_owners,
        ):
            return False
        if rule.trigger_config.get("require_saved_contact") and self._contact_lookup is not None:
            return self._contact_lookup(
                str(context.get("actor_jid") or ""), str(context.get("instance_id") or "")
            )
        return True


def _accepts_trigger_value(rule: RuleSnapshot, trigger_value: str | None) -> bool:
    allowed = rule.allowed_values
    if allowed is None:
        return True
    return trigger_value is not None and str(trigger_value) in allowed
