"""Rule persistence and detached rule snapshots."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.orm import Session

from models import Rule, RuleAction, RuleCondition
from rules.conditions import ALLOWED_OPERATORS, ConditionSpec
from rules.expressions import ExpressionError, parse_expression
from rules.performer import PERFORMER_FILTERS
from services.database import get_sync_session
from time_utils import ensure_aware

logger = logging.getLogger(__name__)

TRIGGER_TYPES = frozenset(
    ["incoming_message", "reaction", "schedule", "entity_change", "manual", "webhook"]
)


@dataclass(frozen=True)
class ActionDefinition:
    """Stored action as loaded from the database (parameters still loosely typed)."""

    action_order: int
    action_type: str
    parameters: dict[str, Any]
    is_conditional: bool = False
    condition_expression: Any = None


@dataclass(frozen=True)
class RuleSnapshot:
    """Detached view of a rule with its conditions and ordered actions."""

    id: int
    name: str
    trigger_type: str
    priority: int
    created_at: datetime
    is_active: bool = True
    trigger_config: dict[str, Any] = field(default_factory=dict)
    performer_filter: str = "anyone"
    cooldown_minutes: int | None = None
    max_executions_per_day: int | None = None
    last_executed_at: datetime | None = None
    conditions: tuple[ConditionSpec, ...] = ()
    actions: tuple[ActionDefinition, ...] = ()

    @property
    def allowed_values(self) -> list[str] | None:
        """Return the fixed list of acceptable trigger values, if the rule has one."""
        values = self.trigger_config.get("allowed_values")
        if values is None:
            values = self.trigger_config.get("reactions")
        if isinstance(values, list) and values:
            return [str(value) for value in values]
        return None


@dataclass(frozen=True)
class RuleCreateInput:
    """Input payload for creating a rule."""

    name: str
    trigger_type: str
    priority: int = 100
    is_active: bool = True
    trigger_config: dict[str, Any] = field(default_factory=dict)
    performer_filter: str = "anyone"
    cooldown_minutes: int | None = None
    max_executions_per_day: int | None = None
    created_by: str | None = None
    scope_id: str | None = None
    description: str | None = None
    conditions: tuple[ConditionSpec, ...] = ()
    actions: tuple[ActionDefinition, ...] = ()


class RuleRepository:
    """Create, update, load and toggle automation rules."""

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        self._session_factory = session_factory or get_sync_session

    def create(self, payload: RuleCreateInput, *, now: datetime | None = None) -> RuleSnapshot:
        """Persist a rule with its conditions and actions.

        Raises:
            ValueError: If the trigger type, operators, performer filter or action
                ordering are invalid.
        """
        _validate_rule_input(payload)
        timestamp = now or datetime.now(timezone.utc)

        def handler(session: Session) -> int:
            rule = Rule(
                name=payload.name,
                description=payload.description,
                is_active=payload.is_active,
                trigger_type=payload.trigger_type,
                trigger_config=dict(payload.trigger_config),
                performer_filter=payload.performer_filter,
                priority=payload.priority,
                cooldown_minutes=payload.cooldown_minutes,
                max_executions_per_day=payload.max_executions_per_day,
                created_by=payload.created_by,
                scope_id=payload.scope_id,
                created_at=timestamp,
                updated_at=timestamp,
            )
            session.add(rule)
            session.flush()
            _add_children(session, rule.id, payload)
            return rule.id

        rule_id = self._execute(handler)
        logger.info("Created rule %s (%s)", rule_id, payload.name)
        return self._require(rule_id)

    def update(self, rule_id: int, payload: RuleCreateInput) -> RuleSnapshot:
        """Replace a rule's definition, conditions and actions.

        Running counters and the last-executed timestamp are kept.

        Raises:
            ValueError: If the rule does not exist or the definition is invalid.
        """
        _validate_rule_input(payload)

        def handler(session: Session) -> None:
            rule = session.get(Rule, rule_id)
            if rule is None:
                raise ValueError(f"Rule not found: {rule_id}")
            rule.name = payload.name
            rule.description = payload.description
            rule.is_active = payload.is_active
            rule.trigger_type = payload.trigger_type
            rule.trigger_config = dict(payload.trigger_config)
            rule.performer_filter = payload.performer_filter
            rule.priority = payload.priority
            rule.cooldown_minutes = payload.cooldown_minutes
            rule.max_executions_per_day = payload.max_executions_per_day
            rule.scope_id = payload.scope_id
            rule.updated_at = datetime.now(timezone.utc)
            session.query(RuleCondition).filter(RuleCondition.rule_id == rule_id).delete(
                synchronize_session=False
            )
            session.query(RuleAction).filter(RuleAction.rule_id == rule_id).delete(
                synchronize_session=False
            )
            session.flush()
            _add_children(session, rule_id, payload)

        self._execute(handler)
        logger.info("Updated rule %s (%s)", rule_id, payload.name)
        return self._require(rule_id)

    def get(self, rule_id: int) -> RuleSnapshot | None:
        """Return a rule snapshot by id."""

        def handler(session: Session) -> RuleSnapshot | None:
            rule = session.get(Rule, rule_id)
            if rule is None:
                return None
            return _load_snapshots(session, [rule])[0]

        return self._execute(handler)

    def _require(self, rule_id: int) -> RuleSnapshot:
        snapshot = self.get(rule_id)
        if snapshot is None:
            raise ValueError(f"Rule not found: {rule_id}")
        return snapshot

    def list_active(self, trigger_type: str) -> list[RuleSnapshot]:
        """Return active rules for a trigger type in priority, then creation, order."""

        def handler(session: Session) -> list[RuleSnapshot]:
            rules = (
                session.query(Rule)
                .filter(Rule.trigger_type == trigger_type, Rule.is_active.is_(True))
                .order_by(Rule.priority.asc(), Rule.created_at.asc(), Rule.id.asc())
                .all()
            )
            return _load_snapshots(session, rules)

        return self._execute(handler)

    def set_active(self, rule_id: int, is_active: bool) -> None:
        """Enable or disable a rule."""

        def handler(session: Session) -> None:
            rule = session.get(Rule, rule_id)
            if rule is None:
                raise ValueError(f"Rule not found: {rule_id}")
            rule.is_active = is_active
            rule.updated_at = datetime.now(timezone.utc)

        self._execute(handler)

    def _execute(self, handler):
        """Execute repository work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def _condition_value(value: Any) -> str | None:
    """Serialize a condition operand for the text column; non-strings are stored as JSON."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (tuple, set, frozenset)):
        value = list(value)
    return json.dumps(value, ensure_ascii=False)


def _add_children(session: Session, rule_id: int, payload: RuleCreateInput) -> None:
    for condition in payload.conditions:
        session.add(
            RuleCondition(
                rule_id=rule_id,
                condition_group=condition.condition_group,
                group_operator="AND",
                operator=condition.operator,
                field_name=condition.field_name,
                value=_condition_value(condition.value),
                is_negated=condition.is_negated,
            )
        )
    for action in payload.actions:
        session.add(
            RuleAction(
                rule_id=rule_id,
                action_order=action.action_order,
                action_type=action.action_type,
                parameters=dict(action.parameters),
                is_conditional=action.is_conditional,
                condition_expression=action.condition_expression,
            )
        )


def _load_snapshots(session: Session, rules: Iterable[Rule]) -> list[RuleSnapshot]:
    """Attach conditions and ordered actions to each rule in two queries."""
    rules = list(rules)
    if not rules:
        return []
    rule_ids = [rule.id for rule in rules]
    conditions: dict[int, list[ConditionSpec]] = {rule_id: [] for rule_id in rule_ids}
    for row in (
        session.query(RuleCondition)
        .filter(RuleCondition.rule_id.in_(rule_ids))
        .order_by(RuleCondition.condition_group.asc(), RuleCondition.id.asc())
        .all()
    ):
        conditions[row.rule_id].append(ConditionSpec.from_model(row))
    actions: dict[int, list[ActionDefinition]] = {rule_id: [] for rule_id in rule_ids}
    for row in (
        session.query(RuleAction)
        .filter(RuleAction.rule_id.in_(rule_ids))
        .order_by(RuleAction.action_order.asc())
        .all()
    ):
        actions[row.rule_id].append(
            ActionDefinition(
                action_order=row.action_order,
                action_type=row.action_type,
                parameters=dict(row.parameters or {}),
                is_conditional=bool(row.is_conditional),
                condition_expression=row.condition_expression,
            )
        )
    return [
        RuleSnapshot(
            id=rule.id,
            name=rule.name,
            trigger_type=rule.trigger_type,
            priority=rule.priority,
            created_at=ensure_aware(rule.created_at),
            is_active=bool(rule.is_active),
            trigger_config=dict(rule.trigger_config or {}),
            performer_filter=rule.performer_filter or "anyone",
            cooldown_minutes=rule.cooldown_minutes,
            max_executions_per_day=rule.max_executions_per_day,
            last_executed_at=ensure_aware(rule.last_executed_at),
            conditions=tuple(conditions[rule.id]),
            actions=tuple(actions[rule.id]),
        )
        for rule in rules
    ]


def _validate_rule_input(payload: RuleCreateInput) -> None:
    """Validate a rule definition before it is persisted."""
    if not payload.name or not payload.name.strip():
        raise ValueError("Rule name is required.")
    if payload.trigger_type not in TRIGGER_TYPES:
        raise ValueError(f"Unsupported trigger type: {payload.trigger_type}")
    if payload.performer_filter not in PERFORMER_FILTERS:
        raise ValueError(f"Unsupported performer filter: {payload.performer_filter}")
    for condition in payload.conditions:
        if condition.operator not in ALLOWED_OPERATORS:
            raise ValueError(f"Unsupported condition operator: {condition.operator}")
    orders = [action.action_order for action in payload.actions]
    if len(orders) != len(set(orders)):
        raise ValueError("Action order values must be unique within a rule.")
    for action in payload.actions:
        if action.is_conditional:
            if action.condition_expression is None:
                raise ValueError(
                    f"Conditional action {action.action_order} requires a condition expression."
                )
            try:
                parse_expression(action.condition_expression)
            except ExpressionError as exc:
                raise ValueError(
                    f"Conditional action {action.action_order} has an invalid expression: {exc}"
                ) from exc
