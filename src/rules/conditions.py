"""Condition evaluation for rule matching.

Conditions sharing a ``condition_group`` combine with AND; groups combine with
OR. Negation inverts a single condition before its group is combined. Any
evaluation fault (an invalid regex, a non-numeric operand for an ordering
operator) fails closed for that condition only.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

logger = logging.getLogger(__name__)

ALLOWED_OPERATORS = frozenset(
    [
        "equals",
        "not_equals",
        "contains",
        "not_contains",
        "starts_with",
        "ends_with",
        "matches_regex",
        "greater_than",
        "less_than",
        "in_list",
    ]
)
# Operators that hold when the field is absent from the context.
_ABSENCE_SATISFIES = frozenset(["not_equals", "not_contains"])

_MISSING = object()


class RuleEvaluationError(Exception):
    """Raised when a single condition cannot be evaluated."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class ConditionSpec:
    """Detached, validated view of a stored rule condition."""

    field_name: str
    operator: str
    value: Any
    condition_group: int = 1
    is_negated: bool = False

    @classmethod
    def from_model(cls, condition) -> "ConditionSpec":
        """Build a spec from a RuleCondition row."""
        return cls(
            field_name=condition.field_name,
            operator=condition.operator,
            value=condition.value,
            condition_group=condition.condition_group or 1,
            is_negated=bool(condition.is_negated),
        )


def resolve_field(context: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path against nested mappings and sequences.

    Returns the module-level missing sentinel when any segment is absent.
    """
    cursor: Any = context
    for segment in path.split("."):
        if isinstance(cursor, Mapping):
            if segment not in cursor:
                return _MISSING
            cursor = cursor[segment]
        elif isinstance(cursor, (list, tuple)) and segment.isdigit():
            index = int(segment)
            if index >= len(cursor):
                return _MISSING
            cursor = cursor[index]
        else:
            return _MISSING
    return cursor


def is_missing(value: Any) -> bool:
    return value is _MISSING


def apply_operator(operator: str, observed: Any, expected: Any) -> bool:
    """Apply a comparison operator.

    Text operators compare case-insensitively. Ordering operators compare
    numerically.

    Raises:
        RuleEvaluationError: If the operator is unknown, the regex is invalid,
            or an ordering operand is not numeric.
    """
    if operator not in ALLOWED_OPERATORS:
        raise RuleEvaluationError("operator_not_supported", f"Unknown operator: {operator}")

    if is_missing(observed) or observed is None:
        return operator in _ABSENCE_SATISFIES

    if operator in ("greater_than", "less_than"):
        left = _to_number(observed)
        right = _to_number(expected)
        return left > right if operator == "greater_than" else left < right

    if operator == "matches_regex":
        try:
            pattern = re.compile(str(expected))
        except re.error as exc:
            raise RuleEvaluationError("invalid_pattern", f"Invalid regex {expected!r}: {exc}") from exc
        return pattern.search(_to_text(observed)) is not None

    if operator == "in_list":
        options = {_fold(option) for option in _to_list(expected)}
        return _fold(observed) in options

    left = _fold(observed)
    right = _fold(expected)
    if operator == "equals":
        return left == right
    if operator == "not_equals":
        return left != right
    if operator == "contains":
        return right in left
    if operator == "not_contains":
        return right not in left
    if operator == "starts_with":
        return left.startswith(right)
    return left.endswith(right)


def evaluate_condition(condition: ConditionSpec, context: Mapping[str, Any]) -> bool:
    """Evaluate one condition, applying negation and failing closed on faults.

    A faulted condition is a non-match regardless of negation.
    """
    observed = resolve_field(context, condition.field_name)
    try:
        result = apply_operator(condition.operator, observed, condition.value)
    except RuleEvaluationError as exc:
        logger.warning(
            "Condition on %s (%s) failed closed: %s",
            condition.field_name,
            condition.operator,
            exc,
        )
        return False
    return not result if condition.is_negated else result


def evaluate_condition_groups(
    conditions: Iterable[ConditionSpec], context: Mapping[str, Any]
) -> bool:
    """Return whether the condition set matches the context.

    An empty set matches by default.
    """
    groups: dict[int, list[ConditionSpec]] = {}
    for condition in conditions:
        groups.setdefault(condition.condition_group, []).append(condition)
    if not groups:
        return True
    for group_number in sorted(groups):
        if all(evaluate_condition(condition, context) for condition in groups[group_number]):
            return True
    return False


def _fold(value: Any) -> str:
    return _to_text(value).casefold()


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, ensure_ascii=False)
    return str(value)


def _to_number(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise RuleEvaluationError("value_type_mismatch", "Booleans are not ordered values.")
    try:
        number = Decimal(str(value).strip().replace(",", ""))
    except (InvalidOperation, ValueError) as exc:
        raise RuleEvaluationError(
            "value_type_mismatch", f"Value {value!r} is not numeric."
        ) from exc
    if not number.is_finite():
        raise RuleEvaluationError("value_type_mismatch", f"Value {value!r} is not finite.")
    return number


def _to_list(value: Any) -> list[Any]:
    """Interpret an in_list operand as a JSON list or comma-separated text."""
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    text = _to_text(value).strip()
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return parsed
    return [part.strip() for part in text.split(",") if part.strip()]
