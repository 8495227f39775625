"""Typed boolean expressions for conditional actions.

Conditional actions store an expression tree as JSON. It is parsed once into
frozen node objects and evaluated by :func:`evaluate_expression`. Nothing in
the stored text is ever executed as code.

Wire shapes::

    {"field": "previous.status", "operator": "equals", "value": "success"}
    {"all": [<expr>, ...]}
    {"any": [<expr>, ...]}
    {"not": <expr>}

Field paths resolve against the run scope built by the executor:
``previous`` (the most recent non-skipped action result), ``actions.<order>``
(results keyed by action order), ``context`` (the trigger context) and
``extracted`` (extraction summaries).
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from rules.conditions import ALLOWED_OPERATORS, RuleEvaluationError, apply_operator, resolve_field

logger = logging.getLogger(__name__)

_MAX_DEPTH = 16


class ExpressionError(Exception):
    """Raised when a stored expression is malformed."""


@dataclass(frozen=True)
class Comparison:
    field: str
    operator: str
    value: Any = None


@dataclass(frozen=True)
class AllOf:
    operands: tuple["Expression", ...]


@dataclass(frozen=True)
class AnyOf:
    operands: tuple["Expression", ...]


@dataclass(frozen=True)
class Not:
    operand: "Expression"


Expression = Union[Comparison, AllOf, AnyOf, Not]


def parse_expression(raw: Any) -> Expression:
    """Parse a JSON value (or JSON text) into an expression tree.

    Raises:
        ExpressionError: If the shape, operator or nesting is invalid.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise ExpressionError(f"Expression is not valid JSON: {exc}") from exc
    return _parse_node(raw, depth=0)


def _parse_node(node: Any, *, depth: int) -> Expression:
    if depth > _MAX_DEPTH:
        raise ExpressionError("Expression nesting is too deep.")
    if not isinstance(node, Mapping):
        raise ExpressionError(f"Expression node must be an object, got {type(node).__name__}.")

    keys = set(node)
    if keys & {"all", "any"}:
        if len(keys) != 1:
            raise ExpressionError("Combinator nodes take exactly one key.")
        key = next(iter(keys))
        operands = node[key]
        if not isinstance(operands, list) or not operands:
            raise ExpressionError(f"'{key}' requires a non-empty list of expressions.")
        parsed = tuple(_parse_node(operand, depth=depth + 1) for operand in operands)
        return AllOf(parsed) if key == "all" else AnyOf(parsed)

    if "not" in keys:
        if len(keys) != 1:
            raise ExpressionError("'not' nodes take exactly one key.")
        return Not(_parse_node(node["not"], depth=depth + 1))

    field = node.get("field")
    operator = node.get("operator")
    if not isinstance(field, str) or not field.strip():
        raise ExpressionError("Comparison nodes require a non-empty 'field'.")
    if operator not in ALLOWED_OPERATORS:
        raise ExpressionError(f"Unsupported operator: {operator!r}")
    extra = keys - {"field", "operator", "value"}
    if extra:
        raise ExpressionError(f"Unexpected keys in comparison: {sorted(extra)}")
    return Comparison(field=field.strip(), operator=operator, value=node.get("value"))


def evaluate_expression(expression: Expression, scope: Mapping[str, Any]) -> bool:
    """Evaluate an expression tree against the run scope.

    Combinators short-circuit left to right. A comparison that cannot be
    evaluated is false.
    """
    if isinstance(expression, Comparison):
        observed = resolve_field(scope, expression.field)
        try:
            return apply_operator(expression.operator, observed, expression.value)
        except RuleEvaluationError as exc:
            logger.warning("Expression comparison on %s is false: %s", expression.field, exc)
            return False
    if isinstance(expression, AllOf):
        return all(evaluate_expression(operand, scope) for operand in expression.operands)
    if isinstance(expression, AnyOf):
        return any(evaluate_expression(operand, scope) for operand in expression.operands)
    if isinstance(expression, Not):
        return not evaluate_expression(expression.operand, scope)
    raise ExpressionError(f"Unknown expression node: {type(expression).__name__}")


def to_wire(expression: Expression) -> dict[str, Any]:
    """Serialize an expression tree back to its JSON shape."""
    if isinstance(expression, Comparison):
        return {"field": expression.field, "operator": expression.operator, "value": expression.value}
    if isinstance(expression, AllOf):
        return {"all": [to_wire(operand) for operand in expression.operands]}
    if isinstance(expression, AnyOf):
        return {"any": [to_wire(operand) for operand in expression.operands]}
    return {"not": to_wire(expression.operand)}
