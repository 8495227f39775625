"""``{{placeholder}}`` interpolation for action parameters."""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from typing import Any

from extraction.types import BillPayload, CalendarDraft, CalendarPayload, ExtractedEntity, TaskPayload
from rules.conditions import is_missing, resolve_field

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def render(template: str, values: Mapping[str, Any]) -> str:
    """Replace placeholders with values; unknown placeholders become empty."""

    def substitute(match: re.Match[str]) -> str:
        value = resolve_field(values, match.group(1))
        if is_missing(value) or value is None:
            return ""
        return _format(value)

    return _PLACEHOLDER.sub(substitute, template)


def render_value(value: Any, values: Mapping[str, Any]) -> Any:
    """Render strings nested inside dicts and lists."""
    if isinstance(value, str):
        return render(value, values)
    if isinstance(value, Mapping):
        return {key: render_value(item, values) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_value(item, values) for item in value]
    return value


def template_values(
    context: Mapping[str, Any],
    *,
    entity: ExtractedEntity | None = None,
    results: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the placeholder namespace for one action.

    Trigger context keys are available at the top level. Fields of the entity
    being acted on add ``title``, ``start``, ``amount``, ``vendor`` and
    friends, and ``actions.<order>`` exposes earlier action results.
    """
    values: dict[str, Any] = dict(context)
    if results is not None:
        values["actions"] = dict(results)
    if entity is not None:
        values.update(entity_fields(entity))
    return values


def entity_fields(entity: ExtractedEntity) -> dict[str, Any]:
    payload = entity.payload
    fields: dict[str, Any] = {"confidence": entity.confidence}
    if isinstance(payload, CalendarDraft):
        fields["title"] = payload.title
        fields["location"] = payload.location or ""
    if isinstance(payload, CalendarPayload):
        fields["start"] = payload.start
        fields["end"] = payload.end
    if isinstance(payload, TaskPayload):
        fields["title"] = payload.title
        fields["priority"] = payload.priority
        fields["due"] = payload.due_at
    if isinstance(payload, BillPayload):
        fields["vendor"] = payload.vendor
        fields["amount"] = payload.amount
        fields["currency"] = payload.currency
        fields["due"] = payload.due_date
    return fields


def _format(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    if isinstance(value, Decimal):
        return f"{value:,.2f}"
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
