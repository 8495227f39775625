"""Queue payload shapes and their validation.

Queue items carry a provider-neutral payload written by ingestion. Message and
reaction events must carry their correlation fields; the remaining trigger
types pass an optional ``trigger_value`` and a free-form ``context`` map.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

MESSAGE_EVENT = "incoming_message"
REACTION_EVENT = "reaction"
GENERIC_EVENTS = frozenset(["schedule", "entity_change", "manual", "webhook"])

_REQUIRED_FIELDS = {
    MESSAGE_EVENT: ("instance_id", "message_id", "chat_id", "sender_jid"),
    REACTION_EVENT: ("instance_id", "message_id", "chat_id", "reactor_jid", "emoji"),
}


class MalformedEventError(ValueError):
    """Raised when a queue payload lacks the fields needed to correlate it."""


@dataclass(frozen=True)
class TriggerEvent:
    """Validated trigger event handed to rule matching."""

    trigger_type: str
    trigger_value: str | None
    instance_id: str | None
    message_id: str | None = None
    chat_id: str | None = None
    actor_jid: str | None = None
    actor_name: str | None = None
    from_me: bool = False
    content: str | None = None
    message_type: str = "text"
    extra: dict[str, Any] = field(default_factory=dict)


def parse_event(event_type: str, payload: Any) -> TriggerEvent:
    """Validate a queue payload.

    Raises:
        MalformedEventError: If the payload is not a mapping, the event type is
            unknown, or a correlation field is missing.
    """
    if not isinstance(payload, Mapping):
        raise MalformedEventError(f"payload for {event_type} is not an object")

    if event_type in _REQUIRED_FIELDS:
        missing = [name for name in _REQUIRED_FIELDS[event_type] if not _text(payload.get(name))]
        if missing:
            raise MalformedEventError(f"{event_type} payload missing {', '.join(missing)}")

    if event_type == MESSAGE_EVENT:
        return TriggerEvent(
            trigger_type=MESSAGE_EVENT,
            trigger_value=None,
            instance_id=_text(payload["instance_id"]),
            message_id=_text(payload["message_id"]),
            chat_id=_text(payload["chat_id"]),
            actor_jid=_text(payload["sender_jid"]),
            actor_name=_text(payload.get("sender_name")),
            from_me=bool(payload.get("from_me")),
            content=payload.get("content") or "",
            message_type=_text(payload.get("message_type")) or "text",
        )
    if event_type == REACTION_EVENT:
        return TriggerEvent(
            trigger_type=REACTION_EVENT,
            trigger_value=_text(payload["emoji"]),
            instance_id=_text(payload["instance_id"]),
            message_id=_text(payload["message_id"]),
            chat_id=_text(payload["chat_id"]),
            actor_jid=_text(payload["reactor_jid"]),
            actor_name=_text(payload.get("reactor_name")),
            from_me=bool(payload.get("from_me")),
            content=payload.get("content"),
        )
    if event_type in GENERIC_EVENTS:
        context = payload.get("context") or {}
        if not isinstance(context, Mapping):
            raise MalformedEventError(f"{event_type} payload context is not an object")
        return TriggerEvent(
            trigger_type=event_type,
            trigger_value=_text(payload.get("trigger_value")),
            instance_id=_text(payload.get("instance_id")),
            actor_jid=_text(payload.get("actor_jid")),
            content=context.get("content"),
            extra=dict(context),
        )
    raise MalformedEventError(f"unknown event type {event_type!r}")


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
