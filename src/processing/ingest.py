"""Webhook front door: validate, store, enqueue, acknowledge.

``ingest_event`` takes one Evolution API webhook body, upserts the provider
entities it carries on their natural keys, and enqueues a queue item only for
messages and reactions seen for the first time. It always returns an
acknowledgment and never raises, since the provider must get its response
regardless of what happens downstream.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from action_queue import ActionQueue
from config import settings
from processing.events import MESSAGE_EVENT, REACTION_EVENT
from processing.media import MediaArchiver
from services.storage import Storage

logger = logging.getLogger(__name__)

_STATUS_RANK = {"queued": 4, "duplicate": 3, "stored": 2, "ignored": 1}

_MEDIA_TYPES = (
    ("imageMessage", "image", "[Image]"),
    ("videoMessage", "video", "[Video]"),
    ("audioMessage", "audio", "[Audio]"),
    ("documentMessage", "document", "[Document]"),
    ("stickerMessage", "sticker", "[Sticker]"),
)


class IngestRejected(ValueError):
    """Raised internally when a webhook body fails shape validation."""


def ingest_event(
    body: Any,
    *,
    storage: Storage | None = None,
    queue: ActionQueue | None = None,
    media: MediaArchiver | None = None,
) -> dict[str, Any]:
    """Process one webhook body and return an acknowledgment.

    Ack statuses: ``queued`` (new trigger enqueued), ``duplicate`` (already
    seen), ``stored`` (persisted, nothing to trigger), ``ignored`` (event type
    not handled), ``rejected`` (malformed body) and ``error`` (unexpected
    failure, logged).
    """
    event_type = None
    try:
        if not isinstance(body, Mapping):
            raise IngestRejected("webhook body is not an object")
        event_type = _normalize_event_type(body.get("event"))
        instance_id = _text(body.get("instance") or body.get("instance_id"))
        if not event_type:
            raise IngestRejected("webhook body has no event type")
        if not instance_id:
            raise IngestRejected("webhook body has no instance")

        storage = storage or Storage()
        media = media if media is not None else MediaArchiver.from_settings(storage)
        ingestor = _Ingestor(storage, queue or ActionQueue(), instance_id, body, media)
        acks = ingestor.dispatch(event_type, body.get("data"))
    except IngestRejected as exc:
        logger.warning("Rejected webhook %s: %s", event_type, exc)
        return {"status": "rejected", "event": event_type, "reason": str(exc)}
    except Exception as exc:  # noqa: BLE001
        logger.exception("Webhook %s could not be ingested", event_type)
        return {"status": "error", "event": event_type, "reason": f"{type(exc).__name__}: {exc}"}

    if not acks:
        return {"status": "ignored", "event": event_type}
    if len(acks) == 1:
        return {"event": event_type, **acks[0]}
    status = max((ack["status"] for ack in acks), key=lambda value: _STATUS_RANK.get(value, 0))
    return {"status": status, "event": event_type, "items": acks}


class _Ingestor:
    def __init__(
        self,
        storage: Storage,
        queue: ActionQueue,
        instance_id: str,
        body: Mapping[str, Any],
        media: MediaArchiver | None = None,
    ):
        self.storage = storage
        self.media = media
        self.queue = queue
        self.instance_id = instance_id
        self.body = body

    def dispatch(self, event_type: str, data: Any) -> list[dict[str, Any]]:
        if event_type == "messages.upsert":
            acks = []
            for record in _records(data, "messages"):
                message = record.get("message") or {}
                if isinstance(message, Mapping) and message.get("reactionMessage"):
                    acks.append(self.reaction(record))
                else:
                    acks.append(self.message(record))
            return acks
        if event_type == "messages.update":
            acks = []
            for record in _records(data, "updates"):
                message = record.get("message") or {}
                if isinstance(message, Mapping) and message.get("reactionMessage"):
                    acks.append(self.reaction(record))
            return acks
        if event_type in ("contacts.upsert", "contacts.update"):
            return [self.contact(record) for record in _records(data, "contacts")]
        if event_type in ("groups.upsert", "groups.update"):
            return [self.group(record) for record in _records(data, "groups")]
        logger.debug("Ignoring webhook event %s", event_type)
        return []

    def message(self, record: Mapping[str, Any]) -> dict[str, Any]:
        key = _mapping(record.get("key"), "message key")
        message_id = _text(key.get("id"))
        chat_id = _text(key.get("remoteJid"))
        if not message_id or not chat_id:
            raise IngestRejected("message key needs id and remoteJid")
        from_me = bool(key.get("fromMe"))
        sender_jid = self._actor_jid(key, from_me)
        content, message_type, media_reference, quoted = _message_content(record.get("message"))

        result = self.storage.upsert_message(
            {
                "message_id": message_id,
                "instance_id": self.instance_id,
                "chat_id": chat_id,
                "sender_jid": sender_jid,
                "from_me": from_me,
                "content": content,
                "message_type": message_type,
                "media_reference": media_reference,
                "quoted_message_id": quoted,
                "sent_at": _timestamp(record.get("messageTimestamp")),
            }
        )
        if not result.created:
            return {"status": "duplicate", "message_id": message_id}

        item_id = self.queue.enqueue(
            MESSAGE_EVENT,
            {
                "instance_id": self.instance_id,
                "message_id": message_id,
                "chat_id": chat_id,
                "sender_jid": sender_jid,
                "sender_name": _text(record.get("pushName")),
                "from_me": from_me,
                "content": content,
                "message_type": message_type,
            },
        )
        ack = {"status": "queued", "message_id": message_id, "queue_item_id": item_id}
        if self.media is not None and media_reference:
            ack["media_path"] = self._archive_media(message_id, _media_mimetype(record.get("message")))
        return ack

    def _archive_media(self, message_id: str, mimetype: str | None) -> str | None:
        try:
            return self.media.archive(self.instance_id, message_id, mimetype)
        except Exception:  # noqa: BLE001
            logger.exception("Media archiving failed for message %s", message_id)
            return None

    def reaction(self, record: Mapping[str, Any]) -> dict[str, Any]:
        key = _mapping(record.get("key"), "reaction key")
        reaction = _mapping(_mapping(record.get("message"), "message").get("reactionMessage"), "reaction")
        target = _mapping(reaction.get("key"), "reaction target")
        message_id = _text(target.get("id"))
        chat_id = _text(target.get("remoteJid")) or _text(key.get("remoteJid"))
        if not message_id or not chat_id:
            raise IngestRejected("reaction target needs id and remoteJid")
        from_me = bool(key.get("fromMe"))
        reactor_jid = self._actor_jid(key, from_me)
        if not reactor_jid:
            raise IngestRejected("reaction has no reactor")
        emoji = reaction.get("text") or ""

        result = self.storage.upsert_reaction(
            {
                "message_id": message_id,
                "instance_id": self.instance_id,
                "reactor_jid": reactor_jid,
                "emoji": emoji,
                "from_me": from_me,
                "reacted_at": _timestamp(record.get("messageTimestamp")) or datetime.now(timezone.utc),
            }
        )
        if not emoji:
            return {"status": "stored", "message_id": message_id, "reason": "reaction removed"}
        if not result.created and "emoji" not in result.changed:
            return {"status": "duplicate", "message_id": message_id}

        item_id = self.queue.enqueue(
            REACTION_EVENT,
            {
                "instance_id": self.instance_id,
                "message_id": message_id,
                "chat_id": chat_id,
                "reactor_jid": reactor_jid,
                "reactor_name": _text(record.get("pushName")),
                "emoji": emoji,
                "from_me": from_me,
            },
        )
        return {"status": "queued", "message_id": message_id, "queue_item_id": item_id}

    def contact(self, record: Mapping[str, Any]) -> dict[str, Any]:
        jid = _text(record.get("id") or record.get("remoteJid"))
        if not jid:
            raise IngestRejected("contact has no id")
        values: dict[str, Any] = {
            "jid": jid,
            "instance_id": self.instance_id,
            "push_name": _text(record.get("pushName") or record.get("name")),
            "updated_at": datetime.now(timezone.utc),
        }
        if "isMyContact" in record:
            values["is_my_contact"] = bool(record.get("isMyContact"))
        self.storage.upsert_contact(values)
        return {"status": "stored", "jid": jid}

    def group(self, record: Mapping[str, Any]) -> dict[str, Any]:
        group_jid = _text(record.get("id") or record.get("remoteJid"))
        if not group_jid:
            raise IngestRejected("group has no id")
        participants = record.get("participants")
        size = record.get("size")
        if size is None and isinstance(participants, list):
            size = len(participants)
        self.storage.upsert_group(
            {
                "group_jid": group_jid,
                "instance_id": self.instance_id,
                "subject": _text(record.get("subject") or record.get("name")),
                "owner_jid": _text(record.get("owner")),
                "participant_count": size,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        return {"status": "stored", "group_jid": group_jid}

    def _actor_jid(self, key: Mapping[str, Any], from_me: bool) -> str | None:
        if from_me:
            owner = settings.messaging.instance_owners.get(self.instance_id)
            return owner or _text(self.body.get("sender")) or self.instance_id
        return _text(key.get("participant")) or _text(key.get("remoteJid"))


def _normalize_event_type(value: Any) -> str | None:
    text = _text(value)
    if text is None:
        return None
    return text.lower().replace("_", ".")


def _records(data: Any, list_key: str) -> list[Mapping[str, Any]]:
    """Return the records in ``data``, which may be one object, a list, or wrapped."""
    if isinstance(data, Mapping) and isinstance(data.get(list_key), list):
        data = data[list_key]
    if isinstance(data, Mapping):
        return [data]
    if isinstance(data, list):
        return [record for record in data if isinstance(record, Mapping)]
    raise IngestRejected("webhook data is not an object or list")


def _mapping(value: Any, name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise IngestRejected(f"{name} is missing or not an object")
    return value


def _message_content(message: Any) -> tuple[str, str, str | None, str | None]:
    """Return (content, message_type, media_reference, quoted_message_id)."""
    if not isinstance(message, Mapping):
        return "", "unsupported", None, None
    if message.get("conversation"):
        return str(message["conversation"]), "text", None, None

    extended = message.get("extendedTextMessage")
    if isinstance(extended, Mapping) and extended.get("text"):
        context_info = extended.get("contextInfo") or {}
        quoted = _text(context_info.get("stanzaId")) if isinstance(context_info, Mapping) else None
        return str(extended["text"]), "text", None, quoted

    for field_name, message_type, placeholder in _MEDIA_TYPES:
        media = message.get(field_name)
        if isinstance(media, Mapping):
            caption = media.get("caption")
            return (
                str(caption) if caption else placeholder,
                message_type,
                _text(media.get("url") or media.get("directPath")),
                None,
            )

    location = message.get("locationMessage")
    if isinstance(location, Mapping):
        return f"[Location: {location.get('name') or 'Unknown location'}]", "location", None, None
    contact = message.get("contactMessage")
    if isinstance(contact, Mapping):
        return f"[Contact: {contact.get('displayName') or 'Unknown contact'}]", "contact_card", None, None
    return "[Unsupported message type]", "unsupported", None, None


def _media_mimetype(message: Any) -> str | None:
    if not isinstance(message, Mapping):
        return None
    for field_name, _message_type, _placeholder in _MEDIA_TYPES:
        media = message.get(field_name)
        if isinstance(media, Mapping):
            return _text(media.get("mimetype"))
    return None


def _timestamp(value: Any) -> datetime | None:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
