"""Unit tests for webhook ingestion and queue payload parsing."""

from __future__ import annotations

import pytest

from action_queue import ActionQueue
from config import settings
from models import Contact, Group, Message, QueueItem, Reaction
from processing.events import MESSAGE_EVENT, REACTION_EVENT, MalformedEventError, parse_event
from processing.ingest import ingest_event
from processing.media import MediaArchiver
from services.storage import Storage

OWNER = "5215550001111@s.whatsapp.net"
SENDER = "5215559998888@s.whatsapp.net"


@pytest.fixture
def storage(sqlite_session_factory) -> Storage:
    """Return storage bound to the test database."""
    return Storage(sqlite_session_factory)


@pytest.fixture
def queue(sqlite_session_factory) -> ActionQueue:
    """Return a queue bound to the test database."""
    return ActionQueue(sqlite_session_factory, default_max_attempts=3)


@pytest.fixture
def ingest(storage, queue):
    """Return ingest_event bound to the test collaborators."""

    def _ingest(body):
        return ingest_event(body, storage=storage, queue=queue)

    return _ingest


def _message_body(message_id: str = "MSG-1", text: str = "Nos vemos hoy a las 3 pm", **key) -> dict:
    return {
        "event": "messages.upsert",
        "instance": "main",
        "data": {
            "key": {"id": message_id, "remoteJid": SENDER, "fromMe": False, **key},
            "message": {"conversation": text},
            "pushName": "Ana",
            "messageTimestamp": 1748790000,
        },
    }


def _reaction_body(emoji: str = "📅", reactor: str = SENDER, from_me: bool = False) -> dict:
    return {
        "event": "MESSAGES_UPSERT",
        "instance": "main",
        "data": {
            "key": {"id": "REACT-1", "remoteJid": reactor, "fromMe": from_me},
            "message": {
                "reactionMessage": {"key": {"id": "MSG-1", "remoteJid": SENDER}, "text": emoji}
            },
            "messageTimestamp": 1748790060,
        },
    }


def test_new_message_is_stored_and_queued(ingest, queue, count_rows) -> None:
    """A first-seen message is persisted and enqueued."""
    ack = ingest(_message_body())

    assert ack["status"] == "queued"
    assert ack["message_id"] == "MSG-1"
    item = queue.get(ack["queue_item_id"])
    assert item.event_type == MESSAGE_EVENT
    assert item.payload["content"] == "Nos vemos hoy a las 3 pm"
    assert item.payload["sender_jid"] == SENDER
    assert item.payload["sender_name"] == "Ana"
    assert count_rows(Message) == 1


def test_redelivered_message_is_duplicate(ingest, count_rows) -> None:
    """Re-delivery neither duplicates the row nor enqueues again."""
    ingest(_message_body())
    ack = ingest(_message_body())

    assert ack["status"] == "duplicate"
    assert count_rows(Message) == 1
    assert count_rows(QueueItem) == 1


def test_group_message_uses_participant_as_sender(ingest, queue) -> None:
    """In groups the participant is the sender, not the chat."""
    body = _message_body(remoteJid="120363@g.us", participant=SENDER)
    ack = ingest(body)

    payload = queue.get(ack["queue_item_id"]).payload
    assert payload["chat_id"] == "120363@g.us"
    assert payload["sender_jid"] == SENDER


def test_own_message_uses_instance_owner(ingest, queue, monkeypatch) -> None:
    """Messages sent by the account resolve to the instance owner."""
    monkeypatch.setattr(settings.messaging, "instance_owners", {"main": OWNER})
    ack = ingest(_message_body(fromMe=True))

    payload = queue.get(ack["queue_item_id"]).payload
    assert payload["sender_jid"] == OWNER
    assert payload["from_me"] is True


def test_media_message_uses_caption(ingest, storage) -> None:
    """Media messages store their caption and reference."""
    body = _message_body()
    body["data"]["message"] = {"imageMessage": {"caption": "Factura luz", "url": "https://media/1"}}
    ingest(body)

    stored = storage.get_message("MSG-1", "main")
    assert stored.content == "Factura luz"
    assert stored.message_type == "image"
    assert stored.media_reference == "https://media/1"


def _voice_note(message_id: str = "MSG-9") -> dict:
    body = _message_body(message_id)
    body["data"]["message"] = {
        "audioMessage": {"url": "https://media/9", "mimetype": "audio/ogg; codecs=opus"}
    }
    return body


def test_media_is_downloaded_on_ingest(storage, queue, messaging, tmp_path) -> None:
    """New media messages are fetched immediately and the saved path is stored."""
    messaging.media["MSG-9"] = b"OggS-voice"
    archiver = MediaArchiver(messaging, tmp_path, storage)

    ack = ingest_event(_voice_note(), storage=storage, queue=queue, media=archiver)

    saved = tmp_path / "main" / "MSG-9.ogg"
    assert ack["status"] == "queued"
    assert ack["media_path"] == str(saved)
    assert saved.read_bytes() == b"OggS-voice"
    assert storage.get_message("MSG-9", "main").media_path == str(saved)

    assert ingest_event(_voice_note(), storage=storage, queue=queue, media=archiver)["status"] == "duplicate"
    assert messaging.downloads == ["MSG-9"]


def test_expired_media_still_acknowledges(storage, queue, messaging, tmp_path) -> None:
    """A failed download is logged and the message is still queued."""
    ack = ingest_event(
        _voice_note(), storage=storage, queue=queue, media=MediaArchiver(messaging, tmp_path, storage)
    )

    assert ack["status"] == "queued"
    assert ack["media_path"] is None
    assert storage.get_message("MSG-9", "main").media_path is None
    assert queue.get(ack["queue_item_id"]).status == "pending"


def test_text_messages_skip_media_download(storage, queue, messaging, tmp_path) -> None:
    """Only messages carrying a media reference are downloaded."""
    ack = ingest_event(
        _message_body(), storage=storage, queue=queue, media=MediaArchiver(messaging, tmp_path, storage)
    )

    assert "media_path" not in ack
    assert messaging.downloads == []


def test_reaction_lifecycle(ingest, queue, count_rows) -> None:
    """New and changed reactions enqueue; repeats and removals do not."""
    first = ingest(_reaction_body("📅"))
    repeat = ingest(_reaction_body("📅"))
    changed = ingest(_reaction_body("✅"))
    removed = ingest(_reaction_body(""))

    assert first["status"] == "queued"
    assert queue.get(first["queue_item_id"]).event_type == REACTION_EVENT
    assert queue.get(first["queue_item_id"]).payload["emoji"] == "📅"
    assert repeat["status"] == "duplicate"
    assert changed["status"] == "queued"
    assert removed["status"] == "stored"
    assert count_rows(Reaction) == 1
    assert count_rows(QueueItem) == 2


def test_contacts_and_groups_are_stored(ingest, count_rows) -> None:
    """Contact and group events are upserted without enqueuing."""
    contacts = ingest(
        {
            "event": "contacts.upsert",
            "instance": "main",
            "data": [
                {"id": SENDER, "pushName": "Ana", "isMyContact": True},
                {"id": "5210000000000@s.whatsapp.net", "pushName": "Luis"},
            ],
        }
    )
    group = ingest(
        {
            "event": "groups.upsert",
            "instance": "main",
            "data": {"id": "120363@g.us", "subject": "Familia", "participants": [{}, {}, {}]},
        }
    )

    assert contacts["status"] == "stored"
    assert len(contacts["items"]) == 2
    assert group["status"] == "stored"
    assert count_rows(Contact) == 2
    assert count_rows(Group) == 1
    assert count_rows(QueueItem) == 0


@pytest.mark.parametrize(
    "body",
    [
        "not an object",
        {"instance": "main", "data": {}},
        {"event": "messages.upsert", "data": {}},
        {"event": "messages.upsert", "instance": "main", "data": {"key": {"remoteJid": SENDER}}},
        {"event": "messages.upsert", "instance": "main", "data": "nope"},
    ],
)
def test_malformed_bodies_are_rejected(ingest, body) -> None:
    """Shape errors produce a rejected acknowledgment."""
    assert ingest(body)["status"] == "rejected"


def test_unhandled_event_is_ignored(ingest) -> None:
    """Events outside the handled set are acknowledged and dropped."""
    assert ingest({"event": "presence.update", "instance": "main", "data": {}})["status"] == "ignored"


class ExplodingStorage:
    """Storage stub failing every write."""

    def upsert_message(self, values):
        """Fail the write."""
        raise RuntimeError("database is gone")


def test_unexpected_failures_are_acknowledged(queue) -> None:
    """Internal failures still return an acknowledgment."""
    ack = ingest_event(_message_body(), storage=ExplodingStorage(), queue=queue)

    assert ack["status"] == "error"
    assert "database is gone" in ack["reason"]


def test_parse_message_event() -> None:
    """Message payloads map to trigger events."""
    event = parse_event(
        MESSAGE_EVENT,
        {
            "instance_id": "main",
            "message_id": "MSG-1",
            "chat_id": SENDER,
            "sender_jid": SENDER,
            "content": "hola",
        },
    )

    assert event.trigger_type == MESSAGE_EVENT
    assert event.trigger_value is None
    assert event.actor_jid == SENDER
    assert event.content == "hola"


def test_parse_reaction_event_uses_emoji_as_value() -> None:
    """Reaction payloads carry the emoji as trigger value."""
    event = parse_event(
        REACTION_EVENT,
        {
            "instance_id": "main",
            "message_id": "MSG-1",
            "chat_id": SENDER,
            "reactor_jid": SENDER,
            "emoji": "📅",
        },
    )

    assert event.trigger_value == "📅"
    assert event.content is None


def test_parse_generic_event_keeps_context() -> None:
    """Generic trigger types pass their context through."""
    event = parse_event("manual", {"trigger_value": "run", "context": {"content": "hola", "x": 1}})

    assert event.trigger_value == "run"
    assert event.content == "hola"
    assert event.extra == {"content": "hola", "x": 1}


@pytest.mark.parametrize(
    ("event_type", "payload", "fragment"),
    [
        (MESSAGE_EVENT, ["not", "a", "map"], "not an object"),
        (MESSAGE_EVENT, {"instance_id": "main", "message_id": "MSG-1"}, "chat_id"),
        (REACTION_EVENT, {"instance_id": "main", "message_id": "M", "chat_id": "c", "reactor_jid": "r"}, "emoji"),
        ("manual", {"context": "text"}, "context"),
        ("telepathy", {}, "unknown event type"),
    ],
)
def test_parse_event_rejects_malformed_payloads(event_type, payload, fragment) -> None:
    """Missing correlation fields raise MalformedEventError."""
    with pytest.raises(MalformedEventError, match=fragment):
        parse_event(event_type, payload)
