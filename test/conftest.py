"""Pytest configuration for relay test suite."""

import os
import sys
from contextlib import closing
from pathlib import Path


def _ensure_test_env() -> None:
    """Seed required environment variables for tests."""
    os.environ.setdefault("USER_TIMEZONE", "America/Mexico_City")
    os.environ.setdefault("EVOLUTION_API_URL", "http://evolution.test")
    os.environ.setdefault("EVOLUTION_INSTANCE", "relay-test")
    os.environ.setdefault("CALENDAR_BASE_URL", "http://calendar.test/v3")
    os.environ.setdefault("RELAY_WORKERS", "2")
    os.environ.setdefault("LOG_LEVEL", "DEBUG")


_ensure_test_env()

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from models import Base  # noqa: E402
from services.errors import CollaboratorError  # noqa: E402
from services.messaging import DeliveryAck  # noqa: E402


@pytest.fixture
def sqlite_session_factory(tmp_path):
    """Return a session factory bound to a fresh file-backed SQLite database."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'relay-test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def count_rows(sqlite_session_factory):
    """Return a helper counting rows of a model."""

    def _count(model) -> int:
        with closing(sqlite_session_factory()) as session:
            return session.query(model).count()

    return _count


class RecordingMessaging:
    """Messaging stub that records every send and can be told to fail."""

    def __init__(self, failures: int = 0, retryable: bool = True) -> None:
        self.sent: list[tuple[str, str]] = []
        self.failures = failures
        self.retryable = retryable
        self.calls = 0
        self.media: dict[str, bytes] = {}
        self.downloads: list[str] = []

    def send_message(self, target_id: str, content: str) -> DeliveryAck:
        """Record the message, raising while configured failures remain."""
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise CollaboratorError("messaging", "provider unavailable", retryable=self.retryable)
        self.sent.append((target_id, content))
        return DeliveryAck(target_id=target_id, message_id=f"out-{len(self.sent)}", status="sent")

    def download_media(self, reference: str) -> bytes:
        """Return media registered under the reference, or fail as expired."""
        self.downloads.append(reference)
        if reference not in self.media:
            raise CollaboratorError("messaging", f"media {reference} is no longer available", retryable=False)
        return self.media[reference]


class RecordingCalendar:
    """Calendar stub returning sequential provider ids."""

    def __init__(self, fail: bool = False) -> None:
        self.created: list = []
        self.updated: list = []
        self.fail = fail

    def create_event(self, event) -> str:
        """Record the event and return a provider id."""
        if self.fail:
            raise CollaboratorError("calendar", "calendar unavailable")
        self.created.append(event)
        return f"gcal-{len(self.created)}"

    def update_event(self, provider_event_id: str, event) -> None:
        """Record the update."""
        self.updated.append((provider_event_id, event))


class RecordingEmail:
    """Email stub that records outgoing mail."""

    def __init__(self) -> None:
        self.sent: list[tuple[list[str], str, str]] = []

    def send(self, to: list[str], subject: str, body: str) -> None:
        """Record the mail."""
        self.sent.append((list(to), subject, body))


@pytest.fixture
def messaging() -> RecordingMessaging:
    """Return a recording messaging transport."""
    return RecordingMessaging()


@pytest.fixture
def calendar() -> RecordingCalendar:
    """Return a recording calendar provider."""
    return RecordingCalendar()


@pytest.fixture
def email() -> RecordingEmail:
    """Return a recording email sender."""
    return RecordingEmail()


@pytest.fixture
def fast_retries(monkeypatch):
    """Make executor retry backoff instantaneous."""
    from config import settings

    monkeypatch.setattr(settings.executor, "backoff_strategy", "none")
    monkeypatch.setattr(settings.executor, "backoff_base_seconds", 0.0)
    return settings.executor
