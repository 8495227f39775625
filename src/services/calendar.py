"""Calendar provider integration (Google Calendar v3 REST shape)."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

import httpx

from config import settings
from services.errors import CollaboratorError, is_retryable_status
from services.http_client import HttpClient, RetryConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalendarEventInput:
    """Provider-agnostic event description."""

    title: str
    start: datetime
    end: datetime
    location: str | None = None
    description: str | None = None
    attendees: tuple[str, ...] = field(default_factory=tuple)
    is_virtual: bool = False
    timezone: str | None = None


class CalendarClient:
    """Client for creating and updating provider calendar events."""

    def __init__(
        self,
        base_url: str | None = None,
        calendar_id: str | None = None,
        access_token: str | None = None,
        http_client: HttpClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.calendar.base_url).rstrip("/")
        self.calendar_id = calendar_id or settings.calendar.calendar_id
        self.access_token = (
            access_token if access_token is not None else settings.calendar.access_token
        )
        self._http = http_client or HttpClient(retry_config=RetryConfig.from_settings())

    def create_event(self, event: CalendarEventInput) -> str:
        """Create an event and return the provider event id.

        Raises:
            CollaboratorError: If the provider rejects the event or is unreachable.
        """
        params = {"conferenceDataVersion": 1} if event.is_virtual else None
        data = self._send("POST", self._events_url(), _event_body(event), params=params)
        provider_id = data.get("id")
        if not provider_id:
            raise CollaboratorError("calendar", "provider response missing event id")
        logger.info("Created calendar event %s (%s)", provider_id, event.title)
        return str(provider_id)

    def update_event(self, provider_event_id: str, event: CalendarEventInput) -> None:
        """Patch an existing provider event."""
        if not provider_event_id:
            raise CollaboratorError("calendar", "provider_event_id is required", retryable=False)
        self._send(
            "PATCH",
            f"{self._events_url()}/{provider_event_id}",
            _event_body(event, include_conference=False),
        )
        logger.info("Updated calendar event %s", provider_event_id)

    def _events_url(self) -> str:
        return f"{self.base_url}/calendars/{self.calendar_id}/events"

    def _send(self, method: str, url: str, body: dict, params: dict | None = None) -> dict:
        if not self.access_token:
            raise CollaboratorError("calendar", "no access token configured", retryable=False)
        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            response = self._http.request(method, url, json=body, headers=headers, params=params)
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            raise CollaboratorError(
                "calendar",
                f"HTTP {status_code} from {method} {url}",
                retryable=is_retryable_status(status_code),
            ) from exc
        except httpx.RequestError as exc:
            raise CollaboratorError("calendar", f"transport error: {exc}") from exc
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


def _event_body(event: CalendarEventInput, *, include_conference: bool = True) -> dict:
    """Build the provider request body for an event."""
    timezone_name = event.timezone or settings.user.timezone
    body: dict = {
        "summary": event.title,
        "start": {"dateTime": event.start.isoformat(), "timeZone": timezone_name},
        "end": {"dateTime": event.end.isoformat(), "timeZone": timezone_name},
    }
    if event.location:
        body["location"] = event.location
    if event.description:
        body["description"] = event.description
    if event.attendees:
        body["attendees"] = [{"email": email} for email in event.attendees if "@" in email]
    if event.is_virtual and include_conference:
        body["conferenceData"] = {
            "createRequest": {
                "requestId": uuid.uuid4().hex,
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }
    return body
