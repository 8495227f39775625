"""Messaging transport integration via the Evolution WhatsApp API."""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass

import httpx

from config import settings
from services.errors import CollaboratorError, is_retryable_status
from services.http_client import HttpClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryAck:
    """Provider acknowledgment for an outbound message."""

    target_id: str
    message_id: str | None
    status: str


class MessagingClient:
    """Client for the Evolution API send/receive transport."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        instance: str | None = None,
        http_client: HttpClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.messaging.base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.messaging.api_key
        self.instance = instance or settings.messaging.instance
        self._http = http_client or HttpClient()

    def send_message(self, target_id: str, content: str) -> DeliveryAck:
        """Send a text message to a chat or contact.

        Args:
            target_id: Recipient JID or phone number.
            content: Message body.

        Returns:
            DeliveryAck describing the provider's acceptance of the message.

        Raises:
            CollaboratorError: If the provider rejects the message or is unreachable.
        """
        if not target_id:
            raise CollaboratorError("messaging", "target_id is required", retryable=False)
        if not content or not content.strip():
            raise CollaboratorError("messaging", "content must not be empty", retryable=False)

        data = self._post(
            f"/message/sendText/{self.instance}",
            {"number": _normalize_target(target_id), "text": content},
        )
        key = data.get("key") if isinstance(data.get("key"), dict) else {}
        ack = DeliveryAck(
            target_id=target_id,
            message_id=key.get("id"),
            status=str(data.get("status") or "sent").lower(),
        )
        logger.info("Sent message to %s (id=%s)", target_id, ack.message_id)
        return ack

    def download_media(self, reference: str) -> bytes:
        """Download media for a message reference.

        Provider-issued references expire shortly after the originating event,
        so callers should invoke this as soon as the event is processed.

        Raises:
            CollaboratorError: If the media cannot be fetched or decoded.
        """
        if not reference:
            raise CollaboratorError("messaging", "media reference is required", retryable=False)
        data = self._post(
            f"/chat/getBase64FromMediaMessage/{self.instance}",
            {"message": {"key": {"id": reference}}, "convertToMp4": False},
        )
        encoded = data.get("base64")
        if not encoded:
            raise CollaboratorError(
                "messaging", f"media {reference} is no longer available", retryable=False
            )
        try:
            return base64.b64decode(encoded)
        except (binascii.Error, ValueError) as exc:
            raise CollaboratorError(
                "messaging", f"media {reference} payload is not valid base64", retryable=False
            ) from exc

    def _post(self, path: str, body: dict) -> dict:
        headers = {"apikey": self.api_key} if self.api_key else {}
        try:
            response = self._http.post(f"{self.base_url}{path}", json=body, headers=headers)
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            raise CollaboratorError(
                "messaging",
                f"HTTP {status_code} from {path}",
                retryable=is_retryable_status(status_code),
            ) from exc
        except httpx.RequestError as exc:
            raise CollaboratorError("messaging", f"transport error: {exc}") from exc
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


def _normalize_target(target_id: str) -> str:
    """Strip the individual-chat suffix the transport does not accept."""
    if target_id.endswith("@s.whatsapp.net"):
        return target_id.split("@", 1)[0]
    return target_id
