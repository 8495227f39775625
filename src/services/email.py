"""SMTP delivery for the send_email action."""

from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage

from config import settings
from services.errors import CollaboratorError

logger = logging.getLogger(__name__)


class EmailSender:
    """Send plain-text email through the configured SMTP relay."""

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        username: str | None = None,
        password: str | None = None,
        from_address: str | None = None,
        use_tls: bool | None = None,
        timeout: float | None = None,
    ) -> None:
        config = settings.email
        self.host = host or config.host
        self.port = port or config.port
        self.username = username if username is not None else config.username
        self.password = password if password is not None else config.password
        self.from_address = from_address or config.from_address or self.username
        self.use_tls = config.use_tls if use_tls is None else use_tls
        self.timeout = timeout if timeout is not None else settings.http.timeout

    def send(self, to: list[str], subject: str, body: str) -> None:
        """Send a message to one or more recipients.

        Raises:
            CollaboratorError: If SMTP is not configured or delivery fails.
        """
        if not self.host:
            raise CollaboratorError("email", "no SMTP host configured", retryable=False)
        if not to:
            raise CollaboratorError("email", "at least one recipient is required", retryable=False)

        message = EmailMessage()
        message["From"] = self.from_address or ""
        message["To"] = ", ".join(to)
        message["Subject"] = subject
        message.set_content(body)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(message)
        except smtplib.SMTPRecipientsRefused as exc:
            raise CollaboratorError("email", f"recipients refused: {exc}", retryable=False) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise CollaboratorError("email", f"delivery failed: {exc}") from exc
        logger.info("Sent email to %s", ", ".join(to))
