"""Out-of-band channels that hand one-time codes to customers.

The code travels customer-ward only; the delivery agent's client never
sees it. Three adapters are provided:

- LoggingNotificationChannel: development; keeps an in-memory outbox and
  logs a masked message
- SMTPNotificationChannel: e-mail via smtplib, run in a worker thread
- WebhookNotificationChannel: HMAC-signed JSON POST to an SMS gateway

Any transport failure is raised as NotificationError so the OTP engine can
surface it as an external dependency failure.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import re
import secrets
import smtplib
import ssl
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Protocol

import httpx

from handoff.core.config import NotificationChannelKind

if TYPE_CHECKING:
    from handoff.core.config import NotificationSettings

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"\d")


class NotificationError(Exception):
    """Raised when a channel cannot deliver a message."""


@dataclass(frozen=True, slots=True)
class NotificationAck:
    """Acknowledgement returned by a channel.

    Attributes:
        channel: Channel kind that accepted the message.
        message_id: Transport-level identifier.
        sent_at: When the transport accepted it.
    """

    channel: NotificationChannelKind
    message_id: str
    sent_at: datetime


class NotificationChannel(Protocol):
    """Contract every channel implements."""

    async def send(self, contact: str, message: str) -> NotificationAck: ...


def mask_contact(contact: str) -> str:
    """Keep the first two characters and the domain (if any) for logs."""
    local, sep, domain = contact.partition("@")
    return f"{local[:2]}***{sep}{domain}"


def _new_message_id() -> str:
    return f"msg-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(4)}"


@dataclass
class LoggingNotificationChannel:
    """Development channel; never writes digits to the log."""

    outbox: list[tuple[str, str]] = field(default_factory=list)

    async def send(self, contact: str, message: str) -> NotificationAck:
        self.outbox.append((contact, message))
        message_id = _new_message_id()
        logger.info(
            "Notification queued (log channel): to=%s, message=%s, id=%s",
            mask_contact(contact),
            _DIGITS.sub("*", message),
            message_id,
        )
        return NotificationAck(
            channel=NotificationChannelKind.LOG,
            message_id=message_id,
            sent_at=datetime.now(UTC),
        )


class SMTPNotificationChannel:
    """Sends codes by e-mail."""

    def __init__(self, settings: NotificationSettings) -> None:
        self._settings = settings

    async def send(self, contact: str, message: str) -> NotificationAck:
        message_id = await asyncio.to_thread(self._send_sync, contact, message)
        logger.info("Notification e-mailed: to=%s, id=%s", mask_contact(contact), message_id)
        return NotificationAck(
            channel=NotificationChannelKind.SMTP,
            message_id=message_id,
            sent_at=datetime.now(UTC),
        )

    def _send_sync(self, contact: str, message: str) -> str:
        settings = self._settings
        domain = settings.from_address.partition("@")[2] or "handoff.local"
        message_id = f"<{secrets.token_hex(16)}@{domain}>"

        mime = MIMEText(message, "plain", "utf-8")
        mime["Subject"] = "Your verification code"
        mime["From"] = settings.from_address
        mime["To"] = contact
        mime["Message-ID"] = message_id

        try:
            server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=settings.timeout)
            try:
                if settings.smtp_use_tls:
                    server.starttls(context=ssl.create_default_context())
                if settings.smtp_username and settings.smtp_password:
                    server.login(
                        settings.smtp_username,
                        settings.smtp_password.get_secret_value(),
                    )
                server.sendmail(settings.from_address, [contact], mime.as_string())
            finally:
                server.quit()
        except smtplib.SMTPException as e:
            msg = f"SMTP error: {e}"
            raise NotificationError(msg) from e
        except OSError as e:
            msg = f"Connection error: {e}"
            raise NotificationError(msg) from e

        return message_id


def compute_signature(payload: bytes, secret: str) -> str:
    """HMAC-SHA256 signature header value for a request body."""
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookNotificationChannel:
    """Posts codes to an SMS gateway."""

    def __init__(
        self,
        settings: NotificationSettings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=float(self._settings.timeout))
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(self, contact: str, message: str) -> NotificationAck:
        message_id = _new_message_id()
        payload = json.dumps({"id": message_id, "to": contact, "body": message}).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-Message-ID": message_id}
        secret = self._settings.webhook_secret.get_secret_value()
        if secret:
            headers["X-Signature-SHA256"] = compute_signature(payload, secret)

        client = await self._get_client()
        try:
            response = await client.post(self._settings.webhook_url, content=payload, headers=headers)
        except httpx.RequestError as e:
            msg = f"Webhook request failed: {e}"
            raise NotificationError(msg) from e

        if not response.is_success:
            msg = f"Webhook returned status {response.status_code}"
            raise NotificationError(msg)

        logger.info(
            "Notification sent via webhook: to=%s, id=%s, status=%d",
            mask_contact(contact),
            message_id,
            response.status_code,
        )
        return NotificationAck(
            channel=NotificationChannelKind.WEBHOOK,
            message_id=message_id,
            sent_at=datetime.now(UTC),
        )


def build_notification_channel(settings: NotificationSettings) -> NotificationChannel:
    """Instantiate the channel selected by configuration."""
    if settings.channel == NotificationChannelKind.SMTP:
        return SMTPNotificationChannel(settings)
    if settings.channel == NotificationChannelKind.WEBHOOK:
        return WebhookNotificationChannel(settings)
    return LoggingNotificationChannel()
