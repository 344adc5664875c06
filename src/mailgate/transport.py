# mailgate: Email Transport
#
# The engine needs exactly one call from the transport:
#     send(recipient, subject, body) -> bool
# Provider failures come back as False. Delivery retries are the
# provider's business, not the engine's.

import logging
from typing import Optional, Protocol

import httpx

from .storage.notifications import Recipient

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class EmailTransport(Protocol):
    async def send(self, recipient: Recipient, subject: str, body: str) -> bool: ...


class LogTransport:
    """Mock transport: logs instead of sending (real emails disabled)."""

    def __init__(self):
        self.sent = []

    async def send(self, recipient: Recipient, subject: str, body: str) -> bool:
        self.sent.append((recipient, subject, body))
        logger.info("[MOCK] Email to %s: %s", recipient.email, subject)
        return True


class ResendTransport:
    """Sends plain-text mail through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        app_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ValueError("RESEND_API_KEY is required for real email delivery")
        self._api_key = api_key
        self._sender = sender
        self._app_url = app_url
        self._timeout = timeout
        self._transport = transport

    async def send(self, recipient: Recipient, subject: str, body: str) -> bool:
        if not recipient.email or "@" not in recipient.email:
            logger.warning("Invalid email for user %s: %r", recipient.user_id, recipient.email)
            return False

        payload = {
            "from": self._sender,
            "to": recipient.email,
            "subject": subject,
            "text": body,
        }
        if self._app_url:
            payload["headers"] = {
                "List-Unsubscribe": f"<{self._app_url}/settings/notifications>",
                "List-Unsubscribe-Post": "List-Unsubscribe=One-Click",
            }

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(
                    RESEND_API_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
        except httpx.HTTPError as exc:
            logger.error("Failed to send to %s: %s", recipient.email, exc)
            return False

        if resp.status_code >= 400:
            logger.error(
                "Resend rejected email to %s: HTTP %d %s",
                recipient.email,
                resp.status_code,
                resp.text[:200],
            )
            return False
        return True


def build_transport(settings) -> EmailTransport:
    """Pick the transport for the current settings."""
    if settings.enable_real_emails:
        return ResendTransport(settings.resend_api_key, settings.email_from, settings.app_url)
    return LogTransport()
