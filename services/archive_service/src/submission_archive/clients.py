from __future__ import annotations

import logging
from typing import Protocol, Sequence

import httpx

from .errors import ServiceUnavailable

logger = logging.getLogger(__name__)


class NotificationSender(Protocol):
    def send(
        self,
        recipients: Sequence[str],
        subject: str,
        html_body: str,
        reply_to: Sequence[str] | None = None,
    ) -> None: ...


class HttpNotificationSender:
    """Posts rendered emails to a mail relay over HTTP."""

    def __init__(self, relay_url: str, source_email: str, timeout: float = 10.0, transport: httpx.BaseTransport | None = None):
        self.relay_url = relay_url.rstrip("/")
        self.source_email = source_email
        self.timeout = timeout
        self._transport = transport

    def send(
        self,
        recipients: Sequence[str],
        subject: str,
        html_body: str,
        reply_to: Sequence[str] | None = None,
    ) -> None:
        url = f"{self.relay_url}/messages"
        payload = {
            "source": self.source_email,
            "to": list(recipients),
            "replyTo": list(reply_to or []),
            "subject": subject,
            "html": html_body,
            "charset": "UTF-8",
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(url, json=payload)
            resp.raise_for_status()
        except (httpx.ConnectError, httpx.ReadTimeout) as e:
            raise ServiceUnavailable(f"Mail relay unavailable: {e}")
        except httpx.HTTPStatusError as e:
            raise RuntimeError(f"Mail relay error {e.response.status_code}: {e.response.text}")


class LoggingNotificationSender:
    """Used when no mail relay is configured; records what would have been sent."""

    def send(
        self,
        recipients: Sequence[str],
        subject: str,
        html_body: str,
        reply_to: Sequence[str] | None = None,
    ) -> None:
        logger.info("Mail relay not configured, dropping email", extra={"recipients": list(recipients), "subject": subject})
