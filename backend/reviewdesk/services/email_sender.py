"""
Outbound e-mail over the Resend HTTP API.

Env:
  RESEND_API_KEY, EMAIL_FROM

Senders raise on failure; callers decide whether a failure matters.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class EmailSender(ABC):
    @abstractmethod
    async def send(self, to: list[str], subject: str, html: str) -> None:
        ...


class ResendEmailSender(EmailSender):
    def __init__(
        self,
        api_key: str,
        sender: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self._transport = transport

    async def send(self, to: list[str], subject: str, html: str) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            r = await client.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "from": self.sender,
                    "to": to,
                    "subject": subject,
                    "html": html,
                },
            )
        if r.status_code >= 400:
            raise RuntimeError(f"Resend API {r.status_code}: {r.text[:200]}")


class LogOnlyEmailSender(EmailSender):
    """Used when no e-mail provider is configured."""

    async def send(self, to: list[str], subject: str, html: str) -> None:
        logger.info("[email] provider not configured, dropping '%s' to %s", subject, ", ".join(to))
