"""
Transactional email transport (Resend-compatible REST API).

Retries transport errors, 429 and 5xx with exponential backoff; 4xx replies
are final. Every failure surfaces as ``EmailDeliveryError``.
"""

from __future__ import annotations

import asyncio

import httpx
import structlog

from app.core.config import Settings
from app.core.errors import EmailDeliveryError

log = structlog.get_logger()

MAX_RETRIES = 3
RETRY_BASE_SECONDS = 0.5


class Mailer:
    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
        retry_base_seconds: float = RETRY_BASE_SECONDS,
    ):
        self._settings = settings
        self._client = http_client
        self._owns_client = http_client is None
        self._retry_base_seconds = retry_base_seconds

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(20.0))

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        sender: str | None = None,
    ) -> str | None:
        """Send one message; returns the provider's message id."""
        if not self._settings.email_api_key:
            raise EmailDeliveryError("Email provider is not configured")
        if self._client is None:
            await self.open()
        assert self._client

        body = {
            "from": sender or self._settings.email_from,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        headers = {"Authorization": f"Bearer {self._settings.email_api_key}"}

        last_error = ""
        for attempt in range(MAX_RETRIES):
            try:
                resp = await self._client.post(self._settings.email_api_url, json=body, headers=headers)
            except httpx.TransportError as exc:
                last_error = str(exc)
            else:
                if resp.status_code == 429 or resp.status_code >= 500:
                    last_error = f"status {resp.status_code}"
                elif resp.is_error:
                    log.error("mailer.rejected", status=resp.status_code, subject=subject)
                    raise EmailDeliveryError()
                else:
                    message_id = resp.json().get("id")
                    log.info("mailer.sent", message_id=message_id, subject=subject)
                    return message_id

            if attempt < MAX_RETRIES - 1:
                backoff = self._retry_base_seconds * (2 ** attempt)
                log.warning("mailer.retry", attempt=attempt + 1, backoff=backoff, error=last_error)
                await asyncio.sleep(backoff)

        log.error("mailer.failed", subject=subject, error=last_error)
        raise EmailDeliveryError()
