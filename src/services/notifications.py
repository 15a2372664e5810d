"""Transactional email for billing events.

Sent through the mail service over HTTP after the state change is
committed. A failed email never affects the payment outcome: errors are
logged and dropped.
"""
from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class MailNotifier:
    def __init__(self, service_url: str = "", token: str = "", timeout: float = 8.0):
        self.service_url = service_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    async def _send(self, template: str, to: str | None, context: dict[str, Any]) -> bool:
        if not to:
            logger.warning("No recipient for %s email, skipping", template)
            return False
        if not self.service_url:
            logger.info("Mail service not configured; would send %s to %s", template, to)
            return False

        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.service_url}/send",
                    headers=headers,
                    json={"template": template, "to": to, "context": context},
                )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Failed to send %s email to %s: %s", template, to, e)
            return False
        logger.info("Sent %s email to %s", template, to)
        return True

    async def payment_confirmed(self, to: str | None, details: dict[str, Any]) -> bool:
        return await self._send("subscription_confirmed", to, details)

    async def card_order_confirmed(self, to: str | None, details: dict[str, Any]) -> bool:
        return await self._send("card_order_confirmed", to, details)

    async def subscription_cancelled(self, to: str | None, details: dict[str, Any]) -> bool:
        return await self._send("subscription_cancelled", to, details)
