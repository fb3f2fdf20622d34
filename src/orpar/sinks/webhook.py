"""Webhook sink — POSTs each ORPAR event as JSON.

Used when the host wants phase events outside the process (dashboards,
log collectors). Delivery is best effort: a failed POST is logged and
reported as False, never raised.
"""

from __future__ import annotations

import logging
import os

import httpx

from orpar.schemas import OrparEvent

logger = logging.getLogger(__name__)


class WebhookPublisher:
    """Minimal JSON webhook publisher."""

    def __init__(
        self,
        webhook_url: str = "",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._webhook_url = webhook_url or os.environ.get("ORPAR_WEBHOOK_URL", "")
        self._timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._webhook_url)

    async def publish(self, event: OrparEvent) -> None:
        await self.send(event)

    async def send(self, event: OrparEvent) -> bool:
        """POST one event. Returns success."""
        if not self.configured:
            logger.debug("Webhook not configured — skipping %s", event.event_type)
            return False

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport,
            ) as client:
                resp = await client.post(self._webhook_url, json=event.to_payload())
                if resp.status_code >= 400:
                    logger.warning(
                        "Webhook rejected %s: HTTP %d", event.event_type, resp.status_code,
                    )
                    return False
                return True
        except httpx.HTTPError as e:
            logger.warning("Webhook delivery failed for %s: %s", event.event_type, e)
            return False
