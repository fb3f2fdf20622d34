"""Publisher protocol + factory — decouples the state machine from transport.

Publisher is a Protocol: any class with an async ``publish(event)`` can
receive ORPAR events. Factory creates publishers by name.
"""

from __future__ import annotations

import logging
from typing import Protocol

from orpar.schemas import OrparEvent

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    """Protocol for outward event sinks — publish only, no replies."""

    async def publish(self, event: OrparEvent) -> None:
        """Deliver one event. Errors may propagate; callers isolate them."""
        ...


class NullPublisher:
    """Drops every event."""

    async def publish(self, event: OrparEvent) -> None:
        logger.debug("Dropping %s (null publisher)", event.event_type)


def create_publisher(
    name: str,
    bus: Publisher | None = None,
    webhook_url: str = "",
    timeout: float = 5.0,
) -> Publisher:
    """Factory: create a Publisher by name."""
    if name == "bus":
        if bus is None:
            raise ValueError("The 'bus' publisher needs an EventBus")
        return bus
    elif name == "webhook":
        from orpar.sinks.webhook import WebhookPublisher
        return WebhookPublisher(webhook_url=webhook_url, timeout=timeout)
    elif name == "null":
        return NullPublisher()
    else:
        raise ValueError(
            f"Unknown publisher: {name}. "
            f"Available: bus, webhook, null"
        )
