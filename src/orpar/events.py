"""In-process event bus + ORPAR event names.

Subscribers register per event type. Handlers may be plain callables or
coroutine functions; a failing handler is logged and never stops the
others from running.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

from orpar.schemas import OrparEvent, Phase

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None] | None]


class OrparEvents:
    """Outward ORPAR event types, one per phase."""
    OBSERVE = "orpar:observe"
    REASON = "orpar:reason"
    PLAN = "orpar:plan"
    ACT = "orpar:act"
    REFLECT = "orpar:reflect"
    CLEAR_STATE = "orpar:clear_state"

    @classmethod
    def for_phase(cls, phase: Phase) -> str:
        return f"orpar:{phase.value}"


class AgentEvents:
    """Agent lifecycle signals consumed by the cleanup listeners."""
    DISCONNECTED = "agent:disconnected"


class EventBus:
    """Publish/subscribe hub. Also satisfies the Publisher protocol."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def on(self, event_type: str, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def off(self, event_type: str, handler: Handler) -> bool:
        """Unsubscribe. Returns True if the handler was registered."""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def listener_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, []))

    async def emit(self, event_type: str, payload: Any) -> int:
        """Deliver ``payload`` to every handler. Returns handlers that succeeded."""
        delivered = 0
        for handler in list(self._handlers.get(event_type, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.warning("Handler for %s failed: %s", event_type, e)
        return delivered

    async def publish(self, event: OrparEvent) -> None:
        await self.emit(event.event_type, event.to_payload())
