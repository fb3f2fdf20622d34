"""Runtime wiring — store + bus + tools, and disconnect cleanup.

The hosting process builds one OrparRuntime, calls ``init()`` once at
startup and ``await shutdown()`` on exit. ``init()`` subscribes the
cleanup listeners:

  agent:disconnected  {agentId}             → drop every key for the agent
  orpar:clear_state   {agentId, channelId}  → drop one key

Registration is skipped entirely in test mode so listeners never outlive
a test's teardown.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from orpar.config import TEST_ENVIRONMENT, OrparConfig
from orpar.events import AgentEvents, EventBus, OrparEvents
from orpar.phases import OrparTools
from orpar.schemas import CycleState
from orpar.sinks import Publisher, create_publisher
from orpar.store import CycleStateStore, state_key

logger = logging.getLogger(__name__)


class OrparRuntime:
    """Owns the cycle state store and its lifecycle listeners."""

    def __init__(
        self,
        config: OrparConfig | None = None,
        store: CycleStateStore | None = None,
        bus: EventBus | None = None,
        publisher: Publisher | None = None,
    ) -> None:
        self.config = config or OrparConfig()
        self.store = store or CycleStateStore(
            history_limit=self.config.history_limit,
            content_max_chars=self.config.content_max_chars,
        )
        self.bus = bus or EventBus()
        self.publisher = publisher or create_publisher(
            self.config.publisher,
            bus=self.bus,
            webhook_url=self.config.webhook_url,
            timeout=self.config.webhook_timeout,
        )
        self.tools = OrparTools(self.store, self.publisher, self.config)
        self._listeners_registered = False

    @property
    def listeners_registered(self) -> bool:
        return self._listeners_registered

    # ── Lifecycle ────────────────────────────────────────────────────

    def init(self) -> bool:
        """Register cleanup listeners. Returns True if they are registered now.

        Idempotent: repeated calls are no-ops.
        """
        if self._listeners_registered:
            return True
        if self.config.is_test or os.environ.get("ORPAR_ENV") == TEST_ENVIRONMENT:
            logger.debug("[ORPAR] Test environment — skipping disconnect cleanup listener")
            return False

        self.bus.on(AgentEvents.DISCONNECTED, self._on_agent_disconnected)
        self.bus.on(OrparEvents.CLEAR_STATE, self._on_clear_state)
        self._listeners_registered = True
        logger.debug("[ORPAR] Registered agent disconnect cleanup listener")
        return True

    async def shutdown(self) -> None:
        """Unregister listeners and flush pending event publishes."""
        if self._listeners_registered:
            self.bus.off(AgentEvents.DISCONNECTED, self._on_agent_disconnected)
            self.bus.off(OrparEvents.CLEAR_STATE, self._on_clear_state)
            self._listeners_registered = False
        await self.tools.drain()

    # ── Cleanup ──────────────────────────────────────────────────────

    def clear_agent_states(self, agent_id: str) -> int:
        """Drop every cycle state for ``agent_id`` across all channels."""
        count = self.store.delete_all_for_agent(agent_id)
        if count > 0:
            logger.debug(
                "[ORPAR] Cleared %d state(s) for disconnected agent %s", count, agent_id,
            )
        return count

    def clear_state(self, agent_id: str, channel_id: str) -> bool:
        """Manual reset of one (agent, channel) key."""
        return self.store.delete(agent_id, channel_id)

    def states(self) -> dict[tuple[str, str], CycleState]:
        """Snapshot of all cycle states keyed (agent_id, channel_id)."""
        return self.store.snapshot()

    def _on_agent_disconnected(self, payload: Any) -> None:
        agent_id = _payload_field(payload, "agentId")
        if agent_id:
            self.clear_agent_states(agent_id)

    def _on_clear_state(self, payload: Any) -> None:
        agent_id = _payload_field(payload, "agentId")
        channel_id = _payload_field(payload, "channelId")
        if agent_id and channel_id:
            self.clear_state(agent_id, channel_id)
            logger.debug(
                "[ORPAR] Cleared state for %s via CLEAR_STATE event",
                state_key(agent_id, channel_id),
            )


def _payload_field(payload: Any, name: str) -> str | None:
    """Read ``name`` from a payload or its nested ``data`` dict."""
    if not isinstance(payload, dict):
        return None
    value = payload.get(name)
    if not value and isinstance(payload.get("data"), dict):
        value = payload["data"].get(name)
    return value if isinstance(value, str) and value else None
