"""Tests for the in-process event bus."""

from __future__ import annotations

import logging

import pytest

from orpar.events import EventBus, OrparEvents
from orpar.schemas import OrparEvent, Phase


def _event() -> OrparEvent:
    return OrparEvent(
        event_id="e1", event_type="orpar:act", agent_id="A1", channel_id="C1",
        timestamp=1, loop_id="loop-1", cycle_number=0, data={"phase": "act"},
    )


class TestEventNames:
    def test_for_phase(self):
        assert OrparEvents.for_phase(Phase.OBSERVE) == OrparEvents.OBSERVE
        assert OrparEvents.for_phase(Phase.REFLECT) == "orpar:reflect"


class TestEventBus:
    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self):
        bus = EventBus()
        seen = []

        async def async_handler(payload):
            seen.append(("async", payload))

        bus.on("x", lambda p: seen.append(("sync", p)))
        bus.on("x", async_handler)
        delivered = await bus.emit("x", 42)
        assert delivered == 2
        assert seen == [("sync", 42), ("async", 42)]

    @pytest.mark.asyncio
    async def test_failing_handler_isolated(self, caplog):
        bus = EventBus()
        seen = []

        def broken(payload):
            raise RuntimeError("boom")

        bus.on("x", broken)
        bus.on("x", seen.append)
        with caplog.at_level(logging.WARNING):
            delivered = await bus.emit("x", "p")
        assert delivered == 1
        assert seen == ["p"]
        assert "boom" in caplog.text

    @pytest.mark.asyncio
    async def test_off(self):
        bus = EventBus()
        seen = []
        bus.on("x", seen.append)
        assert bus.off("x", seen.append) is True
        assert bus.off("x", seen.append) is False
        assert await bus.emit("x", 1) == 0
        assert seen == []

    @pytest.mark.asyncio
    async def test_emit_without_handlers(self):
        assert await EventBus().emit("nobody", {}) == 0

    @pytest.mark.asyncio
    async def test_publish_uses_event_type_and_payload(self):
        bus = EventBus()
        seen = []
        bus.on("orpar:act", seen.append)
        await bus.publish(_event())
        assert seen[0]["eventId"] == "e1"
        assert seen[0]["cycleNumber"] == 0
        assert seen[0]["data"] == {"phase": "act"}
