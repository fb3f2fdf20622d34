"""Tests for the ORPAR phase operations."""

from __future__ import annotations

import logging

import pytest

from orpar.config import OrparConfig
from orpar.phases import OrparTools, phase_guidance
from orpar.schemas import OrparEvent, Phase
from orpar.store import CycleStateStore


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[OrparEvent] = []

    async def publish(self, event: OrparEvent) -> None:
        self.events.append(event)


class FailingPublisher:
    async def publish(self, event: OrparEvent) -> None:
        raise ConnectionError("sink down")


def _ctx(agent: str, channel: str, allowed: list[str] | None = None) -> dict:
    ctx = {"agentId": agent, "channelId": channel}
    if allowed is not None:
        ctx["allowedTools"] = allowed
    return ctx


async def _full_cycle(tools: OrparTools, ctx: dict) -> list[dict]:
    return [
        await tools.observe({"observations": "o"}, ctx),
        await tools.reason({"analysis": "r"}, ctx),
        await tools.plan({"plan": "p"}, ctx),
        await tools.act({"action": "a"}, ctx),
        await tools.reflect({"reflection": "x"}, ctx),
    ]


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def tools(publisher):
    return OrparTools(CycleStateStore(), publisher, OrparConfig(environment="test"))


class TestFullCycle:
    @pytest.mark.asyncio
    async def test_in_order_cycle_succeeds(self, tools):
        results = await _full_cycle(tools, _ctx("A1", "C1"))
        assert all(r["success"] for r in results)
        final = results[-1]
        assert final["nextPhase"] == "observe"
        assert final["cycleComplete"] is True
        assert final["cycleNumber"] == 0
        assert tools.store.get("A1", "C1").cycle_count == 0

    @pytest.mark.asyncio
    async def test_next_phases(self, tools):
        results = await _full_cycle(tools, _ctx("A1", "C1"))
        assert [r["nextPhase"] for r in results] == [
            "reason", "plan", "act", "reflect", "observe",
        ]
        assert [r["phase"] for r in results] == [
            "observe", "reason", "plan", "act", "reflect",
        ]

    @pytest.mark.asyncio
    async def test_plan_first_fails(self, tools):
        result = await tools.plan({"plan": "p"}, _ctx("A2", "C2"))
        assert result["success"] is False
        assert result["currentPhase"] == "none"
        assert "OBSERVE" in result["hint"]
        assert "Expected: observe" in result["error"]

    @pytest.mark.asyncio
    async def test_second_cycle_number(self, tools):
        ctx = _ctx("A3", "C3")
        await _full_cycle(tools, ctx)
        result = await tools.observe({"observations": "again"}, ctx)
        assert result["success"] is True
        assert result["cycleNumber"] == 1

    @pytest.mark.asyncio
    async def test_loop_id_stable_across_cycles(self, tools):
        ctx = _ctx("A1", "C1")
        results = await _full_cycle(tools, ctx)
        results += await _full_cycle(tools, ctx)
        assert len({r["loopId"] for r in results}) == 1

    @pytest.mark.asyncio
    async def test_cycle_count_increments_per_observe(self, tools):
        ctx = _ctx("A1", "C1")
        counts = []
        for _ in range(4):
            counts.append((await tools.observe({"observations": "o"}, ctx))["cycleNumber"])
            await tools.reason({"analysis": "back to observe"}, ctx)
        assert counts == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_reflect_summary(self, tools):
        results = await _full_cycle(tools, _ctx("A1", "C1"))
        assert results[-1]["cycleSummary"] == {"totalPhases": 5, "cyclesCompleted": 0}


class TestIllegalTransitions:
    @pytest.mark.asyncio
    async def test_failure_does_not_mutate(self, tools):
        ctx = _ctx("A1", "C1")
        await tools.observe({"observations": "o"}, ctx)
        before = tools.store.get("A1", "C1").model_copy(deep=True)

        result = await tools.act({"action": "skip ahead"}, ctx)
        assert result["success"] is False
        assert result["currentPhase"] == "observe"
        assert result["hint"] == "You must REASON and PLAN before acting."

        after = tools.store.get("A1", "C1")
        assert after.current_phase is before.current_phase
        assert after.phase_history == before.phase_history

    @pytest.mark.asyncio
    async def test_back_edges_allowed(self, tools):
        ctx = _ctx("A1", "C1")
        await tools.observe({"observations": "o"}, ctx)
        await tools.reason({"analysis": "r"}, ctx)
        await tools.plan({"plan": "p"}, ctx)
        assert (await tools.reason({"analysis": "revise"}, ctx))["success"]
        await tools.plan({"plan": "p2"}, ctx)
        await tools.act({"action": "a"}, ctx)
        await tools.reflect({"reflection": "retry"}, ctx)
        assert (await tools.act({"action": "again"}, ctx))["success"]

    @pytest.mark.asyncio
    async def test_no_event_on_failure(self, tools, publisher):
        await tools.reflect({"reflection": "x"}, _ctx("A1", "C1"))
        await tools.drain()
        assert publisher.events == []

    @pytest.mark.asyncio
    async def test_keys_do_not_interfere(self, tools):
        await tools.observe({"observations": "o"}, _ctx("A1", "C1"))
        other = await tools.reason({"analysis": "r"}, _ctx("A1", "C2"))
        assert other["success"] is False
        assert tools.store.get("A1", "C1").current_phase is Phase.OBSERVE


class TestRecorded:
    @pytest.mark.asyncio
    async def test_defaults_filled(self, tools):
        ctx = _ctx("A1", "C1")
        observe = await tools.observe({"observations": "o"}, ctx)
        assert observe["recorded"] == {"observations": "o", "keyFacts": [], "context": None}
        reason = await tools.reason({"analysis": "r"}, ctx)
        assert reason["recorded"]["confidence"] == 0.5
        assert reason["recorded"]["conclusions"] == []
        await tools.plan({"plan": "p"}, ctx)
        act = await tools.act({"action": "a"}, ctx)
        assert act["recorded"]["actionSuccess"] is True
        reflect = await tools.reflect({"reflection": "x"}, ctx)
        assert reflect["recorded"]["learnings"] == []

    @pytest.mark.asyncio
    async def test_aliases_and_unknown_fields(self, tools):
        result = await tools.observe(
            {"observation": "singular name", "facts": "one fact", "confidence": 0.9},
            _ctx("A1", "C1"),
        )
        assert result["success"] is True
        assert result["recorded"]["observations"] == "singular name"
        assert result["recorded"]["keyFacts"] == ["one fact"]

    @pytest.mark.asyncio
    async def test_invalid_input_returned_not_raised(self, tools):
        result = await tools.observe({}, _ctx("A1", "C1"))
        assert result["success"] is False
        assert "observations" in result["error"]
        assert tools.store.get("A1", "C1") is None

    @pytest.mark.asyncio
    async def test_history_content_truncated(self, tools):
        await tools.observe({"observations": "z" * 900}, _ctx("A1", "C1"))
        entry = tools.store.get("A1", "C1").phase_history[0]
        assert len(entry.content) == 500


class TestGuidance:
    def test_non_terminal_names_next_tool(self):
        assert "orpar_reason" in phase_guidance(Phase.OBSERVE)
        assert "orpar_plan" in phase_guidance(Phase.REASON)
        assert "orpar_act" in phase_guidance(Phase.PLAN)
        assert "orpar_reflect" in phase_guidance(Phase.ACT)
        assert "No other ORPAR tools will work" in phase_guidance(Phase.ACT)

    def test_reflect_with_task_complete(self):
        text = phase_guidance(Phase.REFLECT, ["orpar_observe", "task_complete"])
        assert "You MUST call task_complete" in text

    def test_reflect_without_task_complete(self):
        text = phase_guidance(Phase.REFLECT, ["orpar_observe"])
        assert "Your turn is finished" in text
        assert "task_complete" not in text

    @pytest.mark.asyncio
    async def test_reflect_uses_context_tools(self, tools):
        ctx = _ctx("A1", "C1", ["task_complete"])
        results = await _full_cycle(tools, ctx)
        assert "task_complete" in results[-1]["guidance"]


class TestEvents:
    @pytest.mark.asyncio
    async def test_event_per_phase(self, tools, publisher):
        await _full_cycle(tools, _ctx("A1", "C1"))
        await tools.drain()
        assert [e.event_type for e in publisher.events] == [
            "orpar:observe", "orpar:reason", "orpar:plan", "orpar:act", "orpar:reflect",
        ]

    @pytest.mark.asyncio
    async def test_event_payload(self, tools, publisher):
        result = await tools.observe(
            {"observations": "o", "keyFacts": ["f1"], "context": "ctx"}, _ctx("A1", "C1"),
        )
        await tools.drain()
        payload = publisher.events[0].to_payload()
        assert payload["agentId"] == "A1"
        assert payload["channelId"] == "C1"
        assert payload["loopId"] == result["loopId"]
        assert payload["cycleNumber"] == 0
        assert payload["eventId"]
        assert payload["data"]["phase"] == "observe"
        assert payload["data"]["content"] == "o"
        assert payload["data"]["keyFacts"] == ["f1"]
        assert payload["data"]["context"] == "ctx"

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_state(self, caplog):
        tools = OrparTools(CycleStateStore(), FailingPublisher())
        with caplog.at_level(logging.WARNING):
            result = await tools.observe({"observations": "o"}, _ctx("A1", "C1"))
            await tools.drain()
        assert result["success"] is True
        assert tools.store.get("A1", "C1").current_phase is Phase.OBSERVE
        assert "sink down" in caplog.text
        assert tools.pending_publishes == 0


class TestIdentity:
    @pytest.mark.asyncio
    async def test_fallback_identity(self, tools):
        result = await tools.observe({"observations": "o"}, None)
        assert result["success"] is True
        assert tools.store.get("unknown", "unknown") is not None

    @pytest.mark.asyncio
    async def test_partial_identity_falls_back_per_field(self, tools):
        await tools.observe({"observations": "o"}, {"agentId": "A1"})
        assert tools.store.get("A1", "unknown") is not None

    @pytest.mark.asyncio
    async def test_underscore_keys(self, tools):
        await tools.observe({"observations": "o"}, {"_agentId": "A9", "_channelId": "C9"})
        assert tools.store.get("A9", "C9") is not None

    @pytest.mark.asyncio
    async def test_require_identity_rejects(self, publisher):
        tools = OrparTools(CycleStateStore(), publisher, OrparConfig(require_identity=True))
        result = await tools.observe({"observations": "o"}, {"agentId": "A1"})
        assert result["success"] is False
        assert "Missing agent identity" in result["error"]
        assert len(tools.store) == 0

    @pytest.mark.asyncio
    async def test_numeric_identity_coerced(self, tools):
        result = await tools.observe({"observations": "o"}, {"agentId": 42, "channelId": "C"})
        assert result["success"] is True
        assert tools.store.get("42", "C") is not None


class TestLooseAgentInput:
    @pytest.mark.asyncio
    async def test_act_from_actions_list(self, tools):
        ctx = _ctx("A1", "C1")
        await tools.observe({"observations": "o"}, ctx)
        await tools.reason({"analysis": "r"}, ctx)
        await tools.plan({"plan": "p"}, ctx)
        result = await tools.act(
            {"actions": ["asked the question"], "expectedOutcome": "a yes or no"}, ctx,
        )
        assert result["success"] is True
        assert result["recorded"]["action"] == "asked the question"
        assert result["recorded"]["outcome"] == "a yes or no"

    @pytest.mark.asyncio
    async def test_numbered_key_facts(self, tools):
        result = await tools.observe(
            {"observations": "o", "keyFact1": "a", "keyFact2": "<b>b</b>"}, _ctx("A1", "C1"),
        )
        assert result["recorded"]["keyFacts"] == ["a", "b"]
