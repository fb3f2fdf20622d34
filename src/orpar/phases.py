"""ORPAR phase operations — observe, reason, plan, act, reflect, status.

Every phase call follows the same path:
  resolve identity → shape input → validate transition → record →
  publish event (fire-and-forget) → return result with guidance

Failures (illegal transition, bad input, missing identity) come back as
``{"success": False, ...}`` dicts. Nothing here raises to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from orpar.config import OrparConfig
from orpar.events import OrparEvents
from orpar.lifecycle import (
    NEXT_TOOL,
    tool_for_phase,
    transition_hint,
    validate_transition,
)
from orpar.schemas import (
    ActInput,
    CycleState,
    ObserveInput,
    OrparEvent,
    Phase,
    PhaseInput,
    PlanInput,
    ReasonInput,
    ReflectInput,
    ToolContext,
)
from orpar.sinks import Publisher
from orpar.store import CycleStateStore, now_ms, state_key

logger = logging.getLogger(__name__)

ORPAR_TOOL_NAMES = {
    "OBSERVE": "orpar_observe",
    "REASON": "orpar_reason",
    "PLAN": "orpar_plan",
    "ACT": "orpar_act",
    "REFLECT": "orpar_reflect",
    "STATUS": "orpar_status",
}

STATUS_REMINDER = "ORPAR is a one-directional loop. Complete all phases in order."


@dataclass(frozen=True)
class PhaseSpec:
    """Static description of one phase tool."""
    phase: Phase
    step: int
    input_model: type[PhaseInput]
    next_phase: Phase
    guidance: str
    purpose: str
    records: list[str] = field(default_factory=list)
    examples: list[dict[str, Any]] = field(default_factory=list)

    @property
    def tool_name(self) -> str:
        return tool_for_phase(self.phase)

    @property
    def event_type(self) -> str:
        return OrparEvents.for_phase(self.phase)


PHASE_SPECS: dict[Phase, PhaseSpec] = {
    Phase.OBSERVE: PhaseSpec(
        phase=Phase.OBSERVE,
        step=1,
        input_model=ObserveInput,
        next_phase=Phase.REASON,
        guidance="Observation recorded. You MUST call orpar_reason next. No other ORPAR tools will work.",
        purpose="Document your observations about the current situation.",
        records=[
            "What you see/perceive in the current state",
            "Relevant information from the environment",
            "Key facts that will inform your decisions",
        ],
        examples=[{
            "input": {
                "observations": 'Three questions asked so far. "Is it alive?" -> YES. '
                                '"Is it a mammal?" -> YES. "Is it larger than a dog?" -> NO.',
                "keyFacts": ["The secret is alive", "It is a mammal", "It is smaller than a dog"],
            },
            "description": "Observing the game state in Twenty Questions",
        }],
    ),
    Phase.REASON: PhaseSpec(
        phase=Phase.REASON,
        step=2,
        input_model=ReasonInput,
        next_phase=Phase.PLAN,
        guidance="Reasoning recorded. You MUST call orpar_plan next. No other ORPAR tools will work.",
        purpose="Document your reasoning and analysis.",
        records=[
            "Analysis of your observations",
            "Patterns you've identified",
            "Hypotheses and conclusions",
        ],
        examples=[{
            "input": {
                "analysis": "The secret is a small mammal. The category hint was 'pet', "
                            "which narrows it to domestic animals.",
                "conclusions": ["It is a small domestic mammal", "Most likely a cat, rabbit, or hamster"],
                "confidence": 0.7,
            },
            "description": "Reasoning about possibilities in Twenty Questions",
        }],
    ),
    Phase.PLAN: PhaseSpec(
        phase=Phase.PLAN,
        step=3,
        input_model=PlanInput,
        next_phase=Phase.ACT,
        guidance="Plan recorded. You MUST call orpar_act next. No other ORPAR tools will work.",
        purpose="Document your action plan.",
        records=[
            "What actions you will take",
            "The expected outcomes",
            "Contingency considerations",
        ],
        examples=[{
            "input": {
                "plan": "Ask whether the animal can be held in one hand.",
                "actions": [{
                    "action": "Ask size question",
                    "tool": "game_askQuestion",
                    "expectedOutcome": "Narrow down to 2-3 possibilities",
                }],
                "rationale": "This eliminates roughly half the remaining possibilities.",
            },
            "description": "Planning a strategic question in Twenty Questions",
        }],
    ),
    Phase.ACT: PhaseSpec(
        phase=Phase.ACT,
        step=4,
        input_model=ActInput,
        next_phase=Phase.REFLECT,
        guidance="Action documented. You MUST call orpar_reflect next. No other ORPAR tools will work.",
        purpose="Document the action you executed.",
        records=[
            "What action you took (past tense)",
            "Which tool you used",
            "The outcome/result",
        ],
        examples=[{
            "input": {
                "action": 'Asked "Can it be held in one hand?"',
                "toolUsed": "game_askQuestion",
                "outcome": "Answer was YES",
                "success": True,
            },
            "description": "Recording a question action in Twenty Questions",
        }],
    ),
    Phase.REFLECT: PhaseSpec(
        phase=Phase.REFLECT,
        step=5,
        input_model=ReflectInput,
        next_phase=Phase.OBSERVE,
        guidance="Reflection recorded. ORPAR cycle complete.",
        purpose="Record results and reflect on what happened.",
        records=[
            "The outcome of your action",
            "What you learned",
            "Whether expectations were met",
            "Adjustments for future actions",
        ],
        examples=[{
            "input": {
                "reflection": "The YES answer confirms a very small animal, likely a hamster or mouse.",
                "learnings": ["Size question was highly effective"],
                "expectationsMet": True,
                "adjustments": "Next question should distinguish between hamster and mouse.",
            },
            "description": "Reflecting on a question outcome in Twenty Questions",
        }],
    ),
}


def phase_guidance(phase: Phase, allowed_tools: list[str] | None = None,
                   task_complete_tool: str = "task_complete") -> str:
    """Next-step guidance after ``phase`` was recorded.

    Reflect depends on whether the caller may finish its task right now.
    """
    spec = PHASE_SPECS[phase]
    if phase is not Phase.REFLECT:
        return spec.guidance
    if allowed_tools and task_complete_tool in allowed_tools:
        return f"{spec.guidance} You MUST call {task_complete_tool} now to finish your turn."
    return f"{spec.guidance} Your turn is finished."


class OrparTools:
    """Phase operations over an injected store and publisher."""

    def __init__(
        self,
        store: CycleStateStore,
        publisher: Publisher,
        config: OrparConfig | None = None,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.config = config or OrparConfig()
        self._pending: set[asyncio.Task] = set()

    # ── Phase tools ──────────────────────────────────────────────────

    async def observe(self, raw_input: dict | None, context: Any = None) -> dict[str, Any]:
        return await self.run_phase(Phase.OBSERVE, raw_input, context)

    async def reason(self, raw_input: dict | None, context: Any = None) -> dict[str, Any]:
        return await self.run_phase(Phase.REASON, raw_input, context)

    async def plan(self, raw_input: dict | None, context: Any = None) -> dict[str, Any]:
        return await self.run_phase(Phase.PLAN, raw_input, context)

    async def act(self, raw_input: dict | None, context: Any = None) -> dict[str, Any]:
        return await self.run_phase(Phase.ACT, raw_input, context)

    async def reflect(self, raw_input: dict | None, context: Any = None) -> dict[str, Any]:
        return await self.run_phase(Phase.REFLECT, raw_input, context)

    async def run_phase(
        self, phase: Phase, raw_input: dict | None, context: Any = None,
    ) -> dict[str, Any]:
        """Validate, record and publish one phase for the caller's key."""
        spec = PHASE_SPECS[phase]
        ctx = ToolContext.from_raw(context)

        identity = self._resolve_identity(ctx, spec.tool_name)
        if identity is None:
            return self._missing_identity()
        agent_id, channel_id = identity

        try:
            data = spec.input_model.model_validate(raw_input or {})
        except ValidationError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
            return {
                "success": False,
                "error": f"Invalid input for {spec.tool_name}: {e.error_count()} error(s) in {', '.join(fields)}",
                "hint": f"Check the {spec.tool_name} parameter names and types.",
            }

        with self.store.lock(agent_id, channel_id):
            state = self.store.get_or_create(agent_id, channel_id)
            check = validate_transition(state.current_phase, phase)
            if not check.valid:
                return {
                    "success": False,
                    "error": check.error,
                    "currentPhase": state.current_phase.value,
                    "hint": transition_hint(state.current_phase, phase),
                }
            content = data.primary_content()
            self.store.record(state, phase, content)
            event = self._build_event(spec, state, agent_id, channel_id, content, data)
            result = self._build_result(spec, state, data, ctx)

        self._dispatch(event)
        logger.debug(
            "[ORPAR] %s -> %s (cycle %d)", agent_id, phase.value.upper(), state.cycle_count,
        )
        return result

    # ── Status ───────────────────────────────────────────────────────

    async def status(self, raw_input: dict | None = None, context: Any = None) -> dict[str, Any]:
        """Report the caller's position in the cycle.

        Leftover state from a finished task is cleared when the caller may
        start a new cycle but can no longer call its current phase tool.
        """
        ctx = ToolContext.from_raw(context)
        identity = self._resolve_identity(ctx, ORPAR_TOOL_NAMES["STATUS"])
        if identity is None:
            return self._missing_identity()
        agent_id, channel_id = identity

        # Unknown keys need no lock; status never creates state.
        if self.store.get(agent_id, channel_id) is None:
            return self._status_response(None)

        with self.store.lock(agent_id, channel_id):
            state = self.store.get(agent_id, channel_id)
            if state is not None and self._is_stale(state, ctx):
                self.store.delete(agent_id, channel_id)
                logger.debug(
                    "[ORPAR] Cleared stale state for %s - was in %s but orpar_observe is allowed",
                    state_key(agent_id, channel_id), state.current_phase.value,
                )
                return {
                    **self._status_response(None),
                    "guidance": "Starting new ORPAR cycle. Call orpar_observe to begin.",
                    "note": "Previous cycle state cleared - new task detected.",
                }
            return self._status_response(state)

    def _status_response(self, state: CycleState | None) -> dict[str, Any]:
        current = state.current_phase if state else Phase.NONE
        history = state.phase_history[-self.config.recent_history:] if state else []
        return {
            "currentPhase": current.value,
            "loopId": state.loop_id if state else None,
            "cycleCount": state.cycle_count if state else 0,
            "recentHistory": [
                {"phase": entry.phase.value, "timestamp": entry.timestamp}
                for entry in history
            ],
            "nextTool": self._next_tool(current),
            "guidance": self._status_guidance(current),
            "reminder": STATUS_REMINDER,
            "timestamp": now_ms(),
        }

    # ── Event dispatch ───────────────────────────────────────────────

    async def drain(self) -> None:
        """Wait for in-flight event publishes to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_publishes(self) -> int:
        return len(self._pending)

    def _dispatch(self, event: OrparEvent) -> None:
        task = asyncio.get_running_loop().create_task(self._publish(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, event: OrparEvent) -> None:
        try:
            await self.publisher.publish(event)
        except Exception as e:
            logger.warning(
                "Failed to publish %s for %s: %s",
                event.event_type, state_key(event.agent_id, event.channel_id), e,
            )

    # ── Helpers ──────────────────────────────────────────────────────

    def _resolve_identity(self, ctx: ToolContext, tool_name: str) -> tuple[str, str] | None:
        if ctx.agent_id and ctx.channel_id:
            return ctx.agent_id, ctx.channel_id
        if self.config.require_identity:
            logger.warning("%s called without agent/channel identity — rejecting", tool_name)
            return None
        fallback = self.config.fallback_identity
        logger.warning(
            "%s called without full identity — using fallback %r", tool_name, fallback,
        )
        return ctx.agent_id or fallback, ctx.channel_id or fallback

    @staticmethod
    def _missing_identity() -> dict[str, Any]:
        return {
            "success": False,
            "error": "Missing agent identity: agentId and channelId are required",
            "hint": "Call ORPAR tools from a connected agent session.",
        }

    @staticmethod
    def _is_stale(state: CycleState, ctx: ToolContext) -> bool:
        if state.current_phase is Phase.NONE:
            return False
        if not ctx.allows(ORPAR_TOOL_NAMES["OBSERVE"]):
            return False
        return not ctx.allows(tool_for_phase(state.current_phase))

    def _next_tool(self, phase: Phase) -> str:
        if phase is Phase.REFLECT:
            return self.config.task_complete_tool
        return NEXT_TOOL[phase]

    def _status_guidance(self, phase: Phase) -> str:
        if phase is Phase.NONE:
            return "You have not started an ORPAR cycle. Call orpar_observe to begin."
        if phase is Phase.REFLECT:
            return f"ORPAR cycle complete. Call {self.config.task_complete_tool} to finish your turn."
        return f"You just completed {phase.value.upper()}. You MUST call {self._next_tool(phase)} next."

    @staticmethod
    def _build_event(
        spec: PhaseSpec,
        state: CycleState,
        agent_id: str,
        channel_id: str,
        content: str,
        data: PhaseInput,
    ) -> OrparEvent:
        return OrparEvent(
            event_id=str(uuid4()),
            event_type=spec.event_type,
            agent_id=agent_id,
            channel_id=channel_id,
            timestamp=now_ms(),
            loop_id=state.loop_id,
            cycle_number=state.cycle_count,
            data={"phase": spec.phase.value, "content": content, **data.event_data()},
        )

    def _build_result(
        self, spec: PhaseSpec, state: CycleState, data: PhaseInput, ctx: ToolContext,
    ) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": True,
            "phase": spec.phase.value,
            "cycleNumber": state.cycle_count,
            "loopId": state.loop_id,
            "recorded": data.recorded(),
            "nextPhase": spec.next_phase.value,
            "guidance": phase_guidance(
                spec.phase, ctx.allowed_tools, self.config.task_complete_tool,
            ),
            "timestamp": now_ms(),
        }
        if spec.phase is Phase.REFLECT:
            result["cycleComplete"] = True
            result["cycleSummary"] = {
                "totalPhases": len(state.phase_history),
                "cyclesCompleted": state.cycle_count,
            }
        return result
