"""MCP server resources and tools for ORPAR.

Tool definitions and handlers that any MCP transport can wire up. The
transport supplies the caller context (agentId, channelId, allowedTools)
with each call.

MCP resources:
  orpar://states        -> every tracked cycle state
  orpar://transitions   -> the phase transition table

MCP tools:
  orpar_observe          -> STEP 1, record observations
  orpar_reason           -> STEP 2, record analysis
  orpar_plan             -> STEP 3, record the plan
  orpar_act              -> STEP 4, record the executed action
  orpar_reflect          -> STEP 5, record the reflection
  orpar_status           -> current position + next tool
"""

from __future__ import annotations

import logging
from typing import Any

from orpar.lifecycle import VALID_TRANSITIONS, format_cycle_summary
from orpar.phases import ORPAR_TOOL_NAMES, PHASE_SPECS, PhaseSpec
from orpar.runtime import OrparRuntime
from orpar.schemas import CYCLE_PHASES
from orpar.store import state_key

logger = logging.getLogger(__name__)

TOOL_TIMEOUT_MS = 5000
def cycle_diagram(task_complete_tool: str = "task_complete") -> str:
    return f"OBSERVE → REASON → PLAN → ACT → REFLECT → {task_complete_tool}"


def _phase_description(spec: PhaseSpec, task_complete_tool: str = "task_complete") -> str:
    final = " (FINAL STEP)" if spec.step == len(PHASE_SPECS) else ""
    lines = [
        f"STEP {spec.step} of {len(PHASE_SPECS)} in ORPAR cycle{final}. {spec.purpose}",
        "",
        f"ORPAR is a ONE-DIRECTIONAL loop: {cycle_diagram(task_complete_tool)}",
        "You MUST complete ALL steps in order. Other tools will be BLOCKED if you try to skip ahead.",
        "",
        "Use this tool to record:",
        *(f"- {item}" for item in spec.records),
        "",
    ]
    if spec.next_phase is CYCLE_PHASES[0]:
        lines.append(
            f"AFTER THIS TOOL: Call '{task_complete_tool}' to signal you have finished your turn/task."
        )
    else:
        lines.append(
            f"AFTER THIS TOOL: You MUST call 'orpar_{spec.next_phase.value}' next. "
            "No other ORPAR tools will work."
        )
    return "\n".join(lines)


class OrparMCPServer:
    """MCP-compatible server for the ORPAR phase tools.

    Provides resource handlers and tool handlers that can be
    wired to any MCP transport layer.
    """

    def __init__(self, runtime: OrparRuntime | None = None):
        self._runtime = runtime or OrparRuntime()

    @property
    def runtime(self) -> OrparRuntime:
        return self._runtime

    # ── Resources (read-only) ─────────────────────────────────────

    def resource_states(self) -> dict[str, Any]:
        """All tracked cycle states, one entry per (agent, channel)."""
        states = self._runtime.states()
        return {
            "states": [
                {
                    "agentId": agent_id,
                    "channelId": channel_id,
                    "currentPhase": state.current_phase.value,
                    "loopId": state.loop_id,
                    "cycleCount": state.cycle_count,
                    "historyLength": len(state.phase_history),
                    "lastUpdated": state.last_updated,
                    "summary": format_cycle_summary(state, state_key(agent_id, channel_id)),
                }
                for (agent_id, channel_id), state in states.items()
            ],
            "count": len(states),
        }

    def resource_transitions(self) -> dict[str, Any]:
        """The fixed phase transition table."""
        return {
            "transitions": {
                src.value: [dst.value for dst in targets]
                for src, targets in VALID_TRANSITIONS.items()
            },
        }

    # ── Tools ─────────────────────────────────────────────────────

    async def call_tool(
        self, name: str, arguments: dict | None = None, context: Any = None,
    ) -> dict[str, Any]:
        """Dispatch a tool call by name."""
        tools = self._runtime.tools
        if name == ORPAR_TOOL_NAMES["STATUS"]:
            return await tools.status(arguments, context)
        for phase, spec in PHASE_SPECS.items():
            if spec.tool_name == name:
                return await tools.run_phase(phase, arguments, context)
        logger.warning("Unknown ORPAR tool requested: %s", name)
        return {
            "success": False,
            "error": f"Unknown tool: {name}",
            "hint": f"Available: {', '.join(ORPAR_TOOL_NAMES.values())}",
        }

    async def tool_status(self, context: Any = None) -> dict[str, Any]:
        return await self._runtime.tools.status({}, context)

    def list_resources(self) -> list[dict[str, str]]:
        """List available MCP resources."""
        return [
            {"uri": "orpar://states", "name": "Cycle States", "description": "Every tracked ORPAR cycle state"},
            {"uri": "orpar://transitions", "name": "Transitions", "description": "Allowed phase transitions"},
        ]

    def list_tools(self) -> list[dict[str, Any]]:
        """List available MCP tools with input schemas."""
        task_complete_tool = self._runtime.config.task_complete_tool
        tools = []
        for spec in PHASE_SPECS.values():
            schema = spec.input_model.model_json_schema(by_alias=True)
            schema["additionalProperties"] = False
            tools.append({
                "name": spec.tool_name,
                "description": _phase_description(spec, task_complete_tool),
                "inputSchema": schema,
                "examples": spec.examples,
                "metadata": {
                    "category": "orpar",
                    "timeout": TOOL_TIMEOUT_MS,
                    "phase": spec.phase.value,
                },
            })
        tools.append({
            "name": ORPAR_TOOL_NAMES["STATUS"],
            "description": (
                "Check your current position in the ORPAR cycle.\n\n"
                f"The ORPAR cycle is: {cycle_diagram(task_complete_tool)}\n"
                "This tool tells you which phase you just completed and what you should call next."
            ),
            "inputSchema": {"type": "object", "properties": {}, "additionalProperties": False},
            "examples": [{"input": {}, "description": "Check current status"}],
            "metadata": {"category": "orpar", "timeout": TOOL_TIMEOUT_MS},
        })
        return tools
