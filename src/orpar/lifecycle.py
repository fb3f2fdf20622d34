"""ORPAR phase state machine — transition table and guidance.

Phase transitions:
  none → observe
  observe → reason
  reason → plan | observe   (re-observe when more information is needed)
  plan → act | reason       (re-reason when the plan needs revision)
  act → reflect
  reflect → observe | act   (new cycle, or retry the action)

Everything here is pure: no state is read or written.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from orpar.schemas import CycleState, Phase

TOOL_PREFIX = "orpar_"
TASK_COMPLETE_TOOL = "task_complete"

VALID_TRANSITIONS: dict[Phase, tuple[Phase, ...]] = {
    Phase.NONE: (Phase.OBSERVE,),
    Phase.OBSERVE: (Phase.REASON,),
    Phase.REASON: (Phase.PLAN, Phase.OBSERVE),
    Phase.PLAN: (Phase.ACT, Phase.REASON),
    Phase.ACT: (Phase.REFLECT,),
    Phase.REFLECT: (Phase.OBSERVE, Phase.ACT),
}

# Deterministic next step reported by status. Differs from the table
# above: back-edges are never suggested and reflect ends the turn.
NEXT_TOOL: dict[Phase, str] = {
    Phase.NONE: "orpar_observe",
    Phase.OBSERVE: "orpar_reason",
    Phase.REASON: "orpar_plan",
    Phase.PLAN: "orpar_act",
    Phase.ACT: "orpar_reflect",
    Phase.REFLECT: TASK_COMPLETE_TOOL,
}


@dataclass
class TransitionResult:
    """Outcome of a transition check."""
    valid: bool
    current: Phase
    requested: Phase
    expected: list[Phase] = field(default_factory=list)
    error: str = ""


def as_phase(phase: Phase | str | None) -> Phase:
    """Normalize ``None`` and raw strings to a Phase."""
    if phase is None:
        return Phase.NONE
    return Phase(phase)


def allowed_next(current: Phase | str | None) -> list[Phase]:
    return list(VALID_TRANSITIONS[as_phase(current)])


def validate_transition(
    current: Phase | str | None, requested: Phase | str,
) -> TransitionResult:
    """Check whether ``requested`` may follow ``current``.

    Never raises for a legal phase pair; the error string enumerates the
    allowed phases joined with "or" so callers can surface it verbatim.
    """
    current = as_phase(current)
    requested = as_phase(requested)
    expected = allowed_next(current)

    if requested in expected:
        return TransitionResult(
            valid=True, current=current, requested=requested, expected=expected,
        )

    joined = " or ".join(p.value for p in expected)
    return TransitionResult(
        valid=False,
        current=current,
        requested=requested,
        expected=expected,
        error=(
            f"Invalid ORPAR transition: Cannot go from '{current.value}' "
            f"to '{requested.value}'. Expected: {joined}"
        ),
    )


def tool_for_phase(phase: Phase | str) -> str:
    """Tool name for a cycle phase, e.g. ``orpar_observe``."""
    phase = as_phase(phase)
    if phase is Phase.NONE:
        raise ValueError("The 'none' phase has no tool")
    return f"{TOOL_PREFIX}{phase.value}"


def phase_for_tool(tool_name: str) -> Phase | None:
    """Inverse of tool_for_phase. Returns None for non-phase tools."""
    if not tool_name.startswith(TOOL_PREFIX):
        return None
    try:
        phase = Phase(tool_name[len(TOOL_PREFIX):])
    except ValueError:
        return None
    return None if phase is Phase.NONE else phase


def transition_hint(current: Phase | str | None, requested: Phase | str) -> str:
    """Remediation hint for a rejected transition."""
    current = as_phase(current)
    requested = as_phase(requested)

    if requested is Phase.OBSERVE:
        return "Complete the current phase before starting a new observation cycle."
    if requested is Phase.REASON and current is Phase.NONE:
        return "You must OBSERVE first before reasoning."
    if requested is Phase.PLAN:
        if current is Phase.NONE:
            return "You must OBSERVE and REASON first before planning."
        if current is Phase.OBSERVE:
            return "You must REASON about your observations before planning."
    if requested is Phase.ACT:
        if current is Phase.NONE:
            return "You must complete OBSERVE → REASON → PLAN before acting."
        if current is Phase.OBSERVE:
            return "You must REASON and PLAN before acting."
        if current is Phase.REASON:
            return "You must PLAN before acting."
    if requested is Phase.REFLECT:
        if current is Phase.NONE:
            return "You must complete a full ORPAR cycle before reflecting."
        return f"Complete the {current.value} phase and ACT before reflecting."
    return f"Complete the {current.value} phase first."


def format_cycle_summary(state: CycleState, key: str = "") -> str:
    """Format a cycle state as a human-readable summary."""
    header = f"[{key}] " if key else ""
    lines = [
        f"{header}{state.current_phase.value:8s} cycle {state.cycle_count}",
        f"  Loop: {state.loop_id}",
        f"  Next: {NEXT_TOOL[state.current_phase]}",
    ]
    if state.phase_history:
        trail = " → ".join(e.phase.value for e in state.phase_history[-10:])
        lines.append(f"  History ({len(state.phase_history)}): {trail}")
    return "\n".join(lines)
