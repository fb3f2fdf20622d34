"""All Pydantic models — cycle state, phase inputs, tool context, events.

Phase inputs are the shaping boundary: whatever an agent sends is coerced
into one of these models before the state machine sees it. Field names on
the wire are camelCase; common LLM synonyms are accepted as validation
aliases and unknown properties are dropped.
"""

from __future__ import annotations

import json
import re
from enum import StrEnum
from typing import Annotated, Any, ClassVar

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


# ── Phases ───────────────────────────────────────────────────────────


class Phase(StrEnum):
    """ORPAR phases plus the virtual start state."""
    NONE = "none"
    OBSERVE = "observe"
    REASON = "reason"
    PLAN = "plan"
    ACT = "act"
    REFLECT = "reflect"


CYCLE_PHASES: tuple[Phase, ...] = (
    Phase.OBSERVE, Phase.REASON, Phase.PLAN, Phase.ACT, Phase.REFLECT,
)


# ── Cycle State ──────────────────────────────────────────────────────


class PhaseEntry(BaseModel):
    """One recorded phase in a cycle's history."""
    phase: Phase
    timestamp: int
    content: str = ""


class CycleState(BaseModel):
    """Mutable ORPAR state for one (agent, channel) key."""
    current_phase: Phase = Phase.NONE
    loop_id: str
    cycle_count: int = Field(default=0, ge=0)
    phase_history: list[PhaseEntry] = []
    last_updated: int = 0


# ── Tool Context ─────────────────────────────────────────────────────


class ToolContext(BaseModel):
    """Caller identity and the tools it is currently permitted to call."""
    agent_id: str | None = None
    channel_id: str | None = None
    allowed_tools: list[str] = []

    @classmethod
    def from_raw(cls, raw: dict[str, Any] | ToolContext | None) -> ToolContext:
        """Build a context from a transport-supplied dict.

        Accepts camelCase, underscore-prefixed and snake_case keys. A
        non-list ``allowedTools`` is treated as empty.
        """
        if isinstance(raw, ToolContext):
            return raw
        if not raw:
            return cls()

        def pick(*keys: str) -> Any:
            for key in keys:
                value = raw.get(key)
                if value:
                    return value
            return None

        def pick_id(*keys: str) -> str | None:
            value = pick(*keys)
            return str(value) if value is not None else None

        allowed = pick("allowedTools", "_allowedTools", "allowed_tools")
        if isinstance(allowed, (set, frozenset, tuple)):
            allowed = list(allowed)
        if not isinstance(allowed, list):
            allowed = []

        return cls(
            agent_id=pick_id("_agentId", "agentId", "agent_id"),
            channel_id=pick_id("_channelId", "channelId", "channel_id"),
            allowed_tools=[str(t) for t in allowed],
        )

    def allows(self, tool_name: str) -> bool:
        return tool_name in self.allowed_tools


# ── Phase Inputs ─────────────────────────────────────────────────────


MAX_COLLECTED_ITEMS = 50

_ITEM_TAG = re.compile(r"<item>(.*?)</item>")
_ANY_TAG = re.compile(r"<[^>]*>")


def _as_list(value: Any) -> Any:
    """Coerce a string into a list of strings.

    Understands JSON arrays ('["a", "b"]'), <item>a</item> markup and
    newline-separated lines; anything else becomes a one-element list.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        return value

    text = value.strip()
    if text.startswith("[") and text.endswith("]"):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [item if isinstance(item, (str, dict)) else str(item) for item in parsed]

    items = _ITEM_TAG.findall(text)
    if items:
        return [item.strip() for item in items]

    if "\n" in text:
        lines = [line.strip() for line in text.split("\n")]
        lines = [line for line in lines if line and not line.startswith("<")]
        if lines:
            return lines

    return [text] if text else []


def _collect_numbered(data: Any, prefix: str, targets: tuple[str, ...]) -> Any:
    """Fold ``<prefix>1`` .. ``<prefix>10`` keys into one list.

    The list lands under ``targets[0]``, merged with whatever the caller
    already sent under any of the ``targets`` names.
    """
    if not isinstance(data, dict):
        return data
    numbered = [f"{prefix}{i}" for i in range(1, 11)]
    if not any(key in data for key in numbered):
        return data

    data = dict(data)
    collected = []
    for key in numbered:
        value = data.pop(key, None)
        if isinstance(value, str):
            value = _ANY_TAG.sub("", value).strip()
        if value:
            collected.append(value)

    existing: list = []
    for name in targets:
        value = data.pop(name, None)
        if value and not existing:
            if isinstance(value, str):
                existing = _as_list(value)
            elif isinstance(value, list):
                existing = list(value)
            else:
                existing = [value]
    data[targets[0]] = (existing + collected)[:MAX_COLLECTED_ITEMS]
    return data


def _first_action(value: Any) -> str | None:
    """First entry of an action list, as a string."""
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return value
        if not isinstance(parsed, list):
            return value
        value = parsed
    if not isinstance(value, list) or not value:
        return None
    first = value[0]
    if isinstance(first, dict) and first.get("action"):
        return str(first["action"])
    return str(first)


StrList = Annotated[list[str] | None, BeforeValidator(_as_list)]


class PhaseInput(BaseModel):
    """Base for phase inputs: camelCase on the wire, unknown keys dropped.

    Subclasses name the field that carries the phase's main text in
    ``primary_field``; that text is what the cycle history records.
    """
    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    primary_field: ClassVar[str]

    def primary_content(self) -> str:
        return getattr(self, self.primary_field)

    def recorded(self) -> dict[str, Any]:
        """Echo of the input with defaults filled in."""
        return self.model_dump(by_alias=True)

    def event_data(self) -> dict[str, Any]:
        """Phase-specific extras attached to the outward event."""
        return self.model_dump(by_alias=True)


class ObserveInput(PhaseInput):
    """Observations about the current situation."""
    observations: str = Field(
        min_length=1,
        validation_alias=AliasChoices("observations", "observation"),
        description="Your observations about the current situation. Be specific and factual.",
    )
    key_facts: StrList = Field(
        default=None,
        validation_alias=AliasChoices("keyFacts", "key_facts", "facts"),
        description='List of key facts as a JSON array, e.g. ["fact1", "fact2"].',
    )
    context: str | None = Field(
        default=None,
        description="Optional context about what triggered this observation",
    )

    primary_field: ClassVar[str] = "observations"

    @model_validator(mode="before")
    @classmethod
    def _collect_key_facts(cls, data: Any) -> Any:
        return _collect_numbered(data, "keyFact", ("keyFacts", "key_facts", "facts"))

    def recorded(self) -> dict[str, Any]:
        return {
            "observations": self.observations,
            "keyFacts": self.key_facts or [],
            "context": self.context,
        }


_PERCENT = re.compile(r"(\d+(?:\.\d+)?)\s*%")
_DECIMAL = re.compile(r"^(\d+(?:\.\d+)?)")


class ReasonInput(PhaseInput):
    """Analysis of observations and the conclusions drawn."""
    analysis: str = Field(
        min_length=1,
        validation_alias=AliasChoices("analysis", "reasoning", "thinking", "thought"),
        description='Your analysis and reasoning based on observations. Use this name exactly - NOT "reasoning".',
    )
    conclusions: StrList = Field(
        default=None,
        validation_alias=AliasChoices("conclusions", "patterns", "hypothesis", "keyFindings"),
        description="Key conclusions from your analysis as a JSON array",
    )
    confidence: float | None = Field(
        default=None, ge=0.0, le=1.0,
        description="Optional confidence level in your reasoning (0-1)",
    )
    alternatives: StrList = Field(
        default=None,
        validation_alias=AliasChoices("alternatives", "nextStep"),
        description="Alternative interpretations considered as a JSON array",
    )

    @field_validator("confidence", mode="before")
    @classmethod
    def _parse_confidence(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        match = _PERCENT.search(value)
        if match:
            return min(1.0, float(match.group(1)) / 100)
        match = _DECIMAL.match(value.strip())
        if match:
            parsed = float(match.group(1))
            return min(1.0, parsed / 100) if parsed > 1 else parsed
        return None

    primary_field: ClassVar[str] = "analysis"

    def recorded(self) -> dict[str, Any]:
        return {
            "analysis": self.analysis,
            "conclusions": self.conclusions or [],
            "confidence": self.confidence if self.confidence is not None else 0.5,
            "alternatives": self.alternatives or [],
        }


class PlannedAction(BaseModel):
    """A single step in a plan."""
    model_config = ConfigDict(
        extra="ignore", populate_by_name=True, alias_generator=to_camel,
    )
    action: str
    tool: str | None = None
    expected_outcome: str | None = None


class PlanInput(PhaseInput):
    """The action plan for this cycle."""
    plan: str = Field(
        min_length=1,
        validation_alias=AliasChoices("plan", "strategy", "approach", "planning"),
        description='Your plan of action. Use this name exactly - NOT "planning" or "strategy".',
    )
    actions: list[PlannedAction] | None = Field(
        default=None,
        validation_alias=AliasChoices("actions", "nextSteps", "steps", "nextActions"),
        description="Specific actions to take as an array of {action, tool, expectedOutcome}.",
    )
    rationale: str | None = Field(default=None, description="Why this plan was chosen")
    contingency: str | None = Field(default=None, description="What to do if the plan fails")

    @field_validator("actions", mode="before")
    @classmethod
    def _coerce_actions(cls, value: Any) -> Any:
        value = _as_list(value)
        if isinstance(value, list):
            return [{"action": item} if isinstance(item, str) else item for item in value]
        return value

    primary_field: ClassVar[str] = "plan"

    def recorded(self) -> dict[str, Any]:
        return {
            "plan": self.plan,
            "actions": [
                a.model_dump(by_alias=True, exclude_none=True)
                for a in self.actions or []
            ],
            "rationale": self.rationale,
            "contingency": self.contingency,
        }


class ActInput(PhaseInput):
    """The action that was executed and its outcome."""
    action: str = Field(
        min_length=1,
        description='Description of the action taken. Use "action" (singular string).',
    )
    tool_used: str | None = Field(
        default=None,
        validation_alias=AliasChoices("toolUsed", "toolsUsed", "tool"),
        description='Name of the tool that was used. Use "toolUsed".',
    )
    outcome: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "outcome", "result", "executionDetails", "expectedOutcome", "rationale",
        ),
        description='The actual outcome of the action. Use "outcome".',
    )
    success: bool | None = Field(default=None, description="Whether the action succeeded")

    primary_field: ClassVar[str] = "action"

    @model_validator(mode="before")
    @classmethod
    def _action_from_list(cls, data: Any) -> Any:
        if isinstance(data, dict) and "actions" in data and not data.get("action"):
            first = _first_action(data["actions"])
            if first:
                data = {**data, "action": first}
        return data

    def recorded(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "toolUsed": self.tool_used,
            "outcome": self.outcome,
            "actionSuccess": self.success if self.success is not None else True,
        }


class ReflectInput(PhaseInput):
    """Reflection on the outcome and what was learned."""
    reflection: str = Field(
        min_length=1,
        validation_alias=AliasChoices("reflection", "reflections"),
        description='Your reflection on what happened. Use "reflection" (singular).',
    )
    learnings: StrList = Field(
        default=None,
        validation_alias=AliasChoices(
            "learnings", "insights", "lessons", "key_learnings", "lessonsLearned",
            "whatLearned", "keyInsights",
        ),
        description='Key learnings as a JSON array, e.g. ["learning1", "learning2"].',
    )
    expectations_met: bool | None = Field(
        default=None, description="Whether the outcome matched expectations",
    )
    adjustments: str | None = Field(
        default=None,
        validation_alias=AliasChoices("adjustments", "nextSteps"),
        description="What to adjust in the next cycle",
    )

    primary_field: ClassVar[str] = "reflection"

    def recorded(self) -> dict[str, Any]:
        return {
            "reflection": self.reflection,
            "learnings": self.learnings or [],
            "expectationsMet": self.expectations_met,
            "adjustments": self.adjustments,
        }


# ── Events ───────────────────────────────────────────────────────────


class OrparEvent(BaseModel):
    """Outward event published after every successful phase transition."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    event_id: str
    event_type: str
    agent_id: str
    channel_id: str
    timestamp: int
    loop_id: str
    cycle_number: int
    data: dict[str, Any] = {}

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)
