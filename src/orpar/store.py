"""In-memory repository of per-(agent, channel) ORPAR cycle state.

One CycleState per key, created lazily on first access and destroyed only
by an explicit delete (manual reset, stale-state detection, disconnect
cleanup). Instances are independent: nothing is shared at module level.
"""

from __future__ import annotations

import logging
import threading
import time
from uuid import uuid4

from orpar.schemas import CycleState, Phase, PhaseEntry

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50
DEFAULT_CONTENT_MAX_CHARS = 500


def now_ms() -> int:
    return int(time.time() * 1000)


def state_key(agent_id: str, channel_id: str) -> str:
    return f"{agent_id}:{channel_id}"


class CycleStateStore:
    """Keyed store of cycle state with bounded history."""

    def __init__(
        self,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        content_max_chars: int = DEFAULT_CONTENT_MAX_CHARS,
    ) -> None:
        if history_limit < 1:
            raise ValueError(f"history_limit must be >= 1, got {history_limit}")
        self.history_limit = history_limit
        self.content_max_chars = content_max_chars
        # (agent_id, channel_id) -> state. Tuple keys keep agent ids that
        # contain ':' from matching another agent's prefix.
        self._states: dict[tuple[str, str], CycleState] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._states

    def lock(self, agent_id: str, channel_id: str) -> threading.Lock:
        """Per-key lock held across validate + record."""
        key = (agent_id, channel_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def get(self, agent_id: str, channel_id: str) -> CycleState | None:
        """Read state without creating it."""
        return self._states.get((agent_id, channel_id))

    def get_or_create(self, agent_id: str, channel_id: str) -> CycleState:
        key = (agent_id, channel_id)
        with self._guard:
            state = self._states.get(key)
            if state is None:
                state = CycleState(loop_id=str(uuid4()), last_updated=now_ms())
                self._states[key] = state
                logger.debug("[ORPAR] New cycle state for %s", state_key(*key))
            return state

    def record(self, state: CycleState, phase: Phase, content: str) -> CycleState:
        """Apply a validated transition to ``state``.

        The cycle count increments on every observe after the first entry
        in the key's lifetime; the history is trimmed oldest-first.
        """
        ts = now_ms()
        had_history = bool(state.phase_history)

        state.current_phase = phase
        state.last_updated = ts
        state.phase_history.append(PhaseEntry(
            phase=phase,
            timestamp=ts,
            content=content[:self.content_max_chars],
        ))
        overflow = len(state.phase_history) - self.history_limit
        if overflow > 0:
            del state.phase_history[:overflow]

        if phase is Phase.OBSERVE and had_history:
            state.cycle_count += 1

        return state

    def delete(self, agent_id: str, channel_id: str) -> bool:
        """Remove one key. Returns True if it existed."""
        key = (agent_id, channel_id)
        with self._guard:
            removed = self._states.pop(key, None) is not None
            self._locks.pop(key, None)
        if removed:
            logger.debug("[ORPAR] Cleared state for %s", state_key(*key))
        return removed

    def delete_all_for_agent(self, agent_id: str) -> int:
        """Remove every key belonging to ``agent_id`` across channels."""
        with self._guard:
            keys = [k for k in self._states if k[0] == agent_id]
            for key in keys:
                del self._states[key]
                self._locks.pop(key, None)
        return len(keys)

    def snapshot(self) -> dict[tuple[str, str], CycleState]:
        """Deep copy of every state, keyed ``(agent_id, channel_id)``."""
        with self._guard:
            return {
                key: state.model_copy(deep=True)
                for key, state in self._states.items()
            }
