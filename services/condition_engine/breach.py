"""Hold/cooldown state machine per (alert id, entity).

    Idle --true--> Breaching --held >= holdSec, cooldown ok--> Fired
      ^                |                                        |
      +-----false------+-----------------false------------------+

A single false verdict clears an in-progress hold completely. Cooldown
only gates firing; a new breach always restarts the hold timer.
"""
from __future__ import annotations

import threading
from typing import Optional

from condition_engine.models import BreachState


class BreachTracker:
    def __init__(self):
        self._lock = threading.Lock()
        self._states: dict[tuple[str, str], BreachState] = {}

    def observe(
        self,
        definition_id: str,
        entity_id: str,
        matched: bool,
        now_ms: int,
        hold_sec: float,
        cooldown_sec: float,
    ) -> bool:
        """Feed one verdict. Returns True exactly on the tick the alert fires."""
        key = (definition_id, entity_id)
        with self._lock:
            state = self._states.get(key)
            if state is None:
                state = self._states[key] = BreachState()

            if not matched:
                state.breach_start_at = None
                state.breached = False
                return False

            if state.breach_start_at is None:
                state.breach_start_at = now_ms

            if state.breached:
                return False
            if now_ms - state.breach_start_at < hold_sec * 1000:
                return False
            if state.last_fire_at is not None and now_ms - state.last_fire_at < cooldown_sec * 1000:
                return False

            state.breached = True
            state.last_fire_at = now_ms
            return True

    def get(self, definition_id: str, entity_id: str) -> Optional[BreachState]:
        with self._lock:
            state = self._states.get((definition_id, entity_id))
            if state is None:
                return None
            return BreachState(state.breach_start_at, state.last_fire_at, state.breached)

    def forget(self, definition_id: str) -> int:
        """Drop every entity state for a deleted definition."""
        with self._lock:
            keys = [k for k in self._states if k[0] == definition_id]
            for key in keys:
                del self._states[key]
        return len(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)
