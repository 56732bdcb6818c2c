"""Read-only diagnostics registry of watch sessions.

Sessions register their live :class:`SessionState`; readers (the REST API,
metrics) only ever receive frozen :class:`SessionStateView` copies taken
under the lock, never the live structures.
"""

from __future__ import annotations

import threading

from kubewatcher.models.session import SessionPhase, SessionState, SessionStateView
from kubewatcher.observability.metrics import active_sessions


class SessionRegistry:
    """Maps filter label -> live session state."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, SessionState] = {}

    def register(self, state: SessionState) -> None:
        with self._lock:
            self._states[state.filter.label] = state
            active_sessions.set(len(self._states))

    def unregister(self, label: str) -> None:
        with self._lock:
            self._states.pop(label, None)
            active_sessions.set(len(self._states))

    def clear(self) -> None:
        with self._lock:
            self._states.clear()
            active_sessions.set(0)

    def snapshot(self) -> dict[str, SessionStateView]:
        """Return a point-in-time copy of every registered session's state."""
        with self._lock:
            return {label: state.view() for label, state in self._states.items()}

    def count_in_phase(self, phase: SessionPhase) -> int:
        with self._lock:
            return sum(1 for state in self._states.values() if state.phase is phase)

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)
