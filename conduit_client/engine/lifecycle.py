"""Prompt dispatcher state machine.

Defines valid phase transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> PENDING_START ──┬──> RUNNING      (session_started,
                             │                  "already running" repair,
                             │                  any agent event)
                             └──> IDLE         (stop, session_ended)

    RUNNING ──> IDLE                           (stop, session_ended)

    IDLE ──> RUNNING                           (agent event for a session
                                                started elsewhere)
"""
from __future__ import annotations

from .models import DispatchPhase

VALID_TRANSITIONS: dict[DispatchPhase, set[DispatchPhase]] = {
    DispatchPhase.IDLE: {
        DispatchPhase.IDLE,
        DispatchPhase.PENDING_START,
        DispatchPhase.RUNNING,
    },
    DispatchPhase.PENDING_START: {
        DispatchPhase.PENDING_START,  # a second prompt replaces the pending one
        DispatchPhase.RUNNING,
        DispatchPhase.IDLE,
    },
    DispatchPhase.RUNNING: {
        DispatchPhase.RUNNING,
        DispatchPhase.IDLE,
    },
}


def validate_transition(current: DispatchPhase, target: DispatchPhase) -> None:
    """Validate a phase transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid dispatch transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
