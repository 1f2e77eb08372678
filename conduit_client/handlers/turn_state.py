"""Per-session turn state derived from lifecycle events.

A pure fold over the same raw feed the event log sees, including the
events the log drops, so telemetry-only bursts never desync it.
"""
from __future__ import annotations

import logging

from conduit_client.adapters.events import (
    AgentEvent,
    AssistantMessage,
    Error,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
)
from conduit_client.engine.models import TurnState

logger = logging.getLogger(__name__)


def next_turn_state(current: TurnState, event: AgentEvent) -> TurnState:
    """Return the state after *event*; events outside the lifecycle set keep it."""
    if isinstance(event, TurnStarted):
        return TurnState.WORKING
    if isinstance(event, (TurnCompleted, TurnFailed)):
        return TurnState.IDLE
    if isinstance(event, Error) and event.is_fatal:
        return TurnState.IDLE
    if isinstance(event, AssistantMessage) and event.is_final:
        return TurnState.IDLE
    return current


def fold_turn_state(
    events, initial: TurnState = TurnState.IDLE,
) -> TurnState:
    state = initial
    for event in events:
        state = next_turn_state(state, event)
    return state


def is_turn_end(event: AgentEvent) -> bool:
    """True for events that end a turn outright (not final text)."""
    if isinstance(event, (TurnCompleted, TurnFailed)):
        return True
    return isinstance(event, Error) and event.is_fatal


class TurnStateTracker:
    """Tracks idle/working for every session it is fed events for."""

    def __init__(self) -> None:
        self._states: dict[str, TurnState] = {}

    def state(self, session_id: str) -> TurnState:
        return self._states.get(session_id, TurnState.IDLE)

    def is_working(self, session_id: str) -> bool:
        return self.state(session_id) is TurnState.WORKING

    @property
    def working_sessions(self) -> frozenset[str]:
        return frozenset(
            sid for sid, st in self._states.items() if st is TurnState.WORKING
        )

    def apply(self, session_id: str, event: AgentEvent) -> bool:
        """Fold one event. Returns True if the session's state changed."""
        current = self.state(session_id)
        new = next_turn_state(current, event)
        if new is current:
            return False
        self._states[session_id] = new
        logger.debug(
            "Session %s turn state %s -> %s (%s)",
            session_id, current.value, new.value, event.event_type,
        )
        return True

    def mark_idle(self, session_id: str) -> bool:
        if self.state(session_id) is TurnState.IDLE:
            return False
        self._states[session_id] = TurnState.IDLE
        return True

    def reset(self, session_id: str) -> None:
        self._states.pop(session_id, None)
