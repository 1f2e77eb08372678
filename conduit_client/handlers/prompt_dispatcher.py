"""Decides whether a user prompt starts a turn or feeds a running one.

The client cannot know for sure, when a prompt is submitted, whether the
backend already has a live agent for the session (the page was reloaded,
or an earlier start is still in flight). The dispatcher guesses from
local state, sends ``start_session`` optimistically, and repairs the
guess once if the server answers that the session is already running.

Per-session state is a tagged value::

    IDLE            nothing known to be running
    PENDING_START   start_session sent, outcome unknown; holds the prompt
    RUNNING         agent is live; prompts go out as send_input

Only PENDING_START carries a pending prompt, and the repair consumes it,
so a second rejection has nothing left to resend. A terminal turn event
also consumes it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from conduit_client.adapters.events import AgentEvent
from conduit_client.adapters.protocol import (
    AgentEventMessage,
    ServerError,
    ServerMessage,
    SessionEnded,
    SessionStarted,
    respond_to_control_message,
    send_input_message,
    start_session_message,
    stop_session_message,
)
from conduit_client.adapters.transport import Transport
from conduit_client.engine.lifecycle import validate_transition
from conduit_client.engine.models import DispatchPhase, ImageAttachment, PendingPrompt
from conduit_client.handlers.turn_state import is_turn_end

logger = logging.getLogger(__name__)


@dataclass
class DispatchState:
    phase: DispatchPhase = DispatchPhase.IDLE
    pending: PendingPrompt | None = None
    # PENDING_START only: agent events arrived while the start was unconfirmed
    live: bool = False


class PromptDispatcher:
    """Routes prompts to start_session or send_input per session."""

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._states: dict[str, DispatchState] = {}

    # ── state ───────────────────────────────────────────────────────

    def state(self, session_id: str) -> DispatchState:
        state = self._states.get(session_id)
        return state if state is not None else DispatchState()

    def phase(self, session_id: str) -> DispatchPhase:
        return self.state(session_id).phase

    def is_running(self, session_id: str) -> bool:
        state = self.state(session_id)
        if state.phase is DispatchPhase.RUNNING:
            return True
        return state.phase is DispatchPhase.PENDING_START and state.live

    def pending_prompt(self, session_id: str) -> PendingPrompt | None:
        return self.state(session_id).pending

    def _transition(
        self,
        session_id: str,
        phase: DispatchPhase,
        pending: PendingPrompt | None = None,
    ) -> None:
        current = self.phase(session_id)
        validate_transition(current, phase)
        if phase is DispatchPhase.IDLE:
            self._states.pop(session_id, None)
        else:
            self._states[session_id] = DispatchState(phase=phase, pending=pending)
        if current is not phase:
            logger.debug(
                "Session %s dispatch phase %s -> %s",
                session_id, current.value, phase.value,
            )

    # ── outgoing ────────────────────────────────────────────────────

    def send_prompt(
        self,
        session_id: str,
        prompt: str,
        working_dir: str,
        model: str | None = None,
        hidden: bool | None = None,
        images: list[ImageAttachment] | None = None,
    ) -> bool:
        """Send *prompt*, choosing start vs. append from local state."""
        if self.is_running(session_id):
            return self.send_input(session_id, prompt, hidden, images)

        self._transition(
            session_id,
            DispatchPhase.PENDING_START,
            PendingPrompt(
                prompt=prompt,
                working_dir=working_dir,
                model=model,
                hidden=hidden,
                images=images,
            ),
        )
        return self.start_session(
            session_id, prompt, working_dir, model, hidden, images,
        )

    def start_session(
        self,
        session_id: str,
        prompt: str,
        working_dir: str,
        model: str | None = None,
        hidden: bool | None = None,
        images: list[ImageAttachment] | None = None,
    ) -> bool:
        return self._transport.send(start_session_message(
            session_id, prompt, working_dir, model, hidden, images,
        ))

    def send_input(
        self,
        session_id: str,
        input: str,
        hidden: bool | None = None,
        images: list[ImageAttachment] | None = None,
    ) -> bool:
        return self._transport.send(
            send_input_message(session_id, input, hidden, images)
        )

    def respond_to_control(
        self, session_id: str, request_id: str, response: Any,
    ) -> bool:
        return self._transport.send(
            respond_to_control_message(session_id, request_id, response)
        )

    def stop(self, session_id: str) -> bool:
        """Ask the backend to stop, and forget local running/pending state now."""
        sent = self._transport.send(stop_session_message(session_id))
        self._transition(session_id, DispatchPhase.IDLE)
        return sent

    # ── incoming ────────────────────────────────────────────────────

    def handle_server_message(self, message: ServerMessage) -> None:
        if isinstance(message, SessionStarted):
            self._transition(message.session_id, DispatchPhase.RUNNING)
        elif isinstance(message, AgentEventMessage):
            self._on_agent_event(message.session_id, message.event)
        elif isinstance(message, SessionEnded):
            self._transition(message.session_id, DispatchPhase.IDLE)
        elif isinstance(message, ServerError) and message.session_id:
            self._on_error(message.session_id, message)

    def _on_agent_event(self, session_id: str, event: AgentEvent) -> None:
        # Events only flow from a live agent
        state = self.state(session_id)
        if state.phase is DispatchPhase.PENDING_START and not is_turn_end(event):
            # Keep the prompt until the start is confirmed or rejected, but
            # route further prompts as input.
            state.live = True
            return
        self._transition(session_id, DispatchPhase.RUNNING)

    def _on_error(self, session_id: str, error: ServerError) -> None:
        state = self.state(session_id)
        if state.phase is not DispatchPhase.PENDING_START or state.pending is None:
            return
        if not error.is_already_running:
            return

        pending = state.pending
        logger.info(
            "Session %s was already running; resending prompt as input",
            session_id,
        )
        self._transition(session_id, DispatchPhase.RUNNING)
        self.send_input(session_id, pending.prompt, False, pending.images)
