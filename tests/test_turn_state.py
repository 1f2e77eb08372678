"""Tests for the per-session turn state fold."""
from __future__ import annotations

import pytest

from conduit_client.adapters.events import (
    AssistantMessage,
    Error,
    TokenUsage,
    ToolStarted,
    TurnCompleted,
    TurnFailed,
    TurnStarted,
)
from conduit_client.engine.models import TurnState
from conduit_client.handlers.turn_state import (
    TurnStateTracker,
    fold_turn_state,
    is_turn_end,
    next_turn_state,
)


def test_final_message_ends_turn():
    events = [
        TurnStarted(),
        AssistantMessage(text="Hi"),
        AssistantMessage(text="Hi there", is_final=True),
    ]
    assert fold_turn_state(events) is TurnState.IDLE


def test_turn_started_alone_is_working():
    assert fold_turn_state([TurnStarted()]) is TurnState.WORKING


@pytest.mark.parametrize("event", [
    TurnCompleted(),
    TurnFailed(error="crashed"),
    Error(message="fatal", is_fatal=True),
])
def test_terminal_events_return_to_idle(event):
    assert next_turn_state(TurnState.WORKING, event) is TurnState.IDLE


@pytest.mark.parametrize("event", [
    Error(message="retrying", is_fatal=False),
    ToolStarted(tool_name="Bash"),
    TokenUsage(),
    AssistantMessage(text="partial"),
])
def test_other_events_keep_state(event):
    assert next_turn_state(TurnState.WORKING, event) is TurnState.WORKING
    assert next_turn_state(TurnState.IDLE, event) is TurnState.IDLE


def test_is_turn_end():
    assert is_turn_end(TurnCompleted())
    assert is_turn_end(TurnFailed())
    assert is_turn_end(Error(is_fatal=True))
    assert not is_turn_end(Error(is_fatal=False))
    assert not is_turn_end(AssistantMessage(text="x", is_final=True))


def test_tracker_reports_changes_per_session():
    tracker = TurnStateTracker()

    assert tracker.apply("s1", TurnStarted()) is True
    assert tracker.apply("s1", TurnStarted()) is False
    assert tracker.apply("s2", ToolStarted()) is False

    assert tracker.is_working("s1")
    assert not tracker.is_working("s2")
    assert tracker.working_sessions == frozenset({"s1"})


def test_tracker_mark_idle_and_reset():
    tracker = TurnStateTracker()
    tracker.apply("s1", TurnStarted())

    assert tracker.mark_idle("s1") is True
    assert tracker.mark_idle("s1") is False

    tracker.apply("s1", TurnStarted())
    tracker.reset("s1")
    assert tracker.state("s1") is TurnState.IDLE
