"""Tests for the coalesced session event log and the raw tap."""
from __future__ import annotations

from conduit_client.adapters.events import (
    AgentEvent,
    AssistantMessage,
    AssistantReasoning,
    CommandOutput,
    ContextCompaction,
    FileChanged,
    Raw,
    TokenUsage,
    ToolStarted,
    TurnStarted,
)
from conduit_client.handlers.event_log import (
    RawEventTap,
    SessionEventLog,
    is_open_entry,
)


def _stream(command: str, output: str) -> CommandOutput:
    return CommandOutput(command=command, output=output, is_streaming=True)


# ── Command output ──


def test_streaming_command_output_coalesces_to_one_entry():
    log = SessionEventLog()
    for chunk in ("a", "b", "c", "d"):
        log.push(_stream("npm test", chunk))

    assert len(log) == 1
    assert log.entries[0].output == "abcd"
    assert log.entries[0].command == "npm test"


def test_command_output_for_different_command_starts_new_entry():
    log = SessionEventLog()
    log.push(_stream("ls", "a"))
    log.push(_stream("pwd", "/repo"))

    assert [e.command for e in log.entries] == ["ls", "pwd"]


def test_non_streaming_command_output_never_merges():
    log = SessionEventLog()
    log.push(_stream("ls", "a"))
    log.push(CommandOutput(command="ls", output="done", exit_code=0))

    assert len(log) == 2


def test_streaming_fragment_after_finished_output_starts_new_entry():
    log = SessionEventLog()
    log.push(CommandOutput(command="ls", output="done", exit_code=0))
    log.push(_stream("ls", "again"))

    assert len(log) == 2


# ── Assistant text ──


def test_assistant_deltas_concatenate():
    log = SessionEventLog()
    log.push(AssistantMessage(text="Hel"))
    log.push(AssistantMessage(text="lo"))

    assert len(log) == 1
    assert log.entries[0].text == "Hello"
    assert log.current_message == "Hello"


def test_final_fragment_with_full_text_replaces():
    log = SessionEventLog()
    log.push(AssistantMessage(text="Hel"))
    log.push(AssistantMessage(text="Hello", is_final=True))

    assert len(log) == 1
    assert log.entries[0].text == "Hello"
    assert log.entries[0].is_final
    assert log.current_message == ""


def test_final_delta_fragment_is_appended():
    log = SessionEventLog()
    log.push(AssistantMessage(text="Hel"))
    log.push(AssistantMessage(text="lo!", is_final=True))

    assert log.entries[0].text == "Hello!"


def test_message_after_final_starts_new_entry():
    log = SessionEventLog()
    log.push(AssistantMessage(text="one", is_final=True))
    log.push(AssistantMessage(text="two"))

    assert [e.text for e in log.entries] == ["one", "two"]


def test_reasoning_fragments_concatenate():
    log = SessionEventLog()
    log.push(AssistantReasoning(text="think"))
    log.push(AssistantReasoning(text="ing"))

    assert len(log) == 1
    assert log.entries[0].text == "thinking"


def test_other_events_append_as_is():
    log = SessionEventLog()
    log.push(AssistantMessage(text="a"))
    log.push(ToolStarted(tool_name="Read", tool_id="t1"))
    log.push(AssistantMessage(text="b"))

    assert [e.event_type for e in log.entries] == [
        "AssistantMessage", "ToolStarted", "AssistantMessage",
    ]


# ── Filtering and bounds ──


def test_telemetry_events_are_skipped():
    log = SessionEventLog()
    assert log.push(TokenUsage()) is False
    assert log.push(ContextCompaction()) is False
    assert log.push(Raw(data={"x": 1})) is False
    assert log.push(AgentEvent(event_type="PlanUpdated")) is True

    assert len(log) == 1


def test_log_is_bounded_keeping_newest():
    log = SessionEventLog(max_events=3)
    for i in range(7):
        log.push(FileChanged(path=f"f{i}", operation="update"))

    assert len(log) == 3
    assert [e.path for e in log.entries] == ["f4", "f5", "f6"]
    assert log.appended_count == 7


def test_merges_do_not_count_as_appends():
    log = SessionEventLog()
    log.push(_stream("ls", "a"))
    log.push(_stream("ls", "b"))
    log.push(TurnStarted())

    assert log.appended_count == 2


def test_clear_resets_log():
    log = SessionEventLog()
    log.push(AssistantMessage(text="x"))
    log.clear()

    assert len(log) == 0
    assert log.appended_count == 0
    assert log.current_message == ""


def test_is_open_entry():
    assert is_open_entry(AssistantMessage(text="x"))
    assert not is_open_entry(AssistantMessage(text="x", is_final=True))
    assert is_open_entry(_stream("ls", "a"))
    assert not is_open_entry(CommandOutput(command="ls", exit_code=0))
    assert is_open_entry(AssistantReasoning(text="hm"))
    assert not is_open_entry(ToolStarted())


def test_raw_tap_keeps_everything_up_to_cap():
    tap = RawEventTap(max_events=2)
    tap.push(TokenUsage())
    tap.push(_stream("ls", "a"))
    tap.push(_stream("ls", "b"))

    assert len(tap) == 2
    assert [e.output for e in tap.entries] == ["a", "b"]
