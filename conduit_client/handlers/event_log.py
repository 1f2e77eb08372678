"""Coalesced per-session event log.

Turns the raw chronological event feed of one session into a bounded,
render-ready sequence. Streamed fragments that belong to one logical
unit are merged into the previous entry; merging only ever looks at the
last entry, so each event costs O(1).
"""
from __future__ import annotations

from collections import deque
from dataclasses import replace

from conduit_client.adapters.events import (
    AgentEvent,
    AssistantMessage,
    AssistantReasoning,
    CommandOutput,
)

MAX_SESSION_EVENTS = 500
MAX_RAW_EVENTS = 200

# Telemetry and passthrough events are never rendered
SKIPPED_EVENT_TYPES = frozenset({"Raw", "TokenUsage", "ContextCompaction"})


def _merge_command_output(last: AgentEvent, event: CommandOutput) -> AgentEvent | None:
    if (
        isinstance(last, CommandOutput)
        and last.is_streaming
        and last.command == event.command
    ):
        return replace(event, output=last.output + event.output)
    return None


def _merge_assistant_message(
    last: AgentEvent, event: AssistantMessage,
) -> AgentEvent | None:
    if not isinstance(last, AssistantMessage) or last.is_final:
        return None
    # Some backends send the complete text as the final fragment instead
    # of a delta. Treat a final fragment that already starts with what we
    # have as the whole message.
    if event.is_final and event.text.startswith(last.text):
        text = event.text
    else:
        text = last.text + event.text
    return replace(event, text=text)


def _merge_reasoning(last: AgentEvent, event: AssistantReasoning) -> AgentEvent | None:
    if isinstance(last, AssistantReasoning):
        return replace(event, text=last.text + event.text)
    return None


def is_open_entry(entry: AgentEvent) -> bool:
    """True if a later event could still be merged into *entry*."""
    if isinstance(entry, AssistantMessage):
        return not entry.is_final
    if isinstance(entry, CommandOutput):
        return entry.is_streaming
    return isinstance(entry, AssistantReasoning)


class SessionEventLog:
    """Bounded, merged display log for one session."""

    def __init__(self, max_events: int = MAX_SESSION_EVENTS) -> None:
        self._entries: deque[AgentEvent] = deque(maxlen=max_events)
        # Entries ever appended (merges excluded); survives eviction
        self._appended = 0

    @property
    def max_events(self) -> int:
        return self._entries.maxlen or 0

    @property
    def entries(self) -> list[AgentEvent]:
        return list(self._entries)

    @property
    def appended_count(self) -> int:
        return self._appended

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(list(self._entries))

    @property
    def current_message(self) -> str:
        """Text of a trailing assistant message that is still streaming."""
        if not self._entries:
            return ""
        last = self._entries[-1]
        if isinstance(last, AssistantMessage) and not last.is_final:
            return last.text
        return ""

    def push(self, event: AgentEvent) -> bool:
        """Fold *event* into the log. Returns False if it was skipped."""
        if event.event_type in SKIPPED_EVENT_TYPES:
            return False

        merged = self._merge_with_last(event)
        if merged is not None:
            self._entries[-1] = merged
        else:
            # deque(maxlen) drops the oldest entry once full
            self._entries.append(event)
            self._appended += 1
        return True

    def clear(self) -> None:
        self._entries.clear()
        self._appended = 0

    def _merge_with_last(self, event: AgentEvent) -> AgentEvent | None:
        if not self._entries:
            return None
        last = self._entries[-1]
        if isinstance(event, CommandOutput):
            if not event.is_streaming:
                return None
            return _merge_command_output(last, event)
        if isinstance(event, AssistantMessage):
            return _merge_assistant_message(last, event)
        if isinstance(event, AssistantReasoning):
            return _merge_reasoning(last, event)
        return None


class RawEventTap:
    """Unfiltered, bounded copy of every event, for diagnostics."""

    def __init__(self, max_events: int = MAX_RAW_EVENTS) -> None:
        self._entries: deque[AgentEvent] = deque(maxlen=max_events)

    @property
    def entries(self) -> list[AgentEvent]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def push(self, event: AgentEvent) -> None:
        self._entries.append(event)

    def clear(self) -> None:
        self._entries.clear()
