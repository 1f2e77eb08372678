"""One-line rendering of coalesced events for terminal output.

A registry-based formatter: each event type gets a small function that
produces a ``FormattedEvent`` (icon, label, body), and ``render_event``
turns that into Rich ``Text``. Adding a new event format requires only
a single decorated function:

    @event_formatter("MyEvent")
    def _format_my_event(event):
        return FormattedEvent(icon="•", label="my event", body=...)
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable

from rich.text import Text

from conduit_client.adapters.events import (
    AgentEvent,
    AssistantMessage,
    AssistantReasoning,
    CommandOutput,
    ControlRequest,
    Error,
    FileChanged,
    SessionInit,
    ToolCompleted,
    ToolStarted,
    TurnCompleted,
    TurnFailed,
)


@dataclass
class FormattedEvent:
    """Structured representation of a formatted event."""

    icon: str = ""
    label: str = ""
    body: str = ""
    style: str = ""


_FORMATTERS: dict[str, Callable[[Any], FormattedEvent]] = {}


def event_formatter(event_type: str):
    """Decorator to register a formatter for a given event type."""

    def decorator(fn: Callable[[Any], FormattedEvent]):
        _FORMATTERS[event_type] = fn
        return fn

    return decorator


def format_event(event: AgentEvent) -> FormattedEvent:
    """Dispatch to a registered formatter or the default."""
    formatter = _FORMATTERS.get(event.event_type, _format_default)
    return formatter(event)


def render_event(event: AgentEvent, max_body: int = 400) -> Text:
    """Render *event* as a single Rich Text line (body may wrap)."""
    fmt = format_event(event)
    text = Text()
    if fmt.icon:
        text.append(f"{fmt.icon} ")
    text.append(fmt.label, style=fmt.style or "bold")
    if fmt.body:
        text.append("  ")
        text.append(_trunc(fmt.body, max_body))
    return text


# ── Helpers ──


def _trunc(text: str, length: int = 60) -> str:
    """Truncate text with ellipsis."""
    if not text:
        return ""
    text = text.strip()
    return text if len(text) <= length else text[: length - 1] + "…"


def _compact_json(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return str(value)


# ── Formatters ──


def _format_default(event: AgentEvent) -> FormattedEvent:
    return FormattedEvent(icon="·", label=event.event_type or "event", style="dim")


@event_formatter("SessionInit")
def _format_session_init(event: SessionInit) -> FormattedEvent:
    return FormattedEvent(
        icon="◆", label="session", body=event.model or "", style="cyan",
    )


@event_formatter("TurnStarted")
def _format_turn_started(event: AgentEvent) -> FormattedEvent:
    return FormattedEvent(icon="▶", label="turn started", style="cyan")


@event_formatter("TurnCompleted")
def _format_turn_completed(event: TurnCompleted) -> FormattedEvent:
    usage = event.usage
    body = f"{usage.input_tokens} in / {usage.output_tokens} out"
    return FormattedEvent(icon="■", label="turn completed", body=body, style="green")


@event_formatter("TurnFailed")
def _format_turn_failed(event: TurnFailed) -> FormattedEvent:
    return FormattedEvent(icon="✗", label="turn failed", body=event.error, style="red")


@event_formatter("AssistantMessage")
def _format_assistant_message(event: AssistantMessage) -> FormattedEvent:
    label = "assistant" if event.is_final else "assistant…"
    return FormattedEvent(icon="💬", label=label, body=event.text, style="bold white")


@event_formatter("AssistantReasoning")
def _format_reasoning(event: AssistantReasoning) -> FormattedEvent:
    return FormattedEvent(icon="💭", label="thinking", body=event.text, style="italic dim")


@event_formatter("ToolStarted")
def _format_tool_started(event: ToolStarted) -> FormattedEvent:
    return FormattedEvent(
        icon="🔧", label=event.tool_name or "tool",
        body=_compact_json(event.arguments), style="yellow",
    )


@event_formatter("ToolCompleted")
def _format_tool_completed(event: ToolCompleted) -> FormattedEvent:
    if event.success:
        return FormattedEvent(
            icon="✓", label="tool done", body=event.result or "", style="green",
        )
    return FormattedEvent(
        icon="✗", label="tool failed", body=event.error or "", style="red",
    )


@event_formatter("ControlRequest")
def _format_control_request(event: ControlRequest) -> FormattedEvent:
    return FormattedEvent(
        icon="?", label=f"permission: {event.tool_name}",
        body=f"[{event.request_id}] {_compact_json(event.input)}",
        style="magenta",
    )


@event_formatter("FileChanged")
def _format_file_changed(event: FileChanged) -> FormattedEvent:
    return FormattedEvent(icon="📄", label=event.operation or "changed", body=event.path)


@event_formatter("CommandOutput")
def _format_command_output(event: CommandOutput) -> FormattedEvent:
    label = f"$ {event.command}"
    if event.exit_code is not None:
        label += f" (exit {event.exit_code})"
    return FormattedEvent(icon="⌨", label=label, body=event.output, style="blue")


@event_formatter("Error")
def _format_error(event: Error) -> FormattedEvent:
    label = "fatal error" if event.is_fatal else "error"
    if event.code:
        label += f" [{event.code}]"
    return FormattedEvent(icon="⚠", label=label, body=event.message, style="red")
