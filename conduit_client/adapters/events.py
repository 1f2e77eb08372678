"""Agent event types carried inside ``agent_event`` server messages.

Each event corresponds to a backend event dict tagged by ``type``,
parsed into a typed dataclass for safe consumption by the handlers.
The event types are unified across every agent the backend can run.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from conduit_client.engine.errors import ProtocolDecodeError


@dataclass
class TokenUsageStats:
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_value(cls, value: Any) -> TokenUsageStats:
        if isinstance(value, TokenUsageStats):
            return value
        if not isinstance(value, dict):
            return cls()
        valid = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in value.items() if k in valid})


@dataclass
class AgentEvent:
    """Base event from the backend agent stream."""
    event_type: str = ""


@dataclass
class SessionInit(AgentEvent):
    event_type: str = "SessionInit"
    session_id: str = ""
    model: str | None = None


@dataclass
class TurnStarted(AgentEvent):
    event_type: str = "TurnStarted"


@dataclass
class TurnCompleted(AgentEvent):
    event_type: str = "TurnCompleted"
    usage: TokenUsageStats = field(default_factory=TokenUsageStats)


@dataclass
class TurnFailed(AgentEvent):
    event_type: str = "TurnFailed"
    error: str = ""


@dataclass
class AssistantMessage(AgentEvent):
    """Streamed assistant text. Non-final fragments are deltas."""
    event_type: str = "AssistantMessage"
    text: str = ""
    is_final: bool = False


@dataclass
class AssistantReasoning(AgentEvent):
    event_type: str = "AssistantReasoning"
    text: str = ""


@dataclass
class ToolStarted(AgentEvent):
    event_type: str = "ToolStarted"
    tool_name: str = ""
    tool_id: str = ""
    arguments: Any = None


@dataclass
class ToolCompleted(AgentEvent):
    event_type: str = "ToolCompleted"
    tool_id: str = ""
    success: bool = True
    result: str | None = None
    error: str | None = None


@dataclass
class ControlRequest(AgentEvent):
    """The agent is asking the user for a permission/answer."""
    event_type: str = "ControlRequest"
    request_id: str = ""
    tool_name: str = ""
    tool_use_id: str | None = None
    input: Any = None


@dataclass
class FileChanged(AgentEvent):
    event_type: str = "FileChanged"
    path: str = ""
    operation: str = ""  # "create", "update", "delete"


@dataclass
class CommandOutput(AgentEvent):
    event_type: str = "CommandOutput"
    command: str = ""
    output: str = ""
    exit_code: int | None = None
    is_streaming: bool = False


@dataclass
class TokenUsage(AgentEvent):
    """Per-turn token usage and context window utilization."""
    event_type: str = "TokenUsage"
    usage: TokenUsageStats = field(default_factory=TokenUsageStats)
    context_window: int | None = None
    usage_percent: float | None = None


@dataclass
class ContextCompaction(AgentEvent):
    event_type: str = "ContextCompaction"
    reason: str = ""
    tokens_before: int = 0
    tokens_after: int = 0


@dataclass
class Error(AgentEvent):
    event_type: str = "Error"
    message: str = ""
    is_fatal: bool = False
    code: str | None = None
    details: Any = None


@dataclass
class Raw(AgentEvent):
    event_type: str = "Raw"
    data: Any = None


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[AgentEvent]] = {
    "SessionInit": SessionInit,
    "TurnStarted": TurnStarted,
    "TurnCompleted": TurnCompleted,
    "TurnFailed": TurnFailed,
    "AssistantMessage": AssistantMessage,
    "AssistantReasoning": AssistantReasoning,
    "ToolStarted": ToolStarted,
    "ToolCompleted": ToolCompleted,
    "ControlRequest": ControlRequest,
    "FileChanged": FileChanged,
    "CommandOutput": CommandOutput,
    "TokenUsage": TokenUsage,
    "ContextCompaction": ContextCompaction,
    "Error": Error,
    "Raw": Raw,
}

# Fields holding nested usage dicts that need their own dataclass
_USAGE_FIELDS = ("usage",)


def event_to_dict(event: AgentEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if isinstance(val, TokenUsageStats):
            val = {k: getattr(val, k) for k in val.__dataclass_fields__}
        d[f] = val
    # Use "type" key instead of "event_type" to match the wire format
    d["type"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> AgentEvent:
    """Convert a wire event dict to a typed event dataclass.

    Raises ProtocolDecodeError when the ``type`` tag is not a string.
    """
    event_type = data.get("type", "")
    if not isinstance(event_type, str):
        raise ProtocolDecodeError("event type must be a string", repr(data))
    cls = _EVENT_MAP.get(event_type, AgentEvent)
    # Filter dict keys to only those the dataclass accepts
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {
        k: v for k, v in data.items()
        if k in valid_fields and k != "event_type"
    }
    for key in _USAGE_FIELDS:
        if key in filtered:
            filtered[key] = TokenUsageStats.from_value(filtered[key])
    filtered["event_type"] = str(event_type)
    return cls(**filtered)
