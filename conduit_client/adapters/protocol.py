"""Control messages exchanged with the backend over the websocket.

Client -> server messages are plain dicts built by the ``*_message``
helpers below (optional fields left as ``None`` are omitted, matching
what the backend expects). Server -> client messages are parsed into
typed dataclasses by ``parse_server_message``.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from conduit_client.adapters.events import AgentEvent, dict_to_event
from conduit_client.engine.errors import ProtocolDecodeError
from conduit_client.engine.models import ImageAttachment

# Substring the backend uses when a start races an already-live agent
ALREADY_RUNNING_MARKER = "already running"


# ── Client -> server ──


def _compact(message: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in message.items() if v is not None}


def _images(images: list[ImageAttachment] | None) -> list[dict[str, str]] | None:
    if images is None:
        return None
    return [img.to_dict() for img in images]


def ping_message() -> dict[str, Any]:
    return {"type": "ping"}


def subscribe_message(session_id: str) -> dict[str, Any]:
    return {"type": "subscribe", "session_id": session_id}


def unsubscribe_message(session_id: str) -> dict[str, Any]:
    return {"type": "unsubscribe", "session_id": session_id}


def start_session_message(
    session_id: str,
    prompt: str,
    working_dir: str,
    model: str | None = None,
    hidden: bool | None = None,
    images: list[ImageAttachment] | None = None,
) -> dict[str, Any]:
    return _compact({
        "type": "start_session",
        "session_id": session_id,
        "prompt": prompt,
        "working_dir": working_dir,
        "model": model,
        "hidden": hidden,
        "images": _images(images),
    })


def send_input_message(
    session_id: str,
    input: str,
    hidden: bool | None = None,
    images: list[ImageAttachment] | None = None,
) -> dict[str, Any]:
    return _compact({
        "type": "send_input",
        "session_id": session_id,
        "input": input,
        "hidden": hidden,
        "images": _images(images),
    })


def respond_to_control_message(
    session_id: str, request_id: str, response: Any,
) -> dict[str, Any]:
    # response is forwarded verbatim, including an explicit None
    return {
        "type": "respond_to_control",
        "session_id": session_id,
        "request_id": request_id,
        "response": response,
    }


def stop_session_message(session_id: str) -> dict[str, Any]:
    return {"type": "stop_session", "session_id": session_id}


# ── Server -> client ──


@dataclass
class ServerMessage:
    """Base message from the backend."""
    type: str = ""


@dataclass
class Pong(ServerMessage):
    type: str = "pong"


@dataclass
class Subscribed(ServerMessage):
    type: str = "subscribed"
    session_id: str = ""


@dataclass
class Unsubscribed(ServerMessage):
    type: str = "unsubscribed"
    session_id: str = ""


@dataclass
class SessionStarted(ServerMessage):
    type: str = "session_started"
    session_id: str = ""
    agent_type: str = ""
    agent_session_id: str | None = None


@dataclass
class SessionMetadataMessage(ServerMessage):
    type: str = "session_metadata"
    session_id: str = ""
    title: str | None = None
    workspace_id: str | None = None
    workspace_branch: str | None = None
    # keys the backend sent beyond the ones above
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentEventMessage(ServerMessage):
    type: str = "agent_event"
    session_id: str = ""
    event: AgentEvent = field(default_factory=AgentEvent)


@dataclass
class SessionEnded(ServerMessage):
    type: str = "session_ended"
    session_id: str = ""
    reason: str = ""
    error: str | None = None


@dataclass
class ServerError(ServerMessage):
    type: str = "error"
    message: str = ""
    session_id: str | None = None

    @property
    def is_already_running(self) -> bool:
        return isinstance(self.message, str) and ALREADY_RUNNING_MARKER in self.message


_MESSAGE_MAP: dict[str, type[ServerMessage]] = {
    "pong": Pong,
    "subscribed": Subscribed,
    "unsubscribed": Unsubscribed,
    "session_started": SessionStarted,
    "session_metadata": SessionMetadataMessage,
    "agent_event": AgentEventMessage,
    "session_ended": SessionEnded,
    "error": ServerError,
}


def parse_server_message(data: Any) -> ServerMessage:
    """Convert a decoded JSON value to a typed server message.

    Raises ProtocolDecodeError when *data* is not a JSON object or its
    ``type`` tag is not a string. Unknown ``type`` values come back as a
    bare ServerMessage.
    """
    if not isinstance(data, dict):
        raise ProtocolDecodeError(
            f"expected object, got {type(data).__name__}", repr(data),
        )
    msg_type = data.get("type", "")
    if not isinstance(msg_type, str):
        raise ProtocolDecodeError("message type must be a string", repr(data))
    cls = _MESSAGE_MAP.get(msg_type, ServerMessage)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if cls is AgentEventMessage:
        raw_event = data.get("event")
        if not isinstance(raw_event, dict):
            raise ProtocolDecodeError("agent_event without event object", repr(data))
        filtered["event"] = dict_to_event(raw_event)
    elif cls is ServerError:
        raw_message = filtered.get("message")
        filtered["message"] = "" if raw_message is None else str(raw_message)
    elif cls is SessionMetadataMessage:
        filtered["extra"] = {k: v for k, v in data.items() if k not in valid_fields}
    filtered["type"] = str(msg_type)
    return cls(**filtered)


def decode_frame(text: str) -> ServerMessage:
    """Decode one websocket text frame."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProtocolDecodeError(f"invalid JSON: {exc.msg}", text) from exc
    return parse_server_message(data)


def encode_message(message: dict[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"))
