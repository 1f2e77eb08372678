"""Core enums and small value types shared across the client.

Single source of truth to avoid circular imports between the
transport, the handlers and the CLI.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ConnectionState(str, Enum):
    """Externally observable state of the websocket connection."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class TurnState(str, Enum):
    """Whether the agent behind a session is currently working a turn."""
    IDLE = "idle"
    WORKING = "working"


class DispatchPhase(str, Enum):
    """Prompt dispatcher phases. See lifecycle.py for transition rules."""
    IDLE = "idle"
    PENDING_START = "pending_start"
    RUNNING = "running"


@dataclass
class ImageAttachment:
    """Base64 image payload attached to a prompt."""
    data: str
    media_type: str

    def to_dict(self) -> dict[str, str]:
        return {"data": self.data, "media_type": self.media_type}


@dataclass
class PendingPrompt:
    """A prompt sent as ``start_session`` whose outcome is not yet known."""
    prompt: str
    working_dir: str
    model: str | None = None
    hidden: bool | None = None
    images: list[ImageAttachment] | None = None


@dataclass
class SessionError:
    """A server-side rejection scoped to one session (or to none)."""
    message: str
    session_id: str | None = None


@dataclass
class SessionMetadata:
    """Latest title/workspace info the server pushed for a session."""
    session_id: str
    title: str | None = None
    workspace_id: str | None = None
    workspace_branch: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
