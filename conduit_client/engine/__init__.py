"""Engine package - configuration, models and errors shared by every layer."""
from .models import (
    ConnectionState,
    DispatchPhase,
    ImageAttachment,
    PendingPrompt,
    SessionError,
    SessionMetadata,
    TurnState,
)
from .config import ClientConfig
from .errors import (
    ConduitClientError,
    ConfigError,
    ProtocolDecodeError,
    TransportNotConnectedError,
)

__all__ = [
    # Models
    "ConnectionState",
    "DispatchPhase",
    "ImageAttachment",
    "PendingPrompt",
    "SessionError",
    "SessionMetadata",
    "TurnState",
    # Config
    "ClientConfig",
    # Errors
    "ConduitClientError",
    "ConfigError",
    "ProtocolDecodeError",
    "TransportNotConnectedError",
]
