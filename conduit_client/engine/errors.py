"""Exception hierarchy for the session event-stream client.

Specific exceptions for each failure mode. Transport and protocol
failures are normally logged and recovered from; these types exist for
the few call paths that opt into raising.
"""
from __future__ import annotations


class ConduitClientError(Exception):
    """Base exception for all client errors."""


class TransportNotConnectedError(ConduitClientError):
    """A message was sent while the socket was not open."""
    def __init__(self, message_type: str, state: str):
        self.message_type = message_type
        self.state = state
        super().__init__(
            f"Cannot send '{message_type}': connection is {state}"
        )


class ProtocolDecodeError(ConduitClientError):
    """A frame from the server could not be decoded into a message."""
    def __init__(self, reason: str, frame: str = ""):
        self.reason = reason
        self.frame = frame
        preview = frame if len(frame) <= 120 else frame[:117] + "..."
        super().__init__(f"Malformed server frame ({reason}): {preview!r}")


class ConfigError(ConduitClientError):
    """Configuration value or file has an invalid shape."""
    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration for '{key}': {reason}")
