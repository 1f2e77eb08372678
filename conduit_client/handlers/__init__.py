"""Handlers package - per-session state derived from the event stream."""
from __future__ import annotations

__all__ = [
    "PromptDispatcher",
    "RawEventTap",
    "SessionEventLog",
    "SessionFeed",
    "StreamClient",
    "TurnStateTracker",
]

from conduit_client.handlers.event_log import RawEventTap, SessionEventLog
from conduit_client.handlers.prompt_dispatcher import PromptDispatcher
from conduit_client.handlers.stream_client import SessionFeed, StreamClient
from conduit_client.handlers.turn_state import TurnStateTracker
