"""Conduit session event-stream client.

Multiplexes agent session event streams over one websocket and derives
per-session coalesced logs, processing state and prompt routing.
"""
from __future__ import annotations

__all__ = ["ClientConfig", "StreamClient"]

from conduit_client.engine.config import ClientConfig
from conduit_client.handlers.stream_client import StreamClient
