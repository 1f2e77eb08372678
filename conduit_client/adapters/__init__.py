"""Adapters package - wire types, websocket transport and subscriptions.

This package contains everything that touches the backend connection:
event and control-message codecs, the reconnecting transport, and the
per-session subscription registry.
"""
from __future__ import annotations

__all__ = [
    "Transport",
    "SubscriptionRegistry",
    "dict_to_event",
    "event_to_dict",
    "parse_server_message",
]

from conduit_client.adapters.transport import Transport
from conduit_client.adapters.event_bus import SubscriptionRegistry
from conduit_client.adapters.events import dict_to_event, event_to_dict
from conduit_client.adapters.protocol import parse_server_message
