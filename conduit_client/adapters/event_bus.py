"""Per-session event bus bridging the transport to session consumers.

Handlers subscribe to a session id; the registry keeps the server's
subscription state in step with whether any local handler exists, and
replays every live subscription after the transport reopens (server
subscriptions do not survive a socket replacement).
"""
from __future__ import annotations

import itertools
import logging
from collections.abc import Callable

from conduit_client.adapters.events import AgentEvent
from conduit_client.adapters.protocol import subscribe_message, unsubscribe_message
from conduit_client.adapters.transport import Transport

logger = logging.getLogger(__name__)

EventHandler = Callable[[AgentEvent], None]


class SubscriptionRegistry:
    """Session id -> ordered handler handles, plus the server-side active set."""

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._handlers: dict[str, dict[int, EventHandler]] = {}
        # Sessions with an outstanding server-side subscribe
        self._active: set[str] = set()
        self._tokens = itertools.count(1)

        transport.on_open(self.resubscribe_all)
        transport.on_close(self.connection_lost)

    @property
    def session_ids(self) -> list[str]:
        return list(self._handlers)

    @property
    def active_session_ids(self) -> frozenset[str]:
        return frozenset(self._active)

    def handler_count(self, session_id: str) -> int:
        return len(self._handlers.get(session_id, {}))

    def subscribe(self, session_id: str, handler: EventHandler) -> Callable[[], None]:
        """Register *handler* for *session_id*; returns its unsubscribe callable."""
        token = next(self._tokens)
        self._handlers.setdefault(session_id, {})[token] = handler
        self._subscribe_if_connected(session_id)

        def unsubscribe() -> None:
            self.unsubscribe(session_id, token)

        return unsubscribe

    def unsubscribe(self, session_id: str, token: int) -> None:
        """Remove one handler. Safe to call more than once."""
        handlers = self._handlers.get(session_id)
        if handlers is None or handlers.pop(token, None) is None:
            return
        if handlers:
            return
        del self._handlers[session_id]
        if session_id in self._active:
            self._active.discard(session_id)
            self._transport.send(unsubscribe_message(session_id))
            logger.debug("Unsubscribed from session %s", session_id)

    def publish(self, session_id: str, event: AgentEvent) -> None:
        """Deliver *event* to every handler of *session_id*.

        A raising handler is logged and does not stop delivery to the rest.
        """
        handlers = self._handlers.get(session_id)
        if not handlers:
            logger.debug(
                "No handlers for session %s, dropping %s",
                session_id, event.event_type,
            )
            return
        for handler in list(handlers.values()):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler failed for session %s (%s)",
                    session_id, event.event_type,
                )

    def resubscribe_all(self) -> None:
        """Send one subscribe per session that has handlers.

        The previous active set is discarded: it described a socket that
        no longer exists.
        """
        if not self._transport.is_connected:
            return
        self._active.clear()
        for session_id in list(self._handlers):
            if self._transport.send(subscribe_message(session_id)):
                self._active.add(session_id)
        if self._active:
            logger.info("Resubscribed to %d session(s)", len(self._active))

    def connection_lost(self) -> None:
        self._active.clear()

    def _subscribe_if_connected(self, session_id: str) -> None:
        if not self._transport.is_connected or session_id in self._active:
            return
        if self._transport.send(subscribe_message(session_id)):
            self._active.add(session_id)
            logger.debug("Subscribed to session %s", session_id)
