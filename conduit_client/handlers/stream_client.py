"""Composition root for the session event-stream client.

Owns the transport and everything keyed on it: the subscription
registry, the per-session feeds (coalesced log + raw tap), the turn
state tracker and the prompt dispatcher. Embedding UIs talk only to
``StreamClient``.

Typical use::

    async with StreamClient(ClientConfig.from_env()) as client:
        stop = client.observe(session_id, lambda feed: render(feed.events))
        client.send_prompt(session_id, "Fix the failing test", "/repo")
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from conduit_client.adapters.event_bus import EventHandler, SubscriptionRegistry
from conduit_client.adapters.events import AgentEvent
from conduit_client.adapters.protocol import (
    AgentEventMessage,
    ServerError,
    ServerMessage,
    SessionEnded,
    SessionMetadataMessage,
)
from conduit_client.adapters.transport import Connector, Transport
from conduit_client.engine.config import ClientConfig
from conduit_client.engine.models import (
    ConnectionState,
    ImageAttachment,
    SessionError,
    SessionMetadata,
)
from conduit_client.handlers.event_log import RawEventTap, SessionEventLog
from conduit_client.handlers.prompt_dispatcher import PromptDispatcher
from conduit_client.handlers.turn_state import TurnStateTracker, is_turn_end
from conduit_client.shared.callbacks import fan_out, remover

logger = logging.getLogger(__name__)

FeedListener = Callable[["SessionFeed"], None]


class SessionFeed:
    """Everything derived for one observed session.

    Exists only while the session has at least one observer; a new feed
    starts empty.
    """

    def __init__(
        self,
        session_id: str,
        tracker: TurnStateTracker,
        max_events: int,
        max_raw_events: int,
    ) -> None:
        self.session_id = session_id
        self.log = SessionEventLog(max_events)
        self.raw = RawEventTap(max_raw_events)
        self._tracker = tracker
        self._listeners: dict[int, FeedListener] = {}
        self._next_token = 0
        self.unsubscribe: Callable[[], None] | None = None

    @property
    def events(self) -> list[AgentEvent]:
        return self.log.entries

    @property
    def raw_events(self) -> list[AgentEvent]:
        return self.raw.entries

    @property
    def current_message(self) -> str:
        return self.log.current_message

    @property
    def is_processing(self) -> bool:
        return self._tracker.is_working(self.session_id)

    @property
    def observer_count(self) -> int:
        return len(self._listeners)

    def add_listener(self, listener: FeedListener | None) -> int:
        self._next_token += 1
        self._listeners[self._next_token] = listener or _noop_listener
        return self._next_token

    def remove_listener(self, token: int) -> bool:
        return self._listeners.pop(token, None) is not None

    def handle_event(self, event: AgentEvent) -> None:
        # The raw tap sees every event, including ones the log skips
        self.raw.push(event)
        self.log.push(event)
        self.notify()

    def notify(self) -> None:
        fan_out(self._listeners.values(), self, what="Feed listener")


def _noop_listener(feed: SessionFeed) -> None:
    return None


class StreamClient:
    """Multiplexed session event-stream client over one websocket."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        transport: Transport | None = None,
        connector: Connector | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        self.transport = transport or Transport.from_config(self.config, connector)
        self.registry = SubscriptionRegistry(self.transport)
        self.tracker = TurnStateTracker()
        self.dispatcher = PromptDispatcher(self.transport)

        self._feeds: dict[str, SessionFeed] = {}
        self._metadata: dict[str, SessionMetadata] = {}
        self._unseen: set[str] = set()
        self._active_session_id: str | None = None

        self._error_listeners: list[Callable[[SessionError], None]] = []
        self._message_listeners: list[Callable[[ServerMessage], None]] = []

        self.transport.on_message(self._handle_server_message)

    # ── connection ──────────────────────────────────────────────────

    def connect(self) -> None:
        self.transport.connect()

    def disconnect(self) -> None:
        self.transport.disconnect()

    async def aclose(self) -> None:
        await self.transport.aclose()

    async def __aenter__(self) -> StreamClient:
        self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @property
    def connection_state(self) -> ConnectionState:
        return self.transport.state

    def add_state_listener(
        self, cb: Callable[[ConnectionState], None],
    ) -> Callable[[], None]:
        return self.transport.add_state_listener(cb)

    def add_error_listener(
        self, cb: Callable[[SessionError], None],
    ) -> Callable[[], None]:
        self._error_listeners.append(cb)
        return remover(self._error_listeners, cb)

    def add_server_message_listener(
        self, cb: Callable[[ServerMessage], None],
    ) -> Callable[[], None]:
        self._message_listeners.append(cb)
        return remover(self._message_listeners, cb)

    # ── observation ─────────────────────────────────────────────────

    def subscribe(self, session_id: str, handler: EventHandler) -> Callable[[], None]:
        """Receive every raw event for *session_id*."""
        return self.registry.subscribe(session_id, handler)

    def observe(
        self, session_id: str, listener: FeedListener | None = None,
    ) -> Callable[[], None]:
        """Start observing a session's coalesced feed.

        The first observer builds a fresh feed (empty log, idle turn
        state); the last one to stop tears it down and unsubscribes.
        *listener* is called with the feed after each event.
        """
        feed = self._feeds.get(session_id)
        if feed is None:
            self.tracker.reset(session_id)
            feed = SessionFeed(
                session_id,
                self.tracker,
                self.config.max_session_events,
                self.config.max_raw_events,
            )
            self._feeds[session_id] = feed
            feed.unsubscribe = self.registry.subscribe(session_id, feed.handle_event)
            logger.debug("Observing session %s", session_id)

        token = feed.add_listener(listener)
        released = False

        def unobserve() -> None:
            nonlocal released
            if released:
                return
            released = True
            self._release_observer(session_id, feed, token)

        return unobserve

    def _release_observer(self, session_id: str, feed: SessionFeed, token: int) -> None:
        feed.remove_listener(token)
        if feed.observer_count or self._feeds.get(session_id) is not feed:
            return
        del self._feeds[session_id]
        if feed.unsubscribe is not None:
            feed.unsubscribe()
        feed.log.clear()
        feed.raw.clear()
        logger.debug("Stopped observing session %s", session_id)

    def feed(self, session_id: str) -> SessionFeed | None:
        return self._feeds.get(session_id)

    def events(self, session_id: str) -> list[AgentEvent]:
        feed = self._feeds.get(session_id)
        return feed.events if feed else []

    def raw_events(self, session_id: str) -> list[AgentEvent]:
        feed = self._feeds.get(session_id)
        return feed.raw_events if feed else []

    def current_message(self, session_id: str) -> str:
        feed = self._feeds.get(session_id)
        return feed.current_message if feed else ""

    def is_processing(self, session_id: str) -> bool:
        return self.tracker.is_working(session_id)

    @property
    def processing_session_ids(self) -> frozenset[str]:
        return self.tracker.working_sessions

    def session_metadata(self, session_id: str) -> SessionMetadata | None:
        return self._metadata.get(session_id)

    # ── unseen sessions ─────────────────────────────────────────────

    @property
    def unseen_session_ids(self) -> frozenset[str]:
        return frozenset(self._unseen)

    def set_active_session(self, session_id: str | None) -> None:
        """Mark the session the user is looking at; clears its unseen flag."""
        self._active_session_id = session_id
        if session_id is not None:
            self._unseen.discard(session_id)

    # ── prompts ─────────────────────────────────────────────────────

    def send_prompt(
        self,
        session_id: str,
        prompt: str,
        working_dir: str,
        model: str | None = None,
        hidden: bool | None = None,
        images: list[ImageAttachment] | None = None,
    ) -> bool:
        return self.dispatcher.send_prompt(
            session_id, prompt, working_dir, model, hidden, images,
        )

    def start_session(
        self,
        session_id: str,
        prompt: str,
        working_dir: str,
        model: str | None = None,
        hidden: bool | None = None,
        images: list[ImageAttachment] | None = None,
    ) -> bool:
        return self.dispatcher.start_session(
            session_id, prompt, working_dir, model, hidden, images,
        )

    def send_input(
        self,
        session_id: str,
        input: str,
        hidden: bool | None = None,
        images: list[ImageAttachment] | None = None,
    ) -> bool:
        return self.dispatcher.send_input(session_id, input, hidden, images)

    def respond_to_control(
        self, session_id: str, request_id: str, response: Any,
    ) -> bool:
        return self.dispatcher.respond_to_control(session_id, request_id, response)

    def stop_session(self, session_id: str) -> bool:
        """Stop a session; local running/processing state clears immediately."""
        sent = self.dispatcher.stop(session_id)
        if self.tracker.mark_idle(session_id):
            self._notify_feed(session_id)
        return sent

    # ── server messages ─────────────────────────────────────────────

    def _handle_server_message(self, message: ServerMessage) -> None:
        self.dispatcher.handle_server_message(message)

        if isinstance(message, AgentEventMessage):
            # Turn state first so feed listeners read the updated flag
            self.tracker.apply(message.session_id, message.event)
            self.registry.publish(message.session_id, message.event)
            if is_turn_end(message.event):
                self._mark_unseen(message.session_id)
        elif isinstance(message, SessionEnded):
            logger.info(
                "Session %s ended (%s)%s",
                message.session_id, message.reason,
                f": {message.error}" if message.error else "",
            )
            if self.tracker.mark_idle(message.session_id):
                self._notify_feed(message.session_id)
        elif isinstance(message, SessionMetadataMessage):
            self._metadata[message.session_id] = SessionMetadata(
                session_id=message.session_id,
                title=message.title,
                workspace_id=message.workspace_id,
                workspace_branch=message.workspace_branch,
                extra=dict(message.extra),
            )
        elif isinstance(message, ServerError):
            self._surface_error(message)

        fan_out(self._message_listeners, message, what="Server message listener")

    def _surface_error(self, message: ServerError) -> None:
        if message.session_id and message.is_already_running:
            # Handled by the dispatcher's repair path
            logger.debug("Session %s already running", message.session_id)
            return
        logger.warning(
            "Server error%s: %s",
            f" for session {message.session_id}" if message.session_id else "",
            message.message,
        )
        error = SessionError(message=message.message, session_id=message.session_id)
        fan_out(self._error_listeners, error, what="Error listener")

    def _mark_unseen(self, session_id: str) -> None:
        if session_id != self._active_session_id:
            self._unseen.add(session_id)

    def _notify_feed(self, session_id: str) -> None:
        feed = self._feeds.get(session_id)
        if feed is not None:
            feed.notify()
