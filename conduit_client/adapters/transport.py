"""Websocket transport owning the single connection to the backend.

Handles connect, disconnect, reconnect-with-backoff and the periodic
keepalive ping. Knows nothing about sessions: decoded server messages
are handed to ``on_message`` callbacks, and ``on_open`` callbacks run
on every successful open before any frame is read (the subscription
registry uses this to resubscribe).

Everything runs on one asyncio loop. Frames are processed synchronously
to completion, so callbacks never interleave with the next frame.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import aiohttp

from conduit_client.adapters.protocol import (
    ServerMessage,
    decode_frame,
    encode_message,
    ping_message,
)
from conduit_client.engine.config import ClientConfig
from conduit_client.engine.errors import ProtocolDecodeError, TransportNotConnectedError
from conduit_client.engine.models import ConnectionState
from conduit_client.shared.callbacks import fan_out, remover

logger = logging.getLogger(__name__)


class WebSocketLike(Protocol):
    """The subset of ``aiohttp.ClientWebSocketResponse`` the transport uses."""

    async def send_str(self, data: str) -> None: ...

    async def receive(self) -> Any: ...

    async def close(self) -> Any: ...

    def exception(self) -> BaseException | None: ...


# Opens a socket for a URL. Defaults to aiohttp's ws_connect.
Connector = Callable[[str], Awaitable[WebSocketLike]]

_CLOSE_TYPES = frozenset({
    aiohttp.WSMsgType.CLOSE,
    aiohttp.WSMsgType.CLOSING,
    aiohttp.WSMsgType.CLOSED,
})


class Transport:
    """One websocket to the backend, with automatic reconnection."""

    def __init__(
        self,
        url: str,
        *,
        reconnect_delay: float = 1.0,
        max_reconnect_attempts: int = 5,
        keepalive_interval: float = 30.0,
        connect_timeout: float = 10.0,
        connector: Connector | None = None,
    ) -> None:
        self.url = url
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._keepalive_interval = keepalive_interval
        self._connect_timeout = connect_timeout
        self._connector = connector

        self._session: aiohttp.ClientSession | None = None
        self._ws: WebSocketLike | None = None
        self._state = ConnectionState.DISCONNECTED

        # Reconnection state
        self._should_reconnect = True
        self._reconnect_attempts = 0
        self._reconnect_handle: asyncio.TimerHandle | None = None

        # Per-connection tasks
        self._conn_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._keepalive_task: asyncio.Task | None = None
        self._outbox: asyncio.Queue[str] | None = None

        self._open_callbacks: list[Callable[[], None]] = []
        self._close_callbacks: list[Callable[[], None]] = []
        self._message_callbacks: list[Callable[[ServerMessage], None]] = []
        self._state_listeners: list[Callable[[ConnectionState], None]] = []

    @classmethod
    def from_config(
        cls, config: ClientConfig, connector: Connector | None = None,
    ) -> Transport:
        return cls(
            config.ws_url,
            reconnect_delay=config.reconnect_delay,
            max_reconnect_attempts=config.max_reconnect_attempts,
            keepalive_interval=config.keepalive_interval,
            connect_timeout=config.connect_timeout,
            connector=connector,
        )

    # ── observers ───────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._ws is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def on_open(self, cb: Callable[[], None]) -> Callable[[], None]:
        self._open_callbacks.append(cb)
        return remover(self._open_callbacks, cb)

    def on_close(self, cb: Callable[[], None]) -> Callable[[], None]:
        self._close_callbacks.append(cb)
        return remover(self._close_callbacks, cb)

    def on_message(self, cb: Callable[[ServerMessage], None]) -> Callable[[], None]:
        self._message_callbacks.append(cb)
        return remover(self._message_callbacks, cb)

    def add_state_listener(
        self, cb: Callable[[ConnectionState], None],
    ) -> Callable[[], None]:
        self._state_listeners.append(cb)
        return remover(self._state_listeners, cb)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("Connection state %s -> %s", self._state.value, state.value)
        self._state = state
        fan_out(self._state_listeners, state, what="Connection state listener")

    # ── lifecycle ───────────────────────────────────────────────────

    def connect(self) -> None:
        """Open the socket unless already connecting or connected.

        Must be called from a running event loop. Re-enables automatic
        reconnection after an explicit ``disconnect()``.
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return
        self._should_reconnect = True
        self._cancel_reconnect_timer()
        loop = asyncio.get_running_loop()
        self._set_state(ConnectionState.CONNECTING)
        self._conn_task = loop.create_task(
            self._run_connection(), name="conduit-websocket",
        )

    def disconnect(self) -> None:
        """Hard stop: cancel timers, close the socket, stop reconnecting."""
        self._should_reconnect = False
        self._cancel_reconnect_timer()
        ws = self._ws
        if ws is not None:
            self._release(ws)
        task = self._conn_task
        self._conn_task = None
        if task is not None and not task.done():
            task.cancel()
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from %s", self.url)

    async def aclose(self) -> None:
        """Disconnect and wait for teardown, then close the HTTP session."""
        task = self._conn_task
        self.disconnect()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    # ── sending ─────────────────────────────────────────────────────

    def send(self, message: dict[str, Any], *, strict: bool = False) -> bool:
        """Queue *message* for delivery. Fire-and-forget.

        When the socket is not open the message is logged and dropped;
        with ``strict=True`` a TransportNotConnectedError is raised
        instead. Returns whether the message was queued.
        """
        if not self.is_connected or self._outbox is None:
            msg_type = str(message.get("type", "?"))
            logger.warning(
                "Websocket not connected (%s), dropping '%s' message",
                self._state.value, msg_type,
            )
            if strict:
                raise TransportNotConnectedError(msg_type, self._state.value)
            return False
        self._outbox.put_nowait(encode_message(message))
        logger.debug("Queued '%s' message", message.get("type"))
        return True

    async def flush(self) -> None:
        """Wait until every queued frame has been handed to the socket."""
        outbox = self._outbox
        if outbox is not None:
            await outbox.join()

    # ── connection task ─────────────────────────────────────────────

    async def _open_socket(self) -> WebSocketLike:
        if self._connector is not None:
            return await self._connector(self.url)
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await self._session.ws_connect(self.url)

    async def _run_connection(self) -> None:
        try:
            ws = await asyncio.wait_for(self._open_socket(), self._connect_timeout)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("Websocket connect to %s failed: %s", self.url, exc)
            self._set_state(ConnectionState.ERROR)
            self._set_state(ConnectionState.DISCONNECTED)
            self._conn_task = None
            if self._should_reconnect:
                self._schedule_reconnect()
            return

        loop = asyncio.get_running_loop()
        self._ws = ws
        self._reconnect_attempts = 0
        self._outbox = asyncio.Queue()
        self._writer_task = loop.create_task(self._writer_loop(ws, self._outbox))
        self._keepalive_task = loop.create_task(self._keepalive_loop())
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to %s", self.url)
        fan_out(self._open_callbacks, what="Transport open callback")

        try:
            await self._read_loop(ws)
        except Exception:
            # Anything escaping the read loop still ends in a reconnect
            logger.exception("Websocket read loop for %s failed", self.url)
            self._set_state(ConnectionState.ERROR)
        finally:
            self._release(ws)
            await self._close_socket(ws)

        self._conn_task = None
        if self._should_reconnect:
            self._schedule_reconnect()

    async def _read_loop(self, ws: WebSocketLike) -> None:
        while True:
            try:
                msg = await ws.receive()
            except (aiohttp.ClientError, OSError) as exc:
                logger.warning("Websocket read failed: %s", exc)
                self._set_state(ConnectionState.ERROR)
                return

            if msg.type == aiohttp.WSMsgType.TEXT:
                self._handle_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.BINARY:
                logger.debug("Ignoring binary frame (%d bytes)", len(msg.data or b""))
            elif msg.type in _CLOSE_TYPES:
                logger.info("Websocket closed by server")
                return
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("Websocket error: %s", ws.exception())
                self._set_state(ConnectionState.ERROR)
                return

    def _handle_frame(self, text: str) -> None:
        try:
            message = decode_frame(text)
        except ProtocolDecodeError as exc:
            logger.warning("Failed to parse websocket message: %s", exc)
            return
        for cb in list(self._message_callbacks):
            try:
                cb(message)
            except Exception:
                logger.exception(
                    "Message callback failed for '%s' message", message.type,
                )

    async def _writer_loop(
        self, ws: WebSocketLike, outbox: asyncio.Queue[str],
    ) -> None:
        while True:
            text = await outbox.get()
            try:
                await ws.send_str(text)
            except (aiohttp.ClientError, OSError, RuntimeError) as exc:
                logger.warning("Websocket write failed, dropping frame: %s", exc)
            finally:
                outbox.task_done()

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self._keepalive_interval)
            self.send(ping_message())

    def _release(self, ws: WebSocketLike) -> None:
        """Detach *ws* if it is still the live socket."""
        if self._ws is not ws:
            return
        self._ws = None
        self._outbox = None
        for task in (self._writer_task, self._keepalive_task):
            if task is not None and not task.done():
                task.cancel()
        self._writer_task = None
        self._keepalive_task = None
        self._set_state(ConnectionState.DISCONNECTED)
        fan_out(self._close_callbacks, what="Transport close callback")

    async def _close_socket(self, ws: WebSocketLike) -> None:
        try:
            await ws.close()
        except (aiohttp.ClientError, OSError, RuntimeError):
            logger.debug("Error while closing websocket", exc_info=True)

    # ── reconnection ────────────────────────────────────────────────

    def _schedule_reconnect(self) -> None:
        if self._reconnect_attempts >= self._max_reconnect_attempts:
            logger.info(
                "Max reconnect attempts reached (%d), giving up",
                self._max_reconnect_attempts,
            )
            return
        self._reconnect_attempts += 1
        delay = self._reconnect_delay * 2 ** (self._reconnect_attempts - 1)
        logger.debug(
            "Scheduling reconnect attempt %d in %.2fs",
            self._reconnect_attempts, delay,
        )
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if not self._should_reconnect:
            return
        logger.info("Reconnecting (attempt %d)...", self._reconnect_attempts)
        self.connect()

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
