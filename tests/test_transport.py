"""Tests for the reconnecting websocket transport."""
from __future__ import annotations

import asyncio
import logging

import pytest

from conduit_client.adapters.protocol import AgentEventMessage, Pong
from conduit_client.adapters.transport import Transport
from conduit_client.engine.config import ClientConfig
from conduit_client.engine.errors import TransportNotConnectedError
from conduit_client.engine.models import ConnectionState

from fakes import FakeConnector, settle


def _transport(connector: FakeConnector, **overrides) -> Transport:
    options = {
        "reconnect_delay": 0.01,
        "max_reconnect_attempts": 5,
        "keepalive_interval": 30.0,
        "connect_timeout": 1.0,
    }
    options.update(overrides)
    return Transport("ws://test/ws", connector=connector, **options)


@pytest.mark.asyncio
async def test_connect_opens_socket_and_reports_states():
    connector = FakeConnector()
    transport = _transport(connector)
    states = []
    transport.add_state_listener(states.append)

    transport.connect()
    await settle()

    assert connector.urls == ["ws://test/ws"]
    assert transport.is_connected
    assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
    await transport.aclose()


@pytest.mark.asyncio
async def test_connect_is_idempotent():
    connector = FakeConnector()
    transport = _transport(connector)

    transport.connect()
    transport.connect()
    await settle()
    transport.connect()
    await settle()

    assert len(connector.urls) == 1
    await transport.aclose()


def test_from_config_copies_settings():
    config = ClientConfig(ws_url="ws://elsewhere:9/ws", reconnect_delay=2.5)
    transport = Transport.from_config(config)
    assert transport.url == "ws://elsewhere:9/ws"
    assert transport._reconnect_delay == 2.5


@pytest.mark.asyncio
async def test_messages_are_written_in_order():
    connector = FakeConnector()
    transport = _transport(connector)
    transport.connect()
    await settle()

    for sid in ("a", "b", "c"):
        assert transport.send({"type": "subscribe", "session_id": sid})
    await transport.flush()

    assert [m["session_id"] for m in connector.current.sent] == ["a", "b", "c"]
    await transport.aclose()


@pytest.mark.asyncio
async def test_send_while_disconnected_is_dropped(caplog):
    transport = _transport(FakeConnector())

    with caplog.at_level(logging.WARNING):
        assert transport.send({"type": "ping"}) is False

    assert "dropping 'ping' message" in caplog.text


@pytest.mark.asyncio
async def test_strict_send_raises_when_disconnected():
    transport = _transport(FakeConnector())

    with pytest.raises(TransportNotConnectedError) as exc_info:
        transport.send({"type": "stop_session", "session_id": "s"}, strict=True)

    assert exc_info.value.message_type == "stop_session"
    assert exc_info.value.state == "disconnected"


@pytest.mark.asyncio
async def test_incoming_frames_reach_message_callbacks():
    connector = FakeConnector()
    transport = _transport(connector)
    received = []
    transport.on_message(received.append)
    transport.connect()
    await settle()

    connector.current.push({"type": "pong"})
    connector.current.push_event("s1", {"type": "TurnStarted"})
    await settle()

    assert isinstance(received[0], Pong)
    assert isinstance(received[1], AgentEventMessage)
    assert received[1].session_id == "s1"
    await transport.aclose()


@pytest.mark.asyncio
async def test_malformed_frames_are_dropped(caplog):
    connector = FakeConnector()
    transport = _transport(connector)
    received = []
    transport.on_message(received.append)
    transport.connect()
    await settle()

    with caplog.at_level(logging.WARNING):
        connector.current.push_text("not json at all")
        connector.current.push_text("[1, 2, 3]")
        connector.current.push({"type": "pong"})
        await settle()

    assert len(received) == 1
    assert isinstance(received[0], Pong)
    assert "Failed to parse websocket message" in caplog.text
    assert transport.is_connected
    await transport.aclose()


@pytest.mark.asyncio
async def test_non_string_type_tags_are_dropped(caplog):
    connector = FakeConnector()
    transport = _transport(connector)
    received = []
    transport.on_message(received.append)
    transport.connect()
    await settle()

    with caplog.at_level(logging.WARNING):
        connector.current.push_text('{"type": []}')
        connector.current.push_event("s1", {"type": {"a": 1}})
        connector.current.push({"type": "pong"})
        await settle()

    assert len(received) == 1
    assert isinstance(received[0], Pong)
    assert caplog.text.count("Failed to parse websocket message") == 2
    assert transport.is_connected
    assert len(connector.sockets) == 1
    await transport.aclose()


@pytest.mark.asyncio
async def test_unexpected_read_failure_still_reconnects(caplog):
    connector = FakeConnector()
    transport = _transport(connector, reconnect_delay=0.05)
    states = []
    transport.add_state_listener(states.append)
    transport.connect()
    await settle()

    with caplog.at_level(logging.ERROR):
        connector.current.fail_receive(RuntimeError("read went sideways"))
        await settle()

    assert ConnectionState.ERROR in states
    assert transport.state == ConnectionState.DISCONNECTED
    assert "Websocket read loop for ws://test/ws failed" in caplog.text

    await asyncio.sleep(0.15)
    await settle()

    assert len(connector.sockets) == 2
    assert transport.is_connected
    await transport.aclose()


@pytest.mark.asyncio
async def test_raising_callback_does_not_starve_others():
    connector = FakeConnector()
    transport = _transport(connector)
    received = []

    def broken(message):
        raise RuntimeError("handler bug")

    transport.on_message(broken)
    transport.on_message(received.append)
    transport.connect()
    await settle()

    connector.current.push({"type": "pong"})
    connector.current.push({"type": "pong"})
    await settle()

    assert len(received) == 2
    await transport.aclose()


@pytest.mark.asyncio
async def test_remover_detaches_callback():
    connector = FakeConnector()
    transport = _transport(connector)
    received = []
    remove = transport.on_message(received.append)
    transport.connect()
    await settle()

    remove()
    remove()
    connector.current.push({"type": "pong"})
    await settle()

    assert received == []
    await transport.aclose()


@pytest.mark.asyncio
async def test_keepalive_sends_ping():
    connector = FakeConnector()
    transport = _transport(connector, keepalive_interval=0.01)
    transport.connect()
    await settle()

    await asyncio.sleep(0.05)

    assert "ping" in connector.current.sent_types()
    await transport.aclose()


@pytest.mark.asyncio
async def test_reconnects_after_server_drop():
    connector = FakeConnector()
    transport = _transport(connector)
    opened = []
    closed = []
    transport.on_open(lambda: opened.append(transport.state))
    transport.on_close(lambda: closed.append(transport.state))
    transport.connect()
    await settle()

    connector.current.drop()
    await settle()
    assert closed == [ConnectionState.DISCONNECTED]

    await asyncio.sleep(0.05)
    await settle()

    assert len(connector.sockets) == 2
    assert transport.is_connected
    assert opened == [ConnectionState.CONNECTED, ConnectionState.CONNECTED]
    assert transport.reconnect_attempts == 0
    await transport.aclose()


@pytest.mark.asyncio
async def test_backoff_doubles_per_attempt():
    connector = FakeConnector()
    connector.fail_next = 10
    transport = _transport(connector, reconnect_delay=10.0)
    loop = asyncio.get_running_loop()
    states = []
    transport.add_state_listener(states.append)

    transport.connect()
    await settle()
    first = transport._reconnect_handle.when() - loop.time()

    # Fire the timer by hand instead of waiting ten seconds
    transport._reconnect_handle.cancel()
    transport._reconnect()
    await settle()
    second = transport._reconnect_handle.when() - loop.time()

    assert first == pytest.approx(10.0, abs=0.5)
    assert second == pytest.approx(20.0, abs=0.5)
    assert transport.reconnect_attempts == 2
    assert ConnectionState.ERROR in states
    assert transport.state is ConnectionState.DISCONNECTED
    transport.disconnect()


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    connector = FakeConnector()
    connector.fail_next = 100
    transport = _transport(connector, max_reconnect_attempts=2)

    transport.connect()
    await asyncio.sleep(0.2)

    # Initial attempt plus two retries
    assert len(connector.urls) == 3
    assert transport._reconnect_handle is None
    assert transport.state is ConnectionState.DISCONNECTED
    await transport.aclose()


@pytest.mark.asyncio
async def test_disconnect_cancels_pending_reconnect():
    connector = FakeConnector()
    connector.fail_next = 1
    transport = _transport(connector, reconnect_delay=0.05)

    transport.connect()
    await settle()
    assert transport._reconnect_handle is not None

    transport.disconnect()
    await asyncio.sleep(0.1)

    assert transport._reconnect_handle is None
    assert len(connector.urls) == 1
    assert transport.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_disconnect_closes_socket_and_stops_reconnecting():
    connector = FakeConnector()
    transport = _transport(connector)
    transport.connect()
    await settle()
    ws = connector.current

    await transport.aclose()
    await asyncio.sleep(0.05)

    assert ws.closed
    assert len(connector.sockets) == 1
    assert not transport.is_connected
    assert transport.send({"type": "ping"}) is False


@pytest.mark.asyncio
async def test_connect_after_disconnect_reenables_reconnect():
    connector = FakeConnector()
    transport = _transport(connector)
    transport.connect()
    await settle()
    transport.disconnect()
    await settle()

    transport.connect()
    await settle()
    connector.current.drop()
    await asyncio.sleep(0.05)
    await settle()

    assert len(connector.sockets) == 3
    assert transport.is_connected
    await transport.aclose()
