"""CLI entry point for the session event-stream client.

Usage:
    conduit-client watch SESSION_ID
    conduit-client watch SESSION_ID --raw
    conduit-client send SESSION_ID "Fix the failing test" --cwd ~/src/project
    conduit-client stop SESSION_ID
    conduit-client watch SESSION_ID --url ws://10.0.0.5:3000/ws
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

import yaml
from rich.console import Console
from rich.text import Text

from conduit_client.adapters.events import AgentEvent, TurnCompleted
from conduit_client.adapters.protocol import (
    ServerMessage,
    SessionEnded,
    stop_session_message,
)
from conduit_client.engine.config import ClientConfig
from conduit_client.engine.errors import ConfigError, TransportNotConnectedError
from conduit_client.engine.models import ConnectionState, SessionError
from conduit_client.engine.yaml_config import (
    ClientFileConfig,
    discover_config_path,
    load_yaml_config,
)
from conduit_client.handlers.event_log import is_open_entry
from conduit_client.handlers.stream_client import SessionFeed, StreamClient
from conduit_client.handlers.turn_state import is_turn_end
from conduit_client.shared.formatters.event_line import render_event


class FeedPrinter:
    """Prints each coalesced entry once, as soon as it can no longer change.

    The log only ever merges into its last entry, so everything before
    it is settled; the last entry is settled too unless it is still
    streaming.
    """

    def __init__(self, console: Console, max_body: int = 400) -> None:
        self._console = console
        self._max_body = max_body
        self._printed = 0

    def __call__(self, feed: SessionFeed) -> None:
        entries = feed.events
        end = feed.log.appended_count
        if entries and is_open_entry(entries[-1]):
            end -= 1
        self._print_until(feed, end)

    def flush(self, feed: SessionFeed) -> None:
        """Print whatever is left, including a still-streaming entry."""
        self._print_until(feed, feed.log.appended_count)

    def print_event(self, event: AgentEvent) -> None:
        self._console.print(render_event(event, self._max_body))

    def _print_until(self, feed: SessionFeed, end: int) -> None:
        entries = feed.events
        # Sequence number of entries[0]; older entries were evicted
        first = feed.log.appended_count - len(entries)
        for seq in range(max(self._printed, first), end):
            self.print_event(entries[seq - first])
        self._printed = max(self._printed, end)


class _TurnOutcome:
    """Resolves once the current turn of one session is over."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.done = asyncio.Event()
        self.exit_code = 0

    def on_event(self, event: AgentEvent) -> None:
        if is_turn_end(event):
            if not isinstance(event, TurnCompleted):
                self.exit_code = 1
            self.done.set()

    def on_server_message(self, message: ServerMessage) -> None:
        if isinstance(message, SessionEnded) and message.session_id == self.session_id:
            if message.error:
                self.exit_code = 1
            self.done.set()

    def on_error(self, error: SessionError) -> None:
        if error.session_id in (None, self.session_id):
            self.exit_code = 1
            self.done.set()


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    # Configure logging
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    console = Console()
    try:
        file_config = _load_config(args)
    except (ConfigError, FileNotFoundError, yaml.YAMLError) as exc:
        _print_error(console, str(exc))
        sys.exit(2)

    if not args.verbose:
        logging.getLogger().setLevel(file_config.client.log_level.upper())

    command = _COMMANDS[args.command]
    try:
        exit_code = asyncio.run(command(args, file_config, console))
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        exit_code = 130
    sys.exit(exit_code)


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--url",
        default=None,
        help="Backend websocket URL (default: from config)",
    )
    common.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (default: .conduit/client.yaml or conduit.yaml)",
    )
    common.add_argument(
        "--wait",
        type=float,
        default=15.0,
        help="Seconds to wait for the connection (default: 15)",
    )
    common.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    parser = argparse.ArgumentParser(
        prog="conduit-client",
        description="Stream and drive agent sessions on a Conduit backend",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    watch = sub.add_parser(
        "watch", parents=[common], help="Print a session's events as they arrive",
    )
    watch.add_argument("session_id")
    watch.add_argument(
        "--raw",
        action="store_true",
        help="Print every raw event instead of the coalesced log",
    )

    send = sub.add_parser(
        "send", parents=[common], help="Send a prompt and stream the turn",
    )
    send.add_argument("session_id")
    send.add_argument("prompt")
    send.add_argument(
        "--cwd",
        default=None,
        help="Working directory for a new agent (default: from config, then current dir)",
    )
    send.add_argument(
        "--model",
        default=None,
        help="Model for a new agent (default: from config)",
    )

    stop = sub.add_parser("stop", parents=[common], help="Stop a running session")
    stop.add_argument("session_id")
    return parser


def _load_config(args: argparse.Namespace) -> ClientFileConfig:
    """YAML file when one is given or discovered, else CONDUIT_* env vars."""
    path = args.config or discover_config_path()
    if path is not None:
        file_config = load_yaml_config(path)
    else:
        file_config = ClientFileConfig(client=ClientConfig.from_env())
    if args.url:
        file_config.client.ws_url = args.url
        file_config.client.validate()
    return file_config


# ── commands ──


async def _watch(
    args: argparse.Namespace, file_config: ClientFileConfig, console: Console,
) -> int:
    printer = FeedPrinter(console)
    async with StreamClient(file_config.client) as client:
        client.set_active_session(args.session_id)
        if args.raw:
            stop = client.subscribe(args.session_id, printer.print_event)
        else:
            stop = client.observe(args.session_id, printer)
        removers = [
            stop,
            client.add_state_listener(lambda state: _print_state(console, state)),
            client.add_error_listener(lambda err: _print_error(console, err.message)),
        ]
        try:
            if not await _wait_connected(client, args.wait):
                _print_error(console, f"could not connect to {client.config.ws_url}")
                return 1
            # Runs until interrupted
            await asyncio.Event().wait()
        finally:
            feed = client.feed(args.session_id)
            if feed is not None:
                printer.flush(feed)
            for remove in removers:
                remove()
    return 0


async def _send(
    args: argparse.Namespace, file_config: ClientFileConfig, console: Console,
) -> int:
    defaults = file_config.sessions
    working_dir = args.cwd or defaults.default_working_dir or os.getcwd()
    model = args.model or defaults.default_model

    printer = FeedPrinter(console)
    outcome = _TurnOutcome(args.session_id)
    async with StreamClient(file_config.client) as client:
        client.set_active_session(args.session_id)
        removers = [
            client.observe(args.session_id, printer),
            client.subscribe(args.session_id, outcome.on_event),
            client.add_server_message_listener(outcome.on_server_message),
            client.add_error_listener(outcome.on_error),
            client.add_error_listener(lambda err: _print_error(console, err.message)),
        ]
        try:
            if not await _wait_connected(client, args.wait):
                _print_error(console, f"could not connect to {client.config.ws_url}")
                return 1
            if not client.send_prompt(args.session_id, args.prompt, working_dir, model):
                _print_error(console, "prompt was not sent")
                return 1
            await outcome.done.wait()
        finally:
            feed = client.feed(args.session_id)
            if feed is not None:
                printer.flush(feed)
            for remove in removers:
                remove()
    return outcome.exit_code


async def _stop(
    args: argparse.Namespace, file_config: ClientFileConfig, console: Console,
) -> int:
    async with StreamClient(file_config.client) as client:
        if not await _wait_connected(client, args.wait):
            _print_error(console, f"could not connect to {client.config.ws_url}")
            return 1
        try:
            client.transport.send(stop_session_message(args.session_id), strict=True)
        except TransportNotConnectedError as exc:
            _print_error(console, str(exc))
            return 1
        await client.transport.flush()
    console.print(f"Stop requested for session {args.session_id}")
    return 0


_COMMANDS = {
    "watch": _watch,
    "send": _send,
    "stop": _stop,
}


# ── helpers ──


async def _wait_connected(client: StreamClient, timeout: float) -> bool:
    if client.connection_state is ConnectionState.CONNECTED:
        return True
    connected = asyncio.Event()

    def on_state(state: ConnectionState) -> None:
        if state is ConnectionState.CONNECTED:
            connected.set()

    remove = client.add_state_listener(on_state)
    try:
        await asyncio.wait_for(connected.wait(), timeout)
        return True
    except asyncio.TimeoutError:
        return False
    finally:
        remove()


def _print_state(console: Console, state: ConnectionState) -> None:
    console.print(Text(f"[{state.value}]", style="dim"))


def _print_error(console: Console, message: str) -> None:
    text = Text("Error: ", style="bold red")
    text.append(message)
    console.print(text)


if __name__ == "__main__":
    main()
