"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CONDUIT_* env vars
or a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_WS_URL = "ws://127.0.0.1:3000/ws"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class ClientConfig:
    """Session event-stream client configuration."""

    # Backend websocket endpoint
    ws_url: str = DEFAULT_WS_URL

    # Reconnect backoff: reconnect_delay * 2 ** (attempt - 1) seconds,
    # giving up silently after max_reconnect_attempts.
    reconnect_delay: float = 1.0
    max_reconnect_attempts: int = 5

    # Application-level ping while connected
    keepalive_interval: float = 30.0

    # Timeout for the websocket handshake
    connect_timeout: float = 10.0

    # Sliding-window sizes for the per-session logs
    max_session_events: int = 500
    max_raw_events: int = 200

    # Logging
    log_level: str = "INFO"

    def validate(self) -> None:
        """Raise ConfigError for values the client cannot run with."""
        if not self.ws_url.startswith(("ws://", "wss://", "http://", "https://")):
            raise ConfigError("ws_url", f"unsupported scheme in {self.ws_url!r}")
        if self.reconnect_delay <= 0:
            raise ConfigError("reconnect_delay", "must be positive")
        if self.max_reconnect_attempts < 0:
            raise ConfigError("max_reconnect_attempts", "must be >= 0")
        if self.keepalive_interval <= 0:
            raise ConfigError("keepalive_interval", "must be positive")
        if self.connect_timeout <= 0:
            raise ConfigError("connect_timeout", "must be positive")
        if self.max_session_events < 1:
            raise ConfigError("max_session_events", "must be >= 1")
        if self.max_raw_events < 1:
            raise ConfigError("max_raw_events", "must be >= 1")
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ConfigError("log_level", f"unknown level {self.log_level!r}")

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Load configuration from CONDUIT_* environment variables."""
        conduit_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CONDUIT_")
        }
        if conduit_vars:
            logger.info(
                "ClientConfig.from_env: CONDUIT_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(conduit_vars.items())),
            )
        else:
            logger.debug("ClientConfig.from_env: no CONDUIT_* env vars set, using defaults")

        try:
            config = cls(
                ws_url=os.getenv("CONDUIT_WS_URL", cls.ws_url),
                reconnect_delay=float(os.getenv(
                    "CONDUIT_RECONNECT_DELAY", str(cls.reconnect_delay)
                )),
                max_reconnect_attempts=int(os.getenv(
                    "CONDUIT_MAX_RECONNECT_ATTEMPTS",
                    str(cls.max_reconnect_attempts),
                )),
                keepalive_interval=float(os.getenv(
                    "CONDUIT_KEEPALIVE_INTERVAL", str(cls.keepalive_interval)
                )),
                connect_timeout=float(os.getenv(
                    "CONDUIT_CONNECT_TIMEOUT", str(cls.connect_timeout)
                )),
                max_session_events=int(os.getenv(
                    "CONDUIT_MAX_SESSION_EVENTS", str(cls.max_session_events)
                )),
                max_raw_events=int(os.getenv(
                    "CONDUIT_MAX_RAW_EVENTS", str(cls.max_raw_events)
                )),
                log_level=os.getenv("CONDUIT_LOG_LEVEL", cls.log_level),
            )
        except ValueError as exc:
            raise ConfigError("environment", str(exc)) from exc

        config.validate()
        logger.info(
            "ClientConfig.from_env: url=%s reconnect=%.1fs x%d keepalive=%.0fs",
            config.ws_url, config.reconnect_delay,
            config.max_reconnect_attempts, config.keepalive_interval,
        )
        return config
