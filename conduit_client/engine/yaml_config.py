"""YAML configuration loader.

Loads a single YAML file whose ``client`` section overrides the
ClientConfig defaults. Environment variables referenced as ``${NAME}``
in string values are expanded. When no YAML is provided, env vars work
exactly as before.

Example YAML:
    client:
      ws_url: wss://conduit.example.com/ws
      reconnect_delay: 0.5
      max_reconnect_attempts: 8
      keepalive_interval: 20
      max_session_events: 1000
      log_level: DEBUG

    sessions:
      default_working_dir: ${HOME}/src/project
      default_model: claude-sonnet-4-5
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from .config import ClientConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

CONFIG_CANDIDATES = (
    Path(".conduit") / "client.yaml",
    Path("conduit.yaml"),
)


@dataclass
class SessionDefaults:
    """Defaults applied to prompts dispatched from the CLI."""
    default_working_dir: str | None = None
    default_model: str | None = None


@dataclass
class ClientFileConfig:
    """Fully parsed configuration file."""
    client: ClientConfig = field(default_factory=ClientConfig)
    sessions: SessionDefaults = field(default_factory=SessionDefaults)
    source: Path | None = None


def _expand_env(value):
    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _coerce_section(section: str, raw, target_cls) -> dict:
    """Keep only keys the dataclass accepts, coercing to the default's type."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(section, f"expected a mapping, got {type(raw).__name__}")

    known = {f.name: f for f in fields(target_cls)}
    defaults = target_cls()
    out: dict = {}
    for key, value in raw.items():
        if key not in known:
            logger.warning("Ignoring unknown config key %s.%s", section, key)
            continue
        default = getattr(defaults, key)
        if value is None or default is None or isinstance(default, str):
            out[key] = value if value is None or default is None else str(value)
            continue
        try:
            out[key] = type(default)(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{section}.{key}", str(exc)) from exc
    return out


def load_yaml_config(path: str | Path) -> ClientFileConfig:
    """Load and parse a YAML config file."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ConfigError(str(path), "top level must be a mapping")

    raw = _expand_env(raw)
    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s — sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    client = ClientConfig(**_coerce_section("client", raw.get("client"), ClientConfig))
    client.validate()
    sessions = SessionDefaults(
        **_coerce_section("sessions", raw.get("sessions"), SessionDefaults)
    )
    return ClientFileConfig(client=client, sessions=sessions, source=path)


def discover_config_path(cwd: Path | None = None) -> Path | None:
    """Return the first conventional config file under *cwd*, if any."""
    base = cwd or Path.cwd()
    for candidate in CONFIG_CANDIDATES:
        full = base / candidate
        if full.exists():
            logger.debug("Auto-discovered client config at %s", full)
            return full
    return None
