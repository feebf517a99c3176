# Sockgate
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Sockgate.
#
# Sockgate is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Gateway configuration.

The configuration is built once at startup and never changes afterwards.
Values are layered, lowest precedence first:

  1. Built-in defaults
  2. Optional YAML file (``--config``)
  3. ``SP_*`` environment variables
  4. Command-line flags (applied by ``sockgate.server``)

Unlike most config loaders, a broken file is an error, not a reason to
fall back to defaults: this process guards a privileged socket.
"""

from __future__ import annotations

import ipaddress
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

logger = logging.getLogger("sockgate.config")

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
DEFAULT_SOCKET_PATH = "/var/run/docker.sock"
DEFAULT_LISTEN_HOST = "0.0.0.0"
DEFAULT_LISTEN_PORT = 2375
DEFAULT_ALLOW_FROM = "127.0.0.1/32"
DEFAULT_ALLOWED_PATHS: tuple[str, ...] = ("version", "events", "containers")
DEFAULT_SHUTDOWN_TIMEOUT = 10.0
DEFAULT_CONNECT_TIMEOUT = 5.0
DEFAULT_LOG_LEVEL = "INFO"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

ENV_PREFIX = "SP_"

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off", ""})


class ConfigError(ValueError):
    """Raised when configuration is missing, malformed or out of range."""


@dataclass(frozen=True)
class GatewayConfig:
    """Immutable gateway configuration.

    ``allow_from`` may be the empty string, which means *deny every
    client*. There is no "allow all" shortcut; use ``0.0.0.0/0``
    explicitly if that is really what you want.
    """

    # Backend Unix socket
    socket_path: str = DEFAULT_SOCKET_PATH

    # Listener
    listen_host: str = DEFAULT_LISTEN_HOST
    listen_port: int = DEFAULT_LISTEN_PORT

    # Access control
    allow_from: str = DEFAULT_ALLOW_FROM
    allowed_paths: tuple[str, ...] = field(default=DEFAULT_ALLOWED_PATHS)

    # Seconds in-flight requests get to finish after a stop signal
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT

    # Seconds to wait for the backend socket to accept a connection
    upstream_connect_timeout: float = DEFAULT_CONNECT_TIMEOUT

    # Logging
    log_level: str = DEFAULT_LOG_LEVEL
    log_json: bool = False

    # JSON Lines access log, disabled when None
    audit_log_path: str | None = None

    @property
    def allowed_network(self) -> ipaddress.IPv4Network | ipaddress.IPv6Network | None:
        """The parsed ``allow_from`` range, or None when it is empty."""
        if not self.allow_from.strip():
            return None
        try:
            return ipaddress.ip_network(self.allow_from.strip(), strict=False)
        except ValueError as exc:
            raise ConfigError(f"Invalid allow_from CIDR {self.allow_from!r}: {exc}") from exc

    def validate(self) -> GatewayConfig:
        """Check every value and return self, or raise ConfigError."""
        if not self.socket_path:
            raise ConfigError("socket_path must not be empty")
        if not 0 <= self.listen_port <= 65535:
            raise ConfigError(f"listen_port {self.listen_port} is out of range")
        # Parsing raises ConfigError for a malformed CIDR
        _ = self.allowed_network
        for fragment in self.allowed_paths:
            if not isinstance(fragment, str) or not fragment:
                raise ConfigError(f"allowed_paths entries must be non-empty strings, got {fragment!r}")
        if self.shutdown_timeout <= 0:
            raise ConfigError("shutdown_timeout must be positive")
        if self.upstream_connect_timeout <= 0:
            raise ConfigError("upstream_connect_timeout must be positive")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return self

    def with_overrides(self, **overrides: Any) -> GatewayConfig:
        """Return a copy with the non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self

    def describe(self) -> dict[str, Any]:
        """Flat summary for the startup log line."""
        return {
            "socket_path": self.socket_path,
            "listen": f"{self.listen_host}:{self.listen_port}",
            "allow_from": self.allow_from or "<deny all>",
            "allowed_paths": list(self.allowed_paths),
            "shutdown_timeout": self.shutdown_timeout,
            "log_level": self.log_level,
            "log_json": self.log_json,
            "audit_log": self.audit_log_path or "<disabled>",
        }


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_config(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> GatewayConfig:
    """Build a config from defaults, an optional YAML file and the environment.

    The result is not validated yet; callers apply CLI overrides first and
    then call ``validate()``.
    """
    config = GatewayConfig()

    if path:
        config = _apply_file(config, Path(path))

    env = os.environ if environ is None else environ
    return apply_environment(config, env)


def _apply_file(config: GatewayConfig, config_path: Path) -> GatewayConfig:
    if not config_path.exists():
        logger.info("No config file at %s -- using defaults", config_path)
        return config

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to read config file {config_path}: {exc}") from exc

    if raw is None:
        return config
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    return _parse_config(config, raw)


def _parse_config(config: GatewayConfig, raw: dict) -> GatewayConfig:
    """Merge a raw YAML mapping into ``config``."""
    known = {f.name for f in fields(GatewayConfig)}
    listen_section = raw.get("listen", {}) or {}
    if not isinstance(listen_section, dict):
        raise ConfigError("'listen' must be a mapping with 'host' and 'port'")

    values: dict[str, Any] = {}
    for key, value in raw.items():
        if key == "listen":
            continue
        if key not in known:
            raise ConfigError(f"Unknown config key: {key}")
        values[key] = value

    if "host" in listen_section:
        values["listen_host"] = str(listen_section["host"])
    if "port" in listen_section:
        values["listen_port"] = parse_port("listen.port", listen_section["port"])

    if "listen_port" in values:
        values["listen_port"] = parse_port("listen_port", values["listen_port"])
    if "allowed_paths" in values:
        values["allowed_paths"] = _as_paths(values["allowed_paths"])
    if "allow_from" in values:
        values["allow_from"] = "" if values["allow_from"] is None else str(values["allow_from"])
    for key in ("shutdown_timeout", "upstream_connect_timeout"):
        if key in values:
            values[key] = _as_float(key, values[key])
    if "log_json" in values:
        values["log_json"] = _as_bool("log_json", values["log_json"])

    return replace(config, **values)


def apply_environment(config: GatewayConfig, environ: Mapping[str, str]) -> GatewayConfig:
    """Overlay ``SP_*`` environment variables onto ``config``."""

    def env(name: str) -> str | None:
        return environ.get(ENV_PREFIX + name)

    values: dict[str, Any] = {}
    if (value := env("SOCKETPATH")) is not None:
        values["socket_path"] = value
    if (value := env("LISTENHOST")) is not None:
        values["listen_host"] = value
    if (value := env("PROXYPORT")) is not None:
        values["listen_port"] = parse_port("SP_PROXYPORT", value)
    # Present-but-empty is meaningful here: it selects deny-all
    if (value := env("ALLOWFROM")) is not None:
        values["allow_from"] = value
    if (value := env("ALLOWPATHS")) is not None:
        values["allowed_paths"] = _as_paths(value)
    if (value := env("SHUTDOWNTIMEOUT")) is not None:
        values["shutdown_timeout"] = _as_float("SP_SHUTDOWNTIMEOUT", value)
    if (value := env("LOGLEVEL")) is not None:
        values["log_level"] = value.upper()
    if (value := env("LOGJSON")) is not None:
        values["log_json"] = _as_bool("SP_LOGJSON", value)
    if (value := env("AUDITLOG")) is not None:
        values["audit_log_path"] = value or None

    return replace(config, **values) if values else config


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def _as_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc


def parse_port(name: str, value: Any) -> int:
    """A port an operator may configure; 0 (OS-assigned) is for embedding only."""
    port = _as_int(name, value)
    if not 1 <= port <= 65535:
        raise ConfigError(f"{name} must be between 1 and 65535, got {port}")
    return port


def _as_float(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc


def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _as_paths(value: Any) -> tuple[str, ...]:
    """Accept a list of fragments or a comma-separated string."""
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",")]
        return tuple(item for item in items if item)
    if isinstance(value, (list, tuple)):
        return tuple(str(item) for item in value)
    raise ConfigError(f"allowed_paths must be a list or comma-separated string, got {value!r}")
