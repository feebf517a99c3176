# Sockgate
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Sockgate.
#
# Sockgate is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Sockgate CLI entry point.

Starts the gateway as a standalone process and blocks until SIGINT or
SIGTERM, then shuts down gracefully.

Usage:
    sockgate [--config PATH] [--socket-path PATH] [--port PORT] [--allow-from CIDR]
             [--allow-path FRAGMENT ...] [--shutdown-timeout SECONDS]

Exit codes:
    0  clean shutdown
    1  invalid configuration
    2  listener could not be bound
    3  shutdown deadline passed, connections were force-closed
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import platform
import signal
import sys
import threading
from typing import Callable, Mapping, Sequence

import httpx

from . import __version__
from .config import LOG_LEVELS, ConfigError, GatewayConfig, parse_port, load_config
from .proxy import GatewayServer, ListenerError

logger = logging.getLogger("sockgate.server")

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_LISTENER_FAILURE = 2
EXIT_SHUTDOWN_TIMEOUT = 3

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)

_PLAIN_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record, _DATE_FORMAT),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Configure root logging for the gateway process."""
    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_PLAIN_FORMAT, datefmt=_DATE_FORMAT))
    logging.basicConfig(level=getattr(logging, level.upper()), handlers=[handler], force=True)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Arguments
# ---------------------------------------------------------------------------


def _port_number(text: str) -> int:
    try:
        return parse_port("--port", text)
    except ConfigError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sockgate",
        description="Network gateway for a privileged Unix socket",
    )
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    parser.add_argument(
        "--socket-path",
        default=None,
        help="Backend Unix socket (default: /var/run/docker.sock)",
    )
    parser.add_argument("--host", default=None, help="Listen address (default: 0.0.0.0)")
    parser.add_argument("--port", type=_port_number, default=None, help="Listen port (default: 2375)")
    parser.add_argument(
        "--allow-from",
        default=None,
        help="Allowed client CIDR (default: 127.0.0.1/32, empty string denies everyone)",
    )
    parser.add_argument(
        "--allow-path",
        action="append",
        default=None,
        metavar="FRAGMENT",
        help="Allowed URL-path fragment; repeat for several (default: version, events, containers)",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=float,
        default=None,
        help="Seconds to let in-flight requests finish on shutdown (default: 10)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        default=None,
        help="Emit logs as JSON lines",
    )
    parser.add_argument("--audit-log", default=None, help="Write a JSON Lines access log here")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def config_from_args(
    args: argparse.Namespace,
    environ: Mapping[str, str] | None = None,
) -> GatewayConfig:
    """Layer CLI flags over file and environment config, then validate."""
    config = load_config(args.config, environ=environ)
    config = config.with_overrides(
        socket_path=args.socket_path,
        listen_host=args.host,
        listen_port=args.port,
        allow_from=args.allow_from,
        allowed_paths=tuple(args.allow_path) if args.allow_path is not None else None,
        shutdown_timeout=args.shutdown_timeout,
        log_level=args.log_level,
        log_json=args.log_json,
        audit_log_path=args.audit_log,
    )
    return config.validate()


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------


def install_signal_handlers(stop_event: threading.Event) -> None:
    """Turn SIGINT/SIGTERM into a set stop_event."""

    def _on_signal(signum, frame):
        logger.info("Received signal %s", signal.Signals(signum).name)
        stop_event.set()

    for sig in STOP_SIGNALS:
        signal.signal(sig, _on_signal)


def run(
    config: GatewayConfig,
    stop_event: threading.Event,
    transport: httpx.BaseTransport | None = None,
    on_started: Callable[[GatewayServer], None] | None = None,
) -> int:
    """Serve until ``stop_event`` is set and return the process exit code."""
    server = GatewayServer(config, transport=transport)
    try:
        server.start()
    except ListenerError as exc:
        logger.error("HTTP listener problem: %s", exc)
        return EXIT_LISTENER_FAILURE

    if on_started is not None:
        on_started(server)

    stop_event.wait()

    logger.info("Stop requested -- shutting down")
    if not server.shutdown():
        return EXIT_SHUTDOWN_TIMEOUT
    logger.info("Graceful shutdown complete -- exiting")
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the gateway process."""
    args = build_parser().parse_args(argv)

    try:
        config = config_from_args(args, environ=os.environ)
    except ConfigError as exc:
        configure_logging()
        logger.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR

    configure_logging(config.log_level, config.log_json)
    logger.info(
        "Starting sockgate %s (python %s, %s/%s)",
        __version__,
        platform.python_version(),
        platform.system().lower(),
        platform.machine(),
    )
    for key, value in config.describe().items():
        logger.info("  %s: %s", key, value)
    if config.allowed_network is None:
        logger.warning("allow_from is empty -- every client will be denied")

    stop_event = threading.Event()
    install_signal_handlers(stop_event)
    return run(config, stop_event)


if __name__ == "__main__":
    sys.exit(main())
