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
"""Gateway HTTP server -- TCP in, Unix socket out.

Architecture:
  Network client --HTTP/1.1--> GatewayServer (TCP) --HTTP--> backend.sock

Every accepted connection gets its own thread. For each request on that
connection the handler:
  1. Evaluates the network gate and the path gate (both, always)
  2. Answers 403 if either refused -- nothing reaches the backend
  3. Otherwise streams the request to the backend socket
  4. Relays status, headers and body back as bytes arrive
  5. Answers 502 if the backend socket cannot be reached

Shutdown stops the accept loop first, closes idle keep-alive
connections, then gives busy connections until the deadline before
cutting them off.
"""

from __future__ import annotations

import logging
import socket
import socketserver
import threading
import time
from http.server import BaseHTTPRequestHandler
from typing import Any

import httpcore
import httpx

from . import __version__
from .audit import AuditEntry, AuditLogger, create_audit_logger
from .config import GatewayConfig
from .dispatcher import RequestDispatcher
from .forwarder import (
    MalformedRequestBody,
    SocketForwarder,
    UnforwardableTarget,
    UpstreamUnavailable,
    iter_request_body,
    response_headers,
    upgrade_protocol,
)
from .lifecycle import ConnectionTracker, Lifecycle, ServerState

logger = logging.getLogger("sockgate.proxy")

# Statuses whose responses never carry a body
_NO_BODY_STATUSES = frozenset({204, 304})

# Read size for upgraded (hijacked) connections
_TUNNEL_BUFSIZE = 65536


class ListenerError(OSError):
    """The listening socket could not be bound."""


class GatewayRequestHandler(BaseHTTPRequestHandler):
    """Per-connection handler: gate, then forward or deny.

    The gateway components live on the server instance, not on this
    class, so several gateways can coexist in one process.
    """

    protocol_version = "HTTP/1.1"
    server_version = f"sockgate/{__version__}"

    server: GatewayHTTPServer

    # ---------------------------------------------------------------
    # Connection lifecycle
    # ---------------------------------------------------------------
    def setup(self) -> None:
        super().setup()
        self._tracked = self.server.tracker.register(self.connection)
        self._expect_continue = False

    def handle(self) -> None:
        if not self._tracked:
            # Accepted just as shutdown began
            return
        super().handle()

    def handle_one_request(self) -> None:
        """Serve one request, counted as in-flight from its first byte.

        Until a byte of the next request line arrives the connection is
        idle, and a drain may close it.
        """
        tracker = self.server.tracker
        try:
            pending = self.rfile.peek(1)
        except OSError:
            pending = b""
        if not pending or not tracker.mark_active(self.connection):
            self.close_connection = True
            return
        self._expect_continue = False
        try:
            super().handle_one_request()
        finally:
            if tracker.mark_idle(self.connection):
                self.close_connection = True

    def finish(self) -> None:
        try:
            super().finish()
        finally:
            self.server.tracker.unregister(self.connection)

    def handle_expect_100(self) -> bool:
        # Defer "100 Continue" until both gates have passed
        self._expect_continue = True
        return True

    # ---------------------------------------------------------------
    # HTTP methods
    # ---------------------------------------------------------------
    def do_GET(self) -> None:
        self._process()

    def do_POST(self) -> None:
        self._process()

    def do_PUT(self) -> None:
        self._process()

    def do_DELETE(self) -> None:
        self._process()

    def do_PATCH(self) -> None:
        self._process()

    def do_HEAD(self) -> None:
        self._process()

    def do_OPTIONS(self) -> None:
        self._process()

    def _process(self) -> None:
        """Run one request through the gates and, if allowed, the backend."""
        method = self.command
        target = self.path
        client_ip = self.client_address[0] if self.client_address else ""

        # --- 1. Gates ---
        decision = self.server.dispatcher.evaluate(client_ip, target)
        if not decision.allowed:
            logger.info("Denied %s %s from %s: %s", method, target, client_ip, decision.reason)
            self.server.audit.log(AuditEntry.denied(method, target, client_ip, decision.reason))
            if self._has_request_body():
                # The unread body would corrupt the next request on this connection
                self.close_connection = True
            self._send_plain(403, "Forbidden")
            return

        # --- 2. Request body ---
        headers = self.headers.items()
        try:
            body = iter_request_body(self.rfile, headers)
        except MalformedRequestBody as exc:
            logger.info("Rejected %s %s from %s: %s", method, target, client_ip, exc)
            self.close_connection = True
            self._send_plain(400, "Bad Request")
            return

        if body is not None and self._expect_continue:
            self.send_response_only(100)
            self.end_headers()

        # --- 3. Forward ---
        start_time = time.monotonic()
        try:
            response = self.server.forwarder.open(method, target, headers, body, client_ip)
        except UnforwardableTarget as exc:
            logger.info("Rejected %s %s from %s: %s", method, target, client_ip, exc)
            self.server.audit.log(
                AuditEntry.denied(method, target, client_ip, str(exc), status_code=400)
            )
            self.close_connection = True
            self._send_plain(400, "Bad Request")
            return
        except UpstreamUnavailable as exc:
            duration_ms = (time.monotonic() - start_time) * 1000
            logger.warning("Backend unavailable for %s %s: %s", method, target, exc)
            self.server.audit.log(
                AuditEntry.upstream_error(method, target, client_ip, str(exc), duration_ms)
            )
            if body is not None:
                self.close_connection = True
            self._send_plain(502, "Bad Gateway")
            return
        except (MalformedRequestBody, OSError) as exc:
            # The client broke off or garbled its own upload
            logger.info("Client %s aborted request body for %s %s: %s", client_ip, method, target, exc)
            self.close_connection = True
            self._send_plain(400, "Bad Request")
            return

        # --- 4. Relay ---
        try:
            sent = self._relay_response(response)
        finally:
            response.close()

        duration_ms = (time.monotonic() - start_time) * 1000
        self.server.audit.log(
            AuditEntry.allowed(
                method,
                target,
                client_ip,
                status_code=response.status_code,
                duration_ms=duration_ms,
                response_size=sent,
            )
        )

    # ---------------------------------------------------------------
    # Response relay
    # ---------------------------------------------------------------
    def _relay_response(self, response: httpx.Response) -> int:
        """Copy a backend response to the client, flushing every chunk.

        Returns the number of body bytes relayed.
        """
        status = response.status_code
        if status == 101:
            return self._relay_upgrade(response)
        headers = response_headers(response)
        no_body = self.command == "HEAD" or status < 200 or status in _NO_BODY_STATUSES
        has_length = any(key.lower() == "content-length" for key, _ in headers)
        chunked = not no_body and not has_length and self.request_version != "HTTP/1.0"
        if not no_body and not has_length and not chunked:
            # HTTP/1.0 client: the end of the body is the end of the connection
            self.close_connection = True

        try:
            self.send_response_only(status, response.reason_phrase or None)
            for key, value in headers:
                self.send_header(key, value)
            if chunked:
                self.send_header("Transfer-Encoding", "chunked")
            if self.close_connection or self.server.tracker.draining:
                self.send_header("Connection", "close")
            self.end_headers()
            self.log_request(status)

            if no_body:
                return 0

            sent = 0
            for chunk in response.iter_raw():
                if not chunk:
                    continue
                if chunked:
                    self.wfile.write(b"%x\r\n%s\r\n" % (len(chunk), chunk))
                else:
                    self.wfile.write(chunk)
                self.wfile.flush()
                sent += len(chunk)
            if chunked:
                self.wfile.write(b"0\r\n\r\n")
                self.wfile.flush()
            return sent
        except httpx.HTTPError as exc:
            logger.warning("Backend stream broke for %s %s: %s", self.command, self.path, exc)
        except OSError as exc:
            logger.debug("Client went away during %s %s: %s", self.command, self.path, exc)
        # Headers are out; closing is the only way to signal a truncated body
        self.close_connection = True
        return 0

    def _relay_upgrade(self, response: httpx.Response) -> int:
        """Answer 101 and splice the client and backend connections together.

        Used by hijacking endpoints such as ``attach`` and ``exec/start``.
        Returns the number of bytes relayed to the client.
        """
        self.close_connection = True
        upstream = response.extensions.get("network_stream")
        if upstream is None:
            logger.warning("Backend switched protocols for %s %s without a stream", self.command, self.path)
            self._send_plain(502, "Bad Gateway")
            return 0

        protocol = upgrade_protocol(response.headers.multi_items()) or self.headers.get("Upgrade", "")
        try:
            self.send_response_only(101, response.reason_phrase or None)
            for key, value in response_headers(response):
                self.send_header(key, value)
            self.send_header("Connection", "Upgrade")
            self.send_header("Upgrade", protocol)
            self.end_headers()
        except OSError as exc:
            logger.debug("Client went away before %s %s was upgraded: %s", self.command, self.path, exc)
            return 0
        self.log_request(101)
        return self._tunnel(upstream)

    def _tunnel(self, upstream: httpcore.NetworkStream) -> int:
        """Relay raw bytes both ways until the backend closes its side."""
        upstream_sock = upstream.get_extra_info("socket")
        pump = threading.Thread(
            target=self._pump_to_upstream,
            args=(upstream, upstream_sock),
            name="sockgate-tunnel",
            daemon=True,
        )
        pump.start()

        relayed = 0
        try:
            while True:
                data = upstream.read(_TUNNEL_BUFSIZE)
                if not data:
                    break
                self.connection.sendall(data)
                relayed += len(data)
        except (httpcore.NetworkError, OSError) as exc:
            logger.debug("Tunnel for %s closed: %s", self.path, exc)
        finally:
            # Wakes the pump if the client is still sending
            _shutdown_socket(self.connection, socket.SHUT_RDWR)
            pump.join()
        return relayed

    def _pump_to_upstream(self, upstream: httpcore.NetworkStream, upstream_sock: socket.socket | None) -> None:
        try:
            while True:
                data = self.rfile.read1(_TUNNEL_BUFSIZE)
                if not data:
                    break
                upstream.write(data)
        except (httpcore.NetworkError, OSError) as exc:
            logger.debug("Tunnel upload for %s closed: %s", self.path, exc)
        finally:
            # Half-close: the backend may still have output to send
            if upstream_sock is not None:
                _shutdown_socket(upstream_sock, socket.SHUT_WR)

    # ---------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------
    def _has_request_body(self) -> bool:
        if "Transfer-Encoding" in self.headers:
            return True
        length = self.headers.get("Content-Length", "0").strip()
        return length != "0"

    def _send_plain(self, code: int, message: str) -> None:
        """Send a short text/plain response generated by the gateway."""
        body = f"{message}\n".encode()
        try:
            self.send_response(code)
            self.send_header("Content-Type", "text/plain; charset=utf-8")
            self.send_header("X-Content-Type-Options", "nosniff")
            self.send_header("Content-Length", str(len(body)))
            if self.close_connection or self.server.tracker.draining:
                self.send_header("Connection", "close")
            self.end_headers()
            if self.command != "HEAD":
                self.wfile.write(body)
        except OSError as exc:
            logger.debug("Could not send %d to %s: %s", code, self.client_address, exc)
            self.close_connection = True

    def log_message(self, format: str, *args: Any) -> None:
        """Route http.server's access lines to our logger instead of stderr."""
        logger.debug("%s - %s", self.address_string(), format % args)


def _shutdown_socket(sock: socket.socket, how: int) -> None:
    try:
        sock.shutdown(how)
    except OSError:
        # Peer already gone
        pass


class GatewayHTTPServer(socketserver.ThreadingTCPServer):
    """Thread-per-connection TCP server carrying the gateway components."""

    allow_reuse_address = True
    daemon_threads = True
    # Shutdown waits on the tracker with a deadline, not on thread joins
    block_on_close = False

    def __init__(
        self,
        server_address: tuple[str, int],
        dispatcher: RequestDispatcher,
        forwarder: SocketForwarder,
        audit: AuditLogger,
        tracker: ConnectionTracker,
    ) -> None:
        self.dispatcher = dispatcher
        self.forwarder = forwarder
        self.audit = audit
        self.tracker = tracker
        if ":" in server_address[0]:
            self.address_family = socket.AF_INET6
        super().__init__(server_address, GatewayRequestHandler)


class GatewayServer:
    """Owns the listener, the accept loop and graceful shutdown.

    Usage:
        server = GatewayServer(config)
        server.start()           # raises ListenerError if the port is taken
        ...
        clean = server.shutdown()  # False if the deadline forced closures
    """

    def __init__(
        self,
        config: GatewayConfig,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config
        self._dispatcher = RequestDispatcher.from_config(config)
        self._forwarder = SocketForwarder(
            config.socket_path,
            connect_timeout=config.upstream_connect_timeout,
            transport=transport,
        )
        self._audit = create_audit_logger(config.audit_log_path)
        self._tracker = ConnectionTracker()
        self._lifecycle = Lifecycle()

        self._httpd: GatewayHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def config(self) -> GatewayConfig:
        return self._config

    @property
    def state(self) -> ServerState:
        return self._lifecycle.state

    @property
    def is_running(self) -> bool:
        return self._lifecycle.state == ServerState.RUNNING

    @property
    def address(self) -> tuple[str, int]:
        """Return (host, port) the server is bound to. Only valid after start()."""
        if self._httpd is None:
            raise RuntimeError("Server not started")
        return self._httpd.server_address[:2]

    @property
    def audit(self) -> AuditLogger:
        return self._audit

    @property
    def tracker(self) -> ConnectionTracker:
        return self._tracker

    def start(self) -> None:
        """Bind the listener and start the accept loop in a background thread."""
        if self._lifecycle.state == ServerState.RUNNING:
            logger.warning("Gateway already running")
            return

        host, port = self._config.listen_host, self._config.listen_port
        try:
            self._httpd = GatewayHTTPServer(
                (host, port),
                self._dispatcher,
                self._forwarder,
                self._audit,
                self._tracker,
            )
        except OSError as exc:
            self._lifecycle.transition(ServerState.STOPPED)
            self._release()
            raise ListenerError(f"Cannot listen on {host}:{port}: {exc}") from exc

        self._thread = threading.Thread(
            target=self._serve,
            name="sockgate-accept",
            daemon=True,
        )
        self._lifecycle.transition(ServerState.RUNNING)
        self._thread.start()

        bound_host, bound_port = self.address
        logger.info(
            "Gateway listening on %s:%d -> %s (allow_from=%s, paths=%s)",
            bound_host,
            bound_port,
            self._config.socket_path,
            self._config.allow_from or "<deny all>",
            ",".join(self._config.allowed_paths) or "<deny all>",
        )

    def shutdown(self, timeout: float | None = None) -> bool:
        """Stop accepting, let in-flight requests finish, then stop.

        Returns True if every connection finished before the deadline,
        False if some had to be closed forcibly.
        """
        if self._lifecycle.state == ServerState.STOPPED:
            return True
        timeout = self._config.shutdown_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        self._lifecycle.transition(ServerState.SHUTTING_DOWN)

        # Stop the accept loop and release the port
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=max(0.0, deadline - time.monotonic()))
            self._thread = None

        idle = self._tracker.begin_drain()
        logger.info(
            "Draining connections: %d busy, %d idle closed",
            self._tracker.active_count,
            idle,
        )
        drained = self._tracker.wait_drained(max(0.0, deadline - time.monotonic()))
        if not drained:
            closed = self._tracker.force_close()
            logger.warning(
                "Shutdown timed out after %.1fs -- forcing %d connection(s) closed",
                timeout,
                closed,
            )

        self._release()
        self._lifecycle.transition(ServerState.STOPPED)
        return drained

    def get_status(self) -> dict:
        """Snapshot for health reporting."""
        return {
            "state": self._lifecycle.state.value,
            "socket_path": self._config.socket_path,
            "allow_from": self._config.allow_from,
            "allowed_paths": list(self._config.allowed_paths),
            "open_connections": self._tracker.open_count,
            "active_connections": self._tracker.active_count,
            "audit_entries": self._audit.entry_count,
        }

    def _serve(self) -> None:
        """Accept connections until shutdown() is called."""
        try:
            self._httpd.serve_forever(poll_interval=0.2)
        except Exception as exc:
            logger.error("Accept loop crashed: %s", exc)

    def _release(self) -> None:
        self._forwarder.close()
        self._audit.close()
