"""Pytest configuration for sockgate tests."""

import json
import os
import shutil
import socket
import socketserver
import sys
import tempfile
import threading
from http.server import BaseHTTPRequestHandler
from pathlib import Path
from urllib.parse import unquote, urlsplit

import pytest

# Ensure src/sockgate is importable
src_path = str(Path(__file__).parent.parent / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from sockgate.config import GatewayConfig  # noqa: E402
from sockgate.proxy import GatewayServer  # noqa: E402


def find_free_port() -> int:
    """Find an available TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class _BackendHandler(BaseHTTPRequestHandler):
    """Docker-ish API served over a Unix socket.

    Routes (matched on the decoded path):
      */version          JSON with a Content-Length and a duplicated header
      */events           chunked stream; second event waits for backend.release
      */slow/*           answers only after backend.release is set
      */nocontent        204
      POST with Upgrade  101, then an upper-casing echo until EOF
      POST anything      echoes the body it received
      anything else      JSON describing the request
    """

    protocol_version = "HTTP/1.1"
    server_version = "FakeDocker/1.0"

    def setup(self):
        super().setup()
        self.server.backend.connections += 1

    def log_message(self, format, *args):
        pass

    def _record(self, body=b""):
        self.server.backend.requests.append(
            {
                "method": self.command,
                "path": self.path,
                "headers": list(self.headers.items()),
                "body": body,
            }
        )
        self.server.backend.received.set()

    def _read_body(self) -> bytes:
        if self.headers.get("Transfer-Encoding", "").lower() == "chunked":
            data = b""
            while True:
                size = int(self.rfile.readline().split(b";")[0].strip(), 16)
                if size == 0:
                    self.rfile.readline()
                    return data
                data += self.rfile.read(size)
                self.rfile.readline()
        length = int(self.headers.get("Content-Length", 0))
        return self.rfile.read(length) if length else b""

    def _send_json(self, status, payload, extra_headers=()):
        body = json.dumps(payload).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        for key, value in extra_headers:
            self.send_header(key, value)
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def do_GET(self):
        path = unquote(urlsplit(self.path).path)
        self._record()
        backend = self.server.backend

        if path.endswith("/version"):
            self._send_json(
                200,
                {"ApiVersion": "1.41", "Version": "24.0.7"},
                extra_headers=[("Api-Version", "1.41"), ("X-Dup", "a"), ("X-Dup", "b")],
            )
        elif path.endswith("/events"):
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Transfer-Encoding", "chunked")
            self.end_headers()
            for event in (b'{"status":"start"}\n', b'{"status":"die"}\n'):
                self.wfile.write(b"%x\r\n%s\r\n" % (len(event), event))
                self.wfile.flush()
                backend.first_sent.set()
                backend.release.wait(10)
            self.wfile.write(b"0\r\n\r\n")
        elif "/slow/" in path:
            backend.release.wait(10)
            self._send_json(200, {"slow": True})
        elif path.endswith("/nocontent"):
            self.send_response(204)
            self.end_headers()
        else:
            self._send_json(200, {"method": self.command, "path": self.path})

    def do_HEAD(self):
        self.do_GET()

    def do_POST(self):
        body = self._read_body()
        self._record(body)
        if "Upgrade" in self.headers:
            self._hijack()
            return
        self._send_json(201, {"received": len(body), "body": body.decode("latin-1")})

    def _hijack(self):
        """Switch to a raw stream that echoes input upper-cased until EOF."""
        self.send_response(101, "UPGRADED")
        self.send_header("Content-Type", "application/vnd.docker.raw-stream")
        self.send_header("Connection", "Upgrade")
        self.send_header("Upgrade", "tcp")
        self.end_headers()
        self.wfile.write(b"ready\n")
        while True:
            data = self.rfile.read1(4096)
            if not data:
                break
            self.wfile.write(data.upper())
        self.close_connection = True


class _UnixServer(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True
    block_on_close = False


class FakeBackend:
    """HTTP server on a Unix socket that records every request it sees."""

    def __init__(self, socket_path: str) -> None:
        self.socket_path = socket_path
        self.requests: list[dict] = []
        self.connections = 0
        self.received = threading.Event()
        self.first_sent = threading.Event()
        self.release = threading.Event()
        self._server = None
        self._thread = None

    def start(self) -> None:
        self._server = _UnixServer(self.socket_path, _BackendHandler)
        self._server.backend = self
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self.release.set()
        self._server.shutdown()
        self._server.server_close()
        if os.path.exists(self.socket_path):
            os.unlink(self.socket_path)


@pytest.fixture
def socket_dir():
    """Short temp dir; AF_UNIX paths are limited to ~107 bytes."""
    path = tempfile.mkdtemp(prefix="sg-")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def backend(socket_dir):
    fake = FakeBackend(os.path.join(socket_dir, "backend.sock"))
    fake.start()
    yield fake
    fake.stop()


@pytest.fixture
def make_gateway(backend):
    """Factory for started gateways pointed at the fake backend."""
    started: list[GatewayServer] = []

    def _make(**overrides) -> GatewayServer:
        values = {
            "socket_path": backend.socket_path,
            "listen_host": "127.0.0.1",
            "listen_port": 0,
            "allow_from": "127.0.0.1/32",
            "shutdown_timeout": 2.0,
        }
        values.update(overrides)
        server = GatewayServer(GatewayConfig(**values).validate())
        server.start()
        started.append(server)
        return server

    yield _make

    backend.release.set()
    for server in started:
        if server.is_running:
            server.shutdown(timeout=1.0)


def gateway_url(server: GatewayServer, path: str = "/") -> str:
    host, port = server.address
    return f"http://{host}:{port}{path}"
