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
"""Forwarding engine -- re-issues approved requests over the Unix socket.

Architecture:
  Client --TCP--> GatewayRequestHandler --SocketForwarder--> backend.sock

One pooled httpx client dials the backend socket for every request; the
host part of the URL is a fixed virtual host and never resolved. Request
bodies are streamed from the client connection and responses are opened
in streaming mode so the handler can relay bytes as they arrive. Nothing
here buffers a whole body.
"""

from __future__ import annotations

import logging
from typing import BinaryIO, Iterable, Iterator
from urllib.parse import urlsplit

import httpx

from .gates import decode_path

logger = logging.getLogger("sockgate.forwarder")

# Virtual host used in the upstream URL; the socket dial is what matters
VIRTUAL_HOST = "localhost"

# Connection-scoped headers, never forwarded in either direction
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-connection",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

# Answered or rewritten by the gateway itself
_REQUEST_ONLY_SKIP = frozenset({"host", "expect"})

# Read size for streaming request bodies off the client socket
_BODY_CHUNK_SIZE = 65536

# Upper bound for a single chunk-size line in a chunked request body
_MAX_CHUNK_LINE = 4096


class UpstreamUnavailable(Exception):
    """The backend socket could not be reached or dropped before responding."""


class MalformedRequestBody(ValueError):
    """The client sent a body that does not match its framing headers."""


class UnforwardableTarget(ValueError):
    """The request target would not reach the backend unchanged."""


# ---------------------------------------------------------------------------
# Header handling
# ---------------------------------------------------------------------------


def _connection_tokens(headers: Iterable[tuple[str, str]]) -> set[str]:
    tokens: set[str] = set()
    for key, value in headers:
        if key.lower() == "connection":
            tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


def filter_hop_by_hop(headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    """Drop hop-by-hop headers, including any named in ``Connection``."""
    headers = list(headers)
    skip = HOP_BY_HOP_HEADERS | _connection_tokens(headers)
    return [(k, v) for k, v in headers if k.lower() not in skip]


def upgrade_protocol(headers: Iterable[tuple[str, str]]) -> str | None:
    """Return the ``Upgrade`` value if ``Connection`` also asks for an upgrade."""
    headers = list(headers)
    if "upgrade" not in _connection_tokens(headers):
        return None
    for key, value in headers:
        if key.lower() == "upgrade" and value.strip():
            return value.strip()
    return None


def build_upstream_headers(
    headers: Iterable[tuple[str, str]],
    client_ip: str | None = None,
) -> list[tuple[str, str]]:
    """Headers to send to the backend for a client request.

    Order and duplicates are preserved. ``Host`` comes from the virtual
    host and the client address is appended to ``X-Forwarded-For``.
    A protocol upgrade request keeps its ``Connection: Upgrade`` and
    ``Upgrade`` pair so the backend can switch protocols.
    """
    headers = list(headers)
    forwarded: list[tuple[str, str]] = []
    prior_xff: list[str] = []
    for key, value in filter_hop_by_hop(headers):
        lower = key.lower()
        if lower in _REQUEST_ONLY_SKIP:
            continue
        if lower == "x-forwarded-for":
            prior_xff.append(value)
            continue
        forwarded.append((key, value))

    if client_ip:
        forwarded.append(("X-Forwarded-For", ", ".join([*prior_xff, client_ip])))
    elif prior_xff:
        forwarded.append(("X-Forwarded-For", ", ".join(prior_xff)))

    protocol = upgrade_protocol(headers)
    if protocol is not None:
        forwarded.extend([("Connection", "Upgrade"), ("Upgrade", protocol)])
    return forwarded


def response_headers(response: httpx.Response) -> list[tuple[str, str]]:
    """Backend response headers as text, hop-by-hop headers removed."""
    raw = [(k.decode("latin-1"), v.decode("latin-1")) for k, v in response.headers.raw]
    return filter_hop_by_hop(raw)


def origin_form(request_target: str) -> str:
    """Reduce a request target to ``path[?query]`` as received."""
    if request_target.startswith("/"):
        return request_target
    parts = urlsplit(request_target)
    target = parts.path or "/"
    if parts.query:
        target += "?" + parts.query
    return target


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


def iter_request_body(rfile: BinaryIO, headers: Iterable[tuple[str, str]]) -> Iterator[bytes] | None:
    """Return an iterator over the client's request body, or None if it has none.

    Chunked bodies are de-chunked here and re-chunked by httpx on the way
    out. ``Content-Length`` bodies are read in bounded pieces.
    """
    headers = list(headers)
    encodings = [v.lower() for k, v in headers if k.lower() == "transfer-encoding"]
    if encodings:
        if not encodings[-1].replace(" ", "").endswith("chunked"):
            raise MalformedRequestBody("Unsupported Transfer-Encoding")
        return _iter_chunked(rfile)

    lengths = {v.strip() for k, v in headers if k.lower() == "content-length"}
    if not lengths:
        return None
    if len(lengths) > 1:
        raise MalformedRequestBody("Conflicting Content-Length headers")
    value = lengths.pop()
    if not value.isdigit():
        raise MalformedRequestBody(f"Invalid Content-Length: {value!r}")
    length = int(value)
    if length == 0:
        return None
    return _iter_fixed(rfile, length)


def _iter_fixed(rfile: BinaryIO, length: int) -> Iterator[bytes]:
    remaining = length
    while remaining > 0:
        chunk = rfile.read(min(remaining, _BODY_CHUNK_SIZE))
        if not chunk:
            raise MalformedRequestBody(f"Client closed with {remaining} body bytes still expected")
        remaining -= len(chunk)
        yield chunk


def _iter_chunked(rfile: BinaryIO) -> Iterator[bytes]:
    while True:
        line = rfile.readline(_MAX_CHUNK_LINE + 1)
        if not line or len(line) > _MAX_CHUNK_LINE:
            raise MalformedRequestBody("Invalid chunk size line")
        size_text = line.split(b";", 1)[0].strip()
        try:
            size = int(size_text, 16)
        except ValueError as exc:
            raise MalformedRequestBody(f"Invalid chunk size: {size_text!r}") from exc
        if size < 0:
            raise MalformedRequestBody(f"Invalid chunk size: {size_text!r}")

        if size == 0:
            # Trailers are consumed and dropped
            while True:
                trailer = rfile.readline(_MAX_CHUNK_LINE + 1)
                if not trailer or trailer in (b"\r\n", b"\n"):
                    return
                if len(trailer) > _MAX_CHUNK_LINE:
                    raise MalformedRequestBody("Trailer line too long")

        yield from _iter_fixed(rfile, size)
        if rfile.readline(3) not in (b"\r\n", b"\n"):
            raise MalformedRequestBody("Missing CRLF after chunk data")


# ---------------------------------------------------------------------------
# Forwarder
# ---------------------------------------------------------------------------


class SocketForwarder:
    """Sends requests to the backend Unix socket and returns streaming responses.

    Thread-safe: the underlying connection pool is shared, each call gets
    its own response stream which the caller must close.

    Usage:
        forwarder = SocketForwarder("/var/run/docker.sock")
        response = forwarder.open("GET", "/version", headers)
        try:
            for chunk in response.iter_raw():
                ...
        finally:
            response.close()
    """

    def __init__(
        self,
        socket_path: str,
        connect_timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._socket_path = socket_path
        # Reads are unbounded: event streams may stay open for hours
        self._timeout = httpx.Timeout(None, connect=connect_timeout)
        self._client = httpx.Client(
            transport=transport or httpx.HTTPTransport(uds=socket_path),
            timeout=self._timeout,
            follow_redirects=False,
        )

    @property
    def socket_path(self) -> str:
        return self._socket_path

    def open(
        self,
        method: str,
        request_target: str,
        headers: Iterable[tuple[str, str]],
        body: Iterator[bytes] | None = None,
        client_ip: str | None = None,
    ) -> httpx.Response:
        """Forward one request and return the response with its body unread.

        Raises:
            UnforwardableTarget: URL normalisation would change the path the
                gates approved, e.g. by collapsing ``..`` segments.
            UpstreamUnavailable: the socket is missing, refused the connection
                or closed before sending a response head.
        """
        target = origin_form(request_target)
        try:
            url = httpx.URL(f"http://{VIRTUAL_HOST}{target}")
        except httpx.InvalidURL as exc:
            raise UnforwardableTarget(f"Invalid request target {request_target!r}: {exc}") from exc
        if url.path != decode_path(target):
            raise UnforwardableTarget(f"Request target {request_target!r} would be rewritten to {url.path!r}")

        # httpx.Request directly, so no client default headers are injected
        request = httpx.Request(
            method,
            url,
            headers=build_upstream_headers(headers, client_ip),
            content=body,
            extensions={"timeout": self._timeout.as_dict()},
        )
        try:
            return self._client.send(request, stream=True)
        except httpx.TransportError as exc:
            logger.debug("Backend %s unreachable: %s", self._socket_path, exc)
            raise UpstreamUnavailable(f"{type(exc).__name__}: {exc}") from exc

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> SocketForwarder:
        return self

    def __exit__(self, *args) -> None:
        self.close()
