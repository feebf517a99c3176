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
"""Allow-list gates.

Two independent pass/fail checks run for every request:

  - NetworkGate: is the peer address of the TCP connection inside the
    allowed CIDR range?
  - PathGate: does the percent-decoded request path contain one of the
    allowed fragments?

Both gates fail closed. An unparseable address, a missing network, an
empty fragment list, a malformed request target or a path with "." or
".." segments all mean "deny".
Neither gate keeps any state between calls.
"""

from __future__ import annotations

import ipaddress
import logging
from urllib.parse import unquote, urlsplit

logger = logging.getLogger("sockgate.gates")

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


class NetworkGate:
    """Source-address allow-list.

    Only ever feed this the address the socket layer reports for the
    connection. Client-supplied headers such as X-Forwarded-For are
    trivially spoofed.
    """

    def __init__(self, network: IPNetwork | None) -> None:
        self._network = network

    @property
    def network(self) -> IPNetwork | None:
        return self._network

    def permit(self, remote_address: str) -> bool:
        """Return True if ``remote_address`` lies inside the allowed network."""
        if self._network is None:
            return False
        try:
            address = ipaddress.ip_address(remote_address.split("%", 1)[0])
        except (ValueError, AttributeError):
            return False

        # Dual-stack listeners report IPv4 peers as ::ffff:a.b.c.d
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
            address = address.ipv4_mapped

        if address.version != self._network.version:
            return False
        return address in self._network


class PathGate:
    """URL-path substring allow-list (case-sensitive)."""

    def __init__(self, fragments: tuple[str, ...] | list[str]) -> None:
        # Empty fragments would match every path
        self._fragments = tuple(f for f in fragments if f)

    @property
    def fragments(self) -> tuple[str, ...]:
        return self._fragments

    def permit(self, request_path: str) -> bool:
        """Return True if the decoded path contains any allowed fragment.

        ``request_path`` is the raw request target as received. The query
        string is dropped and the remainder percent-decoded before matching,
        so ``/v1.41/%63ontainers/json`` is judged as ``/v1.41/containers/json``.
        Paths with ``.`` or ``..`` segments are refused outright: HTTP
        clients and servers collapse them, so the backend would route a
        different path from the one matched here.
        """
        path = decode_path(request_path)
        if path is None or has_dot_segments(path):
            return False
        return any(fragment in path for fragment in self._fragments)


def has_dot_segments(path: str) -> bool:
    """True if ``path`` has a ``.`` or ``..`` segment."""
    return any(segment in (".", "..") for segment in path.split("/"))


def decode_path(request_target: str) -> str | None:
    """Return the percent-decoded path of a request target, or None."""
    try:
        path = urlsplit(request_target).path
        return unquote(path, errors="strict")
    except (ValueError, AttributeError):
        # UnicodeDecodeError is a ValueError
        return None
