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
"""Server lifecycle state and in-flight connection bookkeeping.

Lifecycle: starting → running → shutting_down → stopped.

A listener that fails to bind goes straight from starting to stopped.
The tracker knows which client connections are mid-request and which
are idle between keep-alive requests, so shutdown can close the idle
ones at once, wait for the busy ones, and force-close whatever is left
when the deadline passes.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from enum import Enum

logger = logging.getLogger("sockgate.lifecycle")


class ServerState(str, Enum):
    """Gateway lifecycle states."""

    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


# Valid state transitions
VALID_TRANSITIONS: dict[ServerState, set[ServerState]] = {
    ServerState.STARTING: {ServerState.RUNNING, ServerState.STOPPED},
    ServerState.RUNNING: {ServerState.SHUTTING_DOWN},
    ServerState.SHUTTING_DOWN: {ServerState.STOPPED},
    ServerState.STOPPED: set(),
}


class InvalidTransitionError(ValueError):
    """Raised when an invalid state transition is attempted."""


class Lifecycle:
    """Thread-safe holder for the current ServerState."""

    def __init__(self) -> None:
        self._state = ServerState.STARTING
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)

    @property
    def state(self) -> ServerState:
        with self._lock:
            return self._state

    def transition(self, new_state: ServerState) -> None:
        """Move to ``new_state`` or raise InvalidTransitionError."""
        with self._changed:
            if new_state not in VALID_TRANSITIONS[self._state]:
                raise InvalidTransitionError(
                    f"Cannot transition from {self._state.value} to {new_state.value}"
                )
            logger.debug("Lifecycle %s -> %s", self._state.value, new_state.value)
            self._state = new_state
            self._changed.notify_all()

    def wait_for(self, state: ServerState, timeout: float | None = None) -> bool:
        """Block until the lifecycle reaches ``state``."""
        with self._changed:
            return self._changed.wait_for(lambda: self._state == state, timeout=timeout)


class ConnectionTracker:
    """Registry of open client connections and whether each is busy.

    Handler threads register their socket on setup, mark it active while
    a request is being served, idle between requests, and unregister on
    finish. All methods are safe to call from any thread.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._drained = threading.Condition(self._lock)
        self._connections: dict[socket.socket, bool] = {}  # sock -> active
        self._draining = False

    @property
    def draining(self) -> bool:
        with self._lock:
            return self._draining

    @property
    def open_count(self) -> int:
        with self._lock:
            return len(self._connections)

    @property
    def active_count(self) -> int:
        with self._lock:
            return sum(1 for active in self._connections.values() if active)

    def register(self, sock: socket.socket) -> bool:
        """Track a new connection. Returns False once draining has begun."""
        with self._lock:
            if self._draining:
                return False
            self._connections[sock] = False
            return True

    def unregister(self, sock: socket.socket) -> None:
        with self._drained:
            self._connections.pop(sock, None)
            if not self._connections:
                self._drained.notify_all()

    def mark_active(self, sock: socket.socket) -> bool:
        """Flag a connection as serving a request.

        Returns False if the connection was closed by a drain in the
        meantime; the caller must then abandon the request.
        """
        with self._lock:
            if sock not in self._connections:
                return False
            self._connections[sock] = True
            return True

    def mark_idle(self, sock: socket.socket) -> bool:
        """Flag a connection as idle. Returns True if it should now close."""
        with self._lock:
            if sock in self._connections:
                self._connections[sock] = False
            return self._draining

    def begin_drain(self) -> int:
        """Refuse new connections and close every idle one.

        Returns the number of idle connections that were closed.
        """
        with self._lock:
            self._draining = True
            idle = [s for s, active in self._connections.items() if not active]
            for sock in idle:
                del self._connections[sock]
            if not self._connections:
                self._drained.notify_all()
        for sock in idle:
            _hard_close(sock)
        return len(idle)

    def wait_drained(self, timeout: float) -> bool:
        """Wait until no connections remain. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        with self._drained:
            while self._connections:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._drained.wait(remaining)
            return True

    def force_close(self) -> int:
        """Close every remaining connection mid-flight. Returns how many."""
        with self._lock:
            remaining = list(self._connections)
            self._connections.clear()
            self._drained.notify_all()
        for sock in remaining:
            _hard_close(sock)
        return len(remaining)


def _hard_close(sock: socket.socket) -> None:
    """Shut a socket down so any thread blocked on it wakes up."""
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # Already closed by the peer or the handler
        pass
