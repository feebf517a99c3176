# Sockgate
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for lifecycle state transitions and connection tracking."""

import socket
import threading
import time

import pytest

from sockgate.lifecycle import (
    VALID_TRANSITIONS,
    ConnectionTracker,
    InvalidTransitionError,
    Lifecycle,
    ServerState,
)


class TestLifecycle:
    """Tests for the ServerState machine."""

    def test_starts_in_starting(self):
        assert Lifecycle().state == ServerState.STARTING

    def test_happy_path(self):
        lifecycle = Lifecycle()
        lifecycle.transition(ServerState.RUNNING)
        lifecycle.transition(ServerState.SHUTTING_DOWN)
        lifecycle.transition(ServerState.STOPPED)
        assert lifecycle.state == ServerState.STOPPED

    def test_bind_failure_path(self):
        lifecycle = Lifecycle()
        lifecycle.transition(ServerState.STOPPED)
        assert lifecycle.state == ServerState.STOPPED

    def test_cannot_skip_shutting_down(self):
        lifecycle = Lifecycle()
        lifecycle.transition(ServerState.RUNNING)
        with pytest.raises(InvalidTransitionError):
            lifecycle.transition(ServerState.STOPPED)

    def test_cannot_shut_down_before_running(self):
        with pytest.raises(InvalidTransitionError):
            Lifecycle().transition(ServerState.SHUTTING_DOWN)

    def test_stopped_is_terminal(self):
        assert VALID_TRANSITIONS[ServerState.STOPPED] == set()

    def test_wait_for(self):
        lifecycle = Lifecycle()
        lifecycle.transition(ServerState.RUNNING)
        threading.Timer(0.05, lifecycle.transition, args=(ServerState.SHUTTING_DOWN,)).start()
        assert lifecycle.wait_for(ServerState.SHUTTING_DOWN, timeout=2.0) is True

    def test_wait_for_times_out(self):
        assert Lifecycle().wait_for(ServerState.RUNNING, timeout=0.05) is False


@pytest.fixture
def socket_pair():
    a, b = socket.socketpair()
    yield a, b
    a.close()
    b.close()


class TestConnectionTracker:
    """Tests for in-flight bookkeeping and draining."""

    def test_register_and_unregister(self, socket_pair):
        tracker = ConnectionTracker()
        sock, _ = socket_pair
        assert tracker.register(sock) is True
        assert tracker.open_count == 1
        tracker.unregister(sock)
        assert tracker.open_count == 0

    def test_active_and_idle(self, socket_pair):
        tracker = ConnectionTracker()
        sock, _ = socket_pair
        tracker.register(sock)
        assert tracker.mark_active(sock) is True
        assert tracker.active_count == 1
        assert tracker.mark_idle(sock) is False
        assert tracker.active_count == 0

    def test_register_refused_while_draining(self, socket_pair):
        tracker = ConnectionTracker()
        tracker.begin_drain()
        assert tracker.register(socket_pair[0]) is False

    def test_drain_closes_idle_connections(self, socket_pair):
        tracker = ConnectionTracker()
        sock, peer = socket_pair
        tracker.register(sock)

        assert tracker.begin_drain() == 1
        assert tracker.open_count == 0
        # The peer sees end-of-stream
        peer.settimeout(1.0)
        assert peer.recv(1) == b""
        # The handler learns its connection is gone
        assert tracker.mark_active(sock) is False

    def test_drain_keeps_active_connections(self, socket_pair):
        tracker = ConnectionTracker()
        sock, _ = socket_pair
        tracker.register(sock)
        tracker.mark_active(sock)

        assert tracker.begin_drain() == 0
        assert tracker.open_count == 1
        # Finishing the request while draining means: close afterwards
        assert tracker.mark_idle(sock) is True

    def test_wait_drained_immediately_when_empty(self):
        assert ConnectionTracker().wait_drained(0.1) is True

    def test_wait_drained_after_unregister(self, socket_pair):
        tracker = ConnectionTracker()
        sock, _ = socket_pair
        tracker.register(sock)
        tracker.mark_active(sock)
        tracker.begin_drain()
        threading.Timer(0.05, tracker.unregister, args=(sock,)).start()
        assert tracker.wait_drained(2.0) is True

    def test_wait_drained_times_out(self, socket_pair):
        tracker = ConnectionTracker()
        sock, _ = socket_pair
        tracker.register(sock)
        tracker.mark_active(sock)
        start = time.monotonic()
        assert tracker.wait_drained(0.1) is False
        assert time.monotonic() - start < 1.0

    def test_force_close(self, socket_pair):
        tracker = ConnectionTracker()
        sock, peer = socket_pair
        tracker.register(sock)
        tracker.mark_active(sock)

        assert tracker.force_close() == 1
        assert tracker.open_count == 0
        peer.settimeout(1.0)
        assert peer.recv(1) == b""
