# Sockgate
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for the gateway access log."""

import json
import threading
import time

from sockgate.audit import AuditEntry, AuditLogger, NullAuditLogger, create_audit_logger


class TestAuditEntry:
    """Tests for AuditEntry factory methods."""

    def test_denied_entry(self):
        entry = AuditEntry.denied("GET", "/v1.41/info", "192.168.1.5", "path not in allow-list")
        assert entry.event_type == "denied"
        assert entry.status_code == 403
        assert entry.client_ip == "192.168.1.5"
        assert entry.reason == "path not in allow-list"
        assert entry.timestamp > 0

    def test_allowed_entry(self):
        entry = AuditEntry.allowed(
            "GET", "/v1.41/containers/json", "10.0.0.5",
            status_code=200, duration_ms=3.5, response_size=512,
        )
        assert entry.event_type == "allowed"
        assert entry.status_code == 200
        assert entry.duration_ms == 3.5
        assert entry.response_size == 512

    def test_upstream_error_entry(self):
        entry = AuditEntry.upstream_error("GET", "/version", "10.0.0.5", "ConnectError: refused")
        assert entry.event_type == "upstream_error"
        assert entry.status_code == 502

    def test_to_json(self):
        data = json.loads(AuditEntry.denied("GET", "/info", "1.2.3.4", "nope").to_json())
        assert data["event_type"] == "denied"
        assert data["path"] == "/info"

    def test_timestamp_is_recent(self):
        before = time.time()
        entry = AuditEntry.denied("GET", "/", "1.2.3.4", "x")
        assert before <= entry.timestamp <= time.time()


class TestAuditLogger:
    """Tests for the JSON Lines file logger."""

    def test_log_and_read_back(self, tmp_path):
        with AuditLogger(tmp_path / "audit.log") as audit:
            audit.log(AuditEntry.denied("GET", "/info", "1.2.3.4", "nope"))
            audit.log(AuditEntry.allowed("GET", "/version", "127.0.0.1", status_code=200))
            entries = audit.read_recent()
        assert [e.event_type for e in entries] == ["denied", "allowed"]
        assert audit.entry_count == 2

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "audit.log"
        with AuditLogger(path) as audit:
            audit.log(AuditEntry.denied("GET", "/", "1.2.3.4", "x"))
        assert path.exists()

    def test_one_json_object_per_line(self, tmp_path):
        path = tmp_path / "audit.log"
        with AuditLogger(path) as audit:
            for _ in range(3):
                audit.log(AuditEntry.denied("GET", "/", "1.2.3.4", "x"))
        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 3
        assert all(json.loads(line)["event_type"] == "denied" for line in lines)

    def test_corrupt_lines_skipped(self, tmp_path):
        path = tmp_path / "audit.log"
        with AuditLogger(path) as audit:
            audit.log(AuditEntry.denied("GET", "/", "1.2.3.4", "x"))
        with open(path, "a", encoding="utf-8") as f:
            f.write("not json\n")
        assert len(AuditLogger(path).read_recent()) == 1

    def test_read_recent_missing_file(self, tmp_path):
        assert AuditLogger(tmp_path / "never-written.log").read_recent() == []

    def test_read_recent_returns_newest(self, tmp_path):
        with AuditLogger(tmp_path / "audit.log") as audit:
            for i in range(5):
                audit.log(AuditEntry.denied("GET", f"/p{i}", "1.2.3.4", "x"))
            recent = audit.read_recent(2)
        assert [e.path for e in recent] == ["/p3", "/p4"]

    def test_stats(self, tmp_path):
        with AuditLogger(tmp_path / "audit.log") as audit:
            audit.log(AuditEntry.denied("GET", "/info", "1.2.3.4", "x"))
            audit.log(AuditEntry.denied("GET", "/info", "5.6.7.8", "x"))
            audit.log(AuditEntry.allowed("GET", "/version", "127.0.0.1", status_code=200))
            audit.log(AuditEntry.upstream_error("GET", "/version", "127.0.0.1", "refused"))
            stats = audit.get_stats()
        assert stats == {
            "total_requests": 4,
            "allowed": 1,
            "denied": 2,
            "upstream_errors": 1,
            "unique_clients": 3,
        }

    def test_concurrent_writes(self, tmp_path):
        path = tmp_path / "audit.log"
        audit = AuditLogger(path)

        def writer():
            for _ in range(50):
                audit.log(AuditEntry.denied("GET", "/", "1.2.3.4", "x"))

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        audit.close()

        assert len(path.read_text(encoding="utf-8").splitlines()) == 200


class TestNullAuditLogger:
    def test_factory_without_path(self):
        assert isinstance(create_audit_logger(None), NullAuditLogger)
        assert isinstance(create_audit_logger(""), NullAuditLogger)

    def test_factory_with_path(self, tmp_path):
        audit = create_audit_logger(tmp_path / "audit.log")
        assert not isinstance(audit, NullAuditLogger)
        audit.close()

    def test_null_logger_counts_without_writing(self):
        audit = NullAuditLogger()
        audit.log(AuditEntry.denied("GET", "/", "1.2.3.4", "x"))
        assert audit.entry_count == 1
        assert audit.path is None
        assert audit.read_recent() == []
        assert audit.get_stats()["total_requests"] == 0

    def test_null_logger_counts_concurrent_writers(self):
        audit = NullAuditLogger()

        def writer():
            for _ in range(500):
                audit.log(AuditEntry.denied("GET", "/", "1.2.3.4", "x"))

        threads = [threading.Thread(target=writer) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert audit.entry_count == 4000

    def test_log_after_close_reopens(self, tmp_path):
        path = tmp_path / "audit.log"
        audit = AuditLogger(path)
        audit.log(AuditEntry.denied("GET", "/", "1.2.3.4", "x"))
        audit.close()
        audit.log(AuditEntry.denied("GET", "/", "1.2.3.4", "x"))
        audit.close()
        assert len(audit.read_recent()) == 2
