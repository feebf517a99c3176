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
"""Gateway access log.

Every gate decision can be recorded for later review. The log is
write-only from the gateway's point of view and never feeds back into
access decisions.

Log format: JSON Lines (one JSON object per line) for easy parsing.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import Counter, deque
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TextIO

logger = logging.getLogger("sockgate.audit")


@dataclass
class AuditEntry:
    """A single access decision."""

    timestamp: float
    event_type: str  # "allowed", "denied", "upstream_error"
    method: str
    path: str  # Request target as received
    client_ip: str
    status_code: int = 0  # Status sent to the client (0 if none was sent)
    reason: str = ""
    duration_ms: float = 0.0
    response_size: int = 0  # Body bytes relayed to the client

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def denied(
        cls,
        method: str,
        path: str,
        client_ip: str,
        reason: str,
        status_code: int = 403,
    ) -> AuditEntry:
        """Create an entry for a request refused before reaching the backend."""
        return cls(
            timestamp=time.time(),
            event_type="denied",
            method=method,
            path=path,
            client_ip=client_ip,
            status_code=status_code,
            reason=reason,
        )

    @classmethod
    def allowed(
        cls,
        method: str,
        path: str,
        client_ip: str,
        status_code: int,
        duration_ms: float = 0.0,
        response_size: int = 0,
    ) -> AuditEntry:
        """Create an entry for a request relayed to the backend."""
        return cls(
            timestamp=time.time(),
            event_type="allowed",
            method=method,
            path=path,
            client_ip=client_ip,
            status_code=status_code,
            duration_ms=duration_ms,
            response_size=response_size,
        )

    @classmethod
    def upstream_error(
        cls,
        method: str,
        path: str,
        client_ip: str,
        reason: str,
        duration_ms: float = 0.0,
    ) -> AuditEntry:
        """Create an entry for a request the backend could not serve."""
        return cls(
            timestamp=time.time(),
            event_type="upstream_error",
            method=method,
            path=path,
            client_ip=client_ip,
            status_code=502,
            reason=reason,
            duration_ms=duration_ms,
        )


class AuditLogger:
    """Appends one JSON line per access decision to ``log_path``.

    Handler threads share one logger; writes and the entry counter are
    serialized by a single lock. A failed write is reported on the module
    logger and never reaches the request that triggered it.
    """

    def __init__(self, log_path: str | Path) -> None:
        self._path = Path(log_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._stream: TextIO | None = None
        self._entry_count = 0

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def entry_count(self) -> int:
        """Entries recorded since this logger was created."""
        with self._lock:
            return self._entry_count

    def log(self, entry: AuditEntry) -> None:
        line = entry.to_json() + "\n"
        with self._lock:
            try:
                self._append(line)
            except OSError as exc:
                logger.error("Cannot write audit entry to %s: %s", self._path, exc)
                return
            self._entry_count += 1

    def _append(self, line: str) -> None:
        # Opened on first write, and again if a write follows close()
        if self._stream is None:
            self._stream = self._path.open("a", encoding="utf-8")
        self._stream.write(line)
        self._stream.flush()

    def close(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is not None:
            stream.close()

    def read_recent(self, n: int = 50) -> list[AuditEntry]:
        """Return up to ``n`` of the newest entries, oldest first.

        Lines that are not valid entries are skipped.
        """
        try:
            with self._path.open(encoding="utf-8") as stream:
                tail = deque(stream, maxlen=n)
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.error("Cannot read audit log %s: %s", self._path, exc)
            return []

        entries = []
        for line in tail:
            try:
                entries.append(AuditEntry(**json.loads(line)))
            except (json.JSONDecodeError, TypeError):
                continue
        return entries

    def get_stats(self) -> dict:
        """Counts over the newest 1000 entries."""
        entries = self.read_recent(1000)
        by_type = Counter(e.event_type for e in entries)
        return {
            "total_requests": len(entries),
            "allowed": by_type["allowed"],
            "denied": by_type["denied"],
            "upstream_errors": by_type["upstream_error"],
            "unique_clients": len({e.client_ip for e in entries}),
        }

    def __enter__(self) -> AuditLogger:
        return self

    def __exit__(self, *args) -> None:
        self.close()


class NullAuditLogger(AuditLogger):
    """Counts entries but stores nothing; used when no audit path is set."""

    def __init__(self) -> None:
        self._path = None
        self._lock = threading.Lock()
        self._stream = None
        self._entry_count = 0

    def _append(self, line: str) -> None:
        pass

    def read_recent(self, n: int = 50) -> list[AuditEntry]:
        return []


def create_audit_logger(log_path: str | Path | None) -> AuditLogger:
    """Return a file-backed logger, or a NullAuditLogger when no path is set."""
    if not log_path:
        return NullAuditLogger()
    return AuditLogger(log_path)
