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
"""Per-request access decision.

The dispatcher combines both gates with a logical AND. Each gate is
always evaluated, so the decision records every reason a request was
refused. It holds no mutable state and is shared by all handler threads.
"""

from __future__ import annotations

from dataclasses import dataclass

from .config import GatewayConfig
from .gates import NetworkGate, PathGate


@dataclass(frozen=True)
class Decision:
    """Outcome of evaluating one request against both gates."""

    network_ok: bool
    path_ok: bool

    @property
    def allowed(self) -> bool:
        return self.network_ok and self.path_ok

    @property
    def reason(self) -> str:
        if self.allowed:
            return "allowed"
        reasons = []
        if not self.network_ok:
            reasons.append("source address not in allowed network")
        if not self.path_ok:
            reasons.append("path not in allow-list")
        return "; ".join(reasons)


class RequestDispatcher:
    """Evaluates the network and path gates for incoming requests."""

    def __init__(self, network_gate: NetworkGate, path_gate: PathGate) -> None:
        self._network_gate = network_gate
        self._path_gate = path_gate

    @classmethod
    def from_config(cls, config: GatewayConfig) -> RequestDispatcher:
        return cls(
            NetworkGate(config.allowed_network),
            PathGate(config.allowed_paths),
        )

    @property
    def network_gate(self) -> NetworkGate:
        return self._network_gate

    @property
    def path_gate(self) -> PathGate:
        return self._path_gate

    def evaluate(self, remote_address: str, request_target: str) -> Decision:
        """Run both gates for one request."""
        network_ok = self._network_gate.permit(remote_address)
        path_ok = self._path_gate.permit(request_target)
        return Decision(network_ok=network_ok, path_ok=path_ok)
