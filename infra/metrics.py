from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass
class RunMetrics:
    """What one check run did: its RPC request, its outcome, its writes.

    Each run is its own process, so nothing is aggregated or exported; the
    CLI logs `snapshot()` at DEBUG and embeds it in the optional run summary.
    """

    rpc_requests: int = 0
    rpc_latency_ms: Optional[float] = None
    rpc_failure: Optional[str] = None
    outcome: Optional[str] = None
    state_writes: int = 0

    def reset(self) -> None:
        self.rpc_requests = 0
        self.rpc_latency_ms = None
        self.rpc_failure = None
        self.outcome = None
        self.state_writes = 0

    def record_request(self, latency_ms: float) -> None:
        self.rpc_requests += 1
        self.rpc_latency_ms = round(float(latency_ms), 3)

    def record_failure(self, reason: str) -> None:
        self.rpc_failure = str(reason)

    def record_outcome(self, outcome: str) -> None:
        self.outcome = str(outcome)

    def record_write(self) -> None:
        self.state_writes += 1

    def snapshot(self) -> Dict[str, Any]:
        return asdict(self)


METRICS = RunMetrics()
