from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from infra.metrics import METRICS
from infra.rpc import AsyncRPC
from stallwatch.artifacts import LOGGER_NAME
from stallwatch.block_record import BlockRecord, format_timestamp
from stallwatch.config import Settings
from stallwatch.decision import COLD_START, PROGRESSED, Decision, evaluate
from stallwatch.errors import StalledError
from stallwatch.state_store import ensure_state_dir, load_state, save_state


@dataclass(frozen=True)
class CheckResult:
    decision: Decision
    local: Optional[BlockRecord]
    remote: BlockRecord
    saved: bool

    def to_dict(self) -> Dict[str, Any]:
        elapsed = self.decision.elapsed
        return {
            "outcome": self.decision.outcome,
            "number": self.decision.number,
            "elapsed_s": elapsed.total_seconds() if elapsed is not None else None,
            "saved": self.saved,
            "remote_observed_at": format_timestamp(self.remote.observed_at),
            "baseline_observed_at": format_timestamp(self.local.observed_at) if self.local else None,
        }


async def _fetch_remote(settings: Settings, rpc: Any) -> BlockRecord:
    if rpc is not None:
        return await rpc.get_latest_block(timeout_s=settings.timeout_s)
    async with AsyncRPC(settings.rpc_url, default_timeout_s=settings.timeout_s) as client:
        return await client.get_latest_block()


async def run_check(
    settings: Settings,
    *,
    rpc: Any = None,
    logger: Optional[logging.Logger] = None,
) -> CheckResult:
    """Load the baseline, fetch the node's latest block, decide, maybe save.

    Any failure propagates before the state file is touched. A detected stall
    raises StalledError and leaves the baseline as it was so the elapsed time
    keeps accumulating across runs. `rpc` may be any object with an async
    `get_latest_block(timeout_s=...)`; it is not closed here.
    """
    log = logger or logging.getLogger(LOGGER_NAME)
    threshold = timedelta(seconds=float(settings.stalled_s))

    local = load_state(settings.state_file)
    remote = await _fetch_remote(settings, rpc)
    decision = evaluate(local, remote, threshold)
    METRICS.record_outcome(decision.outcome)
    elapsed = decision.elapsed or timedelta(0)

    if decision.stalled:
        log.error(
            "node stalled at %s for %.0fs (threshold %.0fs, baseline since %s)",
            remote.describe(),
            elapsed.total_seconds(),
            threshold.total_seconds(),
            format_timestamp(local.observed_at) if local else "?",
        )
        raise StalledError(decision.number, elapsed, threshold)

    saved = False
    if decision.baseline is not None:
        if settings.create_state_dir:
            ensure_state_dir(settings.state_file)
        save_state(settings.state_file, decision.baseline)
        METRICS.record_write()
        saved = True

    if decision.outcome == COLD_START:
        log.info("no baseline at %s, recorded block %s", settings.state_file, remote.describe())
    elif decision.outcome == PROGRESSED:
        log.info("chain progressed %s -> %s", local.describe() if local else "?", remote.describe())
    else:
        log.info(
            "block %s unchanged for %.0fs (threshold %.0fs)",
            remote.describe(),
            elapsed.total_seconds(),
            threshold.total_seconds(),
        )

    return CheckResult(decision=decision, local=local, remote=remote, saved=saved)
