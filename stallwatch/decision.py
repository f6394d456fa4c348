from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from stallwatch.block_record import BlockRecord

COLD_START = "cold_start"
PROGRESSED = "progressed"
UNCHANGED = "unchanged"
STALLED = "stalled"


@dataclass(frozen=True)
class Decision:
    outcome: str
    number: str
    elapsed: Optional[timedelta] = None
    baseline: Optional[BlockRecord] = None

    @property
    def stalled(self) -> bool:
        return self.outcome == STALLED

    @property
    def persist(self) -> bool:
        return self.baseline is not None


def evaluate(local: Optional[BlockRecord], remote: BlockRecord, threshold: timedelta) -> Decision:
    """Compare the stored baseline with a fresh fetch.

    The baseline is only replaced when the block number changes, so its
    `observed_at` keeps meaning "first seen at this number". Rewriting it on
    every run would reset the stall clock each time.
    """
    if local is None:
        return Decision(outcome=COLD_START, number=remote.number, baseline=remote)

    if local.number != remote.number:
        return Decision(
            outcome=PROGRESSED,
            number=remote.number,
            elapsed=remote.observed_at - local.observed_at,
            baseline=remote,
        )

    elapsed = remote.observed_at - local.observed_at
    if elapsed > threshold:
        return Decision(outcome=STALLED, number=remote.number, elapsed=elapsed)
    return Decision(outcome=UNCHANGED, number=remote.number, elapsed=elapsed)
