from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional


class StallCheckError(Exception):
    """Base class for every failure that aborts a check run."""


class TransportError(StallCheckError):
    """Connection, timeout or HTTP-level failure talking to the node."""


class RpcError(StallCheckError):
    def __init__(self, message: str, code: Optional[Any] = None) -> None:
        self.message = str(message)
        self.code = code
        text = f"jsonrpc error: {self.message}"
        if code is not None:
            text += f" (code {code})"
        super().__init__(text)


class DecodeError(StallCheckError, ValueError):
    """Malformed JSON in the RPC envelope, the block result or the state file."""


class StateIOError(StallCheckError, OSError):
    """Local state file could not be read or written."""


class StalledError(StallCheckError):
    """The node reported the same block for longer than the threshold.

    Not a technical failure: this is the condition the tool exists to report,
    so it is surfaced the same way as one.
    """

    def __init__(self, number: str, elapsed: timedelta, threshold: timedelta) -> None:
        self.number = str(number)
        self.elapsed = elapsed
        self.threshold = threshold
        super().__init__(
            f"node is stalled at {self.number}: no new block for "
            f"{int(elapsed.total_seconds())}s (threshold {int(threshold.total_seconds())}s)"
        )
