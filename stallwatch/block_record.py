from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from eth_utils import is_0x_prefixed, is_hex, to_int

from stallwatch.errors import DecodeError

# Key written by the older tool variant; still accepted on load.
_LEGACY_TIME_KEY = "LastSeen"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """RFC3339 in UTC with a trailing Z and microsecond precision."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(raw: Any) -> datetime:
    if not isinstance(raw, str) or not raw.strip():
        raise DecodeError(f"invalid timestamp: {raw!r}")
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # Older files carry nanoseconds; datetime only holds micros.
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        for ch in rest:
            if not ch.isdigit():
                break
            digits += ch
        tail = rest[len(digits):]
        text = f"{head}.{(digits + '000000')[:6]}{tail}"
    try:
        ts = datetime.fromisoformat(text)
    except ValueError as exc:
        raise DecodeError(f"invalid timestamp: {raw!r}") from exc
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


@dataclass(frozen=True)
class BlockRecord:
    """A block number and the moment it was first seen as the baseline."""

    number: str
    observed_at: datetime

    def to_dict(self) -> Dict[str, str]:
        return {"number": self.number, "observed_at": format_timestamp(self.observed_at)}

    @classmethod
    def from_dict(cls, raw: Any) -> "BlockRecord":
        if not isinstance(raw, dict):
            raise DecodeError(f"block record must be a JSON object, got {type(raw).__name__}")
        number = raw.get("number")
        if not isinstance(number, str) or not number:
            raise DecodeError(f"block record has no valid number: {number!r}")
        stamp = raw.get("observed_at")
        if stamp is None:
            stamp = raw.get(_LEGACY_TIME_KEY)
        return cls(number=number, observed_at=parse_timestamp(stamp))

    def height(self) -> Optional[int]:
        """Decimal height for display; None when the number is not 0x-hex."""
        if not (is_0x_prefixed(self.number) and is_hex(self.number)):
            return None
        try:
            return to_int(hexstr=self.number)
        except ValueError:
            return None

    def describe(self) -> str:
        h = self.height()
        if h is None:
            return self.number
        return f"{self.number} (#{h})"
