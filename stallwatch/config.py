# stallwatch/config.py

from __future__ import annotations

import json
import math
import os
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping, Optional

# Node under observation (geth default HTTP port).
DEFAULT_RPC_URL = "http://localhost:8545"

# Deadline for the single eth_getBlockByNumber call (seconds).
DEFAULT_TIMEOUT_S = 10.0

# Same block for longer than this is reported as a stall (seconds).
DEFAULT_STALLED_S = 120.0

DEFAULT_STATE_DIR_NAME = "stallwatch"
DEFAULT_STATE_FILE_NAME = "latest.json"

# Env overrides
ENV_CONFIG = "STALLWATCH_CONFIG"
ENV_RPC_URL = "RPC_URL"
ENV_STATE_FILE = "STALLWATCH_FILE"
ENV_TIMEOUT = "STALLWATCH_TIMEOUT"
ENV_STALLED = "STALLWATCH_STALLED"

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def default_state_file(env: Optional[Mapping[str, str]] = None) -> Path:
    """$XDG_STATE_HOME/stallwatch/latest.json, else ~/.local/state/..."""
    env = os.environ if env is None else env
    base = str(env.get("XDG_STATE_HOME") or "").strip()
    root = Path(base) if base else Path.home() / ".local" / "state"
    return root / DEFAULT_STATE_DIR_NAME / DEFAULT_STATE_FILE_NAME


def parse_duration(raw: Any) -> float:
    """Return seconds for `120`, `1.5`, `500ms`, `2m` or `1h30m`.

    Bare numbers are seconds. Raises ValueError on anything else, including
    negative values.
    """
    if isinstance(raw, bool):
        raise ValueError(f"invalid duration: {raw!r}")
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        text = str(raw or "").strip()
        if not text:
            raise ValueError("empty duration")
        try:
            value = float(text)
        except ValueError:
            pos = 0
            value = 0.0
            for m in _DURATION_PART.finditer(text):
                if m.start() != pos:
                    raise ValueError(f"invalid duration: {raw!r}") from None
                value += float(m.group(1)) * _UNIT_SECONDS[m.group(2)]
                pos = m.end()
            if pos == 0 or pos != len(text):
                raise ValueError(f"invalid duration: {raw!r}") from None
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"invalid duration: {raw!r}")
    return value


@dataclass
class Settings:
    state_file: Path
    rpc_url: str = DEFAULT_RPC_URL
    timeout_s: float = DEFAULT_TIMEOUT_S
    stalled_s: float = DEFAULT_STALLED_S
    # Only the default location is created on demand; explicit paths must exist.
    create_state_dir: bool = False


def _read_json(path: Path) -> Optional[dict]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return raw if isinstance(raw, dict) else None


def _apply(s: Settings, key: str, value: Any) -> None:
    if value is None or value == "":
        return
    if key == "state_file":
        s.state_file = Path(str(value)).expanduser()
        s.create_state_dir = False
    elif key == "rpc_url":
        s.rpc_url = str(value).strip()
    elif key == "timeout_s":
        s.timeout_s = parse_duration(value)
    elif key == "stalled_s":
        s.stalled_s = parse_duration(value)


def load_settings(
    config_path: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Defaults, then the JSON config file, then environment variables.

    CLI flags are layered on top by the caller. An unreadable config file is
    ignored; unknown keys in it are skipped.
    """
    env = os.environ if env is None else env
    s = Settings(state_file=default_state_file(env), create_state_dir=True)

    path = config_path
    if path is None and env.get(ENV_CONFIG):
        path = Path(str(env.get(ENV_CONFIG)))
    if path is not None:
        raw = _read_json(Path(path)) or {}
        known = {f.name for f in fields(Settings)}
        for k, v in raw.items():
            if k in known:
                _apply(s, k, v)

    _apply(s, "rpc_url", env.get(ENV_RPC_URL))
    _apply(s, "state_file", env.get(ENV_STATE_FILE))
    _apply(s, "timeout_s", env.get(ENV_TIMEOUT))
    _apply(s, "stalled_s", env.get(ENV_STALLED))
    return s
