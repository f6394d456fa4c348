from __future__ import annotations

import json
from pathlib import Path
from typing import Optional, Union

from stallwatch.block_record import BlockRecord
from stallwatch.errors import DecodeError, StateIOError

PathLike = Union[str, Path]


def load_state(path: PathLike) -> Optional[BlockRecord]:
    """Return the stored baseline, or None when no state file exists yet."""
    p = Path(path)
    try:
        raw_text = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        raise StateIOError(f"cannot read state file {p}: {exc}") from exc

    try:
        raw = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"state file {p} is not valid JSON: {exc}") from exc
    try:
        return BlockRecord.from_dict(raw)
    except DecodeError as exc:
        raise DecodeError(f"state file {p}: {exc}") from exc


def ensure_state_dir(path: PathLike) -> None:
    """Create the parent folder of the default state file."""
    parent = Path(path).parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StateIOError(f"cannot create state directory {parent}: {exc}") from exc


def save_state(path: PathLike, record: BlockRecord) -> None:
    """Overwrite the state file with `record`.

    Plain truncate-and-write: no temp file, no fsync. A torn write surfaces as
    a DecodeError on the next load.
    """
    p = Path(path)
    try:
        p.write_text(json.dumps(record.to_dict()) + "\n", encoding="utf-8")
    except OSError as exc:
        raise StateIOError(f"cannot write state file {p}: {exc}") from exc
