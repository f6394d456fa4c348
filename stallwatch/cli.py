from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from infra.metrics import METRICS
from stallwatch.artifacts import configure_logging, write_summary
from stallwatch.check import run_check
from stallwatch.config import load_settings, parse_duration
from stallwatch.errors import StallCheckError, StalledError


def _duration(raw: str) -> float:
    try:
        return parse_duration(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stallwatch",
        description="Exit non-zero when an Ethereum node keeps reporting the same latest block",
    )
    parser.add_argument("--file", type=Path, default=None, help="block state file path")
    parser.add_argument("--rpc", type=str, default=None, help="node JSON-RPC endpoint")
    parser.add_argument("--timeout", type=_duration, default=None, help="deadline for the RPC call (e.g. 10s)")
    parser.add_argument(
        "--stalled",
        "--duration",
        dest="stalled",
        type=_duration,
        default=None,
        help="report a stall when the block is unchanged for longer than this (seconds or e.g. 2m)",
    )
    parser.add_argument("--config", type=Path, default=None, help="JSON settings file")
    parser.add_argument("--log-file", type=Path, default=None, help="also append logs to this file")
    parser.add_argument("--summary", type=Path, default=None, help="write a JSON run summary here")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ValueError as exc:
        parser.error(f"invalid configuration: {exc}")
    if args.file is not None:
        settings.state_file = args.file.expanduser()
        settings.create_state_dir = False
    if args.rpc:
        settings.rpc_url = args.rpc
    if args.timeout is not None:
        settings.timeout_s = args.timeout
    if args.stalled is not None:
        settings.stalled_s = args.stalled

    logger = configure_logging(args.log_file, logging.DEBUG if args.verbose else logging.INFO)
    logger.debug(
        "checking %s (state %s, timeout %.1fs, stalled after %.0fs)",
        settings.rpc_url,
        settings.state_file,
        settings.timeout_s,
        settings.stalled_s,
    )

    summary: Dict[str, Any] = {"rpc_url": settings.rpc_url, "state_file": str(settings.state_file)}
    exit_code = 0
    try:
        result = asyncio.run(run_check(settings, logger=logger))
        summary.update(result.to_dict())
    except StalledError as exc:
        # run_check already logged the details
        summary.update({"outcome": "stalled", "number": exc.number, "elapsed_s": exc.elapsed.total_seconds()})
        summary["error"] = str(exc)
        exit_code = 1
    except StallCheckError as exc:
        logger.error("check failed: %s: %s", type(exc).__name__, exc)
        summary.update({"outcome": "error", "error": f"{type(exc).__name__}: {exc}"})
        exit_code = 1

    snapshot = METRICS.snapshot()
    logger.debug("metrics %s", json.dumps(snapshot, sort_keys=True))
    if args.summary:
        summary["exit_code"] = exit_code
        summary["metrics"] = snapshot
        try:
            write_summary(args.summary, summary)
        except OSError as exc:
            logger.error("cannot write summary %s: %s", args.summary, exc)
            exit_code = 1
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
