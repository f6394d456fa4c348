import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from infra.metrics import METRICS
from stallwatch.block_record import BlockRecord
from stallwatch.check import run_check
from stallwatch.config import Settings, load_settings
from stallwatch.errors import DecodeError, RpcError, StalledError, StateIOError, TransportError
from stallwatch.state_store import load_state, save_state

T0 = datetime(2024, 5, 1, 0, 0, 0, tzinfo=timezone.utc)


class FakeRPC:
    def __init__(self, number: str = "0x5", offset_s: float = 0.0, exc: Exception = None):
        self.number = number
        self.offset_s = offset_s
        self.exc = exc
        self.calls = 0
        self.timeouts = []

    async def get_latest_block(self, timeout_s=None):
        self.calls += 1
        self.timeouts.append(timeout_s)
        if self.exc is not None:
            raise self.exc
        return BlockRecord(self.number, T0 + timedelta(seconds=self.offset_s))


def settings_for(tmp_path: Path, stalled_s: float = 120.0) -> Settings:
    return Settings(state_file=tmp_path / "latest.json", rpc_url="http://unused", timeout_s=4.0, stalled_s=stalled_s)


@pytest.fixture(autouse=True)
def _reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.mark.asyncio
async def test_cold_start_persists_remote_verbatim(tmp_path: Path) -> None:
    s = settings_for(tmp_path)
    rpc = FakeRPC("0x5", 7)
    res = await run_check(s, rpc=rpc)
    assert res.decision.outcome == "cold_start"
    assert res.saved
    assert load_state(s.state_file) == BlockRecord("0x5", T0 + timedelta(seconds=7))
    assert rpc.calls == 1
    assert rpc.timeouts == [4.0]


@pytest.mark.asyncio
async def test_progress_replaces_baseline(tmp_path: Path) -> None:
    s = settings_for(tmp_path)
    save_state(s.state_file, BlockRecord("0x1", T0))
    res = await run_check(s, rpc=FakeRPC("0x2", 30))
    assert res.decision.outcome == "progressed"
    assert load_state(s.state_file) == BlockRecord("0x2", T0 + timedelta(seconds=30))


@pytest.mark.asyncio
async def test_stall_detected_keeps_baseline(tmp_path: Path) -> None:
    s = settings_for(tmp_path, stalled_s=120)
    save_state(s.state_file, BlockRecord("0x5", T0))
    before = s.state_file.read_bytes()

    with pytest.raises(StalledError) as excinfo:
        await run_check(s, rpc=FakeRPC("0x5", 200))

    assert excinfo.value.number == "0x5"
    assert excinfo.value.elapsed == timedelta(seconds=200)
    assert s.state_file.read_bytes() == before
    assert load_state(s.state_file).observed_at == T0
    assert METRICS.outcome == "stalled"
    assert METRICS.state_writes == 0


@pytest.mark.asyncio
async def test_under_threshold_keeps_baseline(tmp_path: Path) -> None:
    s = settings_for(tmp_path, stalled_s=120)
    save_state(s.state_file, BlockRecord("0x5", T0))
    before = s.state_file.read_bytes()
    res = await run_check(s, rpc=FakeRPC("0x5", 100))
    assert res.decision.outcome == "unchanged"
    assert not res.saved
    assert s.state_file.read_bytes() == before


@pytest.mark.asyncio
async def test_repeated_runs_without_progress_are_idempotent(tmp_path: Path) -> None:
    s = settings_for(tmp_path, stalled_s=120)
    await run_check(s, rpc=FakeRPC("0x5", 0))
    first = s.state_file.read_bytes()
    await run_check(s, rpc=FakeRPC("0x5", 40))
    second = s.state_file.read_bytes()
    await run_check(s, rpc=FakeRPC("0x5", 80))
    assert first == second == s.state_file.read_bytes()
    assert METRICS.state_writes == 1


@pytest.mark.asyncio
async def test_stall_accumulates_across_runs(tmp_path: Path) -> None:
    s = settings_for(tmp_path, stalled_s=120)
    await run_check(s, rpc=FakeRPC("0x5", 0))
    for offset in (60, 110):
        await run_check(s, rpc=FakeRPC("0x5", offset))
    with pytest.raises(StalledError):
        await run_check(s, rpc=FakeRPC("0x5", 121))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "exc",
    [RpcError("header not found"), TransportError("timed out"), DecodeError("bad envelope")],
)
async def test_fetch_failure_never_writes(tmp_path: Path, exc: Exception) -> None:
    s = settings_for(tmp_path)
    save_state(s.state_file, BlockRecord("0x1", T0))
    before = s.state_file.read_bytes()
    with pytest.raises(type(exc)):
        await run_check(s, rpc=FakeRPC(exc=exc))
    assert s.state_file.read_bytes() == before


@pytest.mark.asyncio
async def test_fetch_failure_on_cold_start_creates_nothing(tmp_path: Path) -> None:
    s = settings_for(tmp_path)
    with pytest.raises(RpcError):
        await run_check(s, rpc=FakeRPC(exc=RpcError("boom")))
    assert not s.state_file.exists()


@pytest.mark.asyncio
async def test_malformed_local_file_aborts_before_fetch(tmp_path: Path) -> None:
    s = settings_for(tmp_path)
    s.state_file.write_text("{oops", encoding="utf-8")
    rpc = FakeRPC("0x9")
    with pytest.raises(DecodeError):
        await run_check(s, rpc=rpc)
    assert rpc.calls == 0
    assert s.state_file.read_text(encoding="utf-8") == "{oops"


@pytest.mark.asyncio
async def test_result_summary(tmp_path: Path) -> None:
    s = settings_for(tmp_path)
    save_state(s.state_file, BlockRecord("0x5", T0))
    res = await run_check(s, rpc=FakeRPC("0x5", 30))
    out = res.to_dict()
    assert out["outcome"] == "unchanged"
    assert out["elapsed_s"] == 30.0
    assert out["saved"] is False
    assert out["baseline_observed_at"] == "2024-05-01T00:00:00.000000Z"
    assert json.dumps(out)


@pytest.mark.asyncio
async def test_default_state_location_is_created_on_first_run(tmp_path: Path) -> None:
    s = load_settings(env={"XDG_STATE_HOME": str(tmp_path)})
    assert not s.state_file.parent.exists()
    res = await run_check(s, rpc=FakeRPC("0x5", 0))
    assert res.saved
    assert s.state_file == tmp_path / "stallwatch" / "latest.json"
    assert load_state(s.state_file) == BlockRecord("0x5", T0)


@pytest.mark.asyncio
async def test_default_state_location_not_created_when_fetch_fails(tmp_path: Path) -> None:
    s = load_settings(env={"XDG_STATE_HOME": str(tmp_path)})
    with pytest.raises(RpcError):
        await run_check(s, rpc=FakeRPC(exc=RpcError("boom")))
    assert not s.state_file.parent.exists()


@pytest.mark.asyncio
async def test_explicit_state_path_needs_existing_directory(tmp_path: Path) -> None:
    s = load_settings(env={"XDG_STATE_HOME": str(tmp_path), "STALLWATCH_FILE": str(tmp_path / "missing" / "latest.json")})
    assert not s.create_state_dir
    with pytest.raises(StateIOError):
        await run_check(s, rpc=FakeRPC("0x5", 0))
