# infra/rpc.py

from __future__ import annotations

import asyncio
import json
import random
import time
from typing import Any, Callable, Optional

import aiohttp

from infra.metrics import METRICS
from stallwatch.block_record import BlockRecord, utc_now
from stallwatch.errors import DecodeError, RpcError, TransportError

DEFAULT_TIMEOUT_S = 10.0


def _normalize_url(url: str) -> str:
    u = str(url).strip()
    if not u:
        return u
    if "://" not in u:
        u = "http://" + u
    return u


def _url_host(url: str) -> str:
    u = _normalize_url(url).lower()
    if "://" in u:
        u = u.split("://", 1)[1]
    return u.split("/", 1)[0]


class AsyncRPC:
    """Single-shot JSON-RPC client over aiohttp.

    - one POST per call, no retries (the scheduler re-runs the check)
    - per-call deadline via asyncio.wait_for
    - request ids from a client-local counter; the start value is drawn from
      a private random.Random so concurrent clients don't share state
    """

    def __init__(
        self,
        url: str,
        *,
        default_timeout_s: float = DEFAULT_TIMEOUT_S,
        start_id: Optional[int] = None,
        id_seed: Optional[int] = None,
        clock: Callable[[], Any] = utc_now,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.url = _normalize_url(url)
        if not self.url:
            raise ValueError("AsyncRPC requires a url")
        self.default_timeout_s = float(default_timeout_s)
        if start_id is None:
            start_id = random.Random(id_seed).randrange(1, 2 ** 31)
        self._id = int(start_id) - 1
        self._clock = clock
        self._session = session
        self._owns_session = session is None
        self.last_request_id: Optional[int] = None

    async def __aenter__(self) -> "AsyncRPC":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def _next_id(self) -> int:
        self._id += 1
        return self._id

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        self._session = aiohttp.ClientSession()
        self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _fail(self, reason: str) -> None:
        METRICS.record_failure(reason)

    async def call(self, method: str, params: list, *, timeout_s: Optional[float] = None) -> Any:
        """Perform one JSON-RPC call and return its `result`.

        Raises TransportError (connect, timeout, HTTP >= 400), DecodeError
        (non-UTF-8 or non-JSON body, non-object envelope) or RpcError (error
        envelope).
        """
        request_id = self._next_id()
        self.last_request_id = request_id
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        to_s = float(timeout_s) if timeout_s is not None else self.default_timeout_s

        session = await self._get_session()
        host = _url_host(self.url)
        t0 = time.perf_counter()

        async def _do() -> bytes:
            async with session.post(
                self.url,
                data=json.dumps(payload),
                headers={"content-type": "application/json"},
            ) as resp:
                if resp.status >= 400:
                    self._fail(f"http_{resp.status}")
                    text = (await resp.read()).decode("utf-8", errors="replace")
                    raise TransportError(f"{host} returned HTTP {resp.status}: {text[:200]}")
                return await resp.read()

        try:
            body = await asyncio.wait_for(_do(), timeout=to_s)
        except asyncio.TimeoutError as exc:
            self._fail("timeout")
            raise TransportError(f"{method} to {host} timed out after {to_s}s") from exc
        except aiohttp.ClientError as exc:
            self._fail("transport")
            raise TransportError(f"{method} to {host} failed: {type(exc).__name__}: {exc}") from exc
        finally:
            METRICS.record_request((time.perf_counter() - t0) * 1000.0)

        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            self._fail("decode_error")
            raise DecodeError(f"{method}: response is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            self._fail("decode_error")
            raise DecodeError(f"{method}: response envelope is not a JSON object")

        err = data.get("error")
        if err is not None:
            self._fail("rpc_error")
            if isinstance(err, dict):
                message = str(err.get("message") or "").strip() or json.dumps(err)
                raise RpcError(message, err.get("code"))
            raise RpcError(str(err))

        if "result" not in data:
            self._fail("decode_error")
            raise DecodeError(f"{method}: response has neither result nor error")
        return data["result"]

    async def get_latest_block(self, *, timeout_s: Optional[float] = None) -> BlockRecord:
        res = await self.call("eth_getBlockByNumber", ["latest", False], timeout_s=timeout_s)
        if not isinstance(res, dict):
            self._fail("decode_error")
            raise DecodeError(f"eth_getBlockByNumber: result is not a block object: {res!r}")
        number = res.get("number")
        if not isinstance(number, str) or not number:
            self._fail("decode_error")
            raise DecodeError(f"eth_getBlockByNumber: block has no valid number: {number!r}")
        return BlockRecord(number=number, observed_at=self._clock())
