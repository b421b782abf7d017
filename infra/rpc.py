# infra/rpc.py

from __future__ import annotations

import asyncio
import random
from typing import Any, Dict, Optional

import aiohttp
from eth_utils import decode_hex, to_checksum_address

from deployer import config
from deployer.errors import RpcError
from infra.metrics import METRICS


def _normalize_url(url: str) -> str:
    u = str(url or "").strip()
    if not u:
        return u
    if "://" not in u:
        u = "https://" + u
    return u


def _url_host(url: str) -> str:
    u = _normalize_url(url).lower()
    if "://" in u:
        u = u.split("://", 1)[1]
    return u.split("/", 1)[0]


# First match wins; keys are substrings of the recorded last error.
_REASON_TABLE = (
    (("timeout",), "timeout"),
    (("http_429", "rate limit"), "rate_limited"),
    (("http_5",), "http_5xx"),
    (("decode",), "decode_error"),
    (("revert",), "revert"),
    (("rpc", "http_"), "rpc_error"),
)


def _normalize_rpc_error(msg: Optional[str]) -> str:
    text = str(msg or "").lower()
    for needles, reason in _REASON_TABLE:
        if any(n in text for n in needles):
            return reason
    return "internal_error"


def _extract_revert_hex(ed: Any) -> Optional[str]:
    if isinstance(ed, dict):
        if isinstance(ed.get("data"), str):
            return ed["data"]
        if isinstance(ed.get("result"), str):
            return ed["result"]
        for v in ed.values():
            if isinstance(v, dict):
                if isinstance(v.get("return"), str):
                    return v["return"]
                if isinstance(v.get("data"), str):
                    return v["data"]
    if isinstance(ed, str):
        return ed
    return None


class _RetryableError(Exception):
    pass


class AsyncRPC:
    """Async JSON-RPC client with:
    - persistent aiohttp session
    - per-call timeouts (every call is a bounded suspension point)
    - retries + exponential backoff for transport errors / rate limits only
    - revert-data pass-through for eth_call, opt-in
    """

    def __init__(
        self,
        url: str,
        *,
        default_timeout_s: float = config.RPC_DEFAULT_TIMEOUT_S,
        max_retries: int = config.RPC_RETRY_COUNT,
        backoff_base_s: float = config.RPC_BACKOFF_BASE_S,
    ):
        self.url = _normalize_url(url)
        self.default_timeout_s = float(default_timeout_s)
        self.max_retries = int(max_retries)
        self.backoff_base_s = float(backoff_base_s)
        self._id = 0
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "AsyncRPC":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        self._session = aiohttp.ClientSession(connector=aiohttp.TCPConnector(limit=10, ttl_dns_cache=300))
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _post(self, payload: Dict[str, Any], timeout_s: float) -> Any:
        session = await self._get_session()

        async def _do():
            async with session.post(self.url, json=payload) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise aiohttp.ClientResponseError(
                        request_info=resp.request_info,
                        history=resp.history,
                        status=resp.status,
                        message=text,
                        headers=resp.headers,
                    )
                return await resp.json(content_type=None)

        return await asyncio.wait_for(_do(), timeout=timeout_s)

    def _clamp_timeout(self, timeout_s: Optional[float]) -> float:
        to_s = float(timeout_s) if timeout_s is not None else self.default_timeout_s
        return max(config.RPC_TIMEOUT_MIN_S, min(config.RPC_TIMEOUT_MAX_S, to_s))

    async def call(
        self,
        method: str,
        params: list,
        *,
        timeout_s: Optional[float] = None,
        retries: Optional[int] = None,
        allow_revert_data: bool = False,
    ) -> Any:
        """Perform a JSON-RPC call.

        JSON-RPC error objects are never retried; only transport failures are.
        With ``allow_revert_data`` an eth_call revert returns its raw data hex
        instead of raising.
        """
        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        to_s = self._clamp_timeout(timeout_s)
        max_retries = self.max_retries if retries is None else int(retries)
        host = _url_host(self.url)
        last_err: Optional[str] = None

        for attempt in range(max_retries + 1):
            METRICS.inc("rpc_requests_total", 1)
            METRICS.inc_reason("rpc_requests_by_method", method, 1)
            try:
                with METRICS.timed(f"rpc:{host}"):
                    data = await self._post(payload, to_s)

                if not isinstance(data, dict):
                    raise _RetryableError("decode_error: response is not a JSON object")

                if "error" in data:
                    err = data["error"]
                    err_data = err.get("data") if isinstance(err, dict) else None
                    revert_hex = _extract_revert_hex(err_data)
                    if revert_hex and allow_revert_data and method == "eth_call":
                        return revert_hex if revert_hex.startswith("0x") else ("0x" + revert_hex)
                    msg = err.get("message") if isinstance(err, dict) else err
                    last_err = f"rpc_error:{msg}"
                    METRICS.inc_reason("rpc_fail_by_reason", _normalize_rpc_error(last_err), 1)
                    raise RpcError(f"{method} failed: {msg}", method=method, reason=_normalize_rpc_error(last_err))

                return data.get("result")

            except asyncio.TimeoutError:
                last_err = f"timeout({to_s}s)"
            except aiohttp.ClientResponseError as e:
                last_err = f"http_{e.status}"
                if e.status not in (429, 500, 502, 503, 504):
                    break
            except (aiohttp.ClientError, _RetryableError, ValueError) as e:
                last_err = f"{type(e).__name__}: {e}"

            if attempt < max_retries:
                sleep_s = (self.backoff_base_s * (2 ** attempt)) + random.random() * 0.25
                await asyncio.sleep(sleep_s)

        reason = _normalize_rpc_error(last_err)
        METRICS.inc_reason("rpc_fail_by_reason", reason, 1)
        raise RpcError(f"{method} failed after {max_retries + 1} attempt(s): {last_err}", method=method, reason=reason)


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


class ChainClient(AsyncRPC):
    """Typed helpers over the handful of RPC methods a deployment needs."""

    async def chain_id(self) -> int:
        return _to_int(await self.call("eth_chainId", []))

    async def block_number(self) -> int:
        return _to_int(await self.call("eth_blockNumber", []))

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return _to_int(await self.call("eth_getTransactionCount", [to_checksum_address(address), block]))

    async def send_raw_transaction(self, raw_tx: bytes) -> str:
        # No retries: a resend can only fail on nonce reuse.
        res = await self.call("eth_sendRawTransaction", ["0x" + bytes(raw_tx).hex()], retries=0)
        if not isinstance(res, str) or not res.startswith("0x"):
            raise RpcError(f"eth_sendRawTransaction returned {res!r}", method="eth_sendRawTransaction")
        return res

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        res = await self.call("eth_getTransactionReceipt", [tx_hash])
        return res if isinstance(res, dict) else None

    async def get_code(self, address: str, block: str = "latest") -> bytes:
        res = await self.call("eth_getCode", [to_checksum_address(address), block])
        return decode_hex(res) if isinstance(res, str) else b""

    async def eth_call(self, tx: Dict[str, Any], block: str = "latest") -> str:
        res = await self.call("eth_call", [tx, block], allow_revert_data=True)
        return res if isinstance(res, str) else "0x"
