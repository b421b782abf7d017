import asyncio

import pytest

from deployer.errors import RpcError
from infra.rpc import AsyncRPC, ChainClient, _normalize_rpc_error


class ScriptedRPC(ChainClient):
    def __init__(self, answers, **kwargs) -> None:
        kwargs.setdefault("backoff_base_s", 0.0)
        super().__init__("rpc.example", **kwargs)
        self.answers = list(answers)
        self.payloads = []

    async def _post(self, payload, timeout_s):
        self.payloads.append(payload)
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, BaseException):
            raise answer
        return answer


def test_url_gets_scheme() -> None:
    assert AsyncRPC("rpc.example").url == "https://rpc.example"


@pytest.mark.asyncio
async def test_result_is_returned() -> None:
    rpc = ScriptedRPC([{"jsonrpc": "2.0", "id": 1, "result": "0xaa36a7"}])
    assert await rpc.chain_id() == 11155111
    assert rpc.payloads[0]["method"] == "eth_chainId"


@pytest.mark.asyncio
async def test_timeouts_are_retried_then_raise() -> None:
    rpc = ScriptedRPC([asyncio.TimeoutError()], max_retries=2)
    with pytest.raises(RpcError) as excinfo:
        await rpc.block_number()
    assert excinfo.value.reason == "timeout"
    assert len(rpc.payloads) == 3


@pytest.mark.asyncio
async def test_transient_then_success() -> None:
    rpc = ScriptedRPC([asyncio.TimeoutError(), {"result": "0x10"}], max_retries=1)
    assert await rpc.block_number() == 16


@pytest.mark.asyncio
async def test_jsonrpc_error_is_not_retried() -> None:
    rpc = ScriptedRPC([{"error": {"code": -32000, "message": "nonce too low"}}], max_retries=3)
    with pytest.raises(RpcError) as excinfo:
        await rpc.get_transaction_count("0x" + "11" * 20)
    assert "nonce too low" in str(excinfo.value)
    assert len(rpc.payloads) == 1


@pytest.mark.asyncio
async def test_send_raw_transaction_is_never_retried() -> None:
    rpc = ScriptedRPC([asyncio.TimeoutError()], max_retries=3)
    with pytest.raises(RpcError):
        await rpc.send_raw_transaction(b"\x01\x02")
    assert len(rpc.payloads) == 1
    assert rpc.payloads[0]["params"] == ["0x0102"]


@pytest.mark.asyncio
async def test_eth_call_revert_data_passthrough() -> None:
    rpc = ScriptedRPC([{"error": {"code": 3, "message": "execution reverted", "data": "0x08c379a0beef"}}])
    assert await rpc.eth_call({"data": "0x00"}) == "0x08c379a0beef"


@pytest.mark.asyncio
async def test_missing_receipt_is_none() -> None:
    rpc = ScriptedRPC([{"result": None}])
    assert await rpc.get_transaction_receipt("0x" + "00" * 32) is None


@pytest.mark.asyncio
async def test_get_code() -> None:
    rpc = ScriptedRPC([{"result": "0x6080"}])
    assert await rpc.get_code("0x" + "22" * 20) == b"\x60\x80"


def test_normalize_rpc_error() -> None:
    assert _normalize_rpc_error("timeout(3s)") == "timeout"
    assert _normalize_rpc_error("http_429") == "rate_limited"
    assert _normalize_rpc_error("http_503") == "http_5xx"
    assert _normalize_rpc_error("rpc_error:execution reverted") == "revert"
