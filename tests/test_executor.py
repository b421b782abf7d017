import pytest
from eth_abi import encode as abi_encode
from eth_account import Account

from deployer.codec import encode_constructor_args
from deployer.errors import DeploymentFailed, RpcError
from deployer.executor import DeploymentExecutor, decode_revert_reason
from deployer.types import DeploymentState
from fakes import (
    AAVE_POOL,
    CHAIN_ID,
    CONTRACT_ADDR,
    FUND,
    PRIVATE_KEY,
    TX_HASH,
    USDC,
    VAULT_ARTIFACT,
    FakeChain,
    SleepRecorder,
    no_sleep,
    receipt,
)


ENCODED = encode_constructor_args([("address", USDC), ("address", AAVE_POOL), ("address", FUND)])


def _executor(chain: FakeChain, **kwargs) -> DeploymentExecutor:
    params = dict(private_key=PRIVATE_KEY, chain_id=CHAIN_ID, poll_s=0.0, max_polls=5, sleep=no_sleep)
    params.update(kwargs)
    return DeploymentExecutor(chain, **params)


@pytest.mark.asyncio
async def test_confirmed_deployment_takes_address_from_receipt() -> None:
    chain = FakeChain({"eth_getTransactionReceipt": [None, None, receipt(block=100)]})
    executor = _executor(chain)
    res = await executor.deploy(VAULT_ARTIFACT, ENCODED)

    assert res.state == DeploymentState.CONFIRMED
    assert executor.state == DeploymentState.CONFIRMED
    assert res.contract is not None
    assert res.contract.address.lower() == CONTRACT_ADDR
    assert res.contract.creation_tx_hash == TX_HASH
    assert res.contract.chain_id == CHAIN_ID
    assert res.contract.block_number == 100
    assert chain.count("eth_sendRawTransaction") == 1
    assert chain.count("eth_getTransactionReceipt") == 3


@pytest.mark.asyncio
async def test_creation_tx_carries_bytecode_and_args() -> None:
    chain = FakeChain()
    executor = _executor(chain)
    _tx_hash, tx = await executor.submit(VAULT_ARTIFACT, ENCODED)

    assert tx["data"] == "0x" + VAULT_ARTIFACT.bytecode.hex() + ENCODED
    assert "to" not in tx
    assert tx["nonce"] == 7
    assert tx["gas"] == int(0x2DC6C0 * 1.2)
    assert tx["maxFeePerGas"] == 2 * 0x3B9ACA00 + 0x59682F00
    assert tx["from"] == Account.from_key(PRIVATE_KEY).address
    assert executor.state == DeploymentState.SUBMITTED


@pytest.mark.asyncio
async def test_fixed_gas_price_and_fallback_gas_limit() -> None:
    chain = FakeChain({"eth_estimateGas": RpcError("eth_estimateGas failed: boom")})
    executor = _executor(chain, gas_price_wei=20 * 10**9, fallback_gas_limit=4_000_000)
    _tx_hash, tx = await executor.submit(VAULT_ARTIFACT, ENCODED)
    assert tx["gasPrice"] == 20 * 10**9
    assert "maxFeePerGas" not in tx
    assert tx["gas"] == 4_000_000


@pytest.mark.asyncio
async def test_waits_for_confirmation_depth() -> None:
    chain = FakeChain(
        {
            "eth_getTransactionReceipt": receipt(block=100),
            "eth_blockNumber": ["0x64", "0x65", "0x66"],
        }
    )
    res = await _executor(chain, confirmations=3).deploy(VAULT_ARTIFACT, ENCODED)
    assert res.state == DeploymentState.CONFIRMED
    assert chain.count("eth_blockNumber") == 3


@pytest.mark.asyncio
async def test_revert_never_yields_contract_and_carries_reason() -> None:
    revert_data = "0x08c379a0" + abi_encode(["string"], ["fund address is zero"]).hex()
    chain = FakeChain({"eth_getTransactionReceipt": receipt(status=0), "eth_call": revert_data})
    executor = _executor(chain)
    res = await executor.deploy(VAULT_ARTIFACT, ENCODED)

    assert res.state == DeploymentState.REVERTED
    assert res.contract is None
    assert res.reason == "fund address is zero"
    assert executor.state == DeploymentState.REVERTED


@pytest.mark.asyncio
async def test_revert_without_trace_reports_generic_reason() -> None:
    chain = FakeChain({"eth_getTransactionReceipt": receipt(status=0), "eth_call": "0x"})
    res = await _executor(chain).deploy(VAULT_ARTIFACT, ENCODED)
    assert res.state == DeploymentState.REVERTED
    assert res.reason == "execution reverted"


@pytest.mark.asyncio
async def test_no_receipt_times_out_without_resubmitting() -> None:
    sleep = SleepRecorder()
    chain = FakeChain({"eth_getTransactionReceipt": None})
    executor = DeploymentExecutor(
        chain, private_key=PRIVATE_KEY, chain_id=CHAIN_ID, timeout_s=10.0, poll_s=2.0, sleep=sleep
    )
    res = await executor.deploy(VAULT_ARTIFACT, ENCODED)

    assert res.state == DeploymentState.TIMED_OUT
    assert res.tx_hash == TX_HASH
    assert res.contract is None
    assert chain.count("eth_sendRawTransaction") == 1
    assert chain.count("eth_getTransactionReceipt") == executor.max_polls == 6
    assert sum(sleep.calls) == pytest.approx(12.0)


@pytest.mark.asyncio
async def test_flaky_receipt_reads_do_not_end_the_wait() -> None:
    chain = FakeChain({"eth_getTransactionReceipt": [RpcError("timeout"), receipt()]})
    res = await _executor(chain).deploy(VAULT_ARTIFACT, ENCODED)
    assert res.state == DeploymentState.CONFIRMED


@pytest.mark.asyncio
async def test_submission_failure_is_fatal() -> None:
    chain = FakeChain({"eth_sendRawTransaction": RpcError("eth_sendRawTransaction failed: nonce too low")})
    executor = _executor(chain)
    with pytest.raises(DeploymentFailed) as excinfo:
        await executor.deploy(VAULT_ARTIFACT, ENCODED)
    assert excinfo.value.stage == "submission"
    assert chain.count("eth_getTransactionReceipt") == 0
    assert excinfo.value.tx_hash is not None
    assert excinfo.value.tx_hash in str(excinfo.value)


@pytest.mark.asyncio
async def test_executor_submits_only_once() -> None:
    executor = _executor(FakeChain())
    await executor.submit(VAULT_ARTIFACT, ENCODED)
    with pytest.raises(DeploymentFailed):
        await executor.submit(VAULT_ARTIFACT, ENCODED)


def test_decode_revert_reason_error() -> None:
    data = "0x08c379a0" + abi_encode(["string"], ["boom"]).hex()
    assert decode_revert_reason(data) == "boom"


def test_decode_revert_reason_panic() -> None:
    data = "0x4e487b71" + abi_encode(["uint256"], [0x11]).hex()
    assert decode_revert_reason(data) == "panic:0x11"


def test_decode_revert_reason_empty() -> None:
    assert decode_revert_reason("0x") is None
    assert decode_revert_reason(None) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("reason", ["timeout", "http_5xx"])
async def test_uncertain_send_waits_on_locally_signed_hash(reason) -> None:
    chain = FakeChain(
        {
            "eth_sendRawTransaction": RpcError("eth_sendRawTransaction failed after 1 attempt(s)", reason=reason),
            "eth_getTransactionReceipt": [None, receipt(block=100)],
        }
    )
    executor = _executor(chain)
    res = await executor.deploy(VAULT_ARTIFACT, ENCODED)

    assert res.state == DeploymentState.CONFIRMED
    assert res.tx_hash is not None and res.tx_hash != TX_HASH
    assert len(res.tx_hash) == 66
    polled = [params[0] for method, params in chain.calls if method == "eth_getTransactionReceipt"]
    assert polled == [res.tx_hash, res.tx_hash]
    assert chain.count("eth_sendRawTransaction") == 1


@pytest.mark.asyncio
async def test_uncertain_send_without_receipt_is_timed_out() -> None:
    chain = FakeChain(
        {
            "eth_sendRawTransaction": RpcError("eth_sendRawTransaction failed: timeout(10.0s)", reason="timeout"),
            "eth_getTransactionReceipt": None,
        }
    )
    res = await _executor(chain, max_polls=3).deploy(VAULT_ARTIFACT, ENCODED)
    assert res.state == DeploymentState.TIMED_OUT
    assert res.tx_hash is not None
    assert chain.count("eth_sendRawTransaction") == 1


@pytest.mark.asyncio
async def test_result_carries_deployer_and_wait() -> None:
    res = await _executor(FakeChain()).deploy(VAULT_ARTIFACT, ENCODED)
    assert res.deployer == Account.from_key(PRIVATE_KEY).address
    assert res.waited_s is not None and res.waited_s >= 0
