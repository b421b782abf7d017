from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Dict, Optional, Tuple

from eth_abi import decode as abi_decode
from eth_account import Account
from eth_utils import decode_hex, to_checksum_address, to_hex

from deployer import config
from deployer.errors import DeploymentFailed, RpcError
from deployer.polling import Sleep, poll_until
from deployer.types import DeployedContract, DeploymentArtifact, DeploymentResult, DeploymentState
from infra import gas as gas_oracle
from infra.rpc import ChainClient


log = logging.getLogger(__name__)

_SELECTOR_ERROR = b"\x08\xc3\x79\xa0"
_SELECTOR_PANIC = b"\x4e\x48\x7b\x71"

# Send failures after which the tx may still be in the mempool.
_UNCERTAIN_SEND_REASONS = ("timeout", "http_5xx", "decode_error")


def decode_revert_reason(data_hex: Optional[str]) -> Optional[str]:
    if not data_hex or data_hex == "0x":
        return None
    try:
        raw = decode_hex(data_hex)
    except (TypeError, ValueError):
        return None
    if raw.startswith(_SELECTOR_ERROR):
        try:
            return str(abi_decode(["string"], raw[4:])[0])
        except Exception:
            return "Error(string) with undecodable payload"
    if raw.startswith(_SELECTOR_PANIC):
        try:
            code = abi_decode(["uint256"], raw[4:])[0]
            return f"panic:0x{int(code):x}"
        except Exception:
            return "panic"
    return f"custom error {raw[:4].hex()}" if len(raw) >= 4 else None


def _receipt_int(receipt: Dict[str, Any], key: str) -> Optional[int]:
    val = receipt.get(key)
    if val is None:
        return None
    try:
        return int(val, 16) if isinstance(val, str) else int(val)
    except (TypeError, ValueError):
        return None


class DeploymentExecutor:
    """Drives one contract-creation tx: Unsubmitted -> Submitted -> AwaitingConfirmation -> terminal.

    The transaction is sent exactly once. A wait that runs out ends in
    TIMED_OUT rather than a resubmission, since a second send would create a
    second contract.
    """

    def __init__(
        self,
        chain: ChainClient,
        *,
        private_key: str,
        chain_id: int,
        confirmations: int = config.CONFIRMATIONS,
        timeout_s: float = config.CONFIRMATION_TIMEOUT_S,
        poll_s: float = config.CONFIRMATION_POLL_S,
        max_polls: Optional[int] = None,
        gas_price_wei: Optional[int] = None,
        fallback_gas_limit: int = config.FALLBACK_GAS_LIMIT,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.chain = chain
        self._private_key = config.normalize_private_key(private_key)
        self.account = Account.from_key(self._private_key)
        self.chain_id = int(chain_id)
        self.confirmations = max(1, int(confirmations))
        self.timeout_s = float(timeout_s)
        self.poll_s = float(poll_s)
        if max_polls is None:
            max_polls = int(math.ceil(self.timeout_s / self.poll_s)) + 1 if self.poll_s > 0 else 1
        self.max_polls = max(1, int(max_polls))
        self.gas_price_wei = gas_price_wei
        self.fallback_gas_limit = int(fallback_gas_limit)
        self._sleep = sleep
        self.state = DeploymentState.UNSUBMITTED

    @property
    def deployer_address(self) -> str:
        return str(self.account.address)

    async def build_transaction(self, artifact: DeploymentArtifact, encoded_args_hex: str) -> Dict[str, Any]:
        data = "0x" + artifact.bytecode.hex() + str(encoded_args_hex or "")
        tx: Dict[str, Any] = {
            "from": self.deployer_address,
            "data": data,
            "value": 0,
            "chainId": self.chain_id,
            "nonce": await self.chain.get_transaction_count(self.deployer_address, "pending"),
        }
        fees = await gas_oracle.quote_fees(self.chain, fixed_gas_price_wei=self.gas_price_wei)
        tx.update(fees.tx_fields())
        tx["gas"] = await gas_oracle.gas_limit(self.chain, tx, fallback=self.fallback_gas_limit)
        log.debug("fees from %s: %s gas=%s", fees.source, fees.tx_fields(), tx["gas"])
        return tx

    async def submit(self, artifact: DeploymentArtifact, encoded_args_hex: str) -> Tuple[str, Dict[str, Any]]:
        if self.state != DeploymentState.UNSUBMITTED:
            raise DeploymentFailed(f"executor already in state {self.state.value}", stage="submission")
        try:
            tx = await self.build_transaction(artifact, encoded_args_hex)
            unsigned = {k: v for k, v in tx.items() if k != "from"}
            signed = Account.sign_transaction(unsigned, self._private_key)
        except (RpcError, TypeError, ValueError) as exc:
            raise DeploymentFailed(f"could not build creation tx: {exc}", stage="submission") from exc

        tx_hash = to_hex(signed.hash)
        try:
            sent_hash = await self.chain.send_raw_transaction(signed.raw_transaction)
        except RpcError as exc:
            if exc.reason not in _UNCERTAIN_SEND_REASONS:
                raise DeploymentFailed(
                    f"could not submit creation tx {tx_hash}: {exc}", stage="submission", tx_hash=tx_hash
                ) from exc
            # The node may have taken it; only the receipt can tell.
            log.warning("send of %s ended with %s; waiting for a receipt instead of resending", tx_hash, exc.reason)
            sent_hash = tx_hash
        if sent_hash.lower() != tx_hash.lower():
            log.warning("node returned tx hash %s, locally signed %s", sent_hash, tx_hash)
        self.state = DeploymentState.SUBMITTED
        log.info(
            "creation tx %s sent from %s (nonce=%s gas=%s)", sent_hash, self.deployer_address, tx.get("nonce"), tx.get("gas")
        )
        return sent_hash, tx

    async def _revert_reason(self, tx: Dict[str, Any], receipt: Dict[str, Any]) -> Optional[str]:
        block = receipt.get("blockNumber") or "latest"
        call = {"from": tx.get("from"), "data": tx.get("data"), "gas": hex(int(tx.get("gas") or self.fallback_gas_limit))}
        try:
            res = await self.chain.eth_call(call, block)
        except RpcError as exc:
            text = str(exc)
            return text.split("failed: ", 1)[-1] if "revert" in text.lower() else None
        return decode_revert_reason(res)

    def _result(
        self, tx_hash: str, waited_s: float, *, contract: Optional[DeployedContract] = None, reason: Optional[str] = None
    ) -> DeploymentResult:
        return DeploymentResult(
            state=self.state,
            tx_hash=tx_hash,
            contract=contract,
            reason=reason,
            deployer=self.deployer_address,
            waited_s=waited_s,
        )

    async def await_confirmation(self, tx_hash: str, tx: Dict[str, Any]) -> DeploymentResult:
        self.state = DeploymentState.AWAITING_CONFIRMATION
        started = time.monotonic()

        async def _fetch(attempt: int) -> Optional[Dict[str, Any]]:
            try:
                receipt = await self.chain.get_transaction_receipt(tx_hash)
                if receipt is None:
                    return None
                if _receipt_int(receipt, "status") == 0 or self.confirmations <= 1:
                    return receipt
                mined = _receipt_int(receipt, "blockNumber")
                head = await self.chain.block_number()
                depth = head - mined + 1 if mined is not None else 0
                log.debug("tx %s at depth %s/%s (poll %d)", tx_hash, depth, self.confirmations, attempt)
                return receipt if depth >= self.confirmations else None
            except RpcError as exc:
                # Read errors count as not mined yet.
                log.warning("receipt poll %d for %s failed: %s", attempt, tx_hash, exc)
                return None

        res = await poll_until(
            _fetch,
            is_terminal=lambda r: r is not None,
            interval_s=self.poll_s,
            max_attempts=self.max_polls,
            sleep=self._sleep,
            initial_delay=self.poll_s > 0,
        )
        receipt = res.value
        waited_s = time.monotonic() - started
        if not res.terminal or receipt is None:
            self.state = DeploymentState.TIMED_OUT
            log.warning("no confirmed receipt for %s after %d polls (%.1fs)", tx_hash, res.attempts, waited_s)
            return self._result(tx_hash, waited_s, reason=f"no confirmed receipt after {res.attempts} polls")

        if _receipt_int(receipt, "status") == 0:
            self.state = DeploymentState.REVERTED
            reason = await self._revert_reason(tx, receipt) or "execution reverted"
            log.error("creation tx %s reverted: %s", tx_hash, reason)
            return self._result(tx_hash, waited_s, reason=reason)

        address = receipt.get("contractAddress")
        if not address:
            self.state = DeploymentState.REVERTED
            return self._result(tx_hash, waited_s, reason="receipt has no contractAddress")

        self.state = DeploymentState.CONFIRMED
        contract = DeployedContract(
            chain_id=self.chain_id,
            address=to_checksum_address(address),
            creation_tx_hash=tx_hash,
            block_number=_receipt_int(receipt, "blockNumber"),
        )
        log.info("contract live at %s (block %s)", contract.address, contract.block_number)
        return self._result(tx_hash, waited_s, contract=contract)

    async def deploy(self, artifact: DeploymentArtifact, encoded_args_hex: str) -> DeploymentResult:
        tx_hash, tx = await self.submit(artifact, encoded_args_hex)
        return await self.await_confirmation(tx_hash, tx)
