from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from deployer import config
from deployer.errors import RpcError


log = logging.getLogger(__name__)

# Numeric tx fields eth_estimateGas wants as quantities.
_QUANTITY_KEYS = ("value", "gas", "gasPrice", "maxFeePerGas", "maxPriorityFeePerGas", "nonce")


def _quantity(raw: Any) -> int:
    return int(raw, 16) if isinstance(raw, str) else int(raw)


@dataclass(frozen=True)
class FeeQuote:
    """Either a legacy gasPrice or an EIP-1559 pair; ``source`` says where it came from."""

    source: str
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    @property
    def eip1559(self) -> bool:
        return self.max_fee_per_gas is not None

    def tx_fields(self) -> Dict[str, int]:
        if self.eip1559:
            return {
                "maxFeePerGas": int(self.max_fee_per_gas or 0),
                "maxPriorityFeePerGas": int(self.max_priority_fee_per_gas or 0),
            }
        if self.gas_price:
            return {"gasPrice": int(self.gas_price)}
        return {}


async def _from_fee_history(rpc: Any, block_count: int, percentile: int, timeout_s: Optional[float]) -> Optional[FeeQuote]:
    res = await rpc.call("eth_feeHistory", [hex(int(block_count)), "latest", [percentile]], timeout_s=timeout_s)
    base_fees: List[int] = [_quantity(x) for x in (res.get("baseFeePerGas") or [])]
    if not base_fees or base_fees[-1] <= 0:
        return None
    tips = [_quantity(row[-1]) for row in (res.get("reward") or []) if isinstance(row, (list, tuple)) and row]
    tip = int(statistics.median(tips)) if tips else 0
    # maxFee = 2 * latest base fee + tip
    return FeeQuote(
        source="eth_feeHistory",
        max_fee_per_gas=base_fees[-1] * 2 + tip,
        max_priority_fee_per_gas=tip,
    )


async def quote_fees(
    rpc: Any,
    *,
    fixed_gas_price_wei: Optional[int] = None,
    block_count: int = 10,
    percentile: int = 75,
    timeout_s: Optional[float] = None,
) -> FeeQuote:
    """A fixed preset price wins; otherwise feeHistory, then eth_gasPrice.

    An empty quote (no fields) leaves pricing to the node.
    """
    if fixed_gas_price_wei:
        return FeeQuote(source="preset", gas_price=int(fixed_gas_price_wei))
    try:
        quote = await _from_fee_history(rpc, block_count, percentile, timeout_s)
        if quote is not None:
            return quote
    except (RpcError, AttributeError, TypeError, ValueError) as exc:
        log.debug("eth_feeHistory unavailable: %s", exc)
    try:
        return FeeQuote(source="eth_gasPrice", gas_price=_quantity(await rpc.call("eth_gasPrice", [], timeout_s=timeout_s)))
    except (RpcError, TypeError, ValueError) as exc:
        log.warning("no fee data from node (%s); leaving fees unset", exc)
        return FeeQuote(source="none")


async def estimate_gas(rpc: Any, tx: Dict[str, Any], *, timeout_s: Optional[float] = None) -> Optional[int]:
    """eth_estimateGas for a tx dict with int fields; None when the node refuses."""
    payload = {k: v for k, v in tx.items() if k != "chainId"}
    for key in _QUANTITY_KEYS:
        if isinstance(payload.get(key), int):
            payload[key] = hex(payload[key])
    try:
        return _quantity(await rpc.call("eth_estimateGas", [payload], timeout_s=timeout_s))
    except (RpcError, TypeError, ValueError) as exc:
        log.warning("eth_estimateGas failed: %s", exc)
        return None


async def gas_limit(
    rpc: Any,
    tx: Dict[str, Any],
    *,
    fallback: int = config.FALLBACK_GAS_LIMIT,
    multiplier: float = config.GAS_LIMIT_MULTIPLIER,
    timeout_s: Optional[float] = None,
) -> int:
    """Padded estimate, or ``fallback`` when estimation fails."""
    estimate = await estimate_gas(rpc, tx, timeout_s=timeout_s)
    if not estimate:
        log.info("using fallback gas limit %d", fallback)
        return int(fallback)
    return int(estimate * multiplier)
