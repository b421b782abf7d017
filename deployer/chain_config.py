from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from eth_utils import is_address, to_checksum_address
from web3 import Web3

from deployer.config import PROJECT_ROOT


CHAINS_DIR = PROJECT_ROOT / "configs" / "chains"


@dataclass(frozen=True)
class ChainPreset:
    chain_id: int
    name: str
    rpc_urls: List[str]
    explorer_api_url: Optional[str]
    explorer_browser_url: Optional[str]
    gas_price_wei: Optional[int]
    tokens: Dict[str, str]


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def _normalize_tokens(raw: Any) -> Dict[str, str]:
    out: Dict[str, str] = {}
    if not isinstance(raw, dict):
        return out
    for k, v in raw.items():
        if not k or v is None:
            continue
        val = str(v).strip().lower()
        if is_address(val):
            out[str(k).upper()] = to_checksum_address(val)
    return out


def _gas_price_wei(raw: Any) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(Web3.to_wei(raw, "gwei"))
    except (TypeError, ValueError):
        return None


def load_chain_preset(
    chain_name: Optional[str] = None,
    chain_id: Optional[int] = None,
    *,
    base_dir: Path = CHAINS_DIR,
) -> Optional[ChainPreset]:
    """Find a preset by name first, then by scanning for a matching chain id."""
    name = str(chain_name or "").strip().lower()
    data: Optional[Dict[str, Any]] = None
    if name:
        data = _read_json(base_dir / f"{name}.json")
    if data is None and chain_id is not None and base_dir.exists():
        for path in sorted(base_dir.glob("*.json")):
            candidate = _read_json(path)
            if isinstance(candidate, dict) and str(candidate.get("chain_id")) == str(int(chain_id)):
                data = candidate
                break
    if not isinstance(data, dict):
        return None

    try:
        cid = int(data.get("chain_id"))
    except (TypeError, ValueError):
        return None

    return ChainPreset(
        chain_id=cid,
        name=str(data.get("name") or name or "unknown").strip().lower(),
        rpc_urls=[str(x).strip() for x in (data.get("rpc_urls") or []) if str(x).strip()],
        explorer_api_url=str(data.get("explorer_api_url") or "").strip() or None,
        explorer_browser_url=str(data.get("explorer_browser_url") or "").strip() or None,
        gas_price_wei=_gas_price_wei(data.get("gas_price_gwei")),
        tokens=_normalize_tokens(data.get("tokens")),
    )
