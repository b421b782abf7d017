from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from eth_utils import decode_hex

from deployer.config import PROJECT_ROOT
from deployer.errors import ConfigError
from deployer.types import DeploymentArtifact


log = logging.getLogger(__name__)


def artifact_candidates(contract_name: str, root: Path = PROJECT_ROOT) -> List[Path]:
    return [
        root / "artifacts" / "contracts" / f"{contract_name}.sol" / f"{contract_name}.json",
        root / "out" / f"{contract_name}.sol" / f"{contract_name}.json",
        root / "deploy" / "artifacts" / f"{contract_name}.json",
    ]


def source_candidates(contract_name: str, root: Path = PROJECT_ROOT) -> List[Path]:
    return [
        root / "contracts" / f"{contract_name}.sol",
        root / "src" / f"{contract_name}.sol",
    ]


def _extract_bytecode(data: Dict[str, Any]) -> Optional[str]:
    # hardhat: "bytecode": "0x..."; foundry: "bytecode": {"object": "0x..."}; solc combined-json: "bin"
    raw = data.get("bytecode")
    if isinstance(raw, dict):
        raw = raw.get("object")
    if not raw:
        raw = data.get("bin")
    if not raw or not isinstance(raw, str):
        return None
    return raw


def _from_combined_json(data: Dict[str, Any], contract_name: str) -> Optional[Dict[str, Any]]:
    contracts = data.get("contracts")
    if not isinstance(contracts, dict):
        return None
    for key, entry in contracts.items():
        if str(key).endswith(f":{contract_name}") and isinstance(entry, dict):
            abi = entry.get("abi")
            if isinstance(abi, str):
                abi = json.loads(abi)
            return {"abi": abi, "bin": entry.get("bin")}
    return None


def parse_artifact(data: Dict[str, Any], contract_name: str, source: Optional[str] = None) -> DeploymentArtifact:
    combined = _from_combined_json(data, contract_name)
    if combined is not None:
        data = combined
    abi = data.get("abi")
    bytecode_hex = _extract_bytecode(data)
    if not isinstance(abi, list) or not bytecode_hex:
        raise ConfigError(f"artifact missing abi/bytecode: {source or contract_name}")
    if "__$" in bytecode_hex:
        raise ConfigError(f"artifact bytecode has unlinked library placeholders: {source or contract_name}")
    try:
        bytecode = decode_hex(bytecode_hex)
    except (ValueError, TypeError) as exc:
        raise ConfigError(f"artifact bytecode is not hex: {exc}") from exc
    if not bytecode:
        raise ConfigError(f"artifact bytecode is empty: {source or contract_name}")
    return DeploymentArtifact(
        contract_name=str(data.get("contractName") or contract_name),
        abi=abi,
        bytecode=bytecode,
        source_path=source,
    )


def load_artifact(contract_name: str, path: Optional[Path] = None, *, root: Path = PROJECT_ROOT) -> DeploymentArtifact:
    candidates = [Path(path)] if path else artifact_candidates(contract_name, root)
    for candidate in candidates:
        if not candidate.exists():
            continue
        try:
            data = json.loads(candidate.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise ConfigError(f"artifact is not valid JSON: {candidate}: {exc}") from exc
        artifact = parse_artifact(data, contract_name, source=str(candidate))
        log.info("loaded artifact %s (%d bytes bytecode) from %s", artifact.contract_name, len(artifact.bytecode), candidate)
        return artifact
    raise ConfigError(
        f"no {contract_name} artifact found (run your compiler first); looked in: "
        + ", ".join(str(c) for c in candidates)
    )


def load_source(contract_name: str, path: Optional[Path] = None, *, root: Path = PROJECT_ROOT) -> str:
    candidates = [Path(path)] if path else source_candidates(contract_name, root)
    for candidate in candidates:
        if candidate.exists():
            return candidate.read_text(encoding="utf-8")
    raise ConfigError(f"no {contract_name} source found; looked in: " + ", ".join(str(c) for c in candidates))
