# deployer/config.py
# NOTE:
# Do not hardcode private keys in the repo. Credentials are passed in
# explicitly (see deploy/deploy.py); nothing below reads the environment.

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from eth_utils import is_address

from deployer.errors import ConfigError


PROJECT_ROOT = Path(__file__).resolve().parents[1]

CONTRACT_NAME = "EducationVault"

# RPC timeouts (seconds). Every JSON-RPC call is clamped to this range.
RPC_TIMEOUT_MIN_S = 2.0
RPC_TIMEOUT_MAX_S = 30.0
RPC_DEFAULT_TIMEOUT_S = 10.0
RPC_RETRY_COUNT = 2
RPC_BACKOFF_BASE_S = 0.35

# Confirmation wait
CONFIRMATIONS = 1
CONFIRMATION_TIMEOUT_S = 180.0
CONFIRMATION_POLL_S = 3.0

# Gas fallback when eth_estimateGas fails
FALLBACK_GAS_LIMIT = 3_000_000
GAS_LIMIT_MULTIPLIER = 1.2

# Explorer (Etherscan v2 multichain endpoint, chain picked via ?chainid=)
EXPLORER_API_URL = "https://api.etherscan.io/v2/api"
EXPLORER_TIMEOUT_S = 20.0
VERIFY_POLL_INTERVAL_S = 5.0
VERIFY_MAX_ATTEMPTS = 10

# Compiler settings used to build the artifact (hardhat.config: 0.8.19, optimizer 200 runs)
COMPILER_VERSION = "v0.8.19+commit.7dd6d404"
OPTIMIZATION_USED = True
OPTIMIZER_RUNS = 200
LICENSE_TYPE = 3  # MIT
CODE_FORMAT = "solidity-single-file"

PLACEHOLDER_FUND_ADDRESS = "0x1234567890123456789012345678901234567890"

_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def normalize_private_key(raw: str) -> str:
    key = str(raw or "").strip()
    if not _PRIVATE_KEY_RE.match(key):
        raise ConfigError("private key must be 32 bytes of hex")
    return key if key.startswith("0x") else "0x" + key


@dataclass(frozen=True)
class DeployConfig:
    private_key: str
    rpc_url: str
    chain_id: int
    fund_address: str
    token_address: str
    pool_address: str
    explorer_api_key: Optional[str] = None
    explorer_api_url: str = EXPLORER_API_URL
    explorer_browser_url: Optional[str] = None
    artifact_path: Optional[Path] = None
    source_path: Optional[Path] = None
    contract_name: str = CONTRACT_NAME
    existing_address: Optional[str] = None

    compiler_version: str = COMPILER_VERSION
    optimization_used: bool = OPTIMIZATION_USED
    optimizer_runs: int = OPTIMIZER_RUNS
    license_type: int = LICENSE_TYPE
    code_format: str = CODE_FORMAT

    gas_price_wei: Optional[int] = None
    fallback_gas_limit: int = FALLBACK_GAS_LIMIT

    rpc_timeout_s: float = RPC_DEFAULT_TIMEOUT_S
    confirmations: int = CONFIRMATIONS
    confirmation_timeout_s: float = CONFIRMATION_TIMEOUT_S
    confirmation_poll_s: float = CONFIRMATION_POLL_S
    explorer_timeout_s: float = EXPLORER_TIMEOUT_S
    verify_poll_interval_s: float = VERIFY_POLL_INTERVAL_S
    verify_max_attempts: int = VERIFY_MAX_ATTEMPTS

    def validate(self) -> "DeployConfig":
        """Fail fast on anything that would otherwise blow up mid-run."""
        if not str(self.rpc_url or "").strip():
            raise ConfigError("missing rpc url")
        if "://" not in str(self.rpc_url):
            raise ConfigError(f"malformed rpc url: {self.rpc_url!r}")
        if int(self.chain_id or 0) <= 0:
            raise ConfigError("chain id must be a positive integer")
        if not self.existing_address:
            if not self.private_key:
                raise ConfigError("missing private key")
            normalize_private_key(self.private_key)
        for label, addr in (
            ("fund address", self.fund_address),
            ("token address", self.token_address),
            ("pool address", self.pool_address),
        ):
            if not is_address(str(addr or "")):
                raise ConfigError(f"{label} is not a valid address: {addr!r}")
        if self.existing_address and not is_address(str(self.existing_address)):
            raise ConfigError(f"existing address is not a valid address: {self.existing_address!r}")
        if int(self.confirmations) < 1:
            raise ConfigError("confirmations must be >= 1")
        if int(self.verify_max_attempts) < 1:
            raise ConfigError("verify_max_attempts must be >= 1")
        if float(self.verify_poll_interval_s) < 0 or float(self.confirmation_poll_s) < 0:
            raise ConfigError("poll intervals must be >= 0")
        return self

    @property
    def verification_enabled(self) -> bool:
        return bool(str(self.explorer_api_key or "").strip())

    def address_link(self, address: str) -> Optional[str]:
        if not self.explorer_browser_url:
            return None
        return f"{self.explorer_browser_url.rstrip('/')}/address/{address}#code"
