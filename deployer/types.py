from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from deployer.errors import VerificationRejected, VerificationUnknown


# (declared ABI type, value)
ConstructorArgs = List[Tuple[str, Any]]


@dataclass(frozen=True)
class DeploymentArtifact:
    contract_name: str
    abi: List[Dict[str, Any]]
    bytecode: bytes
    source_path: Optional[str] = None

    def constructor_inputs(self) -> List[Tuple[str, str]]:
        for entry in self.abi:
            if entry.get("type") == "constructor":
                return [(str(i.get("name") or ""), str(i.get("type") or "")) for i in entry.get("inputs") or []]
        return []


@dataclass(frozen=True)
class DeployedContract:
    chain_id: int
    address: str
    creation_tx_hash: Optional[str]
    block_number: Optional[int] = None


class DeploymentState(str, Enum):
    UNSUBMITTED = "unsubmitted"
    SUBMITTED = "submitted"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"
    EXISTING = "existing"


@dataclass(frozen=True)
class DeploymentResult:
    state: DeploymentState
    tx_hash: Optional[str] = None
    contract: Optional[DeployedContract] = None
    reason: Optional[str] = None
    deployer: Optional[str] = None
    waited_s: Optional[float] = None

    @property
    def live(self) -> bool:
        return self.contract is not None


@dataclass(frozen=True)
class VerificationRequest:
    contract_address: str
    source_text: str
    contract_name: str
    compiler_version: str
    optimization_used: bool
    optimizer_runs: int
    encoded_constructor_args: str
    license_type: int
    code_format: str = "solidity-single-file"


@dataclass(frozen=True)
class VerificationTicket:
    guid: str
    submitted_at: float


class VerificationState(str, Enum):
    PENDING = "pending"
    IN_QUEUE = "in_queue"
    VERIFIED = "verified"
    REJECTED = "rejected"
    UNKNOWN = "unknown"

    @property
    def terminal(self) -> bool:
        return self in (VerificationState.VERIFIED, VerificationState.REJECTED)


@dataclass(frozen=True)
class VerificationOutcome:
    state: VerificationState
    reason: Optional[str] = None
    guid: Optional[str] = None
    attempts: int = 0

    def raise_for_state(self) -> None:
        if self.state == VerificationState.REJECTED:
            raise VerificationRejected(self.reason or "rejected by explorer")
        if self.state == VerificationState.UNKNOWN:
            raise VerificationUnknown(self.reason or "verification status unknown")


@dataclass
class RunReport:
    deployment: DeploymentResult
    verification: Optional[VerificationOutcome] = None
    error: Optional[Exception] = None
    explorer_link: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        if self.deployment.live:
            return 0
        if self.deployment.state == DeploymentState.TIMED_OUT:
            return 2
        return 1

    def to_dict(self) -> Dict[str, Any]:
        contract = self.deployment.contract
        verification = self.verification
        return {
            "deployment": {
                "state": self.deployment.state.value,
                "address": contract.address if contract else None,
                "chain_id": contract.chain_id if contract else None,
                "tx_hash": self.deployment.tx_hash,
                "deployer": self.deployment.deployer,
                "waited_s": self.deployment.waited_s,
                "block_number": contract.block_number if contract else None,
                "reason": self.deployment.reason,
            },
            "verification": {
                "state": verification.state.value,
                "reason": verification.reason,
                "guid": verification.guid,
                "attempts": verification.attempts,
            }
            if verification
            else None,
            "error": f"{type(self.error).__name__}: {self.error}" if self.error else None,
            "explorer_link": self.explorer_link,
            **self.extra,
        }
