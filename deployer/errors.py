from __future__ import annotations

from typing import Optional


class DeployerError(Exception):
    """Base class for every error raised by the deployer."""


class ConfigError(DeployerError):
    """Missing or malformed run parameter. Raised before any network call."""


class RpcError(DeployerError):
    def __init__(self, message: str, *, method: Optional[str] = None, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.method = method
        self.reason = reason


class ArgEncodingError(DeployerError, ValueError):
    """Constructor values do not fit the declared signature."""


class DeploymentFailed(DeployerError):
    def __init__(self, message: str, *, stage: str, tx_hash: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage
        self.tx_hash = tx_hash


class DeploymentReverted(DeploymentFailed):
    def __init__(self, tx_hash: str, reason: Optional[str] = None) -> None:
        self.reason = reason or "execution reverted"
        super().__init__(f"creation tx {tx_hash} reverted: {self.reason}", stage="confirmation", tx_hash=tx_hash)


class DeploymentAmbiguous(DeployerError):
    """Confirmation wait exhausted. The tx may still land; reconcile by hand."""

    def __init__(self, tx_hash: str, waited_s: float) -> None:
        super().__init__(
            f"no receipt for {tx_hash} after {waited_s:.0f}s; the transaction may still confirm, "
            "check it manually before redeploying"
        )
        self.tx_hash = tx_hash
        self.waited_s = float(waited_s)


class VerificationError(DeployerError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class VerificationRejected(VerificationError):
    pass


class VerificationUnknown(VerificationError):
    pass
