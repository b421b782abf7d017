from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from deployer import config
from deployer.polling import Sleep, poll_until
from deployer.types import VerificationOutcome, VerificationRequest, VerificationState, VerificationTicket
from infra.explorer import ExplorerClient, SubmitKind


log = logging.getLogger(__name__)

MANUAL_CHECK_HINT = "check the explorer manually"

_ALREADY_VERIFIED_MARKERS = ("already verified",)


def map_status_text(text: Optional[str]) -> VerificationState:
    """Map explorer free-text status onto a VerificationState.

    The API has no status enum; this substring table is the whole contract.
    "Fail" is checked first so "Fail - Unable to verify" never reads as verified.
    """
    t = str(text or "")
    low = t.lower()
    if "fail" in low:
        return VerificationState.REJECTED
    if "pass" in low or "verified" in low:
        return VerificationState.VERIFIED
    if "queue" in low:
        return VerificationState.IN_QUEUE
    return VerificationState.PENDING


@dataclass(frozen=True)
class SourceSettings:
    source_text: str
    contract_name: str = config.CONTRACT_NAME
    compiler_version: str = config.COMPILER_VERSION
    optimization_used: bool = config.OPTIMIZATION_USED
    optimizer_runs: int = config.OPTIMIZER_RUNS
    license_type: int = config.LICENSE_TYPE
    code_format: str = config.CODE_FORMAT

    def request_for(self, address: str, encoded_args_hex: str) -> VerificationRequest:
        return VerificationRequest(
            contract_address=address,
            source_text=self.source_text,
            contract_name=self.contract_name,
            compiler_version=self.compiler_version,
            optimization_used=bool(self.optimization_used),
            optimizer_runs=int(self.optimizer_runs),
            encoded_constructor_args=encoded_args_hex,
            license_type=int(self.license_type),
            code_format=self.code_format,
        )


class VerificationCoordinator:
    """Turns a live contract into a final VerificationOutcome without double-submitting.

    Never raises for explorer-side problems; every such path ends in an outcome.
    """

    def __init__(
        self,
        explorer: ExplorerClient,
        settings: SourceSettings,
        *,
        poll_interval_s: float = config.VERIFY_POLL_INTERVAL_S,
        max_attempts: int = config.VERIFY_MAX_ATTEMPTS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.explorer = explorer
        self.settings = settings
        self.poll_interval_s = float(poll_interval_s)
        self.max_attempts = max(1, int(max_attempts))
        self._sleep = sleep

    async def submit(self, address: str, encoded_args_hex: str) -> VerificationOutcome | VerificationTicket:
        request = self.settings.request_for(address, encoded_args_hex)
        res = await self.explorer.submit_source(request)
        if res.kind == SubmitKind.SUBMITTED and res.guid:
            return VerificationTicket(guid=res.guid, submitted_at=time.time())
        if res.kind == SubmitKind.REJECTED:
            reason = res.reason or "rejected"
            if any(m in reason.lower() for m in _ALREADY_VERIFIED_MARKERS):
                return VerificationOutcome(state=VerificationState.VERIFIED, reason=reason)
            return VerificationOutcome(state=VerificationState.REJECTED, reason=reason)
        # Submission may have landed; never resubmit.
        return VerificationOutcome(
            state=VerificationState.UNKNOWN,
            reason=f"submission error ({res.reason}); {MANUAL_CHECK_HINT}",
        )

    async def poll(self, ticket: VerificationTicket) -> VerificationOutcome:
        last_text: Optional[str] = None

        async def _fetch(attempt: int) -> VerificationState:
            nonlocal last_text
            check = await self.explorer.check_status(ticket.guid)
            if check.transient:
                log.warning("status check %d/%d for %s failed: %s", attempt, self.max_attempts, ticket.guid, check.transient)
                last_text = check.transient
                return VerificationState.PENDING
            last_text = check.text
            state = map_status_text(check.text)
            log.info("verification %s attempt %d/%d: %s", ticket.guid, attempt, self.max_attempts, check.text)
            return state

        res = await poll_until(
            _fetch,
            is_terminal=lambda s: s.terminal,
            interval_s=self.poll_interval_s,
            max_attempts=self.max_attempts,
            sleep=self._sleep,
            initial_delay=True,
        )
        if res.terminal and res.value is not None:
            return VerificationOutcome(state=res.value, reason=last_text, guid=ticket.guid, attempts=res.attempts)
        return VerificationOutcome(
            state=VerificationState.UNKNOWN,
            reason=f"still '{last_text}' after {res.attempts} checks; {MANUAL_CHECK_HINT}",
            guid=ticket.guid,
            attempts=res.attempts,
        )

    async def verify(self, address: str, encoded_args_hex: str) -> VerificationOutcome:
        lookup = await self.explorer.fetch_abi(address)
        if lookup.verified:
            log.info("source for %s already verified; skipping submission", address)
            return VerificationOutcome(state=VerificationState.VERIFIED, reason="already verified")
        if lookup.transient:
            log.warning("getabi pre-check for %s inconclusive (%s); submitting anyway", address, lookup.reason)

        submitted = await self.submit(address, encoded_args_hex)
        if isinstance(submitted, VerificationOutcome):
            return submitted
        return await self.poll(submitted)
