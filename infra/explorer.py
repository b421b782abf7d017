"""Etherscan-compatible explorer API client.

One HTTP round trip per method and no retries here: whether to try again is
the verification coordinator's decision, because a source submission is not
idempotent on the explorer side.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import aiohttp

from deployer import config
from deployer.types import VerificationRequest
from infra.metrics import METRICS


log = logging.getLogger(__name__)

_NOT_VERIFIED_MARKERS = ("not verified",)


class SubmitKind(str, Enum):
    SUBMITTED = "submitted"
    REJECTED = "rejected"
    TRANSIENT = "transient"


@dataclass(frozen=True)
class SubmitResult:
    kind: SubmitKind
    guid: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class StatusCheck:
    text: Optional[str]
    transient: Optional[str] = None


@dataclass(frozen=True)
class AbiLookup:
    verified: bool
    abi_text: Optional[str] = None
    reason: Optional[str] = None
    transient: bool = False


class TransientExplorerError(Exception):
    pass


def _submit_result(kind: SubmitKind, *, guid: Optional[str] = None, reason: Optional[str] = None) -> SubmitResult:
    METRICS.outcome("verifysourcecode", kind.value)
    return SubmitResult(kind=kind, guid=guid, reason=reason)


def build_submit_form(request: VerificationRequest, api_key: str) -> Dict[str, str]:
    return {
        "apikey": str(api_key),
        "module": "contract",
        "action": "verifysourcecode",
        "contractaddress": request.contract_address,
        "sourceCode": request.source_text,
        "codeformat": request.code_format,
        "contractname": request.contract_name,
        "compilerversion": request.compiler_version,
        "optimizationUsed": "1" if request.optimization_used else "0",
        "runs": str(int(request.optimizer_runs)),
        # Misspelling is the explorer's documented field name.
        "constructorArguements": request.encoded_constructor_args,
        "licenseType": str(int(request.license_type)),
    }


class ExplorerClient:
    def __init__(
        self,
        api_key: str,
        chain_id: int,
        *,
        api_url: str = config.EXPLORER_API_URL,
        timeout_s: float = config.EXPLORER_TIMEOUT_S,
    ) -> None:
        self.api_key = str(api_key or "")
        self.chain_id = int(chain_id)
        self.api_url = str(api_url)
        self.timeout_s = float(timeout_s)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "ExplorerClient":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _post(self, form: Dict[str, str]) -> Tuple[int, Any]:
        session = await self._get_session()

        async def _do():
            async with session.post(self.api_url, params={"chainid": str(self.chain_id)}, data=form) as resp:
                body = await resp.json(content_type=None)
                return resp.status, body

        return await asyncio.wait_for(_do(), timeout=self.timeout_s)

    async def _request(self, action: str, fields: Dict[str, str]) -> Dict[str, Any]:
        """POST one action; TransientExplorerError for anything not worth reading as an answer."""
        form = {"apikey": self.api_key, "module": "contract", "action": action}
        form.update(fields)
        METRICS.inc("explorer_requests_total", 1)
        METRICS.inc_reason("explorer_requests_by_action", action, 1)
        try:
            with METRICS.timed(f"explorer:{action}"):
                status, body = await self._post(form)
        except asyncio.TimeoutError as exc:
            METRICS.inc_reason("explorer_fail_by_reason", "timeout", 1)
            raise TransientExplorerError(f"timeout({self.timeout_s}s)") from exc
        except (aiohttp.ClientError, ValueError) as exc:
            METRICS.inc_reason("explorer_fail_by_reason", "transport", 1)
            raise TransientExplorerError(f"{type(exc).__name__}: {exc}") from exc
        if status >= 500 or status == 429:
            METRICS.inc_reason("explorer_fail_by_reason", f"http_{status}", 1)
            raise TransientExplorerError(f"http_{status}")
        if not isinstance(body, dict) or "status" not in body:
            METRICS.inc_reason("explorer_fail_by_reason", "malformed", 1)
            raise TransientExplorerError(f"malformed response (http_{status})")
        return body

    async def fetch_abi(self, address: str) -> AbiLookup:
        try:
            body = await self._request("getabi", {"address": address})
        except TransientExplorerError as exc:
            METRICS.outcome("getabi", "transient")
            return AbiLookup(verified=False, reason=str(exc), transient=True)
        result = str(body.get("result") or "")
        if str(body.get("status")) == "1":
            METRICS.outcome("getabi", "verified")
            return AbiLookup(verified=True, abi_text=result)
        if any(m in result.lower() for m in _NOT_VERIFIED_MARKERS):
            METRICS.outcome("getabi", "not_verified")
            return AbiLookup(verified=False, reason=result)
        # Rate limits and bad keys also come back as status "0".
        METRICS.outcome("getabi", "transient")
        return AbiLookup(verified=False, reason=result or "getabi failed", transient=True)

    async def submit_source(self, request: VerificationRequest) -> SubmitResult:
        form = build_submit_form(request, self.api_key)
        form.pop("apikey")
        form.pop("module")
        form.pop("action")
        try:
            body = await self._request("verifysourcecode", form)
        except TransientExplorerError as exc:
            return _submit_result(SubmitKind.TRANSIENT, reason=str(exc))
        result = str(body.get("result") or "")
        if str(body.get("status")) == "1" and result:
            log.info("verification submitted for %s, guid=%s", request.contract_address, result)
            return _submit_result(SubmitKind.SUBMITTED, guid=result)
        log.warning("explorer rejected verification for %s: %s", request.contract_address, result)
        return _submit_result(SubmitKind.REJECTED, reason=result or "rejected without reason")

    async def check_status(self, guid: str) -> StatusCheck:
        try:
            body = await self._request("checkverifystatus", {"guid": guid})
        except TransientExplorerError as exc:
            METRICS.outcome("checkverifystatus", "transient")
            return StatusCheck(text=None, transient=str(exc))
        METRICS.outcome("checkverifystatus", "answered")
        return StatusCheck(text=str(body.get("result") or ""))
