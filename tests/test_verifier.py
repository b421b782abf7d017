import pytest

from deployer.errors import VerificationRejected, VerificationUnknown
from deployer.types import VerificationState
from deployer.verifier import SourceSettings, VerificationCoordinator
from fakes import CONTRACT_ADDR, NOT_VERIFIED, FakeExplorer, SleepRecorder, no_sleep, notok, ok


SETTINGS = SourceSettings(source_text="// SPDX-License-Identifier: MIT\ncontract EducationVault {}")
ENCODED = "00" * 96


def _coordinator(explorer: FakeExplorer, **kwargs) -> VerificationCoordinator:
    params = dict(poll_interval_s=0.0, max_attempts=10, sleep=no_sleep)
    params.update(kwargs)
    return VerificationCoordinator(explorer, SETTINGS, **params)


@pytest.mark.asyncio
async def test_already_verified_never_submits() -> None:
    explorer = FakeExplorer({"getabi": ok('[{"type":"constructor"}]')})
    outcome = await _coordinator(explorer).verify(CONTRACT_ADDR, ENCODED)

    assert outcome.state == VerificationState.VERIFIED
    assert explorer.count("verifysourcecode") == 0
    assert explorer.count("checkverifystatus") == 0


@pytest.mark.asyncio
async def test_submit_then_poll_until_pass() -> None:
    explorer = FakeExplorer(
        {
            "getabi": NOT_VERIFIED,
            "verifysourcecode": ok("G123"),
            "checkverifystatus": [ok("Pending in queue"), ok("Pending in queue"), ok("Pass - Verified")],
        }
    )
    sleep = SleepRecorder()
    outcome = await _coordinator(explorer, poll_interval_s=5.0, sleep=sleep).verify(CONTRACT_ADDR, ENCODED)

    assert outcome.state == VerificationState.VERIFIED
    assert outcome.guid == "G123"
    assert outcome.attempts == 3
    assert explorer.count("verifysourcecode") == 1
    assert explorer.count("checkverifystatus") == 3
    assert sleep.calls == [5.0, 5.0, 5.0]
    status_forms = [f for f in explorer.forms if f["action"] == "checkverifystatus"]
    assert all(f["guid"] == "G123" for f in status_forms)


@pytest.mark.asyncio
async def test_explicit_rejection_skips_polling() -> None:
    explorer = FakeExplorer({"getabi": NOT_VERIFIED, "verifysourcecode": notok("compiler version mismatch")})
    outcome = await _coordinator(explorer).verify(CONTRACT_ADDR, ENCODED)

    assert outcome.state == VerificationState.REJECTED
    assert outcome.reason == "compiler version mismatch"
    assert outcome.attempts == 0
    assert explorer.count("checkverifystatus") == 0
    with pytest.raises(VerificationRejected):
        outcome.raise_for_state()


@pytest.mark.asyncio
async def test_already_verified_rejection_counts_as_verified() -> None:
    explorer = FakeExplorer({"getabi": NOT_VERIFIED, "verifysourcecode": notok("Contract source code already verified")})
    outcome = await _coordinator(explorer).verify(CONTRACT_ADDR, ENCODED)
    assert outcome.state == VerificationState.VERIFIED


@pytest.mark.asyncio
async def test_transient_submission_is_unknown_and_not_retried() -> None:
    explorer = FakeExplorer({"getabi": NOT_VERIFIED, "verifysourcecode": (502, {"error": "bad gateway"})})
    outcome = await _coordinator(explorer).verify(CONTRACT_ADDR, ENCODED)

    assert outcome.state == VerificationState.UNKNOWN
    assert "http_502" in (outcome.reason or "")
    assert explorer.count("verifysourcecode") == 1
    assert explorer.count("checkverifystatus") == 0
    with pytest.raises(VerificationUnknown):
        outcome.raise_for_state()


@pytest.mark.asyncio
@pytest.mark.parametrize("max_attempts", [1, 4, 10])
async def test_poll_exhaustion_returns_unknown(max_attempts: int) -> None:
    explorer = FakeExplorer(
        {"getabi": NOT_VERIFIED, "verifysourcecode": ok("G1"), "checkverifystatus": ok("Pending in queue")}
    )
    outcome = await _coordinator(explorer, max_attempts=max_attempts).verify(CONTRACT_ADDR, ENCODED)

    assert outcome.state == VerificationState.UNKNOWN
    assert outcome.attempts == max_attempts
    assert explorer.count("checkverifystatus") == max_attempts
    assert "manually" in (outcome.reason or "")


@pytest.mark.asyncio
async def test_failed_status_is_rejected_with_reason() -> None:
    explorer = FakeExplorer(
        {
            "getabi": NOT_VERIFIED,
            "verifysourcecode": ok("G9"),
            "checkverifystatus": [ok("Pending in queue"), notok("Fail - Unable to verify")],
        }
    )
    outcome = await _coordinator(explorer).verify(CONTRACT_ADDR, ENCODED)
    assert outcome.state == VerificationState.REJECTED
    assert outcome.reason == "Fail - Unable to verify"
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_transient_status_check_counts_as_attempt() -> None:
    explorer = FakeExplorer(
        {
            "getabi": NOT_VERIFIED,
            "verifysourcecode": ok("G2"),
            "checkverifystatus": [(503, {}), ok("Pass - Verified")],
        }
    )
    outcome = await _coordinator(explorer).verify(CONTRACT_ADDR, ENCODED)
    assert outcome.state == VerificationState.VERIFIED
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_inconclusive_precheck_still_submits() -> None:
    explorer = FakeExplorer(
        {
            "getabi": notok("Max rate limit reached"),
            "verifysourcecode": ok("G3"),
            "checkverifystatus": ok("Pass - Verified"),
        }
    )
    outcome = await _coordinator(explorer).verify(CONTRACT_ADDR, ENCODED)
    assert outcome.state == VerificationState.VERIFIED
    assert explorer.count("verifysourcecode") == 1
