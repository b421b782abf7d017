from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Optional

from eth_utils import to_checksum_address

from deployer.artifacts import load_artifact, load_source
from deployer.codec import check_constructor_signature, encode_constructor_args
from deployer.config import PLACEHOLDER_FUND_ADDRESS, DeployConfig
from deployer.errors import ConfigError, DeploymentAmbiguous, DeploymentReverted
from deployer.executor import DeploymentExecutor
from deployer.polling import Sleep
from deployer.types import (
    ConstructorArgs,
    DeployedContract,
    DeploymentArtifact,
    DeploymentResult,
    DeploymentState,
    RunReport,
    VerificationOutcome,
    VerificationState,
)
from deployer.verifier import SourceSettings, VerificationCoordinator
from infra.explorer import ExplorerClient
from infra.metrics import METRICS
from infra.rpc import ChainClient


log = logging.getLogger(__name__)


def vault_constructor_args(cfg: DeployConfig) -> ConstructorArgs:
    """EducationVault(address usdc, address aavePool, address educationFund)."""
    return [
        ("address", cfg.token_address),
        ("address", cfg.pool_address),
        ("address", cfg.fund_address),
    ]


class Orchestrator:
    """Deploy (or reuse) a contract, then verify it; one RunReport per run.

    Two orchestrations against the same address at once are a caller error;
    only the explorer's own "already verified"/"already in queue" answers stand
    between them, there is no local lock.
    """

    def __init__(
        self,
        cfg: DeployConfig,
        *,
        chain: Optional[ChainClient] = None,
        explorer: Optional[ExplorerClient] = None,
        artifact: Optional[DeploymentArtifact] = None,
        source_text: Optional[str] = None,
        constructor_args: Optional[ConstructorArgs] = None,
        sleep: Sleep = asyncio.sleep,
        max_confirmation_polls: Optional[int] = None,
    ) -> None:
        self.cfg = cfg
        self._chain = chain
        self._explorer = explorer
        self._artifact = artifact
        self._source_text = source_text
        self._constructor_args = constructor_args
        self._sleep = sleep
        self._max_confirmation_polls = max_confirmation_polls

    def _prepare(self) -> tuple[DeploymentArtifact, str, Optional[SourceSettings]]:
        cfg = self.cfg.validate()
        if str(cfg.fund_address).lower() == PLACEHOLDER_FUND_ADDRESS:
            log.warning("fund address is the placeholder %s; set a real one before mainnet use", cfg.fund_address)

        artifact = self._artifact or load_artifact(cfg.contract_name, cfg.artifact_path)
        args = self._constructor_args if self._constructor_args is not None else vault_constructor_args(cfg)
        check_constructor_signature(artifact, args)
        encoded = encode_constructor_args(args)

        settings = None
        if cfg.verification_enabled:
            source = self._source_text
            if source is None:
                source = load_source(cfg.contract_name, cfg.source_path)
            settings = SourceSettings(
                source_text=source,
                contract_name=artifact.contract_name,
                compiler_version=cfg.compiler_version,
                optimization_used=cfg.optimization_used,
                optimizer_runs=cfg.optimizer_runs,
                license_type=cfg.license_type,
                code_format=cfg.code_format,
            )
        return artifact, encoded, settings

    async def _existing(self, chain: ChainClient, address: str) -> DeploymentResult:
        address = to_checksum_address(address)
        code = await chain.get_code(address)
        if not code:
            raise ConfigError(f"no contract code at supplied address {address} on chain {self.cfg.chain_id}")
        log.info("using existing contract at %s; skipping deployment", address)
        return DeploymentResult(
            state=DeploymentState.EXISTING,
            contract=DeployedContract(chain_id=int(self.cfg.chain_id), address=address, creation_tx_hash=None),
        )

    async def _deploy(self, chain: ChainClient, artifact: DeploymentArtifact, encoded: str) -> DeploymentResult:
        cfg = self.cfg
        executor = DeploymentExecutor(
            chain,
            private_key=cfg.private_key,
            chain_id=cfg.chain_id,
            confirmations=cfg.confirmations,
            timeout_s=cfg.confirmation_timeout_s,
            poll_s=cfg.confirmation_poll_s,
            max_polls=self._max_confirmation_polls,
            gas_price_wei=cfg.gas_price_wei,
            fallback_gas_limit=cfg.fallback_gas_limit,
            sleep=self._sleep,
        )
        log.info("deploying %s from %s on chain %s", artifact.contract_name, executor.deployer_address, cfg.chain_id)
        return await executor.deploy(artifact, encoded)

    async def run(self) -> RunReport:
        cfg = self.cfg
        artifact, encoded, settings = self._prepare()

        async with AsyncExitStack() as stack:
            chain = self._chain
            if chain is None:
                chain = await stack.enter_async_context(ChainClient(cfg.rpc_url, default_timeout_s=cfg.rpc_timeout_s))
            remote_chain_id = await chain.chain_id()
            if remote_chain_id != int(cfg.chain_id):
                raise ConfigError(f"rpc endpoint is on chain {remote_chain_id}, expected {cfg.chain_id}")

            if cfg.existing_address:
                deployment = await self._existing(chain, cfg.existing_address)
            else:
                deployment = await self._deploy(chain, artifact, encoded)
            METRICS.outcome("deployment", deployment.state.value)

            if deployment.state == DeploymentState.TIMED_OUT:
                return RunReport(
                    deployment=deployment,
                    error=DeploymentAmbiguous(
                        deployment.tx_hash or "?",
                        deployment.waited_s if deployment.waited_s is not None else cfg.confirmation_timeout_s,
                    ),
                )
            if deployment.contract is None:
                return RunReport(deployment=deployment, error=DeploymentReverted(deployment.tx_hash or "?", deployment.reason))

            address = deployment.contract.address
            report = RunReport(deployment=deployment, explorer_link=cfg.address_link(address))

            if settings is None:
                report.verification = VerificationOutcome(
                    state=VerificationState.UNKNOWN,
                    reason="no explorer api key configured; verify manually",
                )
                METRICS.outcome("verification", report.verification.state.value)
                return report

            explorer = self._explorer
            if explorer is None:
                explorer = await stack.enter_async_context(
                    ExplorerClient(
                        str(cfg.explorer_api_key),
                        cfg.chain_id,
                        api_url=cfg.explorer_api_url,
                        timeout_s=cfg.explorer_timeout_s,
                    )
                )
            coordinator = VerificationCoordinator(
                explorer,
                settings,
                poll_interval_s=cfg.verify_poll_interval_s,
                max_attempts=cfg.verify_max_attempts,
                sleep=self._sleep,
            )
            report.verification = await coordinator.verify(address, encoded)
            METRICS.outcome("verification", report.verification.state.value)
            log.info("contract live at %s; verification %s", address, report.verification.state.value)
            return report
