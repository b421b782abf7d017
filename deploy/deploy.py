import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from deployer import config
from deployer.artifacts import load_artifact
from deployer.chain_config import ChainPreset, load_chain_preset
from deployer.codec import check_constructor_signature, encode_constructor_args
from deployer.config import PROJECT_ROOT, DeployConfig
from deployer.errors import ConfigError, DeployerError
from deployer.orchestrator import Orchestrator, vault_constructor_args
from deployer.run_log import configure_logging, write_record
from deployer.types import RunReport, VerificationState
from infra.metrics import METRICS


log = logging.getLogger("deploy")


def _env(name: str) -> str:
    return str(os.getenv(name, "") or "").strip()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Deploy EducationVault and verify its source on the block explorer")
    parser.add_argument(
        "command",
        nargs="?",
        default="deploy",
        choices=["deploy", "verify", "encode-args"],
        help="deploy (default), verify an already deployed address, or print encoded constructor args",
    )
    parser.add_argument("--network", default=_env("NETWORK") or "sepolia", help="chain preset under configs/chains")
    parser.add_argument("--rpc", default=_env("RPC_URL"), help="RPC URL (defaults to the preset's first)")
    parser.add_argument("--private-key", default=_env("PRIVATE_KEY"), help="deployer private key")
    parser.add_argument("--chain-id", default=_env("CHAIN_ID"), help="chain id (defaults to the preset's)")
    parser.add_argument("--explorer-api-key", default=_env("ETHERSCAN_API_KEY"), help="block explorer API key")
    parser.add_argument("--fund-address", default=_env("EDUCATION_FUND_ADDRESS"), help="education fund (beneficiary) address")
    parser.add_argument("--token-address", default="", help="USDC address (defaults to the preset's)")
    parser.add_argument("--pool-address", default="", help="Aave pool address (defaults to the preset's)")
    parser.add_argument("--address", default="", help="already deployed contract address (skips deployment)")
    parser.add_argument("--artifact", default="", help="compiled artifact JSON (hardhat, foundry or solc combined-json)")
    parser.add_argument("--source", default="", help="flattened Solidity source used for verification")
    parser.add_argument("--compiler-version", default=config.COMPILER_VERSION)
    parser.add_argument("--no-optimize", action="store_true", help="artifact was built without the optimizer")
    parser.add_argument("--runs", type=int, default=config.OPTIMIZER_RUNS, help="optimizer runs")
    parser.add_argument("--confirmations", type=int, default=config.CONFIRMATIONS)
    parser.add_argument("--confirm-timeout", type=float, default=config.CONFIRMATION_TIMEOUT_S, help="seconds")
    parser.add_argument("--verify-interval", type=float, default=config.VERIFY_POLL_INTERVAL_S, help="seconds")
    parser.add_argument("--verify-attempts", type=int, default=config.VERIFY_MAX_ATTEMPTS)
    parser.add_argument("--out", default=str(PROJECT_ROOT / "deploy" / "deployed.json"), help="deployment record file")
    parser.add_argument("--log-file", default="", help="also write logs here")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def _parse_chain_id(raw: object) -> Optional[int]:
    text = str(raw or "").strip()
    if not text:
        return None
    try:
        return int(text, 0)
    except ValueError:
        raise ConfigError(f"chain id must be an integer, got {text!r}") from None


def build_config(args: argparse.Namespace, preset: Optional[ChainPreset]) -> DeployConfig:
    tokens = preset.tokens if preset else {}
    rpc_url = str(args.rpc or "").strip() or (preset.rpc_urls[0] if preset and preset.rpc_urls else "")
    chain_id = _parse_chain_id(args.chain_id) or (preset.chain_id if preset else 0)
    return DeployConfig(
        private_key=str(args.private_key or "").strip(),
        rpc_url=rpc_url,
        chain_id=chain_id,
        fund_address=str(args.fund_address or "").strip(),
        token_address=str(args.token_address or "").strip() or tokens.get("USDC", ""),
        pool_address=str(args.pool_address or "").strip() or tokens.get("AAVE_POOL", ""),
        explorer_api_key=str(args.explorer_api_key or "").strip() or None,
        explorer_api_url=(preset.explorer_api_url if preset and preset.explorer_api_url else config.EXPLORER_API_URL),
        explorer_browser_url=preset.explorer_browser_url if preset else None,
        artifact_path=Path(args.artifact) if args.artifact else None,
        source_path=Path(args.source) if args.source else None,
        existing_address=str(args.address or "").strip() or None,
        compiler_version=str(args.compiler_version),
        optimization_used=not bool(args.no_optimize),
        optimizer_runs=int(args.runs),
        gas_price_wei=preset.gas_price_wei if preset else None,
        confirmations=int(args.confirmations),
        confirmation_timeout_s=float(args.confirm_timeout),
        verify_poll_interval_s=float(args.verify_interval),
        verify_max_attempts=int(args.verify_attempts),
    )


def _manual_steps(cfg: DeployConfig, address: str, encoded: str) -> List[str]:
    return [
        f"1. Open {cfg.address_link(address) or address} and choose 'Verify and Publish'",
        f"2. Compiler: {cfg.compiler_version}, single file, license: MIT",
        f"3. Optimization: {'yes' if cfg.optimization_used else 'no'}, runs: {cfg.optimizer_runs}",
        f"4. Paste the flattened source of {cfg.contract_name}",
        f"5. Constructor arguments (ABI-encoded): {encoded}",
    ]


def _print_summary(cfg: DeployConfig, report: RunReport, encoded: str) -> None:
    contract = report.deployment.contract
    if contract is None:
        print(f"deployment {report.deployment.state.value}: {report.error}")
        return
    print(f"contract is live at {contract.address} (chain {contract.chain_id})")
    verification = report.verification
    if verification is not None:
        detail = f" ({verification.reason})" if verification.reason else ""
        print(f"verification status: {verification.state.value}{detail}")
        if verification.state in (VerificationState.UNKNOWN, VerificationState.REJECTED):
            print("manual verification:")
            for line in _manual_steps(cfg, contract.address, encoded):
                print("   " + line)
    if report.explorer_link:
        print(f"explorer: {report.explorer_link}")
    print(f"next: set EDUCATION_VAULT = '{contract.address}' in the frontend contract config")


def encode_args_command(cfg: DeployConfig) -> int:
    args = vault_constructor_args(cfg)
    if cfg.artifact_path is not None:
        check_constructor_signature(load_artifact(cfg.contract_name, cfg.artifact_path), args)
    print(encode_constructor_args(args))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(Path(args.log_file) if args.log_file else None, verbose=bool(args.verbose))
    try:
        preset = load_chain_preset(args.network, _parse_chain_id(args.chain_id))
        if preset is None:
            log.warning("no chain preset for network=%s chain_id=%s", args.network, args.chain_id)
        cfg = build_config(args, preset)
        if args.command == "encode-args":
            return encode_args_command(cfg)
        if args.command == "verify" and not cfg.existing_address:
            log.error("verify needs --address")
            return 1
        report = asyncio.run(Orchestrator(cfg).run())
    except DeployerError as exc:
        log.error("%s: %s", type(exc).__name__, exc)
        return 1
    except KeyboardInterrupt:
        log.error("interrupted")
        return 130

    encoded = encode_constructor_args(vault_constructor_args(cfg))
    record = report.to_dict()
    record["network"] = preset.name if preset else None
    record["metrics"] = METRICS.snapshot()
    out_path = write_record(Path(args.out), record)
    log.info("deployment record written to %s", out_path)
    print(json.dumps(record["deployment"], indent=2))
    _print_summary(cfg, report, encoded)
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
