from __future__ import annotations

import argparse
import logging
from pathlib import Path

from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solders.keypair import Keypair

from bountybot.config import (
    AppConfig,
    ConfigError,
    load_config,
    load_wallet_keypair,
    payer_address,
)
from bountybot.github_gateway import GitHubGateway
from bountybot.marketplace import MarketplaceClient
from bountybot.observability import configure_logging, log_event
from bountybot.orchestrator import BountyOrchestrator
from bountybot.registry import ProcessedCommentRegistry
from bountybot.reporter import OutcomeReporter
from bountybot.solana_network import SolanaNetwork
from bountybot.transaction_pipeline import TransactionPipeline, TransactionPolicy


LOGGER = logging.getLogger("bountybot.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bountybot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Poll configured repositories and process /bounty commands"
    )
    run_parser.add_argument("--config", type=Path, default=Path("bountybot.toml"))
    run_parser.add_argument("--once", action="store_true", help="Run a single poll tick and exit")
    run_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )

    check_parser = subparsers.add_parser(
        "check-config", help="Validate the config file and wallet environment"
    )
    check_parser.add_argument("--config", type=Path, default=Path("bountybot.toml"))

    return parser


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(bool(getattr(args, "verbose", False)))
    config = load_config(args.config)

    if args.command == "run":
        _cmd_run(config, once=bool(args.once))
        return
    if args.command == "check-config":
        _cmd_check_config(config)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_run(config: AppConfig, *, once: bool) -> None:
    keypair = load_wallet_keypair(config.solana)
    network = SolanaNetwork(
        Client(config.solana.rpc_url, commitment=Confirmed),
        explorer_url=config.solana.explorer_url,
    )
    orchestrator = _build_orchestrator(config, keypair=keypair, network=network)
    try:
        orchestrator.run(once=once)
    except KeyboardInterrupt:
        log_event(LOGGER, "bot_stopped", reason="interrupted")


def _build_orchestrator(
    config: AppConfig, *, keypair: Keypair, network: SolanaNetwork
) -> BountyOrchestrator:
    github = GitHubGateway()
    marketplace = MarketplaceClient(config.marketplace)
    return BountyOrchestrator(
        config,
        github=github,
        marketplace=marketplace,
        pipeline=TransactionPipeline(
            network, keypair, TransactionPolicy.from_config(config.solana)
        ),
        reporter=OutcomeReporter(
            github,
            task_url=marketplace.task_url,
            explorer_url=network.explorer_url,
        ),
        registry=ProcessedCommentRegistry(),
        payer=payer_address(config.solana, keypair),
    )


def _cmd_check_config(config: AppConfig) -> None:
    for repo in config.repos:
        print(f"Repo: {repo.full_name}")
    if config.auth.allowed_users:
        print(f"Allowed users: {', '.join(sorted(config.auth.allowed_users))}")
    else:
        print("Allowed users: <none> (nobody can create bounties)")
    print(f"RPC URL: {config.solana.rpc_url}")
    print(f"Marketplace: {config.marketplace.create_task_url}")
    try:
        keypair = load_wallet_keypair(config.solana)
    except ConfigError as exc:
        print(f"Wallet: not configured ({exc})")
        return
    print(f"Wallet: {keypair.pubkey()}")
    print(f"Payer: {payer_address(config.solana, keypair)}")
