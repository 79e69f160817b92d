"""Command-line interface for running and inspecting a MicroAgent."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

from .agent import MicroAgent
from .config import AgentConfig, ConfigurationError, load_agent_config
from .fees import resolve_fee_rate
from .gateway import GatewayError, WhatsOnChainClient, format_gateway_hint
from .keys import is_valid_address
from .llm import OllamaClient
from .model import ProtocolMessage
from .skills import SkillRegistry
from .state import JsonStateStore, StateError
from .tx_builder import ChainSpender, InsufficientFundsError, SignatureContextError, TransactionBuilder
from .wallet import Wallet, WalletError, load_or_create_wallet

logger = logging.getLogger(__name__)

COMPACT_JSON_SEPARATORS = (",", ":")
LOG_FORMAT = "[%(asctime)s] %(message)s"


class CLIError(RuntimeError):
    """Raised when CLI arguments are invalid."""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="MicroAgent: an autonomous BSV messaging agent")
    parser.add_argument(
        "--agent-dir",
        default=".",
        help="Directory holding config.yaml, wallet.json, state.json and the log",
    )
    parser.add_argument("--config", default=None, help="Explicit path to a YAML config file")
    parser.add_argument("--network", choices=["main", "test"], default=None, help="Override the network")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="create the agent wallet if missing and print its address")
    subparsers.add_parser("address", help="print the agent address")
    subparsers.add_parser("status", help="show balance and persisted state counters")

    run_parser = subparsers.add_parser("run", help="start the polling loop")
    run_parser.add_argument(
        "--cycles",
        type=int,
        default=None,
        help="Stop after this many cycles (default: run until interrupted)",
    )

    send_parser = subparsers.add_parser(
        "send-message", help="broadcast a protocol message from the agent wallet"
    )
    send_parser.add_argument("--to", required=True, help="Recipient BSV address")
    send_parser.add_argument(
        "--amount",
        type=int,
        default=1000,
        help="Satoshis paid to the recipient alongside the message",
    )
    send_parser.add_argument("text", help="Message text")
    return parser


def configure_logging(config: AgentConfig, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    config.agent_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(), logging.FileHandler(config.log_path, delay=True)],
    )
    logging.getLogger().setLevel(level)
    # Quiet per-request connection chatter from urllib3.
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _load_config(args: argparse.Namespace) -> AgentConfig:
    overrides: dict[str, Any] = {}
    if args.network:
        overrides["network"] = args.network
    return load_agent_config(Path(args.agent_dir), config_path=args.config, overrides=overrides)


def _gateway(config: AgentConfig) -> WhatsOnChainClient:
    return WhatsOnChainClient(config.resolved_gateway_url, timeout=config.http_timeout_seconds)


def _spender(config: AgentConfig, wallet: Wallet, gateway: WhatsOnChainClient) -> ChainSpender:
    builder = TransactionBuilder(resolve_fee_rate(config.fee_rate))
    return ChainSpender(gateway, wallet, builder, config.safety_buffer_sats)


def cmd_init(config: AgentConfig) -> None:
    wallet = load_or_create_wallet(config.wallet_path, config.network)
    print(json.dumps({"address": wallet.address, "network": wallet.network, "wallet": str(config.wallet_path)}))


def cmd_address(config: AgentConfig) -> None:
    if not config.wallet_path.exists():
        raise CLIError(f"No wallet at {config.wallet_path}; run 'microagent init' first")
    print(load_or_create_wallet(config.wallet_path, config.network).address)


def cmd_status(config: AgentConfig) -> None:
    wallet = load_or_create_wallet(config.wallet_path, config.network)
    state = JsonStateStore(config.state_path).load()
    summary: dict[str, Any] = {
        "address": wallet.address,
        "network": config.network,
        "loop_count": state.loop_count,
        "last_balance": state.last_balance,
        "last_loop": state.last_loop.isoformat() if state.last_loop else None,
        "processed": len(state.processed_txids),
        "conversations": len(state.conversations),
        "inbox": len(state.inbox),
        "actions": len(state.actions),
    }
    try:
        summary["balance"] = _gateway(config).get_balance(wallet.address)
    except GatewayError as exc:
        logger.warning("Could not fetch balance: %s", exc)
        summary["balance"] = None
    print(json.dumps(summary, indent=2))


def cmd_run(config: AgentConfig, cycles: int | None) -> None:
    wallet = load_or_create_wallet(config.wallet_path, config.network)
    gateway = _gateway(config)
    llm = OllamaClient(config.llm_endpoint, config.llm_model, timeout=config.llm_timeout_seconds)
    registry = SkillRegistry.with_defaults(config.send_min_sats, config.send_max_sats, config.network)
    agent = MicroAgent(
        config,
        wallet,
        gateway,
        llm,
        registry,
        JsonStateStore(config.state_path),
        spender=_spender(config, wallet, gateway),
    )
    logger.info("Agent directory: %s", config.agent_dir)
    agent.run_forever(max_cycles=cycles)


def cmd_send_message(config: AgentConfig, recipient: str, amount: int, text: str) -> None:
    if not is_valid_address(recipient, config.network):
        raise CLIError(f"invalid recipient address: {recipient}")
    if amount < 0:
        raise CLIError("--amount must not be negative")
    wallet = load_or_create_wallet(config.wallet_path, config.network)
    gateway = _gateway(config)
    fields = ProtocolMessage.msg(text, config.protocol_prefix).to_fields()
    built = _spender(config, wallet, gateway).send_message(fields, recipient=recipient, amount_sats=amount)
    result = {"txid": built.txid, "fee_sats": built.fee_sats, "change_sats": built.change_sats}
    print(json.dumps(result, separators=COMPACT_JSON_SEPARATORS))


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = _load_config(args)
        configure_logging(config, args.verbose)
        if args.command == "init":
            cmd_init(config)
        elif args.command == "address":
            cmd_address(config)
        elif args.command == "status":
            cmd_status(config)
        elif args.command == "run":
            cmd_run(config, args.cycles)
        elif args.command == "send-message":
            cmd_send_message(config, args.to, args.amount, args.text)
        else:  # pragma: no cover - argparse enforces choices
            raise CLIError(f"Unknown command: {args.command}")
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        logger.info("Interrupted by user")
    except GatewayError as exc:
        hint = format_gateway_hint(exc)
        message = f"error: {exc}\n" + (f"hint: {hint}\n" if hint else "")
        parser.exit(1, message)
    except (
        CLIError,
        ConfigurationError,
        WalletError,
        StateError,
        InsufficientFundsError,
        SignatureContextError,
        ValueError,
    ) as exc:
        parser.exit(1, f"error: {exc}\n")


if __name__ == "__main__":
    main(sys.argv[1:])
