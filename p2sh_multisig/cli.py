"""Command-line interface for the P2SH multisig tooling.

The interactive ``console`` subcommand mirrors the operator menu; the remaining
subcommands run one action each so signing rounds can be scripted between
cosigners that only exchange session files.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence

from .config import (
    ConfigurationError,
    MultisigConfig,
    load_multisig_config,
    load_rpc_config,
    set_default_config_path,
)
from .errors import DecodeError, MultisigError
from .models import TransactionInput
from .rpc_client import RPCError, RPCTransportError, build_node_client
from .session import SessionStore
from .status import StatusMonitor
from .workflows import MultisigWorkflow

logger = logging.getLogger(__name__)


class CLIError(RuntimeError):
    """Raised when CLI arguments are invalid."""


def _parse_amount(raw: str) -> Decimal:
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid amount: {raw}") from exc
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"invalid amount: {raw}")
    return value


def _add_node_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("node connection")
    group.add_argument("--transport", choices=["http", "cli"], help="Talk to the node over HTTP or the *-cli binary")
    group.add_argument("--rpc-url", help="Override RPC endpoint URL")
    group.add_argument("--rpc-user", help="Override RPC username")
    group.add_argument("--rpc-password", help="Override RPC password")
    group.add_argument("--rpc-wallet", help="Override RPC wallet name")
    group.add_argument("--cli-binary", help="Path to the node CLI binary (default: ./junkcoin-cli)")


def _add_multisig_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("multisig")
    group.add_argument("--address", dest="p2sh_address", help="P2SH multisig address")
    group.add_argument("--redeem-script", help="Redeem script hex for the P2SH address")
    group.add_argument("--session-dir", help="Directory for signing session files")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="P2SH multisig transaction builder, signer and broadcaster")
    parser.add_argument("--config", help="Path to a YAML config file (default: ~/.p2sh-multisig.yaml)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    _add_node_arguments(parser)
    _add_multisig_arguments(parser)
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("console", help="Launch the interactive menu")
    subparsers.add_parser("status", help="Show balance and UTXO count of the P2SH address")

    list_parser = subparsers.add_parser("list-utxos", help="List UTXOs of the P2SH address, largest first")
    list_parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")

    send_parser = subparsers.add_parser("create-send", help="Build a payment and apply the first signature")
    send_parser.add_argument("--to", dest="destination", required=True, help="Destination address")
    send_parser.add_argument("--amount", type=_parse_amount, required=True, help="Amount to send")

    sign_parser = subparsers.add_parser("sign", help="Add this cosigner's signature")
    sign_source = sign_parser.add_mutually_exclusive_group(required=True)
    sign_source.add_argument("--session", help="Session file produced by a previous signing round")
    sign_source.add_argument("--hex", dest="raw_hex", help="Partially signed transaction hex")
    sign_parser.add_argument("--inputs", help="Inputs JSON (required with --hex)")

    broadcast_parser = subparsers.add_parser("broadcast", help="Submit a fully signed transaction")
    broadcast_source = broadcast_parser.add_mutually_exclusive_group(required=True)
    broadcast_source.add_argument("--session", help="Session file to broadcast")
    broadcast_source.add_argument("--hex", dest="raw_hex", help="Signed transaction hex")
    broadcast_parser.add_argument(
        "--allow-incomplete",
        action="store_true",
        help="Broadcast even when the transaction is not known to be fully signed",
    )

    consolidate_parser = subparsers.add_parser("consolidate", help="Merge UTXOs into batched transactions")
    consolidate_parser.add_argument("--batch-size", type=int, help="Maximum inputs per transaction")
    consolidate_parser.add_argument("--max-batches", type=int, help="Stop after this many batches")
    consolidate_parser.add_argument(
        "--refresh",
        action="store_true",
        help="Re-query the UTXO set before each batch after the first",
    )

    sessions_parser = subparsers.add_parser("sessions", help="List saved signing sessions")
    sessions_parser.add_argument("--all", action="store_true", help="Include sessions for other addresses")

    return parser


def _rpc_overrides(args: argparse.Namespace) -> dict[str, Any]:
    mapping = {
        "transport": args.transport,
        "endpoint": args.rpc_url,
        "user": args.rpc_user,
        "password": args.rpc_password,
        "wallet": args.rpc_wallet,
        "cli_binary": args.cli_binary,
    }
    return {key: value for key, value in mapping.items() if value is not None}


def _multisig_overrides(args: argparse.Namespace) -> dict[str, Any]:
    mapping = {
        "p2sh_address": args.p2sh_address,
        "redeem_script": args.redeem_script,
        "session_dir": args.session_dir,
        "batch_size": getattr(args, "batch_size", None),
        "max_batches": getattr(args, "max_batches", None),
        "refresh_between_batches": True if getattr(args, "refresh", False) else None,
    }
    return {key: value for key, value in mapping.items() if value is not None}


def _load_config(args: argparse.Namespace) -> MultisigConfig:
    config = load_multisig_config(overrides=_multisig_overrides(args))
    config.node = build_node_client(load_rpc_config(overrides=_rpc_overrides(args)))
    return config


def _workflow(args: argparse.Namespace) -> MultisigWorkflow:
    return MultisigWorkflow(_load_config(args))


def _parse_inputs(raw: str | None) -> list[TransactionInput]:
    if not raw:
        raise CLIError("--inputs is required when signing raw hex")
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise DecodeError(f"Inputs are not valid JSON: {exc}") from exc
    if not isinstance(parsed, list):
        raise DecodeError("Inputs JSON must be a list")
    return [TransactionInput.from_dict(item) for item in parsed]


def _key_or_prompt(workflow: MultisigWorkflow) -> str | None:
    key = workflow.config.private_key_source.resolve(allow_prompt=False)
    if key:
        return key
    from .console import prompt_private_key

    return prompt_private_key()


def cmd_status(args: argparse.Namespace) -> None:
    config = _load_config(args)
    payload = StatusMonitor(
        config.node,
        config.p2sh_address,
        config.status_path,
        min_confirmations=config.min_confirmations,
        max_confirmations=config.max_confirmations,
        page_size=config.page_size,
        max_pages=config.max_pages,
    ).run_once()
    print(f"P2SH Address: {config.p2sh_address or 'N/A'}")
    if payload.get("error"):
        print(f"Status: {payload['error']}")
        return
    print(f"Balance: {payload['balance']}")
    print(f"Available UTXOs: {payload['utxos']}")


def cmd_list_utxos(args: argparse.Namespace) -> None:
    workflow = _workflow(args)
    workflow.prepare()
    utxos = workflow.fetch_utxos()
    if args.json:
        rows = [
            {"txid": u.txid, "vout": u.vout, "amount": f"{u.amount:.8f}", "confirmations": u.confirmations}
            for u in utxos
        ]
        print(json.dumps(rows, indent=2))
        return
    if not utxos:
        print("No matching UTXOs found.")
        return
    for utxo in utxos:
        print(f"{utxo.txid}:{utxo.vout}  {utxo.amount:.8f}  conf={utxo.confirmations}")
    total = sum((u.amount for u in utxos), Decimal("0"))
    print(f"{len(utxos)} UTXOs totalling {total:.8f}")


def cmd_create_send(args: argparse.Namespace) -> None:
    workflow = _workflow(args)
    outcome = workflow.create_send(args.destination, args.amount, _key_or_prompt(workflow))
    print(
        f"Selected {len(outcome.built.inputs)} UTXOs, fee {outcome.built.fee:.8f} "
        f"({outcome.fee.source}), change {outcome.built.change:.8f}"
    )
    print(f"Signatures: {outcome.result.signature_count} of {outcome.result.required_signatures}")
    print(f"Session saved to {outcome.path}")


def cmd_sign(args: argparse.Namespace) -> None:
    workflow = _workflow(args)
    if args.session:
        session = workflow.load_session(args.session)
    else:
        session = workflow.session_from_hex(args.raw_hex, _parse_inputs(args.inputs))
    outcome = workflow.sign(session, _key_or_prompt(workflow))
    state = "complete" if outcome.result.complete else "partial"
    print(
        f"Signed ({state}): {outcome.result.signature_count} of {outcome.result.required_signatures} signatures"
    )
    print(f"Session saved to {outcome.path}")


def cmd_broadcast(args: argparse.Namespace) -> None:
    workflow = _workflow(args)
    if args.session:
        session = workflow.load_session(args.session)
        txid = workflow.broadcast_session(session, allow_incomplete=args.allow_incomplete)
    else:
        txid = workflow.broadcast_hex(args.raw_hex, allow_incomplete=args.allow_incomplete)
    print(f"Transaction ID: {txid}")


def cmd_consolidate(args: argparse.Namespace) -> None:
    workflow = _workflow(args)
    report = workflow.consolidate(_key_or_prompt(workflow), progress=print)
    print(f"Created {len(report.outcomes)} of {report.planned} batch(es); {report.consolidated_amount:.8f} in total")
    if report.error is not None:
        raise CLIError(f"batch {report.failed_batch} failed: {report.error}")


def cmd_sessions(args: argparse.Namespace) -> None:
    config = load_multisig_config(overrides=_multisig_overrides(args))
    store = SessionStore(config.session_dir)
    paths = store.list_sessions(None if args.all else config.p2sh_address)
    if not paths:
        print(f"No session files in {store.directory}")
        return
    for path in paths:
        session = store.load(path)
        if session.txid:
            state = f"broadcast {session.txid}"
        elif session.complete:
            state = "complete"
        else:
            state = f"{session.signatures}/{session.required_signatures} signatures"
        print(f"{path.name}  {session.kind}  {state}")


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    debug = args.verbose or bool(int(os.environ.get("MSIG_DEBUG", "0") or 0))
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO)
    if args.config:
        set_default_config_path(args.config)
    try:
        if args.command == "console":
            from .console import console_main

            console_main(_load_config(args))
        elif args.command == "status":
            cmd_status(args)
        elif args.command == "list-utxos":
            cmd_list_utxos(args)
        elif args.command == "create-send":
            cmd_create_send(args)
        elif args.command == "sign":
            cmd_sign(args)
        elif args.command == "broadcast":
            cmd_broadcast(args)
        elif args.command == "consolidate":
            cmd_consolidate(args)
        elif args.command == "sessions":
            cmd_sessions(args)
        else:  # pragma: no cover - argparse enforces choices
            raise CLIError(f"Unknown command: {args.command}")
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        logger.info("Interrupted by user")
    except (CLIError, ConfigurationError, MultisigError, RPCError, RPCTransportError, OSError, ValueError) as exc:
        parser.exit(1, f"error: {exc}\n")


if __name__ == "__main__":
    main(sys.argv[1:])
