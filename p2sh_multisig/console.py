"""Interactive menu for creating, signing, broadcasting and consolidating multisig spends."""

from __future__ import annotations

import getpass
import json
import os
import textwrap
import traceback
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, List

from .batching import plan_batches
from .broadcast import TransactionSummary
from .config import ConfigurationError, MultisigConfig, load_multisig_config, load_rpc_config
from .errors import DecodeError, MultisigError
from .models import TransactionInput
from .rpc_client import RPCError, RPCTransportError, build_node_client, format_rpc_hint
from .session import SigningSession
from .signing import SigningResult
from .status import StatusMonitor, clear_status, status_lines
from .workflows import MultisigWorkflow


def prompt_str(prompt: str, default: str | None = None) -> str:
    """Prompt for a string value, honoring an optional default."""

    suffix = f" [{default}]" if default is not None else ""
    while True:
        raw = input(f"{prompt}{suffix}: ").strip()
        if raw:
            return raw
        if default is not None:
            return default
        print("Please enter a value or provide a default.")


def prompt_decimal(prompt: str, default: Decimal | None = None) -> Decimal | None:
    """Prompt for an amount, returning the default on blank input."""

    suffix = f" [{default}]" if default is not None else ""
    while True:
        raw = input(f"{prompt}{suffix}: ").strip()
        if not raw:
            return default
        try:
            value = Decimal(raw)
        except InvalidOperation:
            print("Invalid amount, please try again.")
            continue
        if value.is_finite():
            return value
        print("Invalid amount, please try again.")


def prompt_private_key() -> str | None:
    value = getpass.getpass("Enter your private key (input hidden): ").strip()
    return value or None


def _confirm(prompt: str = "Proceed? [y/N]: ") -> bool:
    return input(prompt).strip().lower().startswith("y")


def _should_debug() -> bool:
    return bool(int(os.environ.get("MSIG_DEBUG", "0") or 0))


def _confirm_bypass(address: str, response: dict[str, Any]) -> bool:
    print(f"Debug: validateaddress output: {json.dumps(response, default=str)}")
    return _confirm(f"Warning: P2SH address {address} is invalid according to the node. Proceed anyway? [y/N]: ")


def _confirm_mismatch(field: str, file_value: str | None, expected: str) -> bool:
    print(f"Warning: session {field} is {file_value} but the configured value is {expected}.")
    return _confirm("Use the session file anyway? [y/N]: ")


def _confirm_summary(summary: TransactionSummary) -> bool:
    print("About to broadcast:")
    for line in summary.lines():
        print(f"  {line}")
    return input("Type BROADCAST to confirm: ").strip() == "BROADCAST"


def _print_error(exc: Exception) -> None:
    if _should_debug():
        traceback.print_exc()
    print(f"Error: {exc}")
    if isinstance(exc, RPCError):
        hint = format_rpc_hint(exc)
        if hint:
            print(f"Hint: {hint}")


def _run_action(action: Callable[[MultisigWorkflow], None], workflow: MultisigWorkflow) -> None:
    """Run one menu action; any failure is reported and control returns to the menu."""

    try:
        action(workflow)
    except KeyboardInterrupt:
        print("\nCancelled.")
    except (MultisigError, ConfigurationError, RPCError, RPCTransportError, OSError, ValueError) as exc:
        _print_error(exc)


def _print_signing_result(result: SigningResult, session: SigningSession, path: Path) -> None:
    if result.complete:
        print(f"Transaction fully signed with {result.signature_count} signatures!")
        print(f"Signed transaction hex: {result.hex}")
        print(f"Session saved to {path}. Use 'Broadcast Final Transaction' to send it.")
        return
    print(
        f"Partial signature complete. {result.signature_count} of {result.required_signatures} signatures provided."
    )
    print(f"Partially signed transaction hex: {result.hex}")
    print(f"Inputs for signing: {json.dumps([i.to_rpc() for i in session.inputs])}")
    print(f"Session saved to {path}. Share this file (or the hex and inputs) with the next signer.")
    if result.missing_signatures:
        print(f"Warning: Still need {result.missing_signatures} more signature(s) to complete!")
    if result.guard_degraded:
        print("Note: the duplicate-signature check could not derive your public key and was skipped.")


def _ensure_private_key(workflow: MultisigWorkflow) -> str | None:
    key = workflow.config.private_key_source.resolve(allow_prompt=False)
    if key:
        print("Using configured private key.")
        return key
    return prompt_private_key()


def handle_create_send(workflow: MultisigWorkflow) -> None:
    print("\n=== Create Send Transaction ===")
    redeem = workflow.prepare()
    print(f"Using P2SH address: {redeem.p2sh_address}")
    print(f"Redeem script is {redeem.describe()}. {redeem.required_signatures} signatures required.")
    amount = prompt_decimal("Enter amount to send")
    if amount is None:
        print("No amount entered.")
        return
    destination = prompt_str("Enter destination address")
    key = _ensure_private_key(workflow)

    outcome = workflow.create_send(destination, amount, key)
    print(
        f"Selected {len(outcome.built.inputs)} UTXOs ({outcome.built.selected_amount:.8f}), "
        f"fee {outcome.built.fee:.8f} at rate {outcome.fee.rate} ({outcome.fee.source}), "
        f"change {outcome.built.change:.8f}"
    )
    _print_signing_result(outcome.result, outcome.session, outcome.path)


def _prompt_session_or_hex(workflow: MultisigWorkflow) -> SigningSession | str:
    sessions = workflow.store.list_sessions(workflow.config.p2sh_address)
    if sessions:
        print("Recent session files:")
        for path in sessions[-5:]:
            print(f"  {path}")
    raw = prompt_str("Enter a session file path or the transaction hex")
    candidate = Path(raw).expanduser()
    if raw.endswith(".json") or candidate.exists():
        return workflow.load_session(candidate)
    return raw


def _read_signing_session(workflow: MultisigWorkflow) -> SigningSession:
    target = _prompt_session_or_hex(workflow)
    if isinstance(target, SigningSession):
        return target
    inputs_raw = prompt_str('Enter the inputs JSON (e.g. [{"txid":..., "vout":..., "scriptPubKey":..., "redeemScript":...}])')
    try:
        parsed = json.loads(inputs_raw)
    except ValueError as exc:
        raise DecodeError(f"Inputs are not valid JSON: {exc}") from exc
    if not isinstance(parsed, list):
        raise DecodeError("Inputs JSON must be a list")
    inputs: List[TransactionInput] = [TransactionInput.from_dict(item) for item in parsed]
    return workflow.session_from_hex(target, inputs)


def _confirm_override(signatures: int, required: int | None) -> bool:
    print(f"Warning: transaction is not fully signed ({signatures} of {required}).")
    if input("Type OVERRIDE to broadcast anyway: ").strip() == "OVERRIDE":
        return True
    print("Cancelled.")
    return False


def handle_sign_partial(workflow: MultisigWorkflow) -> None:
    print("\n=== Sign Partial Transaction ===")
    redeem = workflow.prepare()
    print(f"This is a {redeem.describe()}. {redeem.required_signatures} signatures required.")
    session = _read_signing_session(workflow)
    if session.complete:
        print("This session is already fully signed; broadcast it instead.")
        return
    print(f"Signatures so far: {session.signatures} of {session.required_signatures}")
    key = _ensure_private_key(workflow)
    outcome = workflow.sign(session, key)
    _print_signing_result(outcome.result, outcome.session, outcome.path)


def handle_broadcast(workflow: MultisigWorkflow) -> None:
    print("\n=== Broadcast Final Transaction ===")
    target = _prompt_session_or_hex(workflow)
    allow_incomplete = False
    if isinstance(target, SigningSession):
        if not target.complete:
            if not _confirm_override(target.signatures, target.required_signatures):
                return
            allow_incomplete = True
        txid = workflow.broadcast_session(target, allow_incomplete=allow_incomplete, confirm=_confirm_summary)
    else:
        signatures, required = workflow.hex_signatures(target)
        if required is not None and signatures < required:
            if not _confirm_override(signatures, required):
                return
            allow_incomplete = True
        txid = workflow.broadcast_hex(target, allow_incomplete=allow_incomplete, confirm=_confirm_summary)
    print(f"Success! Transaction ID: {txid}")
    print("Check status with gettransaction from the status menu or the node client.")


def handle_consolidate(workflow: MultisigWorkflow) -> None:
    print("\n=== Consolidate UTXOs ===")
    redeem = workflow.prepare()
    print(f"Using P2SH address: {redeem.p2sh_address}")
    utxos = workflow.fetch_utxos()
    batches = plan_batches(utxos, workflow.config.batch_size)
    if workflow.config.max_batches is not None:
        batches = batches[: workflow.config.max_batches]
    total = sum((u.amount for u in utxos), Decimal("0"))
    print(f"Total available balance: {total:.8f} across {len(utxos)} UTXOs")
    print(f"Planned {len(batches)} batch(es) of up to {workflow.config.batch_size} UTXOs")
    if len(utxos) < 2:
        print(f"Only {len(utxos)} UTXO found. Need at least 2 to consolidate.")
        return
    if not _confirm():
        print("Cancelled.")
        return
    key = _ensure_private_key(workflow)
    report = workflow.consolidate(key, progress=print)
    print(
        f"Consolidated {len(report.outcomes)} batch(es), {report.consolidated_amount:.8f} in total."
    )
    complete = [o for o in report.outcomes if o.result.complete]
    if complete:
        print(f"{len(complete)} batch(es) are fully signed and ready to broadcast.")
    if report.error is not None:
        print(f"Stopped at batch {report.failed_batch}: {report.error}")


def _render_menu(config: MultisigConfig) -> None:
    balance, utxo_count = status_lines(config.status_path)
    print(
        textwrap.dedent(
            f"""
            === Multisig P2SH Transaction Status ===
            P2SH Address: {config.p2sh_address or 'N/A'}
            Balance: {balance}
            Available UTXOs: {utxo_count}
            === Multisig P2SH Transaction Menu ===
            1. Create Send Transaction
            2. Sign Partial Transaction
            3. Broadcast Final Transaction
            4. Consolidate UTXOs
            5. Exit
            """
        )
    )


def build_workflow(config: MultisigConfig | None = None) -> MultisigWorkflow:
    if config is None:
        config = load_multisig_config()
    if config.node is None:
        config.node = build_node_client(load_rpc_config())
    if config.private_key_source.prompt is None:
        config.private_key_source.prompt = prompt_private_key
    return MultisigWorkflow(config, confirm_bypass=_confirm_bypass, confirm_mismatch=_confirm_mismatch)


def console_main(config: MultisigConfig | None = None, *, background_status: bool = True) -> None:
    """Launch the interactive menu."""

    try:
        workflow = build_workflow(config)
    except (ConfigurationError, ValueError) as exc:
        print(f"Configuration error: {exc}")
        return
    config = workflow.config

    if background_status:
        StatusMonitor(
            workflow.rpc,
            config.p2sh_address,
            config.status_path,
            min_confirmations=config.min_confirmations,
            max_confirmations=config.max_confirmations,
            page_size=config.page_size,
            max_pages=config.max_pages,
        ).start()

    actions = {
        "1": handle_create_send,
        "2": handle_sign_partial,
        "3": handle_broadcast,
        "4": handle_consolidate,
    }
    while True:
        _render_menu(config)
        selection = input("Select an option (1-5): ").strip().lower()
        if selection in {"5", "q", "quit"}:
            print("Exiting...")
            clear_status(config.status_path)
            return
        action = actions.get(selection)
        if action is None:
            print("Invalid option. Please select 1, 2, 3, 4, or 5.")
            continue
        _run_action(action, workflow)


if __name__ == "__main__":
    console_main()
