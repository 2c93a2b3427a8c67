"""Broadcast fully signed transactions and record their txids."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Callable, Dict, List, Tuple

from .errors import BroadcastError, DecodeError, FetchError
from .models import to_decimal
from .rpc_client import RPCError, RPCTransportError, format_rpc_hint
from .session import SessionStore, SigningSession
from .signing import count_signatures
from .validation import normalize_hex

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[["TransactionSummary"], bool]


@dataclass
class TransactionSummary:
    txid: str | None
    outputs: List[Tuple[str, Decimal]] = field(default_factory=list)
    input_count: int = 0
    signature_count: int = 0

    @property
    def total_out(self) -> Decimal:
        return sum((value for _, value in self.outputs), Decimal("0"))

    def lines(self) -> List[str]:
        rows = [f"Inputs: {self.input_count} (signatures seen: {self.signature_count})"]
        for address, value in self.outputs:
            rows.append(f"  -> {address}: {value:.8f}")
        rows.append(f"Total out: {self.total_out:.8f}")
        return rows


def _output_address(script_pub_key: Dict[str, Any]) -> str:
    if script_pub_key.get("address"):
        return str(script_pub_key["address"])
    addresses = script_pub_key.get("addresses") or []
    if addresses:
        return ", ".join(str(a) for a in addresses)
    return f"<{script_pub_key.get('type', 'nonstandard')}>"


class Broadcaster:
    """Decode, confirm and submit signed transactions."""

    def __init__(self, rpc: Any) -> None:
        self.rpc = rpc

    def summarize(self, signed_hex: str, redeem_script: str | None = None) -> TransactionSummary:
        try:
            decoded = self.rpc.decoderawtransaction(signed_hex)
        except (RPCError, RPCTransportError) as exc:
            raise DecodeError(f"Failed to decode transaction: {exc}") from exc
        if not isinstance(decoded, dict):
            raise DecodeError("Failed to decode transaction: node returned nothing")
        outputs = [
            (_output_address(vout.get("scriptPubKey") or {}), to_decimal(vout.get("value", 0)))
            for vout in decoded.get("vout", []) or []
        ]
        return TransactionSummary(
            txid=decoded.get("txid"),
            outputs=outputs,
            input_count=len(decoded.get("vin", []) or []),
            signature_count=count_signatures(decoded, redeem_script),
        )

    def broadcast(
        self,
        signed_hex: str,
        *,
        complete: bool | None = None,
        allow_incomplete: bool = False,
        confirm: ConfirmCallback | None = None,
        required_signatures: int | None = None,
        redeem_script: str | None = None,
    ) -> str:
        """Submit ``signed_hex`` and return the node's txid.

        ``complete`` is the node's flag from the last signing round. When it is
        unknown and ``required_signatures`` is given, the heuristic signature
        count stands in for it.
        """

        try:
            signed_hex = normalize_hex(signed_hex, what="Transaction")
        except DecodeError as exc:
            raise BroadcastError(f"No valid transaction hex provided: {exc}") from exc

        summary = self.summarize(signed_hex, redeem_script)
        if complete is None and required_signatures is not None:
            complete = summary.signature_count >= required_signatures
        if complete is False and not allow_incomplete:
            raise BroadcastError(
                "Transaction is not fully signed; collect the remaining signatures or explicitly override"
            )
        if complete is False:
            logger.warning("Broadcasting a transaction not known to be fully signed (override given)")

        if confirm is not None and not confirm(summary):
            raise BroadcastError("Broadcast cancelled by operator")

        try:
            txid = self.rpc.sendrawtransaction(signed_hex)
        except RPCError as exc:
            hint = format_rpc_hint(exc)
            raise BroadcastError(
                f"Failed to send transaction: {exc.message}" + (f"\nHint: {hint}" if hint else ""),
                node_message=exc.message,
            ) from exc
        except RPCTransportError as exc:
            raise BroadcastError(f"Failed to send transaction: {exc}", node_message=str(exc)) from exc
        if not txid:
            raise BroadcastError("Node returned no transaction id")
        logger.info("Broadcasted transaction %s", txid)
        return str(txid)

    def broadcast_session(
        self,
        session: SigningSession,
        store: SessionStore | None = None,
        *,
        allow_incomplete: bool = False,
        confirm: ConfirmCallback | None = None,
    ) -> tuple[str, SigningSession]:
        """Broadcast a session's hex and persist the resulting txid alongside it."""

        if session.txid:
            raise BroadcastError(f"Session was already broadcast as {session.txid}")
        txid = self.broadcast(
            session.signed_hex,
            complete=session.complete,
            allow_incomplete=allow_incomplete,
            confirm=confirm,
            redeem_script=session.redeem_script,
        )
        updated = replace(session, txid=txid)
        if store is not None:
            store.save(updated)
        return txid, updated

    def transaction_status(self, txid: str) -> Dict[str, Any]:
        try:
            return self.rpc.gettransaction(txid)
        except (RPCError, RPCTransportError) as exc:
            raise FetchError(f"gettransaction failed for {txid}: {exc}") from exc
