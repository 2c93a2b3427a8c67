"""Raw transaction construction for P2SH multisig spends."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Sequence

from .errors import BuildError, InsufficientFundsError, ValidationError
from .fees import calculate_fee
from .models import (
    UTXO,
    RedeemScriptInfo,
    TransactionInput,
    format_amount,
    quantize_amount,
    to_decimal,
)
from .rpc_client import RPCError, RPCTransportError, format_rpc_hint

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class InputSelection:
    utxos: List[UTXO]
    selected_amount: Decimal
    fee: Decimal
    change: Decimal


@dataclass
class BuiltTransaction:
    """An unsigned raw transaction plus the accounting that produced it."""

    raw_hex: str
    inputs: List[TransactionInput]
    outputs: Dict[str, Decimal]
    fee: Decimal
    selected_amount: Decimal
    change: Decimal = ZERO
    kind: str = "send"
    utxos: List[UTXO] = field(default_factory=list)


def select_inputs(candidates: Sequence[UTXO], requested: Decimal, fee_rate: Decimal) -> InputSelection:
    """Greedy largest-first selection over an amount-descending candidate list.

    Returns the shortest prefix whose total covers ``requested`` plus the fee
    recomputed for that many inputs.
    """

    requested = to_decimal(requested)
    selected: List[UTXO] = []
    total = ZERO
    fee = calculate_fee(fee_rate, 1)

    for utxo in candidates:
        selected.append(utxo)
        total += utxo.amount
        fee = calculate_fee(fee_rate, len(selected))
        if total >= requested + fee:
            break
    else:
        available = total
        needed = requested + fee
        logger.warning(
            "Insufficient funds: available=%s requested=%s fee=%s", available, requested, fee
        )
        raise InsufficientFundsError(
            f"Insufficient funds. Available: {format_amount(available)}, "
            f"Requested: {format_amount(requested)}, Fee: {format_amount(fee)}",
            available=available,
            needed=needed,
        )

    change = total - requested - fee
    if change < 0:
        raise InsufficientFundsError(
            f"Insufficient funds selected for amount + fee. Selected: {format_amount(total)}, "
            f"Requested: {format_amount(requested)}, Fee: {format_amount(fee)}",
            available=total,
            needed=requested + fee,
        )
    return InputSelection(utxos=selected, selected_amount=total, fee=fee, change=change)


class TransactionBuilder:
    """Build unsigned spends from a multisig P2SH address via ``createrawtransaction``."""

    def __init__(self, rpc: Any, redeem: RedeemScriptInfo) -> None:
        self.rpc = rpc
        self.redeem = redeem

    @property
    def p2sh_address(self) -> str:
        return self.redeem.p2sh_address

    def build_send(
        self,
        candidates: Sequence[UTXO],
        destination: str,
        amount: Decimal,
        fee_rate: Decimal,
    ) -> BuiltTransaction:
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError(f"Amount to send must be positive, got {amount}")
        if quantize_amount(amount) != amount:
            raise ValidationError(f"Amount {amount} has more than 8 decimal places")
        if not destination:
            raise ValidationError("No destination address provided")
        if not candidates:
            raise InsufficientFundsError(f"No unspent outputs found for {self.p2sh_address}")

        selection = select_inputs(candidates, amount, fee_rate)
        logger.info(
            "Selected %d of %d UTXOs (%s) to send %s with fee %s",
            len(selection.utxos),
            len(candidates),
            selection.selected_amount,
            amount,
            selection.fee,
        )

        outputs: Dict[str, Decimal] = {destination: amount}
        change = quantize_amount(selection.change)
        if change > 0:
            outputs[self.p2sh_address] = outputs.get(self.p2sh_address, ZERO) + change
        return self._create(selection.utxos, outputs, selection.fee, selection.selected_amount, change, "send")

    def build_consolidation(self, utxos: Sequence[UTXO], fee_rate: Decimal) -> BuiltTransaction:
        """Spend every UTXO in ``utxos`` back to the P2SH address minus the fee."""

        if len(utxos) < 2:
            raise ValidationError(f"Only {len(utxos)} UTXO found. Need at least 2 to consolidate.")
        total = sum((u.amount for u in utxos), ZERO)
        fee = calculate_fee(fee_rate, len(utxos))
        amount = quantize_amount(total - fee)
        if amount <= 0:
            raise InsufficientFundsError(
                f"Insufficient funds for consolidation after fee. Available: {format_amount(total)}, "
                f"Fee: {format_amount(fee)}",
                available=total,
                needed=fee,
            )
        logger.info("Consolidating %d UTXOs (%s) into %s after fee %s", len(utxos), total, amount, fee)
        return self._create(list(utxos), {self.p2sh_address: amount}, fee, total, ZERO, "consolidate")

    def _create(
        self,
        utxos: List[UTXO],
        outputs: Dict[str, Decimal],
        fee: Decimal,
        selected_amount: Decimal,
        change: Decimal,
        kind: str,
    ) -> BuiltTransaction:
        inputs = [TransactionInput.from_utxo(u, self.redeem.redeem_script) for u in utxos]
        missing = [f"{i.txid}:{i.vout}" for i in inputs if not i.script_pub_key]
        if missing:
            raise BuildError(f"Node did not report scriptPubKey for inputs: {', '.join(missing[:5])}")
        try:
            raw_hex = self.rpc.createrawtransaction([i.outpoint_rpc() for i in inputs], outputs)
        except RPCError as exc:
            hint = format_rpc_hint(exc)
            raise BuildError(
                f"Failed to create raw transaction: {exc}" + (f"\nHint: {hint}" if hint else "")
            ) from exc
        except RPCTransportError as exc:
            raise BuildError(f"Failed to create raw transaction: {exc}") from exc
        if not raw_hex or not isinstance(raw_hex, str):
            raise BuildError("Failed to create raw transaction: node returned no hex")

        return BuiltTransaction(
            raw_hex=raw_hex,
            inputs=inputs,
            outputs=outputs,
            fee=fee,
            selected_amount=selected_amount,
            change=change,
            kind=kind,
            utxos=utxos,
        )
