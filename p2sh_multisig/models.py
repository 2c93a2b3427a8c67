"""Domain records shared by the fetcher, builder, signer and persistence layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_DOWN, ROUND_UP, Decimal, InvalidOperation
from typing import Any, Dict, Tuple

from .errors import DecodeError

EIGHT_DP = Decimal("0.00000001")

Outpoint = Tuple[str, int]


def to_decimal(value: Any) -> Decimal:
    """Parse an amount without passing through binary floating point."""

    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount: {value!r}") from exc


def quantize_amount(value: Decimal) -> Decimal:
    """Round an output amount down to 8 decimal places."""

    return value.quantize(EIGHT_DP, rounding=ROUND_DOWN)


def quantize_fee(value: Decimal) -> Decimal:
    """Round a fee up to 8 decimal places so the miner never gets less."""

    return value.quantize(EIGHT_DP, rounding=ROUND_UP)


def format_amount(amount: Decimal) -> str:
    return f"{amount:.8f}"


@dataclass(frozen=True)
class UTXO:
    txid: str
    vout: int
    amount: Decimal
    script_pub_key: str = ""
    address: str | None = None
    confirmations: int | None = None

    @property
    def outpoint(self) -> Outpoint:
        return (self.txid, self.vout)

    @classmethod
    def from_rpc(cls, entry: Dict[str, Any]) -> "UTXO":
        vout = int(entry["vout"])
        if vout < 0:
            raise ValueError(f"negative vout in listunspent entry: {entry}")
        confirmations = entry.get("confirmations")
        return cls(
            txid=str(entry["txid"]),
            vout=vout,
            amount=to_decimal(entry["amount"]),
            script_pub_key=str(entry.get("scriptPubKey") or ""),
            address=entry.get("address"),
            confirmations=int(confirmations) if confirmations is not None else None,
        )


@dataclass(frozen=True)
class RedeemScriptInfo:
    """Decoded multisig redeem script, already checked against the P2SH address."""

    redeem_script: str
    script_type: str
    required_signatures: int
    p2sh_address: str
    public_keys: tuple[str, ...] = ()

    @property
    def total_keys(self) -> int:
        return len(self.public_keys)

    def describe(self) -> str:
        total = self.total_keys or "N"
        return f"{self.required_signatures}-of-{total} multisig"


@dataclass(frozen=True)
class TransactionInput:
    """Signing-time view of a UTXO: outpoint plus the scripts the signer needs."""

    txid: str
    vout: int
    script_pub_key: str
    redeem_script: str

    @classmethod
    def from_utxo(cls, utxo: UTXO, redeem_script: str) -> "TransactionInput":
        return cls(utxo.txid, utxo.vout, utxo.script_pub_key, redeem_script)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionInput":
        try:
            return cls(
                txid=str(data["txid"]),
                vout=int(data["vout"]),
                script_pub_key=str(data.get("scriptPubKey") or data.get("script_pub_key") or ""),
                redeem_script=str(data.get("redeemScript") or data.get("redeem_script") or ""),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise DecodeError(f"Malformed input entry {data!r}: {exc}") from exc

    def to_rpc(self) -> Dict[str, Any]:
        return {
            "txid": self.txid,
            "vout": self.vout,
            "scriptPubKey": self.script_pub_key,
            "redeemScript": self.redeem_script,
        }

    def outpoint_rpc(self) -> Dict[str, Any]:
        return {"txid": self.txid, "vout": self.vout}


@dataclass
class TransactionBatch:
    """A bounded slice of UTXOs destined for exactly one raw transaction."""

    index: int
    utxos: list[UTXO] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.utxos)

    @property
    def total(self) -> Decimal:
        return sum((u.amount for u in self.utxos), Decimal("0"))

    def outpoints(self) -> set[Outpoint]:
        return {u.outpoint for u in self.utxos}
