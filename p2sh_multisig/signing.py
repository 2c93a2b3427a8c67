"""Partial signing of multisig transactions, one private key per round.

The node performs the actual signing; this module decides whether a round
should happen at all, interprets the node's answer and keeps the signature
bookkeeping that is persisted between cosigners.

Signature counting is a heuristic: DER-shaped pushes are counted in each
input's unlock script. The node's ``complete`` flag is the only authority on
whether the transaction can be broadcast.
"""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Sequence

from .errors import DecodeError, SigningError, ValidationError
from .models import RedeemScriptInfo, TransactionInput
from .rpc_client import METHOD_NOT_FOUND, RPCError, RPCTransportError, format_rpc_hint
from .session import SigningSession

logger = logging.getLogger(__name__)

# 60-144 hex characters, DER sequences start with 0x30.
_DER_SIGNATURE_RE = re.compile(r"^30[0-9a-fA-F]{58,142}$")
GUARD_LABEL_PREFIX = "p2sh-multisig-guard"


class SigningState(Enum):
    UNSIGNED = "unsigned"
    PARTIALLY_SIGNED = "partially_signed"
    COMPLETE = "complete"


def state_for(signature_count: int, complete: bool) -> SigningState:
    if complete:
        return SigningState.COMPLETE
    if signature_count > 0:
        return SigningState.PARTIALLY_SIGNED
    return SigningState.UNSIGNED


def _unlock_tokens(vin: Dict[str, Any], redeem_script: str | None) -> List[str]:
    script_sig = vin.get("scriptSig") or {}
    tokens = str(script_sig.get("asm", "")).split()
    redeem = redeem_script.lower() if redeem_script else None
    # "3045...[ALL]" in newer nodes, bare hex in older ones
    cleaned = [token.split("[", 1)[0].lower() for token in tokens]
    return [token for token in cleaned if token != redeem]


def signatures_per_input(decoded: Dict[str, Any], redeem_script: str | None = None) -> List[int]:
    return [
        sum(1 for token in _unlock_tokens(vin, redeem_script) if _DER_SIGNATURE_RE.match(token))
        for vin in decoded.get("vin", []) or []
    ]


def count_signatures(decoded: Dict[str, Any], redeem_script: str | None = None) -> int:
    """Count DER-signature-shaped pushes across every input's unlock script."""

    return sum(signatures_per_input(decoded, redeem_script))


def sign_raw(rpc: Any, raw_hex: str, inputs: Sequence[TransactionInput], private_key: str) -> Dict[str, Any]:
    """Ask the node to sign with a single key, using whichever signing RPC it has."""

    prevtxs = [i.to_rpc() for i in inputs]
    try:
        return rpc.signrawtransaction(raw_hex, prevtxs, [private_key])
    except RPCError as exc:
        if exc.code != METHOD_NOT_FOUND:
            raise
    logger.debug("signrawtransaction unavailable; using signrawtransactionwithkey")
    return rpc.signrawtransactionwithkey(raw_hex, [private_key], prevtxs)


def _key_fingerprint(private_key: str) -> str:
    return hashlib.sha256(private_key.encode("utf-8")).hexdigest()


class PublicKeyResolver:
    """Derive the public key for a WIF private key using the node's wallet.

    The key is imported without rescan under a throwaway label, then the
    label's address is looked up to read back its public key. Any failure
    yields ``None``; callers must treat that as "unknown", never as "absent".
    """

    def __init__(self, rpc: Any, known: Dict[str, str] | None = None) -> None:
        self.rpc = rpc
        self._cache: Dict[str, str | None] = {}
        for private_key, public_key in (known or {}).items():
            self._cache[_key_fingerprint(private_key)] = public_key.lower()

    def resolve(self, private_key: str) -> str | None:
        fingerprint = _key_fingerprint(private_key)
        if fingerprint in self._cache:
            return self._cache[fingerprint]
        try:
            public_key = self._derive(private_key)
        except (RPCError, RPCTransportError) as exc:
            logger.info("Public key derivation via node failed: %s", exc)
            public_key = None
        self._cache[fingerprint] = public_key
        return public_key

    def _derive(self, private_key: str) -> str | None:
        label = f"{GUARD_LABEL_PREFIX}-{uuid.uuid4().hex[:12]}"
        self.rpc.importprivkey(private_key, label, False)
        for address in self._addresses_for(label):
            public_key = self._pubkey_for(address)
            if public_key:
                return public_key.lower()
        return None

    def _addresses_for(self, label: str) -> List[str]:
        try:
            return list((self.rpc.getaddressesbylabel(label) or {}).keys())
        except RPCError as exc:
            if exc.code != METHOD_NOT_FOUND:
                raise
        return list(self.rpc.getaddressesbyaccount(label) or [])

    def _pubkey_for(self, address: str) -> str | None:
        try:
            info = self.rpc.getaddressinfo(address) or {}
        except RPCError as exc:
            if exc.code != METHOD_NOT_FOUND:
                raise
            info = self.rpc.validateaddress(address) or {}
        return info.get("pubkey")


@dataclass
class GuardVerdict:
    already_signed: bool
    existing_signatures: int
    public_key: str | None = None
    degraded: bool = False
    method: str | None = None
    probe: Dict[str, Any] | None = None


class DuplicateSignatureGuard:
    """Best-effort check that a key has not already signed a transaction."""

    def __init__(self, rpc: Any, resolver: PublicKeyResolver | None = None) -> None:
        self.rpc = rpc
        self.resolver = resolver or PublicKeyResolver(rpc)

    def _decode(self, raw_hex: str) -> Dict[str, Any]:
        try:
            decoded = self.rpc.decoderawtransaction(raw_hex)
        except (RPCError, RPCTransportError) as exc:
            raise DecodeError(f"Failed to decode transaction: {exc}") from exc
        if not isinstance(decoded, dict):
            raise DecodeError("Failed to decode transaction: node returned nothing")
        return decoded

    def check(
        self,
        raw_hex: str,
        private_key: str,
        redeem_script: str,
        inputs: Sequence[TransactionInput] | None = None,
    ) -> GuardVerdict:
        decoded = self._decode(raw_hex)
        existing = count_signatures(decoded, redeem_script)

        public_key = self.resolver.resolve(private_key)
        if public_key is None:
            logger.warning(
                "Could not determine the public key for this private key; "
                "duplicate check skipped (%d signature(s) already present)",
                existing,
            )
            return GuardVerdict(already_signed=False, existing_signatures=existing, degraded=True)

        if public_key not in redeem_script.lower():
            raise SigningError(f"Public key {public_key} is not part of the redeem script")

        for vin in decoded.get("vin", []) or []:
            if public_key in _unlock_tokens(vin, redeem_script):
                return GuardVerdict(True, existing, public_key=public_key, method="scan")

        if existing and inputs:
            try:
                probe = sign_raw(self.rpc, raw_hex, inputs, private_key)
            except (RPCError, RPCTransportError) as exc:
                raise SigningError(f"Failed to sign transaction: {exc}") from exc
            if isinstance(probe, dict) and probe.get("hex") == raw_hex:
                return GuardVerdict(True, existing, public_key=public_key, method="probe")
            return GuardVerdict(False, existing, public_key=public_key, method="probe", probe=probe)

        return GuardVerdict(False, existing, public_key=public_key)

    def already_signed(
        self,
        raw_hex: str,
        private_key: str,
        redeem_script: str,
        inputs: Sequence[TransactionInput] | None = None,
    ) -> bool:
        return self.check(raw_hex, private_key, redeem_script, inputs).already_signed


@dataclass
class SigningResult:
    hex: str
    complete: bool
    signature_count: int
    required_signatures: int
    state: SigningState
    public_key: str | None = None
    guard_degraded: bool = False
    least_signed_input: int = 0

    @property
    def missing_signatures(self) -> int:
        """Signatures still needed on the least-signed input; at least 1 until the node says complete."""

        if self.complete:
            return 0
        return max(self.required_signatures - self.least_signed_input, 1)


class PartialSigner:
    """Apply one cosigner's signature per call."""

    def __init__(self, rpc: Any, guard: DuplicateSignatureGuard | None = None) -> None:
        self.rpc = rpc
        self.guard = guard or DuplicateSignatureGuard(rpc)

    def sign(
        self,
        raw_hex: str,
        inputs: Sequence[TransactionInput],
        private_key: str,
        redeem: RedeemScriptInfo,
    ) -> SigningResult:
        if not private_key:
            raise SigningError("No private key provided")
        if not inputs:
            raise SigningError("No inputs supplied for signing")

        verdict = self.guard.check(raw_hex, private_key, redeem.redeem_script, inputs)
        if verdict.already_signed:
            raise SigningError(
                f"This key has already signed the transaction ({verdict.existing_signatures} of "
                f"{redeem.required_signatures} signatures present); signing round aborted"
            )

        result = verdict.probe
        if result is None:
            try:
                result = sign_raw(self.rpc, raw_hex, inputs, private_key)
            except (RPCError, RPCTransportError) as exc:
                hint = format_rpc_hint(exc) if isinstance(exc, RPCError) else None
                raise SigningError(
                    f"Failed to sign transaction: {exc}" + (f"\nHint: {hint}" if hint else "")
                ) from exc
        if not isinstance(result, dict) or not result.get("hex"):
            raise SigningError("Failed to sign transaction. Check private key, transaction hex, or inputs.")

        signed_hex = str(result["hex"])
        complete = bool(result.get("complete"))
        for error in result.get("errors") or []:
            logger.debug("Signer note for %s:%s: %s", error.get("txid"), error.get("vout"), error.get("error"))

        if signed_hex == raw_hex and not complete:
            raise SigningError(
                "The node added no signature; the key may have signed already or is not a cosigner"
            )

        try:
            decoded = self.rpc.decoderawtransaction(signed_hex)
        except (RPCError, RPCTransportError) as exc:
            raise DecodeError(f"Failed to decode signed transaction: {exc}") from exc
        if not isinstance(decoded, dict):
            raise DecodeError("Failed to decode signed transaction")
        per_input = signatures_per_input(decoded, redeem.redeem_script)
        count = sum(per_input)

        state = state_for(count, complete)
        if complete:
            logger.info("Transaction fully signed with %d signatures", count)
        else:
            logger.info("Partial signature applied: %d of %d signatures", count, redeem.required_signatures)
        return SigningResult(
            hex=signed_hex,
            complete=complete,
            signature_count=count,
            required_signatures=redeem.required_signatures,
            state=state,
            public_key=verdict.public_key,
            guard_degraded=verdict.degraded,
            least_signed_input=min(per_input, default=0),
        )

    def sign_session(
        self, session: SigningSession, private_key: str, redeem: RedeemScriptInfo
    ) -> tuple[SigningResult, SigningSession]:
        """Sign a persisted session, returning the result and the updated session."""

        if session.complete:
            raise SigningError("Session is already fully signed; broadcast it instead of signing again")
        if session.redeem_script.lower() != redeem.redeem_script.lower():
            raise ValidationError("Session redeem script does not match the configured redeem script")
        result = self.sign(session.signed_hex, session.inputs, private_key, redeem)
        updated = session.with_signature(
            result.hex, result.complete, result.signature_count, signer=result.public_key
        )
        return result, updated
