"""End-to-end multisig actions shared by the console and the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, List, Sequence

from .batching import BatchCoordinator, ConsolidationReport, ProgressCallback
from .broadcast import Broadcaster, ConfirmCallback
from .config import MultisigConfig
from .errors import SigningError, ValidationError
from .fees import FeeEstimate, estimate_fee_rate
from .models import UTXO, RedeemScriptInfo, TransactionInput
from .session import MismatchCallback, SessionStore, SigningSession
from .signing import DuplicateSignatureGuard, PartialSigner, PublicKeyResolver, SigningResult
from .tx_builder import BuiltTransaction, TransactionBuilder
from .utxos import UTXOFetcher
from .validation import BypassCallback, decode_redeem_script, normalize_hex, validate_address

logger = logging.getLogger(__name__)


@dataclass
class SendOutcome:
    built: BuiltTransaction
    fee: FeeEstimate
    result: SigningResult
    session: SigningSession
    path: Path


@dataclass
class SignOutcome:
    result: SigningResult
    session: SigningSession
    path: Path


class MultisigWorkflow:
    """Wire the fetcher, builder, signer, store and broadcaster to one configuration."""

    def __init__(
        self,
        config: MultisigConfig,
        *,
        confirm_bypass: BypassCallback | None = None,
        confirm_mismatch: MismatchCallback | None = None,
        known_public_keys: dict[str, str] | None = None,
    ) -> None:
        if config.node is None:
            raise ValueError("MultisigConfig.node must be set to a node client")
        self.config = config
        self.rpc: Any = config.node
        self.confirm_bypass = confirm_bypass
        self.confirm_mismatch = confirm_mismatch
        self.fetcher = UTXOFetcher(self.rpc)
        self.store = SessionStore(config.session_dir)
        self.signer = PartialSigner(
            self.rpc, DuplicateSignatureGuard(self.rpc, PublicKeyResolver(self.rpc, known_public_keys))
        )
        self.broadcaster = Broadcaster(self.rpc)
        self._redeem: RedeemScriptInfo | None = None

    # Setup ---------------------------------------------------------------

    def prepare(self) -> RedeemScriptInfo:
        """Validate the P2SH address and decode the redeem script (cached)."""

        if self._redeem is not None:
            return self._redeem
        if not self.config.p2sh_address:
            raise ValidationError("No P2SH address configured")
        if not self.config.redeem_script:
            raise ValidationError("No redeem script configured")
        validate_address(self.rpc, self.config.p2sh_address, self.confirm_bypass)
        self._redeem = decode_redeem_script(self.rpc, self.config.redeem_script, self.config.p2sh_address)
        return self._redeem

    def fetch_utxos(self) -> List[UTXO]:
        return self.fetcher.fetch(self.config.p2sh_address or "", **self._fetch_kwargs())

    def _fetch_kwargs(self) -> dict:
        return {
            "min_confirmations": self.config.min_confirmations,
            "max_confirmations": self.config.max_confirmations,
            "page_size": self.config.page_size,
            "max_pages": self.config.max_pages,
        }

    def fee_rate(self) -> FeeEstimate:
        return estimate_fee_rate(self.rpc, self.config.confirmation_target, self.config.fee_default)

    def _builder(self) -> TransactionBuilder:
        return TransactionBuilder(self.rpc, self.prepare())

    def _require_key(self, private_key: str | None) -> str:
        key = private_key or self.config.resolve_private_key()
        if not key:
            raise SigningError("No private key provided")
        return key

    # Actions -------------------------------------------------------------

    def create_send(self, destination: str, amount: Decimal, private_key: str | None = None) -> SendOutcome:
        """Build a payment from the P2SH address, apply one signature and persist it."""

        redeem = self.prepare()
        key = self._require_key(private_key)
        utxos = self.fetch_utxos()
        fee = self.fee_rate()
        built = self._builder().build_send(utxos, destination, amount, fee.rate)
        session = SigningSession.from_built(built, redeem)
        result, signed = self.signer.sign_session(session, key, redeem)
        path = self.store.save(signed)
        return SendOutcome(built=built, fee=fee, result=result, session=signed, path=path)

    def load_session(self, path: str | Path) -> SigningSession:
        return self.store.load(
            path,
            p2sh_address=self.config.p2sh_address,
            redeem_script=self.config.redeem_script,
            confirm_mismatch=self.confirm_mismatch,
        )

    def session_from_hex(self, signed_hex: str, inputs: Sequence[TransactionInput]) -> SigningSession:
        """Wrap a hex + inputs pair received out of band into an in-memory session."""

        redeem = self.prepare()
        return SigningSession(
            p2sh_address=redeem.p2sh_address,
            redeem_script=redeem.redeem_script,
            inputs=list(inputs),
            signed_hex=normalize_hex(signed_hex, what="Transaction"),
            required_signatures=redeem.required_signatures,
        )

    def sign(self, session: SigningSession, private_key: str | None = None) -> SignOutcome:
        redeem = self.prepare()
        key = self._require_key(private_key)
        result, signed = self.signer.sign_session(session, key, redeem)
        path = self.store.save(signed)
        return SignOutcome(result=result, session=signed, path=path)

    def consolidate(
        self,
        private_key: str | None = None,
        *,
        progress: ProgressCallback | None = None,
    ) -> ConsolidationReport:
        self.prepare()
        key = self._require_key(private_key)
        utxos = self.fetch_utxos()
        if len(utxos) < 2:
            raise ValidationError(f"Only {len(utxos)} UTXO found. Need at least 2 to consolidate.")
        fee = self.fee_rate()
        coordinator = BatchCoordinator(self._builder(), self.signer, self.store, self.fetcher)
        return coordinator.consolidate(
            utxos,
            key,
            fee.rate,
            batch_size=self.config.batch_size,
            max_batches=self.config.max_batches,
            refresh_between_batches=self.config.refresh_between_batches,
            fetch_kwargs=self._fetch_kwargs(),
            progress=progress,
        )

    def broadcast_session(
        self,
        session: SigningSession,
        *,
        allow_incomplete: bool = False,
        confirm: ConfirmCallback | None = None,
    ) -> str:
        store = self.store if session.path is not None else None
        txid, _ = self.broadcaster.broadcast_session(
            session, store, allow_incomplete=allow_incomplete, confirm=confirm
        )
        return txid

    def _requirement(self) -> tuple[int | None, str | None]:
        if self.config.p2sh_address and self.config.redeem_script:
            redeem = self.prepare()
            return redeem.required_signatures, redeem.redeem_script
        return None, self.config.redeem_script

    def hex_signatures(self, signed_hex: str) -> tuple[int, int | None]:
        """Heuristic signature count of raw hex and the number the redeem script requires."""

        required, redeem_script = self._requirement()
        summary = self.broadcaster.summarize(normalize_hex(signed_hex, what="Transaction"), redeem_script)
        return summary.signature_count, required

    def broadcast_hex(
        self,
        signed_hex: str,
        *,
        allow_incomplete: bool = False,
        confirm: ConfirmCallback | None = None,
    ) -> str:
        """Broadcast raw hex; completeness is judged from the heuristic signature count."""

        required, redeem_script = self._requirement()
        return self.broadcaster.broadcast(
            signed_hex,
            allow_incomplete=allow_incomplete,
            confirm=confirm,
            required_signatures=required,
            redeem_script=redeem_script,
        )
