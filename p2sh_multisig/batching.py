"""Split large UTXO sets into bounded consolidation batches.

Each batch runs build -> sign -> persist on its own. Batches are not atomic as
a group: when batch N fails, sessions already written for earlier batches are
kept and nothing is rolled back. By default every batch is cut from a single
UTXO snapshot; ``refresh_between_batches`` re-queries the node before each
later batch instead.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Callable, List, Sequence

from .errors import MultisigError
from .models import UTXO, Outpoint, RedeemScriptInfo, TransactionBatch
from .session import SessionStore, SigningSession
from .signing import PartialSigner, SigningResult
from .tx_builder import TransactionBuilder
from .utxos import UTXOFetcher

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 200

ProgressCallback = Callable[[str], None]


def plan_batches(utxos: Sequence[UTXO], batch_size: int = DEFAULT_BATCH_SIZE) -> List[TransactionBatch]:
    """Cut ``utxos`` into consecutive slices of at most ``batch_size``."""

    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")
    return [
        TransactionBatch(index=number + 1, utxos=list(utxos[start:start + batch_size]))
        for number, start in enumerate(range(0, len(utxos), batch_size))
    ]


@dataclass
class BatchOutcome:
    batch: TransactionBatch
    session: SigningSession
    result: SigningResult
    path: Path | None = None


@dataclass
class ConsolidationReport:
    planned: int = 0
    outcomes: List[BatchOutcome] = field(default_factory=list)
    skipped: List[TransactionBatch] = field(default_factory=list)
    failed_batch: int | None = None
    error: MultisigError | None = None
    leftover: int = 0
    further_rounds: int = 0

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def consolidated_amount(self) -> Decimal:
        return sum((o.batch.total for o in self.outcomes), Decimal("0"))


class BatchCoordinator:
    """Consolidate a P2SH address's UTXOs one bounded transaction at a time."""

    def __init__(
        self,
        builder: TransactionBuilder,
        signer: PartialSigner,
        store: SessionStore,
        fetcher: UTXOFetcher | None = None,
    ) -> None:
        self.builder = builder
        self.signer = signer
        self.store = store
        self.fetcher = fetcher

    @property
    def redeem(self) -> RedeemScriptInfo:
        return self.builder.redeem

    def consolidate(
        self,
        utxos: Sequence[UTXO],
        private_key: str,
        fee_rate: Decimal,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_batches: int | None = None,
        refresh_between_batches: bool = False,
        fetch_kwargs: dict | None = None,
        progress: ProgressCallback | None = None,
    ) -> ConsolidationReport:
        emit = progress or (lambda _message: None)
        batches = plan_batches(utxos, batch_size)
        if max_batches is not None:
            batches = batches[:max_batches]
        report = ConsolidationReport(planned=len(batches))
        assigned: set[Outpoint] = set()
        pool_size = len(utxos)

        for position, batch in enumerate(batches):
            if refresh_between_batches and position > 0:
                try:
                    batch, pool_size = self._refreshed_batch(batch.index, assigned, batch_size, fetch_kwargs or {})
                except MultisigError as exc:
                    logger.error("Refreshing UTXOs before batch %d failed: %s", batch.index, exc)
                    emit(f"Refreshing UTXOs failed: {exc}. Earlier batches are kept; stopping.")
                    report.failed_batch = batch.index
                    report.error = exc
                    break
                if batch is None:
                    emit("No unassigned UTXOs remain after refresh; stopping early.")
                    break
            assigned |= batch.outpoints()

            if batch.size < 2:
                logger.info("Skipping batch %d with a single UTXO", batch.index)
                report.skipped.append(batch)
                continue

            emit(f"Batch {batch.index}/{report.planned}: {batch.size} UTXOs totalling {batch.total:.8f}")
            try:
                outcome = self._run_batch(batch, private_key, fee_rate)
            except MultisigError as exc:
                logger.error("Batch %d failed: %s", batch.index, exc)
                emit(f"Batch {batch.index} failed: {exc}. Earlier batches are kept; stopping.")
                report.failed_batch = batch.index
                report.error = exc
                break
            report.outcomes.append(outcome)
            emit(
                f"Batch {batch.index} saved to {outcome.path} "
                f"({outcome.result.signature_count} of {outcome.result.required_signatures} signatures)"
            )

        consumed = sum(o.batch.size for o in report.outcomes)
        report.leftover = max(pool_size - consumed, 0)
        report.further_rounds = math.ceil(report.leftover / batch_size) if report.leftover else 0
        if report.leftover:
            emit(
                f"{report.leftover} UTXOs left unconsolidated; about {report.further_rounds} more round(s) needed."
            )
        return report

    def _run_batch(self, batch: TransactionBatch, private_key: str, fee_rate: Decimal) -> BatchOutcome:
        built = self.builder.build_consolidation(batch.utxos, fee_rate)
        session = SigningSession.from_built(built, self.redeem, batch=batch.index)
        result, signed = self.signer.sign_session(session, private_key, self.redeem)
        path = self.store.save(signed)
        return BatchOutcome(batch=batch, session=signed, result=result, path=path)

    def _refreshed_batch(
        self,
        index: int,
        assigned: set[Outpoint],
        batch_size: int,
        fetch_kwargs: dict,
    ) -> tuple[TransactionBatch | None, int]:
        if self.fetcher is None:
            raise ValueError("refresh_between_batches requires a UTXOFetcher")
        current = self.fetcher.fetch(self.redeem.p2sh_address, **fetch_kwargs)
        remaining = [u for u in current if u.outpoint not in assigned]
        pool_size = len(assigned) + len(remaining)
        if not remaining:
            return None, pool_size
        return TransactionBatch(index=index, utxos=remaining[:batch_size]), pool_size
