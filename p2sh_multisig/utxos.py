"""Fetch the unspent output set of a P2SH address, paging through large sets."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Iterator, List, Sequence, Tuple

from .errors import FetchError
from .models import UTXO, Outpoint
from .rpc_client import RPCError, RPCTransportError

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 500
MAX_PAGES = 100


@dataclass(frozen=True)
class UTXOSummary:
    count: int
    total: Decimal


def sort_utxos(utxos: Iterable[UTXO]) -> List[UTXO]:
    """Largest amount first; ties ordered by outpoint so the order is reproducible."""

    by_outpoint = sorted(utxos, key=lambda u: u.outpoint)
    return sorted(by_outpoint, key=lambda u: u.amount, reverse=True)


def summarize(utxos: Sequence[UTXO]) -> UTXOSummary:
    return UTXOSummary(count=len(utxos), total=sum((u.amount for u in utxos), Decimal("0")))


class UTXOFetcher:
    """Retrieve every UTXO for an address, sorted by descending amount."""

    def __init__(self, rpc: Any) -> None:
        self.rpc = rpc

    def fetch(
        self,
        address: str,
        min_confirmations: int = 1,
        max_confirmations: int = 9999999,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = MAX_PAGES,
    ) -> List[UTXO]:
        if page_size < 1:
            raise ValueError("page_size must be at least 1")

        seen: set[Outpoint] = set()
        collected: List[UTXO] = []
        restarted = False
        for full_set, page in self._pages(address, min_confirmations, max_confirmations, page_size, max_pages):
            if full_set and not restarted:
                # the full-set walk starts over; drop anything taken from cursor pages
                restarted = True
                seen.clear()
                collected = []
            fresh = [u for u in page if u.outpoint not in seen]
            if page and not fresh:
                logger.info("Node ignored the listunspent cursor; fetching the full set instead")
                collected = [
                    utxo
                    for client_page in self._client_side_pages(
                        address, min_confirmations, max_confirmations, page_size, max_pages
                    )
                    for utxo in client_page
                ]
                break
            for utxo in fresh:
                seen.add(utxo.outpoint)
                collected.append(utxo)

        ordered = sort_utxos(collected)
        logger.info(
            "Fetched %d UTXOs for %s totalling %s", len(ordered), address, summarize(ordered).total
        )
        return ordered

    def _pages(
        self,
        address: str,
        min_confirmations: int,
        max_confirmations: int,
        page_size: int,
        max_pages: int,
    ) -> Iterator[Tuple[bool, List[UTXO]]]:
        """Yield ``(full_set, page)``; ``full_set`` marks pages sliced from an unpaged fetch."""

        cursor: tuple[str, int] | None = None
        for page_number in range(max_pages):
            try:
                raw = self.rpc.listunspent(
                    min_confirmations,
                    max_confirmations,
                    [address],
                    page_size=page_size,
                    after=cursor,
                )
            except RPCError as exc:
                if cursor is None:
                    logger.info("Node rejected paged listunspent (%s); fetching the full set", exc)
                else:
                    logger.info(
                        "Node rejected the listunspent cursor on page %d (%s); fetching the full set",
                        page_number + 1,
                        exc,
                    )
                for page in self._client_side_pages(
                    address, min_confirmations, max_confirmations, page_size, max_pages
                ):
                    yield True, page
                return
            except RPCTransportError as exc:
                raise FetchError(f"listunspent failed: {exc}") from exc

            page = self._parse(raw)
            yield False, page
            if len(page) < page_size:
                return
            cursor = page[-1].outpoint
        logger.warning(
            "Stopped paging after %d pages for %s; the UTXO set may be incomplete", max_pages, address
        )

    def _client_side_pages(
        self,
        address: str,
        min_confirmations: int,
        max_confirmations: int,
        page_size: int,
        max_pages: int,
    ) -> Iterator[List[UTXO]]:
        try:
            raw = self.rpc.listunspent(min_confirmations, max_confirmations, [address])
        except (RPCError, RPCTransportError) as exc:
            raise FetchError(f"listunspent failed for {address}: {exc}") from exc
        everything = sort_utxos(self._parse(raw))
        for page_number in range(max_pages):
            page = everything[page_number * page_size:(page_number + 1) * page_size]
            yield page
            if len(page) < page_size:
                return
        logger.warning(
            "Stopped paging after %d pages for %s; the UTXO set may be incomplete", max_pages, address
        )

    @staticmethod
    def _parse(raw: Any) -> List[UTXO]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise FetchError(f"listunspent returned unexpected payload: {type(raw).__name__}")
        try:
            return [UTXO.from_rpc(entry) for entry in raw]
        except (KeyError, TypeError, ValueError) as exc:
            raise FetchError(f"listunspent returned a malformed entry: {exc}") from exc
