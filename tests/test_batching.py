from __future__ import annotations

import math
from decimal import Decimal
from pathlib import Path

import pytest

from conftest import P2SH_ADDRESS, FakeNode, make_utxos
from p2sh_multisig.batching import BatchCoordinator, plan_batches
from p2sh_multisig.errors import BuildError
from p2sh_multisig.session import SessionStore
from p2sh_multisig.signing import PartialSigner
from p2sh_multisig.tx_builder import TransactionBuilder
from p2sh_multisig.utxos import UTXOFetcher

RATE = Decimal("0.0001")


def _coordinator(node: FakeNode, redeem, tmp_path: Path, *, with_fetcher: bool = False) -> BatchCoordinator:
    return BatchCoordinator(
        TransactionBuilder(node, redeem),
        PartialSigner(node),
        SessionStore(tmp_path / "sessions"),
        UTXOFetcher(node) if with_fetcher else None,
    )


@pytest.mark.parametrize("count,size", [(1, 200), (199, 200), (200, 200), (201, 200), (450, 200), (7, 3)])
def test_plan_batches_covers_every_utxo_once(count: int, size: int) -> None:
    utxos = make_utxos(["1"] * count)
    batches = plan_batches(utxos, size)

    assert len(batches) == math.ceil(count / size)
    assert all(b.size <= size for b in batches)
    assert [u for b in batches for u in b.utxos] == utxos
    assert [b.index for b in batches] == list(range(1, len(batches) + 1))


def test_plan_batches_rejects_non_positive_size() -> None:
    with pytest.raises(ValueError):
        plan_batches(make_utxos(["1"]), 0)


def test_450_utxos_become_three_transactions(redeem, tmp_path: Path) -> None:
    node = FakeNode()
    utxos = make_utxos(["1"] * 450)

    report = _coordinator(node, redeem, tmp_path).consolidate(utxos, "key-alice", RATE, batch_size=200)

    assert [len(inputs) for inputs, _ in node.created] == [200, 200, 50]
    assert [o.batch.size for o in report.outcomes] == [200, 200, 50]
    assert report.succeeded
    assert report.leftover == 0
    assert report.further_rounds == 0
    assert len(list((tmp_path / "sessions").glob("*.json"))) == 3
    for _, outputs in node.created:
        assert list(outputs) == [P2SH_ADDRESS]


def test_failure_in_later_batch_keeps_earlier_sessions(redeem, tmp_path: Path) -> None:
    node = FakeNode()
    node.fail_create_after = 1
    utxos = make_utxos(["1"] * 10)
    messages: list[str] = []

    report = _coordinator(node, redeem, tmp_path).consolidate(
        utxos, "key-alice", RATE, batch_size=4, progress=messages.append
    )

    assert len(report.outcomes) == 1
    assert report.failed_batch == 2
    assert isinstance(report.error, BuildError)
    assert not report.succeeded
    assert report.outcomes[0].path.exists()
    assert report.leftover == 6
    assert report.further_rounds == 2
    # the third batch is never attempted
    assert len([m for m in node.methods() if m == "createrawtransaction"]) == 2
    assert any("Earlier batches are kept" in m for m in messages)


def test_max_batches_leaves_remainder_for_later_rounds(redeem, tmp_path: Path) -> None:
    node = FakeNode()
    report = _coordinator(node, redeem, tmp_path).consolidate(
        make_utxos(["1"] * 25), "key-alice", RATE, batch_size=10, max_batches=1
    )

    assert report.planned == 1
    assert len(node.created) == 1
    assert report.leftover == 15
    assert report.further_rounds == 2


def test_single_utxo_tail_batch_is_skipped(redeem, tmp_path: Path) -> None:
    node = FakeNode()
    report = _coordinator(node, redeem, tmp_path).consolidate(
        make_utxos(["1"] * 5), "key-alice", RATE, batch_size=4
    )

    assert len(report.outcomes) == 1
    assert [b.index for b in report.skipped] == [2]
    assert report.leftover == 1


def test_refresh_between_batches_skips_already_assigned_outpoints(redeem, tmp_path: Path) -> None:
    utxos = make_utxos(["1"] * 6)
    node = FakeNode(utxos)
    coordinator = _coordinator(node, redeem, tmp_path, with_fetcher=True)
    # a new deposit arrives after the snapshot
    node.utxos.append(make_utxos(["2"], prefix="bb")[0])

    report = coordinator.consolidate(
        utxos, "key-alice", RATE, batch_size=3, refresh_between_batches=True, fetch_kwargs={"page_size": 50}
    )

    spent = [(entry["txid"], entry["vout"]) for inputs, _ in node.created for entry in inputs]
    assert len(spent) == len(set(spent))
    assert report.leftover == 1
    assert len(report.outcomes) == 2


def test_batches_are_signed_with_one_key_each(redeem, tmp_path: Path) -> None:
    node = FakeNode()
    report = _coordinator(node, redeem, tmp_path).consolidate(
        make_utxos(["1"] * 6), "key-alice", RATE, batch_size=3
    )

    assert all(not o.result.complete for o in report.outcomes)
    assert all(o.session.batch == o.batch.index for o in report.outcomes)
    assert node.methods().count("importprivkey") == 1
    assert report.consolidated_amount == Decimal("6")
