from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import P2SH_ADDRESS, REDEEM_SCRIPT, make_utxos
from p2sh_multisig.errors import ValidationError
from p2sh_multisig.models import TransactionInput
from p2sh_multisig.session import SESSION_SCHEMA_VERSION, SessionStore, SigningSession, session_filename


def _session(**overrides) -> SigningSession:
    fields = dict(
        p2sh_address=P2SH_ADDRESS,
        redeem_script=REDEEM_SCRIPT,
        inputs=[TransactionInput.from_utxo(u, REDEEM_SCRIPT) for u in make_utxos(["1", "2"])],
        signed_hex="0100abcdef",
        signatures=1,
        required_signatures=2,
    )
    fields.update(overrides)
    return SigningSession(**fields)


def test_session_survives_save_and_load(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    session = _session(kind="consolidate", batch=3, signers=["02" + "11" * 32])

    path = store.save(session)
    loaded = store.load(path, p2sh_address=P2SH_ADDRESS, redeem_script=REDEEM_SCRIPT)

    assert loaded == session
    assert loaded.path == path
    assert path.name.startswith(f"{P2SH_ADDRESS[:8]}_consolidate_b003_")


def test_session_file_uses_camel_case_inputs(tmp_path: Path) -> None:
    path = SessionStore(tmp_path).save(_session())
    data = json.loads(path.read_text())

    assert data["version"] == SESSION_SCHEMA_VERSION
    assert set(data["inputs"][0]) == {"txid", "vout", "scriptPubKey", "redeemScript"}
    assert data["complete"] is False


def test_each_signing_round_gets_its_own_file(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    first = _session()
    first_path = store.save(first)

    second = first.with_signature("0100abcdef99", True, 2, signer="03" + "22" * 32)
    second_path = store.save(second)

    assert first_path != second_path
    assert first_path.exists() and second_path.exists()
    assert json.loads(first_path.read_text())["complete"] is False
    assert json.loads(second_path.read_text())["complete"] is True


def test_resaving_a_loaded_session_updates_in_place(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    path = store.save(_session())
    loaded = store.load(path)
    loaded.txid = "ff" * 32

    assert store.save(loaded) == path
    assert json.loads(path.read_text())["txid"] == "ff" * 32


def test_colliding_names_get_a_suffix(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    session = _session()
    (tmp_path / session_filename(session)).write_text("{}")

    path = store.save(session)

    assert path.name.endswith("-1.json")


def test_relative_paths_resolve_against_store(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    path = store.save(_session())

    assert store.load(path.name).signed_hex == "0100abcdef"


def test_missing_and_corrupt_files_are_validation_errors(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    with pytest.raises(ValidationError, match="not found"):
        store.load(tmp_path / "nope.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(ValidationError):
        store.load(broken)

    partial = tmp_path / "partial.json"
    partial.write_text(json.dumps({"p2sh_address": P2SH_ADDRESS}))
    with pytest.raises(ValidationError):
        store.load(partial)


def test_newer_schema_is_rejected(tmp_path: Path) -> None:
    data = _session().to_dict()
    data["version"] = SESSION_SCHEMA_VERSION + 1
    path = tmp_path / "future.json"
    path.write_text(json.dumps(data))

    with pytest.raises(ValidationError, match="newer"):
        SessionStore(tmp_path).load(path)


def test_mismatched_address_requires_confirmation(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    path = store.save(_session())
    asked: list[str] = []

    def refuse(field, file_value, expected):
        asked.append(field)
        return False

    with pytest.raises(ValidationError, match="p2sh_address"):
        store.load(path, p2sh_address="7OtherAddress", confirm_mismatch=refuse)
    assert asked == ["p2sh_address"]

    accepted = store.load(path, p2sh_address="7OtherAddress", confirm_mismatch=lambda *_: True)
    assert accepted.p2sh_address == P2SH_ADDRESS


def test_redeem_script_comparison_ignores_case(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    path = store.save(_session())

    loaded = store.load(path, redeem_script=REDEEM_SCRIPT.upper())

    assert loaded.redeem_script == REDEEM_SCRIPT


def test_list_sessions_filters_by_address_prefix(tmp_path: Path) -> None:
    store = SessionStore(tmp_path)
    store.save(_session())
    store.save(_session(p2sh_address="7AnotherAddr999"))

    assert len(store.list_sessions(P2SH_ADDRESS)) == 1
    assert len(store.list_sessions()) == 2
    assert SessionStore(tmp_path / "missing").list_sessions() == []
