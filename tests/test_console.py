from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import FakeNode, make_utxos
from p2sh_multisig import console
from p2sh_multisig.config import MultisigConfig


def _feed(monkeypatch: pytest.MonkeyPatch, answers: list[str], keys: list[str] | None = None) -> None:
    replies = iter(answers)
    secrets = iter(keys or [])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(replies))
    monkeypatch.setattr(console.getpass, "getpass", lambda prompt="": next(secrets))


def test_create_send_from_menu(monkeypatch, capsys, multisig_config: MultisigConfig) -> None:
    _feed(monkeypatch, ["1", "4", "7Destination111", "5"], keys=["key-alice"])

    console.console_main(multisig_config, background_status=False)

    output = capsys.readouterr().out
    assert "Multisig P2SH Transaction Menu" in output
    assert "Partial signature complete. 1 of 2 signatures provided." in output
    assert "Still need 1 more signature(s)" in output
    assert len(list(multisig_config.session_dir.glob("*.json"))) == 1


def test_failures_return_to_menu(monkeypatch, capsys, multisig_config: MultisigConfig) -> None:
    _feed(monkeypatch, ["9", "1", "500", "7Destination111", "5"], keys=["key-alice"])

    console.console_main(multisig_config, background_status=False)

    output = capsys.readouterr().out
    assert "Invalid option" in output
    assert "Error: Insufficient funds" in output
    assert output.rstrip().endswith("Exiting...")


def test_second_signer_completes_and_broadcasts(monkeypatch, capsys, multisig_config: MultisigConfig) -> None:
    workflow = console.build_workflow(multisig_config)
    first = workflow.create_send("7Destination111", Decimal("1"), "key-alice")

    _feed(monkeypatch, ["2", str(first.path), "5"], keys=["key-bob"])
    console.console_main(multisig_config, background_status=False)
    signed_path = next(p for p in multisig_config.session_dir.glob("*.json") if p != first.path)

    _feed(monkeypatch, ["3", str(signed_path), "BROADCAST", "5"])
    console.console_main(multisig_config, background_status=False)

    output = capsys.readouterr().out
    assert "Transaction fully signed with 2 signatures!" in output
    assert "Success! Transaction ID:" in output
    assert len(multisig_config.node.sent) == 1


def test_incomplete_broadcast_needs_override(monkeypatch, capsys, multisig_config: MultisigConfig) -> None:
    workflow = console.build_workflow(multisig_config)
    first = workflow.create_send("7Destination111", Decimal("1"), "key-alice")
    _feed(monkeypatch, ["3", str(first.path), "no", "5"])

    console.console_main(multisig_config, background_status=False)

    output = capsys.readouterr().out
    assert "not fully signed" in output
    assert "Cancelled." in output
    assert multisig_config.node.sent == []


def test_consolidate_from_menu(monkeypatch, capsys, multisig_config: MultisigConfig) -> None:
    multisig_config.node = FakeNode(make_utxos(["1"] * 5))
    multisig_config.batch_size = 2
    _feed(monkeypatch, ["4", "y", "5"], keys=["key-alice"])

    console.console_main(multisig_config, background_status=False)

    output = capsys.readouterr().out
    assert "Planned 3 batch(es) of up to 2 UTXOs" in output
    assert "Consolidated 2 batch(es)" in output
    assert "1 UTXOs left unconsolidated" in output


def test_consolidate_with_single_utxo_returns_to_menu(monkeypatch, capsys, multisig_config: MultisigConfig) -> None:
    multisig_config.node = FakeNode(make_utxos(["1"]))
    _feed(monkeypatch, ["4", "5"])

    console.console_main(multisig_config, background_status=False)

    assert "Need at least 2 to consolidate" in capsys.readouterr().out


def test_configured_key_skips_prompt(monkeypatch, capsys, multisig_config: MultisigConfig) -> None:
    multisig_config.private_key_source.literal = "key-alice"
    _feed(monkeypatch, ["1", "1", "7Destination111", "5"])

    console.console_main(multisig_config, background_status=False)

    assert "Using configured private key." in capsys.readouterr().out


def test_exit_clears_status_file(monkeypatch, multisig_config: MultisigConfig) -> None:
    multisig_config.status_path.write_text('{"balance": "1", "utxos": 1}')
    _feed(monkeypatch, ["q"])

    console.console_main(multisig_config, background_status=False)

    assert not multisig_config.status_path.exists()


def test_prompt_decimal_retries_until_valid(monkeypatch) -> None:
    replies = iter(["abc", "NaN", "1.5"])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(replies))

    assert console.prompt_decimal("Amount") == Decimal("1.5")


@pytest.mark.parametrize("inputs_json", ['["not-an-object"]', '[{"txid": "aa"}]', '[{"txid": "aa", "vout": "x"}]'])
def test_malformed_inputs_json_returns_to_menu(
    monkeypatch, capsys, multisig_config: MultisigConfig, inputs_json: str
) -> None:
    _feed(monkeypatch, ["2", "00ff", inputs_json, "5"])

    console.console_main(multisig_config, background_status=False)

    output = capsys.readouterr().out
    assert "Error: Malformed input entry" in output
    assert output.rstrip().endswith("Exiting...")


def test_unwritable_session_dir_returns_to_menu(monkeypatch, capsys, multisig_config: MultisigConfig) -> None:
    def refuse(self, session):
        raise PermissionError(13, "Permission denied", str(self.directory))

    monkeypatch.setattr("p2sh_multisig.session.SessionStore.save", refuse)
    _feed(monkeypatch, ["1", "1", "7Destination111", "5"], keys=["key-alice"])

    console.console_main(multisig_config, background_status=False)

    output = capsys.readouterr().out
    assert "Permission denied" in output
    assert output.rstrip().endswith("Exiting...")


def test_partial_hex_broadcast_needs_override(monkeypatch, capsys, multisig_config: MultisigConfig) -> None:
    workflow = console.build_workflow(multisig_config)
    partial = workflow.create_send("7Destination111", Decimal("1"), "key-alice")

    _feed(monkeypatch, ["3", partial.result.hex, "no", "5"])
    console.console_main(multisig_config, background_status=False)

    output = capsys.readouterr().out
    assert "not fully signed (1 of 2)" in output
    assert "Cancelled." in output
    assert multisig_config.node.sent == []

    _feed(monkeypatch, ["3", partial.result.hex, "OVERRIDE", "BROADCAST", "5"])
    console.console_main(multisig_config, background_status=False)

    assert "Success! Transaction ID:" in capsys.readouterr().out
    assert multisig_config.node.sent == [partial.result.hex]
