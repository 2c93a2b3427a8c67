from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import P2SH_ADDRESS, FakeNode, make_utxos
from p2sh_multisig.config import MultisigConfig
from p2sh_multisig.errors import AddressValidationError, BroadcastError, SigningError, ValidationError
from p2sh_multisig.rpc_client import RPCError
from p2sh_multisig.workflows import MultisigWorkflow


def test_two_cosigners_send_end_to_end(multisig_config: MultisigConfig, node: FakeNode) -> None:
    alice = MultisigWorkflow(multisig_config)
    sent = alice.create_send("7Destination111", Decimal("4"), "key-alice")

    assert sent.result.complete is False
    assert sent.fee.source == "estimatefee"
    assert sent.path.exists()

    bob = MultisigWorkflow(multisig_config)
    session = bob.load_session(sent.path)
    signed = bob.sign(session, "key-bob")

    assert signed.result.complete is True
    assert signed.path != sent.path

    txid = bob.broadcast_session(bob.load_session(signed.path))
    assert node.sent == [signed.result.hex]
    assert bob.load_session(signed.path).txid == txid


def test_same_cosigner_cannot_sign_its_own_session_again(multisig_config: MultisigConfig) -> None:
    workflow = MultisigWorkflow(multisig_config)
    sent = workflow.create_send("7Destination111", Decimal("1"), "key-alice")

    with pytest.raises(SigningError):
        workflow.sign(workflow.load_session(sent.path), "key-alice")


def test_out_of_band_hex_and_inputs_can_be_signed(multisig_config: MultisigConfig) -> None:
    workflow = MultisigWorkflow(multisig_config)
    sent = workflow.create_send("7Destination111", Decimal("1"), "key-alice")

    session = workflow.session_from_hex(sent.result.hex.upper(), sent.session.inputs)
    signed = workflow.sign(session, "key-carol")

    assert signed.result.complete is True


def test_redeem_script_for_another_address_stops_early(multisig_config: MultisigConfig) -> None:
    node = FakeNode(make_utxos(["5"]), p2sh="7SomeOtherP2sh")
    multisig_config.node = node

    with pytest.raises(ValidationError, match="does not match"):
        MultisigWorkflow(multisig_config).create_send("7Destination111", Decimal("1"), "key-alice")

    assert node.methods() == ["validateaddress", "decodescript"]


def test_invalid_address_without_bypass_stops_before_decoding(multisig_config: MultisigConfig) -> None:
    node = FakeNode(valid_addresses=set())
    multisig_config.node = node

    with pytest.raises(AddressValidationError):
        MultisigWorkflow(multisig_config, confirm_bypass=lambda *_: False).prepare()
    assert "decodescript" not in node.methods()


def test_fee_failure_uses_default_rate(multisig_config: MultisigConfig, node: FakeNode) -> None:
    node.fee_rate = RPCError(-1, "estimatefee failed")
    sent = MultisigWorkflow(multisig_config).create_send("7Destination111", Decimal("1"), "key-alice")

    assert sent.fee.rate == Decimal("0.0001")
    assert sent.fee.source == "default"
    assert sent.built.fee == Decimal("0.025")


def test_missing_private_key_is_a_signing_error(multisig_config: MultisigConfig, node: FakeNode) -> None:
    with pytest.raises(SigningError, match="No private key"):
        MultisigWorkflow(multisig_config).create_send("7Destination111", Decimal("1"))
    assert "createrawtransaction" not in node.methods()


def test_consolidate_needs_at_least_two_utxos(multisig_config: MultisigConfig) -> None:
    multisig_config.node = FakeNode(make_utxos(["5"]))

    with pytest.raises(ValidationError, match="at least 2"):
        MultisigWorkflow(multisig_config).consolidate("key-alice")


def test_consolidate_uses_configured_batching(multisig_config: MultisigConfig) -> None:
    node = FakeNode(make_utxos(["1"] * 7))
    multisig_config.node = node
    multisig_config.batch_size = 3

    report = MultisigWorkflow(multisig_config).consolidate("key-alice")

    assert [len(inputs) for inputs, _ in node.created] == [3, 3]
    assert report.leftover == 1
    assert all(list(outputs) == [P2SH_ADDRESS] for _, outputs in node.created)


def test_broadcast_hex_refuses_partial_signatures(multisig_config: MultisigConfig) -> None:
    workflow = MultisigWorkflow(multisig_config)
    sent = workflow.create_send("7Destination111", Decimal("1"), "key-alice")

    with pytest.raises(BroadcastError):
        workflow.broadcast_hex(sent.result.hex)


def test_workflow_requires_a_node() -> None:
    with pytest.raises(ValueError):
        MultisigWorkflow(MultisigConfig())
