from __future__ import annotations

import hashlib
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest

from p2sh_multisig.config import MultisigConfig, PrivateKeySource
from p2sh_multisig.models import UTXO, RedeemScriptInfo
from p2sh_multisig.rpc_client import METHOD_NOT_FOUND, RPCError

PUBKEYS = ("02" + "11" * 32, "03" + "22" * 32, "02" + "33" * 32)
KEYS = {"key-alice": PUBKEYS[0], "key-bob": PUBKEYS[1], "key-carol": PUBKEYS[2]}
REDEEM_SCRIPT = "52" + "".join("21" + pk for pk in PUBKEYS) + "53ae"
P2SH_ADDRESS = "7MsigP2shAddress1111111111111111"
SCRIPT_PUB_KEY = "a914" + "ab" * 20 + "87"


def make_utxos(amounts, *, prefix: str = "aa") -> list[UTXO]:
    return [
        UTXO(
            txid=f"{prefix}{index:062x}",
            vout=index % 3,
            amount=Decimal(str(amount)),
            script_pub_key=SCRIPT_PUB_KEY,
            address=P2SH_ADDRESS,
            confirmations=10,
        )
        for index, amount in enumerate(amounts)
    ]


def _signature_for(public_key: str) -> str:
    return "3044" + hashlib.sha256(public_key.encode()).hexdigest() + "0201"


class FakeNode:
    """In-memory stand-in for a node that tracks signatures per transaction hex."""

    def __init__(
        self,
        utxos: list[UTXO] | None = None,
        *,
        required: int = 2,
        p2sh: str = P2SH_ADDRESS,
        valid_addresses: set[str] | None = None,
        fee_rate: Any = Decimal("0.0001"),
        paging: str = "native",
    ) -> None:
        self.utxos = list(utxos or [])
        self.required = required
        self.p2sh = p2sh
        self.valid_addresses = {P2SH_ADDRESS, "7Destination111"} if valid_addresses is None else valid_addresses
        self.fee_rate = fee_rate
        self.paging = paging
        self.keys = dict(KEYS)
        self.wallet_enabled = True
        self.fail_create_after: int | None = None
        self.send_error: RPCError | None = None
        self.calls: list[tuple[str, tuple]] = []
        self.created: list[tuple[list, dict]] = []
        self.sent: list[str] = []
        self._txs: dict[str, dict[str, Any]] = {}
        self._labels: dict[str, str] = {}

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))

    def methods(self) -> list[str]:
        return [name for name, _ in self.calls]

    # Address and script ---------------------------------------------------

    def validateaddress(self, address):
        self._record("validateaddress", address)
        return {"isvalid": address in self.valid_addresses, "address": address}

    def decodescript(self, script_hex):
        self._record("decodescript", script_hex)
        return {
            "asm": f"{self.required} " + " ".join(PUBKEYS) + " 3 OP_CHECKMULTISIG",
            "reqSigs": self.required,
            "type": "multisig",
            "p2sh": self.p2sh,
        }

    # UTXOs and fees -------------------------------------------------------

    def listunspent(self, minconf=1, maxconf=9999999, addresses=None, *, page_size=None, after=None):
        self._record("listunspent", minconf, maxconf, addresses, page_size, after)
        entries = [
            {
                "txid": u.txid,
                "vout": u.vout,
                "amount": u.amount,
                "scriptPubKey": u.script_pub_key,
                "address": u.address,
                "confirmations": u.confirmations,
            }
            for u in self.utxos
        ]
        if page_size is None or self.paging == "none":
            return entries
        if self.paging == "reject":
            raise RPCError(-8, "Invalid parameter, unexpected query options")
        if self.paging == "count-only" and after is not None:
            raise RPCError(-3, "Unexpected key startAfter")
        start = 0
        if after is not None and self.paging == "native":
            outpoints = [(e["txid"], e["vout"]) for e in entries]
            start = outpoints.index(tuple(after)) + 1
        return entries[start:start + page_size]

    def estimatefee(self, nblocks):
        self._record("estimatefee", nblocks)
        if isinstance(self.fee_rate, Exception):
            raise self.fee_rate
        return self.fee_rate

    def estimatesmartfee(self, conf_target):
        self._record("estimatesmartfee", conf_target)
        return {"feerate": Decimal("0.0002"), "blocks": conf_target}

    # Transactions ---------------------------------------------------------

    def createrawtransaction(self, inputs, outputs):
        self._record("createrawtransaction", inputs, outputs)
        if self.fail_create_after is not None and len(self.created) >= self.fail_create_after:
            raise RPCError(-8, "Invalid parameter")
        self.created.append((inputs, outputs))
        raw = f"0100{len(self.created):08x}" + "00" * 4
        self._txs[raw] = {"inputs": list(inputs), "outputs": dict(outputs), "signers": []}
        return raw

    def _sign(self, raw_tx, private_keys):
        tx = self._txs.get(raw_tx)
        if tx is None:
            raise RPCError(-22, "TX decode failed")
        signers = list(tx["signers"])
        for key in private_keys:
            public_key = self.keys.get(key)
            if public_key is None:
                raise RPCError(-5, "Invalid private key")
            if public_key not in signers:
                signers.append(public_key)
        complete = len(signers) >= self.required
        if signers == tx["signers"]:
            return {"hex": raw_tx, "complete": complete}
        signed = raw_tx + f"{len(signers):02x}" + hashlib.sha256("".join(signers).encode()).hexdigest()[:8]
        self._txs[signed] = {"inputs": tx["inputs"], "outputs": tx["outputs"], "signers": signers}
        return {"hex": signed, "complete": complete}

    def signrawtransaction(self, raw_tx, prevtxs, private_keys):
        self._record("signrawtransaction", raw_tx, prevtxs)
        return self._sign(raw_tx, private_keys)

    def signrawtransactionwithkey(self, raw_tx, private_keys, prevtxs):
        self._record("signrawtransactionwithkey", raw_tx, prevtxs)
        return self._sign(raw_tx, private_keys)

    def decoderawtransaction(self, raw_tx):
        self._record("decoderawtransaction", raw_tx)
        tx = self._txs.get(raw_tx)
        if tx is None:
            raise RPCError(-22, "TX decode failed")
        pushes = " ".join(f"{_signature_for(pk)}[ALL]" for pk in tx["signers"])
        asm = f"0 {pushes} {REDEEM_SCRIPT}" if tx["signers"] else ""
        return {
            "txid": hashlib.sha256(raw_tx.encode()).hexdigest(),
            "vin": [
                {"txid": entry["txid"], "vout": entry["vout"], "scriptSig": {"asm": asm, "hex": ""}}
                for entry in tx["inputs"]
            ],
            "vout": [
                {"value": value, "n": n, "scriptPubKey": {"address": address}}
                for n, (address, value) in enumerate(tx["outputs"].items())
            ],
        }

    def sendrawtransaction(self, raw_tx):
        self._record("sendrawtransaction", raw_tx)
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(raw_tx)
        return hashlib.sha256(raw_tx.encode()).hexdigest()

    def gettransaction(self, txid):
        self._record("gettransaction", txid)
        return {"txid": txid, "confirmations": 0}

    # Wallet helpers used for public key derivation ------------------------

    def importprivkey(self, private_key, label="", rescan=False):
        self._record("importprivkey", label, rescan)
        if not self.wallet_enabled:
            raise RPCError(-18, "Wallet disabled")
        if private_key not in self.keys:
            raise RPCError(-5, "Invalid private key encoding")
        self._labels[label] = f"addr-{self.keys[private_key][:10]}"

    def getaddressesbylabel(self, label):
        self._record("getaddressesbylabel", label)
        if label not in self._labels:
            raise RPCError(-11, "No addresses with label")
        return {self._labels[label]: {"purpose": "receive"}}

    def getaddressesbyaccount(self, account):
        self._record("getaddressesbyaccount", account)
        raise RPCError(METHOD_NOT_FOUND, "Method not found")

    def getaddressinfo(self, address):
        self._record("getaddressinfo", address)
        for public_key in self.keys.values():
            if address == f"addr-{public_key[:10]}":
                return {"address": address, "pubkey": public_key}
        return {"address": address}


@pytest.fixture
def redeem() -> RedeemScriptInfo:
    return RedeemScriptInfo(
        redeem_script=REDEEM_SCRIPT,
        script_type="multisig",
        required_signatures=2,
        p2sh_address=P2SH_ADDRESS,
        public_keys=PUBKEYS,
    )


@pytest.fixture
def node() -> FakeNode:
    return FakeNode(make_utxos(["5", "3", "1", "0.5"]))


@pytest.fixture
def multisig_config(tmp_path: Path, node: FakeNode) -> MultisigConfig:
    return MultisigConfig(
        node=node,
        p2sh_address=P2SH_ADDRESS,
        redeem_script=REDEEM_SCRIPT,
        private_key_source=PrivateKeySource(env_var=None),
        session_dir=tmp_path / "sessions",
        status_path=tmp_path / "status.json",
    )
