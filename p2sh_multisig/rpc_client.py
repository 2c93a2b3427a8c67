"""Node clients for Bitcoin-derived coins (Junkcoin, DigiByte, Litecoin style).

The multisig core only talks to the node through the typed wrappers on
:class:`NodeRPC`. Two transports are provided: :class:`NodeRPCClient` speaks
JSON-RPC over HTTP, :class:`NodeCLIClient` shells out to the coin's ``*-cli``
binary. Tests substitute plain stub objects exposing the same method names.
No consensus or signing logic lives here; the clients forward requests and
surface errors clearly.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional, Sequence

import requests
from requests import RequestException, Response

from .config import ConfigurationError, RPCConfig, load_rpc_config

logger = logging.getLogger(__name__)

METHOD_NOT_FOUND = -32601
# Params carrying private keys are never logged.
_SENSITIVE_METHODS = {"importprivkey", "signrawtransaction", "signrawtransactionwithkey", "dumpprivkey"}
_CLI_ERROR_RE = re.compile(r"error code:\s*(-?\d+)\s*\n?error message:\s*(.*)", re.IGNORECASE | re.DOTALL)


class RPCError(RuntimeError):
    """Raised when the node responds with an RPC error."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message


class RPCTransportError(RuntimeError):
    """Raised when the node is unreachable or returns malformed data."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def format_rpc_hint(error_obj: dict[str, Any] | RPCError | None) -> str | None:
    """Return a human-friendly hint for common node errors seen in multisig flows."""

    if error_obj is None:
        return None

    code = None
    message = ""
    if isinstance(error_obj, RPCError):
        code = error_obj.code
        message = error_obj.message
    elif isinstance(error_obj, dict):
        code = error_obj.get("code")
        message = str(error_obj.get("message", ""))
    lowered = message.lower()

    if code == -26 and "min relay fee not met" in lowered:
        return (
            "The node rejected the transaction because the fee is below its relay policy. "
            "Raise fee_default in the config or wait for estimatefee to return a higher rate."
        )
    if code == -26 and "mandatory-script-verify-flag" in lowered:
        return "Signatures are missing or invalid; collect the remaining cosigner signatures before broadcasting."
    if code in {-25, -27} or "missing inputs" in lowered or "already in block chain" in lowered:
        return (
            "One or more inputs are already spent or the transaction is already confirmed. "
            "Refresh the UTXO set before building another transaction."
        )
    if code == -5 or "invalid address" in lowered:
        return "An address was rejected by the node; check the destination and P2SH address for this coin."
    if code == -8:
        return "The node rejected a parameter; check amounts (8 decimals max) and the inputs JSON."
    if code == -13 or "wallet passphrase" in lowered or "wallet locked" in lowered:
        return "The wallet is locked. Unlock it with walletpassphrase, then retry."
    if code == METHOD_NOT_FOUND:
        return "This node does not support the requested RPC method; an older or newer client may be required."
    return None


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        # float repr is the shortest round-tripping form, so 8dp amounts survive intact
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps(value: Any) -> str:
    """Serialize RPC params, keeping Decimal amounts numeric."""

    return json.dumps(value, default=_json_default)


def _loggable_params(method: str, params: Sequence[Any]) -> Any:
    if method in _SENSITIVE_METHODS:
        return "<redacted>"
    return list(params)


class NodeRPC:
    """Typed wrappers over a ``call(method, params)`` transport."""

    def call(self, method: str, params: Optional[list[Any]] = None) -> Any:  # pragma: no cover - abstract
        raise NotImplementedError

    # Convenience wrappers -------------------------------------------------

    def getblockchaininfo(self) -> Dict[str, Any]:
        return self.call("getblockchaininfo")

    def validateaddress(self, address: str) -> Dict[str, Any]:
        return self.call("validateaddress", [address])

    def getaddressinfo(self, address: str) -> Dict[str, Any]:
        return self.call("getaddressinfo", [address])

    def decodescript(self, script_hex: str) -> Dict[str, Any]:
        return self.call("decodescript", [script_hex])

    def listunspent(
        self,
        minconf: int = 1,
        maxconf: int = 9999999,
        addresses: Optional[list[str]] = None,
        *,
        page_size: int | None = None,
        after: tuple[str, int] | None = None,
    ) -> list[Dict[str, Any]]:
        params: list[Any] = [minconf, maxconf]
        if addresses is not None or page_size is not None:
            params.append(list(addresses or []))
        if page_size is not None:
            query: Dict[str, Any] = {"maximumCount": page_size}
            if after is not None:
                query["startAfter"] = {"txid": after[0], "vout": after[1]}
            params.extend([True, query])
        return self.call("listunspent", params)

    def estimatefee(self, nblocks: int) -> Any:
        return self.call("estimatefee", [nblocks])

    def estimatesmartfee(self, conf_target: int) -> Dict[str, Any]:
        return self.call("estimatesmartfee", [conf_target])

    def createrawtransaction(self, inputs: list[Dict[str, Any]], outputs: Dict[str, Decimal]) -> str:
        return self.call("createrawtransaction", [inputs, outputs])

    def signrawtransaction(
        self, raw_tx: str, prevtxs: list[Dict[str, Any]], private_keys: list[str]
    ) -> Dict[str, Any]:
        return self.call("signrawtransaction", [raw_tx, prevtxs, private_keys])

    def signrawtransactionwithkey(
        self, raw_tx: str, private_keys: list[str], prevtxs: list[Dict[str, Any]]
    ) -> Dict[str, Any]:
        return self.call("signrawtransactionwithkey", [raw_tx, private_keys, prevtxs])

    def decoderawtransaction(self, raw_tx: str) -> Dict[str, Any]:
        return self.call("decoderawtransaction", [raw_tx])

    def sendrawtransaction(self, raw_tx: str) -> str:
        return self.call("sendrawtransaction", [raw_tx])

    def gettransaction(self, txid: str) -> Dict[str, Any]:
        return self.call("gettransaction", [txid])

    def importprivkey(self, private_key: str, label: str = "", rescan: bool = False) -> Any:
        return self.call("importprivkey", [private_key, label, rescan])

    def getaddressesbylabel(self, label: str) -> Dict[str, Any]:
        return self.call("getaddressesbylabel", [label])

    def getaddressesbyaccount(self, account: str) -> list[str]:
        return self.call("getaddressesbyaccount", [account])


class NodeRPCClient(NodeRPC):
    """JSON-RPC over HTTP client for Bitcoin-derived nodes.

    Connection defaults can be overridden via ``MSIG_RPC_USER``,
    ``MSIG_RPC_PASSWORD``, ``MSIG_RPC_HOST`` and ``MSIG_RPC_PORT`` or the
    ``rpc`` section of ``~/.p2sh-multisig.yaml``.
    """

    def __init__(self, config: RPCConfig) -> None:
        self.config = config
        self._session = requests.Session()
        self._base_url = config.base_url
        self._wallet = config.wallet

    @classmethod
    def from_env(cls) -> "NodeRPCClient":
        """Instantiate a client using environment variables or config file."""

        return cls(load_rpc_config())

    def call(self, method: str, params: Optional[list[Any]] = None) -> Any:
        """Perform a JSON-RPC request."""

        params = params or []
        payload = {
            "jsonrpc": "1.0",
            "id": str(uuid.uuid4()),
            "method": method,
            "params": params,
        }
        logger.debug("RPC call %s params=%s", method, _loggable_params(method, params))
        try:
            response = self._session.post(
                self._url,
                data=dumps(payload),
                headers={"content-type": "application/json"},
                auth=(self.config.user, self.config.password),
                timeout=self.config.timeout,
            )
        except RequestException as exc:
            logger.error(
                "RPC connection failed: %s",
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise RPCTransportError(
                "RPC connection failed. Ensure the node is reachable, authentication is valid, "
                "and MSIG_RPC_* variables (or ~/.p2sh-multisig.yaml) point to the right host and port."
            ) from exc

        # Nodes report JSON-RPC errors as HTTP 500 with a structured body.
        body = self._parse_body(response)
        if isinstance(body, dict) and body.get("error"):
            error = body["error"]
            raise RPCError(error.get("code", -1), error.get("message", "unknown"))
        self._raise_for_status(response)
        if not isinstance(body, dict):
            raise RPCTransportError("RPC server returned malformed JSON")
        return body.get("result")

    @staticmethod
    def _parse_body(response: Response) -> Any:
        try:
            return response.json(parse_float=Decimal)
        except ValueError:
            logger.debug("RPC JSON parse error: %s", response.text)
            return None

    def _raise_for_status(self, response: Response) -> None:
        if response.ok:
            return
        logger.error("RPC HTTP error %s from %s", response.status_code, response.url)
        if response.status_code == 401:
            raise RPCTransportError(
                "Unauthorized (401). Ensure MSIG_RPC_USER/MSIG_RPC_PASSWORD (or ~/.p2sh-multisig.yaml) contain valid credentials.",
                status_code=response.status_code,
            )
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise RPCTransportError(
                "RPC server returned an HTTP error; check the URL, wallet path and MSIG_RPC_* settings.",
                status_code=response.status_code,
            ) from exc

    @property
    def _url(self) -> str:
        if self._wallet:
            return f"{self._base_url}/wallet/{self._wallet}"
        return self._base_url

    def set_wallet(self, wallet: str | None) -> None:
        """Switch the RPC client to a different loaded wallet."""

        self._wallet = wallet


class NodeCLIClient(NodeRPC):
    """Drive the node through its command-line client (``junkcoin-cli`` etc.)."""

    def __init__(self, binary: str, extra_args: Sequence[str] | None = None, timeout: int = 60) -> None:
        self.binary = binary
        self.extra_args = list(extra_args or [])
        self.timeout = timeout

    @staticmethod
    def _format_arg(value: Any) -> str:
        if isinstance(value, str):
            return value
        return dumps(value)

    def call(self, method: str, params: Optional[list[Any]] = None) -> Any:
        params = params or []
        command = [self.binary, *self.extra_args, method, *(self._format_arg(p) for p in params)]
        logger.debug("CLI call %s params=%s", method, _loggable_params(method, params))
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as exc:
            raise RPCTransportError(f"Node CLI binary not found: {self.binary}") from exc
        except subprocess.TimeoutExpired as exc:
            raise RPCTransportError(f"{self.binary} {method} timed out after {self.timeout}s") from exc

        if result.returncode != 0:
            raise self._parse_error(result.stderr or result.stdout, result.returncode)

        output = result.stdout.strip()
        if not output:
            return None
        try:
            return json.loads(output, parse_float=Decimal)
        except ValueError:
            # Hex blobs and txids come back as bare strings.
            return output

    @staticmethod
    def _parse_error(text: str, returncode: int) -> RPCError:
        text = (text or "").strip()
        match = _CLI_ERROR_RE.search(text)
        if match:
            return RPCError(int(match.group(1)), match.group(2).strip())
        if text.startswith("error:"):
            try:
                payload = json.loads(text[len("error:"):].strip())
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                return RPCError(int(payload.get("code", -1)), str(payload.get("message", text)))
        return RPCError(-returncode if returncode > 0 else -1, text or "unknown error")


def build_node_client(config: RPCConfig) -> NodeRPC:
    """Instantiate the transport named in ``config.transport``."""

    if config.transport == "cli":
        return NodeCLIClient(config.cli_binary, config.cli_args, timeout=config.timeout)
    if config.transport == "http":
        return NodeRPCClient(config)
    raise ConfigurationError(f"Unknown RPC transport: {config.transport}")
