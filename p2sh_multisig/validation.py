"""Address and redeem script validation against the node."""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict

from .errors import AddressValidationError, DecodeError, FetchError, ValidationError
from .models import RedeemScriptInfo
from .rpc_client import RPCError, RPCTransportError

logger = logging.getLogger(__name__)

BypassCallback = Callable[[str, Dict[str, Any]], bool]

_HEX_RE = re.compile(r"^[0-9a-fA-F]*$")
_PUBKEY_LENGTHS = {66, 130}


def normalize_hex(value: str, *, what: str = "hex") -> str:
    cleaned = (value or "").strip()
    if cleaned.startswith(("0x", "0X")):
        cleaned = cleaned[2:]
    if not cleaned or len(cleaned) % 2 or not _HEX_RE.match(cleaned):
        raise DecodeError(f"{what} is not a valid hex string")
    return cleaned.lower()


def validate_address(rpc: Any, address: str, confirm_bypass: BypassCallback | None = None) -> bool:
    """Return True when the node accepts ``address``.

    An invalid address is only tolerated when ``confirm_bypass`` explicitly
    agrees; the function then returns False so callers can note the bypass.
    """

    if not address:
        raise ValidationError("No P2SH address provided")
    try:
        response = rpc.validateaddress(address)
    except (RPCError, RPCTransportError) as exc:
        raise FetchError(f"validateaddress failed for {address}: {exc}") from exc
    logger.debug("validateaddress %s -> %s", address, response)
    if isinstance(response, dict) and response.get("isvalid") is True:
        return True

    logger.warning("Address %s is invalid according to the node", address)
    if confirm_bypass is not None and confirm_bypass(address, response if isinstance(response, dict) else {}):
        logger.warning("Proceeding with unvalidated address %s at operator request", address)
        return False
    raise AddressValidationError(f"Invalid P2SH address: {address}")


def _required_from_asm(asm: str) -> int | None:
    tokens = asm.split()
    if not tokens:
        return None
    head = tokens[0].upper()
    if head.startswith("OP_"):
        head = head[3:]
    try:
        return int(head)
    except ValueError:
        return None


def parse_public_keys(asm: str) -> tuple[str, ...]:
    return tuple(
        token.lower() for token in asm.split() if len(token) in _PUBKEY_LENGTHS and _HEX_RE.match(token)
    )


def decode_redeem_script(rpc: Any, redeem_script: str, expected_address: str | None) -> RedeemScriptInfo:
    """Decode a multisig redeem script and check it hashes to ``expected_address``."""

    script_hex = normalize_hex(redeem_script, what="Redeem script")
    try:
        decoded = rpc.decodescript(script_hex)
    except (RPCError, RPCTransportError) as exc:
        raise DecodeError(f"decodescript failed: {exc}") from exc
    if not decoded or not isinstance(decoded, dict):
        raise DecodeError("decodescript returned nothing for the redeem script")

    if decoded.get("type") != "multisig":
        raise ValidationError(f"Redeem script is not multisig (type={decoded.get('type')})")

    asm = str(decoded.get("asm", ""))
    required = decoded.get("reqSigs")
    if required is None:
        required = _required_from_asm(asm)
    if required is None or int(required) < 1:
        raise ValidationError("Unable to determine the number of required signatures")

    derived = decoded.get("p2sh")
    if expected_address is not None and derived != expected_address:
        raise ValidationError(
            f"Redeem script does not match P2SH address {expected_address}. Expected: {derived}"
        )

    info = RedeemScriptInfo(
        redeem_script=script_hex,
        script_type="multisig",
        required_signatures=int(required),
        p2sh_address=str(derived or expected_address),
        public_keys=parse_public_keys(asm),
    )
    logger.info("Redeem script is %s; %d signatures required", info.describe(), info.required_signatures)
    return info
