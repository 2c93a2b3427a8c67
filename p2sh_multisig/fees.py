"""Fee rate estimation and size-based fee heuristics."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from .models import quantize_fee, to_decimal
from .rpc_client import METHOD_NOT_FOUND, RPCError, RPCTransportError

logger = logging.getLogger(__name__)

DEFAULT_CONF_TARGET = 6
DEFAULT_FALLBACK_FEE_RATE = Decimal("0.0001")
BASE_TX_SIZE = 250
PER_INPUT_SIZE = 100


@dataclass(frozen=True)
class FeeEstimate:
    """Fee rate per byte plus where it came from (``estimatefee``, ``estimatesmartfee`` or ``default``)."""

    rate: Decimal
    source: str

    def fee_for(self, input_count: int) -> Decimal:
        return calculate_fee(self.rate, input_count)


def estimate_tx_size(input_count: int) -> int:
    """Heuristic byte size: 250 bytes for the first input, 100 per extra input.

    This is not an exact serialization size; multisig scriptSigs vary with the
    number of collected signatures.
    """

    return BASE_TX_SIZE + PER_INPUT_SIZE * (max(input_count, 1) - 1)


def calculate_fee(fee_rate: Decimal, input_count: int) -> Decimal:
    return quantize_fee(fee_rate * estimate_tx_size(input_count))


def _parse_rate(raw: Any) -> Decimal | None:
    if isinstance(raw, dict):
        raw = raw.get("feerate") or raw.get("feeRate")
    if raw is None:
        return None
    try:
        rate = to_decimal(raw)
    except ValueError:
        return None
    if rate <= 0:
        # -1 is the node's "not enough data" sentinel
        return None
    return rate


def estimate_fee_rate(
    rpc_client: Any,
    confirmation_target: int = DEFAULT_CONF_TARGET,
    default: Decimal = DEFAULT_FALLBACK_FEE_RATE,
) -> FeeEstimate:
    """Ask the node for a fee rate, falling back to ``default``. Never raises."""

    try:
        rate = _parse_rate(rpc_client.estimatefee(confirmation_target))
        if rate is not None:
            return FeeEstimate(rate, "estimatefee")
        logger.warning("Fee estimation returned no usable rate, using default %s", default)
    except RPCError as exc:
        if exc.code == METHOD_NOT_FOUND:
            try:
                rate = _parse_rate(rpc_client.estimatesmartfee(confirmation_target))
            except (RPCError, RPCTransportError) as smart_exc:
                logger.info("estimatesmartfee unavailable: %s", smart_exc)
                rate = None
            if rate is not None:
                return FeeEstimate(rate, "estimatesmartfee")
        logger.warning("Fee estimation failed (%s), using default %s", exc, default)
    except RPCTransportError as exc:
        logger.warning("Fee estimation failed (%s), using default %s", exc, default)
    return FeeEstimate(to_decimal(default), "default")
