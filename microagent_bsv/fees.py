"""Fee estimation and coin selection for MicroAgent transactions."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from typing import Iterable, List

from .model import Utxo

logger = logging.getLogger(__name__)

DEFAULT_FEE_RATE_SAT_PER_BYTE = 0.5
BASE_TX_OVERHEAD_BYTES = 150
PER_OUTPUT_OVERHEAD_BYTES = 34
DEFAULT_SAFETY_BUFFER_SATS = 5000
ENV_MIN_FEE_RATE_FLOOR = "MICROAGENT_MIN_FEE_RATE"


def calculate_fee_sats(fee_rate_sat_per_byte: float, size: int) -> int:
    """Return the ceil'd fee in satoshis for the provided size."""

    return int(math.ceil(fee_rate_sat_per_byte * size))


def estimate_tx_size(payload_size: int, output_count: int) -> int:
    """Linear size model: base overhead + payload + fixed cost per output.

    This is deliberately not byte-exact; the input count is not considered.
    """

    if payload_size < 0 or output_count < 0:
        raise ValueError("payload_size and output_count must be non-negative")
    return BASE_TX_OVERHEAD_BYTES + payload_size + PER_OUTPUT_OVERHEAD_BYTES * output_count


def estimate_fee(
    payload_size: int,
    output_count: int,
    fee_rate: float = DEFAULT_FEE_RATE_SAT_PER_BYTE,
) -> int:
    return calculate_fee_sats(fee_rate, estimate_tx_size(payload_size, output_count))


def _env_override(name: str) -> float | None:
    raw = os.environ.get(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid float in %s=%s; ignoring", name, raw)
        return None


def resolve_fee_rate(configured: float | None) -> float:
    """Return the fee rate to use, raised to any environment floor."""

    fee_rate = DEFAULT_FEE_RATE_SAT_PER_BYTE if configured is None else float(configured)
    if fee_rate <= 0:
        raise ValueError(f"Fee rate must be positive, got {fee_rate}")
    floor = _env_override(ENV_MIN_FEE_RATE_FLOOR)
    if floor is not None and fee_rate < floor:
        logger.debug("Applying fee floor %.3f sat/byte over %s", floor, fee_rate)
        fee_rate = floor
    return fee_rate


@dataclass
class CoinSelection:
    inputs: List[Utxo] = field(default_factory=list)
    total_sats: int = 0


def select_coins(
    utxos: Iterable[Utxo],
    target_sats: int,
    safety_buffer_sats: int = DEFAULT_SAFETY_BUFFER_SATS,
) -> CoinSelection:
    """Accumulate UTXOs in the order given until ``target + buffer`` is exceeded.

    The buffer stands in for the not-yet-known fee, so no fee/size feedback
    loop is needed. An exhausted list is returned as-is; the builder's change
    check is what detects insufficient funds.
    """

    threshold = target_sats + safety_buffer_sats
    selection = CoinSelection()
    for utxo in utxos:
        selection.inputs.append(utxo)
        selection.total_sats += utxo.value_sats
        if selection.total_sats > threshold:
            break
    if selection.total_sats <= threshold:
        logger.debug(
            "UTXO list exhausted below threshold: selected=%d threshold=%d",
            selection.total_sats,
            threshold,
        )
    return selection
