"""Fee-rate selection and miner/service fee splitting for reveal transactions."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Tuple

from .model import MAX_SERVICE_FEE, MIN_SERVICE_FEE, SERVICE_FEE_BPS
from .providers import ProviderError

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000

DEFAULT_CONF_TARGET = 6
DEFAULT_FALLBACK_FEE_RATE_SATVB = 15.0
MIN_RELAY_FEE_RATE_SATVB = 1.0
ENV_MIN_FEE_RATE_FLOOR = "RUNE_ETCHER_MIN_FEE_RATE_SATVB"
ENV_FALLBACK_FEE_RATE = "RUNE_ETCHER_FALLBACK_FEE_RATE_SATVB"


def calculate_fee_sats(fee_rate_sat_vb: float, vsize: int) -> int:
    """Return the ceil'd fee in satoshis for the provided vsize."""

    return int(math.ceil(fee_rate_sat_vb * vsize))


def compute_service_fee(
    miner_fee: int,
    *,
    min_service_fee: int = MIN_SERVICE_FEE,
    max_service_fee: int = MAX_SERVICE_FEE,
    service_fee_bps: int = SERVICE_FEE_BPS,
) -> int:
    """Return the service fee: a share of the miner fee clamped to bounds."""

    if min_service_fee > max_service_fee:
        raise ValueError(
            f"min_service_fee {min_service_fee} exceeds max_service_fee {max_service_fee}"
        )
    share = miner_fee * service_fee_bps // BPS_DENOMINATOR
    return max(min_service_fee, min(share, max_service_fee))


@dataclass(frozen=True)
class FeeSplit:
    """Miner and service fees for one reveal."""

    vsize: int
    fee_rate_sat_vb: float
    miner_fee: int
    service_fee: int

    @property
    def total_fee(self) -> int:
        return self.miner_fee + self.service_fee


def compute_fee_split(
    vsize: int,
    fee_rate_sat_vb: float,
    *,
    min_service_fee: int = MIN_SERVICE_FEE,
    max_service_fee: int = MAX_SERVICE_FEE,
    service_fee_bps: int = SERVICE_FEE_BPS,
) -> FeeSplit:
    if fee_rate_sat_vb <= 0:
        raise ValueError(f"fee rate must be positive, got {fee_rate_sat_vb}")
    miner_fee = calculate_fee_sats(fee_rate_sat_vb, vsize)
    service_fee = compute_service_fee(
        miner_fee,
        min_service_fee=min_service_fee,
        max_service_fee=max_service_fee,
        service_fee_bps=service_fee_bps,
    )
    return FeeSplit(
        vsize=vsize,
        fee_rate_sat_vb=fee_rate_sat_vb,
        miner_fee=miner_fee,
        service_fee=service_fee,
    )


@dataclass
class FeeSelectionResult:
    """Container for fee-rate decisions."""

    fee_rate_sat_vb: float
    source: str
    floors_applied: list[Tuple[str, float]]


def _env_override(name: str) -> float | None:
    raw = os.environ.get(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid float in %s=%s; ignoring", name, raw)
        return None


def _estimate_for_target(estimates: Mapping[str, Any], conf_target: int) -> float | None:
    """Pick the estimate for ``conf_target`` or the nearest slower target."""

    parsed: list[Tuple[int, float]] = []
    for key, value in estimates.items():
        try:
            parsed.append((int(key), float(value)))
        except (TypeError, ValueError):
            logger.debug("Skipping unparsable fee estimate %s=%s", key, value)
    if not parsed:
        return None
    parsed.sort()
    for target, rate in parsed:
        if target >= conf_target:
            return rate
    return parsed[-1][1]


def select_fee_rate(
    provider: Any,
    *,
    conf_target: int | None = None,
    user_fee_rate_satvb: float | None = None,
    min_fee_rate_satvb_floor: float | None = None,
    fallback_fee_rate_satvb: float | None = None,
) -> FeeSelectionResult:
    """Select a fee rate from user input, provider estimates and floors."""

    floor_candidates: list[Tuple[str, float]] = [("min_relay", MIN_RELAY_FEE_RATE_SATVB)]
    for label, raw in (
        ("env", _env_override(ENV_MIN_FEE_RATE_FLOOR)),
        ("cli_floor", min_fee_rate_satvb_floor),
    ):
        if raw is not None:
            floor_candidates.append((label, float(raw)))

    floor_value = max(rate for _, rate in floor_candidates)
    floors_applied = [(label, rate) for label, rate in floor_candidates if rate == floor_value]

    fee_rate = None
    source = "unknown"

    if user_fee_rate_satvb is not None:
        fee_rate = float(user_fee_rate_satvb)
        source = "user"
    else:
        target = conf_target or DEFAULT_CONF_TARGET
        try:
            estimates = provider.fee_estimates() or {}
        except ProviderError as exc:
            logger.info("Fee estimates unavailable: %s", exc)
            estimates = {}
        estimate = _estimate_for_target(estimates, target)
        if estimate is not None:
            fee_rate = estimate
            source = f"estimate[{target}]"

    if fee_rate is None:
        fallback = (
            _env_override(ENV_FALLBACK_FEE_RATE)
            or fallback_fee_rate_satvb
            or DEFAULT_FALLBACK_FEE_RATE_SATVB
        )
        fee_rate = float(fallback)
        source = "fallback"

    if fee_rate < floor_value:
        logger.debug("Applying fee floor %.2f sat/vB over %s", floor_value, fee_rate)
        fee_rate = floor_value

    return FeeSelectionResult(
        fee_rate_sat_vb=fee_rate,
        source=source,
        floors_applied=floors_applied,
    )


def format_floors_for_log(floors: Iterable[Tuple[str, float]]) -> str:
    """Format fee floors for user-facing logs."""

    entries = [f"{label}={rate:.2f} sat/vB" for label, rate in floors]
    return ", ".join(entries) if entries else "none"
