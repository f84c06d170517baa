"""
Platform fee split.

Every metered request is split between the gateway owner and the platform.
The platform share is rounded up, so the two shares always add back up to
the total cost.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Optional

DEFAULT_PLATFORM_FEE_PERCENT = 2


@dataclass(frozen=True)
class FeeBreakdown:
    """How a single charge is divided."""
    total_cost: int
    dev_earnings: int
    platform_fee: int


def calculate_fees(cost_sats: int, platform_fee_percent: Any = DEFAULT_PLATFORM_FEE_PERCENT) -> FeeBreakdown:
    """
    Split a charge into earner and platform shares.

    Args:
        cost_sats: Total charge in sats (>= 0).
        platform_fee_percent: Platform cut, 0-100. Fractions are allowed.

    Returns:
        FeeBreakdown where platform_fee = ceil(cost * pct / 100).
    """
    # Fraction(str(...)) keeps 2.5 exact instead of 2.4999...
    pct = Fraction(str(platform_fee_percent))
    platform_fee = math.ceil(Fraction(cost_sats) * pct / 100)
    return FeeBreakdown(
        total_cost=cost_sats,
        dev_earnings=cost_sats - platform_fee,
        platform_fee=platform_fee,
    )


def get_platform_fee_percent(value: Optional[Any]) -> float:
    """Parse a configured fee percent, falling back to the default."""
    if value is None or value == "":
        return DEFAULT_PLATFORM_FEE_PERCENT
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return DEFAULT_PLATFORM_FEE_PERCENT
    if math.isnan(parsed) or parsed < 0 or parsed > 100:
        return DEFAULT_PLATFORM_FEE_PERCENT
    return parsed
