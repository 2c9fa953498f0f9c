"""
Spending allowance from portfolio value, basis-point cap and spend in window.

Spending is one-directional inside a window: nothing here credits spend back.
Allowance only recovers when older spend slides out of the window on a later
rebuild.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .units import BPS_DENOMINATOR, apply_bps, format_units

logger = logging.getLogger(__name__)


DEFAULT_MAX_SPENDING_BPS = 500
DEFAULT_WINDOW_DURATION = 86_400


@dataclass(frozen=True)
class AllowanceLimits:
    """Per-account limits read from the reference store."""

    max_spending_bps: int = DEFAULT_MAX_SPENDING_BPS
    window_duration: int = DEFAULT_WINDOW_DURATION

    def __post_init__(self) -> None:
        if self.max_spending_bps < 0 or self.max_spending_bps > BPS_DENOMINATOR:
            raise ValueError(f"max_spending_bps out of range: {self.max_spending_bps}")
        if self.window_duration < 0:
            raise ValueError(f"window_duration must be non-negative: {self.window_duration}")


def max_spending(portfolio_value: int, max_spending_bps: int) -> int:
    return apply_bps(portfolio_value, max_spending_bps)


def calculate_allowance(portfolio_value: int, max_spending_bps: int, spending_in_window: int) -> int:
    """Return max(0, floor(value * bps / 10000) - spending_in_window)."""
    if spending_in_window < 0:
        raise ValueError("spending_in_window must be non-negative")
    cap = max_spending(portfolio_value, max_spending_bps)
    return max(0, cap - spending_in_window)


def allowance_summary(
    portfolio_value: int,
    max_spending_bps: int,
    spending_in_window: int,
    decimals: int = 18,
) -> dict:
    """Get a human-readable allowance breakdown."""
    cap = max_spending(portfolio_value, max_spending_bps)
    allowance = calculate_allowance(portfolio_value, max_spending_bps, spending_in_window)
    utilization = f"{(spending_in_window / cap * 100):.1f}%" if cap > 0 else "N/A"
    return {
        "portfolio_value": format_units(portfolio_value, decimals),
        "max_spending_bps": max_spending_bps,
        "max_spending": format_units(cap, decimals),
        "spent_in_window": format_units(spending_in_window, decimals),
        "allowance": format_units(allowance, decimals),
        "utilization": utilization,
    }
