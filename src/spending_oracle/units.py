"""Integer base-unit helpers. All on-chain amounts stay integers end to end."""

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR, localcontext


BPS_DENOMINATOR = 10_000
VALUE_DECIMALS = 18


def apply_bps(value: int, bps: int) -> int:
    """Return floor(value * bps / 10000) using integer arithmetic only."""
    if value < 0 or bps < 0:
        raise ValueError("value and bps must be non-negative")
    return value * bps // BPS_DENOMINATOR


def format_units(value: int, decimals: int = VALUE_DECIMALS) -> str:
    """Format integer base units as a decimal string (no float rounding)."""
    if decimals < 0:
        raise ValueError("decimals must be non-negative")
    with localcontext() as ctx:
        ctx.prec = 96
        dec = Decimal(value).scaleb(-decimals)
    text = format(dec, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def parse_units(value: Decimal | int | str, decimals: int = VALUE_DECIMALS) -> int:
    """Convert a human amount to integer base units, rounding down."""
    with localcontext() as ctx:
        ctx.prec = 96
        dec = Decimal(str(value)).scaleb(decimals)
        return int(dec.to_integral_value(rounding=ROUND_FLOOR))


def parse_duration(value: str) -> int:
    """Parse durations like ``86400``, ``90m``, ``24h`` or ``7d`` to seconds."""
    raw = value.strip().lower()
    if raw.isdigit():
        return int(raw)
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit():
        raise ValueError(f"Invalid duration: {value} (expected formats like 3600, 24h, 7d)")
    return int(raw[:-1]) * units[raw[-1]]
