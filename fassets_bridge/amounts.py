"""
Amount conversion between raw integer units and decimal amounts.

XRP and FXRP both use 6 decimals (1 XRP = 1_000_000 drops). Raw
amounts are integers as they appear on-chain; decimal amounts are
``Decimal`` and are persisted as fixed-point strings ("99.750000").
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation

XRP_DECIMALS = 6

# Seconds between the Unix epoch and the Ripple epoch (2000-01-01T00:00:00Z).
RIPPLE_EPOCH_OFFSET = 946684800


def to_decimal(value: str | int | Decimal) -> Decimal:
    """Parse a user-supplied amount. Raises ValueError on garbage."""
    try:
        result = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"invalid amount: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"invalid amount: {value!r}")
    return result


def from_raw(raw: int, decimals: int = XRP_DECIMALS) -> Decimal:
    """Convert raw integer units to a decimal amount."""
    return Decimal(raw).scaleb(-decimals)


def to_raw(amount: Decimal, decimals: int = XRP_DECIMALS) -> int:
    """Convert a decimal amount to raw integer units, truncating dust."""
    return int(amount.scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))


def quantize_amount(amount: Decimal, decimals: int = XRP_DECIMALS) -> Decimal:
    """Truncate to exactly ``decimals`` places."""
    return amount.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)


def format_amount(amount: Decimal, decimals: int = XRP_DECIMALS) -> str:
    """Fixed-point string with exactly ``decimals`` places."""
    return f"{quantize_amount(amount, decimals):f}"
