"""Utility functions and helpers."""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

Number = Union[Decimal, int, float, str]

# Fractional digits kept for every cost figure unless configured otherwise.
DEFAULT_COST_PRECISION = 10


def to_decimal(value: Number) -> Decimal:
    """Convert a number to Decimal without inheriting float representation noise.

    Args:
        value: Decimal, int, float or numeric string

    Returns:
        Decimal value (floats go through str() so 0.03 stays 0.03)
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def quantize_cost(value: Number, precision: int = DEFAULT_COST_PRECISION) -> Decimal:
    """Round a cost to a fixed number of fractional digits.

    Args:
        value: Cost value
        precision: Number of fractional digits

    Returns:
        Quantized Decimal
    """
    quantum = Decimal(1).scaleb(-precision)
    return to_decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)


def format_cost(cost: Number, currency: str = "USD") -> str:
    """Format cost as currency string.

    Args:
        cost: Cost value
        currency: ISO currency code

    Returns:
        Formatted cost string (e.g., "$0.00338" or "0.00338 EUR")
    """
    amount = f"{to_decimal(cost):.5f}"
    if currency == "USD":
        return f"${amount}"
    return f"{amount} {currency}"


def format_percentage(percent: Number, include_sign: bool = False) -> str:
    """Format percentage value.

    Args:
        percent: Percentage value
        include_sign: Include + sign for positive values

    Returns:
        Formatted percentage string (e.g., "82.5%")
    """
    value = float(percent)
    if include_sign and value > 0:
        return f"+{value:.1f}%"
    return f"{value:.1f}%"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)
