from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

_CENT = Decimal("0.01")


def round_money(value: Decimal) -> Decimal:
    """Round to 2 decimal places, half away from zero."""
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal) -> str:
    """Format a monetary amount for the XML: always 2 decimal places."""
    return f"{round_money(value):.2f}"


def format_quantity(value: Decimal) -> str:
    """Format a quantity or unit value, keeping its precision but at least 2 decimals."""
    normalized = value.normalize()
    if -normalized.as_tuple().exponent <= 2:
        return f"{value:.2f}"
    return format(normalized, "f")


def format_percent(value: Decimal) -> str:
    return f"{value:.2f}"
