"""
Pricing Engine
==============
Pure money arithmetic for cart lines and carts.

Amounts are Decimal end to end. Arithmetic runs at full precision and is
rounded to cents (ROUND_HALF_UP) only when a money value leaves a function.
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable

from errors import ValidationError


logger = logging.getLogger(__name__)


CENT = Decimal("0.01")
ZERO = Decimal("0.00")


# ============================================================================
# MONEY HELPERS
# ============================================================================

def to_money(value: Any) -> Decimal:
    """
    Parse a price into Decimal without rounding.

    Accepts Decimal, int, str and float (floats go through str() so that
    16.99 stays 16.99). Booleans and non-finite values are rejected.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"Invalid amount: {value!r}")

    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Invalid amount: {value!r}")

    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")

    return amount


def round_money(amount: Decimal) -> Decimal:
    """Round to cents, half up."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(amount: Decimal) -> str:
    """Serialize money as a fixed two-decimal string ("39.96")."""
    return str(round_money(amount))


# ============================================================================
# LINE AND CART TOTALS
# ============================================================================

def line_total(
    base_price: Any,
    addon_prices: Iterable[Any],
    quantity: int
) -> Decimal:
    """
    Compute (base_price + sum(addon_prices)) * quantity.

    Args:
        base_price: Menu item unit price
        addon_prices: Unit prices of the selected addons (order irrelevant)
        quantity: Positive integer quantity

    Returns:
        Line total rounded to cents

    Raises:
        ValidationError: Negative price or non-positive quantity
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError(f"Quantity must be an integer: {quantity!r}")

    if quantity < 1:
        raise ValidationError(f"Quantity must be at least 1: {quantity}")

    base = to_money(base_price)
    if base < 0:
        raise ValidationError(f"Price cannot be negative: {base}")

    unit = base
    for raw in addon_prices:
        addon = to_money(raw)
        if addon < 0:
            raise ValidationError(f"Addon price cannot be negative: {addon}")
        unit += addon

    return round_money(unit * quantity)


def cart_total(lines: Iterable[Any]) -> Decimal:
    """
    Sum of line totals. Each line exposes ``total_price``.

    Returns 0.00 for an empty cart.
    """
    total = sum((to_money(line.total_price) for line in lines), ZERO)
    return round_money(total)
