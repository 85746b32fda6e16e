"""
Discount Calculator
===================
Promotional discount for wallet payers.

Paying with a connected wallet earns a flat percentage off the subtotal
(CRYPTO_DISCOUNT_PERCENT, 10 by default). Card payers and shoppers who have
not connected a wallet pay the subtotal.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from errors import ValidationError
from pricing import ZERO, format_money, round_money, to_money


DEFAULT_DISCOUNT_PERCENT = Decimal("10")


class PaymentMethod(Enum):
    CARD = "card"
    CRYPTO = "crypto"


@dataclass(frozen=True)
class DiscountQuote:
    original_amount: Decimal
    discount_percentage: Decimal
    discount_amount: Decimal
    final_amount: Decimal

    @property
    def has_discount(self) -> bool:
        return self.discount_amount > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_amount": format_money(self.original_amount),
            "discount_percentage": str(self.discount_percentage),
            "discount_amount": format_money(self.discount_amount),
            "final_amount": format_money(self.final_amount),
        }


def quote(
    subtotal: Any,
    method: PaymentMethod,
    wallet_connected: bool = False,
    percentage: Optional[Decimal] = None
) -> DiscountQuote:
    """
    Quote the payable amount for a subtotal and payment method.

    Args:
        subtotal: Cart total
        method: Payment method chosen at checkout
        wallet_connected: Whether the shopper's wallet is connected
        percentage: Discount percentage (defaults to 10)

    Returns:
        DiscountQuote; discount_amount is round2(subtotal * pct / 100)

    Raises:
        ValidationError: Negative subtotal or percentage outside 0..100
    """
    original = round_money(to_money(subtotal))
    if original < 0:
        raise ValidationError(f"Subtotal cannot be negative: {original}")

    pct = DEFAULT_DISCOUNT_PERCENT if percentage is None else to_money(percentage)
    if pct < 0 or pct > 100:
        raise ValidationError(f"Discount percentage out of range: {pct}")

    if method == PaymentMethod.CRYPTO and wallet_connected:
        discount = round_money(original * pct / 100)
        applied_pct = pct
    else:
        discount = ZERO
        applied_pct = Decimal("0")

    return DiscountQuote(
        original_amount=original,
        discount_percentage=applied_pct,
        discount_amount=discount,
        final_amount=original - discount
    )
