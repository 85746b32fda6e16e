from decimal import Decimal

import pytest

from discount import PaymentMethod, quote
from errors import ValidationError


def test_crypto_with_connected_wallet_gets_ten_percent():
    result = quote(Decimal("39.96"), PaymentMethod.CRYPTO, wallet_connected=True)

    assert result.original_amount == Decimal("39.96")
    assert result.discount_percentage == Decimal("10")
    assert result.discount_amount == Decimal("4.00")
    assert result.final_amount == Decimal("35.96")
    assert result.has_discount


def test_crypto_without_wallet_pays_full_price():
    result = quote(Decimal("39.96"), PaymentMethod.CRYPTO, wallet_connected=False)
    assert result.discount_amount == Decimal("0")
    assert result.final_amount == Decimal("39.96")
    assert not result.has_discount


def test_card_never_discounted():
    result = quote(Decimal("39.96"), PaymentMethod.CARD, wallet_connected=True)
    assert result.discount_amount == Decimal("0")
    assert result.final_amount == Decimal("39.96")


def test_configured_percentage():
    result = quote("20.00", PaymentMethod.CRYPTO, wallet_connected=True, percentage=Decimal("15"))
    assert result.discount_amount == Decimal("3.00")
    assert result.final_amount == Decimal("17.00")


def test_discount_rounds_half_up():
    result = quote("0.05", PaymentMethod.CRYPTO, wallet_connected=True)
    assert result.discount_amount == Decimal("0.01")
    assert result.final_amount == Decimal("0.04")


def test_zero_subtotal_quotes_zero():
    result = quote("0", PaymentMethod.CRYPTO, wallet_connected=True)
    assert result.final_amount == Decimal("0")


def test_negative_subtotal_rejected():
    with pytest.raises(ValidationError):
        quote("-1.00", PaymentMethod.CARD)


@pytest.mark.parametrize("percentage", [Decimal("-1"), Decimal("100.01")])
def test_percentage_out_of_range_rejected(percentage):
    with pytest.raises(ValidationError):
        quote("10.00", PaymentMethod.CRYPTO, wallet_connected=True, percentage=percentage)


def test_to_dict():
    data = quote("39.96", PaymentMethod.CRYPTO, wallet_connected=True).to_dict()
    assert data == {
        "original_amount": "39.96",
        "discount_percentage": "10",
        "discount_amount": "4.00",
        "final_amount": "35.96",
    }
