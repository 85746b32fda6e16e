from decimal import Decimal
from types import SimpleNamespace

import pytest

from errors import ValidationError
from pricing import cart_total, format_money, line_total, to_money


def test_line_total_with_addon():
    assert line_total(Decimal("16.99"), [Decimal("2.99")], 2) == Decimal("39.96")


def test_line_total_accepts_floats_without_drift():
    assert line_total(16.99, [2.99], 2) == Decimal("39.96")
    assert line_total(0.1, [0.2], 3) == Decimal("0.90")


def test_line_total_ignores_addon_order():
    addons = [Decimal("2.99"), Decimal("1.99"), Decimal("4.99")]
    assert line_total("9.99", addons, 3) == line_total("9.99", list(reversed(addons)), 3)


def test_line_total_rounds_half_up():
    assert line_total("0.005", [], 1) == Decimal("0.01")
    assert line_total("1.125", [], 1) == Decimal("1.13")


@pytest.mark.parametrize("base, addons, quantity", [
    ("-1.00", [], 1),
    ("5.00", ["-0.50"], 1),
    ("5.00", [], 0),
    ("5.00", [], -2),
    ("5.00", [], 1.5),
    ("5.00", [], True),
])
def test_line_total_rejects_bad_inputs(base, addons, quantity):
    with pytest.raises(ValidationError):
        line_total(base, addons, quantity)


def test_cart_total_sums_lines():
    lines = [
        SimpleNamespace(total_price=Decimal("39.96")),
        SimpleNamespace(total_price=Decimal("8.99")),
    ]
    assert cart_total(lines) == Decimal("48.95")


def test_empty_cart_total_is_zero():
    assert cart_total([]) == Decimal("0")
    assert format_money(cart_total([])) == "0.00"


@pytest.mark.parametrize("value", [None, True, "abc", "NaN", "Infinity"])
def test_to_money_rejects_invalid(value):
    with pytest.raises(ValidationError):
        to_money(value)


def test_format_money_pads_cents():
    assert format_money(Decimal("5")) == "5.00"
    assert format_money(Decimal("3.996")) == "4.00"
