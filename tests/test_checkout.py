from dataclasses import replace
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from cart import Cart
from checkout import CheckoutService
from db import MemoryStore
from errors import PaymentError, PersistenceError, ValidationError
from menu import CatalogService
from order import InvalidTransitionError, OrderService, OrderStatus
from seed import seed_records


DECLINED = "4000 0000 0000 0002"


async def filled_cart(catalog, session_id="s1"):
    """Two Margheritas with Extra Mozzarella: (16.99 + 2.99) x 2 = 39.96."""
    cart = Cart(session_id)
    pizza = await catalog.get_menu_item(1)
    addons = await catalog.resolve_addons(pizza, [1])
    cart.add_item(pizza, 2, addons)
    return cart


# ============================================================================
# CART CHECKOUT
# ============================================================================

async def test_crypto_checkout_end_to_end(checkout_service, catalog, store, customer, wallet):
    cart = await filled_cart(catalog)
    assert cart.total == Decimal("39.96")

    order = await checkout_service.checkout(cart, customer, "crypto", wallet=wallet)

    assert order.status == OrderStatus.CONFIRMED
    assert order.paid is True
    assert order.original_amount == Decimal("39.96")
    assert order.discount_amount == Decimal("4.00")
    assert order.total_amount == Decimal("35.96")
    assert order.payment_reference == wallet.tx_hash
    assert order.payment_token == "USDC"
    assert cart.is_empty()

    stored = await store.get("orders", order.id)
    assert stored["status"] == "confirmed"
    assert stored["total_amount"] == "35.96"
    assert stored["discount_applied"] == "4.00"
    assert stored["menu_items"][0]["addon_ids"] == [1]
    assert store.count("create", "orders") == 1
    assert store.count("update", "orders") == 1


async def test_card_checkout_pays_full_price(checkout_service, catalog, customer, card):
    cart = await filled_cart(catalog)
    order = await checkout_service.checkout(cart, customer, "card", card=card)

    assert order.total_amount == Decimal("39.96")
    assert order.discount_amount == Decimal("0.00")
    assert order.card_last4 == "4242"
    assert order.card_brand == "visa"
    assert order.payment_reference.startswith("card_")


async def test_empty_cart_rejected_before_payment(orders, catalog, store, customer, card):
    gateway = AsyncMock()
    service = CheckoutService(orders, gateway, catalog)

    with pytest.raises(ValidationError):
        await service.checkout(Cart("s1"), customer, "card", card=card)

    gateway.charge.assert_not_called()
    assert await store.list("orders") == []


async def test_missing_customer_field_rejected_before_payment(orders, catalog, customer, card):
    gateway = AsyncMock()
    service = CheckoutService(orders, gateway, catalog)
    cart = await filled_cart(catalog)

    with pytest.raises(ValidationError):
        await service.checkout(cart, replace(customer, phone=""), "card", card=card)

    gateway.charge.assert_not_called()
    assert not cart.is_empty()


async def test_declined_payment_leaves_pending_order(checkout_service, catalog, store, customer, card):
    cart = await filled_cart(catalog)

    with pytest.raises(PaymentError) as exc_info:
        await checkout_service.checkout(cart, customer, "card", card=replace(card, number=DECLINED))

    order_id = exc_info.value.details["order_id"]
    stored = await store.get("orders", order_id)
    assert stored["status"] == "pending"
    assert stored["paid"] is False
    assert stored["transaction_hash"] is None
    assert not cart.is_empty()

    paid = await checkout_service.pay_order(order_id, card=card)
    assert paid.status == OrderStatus.CONFIRMED
    assert paid.total_amount == Decimal("39.96")


async def test_pay_order_rejects_confirmed_order(checkout_service, catalog, customer, card):
    order = await checkout_service.checkout(await filled_cart(catalog), customer, "card", card=card)

    with pytest.raises(InvalidTransitionError):
        await checkout_service.pay_order(order.id, card=card)


async def test_store_failure_on_create_skips_payment(catalog, customer, card):
    class ReadOnlyStore(MemoryStore):
        async def create(self, table, data):
            raise PersistenceError("orders table unavailable")

    gateway = AsyncMock()
    service = CheckoutService(OrderService(ReadOnlyStore(seed=seed_records())), gateway, catalog)

    with pytest.raises(PersistenceError):
        await service.checkout(await filled_cart(catalog), customer, "card", card=card)

    gateway.charge.assert_not_called()


async def test_duplicate_submission_returns_existing_order(checkout_service, catalog, store, customer, card):
    first = await checkout_service.checkout(
        await filled_cart(catalog), customer, "card", card=card, idempotency_key="abc-123"
    )
    second = await checkout_service.checkout(
        await filled_cart(catalog), customer, "card", card=card, idempotency_key="abc-123"
    )

    assert second.id == first.id
    assert len(await store.list("orders")) == 1


async def test_cancel_during_charge_keeps_payment_reference(orders, gateway, catalog, store, customer, card):
    class StaffCancelsMidCharge:
        async def charge(self, amount, method, card=None, wallet=None):
            pending = (await store.list("orders"))[0]
            await orders.cancel(pending["id"], reason="kitchen_closed")
            return await gateway.charge(amount, method, card=card, wallet=wallet)

    service = CheckoutService(orders, StaffCancelsMidCharge(), catalog)
    cart = await filled_cart(catalog)

    with pytest.raises(InvalidTransitionError) as exc_info:
        await service.checkout(cart, customer, "card", card=card)

    details = exc_info.value.details
    assert details["from"] == "cancelled"
    assert details["payment_reference"].startswith("card_")
    stored = await store.get("orders", details["order_id"])
    assert stored["status"] == "cancelled"
    assert stored["paid"] is False
    assert not cart.is_empty()


async def test_duplicate_submission_with_changed_cart_is_rejected(checkout_service, catalog, store, customer, card):
    cart = await filled_cart(catalog)
    with pytest.raises(PaymentError):
        await checkout_service.checkout(
            cart, customer, "card", card=replace(card, number=DECLINED), idempotency_key="k-9"
        )

    cart.add_item(await catalog.get_menu_item(7), 1, [])

    with pytest.raises(ValidationError) as exc_info:
        await checkout_service.checkout(cart, customer, "card", card=card, idempotency_key="k-9")

    assert exc_info.value.details["expected_subtotal"] == "39.96"
    assert not cart.is_empty()
    assert (await store.list("orders"))[0]["status"] == "pending"


async def test_duplicate_submission_after_cart_was_cleared(checkout_service, catalog, customer, card):
    first = await checkout_service.checkout(
        await filled_cart(catalog), customer, "card", card=card, idempotency_key="k-10"
    )
    again = await checkout_service.checkout(
        Cart("s1"), customer, "card", card=card, idempotency_key="k-10"
    )
    assert again.id == first.id


async def test_unknown_payment_method(checkout_service, catalog, customer):
    with pytest.raises(ValidationError):
        await checkout_service.checkout(await filled_cart(catalog), customer, "cash")


# ============================================================================
# RAW ORDER SUBMISSION
# ============================================================================

def order_payload(**overrides):
    payload = {
        "customer_name": "Marco Bianchi",
        "customer_email": "marco@example.com",
        "customer_phone": "+39 02 1234 5678",
        "delivery_address": "Corso Buenos Aires 10, Milano",
        "line_items": [
            {"menu_item_id": 1, "quantity": 2, "unit_price": Decimal("16.99"), "addon_ids": [1], "name": None},
        ],
        "total_amount": Decimal("35.96"),
        "payment_method": "crypto",
        "payment_reference": None,
        "discount_applied": Decimal("4.00"),
        "payment_token": "PRDX",
        "card_last4": None,
        "card_brand": None,
        "notes": None,
        "idempotency_key": None,
    }
    payload.update(overrides)
    return payload


async def test_payload_order_is_created_pending(checkout_service):
    order = await checkout_service.create_order_from_payload(order_payload())

    assert order.status == OrderStatus.PENDING
    assert order.total_amount == Decimal("35.96")
    assert order.lines[0].name == "Pizza Margherita"
    assert order.lines[0].addons[0].name == "Extra Mozzarella"
    assert order.payment_token == "PRDX"


async def test_payload_with_reference_is_confirmed(checkout_service):
    order = await checkout_service.create_order_from_payload(
        order_payload(payment_reference="0xdeadbeef")
    )
    assert order.status == OrderStatus.CONFIRMED
    assert order.paid is True


@pytest.mark.parametrize("overrides", [
    {"total_amount": Decimal("39.96")},
    {"payment_method": "card"},
    {"discount_applied": Decimal("3.00"), "total_amount": Decimal("36.96")},
    {"line_items": [{"menu_item_id": 7, "quantity": 1, "unit_price": Decimal("18.99"), "addon_ids": [99]}]},
    {"line_items": []},
    {"customer_email": "nope"},
])
async def test_payload_that_does_not_reconcile(checkout_service, store, overrides):
    with pytest.raises(ValidationError):
        await checkout_service.create_order_from_payload(order_payload(**overrides))
    assert await store.list("orders") == []


@pytest.mark.parametrize("name", [None, "Pizza Fantasma"])
async def test_payload_with_unknown_menu_item(checkout_service, store, name):
    payload = order_payload(
        line_items=[{"menu_item_id": 999, "quantity": 2, "unit_price": Decimal("16.99"), "addon_ids": [], "name": name}],
        discount_applied=Decimal("3.40"),
        total_amount=Decimal("30.58"),
    )

    with pytest.raises(ValidationError) as exc_info:
        await checkout_service.create_order_from_payload(payload)

    assert "Unknown menu item" in exc_info.value.message
    assert await store.list("orders") == []


async def test_payload_name_comes_from_catalog_when_missing(checkout_service):
    order = await checkout_service.create_order_from_payload(order_payload(
        line_items=[{"menu_item_id": 1, "quantity": 2, "unit_price": Decimal("16.99"), "addon_ids": []}],
        discount_applied=Decimal("3.40"),
        total_amount=Decimal("30.58"),
    ))
    assert order.lines[0].menu_item_id == 1
    assert order.lines[0].name == "Pizza Margherita"
