from dataclasses import replace
from decimal import Decimal

import pytest

from discount import PaymentMethod, quote
from errors import NotFoundError, ValidationError
from order import (
    InvalidTransitionError,
    Order,
    OrderLifecycle,
    OrderLine,
    OrderLineAddon,
    OrderStatus,
)


def make_lines():
    return [
        OrderLine.create(
            menu_item_id=1,
            name="Pizza Margherita",
            quantity=2,
            unit_price="16.99",
            addons=[OrderLineAddon(id=1, name="Extra Mozzarella", price=Decimal("2.99"))]
        )
    ]


def make_order(customer, method=PaymentMethod.CRYPTO, **kwargs):
    lines = make_lines()
    discount_quote = quote(Decimal("39.96"), method, wallet_connected=True)
    return Order.create_pending(customer, lines, discount_quote, method.value, **kwargs)


# ============================================================================
# ORDER CONSTRUCTION
# ============================================================================

def test_new_order_is_pending_and_unpaid(customer):
    order = make_order(customer)

    assert order.status == OrderStatus.PENDING
    assert order.paid is False
    assert order.payment_reference is None
    assert order.original_amount == Decimal("39.96")
    assert order.discount_amount == Decimal("4.00")
    assert order.total_amount == Decimal("35.96")
    assert order.validate() == (True, [])


def test_empty_lines_rejected(customer):
    with pytest.raises(ValidationError):
        Order.create_pending(customer, [], quote("0", PaymentMethod.CARD), "card")


def test_quote_must_match_lines(customer):
    with pytest.raises(ValidationError):
        Order.create_pending(customer, make_lines(), quote("10.00", PaymentMethod.CARD), "card")


@pytest.mark.parametrize("field", ["name", "email", "phone", "address"])
def test_missing_customer_field_rejected(customer, field):
    incomplete = replace(customer, **{field: "  "})
    with pytest.raises(ValidationError):
        incomplete.validate()


def test_malformed_email_rejected(customer):
    with pytest.raises(ValidationError):
        replace(customer, email="not-an-email").validate()


def test_record_round_trip_keeps_frozen_lines(customer):
    order = make_order(customer, notes="Ring twice")
    order.id = 7

    restored = Order.from_record({"id": 7, **order.to_record()})

    assert restored.lines == order.lines
    assert restored.total_amount == Decimal("35.96")
    assert restored.discount_amount == Decimal("4.00")
    assert restored.notes == "Ring twice"
    assert restored.to_record()["menu_items"][0]["addon_ids"] == [1]


# ============================================================================
# LIFECYCLE
# ============================================================================

def test_confirm_payment_is_one_patch(customer):
    order = make_order(customer)
    patch = OrderLifecycle(order).confirm_payment("0xabc", payment_token="USDC")

    assert patch["status"] == "confirmed"
    assert patch["paid"] is True
    assert patch["transaction_hash"] == "0xabc"
    assert patch["payment_token"] == "USDC"
    assert order.status == OrderStatus.CONFIRMED
    assert order.validate() == (True, [])


def test_full_fulfilment_path(customer):
    order = make_order(customer)
    lifecycle = OrderLifecycle(order)
    lifecycle.confirm_payment("card_123")

    for target in (OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.DELIVERED):
        assert lifecycle.transition(target)["status"] == target.value

    assert lifecycle.is_terminal()
    assert [h["status"] for h in lifecycle.get_history()] == [
        "pending", "confirmed", "preparing", "ready", "delivered"
    ]


def test_skipping_a_step_is_rejected(customer):
    lifecycle = OrderLifecycle(make_order(customer))
    with pytest.raises(InvalidTransitionError):
        lifecycle.transition(OrderStatus.PREPARING)


def test_confirm_requires_payment_reference(customer):
    lifecycle = OrderLifecycle(make_order(customer))
    with pytest.raises(ValidationError) as exc_info:
        lifecycle.transition(OrderStatus.CONFIRMED)
    assert not isinstance(exc_info.value, InvalidTransitionError)
    assert lifecycle.current_state == OrderStatus.PENDING


def test_same_status_is_a_noop(customer):
    order = make_order(customer)
    assert OrderLifecycle(order).transition(OrderStatus.PENDING) == {}


@pytest.mark.parametrize("terminal", [OrderStatus.DELIVERED, OrderStatus.CANCELLED])
def test_terminal_states_reject_everything(customer, terminal):
    order = make_order(customer)
    order.status = terminal
    lifecycle = OrderLifecycle(order)

    for target in OrderStatus:
        with pytest.raises(InvalidTransitionError):
            lifecycle.transition(target)


def test_cancel_allowed_only_before_preparation(customer):
    pending = make_order(customer)
    assert OrderLifecycle(pending).cancel()["status"] == "cancelled"

    confirmed = make_order(customer)
    lifecycle = OrderLifecycle(confirmed)
    lifecycle.confirm_payment("card_1")
    lifecycle.cancel()
    assert confirmed.status == OrderStatus.CANCELLED
    assert confirmed.validate() == (True, [])

    preparing = make_order(customer)
    lifecycle = OrderLifecycle(preparing)
    lifecycle.confirm_payment("card_2")
    lifecycle.transition(OrderStatus.PREPARING)
    with pytest.raises(InvalidTransitionError):
        lifecycle.cancel()


def test_confirm_payment_twice_rejected(customer):
    lifecycle = OrderLifecycle(make_order(customer))
    lifecycle.confirm_payment("card_1")
    with pytest.raises(InvalidTransitionError):
        lifecycle.confirm_payment("card_2")


# ============================================================================
# ORDER SERVICE
# ============================================================================

async def test_service_create_and_get(orders, customer):
    created = await orders.create(make_order(customer))

    assert created.id == 1
    fetched = await orders.get(created.id)
    assert fetched.status == OrderStatus.PENDING
    assert fetched.total_amount == Decimal("35.96")


async def test_service_confirm_payment_writes_once(orders, store, customer):
    created = await orders.create(make_order(customer))
    confirmed = await orders.confirm_payment(created.id, "0xfeed", payment_token="USDC")

    assert confirmed.status == OrderStatus.CONFIRMED
    assert confirmed.paid is True
    assert confirmed.payment_reference == "0xfeed"
    assert store.count("update", "orders") == 1


async def test_service_update_status_with_reference_confirms(orders, customer):
    created = await orders.create(make_order(customer))
    updated = await orders.update_status(created.id, "confirmed", payment_reference="card_9")

    assert updated.status == OrderStatus.CONFIRMED
    assert updated.paid is True


async def test_service_update_status_validates(orders, customer):
    created = await orders.create(make_order(customer))

    with pytest.raises(InvalidTransitionError):
        await orders.update_status(created.id, "ready")
    with pytest.raises(ValidationError):
        await orders.update_status(created.id, "shipped")
    with pytest.raises(ValidationError):
        await orders.update_status(created.id, None)
    with pytest.raises(NotFoundError):
        await orders.update_status(999, "cancelled")


async def test_service_noop_update_skips_write(orders, store, customer):
    created = await orders.create(make_order(customer))
    await orders.update_status(created.id, "pending")
    assert store.count("update", "orders") == 0


async def test_service_list_filter_and_board(orders, customer):
    first = await orders.create(make_order(customer))
    second = await orders.create(make_order(customer))
    third = await orders.create(make_order(customer))
    await orders.confirm_payment(second.id, "card_a")
    await orders.confirm_payment(third.id, "card_b")
    await orders.update_status(third.id, "preparing")
    await orders.cancel(first.id, reason="customer_called")

    pending = await orders.list(OrderStatus.PENDING)
    assert pending == []

    board = await orders.board()
    assert [o.id for o in board["pending"]] == []
    assert sorted(o.id for o in board["active"]) == [second.id, third.id]
    assert [o.id for o in board["completed"]] == [first.id]


async def test_service_find_by_idempotency_key(orders, customer):
    created = await orders.create(make_order(customer, idempotency_key="key-1"))

    found = await orders.find_by_idempotency_key("key-1")
    assert found.id == created.id
    assert await orders.find_by_idempotency_key("other") is None


async def test_service_refuses_to_store_an_inconsistent_order(orders, store, customer):
    tampered = replace(make_order(customer), total_amount=Decimal("1.00"))

    with pytest.raises(ValidationError) as exc_info:
        await orders.create(tampered)

    assert "Total mismatch" in exc_info.value.details["problems"][0]
    assert await store.list("orders") == []


async def test_service_refuses_to_update_an_inconsistent_record(orders, store, customer):
    record = make_order(customer).to_record()
    record["total_amount"] = "1.00"
    created = await store.create("orders", record)

    with pytest.raises(ValidationError):
        await orders.update_status(created["id"], "cancelled")

    assert (await store.get("orders", created["id"]))["status"] == "pending"
    assert store.count("update", "orders") == 0


async def test_service_paid_flag_follows_the_payment_reference(orders, store, customer):
    created = await orders.create(make_order(customer))

    with pytest.raises(ValidationError):
        await orders.update_status(created.id, None, paid=True)
    assert store.count("update", "orders") == 0

    confirmed = await orders.update_status(created.id, None, payment_reference="0xbeef", paid=True)
    assert confirmed.paid is True
    assert confirmed.status == OrderStatus.CONFIRMED

    with pytest.raises(ValidationError):
        await orders.update_status(created.id, None, paid=False)

    unchanged = await orders.update_status(created.id, None, paid=True)
    assert unchanged.payment_reference == "0xbeef"
    assert store.count("update", "orders") == 1
