"""
Checkout Service
================
Orchestrates cart -> quote -> order -> payment -> confirmation.

Flow:
1. Validate customer contact fields
2. Resume the stored order for a known idempotency key, otherwise reject an
   empty cart before any payment call
3. Quote the payable amount (discount calculator)
4. Create the order pending/unpaid (create-before-pay)
5. Charge the payment provider
6. Confirm: reference + paid + confirmed in one store update
7. Clear the cart

A payment failure leaves the pending order in place and raises PaymentError
carrying its id, so the shopper can retry with pay_order(). A charge whose
confirmation fails re-raises with the order id and the payment reference. No
step is rolled back across the store and the provider.
"""

import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from prometheus_client import Counter, Histogram

from cart import Cart
from discount import PaymentMethod, quote
from errors import (
    NotFoundError,
    PaymentError,
    PersistenceError,
    ServiceError,
    ValidationError,
)
from menu import CatalogService
from order import (
    Customer,
    InvalidTransitionError,
    Order,
    OrderLine,
    OrderLineAddon,
    OrderService,
    OrderStatus,
)
from payments import CardDetails, PaymentGateway, WalletDetails
from pricing import ZERO, format_money, round_money, to_money

# Structured logging
logger = structlog.get_logger(__name__)


# ============================================================================
# METRICS
# ============================================================================

checkouts_total = Counter(
    'checkouts_total',
    'Checkout attempts',
    ['result']
)
checkout_duration_seconds = Histogram(
    'checkout_duration_seconds',
    'Checkout duration, payment included'
)


def _parse_method(value: Any) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown payment method: {value!r}")


class CheckoutService:
    """
    Checkout orchestrator.

    Owns no state of its own; carts, orders and payments are injected.
    """

    def __init__(
        self,
        orders: OrderService,
        payments: PaymentGateway,
        catalog: CatalogService,
        discount_percent: Optional[Decimal] = None
    ):
        self.orders = orders
        self.payments = payments
        self.catalog = catalog
        self.discount_percent = discount_percent

    # ------------------------------------------------------------------
    # Cart checkout
    # ------------------------------------------------------------------

    async def checkout(
        self,
        cart: Cart,
        customer: Customer,
        method: Any,
        card: Optional[CardDetails] = None,
        wallet: Optional[WalletDetails] = None,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Order:
        """
        Check out a cart.

        Returns:
            The confirmed order

        Raises:
            ValidationError: Empty cart or bad customer fields
            PaymentError: Provider rejected; details carry the pending order id
            PersistenceError: Order could not be stored
        """
        start = time.monotonic()
        payment_method = _parse_method(method)

        logger.info(
            "checkout_started",
            session_id=cart.session_id,
            lines=len(cart.lines),
            method=payment_method.value,
            idempotency_key=idempotency_key
        )

        try:
            customer.validate()

            if idempotency_key:
                existing = await self.orders.find_by_idempotency_key(idempotency_key)
                if existing is not None:
                    return await self._resume(existing, cart, card=card, wallet=wallet)

            if cart.is_empty():
                raise ValidationError("Cannot check out an empty cart")

            wallet_connected = wallet is not None and wallet.connected
            discount_quote = quote(
                cart.total,
                payment_method,
                wallet_connected=wallet_connected,
                percentage=self.discount_percent
            )

            lines = [OrderLine.from_cart_line(line) for line in cart.lines]
            pending = Order.create_pending(
                customer,
                lines,
                discount_quote,
                payment_method=payment_method.value,
                notes=notes,
                idempotency_key=idempotency_key,
                payment_token=wallet.token.upper() if (
                    payment_method == PaymentMethod.CRYPTO and wallet is not None
                ) else None
            )

            order = await self.orders.create(pending)

            logger.info(
                "order_pending",
                order_id=order.id,
                original=format_money(discount_quote.original_amount),
                discount=format_money(discount_quote.discount_amount),
                total=format_money(discount_quote.final_amount)
            )

            order = await self._pay(order, card=card, wallet=wallet)
            cart.clear()

            checkouts_total.labels(result="success").inc()
            logger.info(
                "checkout_completed",
                order_id=order.id,
                reference=order.payment_reference,
                total=format_money(order.total_amount)
            )
            return order

        except ValidationError as e:
            checkouts_total.labels(result="invalid").inc()
            logger.warning("checkout_rejected", error=e.message)
            raise
        except PaymentError:
            checkouts_total.labels(result="payment_failed").inc()
            raise
        except PersistenceError as e:
            checkouts_total.labels(result="store_error").inc()
            logger.error("checkout_store_error", error=e.message)
            raise
        finally:
            checkout_duration_seconds.observe(time.monotonic() - start)

    async def _resume(
        self,
        existing: Order,
        cart: Cart,
        card: Optional[CardDetails],
        wallet: Optional[WalletDetails]
    ) -> Order:
        """
        Answer a repeated submission with the order stored under its key.

        The session cart must be empty (cleared by the first submission) or
        still add up to the stored subtotal. Anything else means the key was
        reused for a different cart, which is rejected without charging or
        clearing it.
        """
        logger.info(
            "checkout_duplicate_submission",
            order_id=existing.id,
            status=existing.status.value
        )

        if not cart.is_empty() and cart.total != existing.original_amount:
            raise ValidationError(
                "Idempotency key was already used for a different cart",
                {
                    "order_id": existing.id,
                    "expected_subtotal": format_money(existing.original_amount)
                }
            )

        if existing.status == OrderStatus.PENDING:
            order = await self._pay(existing, card=card, wallet=wallet)
            result = "success"
        else:
            order = existing
            result = "duplicate"

        cart.clear()
        checkouts_total.labels(result=result).inc()
        return order

    # ------------------------------------------------------------------
    # Payment retry
    # ------------------------------------------------------------------

    async def pay_order(
        self,
        order_id: int,
        card: Optional[CardDetails] = None,
        wallet: Optional[WalletDetails] = None
    ) -> Order:
        """
        Retry payment for a pending order, charging its stored total.

        Raises:
            NotFoundError: Unknown order
            InvalidTransitionError: Order is no longer pending
            PaymentError: Provider rejected
        """
        order = await self.orders.get(order_id)

        if order.status != OrderStatus.PENDING:
            raise InvalidTransitionError(
                f"Order {order_id} is {order.status.value}, not awaiting payment",
                {"from": order.status.value, "to": OrderStatus.CONFIRMED.value}
            )

        logger.info("payment_retry", order_id=order_id, method=order.payment_method)
        return await self._pay(order, card=card, wallet=wallet)

    async def _pay(
        self,
        order: Order,
        card: Optional[CardDetails],
        wallet: Optional[WalletDetails]
    ) -> Order:
        method = _parse_method(order.payment_method)

        try:
            result = await self.payments.charge(
                order.total_amount,
                method,
                card=card,
                wallet=wallet
            )
        except PaymentError as e:
            logger.warning(
                "payment_failed",
                order_id=order.id,
                method=method.value,
                error=e.message
            )
            raise PaymentError(e.message, {**e.details, "order_id": order.id})

        try:
            return await self.orders.confirm_payment(
                order.id,
                result.reference,
                payment_token=result.payment_token,
                card_last4=result.card_last4,
                card_brand=result.card_brand
            )
        except ServiceError as e:
            # Money moved but the order was not confirmed (store down, or
            # staff changed it meanwhile); staff reconcile by reference
            logger.error(
                "payment_confirmation_failed",
                order_id=order.id,
                reference=result.reference,
                amount=format_money(result.amount),
                error=e.message,
                error_type=type(e).__name__
            )
            raise type(e)(
                e.message,
                {**e.details, "order_id": order.id, "payment_reference": result.reference}
            )

    # ------------------------------------------------------------------
    # Raw order submission
    # ------------------------------------------------------------------

    async def create_order_from_payload(self, payload: Dict[str, Any]) -> Order:
        """
        Create an order from a client-priced payload.

        Lines are re-priced from their unit prices plus the catalog prices of
        their addons; the submitted total must equal the discounted amount.
        A payment reference in the payload confirms the order in the same
        request.

        Raises:
            ValidationError: Missing fields or totals that do not reconcile
        """
        method = _parse_method(payload.get("payment_method"))
        customer = Customer(
            name=payload.get("customer_name") or "",
            email=payload.get("customer_email") or "",
            phone=payload.get("customer_phone") or "",
            address=payload.get("delivery_address") or ""
        )
        customer.validate()

        idempotency_key = payload.get("idempotency_key")
        if idempotency_key:
            existing = await self.orders.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.info("order_duplicate_submission", order_id=existing.id)
                return existing

        lines = await self._price_lines(payload.get("line_items") or [])
        if not lines:
            raise ValidationError("Order must contain at least one item")

        subtotal = round_money(sum((line.total_price for line in lines), ZERO))
        claimed_discount = to_money(payload.get("discount_applied") or "0")

        discount_quote = quote(
            subtotal,
            method,
            wallet_connected=claimed_discount > 0,
            percentage=self.discount_percent
        )

        if round_money(claimed_discount) != discount_quote.discount_amount:
            raise ValidationError(
                f"Discount does not reconcile: {format_money(claimed_discount)} != "
                f"{format_money(discount_quote.discount_amount)}"
            )

        total = round_money(to_money(payload.get("total_amount")))
        if total != discount_quote.final_amount:
            raise ValidationError(
                f"Total does not reconcile: {format_money(total)} != "
                f"{format_money(discount_quote.final_amount)}",
                {"expected_total": format_money(discount_quote.final_amount)}
            )

        pending = Order.create_pending(
            customer,
            lines,
            discount_quote,
            payment_method=method.value,
            notes=payload.get("notes"),
            idempotency_key=idempotency_key,
            payment_token=payload.get("payment_token")
        )
        order = await self.orders.create(pending)

        reference = payload.get("payment_reference")
        if reference:
            order = await self.orders.confirm_payment(
                order.id,
                reference,
                payment_token=payload.get("payment_token"),
                card_last4=payload.get("card_last4"),
                card_brand=payload.get("card_brand")
            )

        logger.info(
            "order_submitted",
            order_id=order.id,
            status=order.status.value,
            total=format_money(order.total_amount)
        )
        return order

    async def _price_lines(self, raw_lines: List[Dict[str, Any]]) -> List[OrderLine]:
        addon_ids = {int(a) for raw in raw_lines for a in raw.get("addon_ids") or []}
        addons_by_id = {}
        if addon_ids:
            addons_by_id = {a.id: a for a in await self.catalog.list_extras()}

        lines = []
        for raw in raw_lines:
            addons = []
            for addon_id in dict.fromkeys(int(a) for a in raw.get("addon_ids") or []):
                addon = addons_by_id.get(addon_id)
                if addon is None:
                    raise ValidationError(f"Unknown extra: {addon_id}")
                addons.append(OrderLineAddon(id=addon.id, name=addon.name, price=addon.price))

            try:
                item = await self.catalog.get_menu_item(int(raw["menu_item_id"]))
            except NotFoundError:
                raise ValidationError(f"Unknown menu item: {raw['menu_item_id']}")

            lines.append(OrderLine.create(
                menu_item_id=item.id,
                name=raw.get("name") or item.name,
                quantity=raw.get("quantity"),
                unit_price=raw.get("unit_price"),
                addons=addons
            ))

        return lines
