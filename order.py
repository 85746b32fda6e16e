"""
Order Module
============
Order lifecycle state machine and the staff order service.

State flow:
    pending -> confirmed -> preparing -> ready -> delivered
    pending | confirmed -> cancelled

Invariants:
- Orders are created pending and unpaid, before any payment is attempted
- Payment confirmation sets the reference, paid flag and confirmed status in
  one update
- Transitions are validated against the table; skipping a step raises
- delivered and cancelled are terminal
- Line items are frozen copies; later menu edits never change an order
- Every write is checked with Order.validate(); an inconsistent order is
  never stored
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from prometheus_client import Counter

from errors import ValidationError
from pricing import ZERO, format_money, line_total, round_money, to_money


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

order_state_transitions = Counter(
    'order_state_transitions_total',
    'Order state transitions',
    ['from_state', 'to_state']
)
order_rejected_transitions = Counter(
    'order_rejected_transitions_total',
    'Rejected order state transitions',
    ['from_state', 'to_state']
)


# ============================================================================
# ORDER STATUS
# ============================================================================

class OrderStatus(Enum):
    """
    Order lifecycle states.

    Terminal states: DELIVERED, CANCELLED
    """
    PENDING = "pending"          # Submitted, awaiting payment
    CONFIRMED = "confirmed"      # Paid
    PREPARING = "preparing"      # Kitchen working on it
    READY = "ready"              # Ready for hand-off
    DELIVERED = "delivered"      # Handed over (terminal)
    CANCELLED = "cancelled"      # Cancelled by staff (terminal)


ACTIVE_STATUSES = {OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY}
TERMINAL_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}


class InvalidTransitionError(ValidationError):
    """Raised when an order status change is not in the transition table."""
    pass


def parse_status(value: Any) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown order status: {value!r}")


# ============================================================================
# CUSTOMER
# ============================================================================

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class Customer:
    name: str
    email: str
    phone: str
    address: str

    def validate(self):
        """
        Raises:
            ValidationError: Missing or malformed contact fields
        """
        missing = [
            label for label, value in (
                ("name", self.name),
                ("email", self.email),
                ("phone", self.phone),
                ("address", self.address),
            )
            if not value or not str(value).strip()
        ]
        if missing:
            raise ValidationError(
                f"Missing customer information: {', '.join(missing)}",
                {"fields": missing}
            )

        if not EMAIL_PATTERN.match(self.email.strip()):
            raise ValidationError(f"Invalid email address: {self.email}")


# ============================================================================
# FROZEN ORDER LINES
# ============================================================================

@dataclass(frozen=True)
class OrderLineAddon:
    id: int
    name: str
    price: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "price": format_money(self.price)}


@dataclass(frozen=True)
class OrderLine:
    """
    Purchased line, copied as data at checkout.

    unit_price is the menu item's base price; addon prices are listed
    separately and total_price covers both.
    """
    menu_item_id: int
    name: str
    quantity: int
    unit_price: Decimal
    addons: Tuple[OrderLineAddon, ...] = ()
    total_price: Decimal = ZERO

    @classmethod
    def create(
        cls,
        menu_item_id: int,
        name: str,
        quantity: int,
        unit_price: Any,
        addons: Iterable[OrderLineAddon] = ()
    ) -> 'OrderLine':
        addons = tuple(addons)
        price = to_money(unit_price)
        total = line_total(price, [a.price for a in addons], quantity)
        return cls(
            menu_item_id=int(menu_item_id),
            name=name,
            quantity=quantity,
            unit_price=price,
            addons=addons,
            total_price=total
        )

    @classmethod
    def from_cart_line(cls, line) -> 'OrderLine':
        return cls.create(
            menu_item_id=line.menu_item.id,
            name=line.menu_item.name,
            quantity=line.quantity,
            unit_price=line.menu_item.price,
            addons=[
                OrderLineAddon(id=a.id, name=a.name, price=a.price)
                for a in line.addons
            ]
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OrderLine':
        addons = [
            OrderLineAddon(
                id=int(a["id"]),
                name=str(a.get("name", "")),
                price=to_money(a.get("price", "0"))
            )
            for a in data.get("addons") or []
        ]
        return cls.create(
            menu_item_id=data.get("menu_item_id", data.get("id")),
            name=str(data.get("name", "")),
            quantity=int(data.get("quantity", 0)),
            unit_price=data.get("unit_price", data.get("price")),
            addons=addons
        )

    @property
    def addon_ids(self) -> List[int]:
        return [a.id for a in self.addons]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "menu_item_id": self.menu_item_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": format_money(self.unit_price),
            "addon_ids": self.addon_ids,
            "addons": [a.to_dict() for a in self.addons],
            "total_price": format_money(self.total_price),
        }


# ============================================================================
# ORDER
# ============================================================================

def _utcnow() -> str:
    return datetime.utcnow().isoformat()


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


@dataclass
class Order:
    """
    Order record.

    Fields are changed only through OrderLifecycle; OrderService persists the
    patches it returns.
    """
    customer_name: str
    customer_email: str
    customer_phone: str
    delivery_address: str
    lines: Tuple[OrderLine, ...]
    original_amount: Decimal
    discount_amount: Decimal
    discount_percentage: Decimal
    total_amount: Decimal
    payment_method: str
    status: OrderStatus = OrderStatus.PENDING
    paid: bool = False
    payment_reference: Optional[str] = None
    payment_token: Optional[str] = None
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None
    id: Optional[int] = None
    created_at: str = field(default_factory=_utcnow)
    updated_at: str = field(default_factory=_utcnow)

    @classmethod
    def create_pending(
        cls,
        customer: Customer,
        lines: Iterable[OrderLine],
        quote,
        payment_method: str,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        payment_token: Optional[str] = None
    ) -> 'Order':
        """
        Build a new pending, unpaid order from a cart snapshot and a quote.

        Raises:
            ValidationError: Empty cart, missing customer fields, or a quote
                that does not match the lines
        """
        customer.validate()

        frozen = tuple(lines)
        if not frozen:
            raise ValidationError("Cannot create an order from an empty cart")

        subtotal = round_money(sum((line.total_price for line in frozen), ZERO))
        if subtotal != quote.original_amount:
            raise ValidationError(
                f"Quote does not match cart: {quote.original_amount} != {subtotal}"
            )

        if quote.final_amount <= 0:
            raise ValidationError("Order total must be greater than zero")

        order = cls(
            customer_name=customer.name.strip(),
            customer_email=customer.email.strip(),
            customer_phone=customer.phone.strip(),
            delivery_address=customer.address.strip(),
            lines=frozen,
            original_amount=quote.original_amount,
            discount_amount=quote.discount_amount,
            discount_percentage=quote.discount_percentage,
            total_amount=quote.final_amount,
            payment_method=payment_method,
            payment_token=payment_token,
            notes=notes,
            idempotency_key=idempotency_key
        )
        order.ensure_valid()
        return order

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Order':
        raw_lines = record.get("menu_items") or []
        if isinstance(raw_lines, str):
            raw_lines = json.loads(raw_lines)

        total = to_money(record.get("total_amount", "0"))
        discount = to_money(record.get("discount_applied") or "0")
        original = record.get("original_amount")

        return cls(
            id=record.get("id", record.get("Id")),
            customer_name=str(record.get("customer_name") or ""),
            customer_email=str(record.get("customer_email") or ""),
            customer_phone=str(record.get("customer_phone") or ""),
            delivery_address=str(record.get("delivery_address") or ""),
            lines=tuple(OrderLine.from_dict(line) for line in raw_lines),
            original_amount=to_money(original) if original else total + discount,
            discount_amount=discount,
            discount_percentage=to_money(record.get("discount_percentage") or "0"),
            total_amount=total,
            payment_method=str(record.get("payment_method") or "crypto"),
            status=parse_status(record.get("status") or "pending"),
            paid=bool(record.get("paid")),
            payment_reference=_optional_str(record.get("transaction_hash")),
            payment_token=_optional_str(record.get("payment_token")),
            card_last4=_optional_str(record.get("card_last4")),
            card_brand=_optional_str(record.get("card_brand")),
            notes=_optional_str(record.get("notes")),
            idempotency_key=_optional_str(record.get("idempotency_key")),
            created_at=str(record.get("created_at") or _utcnow()),
            updated_at=str(record.get("updated_at") or record.get("created_at") or _utcnow())
        )

    def to_record(self) -> Dict[str, Any]:
        """Store representation (without id)."""
        return {
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "delivery_address": self.delivery_address,
            "menu_items": [line.to_dict() for line in self.lines],
            "original_amount": format_money(self.original_amount),
            "discount_applied": format_money(self.discount_amount),
            "discount_percentage": str(self.discount_percentage),
            "total_amount": format_money(self.total_amount),
            "payment_method": self.payment_method,
            "transaction_hash": self.payment_reference,
            "payment_token": self.payment_token,
            "card_last4": self.card_last4,
            "card_brand": self.card_brand,
            "status": self.status.value,
            "paid": self.paid,
            "notes": self.notes,
            "idempotency_key": self.idempotency_key,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, **self.to_record()}

    def validate(self) -> Tuple[bool, List[str]]:
        """
        Check the monetary and payment invariants.

        Returns:
            (is_valid, error_messages)
        """
        errors = []

        if not self.lines:
            errors.append("Order has no items")

        subtotal = round_money(sum((line.total_price for line in self.lines), ZERO))
        if subtotal != self.original_amount:
            errors.append(f"Subtotal mismatch: {self.original_amount} != {subtotal}")

        if self.original_amount - self.discount_amount != self.total_amount:
            errors.append(
                f"Total mismatch: {self.total_amount} != "
                f"{self.original_amount} - {self.discount_amount}"
            )

        if self.paid != bool(self.payment_reference):
            errors.append("Paid flag and payment reference disagree")

        if self.status == OrderStatus.PENDING and self.payment_reference:
            errors.append("Pending order carries a payment reference")

        if (
            self.status not in (OrderStatus.PENDING, OrderStatus.CANCELLED)
            and not self.payment_reference
        ):
            errors.append(f"{self.status.value} order has no payment reference")

        return len(errors) == 0, errors

    def ensure_valid(self):
        """
        Raises:
            ValidationError: Any check in validate() fails
        """
        is_valid, problems = self.validate()
        if not is_valid:
            raise ValidationError(
                f"Order {self.id if self.id is not None else '(new)'} is inconsistent: "
                + "; ".join(problems),
                {"problems": problems}
            )


# ============================================================================
# LIFECYCLE STATE MACHINE
# ============================================================================

class OrderLifecycle:
    """
    Validated status transitions for one order.

    Each operation mutates the wrapped Order and returns the patch (changed
    store fields) that must be written in a single update.
    """

    VALID_TRANSITIONS = {
        OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
        OrderStatus.CONFIRMED: {OrderStatus.PREPARING, OrderStatus.CANCELLED},
        OrderStatus.PREPARING: {OrderStatus.READY},
        OrderStatus.READY: {OrderStatus.DELIVERED},
        OrderStatus.DELIVERED: set(),  # Terminal
        OrderStatus.CANCELLED: set()   # Terminal
    }

    def __init__(self, order: Order):
        self.order = order
        self._history: List[Tuple[OrderStatus, str]] = [(order.status, order.updated_at)]

    @property
    def current_state(self) -> OrderStatus:
        return self.order.status

    def is_terminal(self) -> bool:
        return self.order.status in TERMINAL_STATUSES

    def can_transition_to(self, target: OrderStatus) -> bool:
        return target in self.VALID_TRANSITIONS.get(self.order.status, set())

    def transition(self, target: OrderStatus, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Move to target status.

        Re-applying the current status of a non-terminal order is a no-op and
        returns an empty patch.

        Raises:
            InvalidTransitionError: Target not reachable from current status,
                or the order is terminal
            ValidationError: Confirming without a payment reference
        """
        current = self.order.status

        if target == current and not self.is_terminal():
            logger.debug(f"Order {self.order.id}: already {current.value}")
            return {}

        if not self.can_transition_to(target):
            order_rejected_transitions.labels(
                from_state=current.value,
                to_state=target.value
            ).inc()
            logger.warning(
                f"Invalid transition for order {self.order.id}: "
                f"{current.value} -> {target.value}"
            )
            raise InvalidTransitionError(
                f"Invalid transition: {current.value} -> {target.value}",
                {"from": current.value, "to": target.value}
            )

        if target == OrderStatus.CONFIRMED and not self.order.payment_reference:
            raise ValidationError("Cannot confirm an order without a payment reference")

        now = _utcnow()
        self.order.status = target
        self.order.updated_at = now
        self._history.append((target, now))

        order_state_transitions.labels(
            from_state=current.value,
            to_state=target.value
        ).inc()

        logger.info(
            f"Order {self.order.id}: {current.value} -> {target.value}"
            + (f" ({reason})" if reason else "")
        )

        return {"status": target.value, "updated_at": now}

    def confirm_payment(
        self,
        payment_reference: str,
        payment_token: Optional[str] = None,
        card_last4: Optional[str] = None,
        card_brand: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Record a successful payment and confirm the order.

        Returns:
            One patch carrying reference, paid flag and confirmed status

        Raises:
            ValidationError: Empty reference
            InvalidTransitionError: Order is not pending
        """
        if not payment_reference or not str(payment_reference).strip():
            raise ValidationError("Payment reference is required")

        if self.order.status != OrderStatus.PENDING:
            raise InvalidTransitionError(
                f"Cannot confirm payment: order is {self.order.status.value}",
                {"from": self.order.status.value, "to": OrderStatus.CONFIRMED.value}
            )

        self.order.payment_reference = str(payment_reference).strip()
        self.order.paid = True
        if payment_token:
            self.order.payment_token = payment_token
        if card_last4:
            self.order.card_last4 = card_last4
        if card_brand:
            self.order.card_brand = card_brand

        patch = self.transition(OrderStatus.CONFIRMED, reason="payment_confirmed")
        patch.update({
            "paid": True,
            "transaction_hash": self.order.payment_reference,
            "payment_token": self.order.payment_token,
            "card_last4": self.order.card_last4,
            "card_brand": self.order.card_brand,
        })
        return patch

    def cancel(self, reason: Optional[str] = None) -> Dict[str, Any]:
        return self.transition(OrderStatus.CANCELLED, reason=reason or "staff_cancelled")

    def get_history(self) -> List[Dict[str, Any]]:
        return [
            {"status": status.value, "timestamp": ts}
            for status, ts in self._history
        ]

    def __repr__(self):
        return f"<OrderLifecycle order_id={self.order.id} state={self.order.status.value}>"


# ============================================================================
# ORDER SERVICE
# ============================================================================

class OrderService:
    """
    Order persistence and staff operations over a record store.

    Every status change is a read-modify-write: load the order, validate the
    transition locally, then write one update.
    """

    TABLE = "orders"

    def __init__(self, store):
        self.store = store

    async def create(self, order: Order) -> Order:
        """
        Persist a new pending order.

        Raises:
            ValidationError: Order fails its consistency checks
            PersistenceError: Store rejected the write
        """
        order.ensure_valid()
        record = await self.store.create(self.TABLE, order.to_record())
        created = Order.from_record(record)
        logger.info(
            f"Order created: {created.id} "
            f"(total={format_money(created.total_amount)}, method={created.payment_method})"
        )
        return created

    async def get(self, order_id: int) -> Order:
        """
        Raises:
            NotFoundError: Unknown order
        """
        record = await self.store.get(self.TABLE, order_id)
        return Order.from_record(record)

    async def list(self, status: Optional[OrderStatus] = None) -> List[Order]:
        """List orders newest first, optionally filtered by status."""
        filters = {"status": status.value} if status else None
        records = await self.store.list(self.TABLE, filters)
        orders = [Order.from_record(r) for r in records]
        return sorted(orders, key=lambda o: (o.created_at, o.id or 0), reverse=True)

    async def find_by_idempotency_key(self, key: str) -> Optional[Order]:
        records = await self.store.list(self.TABLE, {"idempotency_key": key})
        if not records:
            return None
        return Order.from_record(records[0])

    async def confirm_payment(
        self,
        order_id: int,
        payment_reference: str,
        payment_token: Optional[str] = None,
        card_last4: Optional[str] = None,
        card_brand: Optional[str] = None
    ) -> Order:
        order = await self.get(order_id)
        lifecycle = OrderLifecycle(order)
        patch = lifecycle.confirm_payment(
            payment_reference,
            payment_token=payment_token,
            card_last4=card_last4,
            card_brand=card_brand
        )
        return await self._write(order, patch)

    async def update_status(
        self,
        order_id: int,
        status: Any,
        payment_reference: Optional[str] = None,
        reason: Optional[str] = None,
        paid: Optional[bool] = None
    ) -> Order:
        """
        Apply a staff or payment-confirmation update.

        A payment reference on a pending order confirms it; otherwise the
        status is moved through the transition table. ``paid`` is derived
        from the reference: true needs one (or an order already paid) and
        false is only accepted on an unpaid order.

        Raises:
            NotFoundError: Unknown order
            ValidationError: paid disagrees with the payment reference
            InvalidTransitionError: Transition not allowed
        """
        target = parse_status(status) if status is not None else None
        order = await self.get(order_id)
        lifecycle = OrderLifecycle(order)

        if paid is not None and paid != order.paid:
            if not paid:
                raise ValidationError(
                    f"Order {order_id} is paid; payment cannot be withdrawn",
                    {"payment_reference": order.payment_reference}
                )
            if not payment_reference:
                raise ValidationError("Marking an order paid requires a payment reference")

        if payment_reference and order.status == OrderStatus.PENDING:
            patch = lifecycle.confirm_payment(payment_reference)
            if target is not None and target != OrderStatus.CONFIRMED:
                patch.update(lifecycle.transition(target, reason=reason))
        elif target is not None:
            patch = lifecycle.transition(target, reason=reason)
        elif paid is not None:
            # paid already matches the order
            patch = {}
        else:
            raise ValidationError("Nothing to update: provide status or payment reference")

        return await self._write(order, patch)

    async def cancel(self, order_id: int, reason: Optional[str] = None) -> Order:
        order = await self.get(order_id)
        patch = OrderLifecycle(order).cancel(reason)
        return await self._write(order, patch)

    async def board(self) -> Dict[str, List[Order]]:
        """Staff console grouping: pending, active, completed."""
        orders = await self.list()
        return {
            "pending": [o for o in orders if o.status == OrderStatus.PENDING],
            "active": [o for o in orders if o.status in ACTIVE_STATUSES],
            "completed": [o for o in orders if o.status in TERMINAL_STATUSES],
        }

    async def _write(self, order: Order, patch: Dict[str, Any]) -> Order:
        if not patch:
            return order

        # The lifecycle has already applied the patch to order
        order.ensure_valid()
        record = await self.store.update(self.TABLE, order.id, patch)
        return Order.from_record(record)
