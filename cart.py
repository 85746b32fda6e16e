"""
Cart Module
===========
Session cart aggregate.

A cart is an ordered list of immutable CartLine values. Every mutation builds
the next line list, recomputes totals from scratch, and swaps both in at once,
so callers never observe a line list and totals that disagree.
"""

import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from errors import NotFoundError, ValidationError
from menu import Addon, MenuItem
from pricing import ZERO, cart_total, format_money, line_total


logger = logging.getLogger(__name__)


MAX_LINES = 50
MAX_LINE_QUANTITY = 99


# ============================================================================
# CART LINE
# ============================================================================

@dataclass(frozen=True)
class CartLine:
    """
    One cart line: a menu item snapshot, its addons and a quantity.

    total_price is derived at construction; use with_quantity() to change the
    quantity.
    """
    id: int
    menu_item: MenuItem
    addons: Tuple[Addon, ...]
    quantity: int
    total_price: Decimal

    @classmethod
    def build(
        cls,
        line_id: int,
        menu_item: MenuItem,
        addons: Tuple[Addon, ...],
        quantity: int
    ) -> 'CartLine':
        total = line_total(
            menu_item.price,
            [addon.price for addon in addons],
            quantity
        )
        return cls(
            id=line_id,
            menu_item=menu_item,
            addons=addons,
            quantity=quantity,
            total_price=total
        )

    @property
    def addon_ids(self) -> FrozenSet[int]:
        return frozenset(addon.id for addon in self.addons)

    @property
    def unit_price(self) -> Decimal:
        return self.menu_item.price + sum((a.price for a in self.addons), ZERO)

    def matches(self, menu_item_id: int, addon_ids: FrozenSet[int]) -> bool:
        """Same menu item and set-equal addon selection."""
        return self.menu_item.id == menu_item_id and self.addon_ids == addon_ids

    def with_quantity(self, new_quantity: int) -> 'CartLine':
        return CartLine.build(self.id, self.menu_item, self.addons, new_quantity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "menu_item": self.menu_item.to_dict(),
            "addons": [addon.to_dict() for addon in self.addons],
            "quantity": self.quantity,
            "unit_price": format_money(self.unit_price),
            "total_price": format_money(self.total_price),
        }


# ============================================================================
# CART AGGREGATE
# ============================================================================

class Cart:
    """
    Cart aggregate for one shopper session.

    total and total_items are read-only views recomputed after each mutation.
    Line ids come from a per-cart counter: unique within the session, never
    persisted.
    """

    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id
        self._lines: Tuple[CartLine, ...] = ()
        self._total: Decimal = ZERO
        self._total_items: int = 0
        self._line_ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def lines(self) -> Tuple[CartLine, ...]:
        return self._lines

    @property
    def total(self) -> Decimal:
        return self._total

    @property
    def total_items(self) -> int:
        return self._total_items

    def is_empty(self) -> bool:
        return not self._lines

    def get_line(self, line_id: int) -> CartLine:
        for line in self._lines:
            if line.id == line_id:
                return line
        raise NotFoundError(f"Cart line not found: {line_id}")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_item(
        self,
        menu_item: MenuItem,
        quantity: int = 1,
        addons: Iterable[Addon] = ()
    ) -> CartLine:
        """
        Add a menu item, merging into an existing line when the item and the
        addon set match.

        Args:
            menu_item: Menu item snapshot (its price is frozen into the line)
            quantity: Positive quantity to add
            addons: Selected addons; duplicates collapse, order is irrelevant

        Returns:
            The new or merged line

        Raises:
            ValidationError: Unavailable item, bad quantity, limits exceeded
        """
        if not menu_item.available:
            raise ValidationError(f"Menu item not available: {menu_item.name}")

        selected = self._dedupe_addons(addons)
        for addon in selected:
            if not addon.available:
                raise ValidationError(f"Extra not available: {addon.name}")

        selected_ids = frozenset(addon.id for addon in selected)

        # Validates quantity and prices before anything changes
        line_total(menu_item.price, [a.price for a in selected], quantity)

        lines = list(self._lines)
        for index, line in enumerate(lines):
            if line.matches(menu_item.id, selected_ids):
                merged = line.with_quantity(self._checked_quantity(line.quantity + quantity))
                lines[index] = merged
                self._commit(lines)
                logger.info(
                    f"Merged into cart line {merged.id}: {menu_item.name} "
                    f"x{merged.quantity}"
                )
                return merged

        if len(lines) >= MAX_LINES:
            raise ValidationError(f"Cart cannot hold more than {MAX_LINES} lines")

        new_line = CartLine.build(
            next(self._line_ids),
            menu_item,
            selected,
            self._checked_quantity(quantity)
        )
        lines.append(new_line)
        self._commit(lines)

        logger.info(
            f"Added cart line {new_line.id}: {menu_item.name} x{quantity} "
            f"(total={format_money(new_line.total_price)})"
        )
        return new_line

    def update_quantity(self, line_id: int, new_quantity: int) -> Optional[CartLine]:
        """
        Set a line's quantity. Zero or below removes the line.

        Returns:
            Updated line, or None if the line was removed

        Raises:
            NotFoundError: Unknown line id
        """
        if isinstance(new_quantity, bool) or not isinstance(new_quantity, int):
            raise ValidationError(f"Quantity must be an integer: {new_quantity!r}")

        if new_quantity <= 0:
            self.remove_item(line_id)
            return None

        current = self.get_line(line_id)
        updated = current.with_quantity(self._checked_quantity(new_quantity))

        self._commit([updated if line.id == line_id else line for line in self._lines])

        logger.info(
            f"Updated cart line {line_id}: {current.quantity} -> {new_quantity}"
        )
        return updated

    def remove_item(self, line_id: int):
        """
        Raises:
            NotFoundError: Unknown line id
        """
        removed = self.get_line(line_id)
        self._commit([line for line in self._lines if line.id != line_id])
        logger.info(f"Removed cart line {line_id}: {removed.menu_item.name}")

    def clear(self):
        """Empty the cart (after a successful checkout)."""
        count = len(self._lines)
        self._commit([])
        logger.info(f"Cleared cart ({count} lines)")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _commit(self, lines: List[CartLine]):
        """Swap in a new line list together with totals computed from it."""
        new_lines = tuple(lines)
        new_total = cart_total(new_lines)
        new_items = sum(line.quantity for line in new_lines)

        self._lines, self._total, self._total_items = new_lines, new_total, new_items

    def _checked_quantity(self, quantity: int) -> int:
        if quantity > MAX_LINE_QUANTITY:
            raise ValidationError(
                f"Quantity cannot exceed {MAX_LINE_QUANTITY} per line"
            )
        return quantity

    @staticmethod
    def _dedupe_addons(addons: Iterable[Addon]) -> Tuple[Addon, ...]:
        unique: Dict[int, Addon] = {}
        for addon in addons:
            unique.setdefault(addon.id, addon)
        return tuple(sorted(unique.values(), key=lambda a: a.id))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "lines": [line.to_dict() for line in self._lines],
            "total": format_money(self._total),
            "total_items": self._total_items,
        }


# ============================================================================
# SESSION REGISTRY
# ============================================================================

class CartRegistry:
    """
    Carts keyed by shopper session id (one cart per session).

    Only writes store a cart; reads of an unknown session get an empty,
    unstored cart. Carts idle longer than ``ttl`` seconds are dropped, and
    once ``max_carts`` are held the least recently used one is evicted.
    """

    def __init__(self, ttl: int = 3600, max_carts: int = 10000, now=None):
        self.ttl = ttl
        self.max_carts = max_carts
        self._now = now or datetime.utcnow
        # Least recently used first
        self._carts: Dict[str, Tuple[Cart, datetime]] = {}

    def get_or_create(self, session_id: str) -> Cart:
        """Cart to write to; stored (and counted as used) from here on."""
        self._expire()
        entry = self._carts.pop(session_id, None)
        if entry is None:
            cart = Cart(session_id)
            logger.debug(f"Cart created for session {session_id}")
        else:
            cart = entry[0]

        self._carts[session_id] = (cart, self._now())
        while len(self._carts) > self.max_carts:
            evicted = next(iter(self._carts))
            del self._carts[evicted]
            logger.info(f"Cart for session {evicted} evicted (registry full)")
        return cart

    def get(self, session_id: str) -> Cart:
        """
        Raises:
            NotFoundError: No live cart for the session
        """
        self._expire()
        entry = self._carts.pop(session_id, None)
        if entry is None:
            raise NotFoundError(f"No cart for session: {session_id}")
        self._carts[session_id] = (entry[0], self._now())
        return entry[0]

    def view(self, session_id: str) -> Cart:
        """Live cart for the session, or an empty cart that is not stored."""
        try:
            return self.get(session_id)
        except NotFoundError:
            return Cart(session_id)

    def discard(self, session_id: str):
        self._carts.pop(session_id, None)

    def _expire(self):
        cutoff = self._now() - timedelta(seconds=self.ttl)
        expired = [sid for sid, (_, touched) in self._carts.items() if touched < cutoff]
        for session_id in expired:
            del self._carts[session_id]
        if expired:
            logger.debug(f"Expired {len(expired)} idle carts")

    def __len__(self) -> int:
        return len(self._carts)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._carts
