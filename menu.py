"""
Menu Module
===========
Catalog entities and the catalog service used by the storefront and the
admin panel.

- Category, MenuItem, Addon (immutable snapshots of store records)
- CatalogService (cached reads, graceful degradation, admin CRUD)
- Addon applicability keyed by category id
"""

import logging
from typing import Dict, List, Any, Optional, Tuple
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from decimal import Decimal

from prometheus_client import Counter

from errors import NotFoundError, PersistenceError, ValidationError
from pricing import format_money, to_money


logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

CACHE_TTL = 60  # seconds

MAX_ITEM_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 1000
MAX_ITEM_PRICE = Decimal("10000.00")


# ============================================================================
# METRICS
# ============================================================================

catalog_cache_hits = Counter('catalog_cache_hits_total', 'Catalog cache hits', ['table'])
catalog_cache_misses = Counter('catalog_cache_misses_total', 'Catalog cache misses', ['table'])
catalog_degraded_reads = Counter(
    'catalog_degraded_reads_total',
    'Catalog reads answered with an empty list after a store failure',
    ['table']
)


# ============================================================================
# RECORD HELPERS
# ============================================================================

def record_id(record: Dict[str, Any]) -> Optional[int]:
    """Primary key of a store record ("id", or NocoDB's "Id")."""
    value = record.get("id", record.get("Id"))
    return int(value) if value is not None else None


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _int_tuple(values: Any) -> Tuple[int, ...]:
    if not values:
        return ()
    if isinstance(values, str):
        values = [v for v in values.split(",") if v.strip()]
    return tuple(sorted({int(v) for v in values}))


# ============================================================================
# CATALOG ENTITIES
# ============================================================================

@dataclass(frozen=True)
class Category:
    id: int
    name: str
    icon: str = ""

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Category':
        return cls(
            id=record_id(record),
            name=str(record.get("name", "")),
            icon=str(record.get("icon") or "")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "icon": self.icon}


@dataclass(frozen=True)
class MenuItem:
    """
    Menu item snapshot.

    frozen=True: a cart line holds the item exactly as it was read, so later
    admin edits never change the price of a line already in a cart.
    """
    id: int
    name: str
    price: Decimal
    description: str = ""
    image_url: str = ""
    available: bool = True
    category_id: Optional[int] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'MenuItem':
        available = record.get("available")
        return cls(
            id=record_id(record),
            name=str(record.get("name", "")),
            price=to_money(record.get("price")),
            description=str(record.get("description") or ""),
            image_url=str(record.get("image_url") or record.get("image") or ""),
            available=True if available is None else bool(available),
            category_id=_optional_int(record.get("category_id"))
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": format_money(self.price),
            "image_url": self.image_url,
            "available": self.available,
            "category_id": self.category_id,
        }


@dataclass(frozen=True)
class Addon:
    """
    Optional priced extra.

    category_ids lists the categories the extra applies to; an empty tuple
    means it applies to every category.
    """
    id: int
    name: str
    price: Decimal
    available: bool = True
    category_ids: Tuple[int, ...] = field(default_factory=tuple)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Addon':
        available = record.get("available")
        return cls(
            id=record_id(record),
            name=str(record.get("name", "")),
            price=to_money(record.get("price")),
            available=True if available is None else bool(available),
            category_ids=_int_tuple(record.get("category_ids"))
        )

    def applies_to(self, category_id: Optional[int]) -> bool:
        if not self.category_ids:
            return True
        return category_id is not None and category_id in self.category_ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "price": format_money(self.price),
            "available": self.available,
            "category_ids": list(self.category_ids),
        }


# ============================================================================
# CATALOG SERVICE
# ============================================================================

class CatalogService:
    """
    Catalog reads and admin writes over a record store.

    Reads are cached per table for ``ttl`` seconds. A store failure on a
    list read degrades to an empty list; writes always propagate errors and
    invalidate the cache for their table.
    """

    def __init__(self, store, ttl: int = CACHE_TTL):
        self.store = store
        self.ttl = ttl
        self.cache: Dict[str, Tuple[List[Dict[str, Any]], datetime]] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_categories(self) -> List[Category]:
        records = await self._read_table("categories")
        return sorted(
            (Category.from_record(r) for r in records),
            key=lambda c: c.id
        )

    async def list_menu_items(
        self,
        category_id: Optional[int] = None,
        available_only: bool = False
    ) -> List[MenuItem]:
        """
        List menu items, optionally for one category.

        Args:
            category_id: Category filter (None = all categories)
            available_only: Hide items flagged unavailable
        """
        items = [MenuItem.from_record(r) for r in await self._read_table("menu")]

        if category_id is not None:
            items = [item for item in items if item.category_id == category_id]

        if available_only:
            items = [item for item in items if item.available]

        return sorted(items, key=lambda i: i.id)

    async def list_extras(
        self,
        category_id: Optional[int] = None,
        available_only: bool = False
    ) -> List[Addon]:
        extras = [Addon.from_record(r) for r in await self._read_table("extras")]

        if category_id is not None:
            extras = [e for e in extras if e.applies_to(category_id)]

        if available_only:
            extras = [e for e in extras if e.available]

        return sorted(extras, key=lambda e: e.id)

    async def get_menu_item(self, item_id: int) -> MenuItem:
        """
        Read a single menu item (uncached).

        Raises:
            NotFoundError: Unknown item
            PersistenceError: Store unavailable
        """
        record = await self.store.get("menu", item_id)
        return MenuItem.from_record(record)

    async def extras_for_item(self, menu_item: MenuItem) -> List[Addon]:
        """Available extras that apply to the item's category."""
        return await self.list_extras(
            category_id=menu_item.category_id,
            available_only=True
        )

    async def resolve_addons(
        self,
        menu_item: MenuItem,
        addon_ids: List[int]
    ) -> List[Addon]:
        """
        Turn a client's addon selection into Addon snapshots.

        Duplicate ids collapse (an addon is either selected or not).

        Raises:
            ValidationError: Unknown, unavailable or inapplicable addon
        """
        wanted = list(dict.fromkeys(int(a) for a in addon_ids))
        if not wanted:
            return []

        by_id = {
            addon.id: addon
            for addon in await self.list_extras()
        }

        resolved = []
        for addon_id in wanted:
            addon = by_id.get(addon_id)
            if addon is None:
                raise ValidationError(f"Unknown extra: {addon_id}")
            if not addon.available:
                raise ValidationError(f"Extra not available: {addon.name}")
            if not addon.applies_to(menu_item.category_id):
                raise ValidationError(
                    f"Extra {addon.name} does not apply to {menu_item.name}"
                )
            resolved.append(addon)

        return resolved

    # ------------------------------------------------------------------
    # Admin writes
    # ------------------------------------------------------------------

    async def create_category(self, data: Dict[str, Any]) -> Category:
        self._require_name(data)
        record = await self.store.create("categories", data)
        self.invalidate_cache("categories")
        return Category.from_record(record)

    async def update_category(self, category_id: int, data: Dict[str, Any]) -> Category:
        record = await self.store.update("categories", category_id, data)
        self.invalidate_cache("categories")
        return Category.from_record(record)

    async def delete_category(self, category_id: int):
        await self.store.delete("categories", category_id)
        self.invalidate_cache("categories")

    async def create_menu_item(self, data: Dict[str, Any]) -> MenuItem:
        self._require_name(data)
        record = await self.store.create("menu", self._normalize_priced(data))
        self.invalidate_cache("menu")
        return MenuItem.from_record(record)

    async def update_menu_item(self, item_id: int, data: Dict[str, Any]) -> MenuItem:
        record = await self.store.update("menu", item_id, self._normalize_priced(data))
        self.invalidate_cache("menu")
        return MenuItem.from_record(record)

    async def delete_menu_item(self, item_id: int):
        await self.store.delete("menu", item_id)
        self.invalidate_cache("menu")

    async def create_extra(self, data: Dict[str, Any]) -> Addon:
        self._require_name(data)
        record = await self.store.create("extras", self._normalize_priced(data))
        self.invalidate_cache("extras")
        return Addon.from_record(record)

    async def update_extra(self, extra_id: int, data: Dict[str, Any]) -> Addon:
        record = await self.store.update("extras", extra_id, self._normalize_priced(data))
        self.invalidate_cache("extras")
        return Addon.from_record(record)

    async def delete_extra(self, extra_id: int):
        await self.store.delete("extras", extra_id)
        self.invalidate_cache("extras")

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def invalidate_cache(self, table: Optional[str] = None):
        """Invalidate one table, or everything when table is None."""
        if table is None:
            self.cache.clear()
        else:
            self.cache.pop(table, None)
        logger.info(f"Catalog cache invalidated: {table or 'all'}")

    async def _read_table(self, table: str) -> List[Dict[str, Any]]:
        cached = self._get_from_cache(table)
        if cached is not None:
            return cached

        try:
            records = await self.store.list(table)
        except PersistenceError as e:
            logger.error(f"Catalog read failed for {table}, serving empty list: {e}")
            catalog_degraded_reads.labels(table=table).inc()
            return []

        self._set_in_cache(table, records)
        return records

    def _get_from_cache(self, table: str) -> Optional[List[Dict[str, Any]]]:
        if table not in self.cache:
            catalog_cache_misses.labels(table=table).inc()
            return None

        records, timestamp = self.cache[table]

        if datetime.utcnow() - timestamp > timedelta(seconds=self.ttl):
            del self.cache[table]
            catalog_cache_misses.labels(table=table).inc()
            return None

        catalog_cache_hits.labels(table=table).inc()
        return records

    def _set_in_cache(self, table: str, records: List[Dict[str, Any]]):
        if self.ttl <= 0:
            return
        self.cache[table] = (records, datetime.utcnow())

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _require_name(self, data: Dict[str, Any]):
        name = str(data.get("name") or "").strip()
        if not name or len(name) > MAX_ITEM_NAME_LENGTH:
            raise ValidationError("Name is required (max 200 characters)")

    def _normalize_priced(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Validate price and description; prices are stored as strings."""
        normalized = dict(data)

        if "price" in normalized:
            price = to_money(normalized["price"])
            if price < 0 or price > MAX_ITEM_PRICE:
                raise ValidationError(f"Price out of range: {price}")
            normalized["price"] = format_money(price)

        description = normalized.get("description")
        if description and len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError("Description too long")

        if "category_ids" in normalized:
            normalized["category_ids"] = list(_int_tuple(normalized["category_ids"]))

        return normalized
