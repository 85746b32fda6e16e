"""
Request Schemas
===============
Pydantic models validated at the HTTP boundary.

Field names are snake_case; camelCase aliases are accepted so storefront
payloads (customerName, lineItems, ...) validate unchanged.
"""

from decimal import Decimal
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _money_input(value):
    # Floats go through str() so 16.99 stays 16.99
    if isinstance(value, float):
        return str(value)
    return value


Money = Annotated[Decimal, BeforeValidator(_money_input)]


class RequestModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True
    )


# ============================================================================
# CATALOG (ADMIN)
# ============================================================================

class CategoryCreate(RequestModel):
    name: str = Field(..., min_length=1, max_length=200)
    icon: Optional[str] = Field(None, description="Emoji or icon name")


class CategoryUpdate(RequestModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    icon: Optional[str] = None


class MenuItemCreate(RequestModel):
    name: str = Field(..., min_length=1, max_length=200)
    price: Money = Field(..., ge=0, description="Price in dollars")
    description: Optional[str] = Field(None, max_length=1000)
    image_url: Optional[str] = None
    category_id: Optional[int] = None
    available: bool = True


class MenuItemUpdate(RequestModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    price: Optional[Money] = Field(None, ge=0)
    description: Optional[str] = Field(None, max_length=1000)
    image_url: Optional[str] = None
    category_id: Optional[int] = None
    available: Optional[bool] = None


class ExtraCreate(RequestModel):
    name: str = Field(..., min_length=1, max_length=200)
    price: Money = Field(..., ge=0)
    category_ids: List[int] = Field(default_factory=list, description="Empty = all categories")
    available: bool = True


class ExtraUpdate(RequestModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    price: Optional[Money] = Field(None, ge=0)
    category_ids: Optional[List[int]] = None
    available: Optional[bool] = None


# ============================================================================
# CART
# ============================================================================

class CartItemAdd(RequestModel):
    menu_item_id: int
    quantity: int = Field(1, ge=1)
    addon_ids: List[int] = Field(default_factory=list)


class CartQuantityUpdate(RequestModel):
    quantity: int = Field(..., description="Zero or below removes the line")


# ============================================================================
# CHECKOUT AND PAYMENT
# ============================================================================

class CustomerIn(RequestModel):
    name: str
    email: str
    phone: str
    address: str


class CardIn(RequestModel):
    name: str
    number: str
    expiry: str = Field(..., description="MM/YY")
    cvc: str


class WalletIn(RequestModel):
    address: Optional[str] = None
    token: Literal["PRDX", "USDC"] = "USDC"
    tx_hash: Optional[str] = None
    chain_id: Optional[int] = None


class CheckoutRequest(RequestModel):
    session_id: str = Field(..., min_length=1)
    customer: CustomerIn
    payment_method: Literal["card", "crypto"]
    card: Optional[CardIn] = None
    wallet: Optional[WalletIn] = None
    notes: Optional[str] = Field(None, max_length=1000)
    idempotency_key: Optional[str] = Field(None, max_length=100)


class PaymentRequest(RequestModel):
    card: Optional[CardIn] = None
    wallet: Optional[WalletIn] = None


# ============================================================================
# ORDERS
# ============================================================================

class OrderLineIn(RequestModel):
    menu_item_id: int
    quantity: int = Field(..., ge=1)
    unit_price: Money = Field(..., ge=0)
    addon_ids: List[int] = Field(default_factory=list)
    name: Optional[str] = None


class OrderCreate(RequestModel):
    customer_name: str
    customer_email: str
    customer_phone: str
    delivery_address: str
    line_items: List[OrderLineIn] = Field(..., min_length=1)
    total_amount: Money = Field(..., ge=0)
    payment_method: Literal["card", "crypto"]
    payment_reference: Optional[str] = None
    discount_applied: Money = Field(Decimal("0"), ge=0)
    payment_token: Optional[Literal["PRDX", "USDC"]] = None
    card_last4: Optional[str] = Field(None, pattern=r"^\d{4}$")
    card_brand: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)
    idempotency_key: Optional[str] = Field(None, max_length=100)


class OrderStatusUpdate(RequestModel):
    status: Optional[str] = None
    payment_reference: Optional[str] = None
    paid: Optional[bool] = None
    reason: Optional[str] = None
