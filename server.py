"""
HTTP Server
===========
FastAPI application for the storefront, the admin panel and the staff
order console.

Routes (under /api):
- Catalog:  GET /categories, GET /menu[?category=], GET /menu/{id},
            GET /menu/{id}/extras, GET /extras[?category=]
- Admin:    POST/PATCH/DELETE /categories, /menu, /extras
- Cart:     /cart/{session_id} (get, add line, update, remove, clear, quote)
- Checkout: POST /checkout, POST /orders/{id}/pay
- Orders:   POST /orders, GET /orders[?status=], GET /orders/board,
            GET /orders/{id}, PATCH /orders/{id}

Plus GET /health and GET /metrics.

NO BUSINESS LOGIC - request parsing and error mapping only.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
import uvicorn

from cart import CartRegistry
from checkout import CheckoutService
from config import Config, get_config, validate_configuration
from db import RecordStore, build_store
from discount import PaymentMethod, quote
from errors import (
    NotFoundError,
    PaymentError,
    PersistenceError,
    ServiceError,
    ValidationError,
)
from menu import CatalogService
from order import Customer, InvalidTransitionError, OrderService, parse_status
from payments import CardDetails, PaymentGateway, WalletDetails
from schemas import (
    CartItemAdd,
    CartQuantityUpdate,
    CategoryCreate,
    CategoryUpdate,
    CheckoutRequest,
    ExtraCreate,
    ExtraUpdate,
    MenuItemCreate,
    MenuItemUpdate,
    OrderCreate,
    OrderStatusUpdate,
    PaymentRequest,
)


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# ============================================================================
# ERROR MAPPING
# ============================================================================

def _status_for(error: ServiceError) -> int:
    if isinstance(error, InvalidTransitionError):
        return 409
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, PaymentError):
        return 402
    if isinstance(error, PersistenceError):
        return 503
    return 500


async def service_error_handler(request: Request, exc: ServiceError):
    status = _status_for(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {status}: {exc.message}")
    return JSONResponse(status_code=status, content=exc.to_dict())


# ============================================================================
# HELPERS
# ============================================================================

def _services(request: Request):
    return request.app.state


def _category_filter(category: Optional[str]) -> Optional[int]:
    """'all' or empty means no filter."""
    if category is None or category.strip().lower() in ("", "all"):
        return None
    try:
        return int(category)
    except ValueError:
        raise ValidationError(f"Invalid category id: {category}")


def _changes(model) -> Dict[str, Any]:
    data = model.model_dump(exclude_unset=True)
    if not data:
        raise ValidationError("No fields to update")
    return data


def _card(body) -> Optional[CardDetails]:
    return CardDetails(**body.card.model_dump()) if body.card else None


def _wallet(body) -> Optional[WalletDetails]:
    return WalletDetails(**body.wallet.model_dump()) if body.wallet else None


# ============================================================================
# CATALOG ROUTES
# ============================================================================

router = APIRouter(prefix="/api")


@router.get("/categories")
async def list_categories(request: Request):
    categories = await _services(request).catalog.list_categories()
    return [c.to_dict() for c in categories]


@router.post("/categories", status_code=201)
async def create_category(body: CategoryCreate, request: Request):
    category = await _services(request).catalog.create_category(body.model_dump())
    return category.to_dict()


@router.patch("/categories/{category_id}")
async def update_category(category_id: int, body: CategoryUpdate, request: Request):
    category = await _services(request).catalog.update_category(category_id, _changes(body))
    return category.to_dict()


@router.delete("/categories/{category_id}")
async def delete_category(category_id: int, request: Request):
    await _services(request).catalog.delete_category(category_id)
    return {"status": "deleted", "id": category_id}


@router.get("/menu")
async def list_menu(
    request: Request,
    category: Optional[str] = None,
    available_only: bool = False
):
    items = await _services(request).catalog.list_menu_items(
        category_id=_category_filter(category),
        available_only=available_only
    )
    return [item.to_dict() for item in items]


@router.post("/menu", status_code=201)
async def create_menu_item(body: MenuItemCreate, request: Request):
    item = await _services(request).catalog.create_menu_item(body.model_dump())
    return item.to_dict()


@router.get("/menu/{item_id}")
async def get_menu_item(item_id: int, request: Request):
    item = await _services(request).catalog.get_menu_item(item_id)
    return item.to_dict()


@router.get("/menu/{item_id}/extras")
async def get_menu_item_extras(item_id: int, request: Request):
    catalog = _services(request).catalog
    item = await catalog.get_menu_item(item_id)
    return [extra.to_dict() for extra in await catalog.extras_for_item(item)]


@router.patch("/menu/{item_id}")
async def update_menu_item(item_id: int, body: MenuItemUpdate, request: Request):
    item = await _services(request).catalog.update_menu_item(item_id, _changes(body))
    return item.to_dict()


@router.delete("/menu/{item_id}")
async def delete_menu_item(item_id: int, request: Request):
    await _services(request).catalog.delete_menu_item(item_id)
    return {"status": "deleted", "id": item_id}


@router.get("/extras")
async def list_extras(
    request: Request,
    category: Optional[str] = None,
    available_only: bool = False
):
    extras = await _services(request).catalog.list_extras(
        category_id=_category_filter(category),
        available_only=available_only
    )
    return [extra.to_dict() for extra in extras]


@router.post("/extras", status_code=201)
async def create_extra(body: ExtraCreate, request: Request):
    extra = await _services(request).catalog.create_extra(body.model_dump())
    return extra.to_dict()


@router.patch("/extras/{extra_id}")
async def update_extra(extra_id: int, body: ExtraUpdate, request: Request):
    extra = await _services(request).catalog.update_extra(extra_id, _changes(body))
    return extra.to_dict()


@router.delete("/extras/{extra_id}")
async def delete_extra(extra_id: int, request: Request):
    await _services(request).catalog.delete_extra(extra_id)
    return {"status": "deleted", "id": extra_id}


# ============================================================================
# CART ROUTES
# ============================================================================

@router.get("/cart/{session_id}")
async def get_cart(session_id: str, request: Request):
    return _services(request).carts.view(session_id).to_dict()


@router.post("/cart/{session_id}/items", status_code=201)
async def add_cart_item(session_id: str, body: CartItemAdd, request: Request):
    state = _services(request)
    item = await state.catalog.get_menu_item(body.menu_item_id)
    addons = await state.catalog.resolve_addons(item, body.addon_ids)

    cart = state.carts.get_or_create(session_id)
    line = cart.add_item(item, quantity=body.quantity, addons=addons)
    return {"line": line.to_dict(), "cart": cart.to_dict()}


@router.patch("/cart/{session_id}/items/{line_id}")
async def update_cart_item(
    session_id: str,
    line_id: int,
    body: CartQuantityUpdate,
    request: Request
):
    cart = _services(request).carts.get(session_id)
    cart.update_quantity(line_id, body.quantity)
    return cart.to_dict()


@router.delete("/cart/{session_id}/items/{line_id}")
async def remove_cart_item(session_id: str, line_id: int, request: Request):
    cart = _services(request).carts.get(session_id)
    cart.remove_item(line_id)
    return cart.to_dict()


@router.delete("/cart/{session_id}")
async def clear_cart(session_id: str, request: Request):
    cart = _services(request).carts.get(session_id)
    cart.clear()
    return cart.to_dict()


@router.get("/cart/{session_id}/quote")
async def quote_cart(
    session_id: str,
    request: Request,
    method: str = "card",
    wallet_connected: bool = False
):
    state = _services(request)
    cart = state.carts.view(session_id)
    try:
        payment_method = PaymentMethod(method.lower())
    except ValueError:
        raise ValidationError(f"Unknown payment method: {method}")

    return quote(
        cart.total,
        payment_method,
        wallet_connected=wallet_connected,
        percentage=state.config.payments.crypto_discount_percent
    ).to_dict()


# ============================================================================
# CHECKOUT ROUTES
# ============================================================================

@router.post("/checkout", status_code=201)
async def checkout(body: CheckoutRequest, request: Request):
    state = _services(request)
    cart = state.carts.view(body.session_id)

    order = await state.checkout.checkout(
        cart,
        Customer(**body.customer.model_dump()),
        body.payment_method,
        card=_card(body),
        wallet=_wallet(body),
        notes=body.notes,
        idempotency_key=body.idempotency_key
    )
    state.carts.discard(body.session_id)
    return order.to_dict()


@router.post("/orders/{order_id}/pay")
async def pay_order(order_id: int, body: PaymentRequest, request: Request):
    order = await _services(request).checkout.pay_order(
        order_id,
        card=_card(body),
        wallet=_wallet(body)
    )
    return order.to_dict()


# ============================================================================
# ORDER ROUTES
# ============================================================================

@router.post("/orders", status_code=201)
async def create_order(body: OrderCreate, request: Request):
    order = await _services(request).checkout.create_order_from_payload(body.model_dump())
    return order.to_dict()


@router.get("/orders")
async def list_orders(request: Request, status: Optional[str] = None):
    target = parse_status(status) if status else None
    orders = await _services(request).orders.list(target)
    return [o.to_dict() for o in orders]


@router.get("/orders/board")
async def order_board(request: Request):
    state = _services(request)
    board = await state.orders.board()
    return {
        **{group: [o.to_dict() for o in orders] for group, orders in board.items()},
        "poll_interval": state.config.server.order_poll_interval,
    }


@router.get("/orders/{order_id}")
async def get_order(order_id: int, request: Request):
    order = await _services(request).orders.get(order_id)
    return order.to_dict()


@router.patch("/orders/{order_id}")
async def update_order(order_id: int, body: OrderStatusUpdate, request: Request):
    order = await _services(request).orders.update_status(
        order_id,
        body.status,
        payment_reference=body.payment_reference,
        reason=body.reason,
        paid=body.paid
    )
    return order.to_dict()


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

def create_app(
    config: Optional[Config] = None,
    store: Optional[RecordStore] = None,
    payments: Optional[PaymentGateway] = None
) -> FastAPI:
    """
    Build the application and wire its services.

    Args:
        config: Configuration (defaults to get_config())
        store: Record store (defaults to the configured backend chain)
        payments: Payment gateway (defaults to the configured providers)
    """
    config = config or get_config()
    store = store or build_store(config.storage)
    payments = payments or PaymentGateway.from_config(config.payments)

    logging.getLogger().setLevel(config.server.log_level)

    app = FastAPI(title="Restaurant Ordering Service")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    catalog = CatalogService(store, ttl=config.catalog.cache_ttl)
    orders = OrderService(store)

    app.state.config = config
    app.state.store = store
    app.state.catalog = catalog
    app.state.orders = orders
    app.state.carts = CartRegistry(
        ttl=config.server.cart_ttl,
        max_carts=config.server.max_carts
    )
    app.state.checkout = CheckoutService(
        orders,
        payments,
        catalog,
        discount_percent=config.payments.crypto_discount_percent
    )

    app.add_exception_handler(ServiceError, service_error_handler)
    app.include_router(router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy" if store.is_healthy() else "degraded",
            "store": store.get_stats(),
            "carts": len(app.state.carts),
            "config": config.get_safe_summary(),
            "timestamp": datetime.utcnow().isoformat()
        }

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    logger.info(f"Application created (store={store.name})")
    return app


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Run the HTTP server."""
    validate_configuration()
    config = get_config()

    logger.info(f"Starting server on {config.server.host}:{config.server.port}")

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
