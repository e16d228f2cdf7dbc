"""
Storefront Orders & Payments API

This module implements the FastAPI application for the storefront's order,
cart and MoMo payment endpoints, with relational persistence through
SQLAlchemy.

Endpoints:
    POST /orders: Create an order from the cart or an explicit item list
    GET /orders: List the caller's orders with pagination
    GET /orders/{order_id}: Get one of the caller's orders
    PATCH /orders/{order_id}/cancel: Cancel a PENDING order
    GET /orders/{order_id}/timeline: Order event history
    POST /payments/momo/create: Start a MoMo wallet payment
    POST /payments/momo/callback: MoMo IPN (public, signature-checked)
    GET|POST|PATCH|DELETE /cart...: Cart maintenance
    GET|PATCH|DELETE /admin/orders...: Admin order management
    GET /healthz: Health check endpoint

Run with ``uvicorn storefront.main:create_app --factory``.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from . import auth, crud, reconciler, schemas
from .clients.momo_client import MomoClient
from .config import Settings, load_settings
from .database import Database, get_db
from .exceptions import InvalidCallback, InvalidSignature, NotFound, StoreError
from .models import OrderStatus

logger = logging.getLogger(__name__)

GENERIC_CALLBACK_REJECTION = {"message": "Invalid request"}

orders_router = APIRouter(prefix="/orders", tags=["orders"])
payments_router = APIRouter(prefix="/payments", tags=["payments"])
cart_router = APIRouter(prefix="/cart", tags=["cart"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])


def get_momo_client(request: Request) -> MomoClient:
    return request.app.state.momo_client


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

@orders_router.post("", response_model=schemas.Order, status_code=status.HTTP_201_CREATED)
def create_order(
    order: schemas.OrderCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Create a PENDING order for the authenticated user.

    Without ``items`` the order is built from the user's cart, which is
    emptied on success. Prices and the total always come from the catalog.

    Raises:
        400 if the cart is empty, stock is short, or the item list is invalid
        404 if a product does not exist
    """
    return crud.create_order(
        db,
        user_id=current_user.id,
        shipping_address=crud.build_shipping_address(order),
        note=order.note,
        items=order.items,
        declared_total=order.total_amount,
    )


@orders_router.get("", response_model=schemas.OrderList)
def list_my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """List the caller's orders, newest first."""
    return crud.list_orders(db, user_id=current_user.id, status=status, page=page, limit=limit)


@orders_router.get("/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get a single order owned by the caller.

    Raises:
        403 if another user owns the order
        404 if the order does not exist
    """
    return crud.get_order_for_user(db, current_user.id, order_id)


@orders_router.patch("/{order_id}/cancel", response_model=schemas.Order)
def cancel_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Cancel one of the caller's orders while it is still PENDING.

    Raises:
        403 if another user owns the order
        404 if the order does not exist
        409 if the order is not PENDING
    """
    return crud.cancel_order(db, current_user.id, order_id)


@orders_router.get("/{order_id}/timeline", response_model=List[schemas.OrderEvent])
def get_order_timeline(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Event history of an order (owner or admin)."""
    db_order = crud.get_order(db, order_id)
    if db_order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    if current_user.role != auth.ADMIN_ROLE and db_order.user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to access this order"
        )
    return crud.get_order_events(db, order_id)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@payments_router.post("/momo/create", response_model=schemas.PaymentInitResponse)
async def create_momo_payment(
    body: schemas.PaymentCreate,
    db: Session = Depends(get_db),
    momo: MomoClient = Depends(get_momo_client),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Start a MoMo payment and return the provider response (with ``payUrl``).

    Raises:
        403 if another user owns the order
        404 if the order does not exist
        409 if the order is not PENDING
        502 if the provider call fails
    """
    data = await momo.create_payment(db, body.order_id, current_user.id)
    return {"status": "success", "data": data}


@payments_router.post("/momo/callback", status_code=status.HTTP_204_NO_CONTENT)
async def momo_callback(request: Request, db: Session = Depends(get_db)):
    """
    MoMo IPN endpoint. Public; authenticated only by the payload signature.

    Responds 204 once the callback is applied or recognized as a duplicate.
    Rejections carry a generic body so nothing about the check leaks.
    """
    try:
        payload = schemas.MomoCallback.model_validate(await request.json())
    except (ValueError, ValidationError) as e:
        logger.error(f"Unparseable MoMo callback: {e}")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=GENERIC_CALLBACK_REJECTION)

    momo = get_momo_client(request)
    try:
        reconciler.handle_callback(db, momo.signer, momo.settings.access_key, payload)
    except (InvalidSignature, InvalidCallback, NotFound):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=GENERIC_CALLBACK_REJECTION)
    except StoreError as e:
        logger.error(f"MoMo callback for request {payload.requestId} failed: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"message": "Internal Server Error"},
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------

@cart_router.get("", response_model=schemas.Cart)
def get_cart(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    return crud.get_or_create_cart(db, current_user.id)


@cart_router.post("/items", response_model=schemas.Cart)
def add_cart_item(
    item: schemas.CartItemAdd,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    return crud.add_cart_item(db, current_user.id, item.product_id, item.quantity)


@cart_router.patch("/items/{product_id}", response_model=schemas.Cart)
def update_cart_item(
    product_id: int,
    item: schemas.CartItemUpdate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    return crud.update_cart_item(db, current_user.id, product_id, item.quantity)


@cart_router.delete("/items/{product_id}", response_model=schemas.Cart)
def remove_cart_item(
    product_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    return crud.remove_cart_item(db, current_user.id, product_id)


@cart_router.delete("", response_model=schemas.Cart)
def clear_cart(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    return crud.clear_cart(db, current_user.id)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@admin_router.get("/orders", response_model=schemas.OrderList)
def admin_list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    admin: auth.CurrentUser = Depends(auth.require_admin)
):
    """List every order with optional status and date filters."""
    return crud.list_orders(
        db, status=status, page=page, limit=limit, from_date=from_date, to_date=to_date
    )


@admin_router.get("/orders/{order_id}", response_model=schemas.Order)
def admin_get_order(
    order_id: int,
    db: Session = Depends(get_db),
    admin: auth.CurrentUser = Depends(auth.require_admin)
):
    db_order = crud.get_order(db, order_id)
    if db_order is None:
        raise NotFound("Order not found")
    return db_order


@admin_router.patch("/orders/{order_id}/status", response_model=schemas.Order)
def admin_update_order_status(
    order_id: int,
    body: schemas.OrderStatusUpdate,
    db: Session = Depends(get_db),
    admin: auth.CurrentUser = Depends(auth.require_admin)
):
    """Overwrite an order's status; the change is recorded on the timeline."""
    return crud.update_order_status(db, order_id, body.status, admin.id)


@admin_router.delete("/orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
def admin_delete_order(
    order_id: int,
    db: Session = Depends(get_db),
    admin: auth.CurrentUser = Depends(auth.require_admin)
):
    crud.delete_order(db, order_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    momo_client: Optional[MomoClient] = None,
) -> FastAPI:
    """
    Build the storefront application.

    Args:
        settings: Service settings (read from the environment if omitted)
        database: Storage component (built from ``settings.database_url`` if omitted)
        momo_client: MoMo gateway client (built from ``settings.momo`` if omitted)

    Returns:
        Configured FastAPI application
    """
    settings = settings or load_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    database = database or Database(settings.database_url, pool_pre_ping=True)
    momo_client = momo_client or MomoClient(settings.momo)

    # Create database tables
    database.create_all()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        database.dispose()
        logger.info("Database connections closed")

    app = FastAPI(title="storefront-orders", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = database
    app.state.momo_client = momo_client

    app.add_exception_handler(StoreError, store_error_handler)

    @app.get("/healthz", response_model=dict)
    def health():
        """
        Health check endpoint for the storefront service.

        Returns:
            dict: {"status": "healthy"} when the service is operational.
        """
        return {"status": "healthy"}

    app.include_router(orders_router)
    app.include_router(payments_router)
    app.include_router(cart_router)
    app.include_router(admin_router)
    return app
