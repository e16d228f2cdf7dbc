"""
Database operations for orders, carts and payments.

Order creation, owner lifecycle operations and admin overrides live here.
Every multi-statement write is committed once at the end of the operation;
any failure rolls the whole session back.
"""
import json
import logging
import math
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import delete as sqla_delete, update as sqla_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from . import models, schemas, validators
from .exceptions import (
    EmptyCart, Forbidden, InsufficientStock, InvalidRequest, InvalidState,
    NotFound, PersistenceError, ProductNotFound,
)
from .models import OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)

DEFAULT_SHIPPING_ADDRESS = "Default Address"


def log_order_event(
    db: Session,
    order_id: int,
    event_type: str,
    description: str,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    user_id: Optional[int] = None
) -> models.OrderEvent:
    """
    Add an order event to the timeline.

    The event joins the caller's transaction; it is written when the caller
    commits.

    Args:
        db: Database session
        order_id: Order identifier
        event_type: Type of event (e.g., "created", "cancelled", "paid")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
        user_id: User who triggered the event (optional)
    """
    event = models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        user_id=user_id
    )
    db.add(event)
    return event


def _commit(db: Session, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to {action}: {e}")
        raise PersistenceError(f"Failed to {action}") from e


def _order_query(db: Session):
    return db.query(models.Order).options(
        selectinload(models.Order.items).selectinload(models.OrderItem.product),
        selectinload(models.Order.payment),
        selectinload(models.Order.user),
    )


# ---------------------------------------------------------------------------
# Order creation
# ---------------------------------------------------------------------------

def build_shipping_address(order: schemas.OrderCreate) -> str:
    """
    Use the given shipping address, or serialize the contact fields into one.
    """
    if order.shipping_address:
        return order.shipping_address
    contact = {
        "fullName": order.full_name,
        "phone": order.phone,
        "email": order.email,
        "address": order.address,
    }
    if not any(contact.values()):
        return DEFAULT_SHIPPING_ADDRESS
    return json.dumps(contact, ensure_ascii=False)


def _check_stock(product: models.Product, quantity: int) -> None:
    if product.stock < quantity:
        raise InsufficientStock(product.id, product.name, product.stock, quantity)


def _lines_from_items(db: Session, items: List[schemas.OrderItemCreate]) -> List[Tuple[models.Product, int]]:
    is_valid, error_message = validators.validate_order_items(items)
    if not is_valid:
        raise InvalidRequest(error_message)

    lines = []
    for item in items:
        product = db.get(models.Product, item.product_id)
        if product is None:
            raise ProductNotFound(item.product_id)
        _check_stock(product, item.quantity)
        lines.append((product, item.quantity))
    return lines


def _lines_from_cart(cart: Optional[models.Cart]) -> List[Tuple[models.Product, int]]:
    if cart is None or not cart.items:
        raise EmptyCart()

    lines = []
    for cart_item in cart.items:
        if cart_item.product is None:
            raise ProductNotFound(cart_item.product_id)
        _check_stock(cart_item.product, cart_item.quantity)
        lines.append((cart_item.product, cart_item.quantity))
    return lines


def create_order(
    db: Session,
    user_id: int,
    shipping_address: str,
    note: Optional[str] = None,
    items: Optional[List[schemas.OrderItemCreate]] = None,
    declared_total: Optional[Decimal] = None,
) -> models.Order:
    """
    Create a PENDING order from an explicit item list or from the user's cart.

    Prices are read from the catalog and frozen on the order lines. When the
    order comes from the cart, the cart is emptied in the same transaction.

    Args:
        db: Database session
        user_id: Owner of the new order
        shipping_address: Address string stored on the order
        note: Optional customer note
        items: Explicit order lines; None means "use the cart"
        declared_total: Total the client expects; compared and logged only

    Returns:
        The created order with items, payment and owner loaded

    Raises:
        InvalidRequest: if the item list breaks the order rules
        ProductNotFound: if a line references an unknown product
        InsufficientStock: if a product has less stock than requested
        EmptyCart: if the order comes from an empty cart
        PersistenceError: if the transaction fails
    """
    cart = None
    if items is not None:
        lines = _lines_from_items(db, items)
    else:
        cart = get_cart(db, user_id)
        lines = _lines_from_cart(cart)

    total = validators.calculate_total((product.price, quantity) for product, quantity in lines)
    if declared_total is not None:
        is_valid, error_message = validators.validate_order_total(total, declared_total)
        if not is_valid:
            logger.warning(f"User {user_id}: {error_message}; using calculated total")

    try:
        db_order = models.Order(
            user_id=user_id,
            total=total,
            status=OrderStatus.PENDING,
            shipping_address=shipping_address,
            note=note,
        )
        db.add(db_order)
        db.flush()
        order_id = db_order.id

        for product, quantity in lines:
            db.add(models.OrderItem(
                order_id=order_id,
                product_id=product.id,
                quantity=quantity,
                price=product.price,
            ))

        log_order_event(
            db,
            order_id=order_id,
            event_type="created",
            description=f"Order created with {len(lines)} item(s), total {total}",
            new_value=OrderStatus.PENDING.value,
            user_id=user_id,
        )

        if cart is not None:
            db.execute(sqla_delete(models.CartItem).where(models.CartItem.cart_id == cart.id))

        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create order for user {user_id}: {e}")
        raise PersistenceError("Failed to create order") from e
    except Exception:
        db.rollback()
        raise

    logger.info(f"Order #{order_id} created for user {user_id} (total {total}, source {'cart' if cart else 'items'})")
    return get_order(db, order_id)


# ---------------------------------------------------------------------------
# Queries and owner lifecycle
# ---------------------------------------------------------------------------

def get_order(db: Session, order_id: int) -> Optional[models.Order]:
    """
    Retrieve a single order by ID with items, payment and owner loaded.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return _order_query(db).filter(models.Order.id == order_id).first()


def get_order_for_user(db: Session, user_id: int, order_id: int) -> models.Order:
    """
    Retrieve an order owned by ``user_id``.

    Raises:
        NotFound: if the order does not exist
        Forbidden: if another user owns it
    """
    db_order = get_order(db, order_id)
    if db_order is None:
        raise NotFound("Order not found")
    if db_order.user_id != user_id:
        raise Forbidden("You do not have permission to view this order")
    return db_order


def list_orders(
    db: Session,
    user_id: Optional[int] = None,
    status: Optional[OrderStatus] = None,
    page: int = 1,
    limit: int = 10,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
) -> dict:
    """
    List orders, newest first, with pagination metadata.

    Args:
        db: Database session
        user_id: Restrict to this owner (None lists every order)
        status: Restrict to this status
        page: 1-based page number
        limit: Page size
        from_date: Only orders created at or after this time
        to_date: Only orders created at or before this time

    Returns:
        dict with ``orders`` and ``pagination`` (page, limit, total, total_pages)
    """
    query = _order_query(db)
    if user_id is not None:
        query = query.filter(models.Order.user_id == user_id)
    if status is not None:
        query = query.filter(models.Order.status == status)
    if from_date is not None:
        query = query.filter(models.Order.created_at >= from_date)
    if to_date is not None:
        query = query.filter(models.Order.created_at <= to_date)

    total = query.count()
    orders = (
        query.order_by(models.Order.created_at.desc(), models.Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "orders": orders,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit),
        },
    }


def transition_if_pending(db: Session, order_id: int, new_status: OrderStatus) -> bool:
    """
    Move an order out of PENDING with a guarded UPDATE.

    Returns:
        True if this call changed the row, False if the order was no longer
        PENDING (another writer got there first)
    """
    result = db.execute(
        sqla_update(models.Order)
        .where(models.Order.id == order_id, models.Order.status == OrderStatus.PENDING)
        .values(status=new_status)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def cancel_order(db: Session, user_id: int, order_id: int) -> models.Order:
    """
    Cancel a PENDING order on behalf of its owner.

    Stock is untouched: it is only decremented once payment succeeds.

    Raises:
        NotFound: if the order does not exist
        Forbidden: if another user owns it
        InvalidState: if the order is not PENDING
    """
    db_order = db.get(models.Order, order_id)
    if db_order is None:
        raise NotFound("Order not found")
    if db_order.user_id != user_id:
        raise Forbidden("You do not have permission to cancel this order")
    if db_order.status != OrderStatus.PENDING:
        raise InvalidState(
            f"Only PENDING orders can be cancelled (current status: {db_order.status.value})"
        )

    if not transition_if_pending(db, order_id, OrderStatus.CANCELLED):
        db.rollback()
        db.expire_all()
        current = db.get(models.Order, order_id)
        raise InvalidState(
            f"Only PENDING orders can be cancelled (current status: {current.status.value})"
        )
    log_order_event(
        db,
        order_id=order_id,
        event_type="cancelled",
        description="Order cancelled by customer",
        old_value=OrderStatus.PENDING.value,
        new_value=OrderStatus.CANCELLED.value,
        user_id=user_id,
    )
    _commit(db, f"cancel order {order_id}")
    db.expire_all()

    logger.info(f"Order #{order_id} cancelled by user {user_id}")
    return get_order(db, order_id)


def get_order_events(db: Session, order_id: int) -> List[models.OrderEvent]:
    return (
        db.query(models.OrderEvent)
        .filter(models.OrderEvent.order_id == order_id)
        .order_by(models.OrderEvent.created_at, models.OrderEvent.id)
        .all()
    )


# ---------------------------------------------------------------------------
# Admin overrides
# ---------------------------------------------------------------------------

def update_order_status(db: Session, order_id: int, new_status: OrderStatus, admin_id: int) -> models.Order:
    """
    Overwrite an order's status as an administrator.

    The overwrite may leave the normal lifecycle; it is always recorded as a
    ``status_overridden`` event and logged. The payment is synchronized:
    PAID/COMPLETED marks it SUCCESS, CANCELLED marks it FAILED. Stock is not
    touched; the gateway's success callback decrements it when it settles the
    payment.

    Raises:
        NotFound: if the order does not exist
    """
    db_order = get_order(db, order_id)
    if db_order is None:
        raise NotFound("Order not found")

    old_status = db_order.status
    is_valid, error_message = validators.validate_order_status_transition(old_status, new_status)
    if not is_valid:
        logger.warning(f"Admin {admin_id} override on order #{order_id}: {error_message}")

    db_order.status = new_status
    payment = db_order.payment
    if payment is not None:
        if new_status in (OrderStatus.PAID, OrderStatus.COMPLETED) and payment.status != PaymentStatus.SUCCESS:
            payment.status = PaymentStatus.SUCCESS
            payment.paid_at = datetime.utcnow()
        elif new_status == OrderStatus.CANCELLED and payment.status != PaymentStatus.FAILED:
            payment.status = PaymentStatus.FAILED

    log_order_event(
        db,
        order_id=order_id,
        event_type="status_overridden",
        description=f"Status set from '{old_status.value}' to '{new_status.value}' by admin",
        old_value=old_status.value,
        new_value=new_status.value,
        user_id=admin_id,
    )
    _commit(db, f"update status of order {order_id}")

    logger.info(f"Order #{order_id} status {old_status.value} -> {new_status.value} by admin {admin_id}")
    return get_order(db, order_id)


def delete_order(db: Session, order_id: int) -> None:
    """
    Delete an order with its items, payment and timeline in one transaction.

    Raises:
        NotFound: if the order does not exist
    """
    db_order = db.get(models.Order, order_id)
    if db_order is None:
        raise NotFound("Order not found")

    try:
        # Dependent rows first to satisfy foreign keys
        db.execute(sqla_delete(models.OrderItem).where(models.OrderItem.order_id == order_id))
        db.execute(sqla_delete(models.Payment).where(models.Payment.order_id == order_id))
        db.execute(sqla_delete(models.OrderEvent).where(models.OrderEvent.order_id == order_id))
        db.flush()
        db.delete(db_order)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to delete order {order_id}: {e}")
        raise PersistenceError("Failed to delete order") from e

    logger.info(f"Order #{order_id} deleted")


# ---------------------------------------------------------------------------
# Catalog and payments
# ---------------------------------------------------------------------------

def decrement_stock(db: Session, product_id: int, quantity: int) -> None:
    """Relative stock decrement, evaluated by the database."""
    db.execute(
        sqla_update(models.Product)
        .where(models.Product.id == product_id)
        .values(stock=models.Product.stock - quantity)
        .execution_options(synchronize_session=False)
    )


def get_payment_by_order(db: Session, order_id: int) -> Optional[models.Payment]:
    return db.query(models.Payment).filter(models.Payment.order_id == order_id).first()


def get_or_create_payment(db: Session, db_order: models.Order) -> models.Payment:
    """
    Return the order's payment, creating a PENDING MoMo payment on first use.

    A concurrent request that creates the row first wins the unique
    ``order_id`` constraint; the losing request reuses that row.
    """
    payment = get_payment_by_order(db, db_order.id)
    if payment is not None:
        return payment

    order_id = db_order.id
    payment = models.Payment(
        order_id=order_id,
        method=models.PaymentMethod.MOMO,
        amount=db_order.total,
        status=PaymentStatus.PENDING,
    )
    db.add(payment)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_payment_by_order(db, order_id)
        if existing is None:
            raise PersistenceError(f"Failed to create payment for order {order_id}")
        logger.info(f"Payment for order #{order_id} created concurrently; reusing it")
        return existing
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create payment for order {order_id}: {e}")
        raise PersistenceError(f"Failed to create payment for order {order_id}") from e
    db.refresh(payment)
    logger.info(f"Payment record created for order #{order_id}")
    return payment


def settle_payment_if_unsettled(
    db: Session,
    order_id: int,
    transaction_code: str,
    paid_at: Optional[datetime] = None,
) -> bool:
    """
    Record the provider transaction on a payment that has none yet.

    The transaction code marks the payment whose stock has been decremented,
    so the guarded UPDATE lets exactly one callback settle a payment.

    Returns:
        True if this call settled the payment, False if it was already settled
    """
    values = {"status": PaymentStatus.SUCCESS, "transaction_code": transaction_code}
    if paid_at is not None:
        values["paid_at"] = paid_at
    result = db.execute(
        sqla_update(models.Payment)
        .where(models.Payment.order_id == order_id, models.Payment.transaction_code.is_(None))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------

def get_cart(db: Session, user_id: int) -> Optional[models.Cart]:
    return (
        db.query(models.Cart)
        .options(selectinload(models.Cart.items).selectinload(models.CartItem.product))
        .filter(models.Cart.user_id == user_id)
        .first()
    )


def get_or_create_cart(db: Session, user_id: int) -> models.Cart:
    cart = get_cart(db, user_id)
    if cart is None:
        cart = models.Cart(user_id=user_id)
        db.add(cart)
        _commit(db, f"create cart for user {user_id}")
        cart = get_cart(db, user_id)
    return cart


def _get_product(db: Session, product_id: int) -> models.Product:
    product = db.get(models.Product, product_id)
    if product is None:
        raise ProductNotFound(product_id)
    return product


def _find_cart_item(cart: models.Cart, product_id: int) -> Optional[models.CartItem]:
    for cart_item in cart.items:
        if cart_item.product_id == product_id:
            return cart_item
    return None


def add_cart_item(db: Session, user_id: int, product_id: int, quantity: int = 1) -> models.Cart:
    """
    Add a product to the cart, merging with an existing line.

    Raises:
        ProductNotFound: if the product does not exist
        InsufficientStock: if the merged quantity exceeds stock
    """
    cart = get_or_create_cart(db, user_id)
    product = _get_product(db, product_id)

    cart_item = _find_cart_item(cart, product_id)
    new_quantity = quantity + (cart_item.quantity if cart_item else 0)
    _check_stock(product, new_quantity)

    if cart_item:
        cart_item.quantity = new_quantity
    else:
        db.add(models.CartItem(cart_id=cart.id, product_id=product_id, quantity=quantity))
    _commit(db, f"add product {product_id} to cart of user {user_id}")
    db.expire_all()
    return get_cart(db, user_id)


def update_cart_item(db: Session, user_id: int, product_id: int, quantity: int) -> models.Cart:
    cart = get_or_create_cart(db, user_id)
    cart_item = _find_cart_item(cart, product_id)
    if cart_item is None:
        raise NotFound("Item not found in cart")
    _check_stock(_get_product(db, product_id), quantity)

    cart_item.quantity = quantity
    _commit(db, f"update cart item {product_id} for user {user_id}")
    db.expire_all()
    return get_cart(db, user_id)


def remove_cart_item(db: Session, user_id: int, product_id: int) -> models.Cart:
    cart = get_or_create_cart(db, user_id)
    cart_item = _find_cart_item(cart, product_id)
    if cart_item is None:
        raise NotFound("Item not found in cart")

    db.delete(cart_item)
    _commit(db, f"remove cart item {product_id} for user {user_id}")
    db.expire_all()
    return get_cart(db, user_id)


def clear_cart(db: Session, user_id: int) -> models.Cart:
    cart = get_or_create_cart(db, user_id)
    db.execute(sqla_delete(models.CartItem).where(models.CartItem.cart_id == cart.id))
    _commit(db, f"clear cart for user {user_id}")
    db.expire_all()
    return get_cart(db, user_id)
