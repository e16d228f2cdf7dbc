"""
Business-rule validation for orders.

Provides checks beyond schema validation: item list rules, the declared
total check and the order status lifecycle.
"""
from typing import Iterable, List, Tuple
from decimal import Decimal

from . import schemas
from .models import OrderStatus

MAX_ORDER_LINES = 100
MAX_LINE_QUANTITY = 10000

# Normal lifecycle; admin overrides may step outside it
VALID_TRANSITIONS = {
    OrderStatus.PENDING: [OrderStatus.PAID, OrderStatus.CANCELLED],
    OrderStatus.PAID: [OrderStatus.SHIPPING, OrderStatus.CANCELLED],
    OrderStatus.SHIPPING: [OrderStatus.DELIVERED],
    OrderStatus.DELIVERED: [OrderStatus.COMPLETED],
    OrderStatus.COMPLETED: [],
    OrderStatus.CANCELLED: [],
}


def validate_order_items(items: List[schemas.OrderItemCreate]) -> Tuple[bool, str]:
    """
    Validate requested order lines for business rules.

    Args:
        items: List of requested order lines

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Order must contain at least one item"

    if len(items) > MAX_ORDER_LINES:
        return False, f"Order cannot contain more than {MAX_ORDER_LINES} items"

    product_ids = [item.product_id for item in items]
    if len(product_ids) != len(set(product_ids)):
        return False, "Order contains the same product more than once"

    for item in items:
        if item.quantity <= 0:
            return False, f"Item {item.product_id}: quantity must be positive"

        if item.quantity > MAX_LINE_QUANTITY:
            return False, f"Item {item.product_id}: quantity exceeds maximum ({MAX_LINE_QUANTITY})"

    return True, ""


def calculate_total(lines: Iterable[Tuple[Decimal, int]]) -> Decimal:
    """Sum of price times quantity over (price, quantity) pairs."""
    return sum((Decimal(str(price)) * quantity for price, quantity in lines), Decimal(0))


def validate_order_total(calculated_total: Decimal, claimed_total: Decimal) -> Tuple[bool, str]:
    """
    Compare the client's declared total with the computed one.

    Args:
        calculated_total: Total computed from catalog prices
        claimed_total: The total claimed by the client

    Returns:
        Tuple of (is_valid, error_message)
    """
    # Allow small rounding differences (up to 0.01)
    if abs(calculated_total - Decimal(str(claimed_total))) > Decimal('0.01'):
        return False, f"Order total mismatch: calculated {calculated_total}, claimed {claimed_total}"

    return True, ""


def validate_order_status_transition(old_status: OrderStatus, new_status: OrderStatus) -> Tuple[bool, str]:
    """
    Check a status change against the normal order lifecycle.

    Args:
        old_status: Current order status
        new_status: New order status

    Returns:
        Tuple of (is_valid, error_message)
    """
    if old_status == new_status:
        return True, ""

    if new_status not in VALID_TRANSITIONS.get(old_status, []):
        return False, f"Invalid status transition: {old_status.value} -> {new_status.value}"

    return True, ""
