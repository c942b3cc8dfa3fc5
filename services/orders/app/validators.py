"""
Business-rule validation for the Orders service.

Covers the rules pydantic schemas cannot express (cross-item checks) and the
order status transition table.
"""
from typing import Dict, FrozenSet, List, Tuple
from decimal import Decimal
from . import schemas
from .models import OrderStatus

MAX_ITEMS = 100
MAX_QUANTITY = 10000
MAX_UNIT_PRICE = Decimal("1000000")


def validate_order_items(items: List[schemas.OrderItemCreate]) -> Tuple[bool, str]:
    """
    Validate order items for business rules.

    Args:
        items: List of order items

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Order must contain at least one item"

    if len(items) > MAX_ITEMS:
        return False, f"Order cannot contain more than {MAX_ITEMS} items"

    # One line (and one tracking row) per product
    product_ids = [item.product_id for item in items]
    if len(product_ids) != len(set(product_ids)):
        return False, "Order contains duplicate products"

    for item in items:
        if item.quantity <= 0:
            return False, f"Item {item.product_id}: quantity must be positive"

        if item.quantity > MAX_QUANTITY:
            return False, f"Item {item.product_id}: quantity exceeds maximum ({MAX_QUANTITY})"

        if item.unit_price < 0:
            return False, f"Item {item.product_id}: price cannot be negative"

        if item.unit_price > MAX_UNIT_PRICE:
            return False, f"Item {item.product_id}: price exceeds maximum (1,000,000)"

    return True, ""


def calculate_total(items: List[schemas.OrderItemCreate]) -> Decimal:
    """Sum of unit_price * quantity, rounded to cents."""
    total = sum((Decimal(str(item.unit_price)) * item.quantity for item in items), Decimal("0"))
    return total.quantize(Decimal("0.01"))


TERMINAL_STATUSES: FrozenSet[str] = frozenset({
    OrderStatus.DELIVERED.value,
    OrderStatus.CANCELLED.value,
    OrderStatus.REFUNDED.value,
})

# Statuses that payment and reservation events may still move
SAGA_ACTIVE_STATUSES: FrozenSet[str] = frozenset({
    OrderStatus.PENDING.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.PROCESSING.value,
})

VALID_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    OrderStatus.PENDING.value: frozenset({
        OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value,
    }),
    OrderStatus.CONFIRMED.value: frozenset({OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value}),
    OrderStatus.PROCESSING.value: frozenset({OrderStatus.SHIPPED.value, OrderStatus.CANCELLED.value}),
    OrderStatus.SHIPPED.value: frozenset(),
    OrderStatus.DELIVERED.value: frozenset(),
    OrderStatus.CANCELLED.value: frozenset(),
    OrderStatus.REFUNDED.value: frozenset(),
}


def validate_order_status_transition(old_status: str, new_status: str) -> Tuple[bool, str]:
    """
    Validate that a status transition is allowed.

    Args:
        old_status: Current order status
        new_status: New order status

    Returns:
        Tuple of (is_valid, error_message)
    """
    if old_status not in VALID_TRANSITIONS:
        return False, f"Unknown status: {old_status}"

    if new_status not in VALID_TRANSITIONS:
        return False, f"Unknown status: {new_status}"

    if new_status not in VALID_TRANSITIONS[old_status]:
        return False, f"Invalid status transition: {old_status} -> {new_status}"

    return True, ""
