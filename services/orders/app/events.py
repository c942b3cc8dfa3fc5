"""
Events published and consumed by the Orders service.

Consumed payloads declare only the fields this service reads; the products
and payments services remain free to add fields.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import Field

from services.common.events import EventPayload

SERVICE_NAME = "orders-service"
EXCHANGE = "orders"
PRODUCTS_EXCHANGE = "products"
PAYMENTS_EXCHANGE = "payments"

ORDER_CREATED = "order.created"
ORDER_CONFIRMED = "order.confirmed"
ORDER_CANCELLED = "order.cancelled"
ORDER_SHIPPED = "order.shipped"

INVENTORY_RESERVED = "inventory.reserved"
INVENTORY_INSUFFICIENT = "inventory.insufficient"
PAYMENT_COMPLETED = "payment.completed"
PAYMENT_FAILED = "payment.failed"


# Published

class CreatedItem(EventPayload):
    product_id: str
    quantity: int
    unit_price: Decimal
    warehouse_id: Optional[str] = None


class OrderCreatedPayload(EventPayload):
    order_id: str
    user_id: str
    items: List[CreatedItem]
    warehouse_id: Optional[str] = None
    shipping_address: Dict[str, Any]
    total_amount: Decimal
    created_at: datetime


class OrderConfirmedPayload(EventPayload):
    order_id: str
    user_id: str
    total_amount: Decimal
    confirmed_at: datetime


class CancelledItem(EventPayload):
    product_id: str
    quantity: int
    warehouse_id: Optional[str] = None


class OrderCancelledPayload(EventPayload):
    order_id: str
    user_id: str
    items: List[CancelledItem]
    reason: str
    cancelled_at: datetime


class OrderShippedPayload(EventPayload):
    order_id: str
    user_id: str
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    shipped_at: datetime


# Consumed

class InventoryReservedPayload(EventPayload):
    order_id: str
    product_id: str
    warehouse_id: Optional[str] = None
    quantity: Optional[int] = None


class InventoryInsufficientPayload(EventPayload):
    order_id: str
    product_id: str
    warehouse_id: Optional[str] = None
    requested_quantity: Optional[int] = None
    available_quantity: Optional[int] = None
    reason: Optional[str] = None


class PaymentCompletedPayload(EventPayload):
    payment_id: str
    order_id: str
    amount: Optional[Decimal] = None
    transaction_id: str
    completed_at: Optional[datetime] = None


class PaymentFailedPayload(EventPayload):
    payment_id: str
    order_id: str
    amount: Optional[Decimal] = None
    error: str = Field(..., min_length=1)
    failed_at: Optional[datetime] = None


CONSUMED_SCHEMAS = {
    INVENTORY_RESERVED: InventoryReservedPayload,
    INVENTORY_INSUFFICIENT: InventoryInsufficientPayload,
    PAYMENT_COMPLETED: PaymentCompletedPayload,
    PAYMENT_FAILED: PaymentFailedPayload,
}
