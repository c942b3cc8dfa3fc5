"""
Events published and consumed by the Inventory (products) service.

This service does not import the Orders service's definitions: it declares
only the fields it needs from order.created and order.cancelled.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import Field

from services.common.events import EventPayload

SERVICE_NAME = "products-service"
EXCHANGE = "products"
ORDERS_EXCHANGE = "orders"

INVENTORY_RESERVED = "inventory.reserved"
INVENTORY_INSUFFICIENT = "inventory.insufficient"
ORDER_CREATED = "order.created"
ORDER_CANCELLED = "order.cancelled"


# Published

class InventoryReservedPayload(EventPayload):
    order_id: str
    product_id: str
    warehouse_id: str
    quantity: int
    reserved_at: datetime


class InventoryInsufficientPayload(EventPayload):
    order_id: str
    product_id: str
    warehouse_id: str
    requested_quantity: int
    available_quantity: int
    reason: str


# Consumed

class OrderItemRef(EventPayload):
    product_id: str
    quantity: int = Field(..., gt=0)
    warehouse_id: Optional[str] = None


class OrderCreatedPayload(EventPayload):
    order_id: str
    items: List[OrderItemRef] = Field(..., min_length=1)
    warehouse_id: Optional[str] = None


class OrderCancelledPayload(EventPayload):
    order_id: str
    items: List[OrderItemRef]
    warehouse_id: Optional[str] = None
    reason: Optional[str] = None


CONSUMED_SCHEMAS = {
    ORDER_CREATED: OrderCreatedPayload,
    ORDER_CANCELLED: OrderCancelledPayload,
}
