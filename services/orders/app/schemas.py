"""
Pydantic schemas for request/response validation in the Orders service.

These schemas define the structure of data for API requests and responses.
"""
from datetime import datetime
from typing import Any, Dict, Optional, List
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field


class OrderItemCreate(BaseModel):
    """Schema for an order line item."""
    product_id: str = Field(..., min_length=1, description="Product reference from the catalog")
    quantity: int = Field(..., gt=0, description="Quantity ordered")
    unit_price: Decimal = Field(..., ge=0, description="Price per unit")
    product_snapshot: Optional[Dict[str, Any]] = None
    warehouse_id: Optional[str] = Field(None, description="Warehouse to reserve from")


class OrderCreate(BaseModel):
    """
    Schema for creating a new order.

    user_id may only be given by admins; regular users always order for
    themselves.
    """
    user_id: Optional[str] = None
    items: List[OrderItemCreate] = Field(..., description="Order line items")
    warehouse_id: Optional[str] = Field(None, description="Warehouse for items that name none")
    shipping_address: Dict[str, Any]
    billing_address: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


class OrderUpdate(BaseModel):
    """Schema for updating an existing order. Status changes go through the action endpoints."""
    model_config = ConfigDict(extra="forbid")

    notes: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class ShipRequest(BaseModel):
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None


class OrderLineItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    product_snapshot: Optional[Dict[str, Any]] = None
    warehouse_id: Optional[str] = None


class InventoryTracking(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    reserved: bool


class Order(BaseModel):
    """
    Schema for order responses, includes all database fields.

    Attributes:
        id (str): Order's unique identifier
        user_id (str): ID of the user who placed the order
        status (str): Order status
        total_amount (Decimal): Total amount of the order
        items (List[OrderLineItem]): Order line items
        inventory_tracking (List[InventoryTracking]): Reservation state per product
        created_at (datetime): When the order was created
    """
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    status: str
    total_amount: Decimal
    shipping_address: Dict[str, Any]
    billing_address: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None
    payment_id: Optional[str] = None
    transaction_id: Optional[str] = None
    items: List[OrderLineItem] = Field(default_factory=list)
    inventory_tracking: List[InventoryTracking] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    cancelled_at: Optional[datetime] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class OrderList(BaseModel):
    orders: List[Order]
    pagination: Pagination


class OrderEvent(BaseModel):
    """
    Schema for order timeline events.

    Attributes:
        id (int): Event ID
        order_id (str): Order identifier
        event_type (str): Type of event (created, status_changed, updated)
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        user_id (str): User who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: str
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime
