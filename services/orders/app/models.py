"""
SQLAlchemy ORM models for the Orders service.

Defines the database schema for orders, their line items, the per-item
inventory tracking used by the fulfillment saga, and the order timeline.
"""
import enum
import uuid
from datetime import datetime
from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from services.common.idempotency import ProcessedEventMixin
from .database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class Order(Base):
    """
    Order model representing a customer order in the system.

    Attributes:
        id (str): Primary key (UUID)
        user_id (str): ID of the user who placed the order (external reference)
        status (str): Lifecycle status, see OrderStatus
        total_amount (Decimal): Sum of unit_price * quantity over the line items
        shipping_address (dict): Structured shipping address
        billing_address (dict): Structured billing address (optional)
        notes (str): Free-text notes; cancellation reasons are appended here
        payment_id (str): Payment reference, set when payment completes
        transaction_id (str): Gateway transaction id, set when payment completes
        created_at (datetime): Timestamp when the order was created
        updated_at (datetime): Timestamp of the last change
        cancelled_at (datetime): Timestamp of the cancellation, if any
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    total_amount = Column(Numeric(10, 2), nullable=False)
    shipping_address = Column(JSONType, nullable=False)
    billing_address = Column(JSONType, nullable=True)
    notes = Column(Text, nullable=True)
    payment_id = Column(String(36), nullable=True)
    transaction_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    cancelled_at = Column(DateTime, nullable=True)

    items = relationship(
        "OrderLineItem", back_populates="order", cascade="all, delete-orphan",
        order_by="OrderLineItem.created_at",
    )
    inventory_tracking = relationship(
        "OrderInventoryTracking", back_populates="order", cascade="all, delete-orphan",
    )


class OrderLineItem(Base):
    """
    One product line of an order. Immutable after creation.

    Attributes:
        product_id (str): External product reference
        quantity (int): Ordered quantity, positive
        unit_price (Decimal): Price per unit at order time
        product_snapshot (dict): Denormalized product details (optional)
        warehouse_id (str): Warehouse to reserve from (optional)
    """
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=_new_id)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(36), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    product_snapshot = Column(JSONType, nullable=True)
    warehouse_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    order = relationship("Order", back_populates="items")


class OrderInventoryTracking(Base):
    """
    Whether the stock for one (order, product) pair has been reserved.

    One row per line item, created with the order; the order is fully
    reserved when every row has reserved = True.
    """
    __tablename__ = "order_inventory_tracking"
    __table_args__ = (
        UniqueConstraint("order_id", "product_id", name="uq_order_inventory_tracking_order_product"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(String(36), nullable=False)
    reserved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    order = relationship("Order", back_populates="inventory_tracking")


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (str): Foreign key to the order
        event_type (str): Type of event (e.g., "created", "status_changed", "updated")
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        user_id (str): ID of the user who triggered the event (None for saga-driven changes)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String(50), nullable=True)
    new_value = Column(String(50), nullable=True)
    user_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ProcessedEvent(ProcessedEventMixin, Base):
    """Events already applied by this service's consumers."""
