"""
SQLAlchemy ORM models for the Inventory service.

Defines the database schema for warehouses, on-hand stock and the
reservation journal.
"""
import enum
import uuid
from datetime import datetime
from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint,
)
from services.common.idempotency import ProcessedEventMixin
from .database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class ReservationStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    RELEASED = "released"


class Warehouse(Base):
    """
    Warehouse holding stock.

    Attributes:
        id (str): Primary key (UUID)
        name (str): Display name
        location (str): Free-text location
        is_active (bool): Inactive warehouses are never chosen as the default
        created_at (datetime): Timestamp when the warehouse was created
        updated_at (datetime): Timestamp of the last change
    """
    __tablename__ = "warehouses"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    location = Column(String(500), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Inventory(Base):
    """
    Physical on-hand quantity of one product in one warehouse.

    Attributes:
        id (str): Primary key (UUID)
        product_id (str): External product reference (catalog)
        warehouse_id (str): Warehouse holding the stock
        quantity (int): On-hand quantity, never negative
    """
    __tablename__ = "inventory"
    __table_args__ = (
        UniqueConstraint("product_id", "warehouse_id", name="uq_inventory_product_warehouse"),
        CheckConstraint("quantity >= 0", name="ck_inventory_quantity_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    product_id = Column(String(36), nullable=False, index=True)
    warehouse_id = Column(String(36), ForeignKey("warehouses.id", ondelete="CASCADE"), nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class InventoryReservation(Base):
    """
    Provisional claim of stock by an order.

    Pending reservations count against availability; released ones do not.
    """
    __tablename__ = "inventory_reservations"

    id = Column(String(36), primary_key=True, default=_new_id)
    order_id = Column(String(36), nullable=False, index=True)
    product_id = Column(String(36), nullable=False, index=True)
    warehouse_id = Column(String(36), ForeignKey("warehouses.id", ondelete="CASCADE"), nullable=False)
    quantity = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=ReservationStatus.PENDING.value)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class ReleasedOrderLine(Base):
    """
    Marks an (order, product) pair as released.

    Written by every release, including one that finds nothing pending, so
    a late or redelivered reservation request for the same order line is
    refused instead of holding stock for a cancelled order.
    """
    __tablename__ = "released_order_lines"
    __table_args__ = (
        UniqueConstraint("order_id", "product_id", name="uq_released_order_product"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    order_id = Column(String(36), nullable=False, index=True)
    product_id = Column(String(36), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ProcessedEvent(ProcessedEventMixin, Base):
    """Events already applied by this service's consumers."""
