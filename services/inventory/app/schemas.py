"""
Pydantic schemas for request/response validation in the Inventory service.

These schemas define the structure of data for API requests and responses.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class WarehouseCreate(BaseModel):
    """Schema for creating a new warehouse."""
    name: str = Field(..., min_length=1, max_length=255)
    location: str = Field(..., min_length=1, max_length=500)
    is_active: bool = True


class Warehouse(WarehouseCreate):
    """
    Schema for warehouse responses, includes all database fields.

    Attributes:
        id (str): Warehouse's unique identifier
        name (str): Display name
        location (str): Free-text location
        is_active (bool): Whether the warehouse takes reservations by default
        created_at (datetime): When the warehouse was created
    """
    model_config = ConfigDict(from_attributes=True)

    id: str
    created_at: datetime


class InventoryUpdate(BaseModel):
    """Schema for setting the on-hand quantity of a product in a warehouse."""
    warehouse_id: str
    quantity: int


class InventoryEntry(InventoryUpdate):
    """One entry of a batch stock update."""
    product_id: str


class BatchInventoryUpdate(BaseModel):
    """Schema for a batch stock update (1 to 1000 entries)."""
    updates: List[InventoryEntry]


class BatchUpdateResult(BaseModel):
    updated: int


class StockLevel(BaseModel):
    """
    Schema for stock responses.

    Attributes:
        quantity (int): Physical on-hand quantity
        reserved (int): Quantity held by pending reservations
        available (int): quantity - reserved
    """
    id: str
    product_id: str
    warehouse_id: str
    quantity: int
    reserved: int
    available: int
    updated_at: datetime


class ReserveRequest(BaseModel):
    """Schema for a direct reservation request."""
    product_id: str
    warehouse_id: str
    quantity: int = Field(..., gt=0)
    order_id: str


class ReserveResult(BaseModel):
    reserved: bool


class ReleaseRequest(BaseModel):
    """Schema for releasing the pending reservations of an order for a product."""
    product_id: str
    order_id: str
    quantity: int = Field(..., gt=0)
    warehouse_id: Optional[str] = None


class ReleaseResult(BaseModel):
    released: int


class Reservation(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    product_id: str
    warehouse_id: str
    quantity: int
    status: str
    created_at: datetime
    updated_at: datetime
