"""
CRUD (Create, Read, Update, Delete) operations for the Inventory service.

This module contains the read side of inventory management and warehouse
maintenance. State-changing stock operations live in ledger.py.
"""
from typing import List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
from services.common.errors import NotFoundError
from . import models, schemas


def get_warehouse(db: Session, warehouse_id: str) -> Optional[models.Warehouse]:
    """
    Retrieve a single warehouse by ID.

    Args:
        db: Database session
        warehouse_id: ID of the warehouse to retrieve

    Returns:
        Warehouse object or None if not found
    """
    return db.query(models.Warehouse).filter(models.Warehouse.id == warehouse_id).first()


def get_warehouses(db: Session, skip: int = 0, limit: int = 100, include_inactive: bool = False) -> List[models.Warehouse]:
    """
    Retrieve warehouses with pagination, active ones only unless asked otherwise.

    Args:
        db: Database session
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return
        include_inactive: Also return deactivated warehouses

    Returns:
        List of Warehouse objects
    """
    query = db.query(models.Warehouse)
    if not include_inactive:
        query = query.filter(models.Warehouse.is_active.is_(True))
    return query.order_by(models.Warehouse.created_at).offset(skip).limit(limit).all()


def get_default_warehouse(db: Session) -> Optional[models.Warehouse]:
    """Oldest active warehouse, used when an order names none."""
    return (
        db.query(models.Warehouse)
        .filter(models.Warehouse.is_active.is_(True))
        .order_by(models.Warehouse.created_at, models.Warehouse.id)
        .first()
    )


def create_warehouse(db: Session, warehouse: schemas.WarehouseCreate) -> models.Warehouse:
    """
    Create a new warehouse in the database.

    Args:
        db: Database session
        warehouse: Warehouse data to create

    Returns:
        Created Warehouse object
    """
    db_warehouse = models.Warehouse(
        name=warehouse.name,
        location=warehouse.location,
        is_active=warehouse.is_active,
    )
    db.add(db_warehouse)
    db.commit()
    db.refresh(db_warehouse)
    return db_warehouse


def get_inventory(db: Session, product_id: str, warehouse_id: str, for_update: bool = False) -> Optional[models.Inventory]:
    """
    Retrieve the stock row for a (product, warehouse) pair.

    Args:
        db: Database session
        product_id: Product reference
        warehouse_id: Warehouse ID
        for_update: Take a row lock (SELECT ... FOR UPDATE) for the rest of the transaction

    Returns:
        Inventory object or None if no stock row exists
    """
    query = db.query(models.Inventory).filter(
        models.Inventory.product_id == product_id,
        models.Inventory.warehouse_id == warehouse_id,
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def get_inventory_for_product(db: Session, product_id: str) -> List[models.Inventory]:
    return (
        db.query(models.Inventory)
        .filter(models.Inventory.product_id == product_id)
        .order_by(models.Inventory.warehouse_id)
        .all()
    )


def pending_quantity(db: Session, product_id: str, warehouse_id: str) -> int:
    """
    Sum of pending reservations for a (product, warehouse) pair.

    Args:
        db: Database session
        product_id: Product reference
        warehouse_id: Warehouse ID

    Returns:
        Total quantity currently held by pending reservations
    """
    total = (
        db.query(func.coalesce(func.sum(models.InventoryReservation.quantity), 0))
        .filter(
            models.InventoryReservation.product_id == product_id,
            models.InventoryReservation.warehouse_id == warehouse_id,
            models.InventoryReservation.status == models.ReservationStatus.PENDING.value,
        )
        .scalar()
    )
    return int(total or 0)


def to_stock_level(db: Session, record: models.Inventory) -> schemas.StockLevel:
    reserved = pending_quantity(db, record.product_id, record.warehouse_id)
    return schemas.StockLevel(
        id=record.id,
        product_id=record.product_id,
        warehouse_id=record.warehouse_id,
        quantity=record.quantity,
        reserved=reserved,
        available=record.quantity - reserved,
        updated_at=record.updated_at,
    )


def get_stock_levels(db: Session, product_id: str, warehouse_id: Optional[str] = None) -> List[schemas.StockLevel]:
    """
    Stock figures for a product, in one warehouse or across all of them.

    Args:
        db: Database session
        product_id: Product reference
        warehouse_id: Restrict to this warehouse (optional)

    Returns:
        List of stock levels (on hand, reserved, available)

    Raises:
        NotFoundError: If a warehouse is given and no stock row exists for it
    """
    if warehouse_id:
        record = get_inventory(db, product_id, warehouse_id)
        if record is None:
            raise NotFoundError("Inventory", f"{product_id}:{warehouse_id}")
        return [to_stock_level(db, record)]
    return [to_stock_level(db, record) for record in get_inventory_for_product(db, product_id)]


def is_line_released(db: Session, order_id: str, product_id: str) -> bool:
    return (
        db.query(models.ReleasedOrderLine.id)
        .filter(
            models.ReleasedOrderLine.order_id == order_id,
            models.ReleasedOrderLine.product_id == product_id,
        )
        .first()
        is not None
    )


def get_reservations_for_order(db: Session, order_id: str) -> List[models.InventoryReservation]:
    return (
        db.query(models.InventoryReservation)
        .filter(models.InventoryReservation.order_id == order_id)
        .order_by(models.InventoryReservation.created_at)
        .all()
    )
