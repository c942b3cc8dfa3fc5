"""
CRUD (Create, Read, Update, Delete) operations for the Orders service.

This module contains the read side of order management and the order
timeline. Status changes go through service.OrderService.
"""
from datetime import datetime
from typing import List, Optional, Tuple
from sqlalchemy.orm import Session, selectinload
from . import models

def get_order(db: Session, order_id: str, for_update: bool = False) -> Optional[models.Order]:
    """
    Retrieve a single order by ID, with its line items.

    Args:
        db: Database session
        order_id: ID of the order to retrieve
        for_update: Lock the order row for the rest of the transaction

    Returns:
        Order object or None if not found
    """
    query = db.query(models.Order).filter(models.Order.id == order_id)
    if for_update:
        query = query.with_for_update()
    return query.first()

def get_orders(
    db: Session,
    page: int = 1,
    limit: int = 20,
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
) -> Tuple[List[models.Order], int]:
    """
    Retrieve a filtered page of orders, newest first.

    Args:
        db: Database session
        page: 1-based page number
        limit: Page size
        user_id: Only orders of this user
        status: Only orders in this status
        from_date: Only orders created at or after this time
        to_date: Only orders created at or before this time

    Returns:
        Tuple of (orders on the page, total matching orders)
    """
    query = db.query(models.Order)
    if user_id:
        query = query.filter(models.Order.user_id == user_id)
    if status:
        query = query.filter(models.Order.status == status)
    if from_date:
        query = query.filter(models.Order.created_at >= from_date)
    if to_date:
        query = query.filter(models.Order.created_at <= to_date)

    total = query.count()
    orders = (
        query.options(selectinload(models.Order.items), selectinload(models.Order.inventory_tracking))
        .order_by(models.Order.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return orders, total

def get_tracking(db: Session, order_id: str) -> List[models.OrderInventoryTracking]:
    return (
        db.query(models.OrderInventoryTracking)
        .filter(models.OrderInventoryTracking.order_id == order_id)
        .all()
    )

def is_fully_reserved(db: Session, order_id: str) -> bool:
    """
    Check whether every line item of an order has its stock reserved.

    Args:
        db: Database session
        order_id: Order identifier

    Returns:
        True if the order has tracking rows and all of them are reserved
    """
    tracking = get_tracking(db, order_id)
    return bool(tracking) and all(row.reserved for row in tracking)

def log_order_event(
    db: Session,
    order_id: str,
    event_type: str,
    description: str,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    user_id: Optional[str] = None
) -> None:
    """
    Add an entry to the order timeline in the caller's transaction.

    Args:
        db: Database session
        order_id: Order identifier
        event_type: Type of event (e.g., "created", "status_changed", "updated")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
        user_id: User who triggered the event (optional)
    """
    db.add(models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        user_id=user_id
    ))

def get_order_timeline(db: Session, order_id: str) -> List[models.OrderEvent]:
    return (
        db.query(models.OrderEvent)
        .filter(models.OrderEvent.order_id == order_id)
        .order_by(models.OrderEvent.created_at, models.OrderEvent.id)
        .all()
    )
