"""
Orders Service API

This module implements a FastAPI-based microservice that owns the order
lifecycle of the fulfillment saga, with PostgreSQL database persistence.

Creating an order publishes order.created; the products service answers with
inventory.reserved / inventory.insufficient and the payments service with
payment.completed / payment.failed, which the consumers started at startup
turn into order state transitions.

Endpoints:
    POST /api/v1/orders: Create an order
    GET /api/v1/orders: List orders with filters and pagination
    GET /api/v1/orders/{order_id}: Get a single order by ID
    PATCH /api/v1/orders/{order_id}: Update notes and addresses
    POST /api/v1/orders/{order_id}/cancel: Cancel an order
    POST /api/v1/orders/{order_id}/confirm: Confirm an order manually
    POST /api/v1/orders/{order_id}/ship: Ship a processing order (admin)
    GET /api/v1/orders/{order_id}/timeline: Order history
    GET /api/v1/users/{user_id}/orders: Orders of one user
    GET /healthz: Health check endpoint for orchestration systems

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "orders-service"
"""
import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional
from fastapi import FastAPI, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from services.common import auth
from services.common.channel import EventConsumer, EventPublisher
from services.common.errors import register_error_handlers
from services.common.log_config import configure_logging
from . import crud, models, schemas
from .consumers import (
    PAYMENTS_BINDINGS, PAYMENTS_QUEUE, PRODUCTS_BINDINGS, PRODUCTS_QUEUE,
    build_payments_handlers, build_products_handlers,
)
from .database import SessionLocal, engine, get_db
from .events import EXCHANGE, SERVICE_NAME
from .service import OrderService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(SERVICE_NAME)
    models.Base.metadata.create_all(bind=engine)

    publisher = EventPublisher(EXCHANGE)
    publisher.open()
    orders = OrderService(publisher)
    consumers = [
        EventConsumer(PRODUCTS_QUEUE, PRODUCTS_BINDINGS, build_products_handlers(SessionLocal, orders)),
        EventConsumer(PAYMENTS_QUEUE, PAYMENTS_BINDINGS, build_payments_handlers(SessionLocal, orders)),
    ]
    for consumer in consumers:
        consumer.start()

    app.state.publisher = publisher
    app.state.orders = orders
    logger.info(f"{SERVICE_NAME} started (auto-confirm={orders.auto_confirm})")
    try:
        yield
    finally:
        for consumer in consumers:
            consumer.stop()
        publisher.close()
        logger.info(f"{SERVICE_NAME} stopped")


app = FastAPI(title=SERVICE_NAME, lifespan=lifespan)
register_error_handlers(app)


def get_order_service(request: Request) -> OrderService:
    """Dependency returning the order service constructed at startup."""
    return request.app.state.orders


def _check_access(order: models.Order, current_user: auth.CurrentUser, action: str) -> None:
    # Owners and admins only
    if not current_user.is_admin and order.user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Not authorized to {action} this order"
        )


def _order_page(orders: List[models.Order], total: int, page: int, limit: int) -> schemas.OrderList:
    total_pages = math.ceil(total / limit) if total else 0
    return schemas.OrderList(
        orders=[schemas.Order.model_validate(order) for order in orders],
        pagination=schemas.Pagination(
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        ),
    )


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the orders service.

    This endpoint is used by orchestration systems (like Kubernetes) to verify
    that the service is running and able to respond to requests.

    Returns:
        dict: A dictionary containing the health status.
            - status (str): Always returns "healthy" when the service is operational.

    Example:
        GET /healthz
        Response: {"status": "healthy"}
    """
    return {"status": "healthy"}


@app.post("/api/v1/orders", response_model=schemas.Order, status_code=status.HTTP_201_CREATED)
def create_order(
    order: schemas.OrderCreate,
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Create a new order (authenticated users only).

    The order starts as pending; stock is reserved asynchronously by the
    products service. Users can only create orders for themselves (unless admin).

    Args:
        order: Order data to create
        db: Database session (injected)
        orders: Order service (injected)
        current_user: Current authenticated user (injected)

    Returns:
        Created order object

    Raises:
        HTTPException: 403 if creating an order for another user without admin rights
        ValidationError: 400 if the line items break a business rule
    """
    user_id = order.user_id or current_user.id
    if not current_user.is_admin and user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Can only create orders for yourself"
        )
    return orders.create(db, order, user_id=user_id)


@app.get("/api/v1/orders", response_model=schemas.OrderList)
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    List orders with filters and pagination (users see their own, admins see all).

    Args:
        page: 1-based page number (default: 1)
        limit: Page size, 1-100 (default: 20)
        user_id: Filter by owner (admins only; ignored for regular users)
        status_filter: Filter by status
        from_date: Only orders created at or after this time
        to_date: Only orders created at or before this time

    Returns:
        Orders on the page and pagination metadata
    """
    if not current_user.is_admin:
        user_id = current_user.id
    results, total = orders.list(
        db, page=page, limit=limit, user_id=user_id, status=status_filter, from_date=from_date, to_date=to_date
    )
    return _order_page(results, total, page, limit)


@app.get("/api/v1/users/{user_id}/orders", response_model=schemas.OrderList)
def list_user_orders(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """List the orders of one user (that user or admin)."""
    if not current_user.is_admin and user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to view these orders"
        )
    results, total = orders.list(db, page=page, limit=limit, user_id=user_id, status=status_filter)
    return _order_page(results, total, page, limit)


@app.get("/api/v1/orders/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get a single order by ID (owner or admin).

    Raises:
        HTTPException: 403 if not authorized
        NotFoundError: 404 if order not found
    """
    db_order = orders.get(db, order_id)
    _check_access(db_order, current_user, "access")
    return db_order


@app.patch("/api/v1/orders/{order_id}", response_model=schemas.Order)
def update_order(
    order_id: str,
    patch: schemas.OrderUpdate,
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Update notes and addresses of an order (owner or admin).

    Status cannot be changed here; use the cancel / confirm / ship actions.

    Raises:
        HTTPException: 403 if not authorized
        NotFoundError: 404 if order not found
        InvalidStateError: 409 if addresses change after shipping
    """
    _check_access(orders.get(db, order_id), current_user, "update")
    return orders.update(db, order_id, patch, user_id=current_user.id)


@app.post("/api/v1/orders/{order_id}/cancel", response_model=schemas.Order)
def cancel_order(
    order_id: str,
    request: schemas.CancelRequest,
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Cancel an order (owner or admin). Reserved stock is released asynchronously.

    Raises:
        HTTPException: 403 if not authorized
        NotFoundError: 404 if order not found
        InvalidStateError: 409 if the order is shipped or already ended
    """
    _check_access(orders.get(db, order_id), current_user, "cancel")
    return orders.cancel(db, order_id, request.reason, automated=False, user_id=current_user.id)


@app.post("/api/v1/orders/{order_id}/confirm", response_model=schemas.Order)
def confirm_order(
    order_id: str,
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Confirm a pending order manually (owner or admin).

    Raises:
        HTTPException: 403 if not authorized
        NotFoundError: 404 if order not found
        InvalidStateError: 409 if the order is past confirmation
    """
    _check_access(orders.get(db, order_id), current_user, "confirm")
    return orders.confirm(db, order_id, user_id=current_user.id)


@app.post("/api/v1/orders/{order_id}/ship", response_model=schemas.Order)
def ship_order(
    order_id: str,
    request: Optional[schemas.ShipRequest] = None,
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Ship a processing order (admin only).

    Raises:
        NotFoundError: 404 if order not found
        InvalidStateError: 409 if the order is not processing
    """
    request = request or schemas.ShipRequest()
    return orders.ship(
        db, order_id, tracking_number=request.tracking_number, carrier=request.carrier, user_id=current_user.id
    )


@app.get("/api/v1/orders/{order_id}/timeline", response_model=List[schemas.OrderEvent])
def get_order_timeline(
    order_id: str,
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get the timeline of events for an order (owner or admin).

    Returns:
        List of order events in chronological order

    Raises:
        HTTPException: 403 if not authorized
        NotFoundError: 404 if order not found
    """
    _check_access(orders.get(db, order_id), current_user, "view the timeline of")
    return crud.get_order_timeline(db, order_id)
