"""
    Products Service API (inventory side)

    This module implements a FastAPI-based microservice that owns on-hand stock
    per (product, warehouse) and the reservation journal used by the order
    fulfillment saga.

    The service exposes:
    - Stock endpoints: read stock levels, set quantities (single and batch)
    - Reservation endpoints: reserve and release stock for an order
    - Warehouse endpoints: create, list and get warehouses
    - Health endpoint: Provides service health status for monitoring and orchestration

    On startup it opens a publisher on the "products" exchange and a consumer
    on the "products-service.orders" queue, which reacts to order.created and
    order.cancelled.
"""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional
from fastapi import FastAPI, Depends, Request, status
from sqlalchemy.orm import Session

from services.common import auth
from services.common.channel import EventConsumer, EventPublisher
from services.common.errors import NotFoundError, register_error_handlers
from services.common.log_config import configure_logging
from . import crud, models, schemas
from .consumers import BINDINGS, QUEUE, build_handlers
from .database import SessionLocal, engine, get_db
from .events import EXCHANGE, SERVICE_NAME
from .ledger import InventoryLedger

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(SERVICE_NAME)
    models.Base.metadata.create_all(bind=engine)

    publisher = EventPublisher(EXCHANGE)
    publisher.open()
    ledger = InventoryLedger(publisher)
    consumer = EventConsumer(QUEUE, BINDINGS, build_handlers(SessionLocal, ledger))
    consumer.start()

    app.state.publisher = publisher
    app.state.ledger = ledger
    logger.info(f"{SERVICE_NAME} started")
    try:
        yield
    finally:
        consumer.stop()
        publisher.close()
        logger.info(f"{SERVICE_NAME} stopped")


app = FastAPI(title=SERVICE_NAME, lifespan=lifespan)
register_error_handlers(app)


def get_ledger(request: Request) -> InventoryLedger:
    """Dependency returning the ledger constructed at startup."""
    return request.app.state.ledger


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the products service.

    Returns:
        dict: A dictionary containing the health status of the service.
            - status (str): "healthy" if the service is operational.

    Example:
        GET /healthz
        Response: {"status": "healthy"}
    """
    return {"status": "healthy"}


@app.post("/api/v1/warehouses", response_model=schemas.Warehouse, status_code=status.HTTP_201_CREATED)
def create_warehouse(
    warehouse: schemas.WarehouseCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Create a new warehouse (admin only).

    Args:
        warehouse: Warehouse data to create
        db: Database session (injected)
        current_user: Current authenticated admin user (injected)

    Returns:
        Created warehouse object
    """
    return crud.create_warehouse(db, warehouse)


@app.get("/api/v1/warehouses", response_model=List[schemas.Warehouse])
def list_warehouses(
    skip: int = 0,
    limit: int = 100,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """List warehouses with pagination (active ones unless include_inactive is set)."""
    return crud.get_warehouses(db, skip=skip, limit=limit, include_inactive=include_inactive)


@app.get("/api/v1/warehouses/{warehouse_id}", response_model=schemas.Warehouse)
def get_warehouse(
    warehouse_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get a single warehouse by ID.

    Raises:
        NotFoundError: 404 if the warehouse does not exist
    """
    warehouse = crud.get_warehouse(db, warehouse_id)
    if warehouse is None:
        raise NotFoundError("Warehouse", warehouse_id)
    return warehouse


@app.get("/api/v1/inventory/{product_id}", response_model=List[schemas.StockLevel])
def get_inventory(
    product_id: str,
    warehouse_id: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get stock levels of a product, in one warehouse or across all of them.

    Args:
        product_id: Product reference
        warehouse_id: Restrict to one warehouse (optional)
        db: Database session (injected)
        current_user: Current authenticated user (injected)

    Returns:
        List of stock levels with on-hand, reserved and available quantities

    Raises:
        NotFoundError: 404 if a warehouse is given and holds no stock row for the product
    """
    return crud.get_stock_levels(db, product_id, warehouse_id)


@app.put("/api/v1/inventory/{product_id}", response_model=schemas.StockLevel)
def update_inventory(
    product_id: str,
    update: schemas.InventoryUpdate,
    db: Session = Depends(get_db),
    ledger: InventoryLedger = Depends(get_ledger),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Set the on-hand quantity of a product in a warehouse (admin only).

    Raises:
        ValidationError: 400 if the quantity is negative or below the reserved quantity
        NotFoundError: 404 if the warehouse does not exist
    """
    record = ledger.update(db, product_id, update.warehouse_id, update.quantity)
    return crud.to_stock_level(db, record)


@app.post("/api/v1/inventory/batch", response_model=schemas.BatchUpdateResult)
def batch_update_inventory(
    batch: schemas.BatchInventoryUpdate,
    db: Session = Depends(get_db),
    ledger: InventoryLedger = Depends(get_ledger),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Set many stock quantities in one transaction (admin only).

    Returns:
        Number of rows created or updated

    Raises:
        ValidationError: 400 if the batch is empty, larger than 1000 entries or has an invalid entry
    """
    return schemas.BatchUpdateResult(updated=ledger.batch_update(db, batch.updates))


@app.post("/api/v1/inventory/reserve", response_model=schemas.ReserveResult)
def reserve_inventory(
    request: schemas.ReserveRequest,
    db: Session = Depends(get_db),
    ledger: InventoryLedger = Depends(get_ledger),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Reserve stock for an order directly (admin only).

    The outcome is also published as inventory.reserved or
    inventory.insufficient, exactly as for reservations made by the saga.
    """
    reserved = ledger.reserve(
        db,
        product_id=request.product_id,
        warehouse_id=request.warehouse_id,
        quantity=request.quantity,
        order_id=request.order_id,
    )
    return schemas.ReserveResult(reserved=reserved)


@app.post("/api/v1/inventory/release", response_model=schemas.ReleaseResult)
def release_inventory(
    request: schemas.ReleaseRequest,
    db: Session = Depends(get_db),
    ledger: InventoryLedger = Depends(get_ledger),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Release the pending reservations an order holds for a product (admin only)."""
    released = ledger.release(
        db,
        product_id=request.product_id,
        order_id=request.order_id,
        quantity=request.quantity,
        warehouse_id=request.warehouse_id,
    )
    return schemas.ReleaseResult(released=released)


@app.get("/api/v1/inventory/reservations/{order_id}", response_model=List[schemas.Reservation])
def list_reservations(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """List every reservation (any status) made for an order."""
    return crud.get_reservations_for_order(db, order_id)
