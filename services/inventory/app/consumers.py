"""
Saga coordinators of the Inventory service.

order.created reserves stock for every line item; order.cancelled releases
whatever the order still holds. For reservations the warehouse of a line
item is resolved as item-level -> order-level -> default warehouse; releases
match on (order, product) and never need the default.
"""
import logging
import threading
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from services.common.channel import Binding, Handler
from services.common.errors import NotFoundError
from services.common.events import Event, caused_by, parse_payload
from services.common.idempotency import already_processed, mark_processed
from . import crud, models
from .events import CONSUMED_SCHEMAS, ORDER_CANCELLED, ORDER_CREATED, ORDERS_EXCHANGE, OrderItemRef
from .ledger import InventoryLedger

logger = logging.getLogger(__name__)

QUEUE = "products-service.orders"
BINDINGS: List[Binding] = [
    Binding(ORDERS_EXCHANGE, ORDER_CREATED),
    Binding(ORDERS_EXCHANGE, ORDER_CANCELLED),
]

SessionFactory = Callable[[], Session]


class DefaultWarehouse:
    """Caches the id of the oldest active warehouse after the first lookup."""

    def __init__(self):
        self._warehouse_id: Optional[str] = None
        self._lock = threading.Lock()

    def resolve(self, db: Session) -> str:
        with self._lock:
            if self._warehouse_id is None:
                warehouse = crud.get_default_warehouse(db)
                if warehouse is None:
                    raise NotFoundError("Warehouse", "default")
                self._warehouse_id = warehouse.id
                logger.info(f"Default warehouse resolved to {warehouse.id} ({warehouse.name})")
            return self._warehouse_id

    def reset(self) -> None:
        with self._lock:
            self._warehouse_id = None


def warehouse_for(item: OrderItemRef, order_warehouse_id: Optional[str], default: DefaultWarehouse, db: Session) -> str:
    return item.warehouse_id or order_warehouse_id or default.resolve(db)


class _Coordinator:
    name = "coordinator"

    def __init__(self, session_factory: SessionFactory, ledger: InventoryLedger, default_warehouse: DefaultWarehouse):
        self.session_factory = session_factory
        self.ledger = ledger
        self.default_warehouse = default_warehouse

    def __call__(self, event: Event) -> None:
        payload = parse_payload(event, CONSUMED_SCHEMAS)
        db = self.session_factory()
        try:
            if already_processed(db, models.ProcessedEvent, event.id, self.name):
                logger.info(f"{self.name}: {event.type} ({event.id}) already processed; skipping")
                return
            self.handle(db, event, payload)
            mark_processed(db, models.ProcessedEvent, event, self.name)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def handle(self, db: Session, event: Event, payload) -> None:
        raise NotImplementedError


class OrderCreatedCoordinator(_Coordinator):
    """Reserves stock for each line item of a new order."""
    name = "inventory.order-created"

    def handle(self, db: Session, event: Event, payload) -> None:
        logger.info(f"Reserving inventory for order {payload.order_id} ({len(payload.items)} items)")
        metadata = caused_by(event)
        for item in payload.items:
            warehouse_id = warehouse_for(item, payload.warehouse_id, self.default_warehouse, db)
            self.ledger.reserve(
                db,
                product_id=item.product_id,
                warehouse_id=warehouse_id,
                quantity=item.quantity,
                order_id=payload.order_id,
                metadata=metadata,
            )


class OrderCancelledCoordinator(_Coordinator):
    """Releases the reservations of a cancelled order (compensation)."""
    name = "inventory.order-cancelled"

    def handle(self, db: Session, event: Event, payload) -> None:
        logger.info(f"Releasing inventory for cancelled order {payload.order_id}: {payload.reason}")
        for item in payload.items:
            self.ledger.release(
                db,
                product_id=item.product_id,
                order_id=payload.order_id,
                quantity=item.quantity,
                warehouse_id=item.warehouse_id or payload.warehouse_id,
            )


def build_handlers(
    session_factory: SessionFactory,
    ledger: InventoryLedger,
    default_warehouse: Optional[DefaultWarehouse] = None,
) -> Dict[str, Handler]:
    """
    Event type -> coordinator mapping for the products-service.orders queue.

    Args:
        session_factory: Callable returning a new database session
        ledger: Inventory ledger that performs the reservations
        default_warehouse: Shared default-warehouse cache

    Returns:
        Handlers keyed by event type
    """
    default_warehouse = default_warehouse or DefaultWarehouse()
    return {
        ORDER_CREATED: OrderCreatedCoordinator(session_factory, ledger, default_warehouse),
        ORDER_CANCELLED: OrderCancelledCoordinator(session_factory, ledger, default_warehouse),
    }
