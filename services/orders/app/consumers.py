"""
Saga coordinators of the Orders service.

Each coordinator validates the payload subset it needs, skips events it has
already applied, invokes one OrderService operation and records the event
id. Errors propagate so the channel can retry or dead-letter the message.
"""
import logging
from typing import Callable, Dict, List

from sqlalchemy.orm import Session

from services.common.channel import Binding, Handler
from services.common.events import Event, caused_by, parse_payload
from services.common.idempotency import already_processed, mark_processed
from . import models
from .events import (
    CONSUMED_SCHEMAS, INVENTORY_INSUFFICIENT, INVENTORY_RESERVED, PAYMENT_COMPLETED,
    PAYMENT_FAILED, PAYMENTS_EXCHANGE, PRODUCTS_EXCHANGE,
)
from .service import OrderService

logger = logging.getLogger(__name__)

PRODUCTS_QUEUE = "orders-service.products"
PAYMENTS_QUEUE = "orders-service.payments"

PRODUCTS_BINDINGS: List[Binding] = [
    Binding(PRODUCTS_EXCHANGE, INVENTORY_RESERVED),
    Binding(PRODUCTS_EXCHANGE, INVENTORY_INSUFFICIENT),
]
PAYMENTS_BINDINGS: List[Binding] = [
    Binding(PAYMENTS_EXCHANGE, PAYMENT_COMPLETED),
    Binding(PAYMENTS_EXCHANGE, PAYMENT_FAILED),
]

SessionFactory = Callable[[], Session]


class _Coordinator:
    name = "coordinator"

    def __init__(self, session_factory: SessionFactory, orders: OrderService):
        self.session_factory = session_factory
        self.orders = orders

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


class InventoryReservedCoordinator(_Coordinator):
    name = "orders.inventory-reserved"

    def handle(self, db: Session, event: Event, payload) -> None:
        self.orders.mark_inventory_reserved(db, payload.order_id, payload.product_id, caused_by(event))


class InventoryInsufficientCoordinator(_Coordinator):
    """Cancels the whole order when any line item cannot be reserved."""
    name = "orders.inventory-insufficient"

    def handle(self, db: Session, event: Event, payload) -> None:
        reason = f"Insufficient inventory for product {payload.product_id}. {payload.reason or ''}".rstrip()
        logger.warning(f"Order {payload.order_id}: {reason}")
        self.orders.cancel(db, payload.order_id, reason, automated=True, metadata=caused_by(event))


class PaymentCompletedCoordinator(_Coordinator):
    name = "orders.payment-completed"

    def handle(self, db: Session, event: Event, payload) -> None:
        self.orders.record_payment_completed(db, payload.order_id, payload.payment_id, payload.transaction_id)


class PaymentFailedCoordinator(_Coordinator):
    """Cancels the order; the resulting order.cancelled releases its stock."""
    name = "orders.payment-failed"

    def handle(self, db: Session, event: Event, payload) -> None:
        reason = f"Payment failed: {payload.error}"
        logger.warning(f"Order {payload.order_id}: {reason}")
        self.orders.cancel(db, payload.order_id, reason, automated=True, metadata=caused_by(event))


def build_products_handlers(session_factory: SessionFactory, orders: OrderService) -> Dict[str, Handler]:
    return {
        INVENTORY_RESERVED: InventoryReservedCoordinator(session_factory, orders),
        INVENTORY_INSUFFICIENT: InventoryInsufficientCoordinator(session_factory, orders),
    }


def build_payments_handlers(session_factory: SessionFactory, orders: OrderService) -> Dict[str, Handler]:
    return {
        PAYMENT_COMPLETED: PaymentCompletedCoordinator(session_factory, orders),
        PAYMENT_FAILED: PaymentFailedCoordinator(session_factory, orders),
    }
