"""
Inventory ledger: reservation and stock adjustment.

Safety property: for every (product, warehouse) the sum of pending
reservations never exceeds the on-hand quantity. Every operation that can
change either side of that inequality runs in one transaction that holds
the stock row lock (SELECT ... FOR UPDATE) and a process-local lock for
the same key, so concurrent reservations cannot both observe stale
availability.
"""
import logging
import threading
from contextlib import ExitStack, contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Tuple
from sqlalchemy.orm import Session

from services.common.errors import NotFoundError, ValidationError
from services.common.events import EventMetadata, create_event
from . import crud, models, schemas
from .events import (
    INVENTORY_INSUFFICIENT, INVENTORY_RESERVED, SERVICE_NAME,
    InventoryInsufficientPayload, InventoryReservedPayload,
)

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 1000

StockKey = Tuple[str, str]


class KeyedLocks:
    """One lock per (product, warehouse) key, created on first use."""

    def __init__(self):
        self._locks: Dict[StockKey, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: StockKey) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    @contextmanager
    def hold(self, *keys: StockKey) -> Iterator[None]:
        # Keys are always taken in sorted order.
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self._lock_for(key))
            yield


class InventoryLedger:
    """
    Owns on-hand quantities and the reservation journal.

    Attributes:
        publisher: Event publisher for the "products" exchange
    """

    def __init__(self, publisher, locks: Optional[KeyedLocks] = None):
        self.publisher = publisher
        self.locks = locks or KeyedLocks()

    def reserve(
        self,
        db: Session,
        product_id: str,
        warehouse_id: str,
        quantity: int,
        order_id: str,
        metadata: Optional[EventMetadata] = None,
    ) -> bool:
        """
        Reserve stock for one order line.

        If enough stock is available a pending reservation is inserted and
        inventory.reserved is published; otherwise inventory.insufficient is
        published with the shortfall and nothing is written. An order that
        already holds a reservation for the same product and warehouse is not
        reserved twice.

        Args:
            db: Database session
            product_id: Product reference
            warehouse_id: Warehouse to reserve from
            quantity: Requested quantity
            order_id: Order the reservation belongs to
            metadata: Correlation information for the published event

        Returns:
            True if the order holds an active reservation afterwards

        Raises:
            ValidationError: If quantity is not positive
            NotFoundError: If the product has no stock row in that warehouse
        """
        if quantity <= 0:
            raise ValidationError(f"Reservation quantity must be positive, got {quantity}")

        logger.info(f"Reserving {quantity} of product {product_id} in warehouse {warehouse_id} for order {order_id}")

        with self.locks.hold((product_id, warehouse_id)):
            try:
                if crud.is_line_released(db, order_id, product_id):
                    db.commit()
                    logger.warning(
                        f"Order {order_id} already released product {product_id}; not reserving"
                    )
                    return False

                record = crud.get_inventory(db, product_id, warehouse_id, for_update=True)
                existing = (
                    db.query(models.InventoryReservation)
                    .filter(
                        models.InventoryReservation.order_id == order_id,
                        models.InventoryReservation.product_id == product_id,
                        models.InventoryReservation.warehouse_id == warehouse_id,
                    )
                    .first()
                )
                if existing is not None:
                    db.commit()
                    if existing.status == models.ReservationStatus.RELEASED.value:
                        logger.warning(
                            f"Reservation for order {order_id}, product {product_id} was already released; not reserving again"
                        )
                        return False
                    logger.info(f"Order {order_id} already holds reservation {existing.id} for product {product_id}")
                    self._publish_reserved(order_id, product_id, warehouse_id, existing.quantity, metadata)
                    return True

                if record is None:
                    raise NotFoundError("Inventory", f"{product_id}:{warehouse_id}")

                available = record.quantity - crud.pending_quantity(db, product_id, warehouse_id)
                if available < quantity:
                    db.commit()
                    reason = f"Only {available} units available, but {quantity} requested"
                    logger.warning(
                        f"Insufficient inventory for order {order_id}, product {product_id}: "
                        f"requested {quantity}, available {available}"
                    )
                    self._publish(
                        INVENTORY_INSUFFICIENT,
                        InventoryInsufficientPayload(
                            order_id=order_id,
                            product_id=product_id,
                            warehouse_id=warehouse_id,
                            requested_quantity=quantity,
                            available_quantity=available,
                            reason=reason,
                        ),
                        metadata,
                    )
                    return False

                db.add(models.InventoryReservation(
                    order_id=order_id,
                    product_id=product_id,
                    warehouse_id=warehouse_id,
                    quantity=quantity,
                    status=models.ReservationStatus.PENDING.value,
                ))
                db.commit()
            except Exception:
                db.rollback()
                raise

        logger.info(f"Inventory reserved for order {order_id}, product {product_id}")
        self._publish_reserved(order_id, product_id, warehouse_id, quantity, metadata)
        return True

    def release(
        self,
        db: Session,
        product_id: str,
        order_id: str,
        quantity: int,
        warehouse_id: Optional[str] = None,
    ) -> int:
        """
        Release every pending reservation an order holds for a product.

        Idempotent: when nothing is pending (already released, never
        reserved) no reservation changes. Either way the order line is
        marked released, so a later reserve for it is refused.

        Args:
            db: Database session
            product_id: Product reference
            order_id: Order whose reservations are released
            quantity: Quantity the order line asked for (logged only)
            warehouse_id: Warehouse the caller resolved (logged only)

        Returns:
            Number of reservations released
        """
        logger.info(f"Releasing {quantity} of product {product_id} for order {order_id} (warehouse {warehouse_id})")
        try:
            reservations = (
                db.query(models.InventoryReservation)
                .filter(
                    models.InventoryReservation.order_id == order_id,
                    models.InventoryReservation.product_id == product_id,
                    models.InventoryReservation.status == models.ReservationStatus.PENDING.value,
                )
                .with_for_update()
                .all()
            )
            if not crud.is_line_released(db, order_id, product_id):
                db.add(models.ReleasedOrderLine(order_id=order_id, product_id=product_id))

            if not reservations:
                db.commit()
                logger.warning(f"No pending reservations found to release for order {order_id}, product {product_id}")
                return 0

            for reservation in reservations:
                reservation.status = models.ReservationStatus.RELEASED.value
                reservation.updated_at = datetime.utcnow()
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(f"Released {len(reservations)} reservation(s) for order {order_id}, product {product_id}")
        return len(reservations)

    def update(self, db: Session, product_id: str, warehouse_id: str, quantity: int) -> models.Inventory:
        """
        Set the on-hand quantity of a product in a warehouse (upsert).

        Args:
            db: Database session
            product_id: Product reference
            warehouse_id: Warehouse ID
            quantity: New on-hand quantity

        Returns:
            The created or updated Inventory row

        Raises:
            ValidationError: If quantity is negative or below what is reserved
            NotFoundError: If the warehouse does not exist
        """
        logger.info(f"Updating inventory of product {product_id} in warehouse {warehouse_id} to {quantity}")
        with self.locks.hold((product_id, warehouse_id)):
            try:
                record = self._apply_quantity(db, product_id, warehouse_id, quantity)
                db.commit()
                db.refresh(record)
            except Exception:
                db.rollback()
                raise
        return record

    def batch_update(self, db: Session, updates: List[schemas.InventoryEntry]) -> int:
        """
        Apply many stock updates in one transaction.

        Args:
            db: Database session
            updates: 1 to 1000 (product, warehouse, quantity) entries

        Returns:
            Number of rows created or updated

        Raises:
            ValidationError: If the batch size is out of bounds or an entry is invalid;
                nothing is written in that case
        """
        if not updates or len(updates) > MAX_BATCH_SIZE:
            raise ValidationError(f"Batch size must be between 1 and {MAX_BATCH_SIZE}")

        logger.info(f"Batch updating {len(updates)} inventory rows")
        keys = [(u.product_id, u.warehouse_id) for u in updates]
        updated = 0
        with self.locks.hold(*keys):
            try:
                for entry in updates:
                    self._apply_quantity(db, entry.product_id, entry.warehouse_id, entry.quantity)
                    updated += 1
                db.commit()
            except Exception:
                db.rollback()
                logger.error(f"Batch inventory update of {len(updates)} rows rolled back")
                raise

        logger.info(f"Batch updated {updated} inventory rows")
        return updated

    def _apply_quantity(self, db: Session, product_id: str, warehouse_id: str, quantity: int) -> models.Inventory:
        if quantity < 0:
            raise ValidationError(f"Quantity for product {product_id} cannot be negative")
        if crud.get_warehouse(db, warehouse_id) is None:
            raise NotFoundError("Warehouse", warehouse_id)

        record = crud.get_inventory(db, product_id, warehouse_id, for_update=True)
        reserved = crud.pending_quantity(db, product_id, warehouse_id)
        if quantity < reserved:
            raise ValidationError(
                f"Quantity {quantity} for product {product_id} is below the {reserved} units currently reserved",
                details={"product_id": product_id, "warehouse_id": warehouse_id, "reserved": reserved},
            )

        if record is None:
            record = models.Inventory(product_id=product_id, warehouse_id=warehouse_id, quantity=quantity)
            db.add(record)
        else:
            record.quantity = quantity
            record.updated_at = datetime.utcnow()
        db.flush()
        return record

    def _publish_reserved(self, order_id, product_id, warehouse_id, quantity, metadata) -> None:
        self._publish(
            INVENTORY_RESERVED,
            InventoryReservedPayload(
                order_id=order_id,
                product_id=product_id,
                warehouse_id=warehouse_id,
                quantity=quantity,
                reserved_at=datetime.now(timezone.utc),
            ),
            metadata,
        )

    def _publish(self, event_type, payload, metadata) -> None:
        self.publisher.publish(create_event(event_type, payload, SERVICE_NAME, metadata))
