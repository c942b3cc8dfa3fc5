"""
Order aggregate operations.

Every state change runs in one local transaction and the matching event is
published only after that transaction commits. Illegal transitions raise
InvalidStateError and leave the order untouched.
"""
import logging
import os
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from sqlalchemy.orm import Session

from services.common.errors import InvalidStateError, NotFoundError, ValidationError
from services.common.events import EventMetadata, create_event
from . import crud, models, schemas, validators
from .events import (
    ORDER_CANCELLED, ORDER_CONFIRMED, ORDER_CREATED, ORDER_SHIPPED, SERVICE_NAME,
    CancelledItem, CreatedItem, OrderCancelledPayload, OrderConfirmedPayload,
    OrderCreatedPayload, OrderShippedPayload,
)
from .models import OrderStatus

logger = logging.getLogger(__name__)

ORDERS_AUTO_CONFIRM = os.getenv("ORDERS_AUTO_CONFIRM", "true").lower() in ("1", "true", "yes")

CANCELLABLE_STATUSES = frozenset({
    OrderStatus.PENDING.value, OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value,
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderService:
    """
    Owns the order lifecycle.

    Attributes:
        publisher: Event publisher for the "orders" exchange
        auto_confirm (bool): Confirm a pending order as soon as every line item is reserved
    """

    def __init__(self, publisher, auto_confirm: bool = ORDERS_AUTO_CONFIRM):
        self.publisher = publisher
        self.auto_confirm = auto_confirm

    # Reads

    def get(self, db: Session, order_id: str) -> models.Order:
        """
        Retrieve an order.

        Raises:
            NotFoundError: If the order does not exist
        """
        order = crud.get_order(db, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def list(
        self,
        db: Session,
        page: int = 1,
        limit: int = 20,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> Tuple[List[models.Order], int]:
        if status is not None and status not in validators.VALID_TRANSITIONS:
            raise ValidationError(f"Unknown status: {status}")
        return crud.get_orders(
            db, page=page, limit=limit, user_id=user_id, status=status, from_date=from_date, to_date=to_date
        )

    def is_fully_reserved(self, db: Session, order_id: str) -> bool:
        return crud.is_fully_reserved(db, order_id)

    # Commands

    def create(self, db: Session, data: schemas.OrderCreate, user_id: str) -> models.Order:
        """
        Create an order with its line items and one tracking row per item.

        Args:
            db: Database session
            data: Order data
            user_id: Owner of the order

        Returns:
            The created order (status pending)

        Raises:
            ValidationError: If the items break a business rule
        """
        is_valid, error_msg = validators.validate_order_items(data.items)
        if not is_valid:
            raise ValidationError(error_msg)

        logger.info(f"Creating order for user {user_id} with {len(data.items)} items")
        try:
            order = models.Order(
                user_id=user_id,
                status=OrderStatus.PENDING.value,
                total_amount=validators.calculate_total(data.items),
                shipping_address=data.shipping_address,
                billing_address=data.billing_address,
                notes=data.notes,
            )
            db.add(order)
            db.flush()
            for item in data.items:
                db.add(models.OrderLineItem(
                    order_id=order.id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    product_snapshot=item.product_snapshot,
                    warehouse_id=item.warehouse_id or data.warehouse_id,
                ))
                db.add(models.OrderInventoryTracking(order_id=order.id, product_id=item.product_id, reserved=False))
            crud.log_order_event(
                db, order.id, "created", f"Order created with {len(data.items)} items",
                new_value=order.status, user_id=user_id,
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.error(f"Failed to create order for user {user_id}")
            raise
        db.refresh(order)

        self._publish(
            ORDER_CREATED,
            OrderCreatedPayload(
                order_id=order.id,
                user_id=order.user_id,
                items=[
                    CreatedItem(
                        product_id=item.product_id,
                        quantity=item.quantity,
                        unit_price=item.unit_price,
                        warehouse_id=item.warehouse_id,
                    )
                    for item in order.items
                ],
                warehouse_id=data.warehouse_id,
                shipping_address=order.shipping_address,
                total_amount=order.total_amount,
                created_at=order.created_at,
            ),
            EventMetadata(correlation_id=order.id, user_id=user_id),
        )
        logger.info(f"Order {order.id} created (total {order.total_amount})")
        return order

    def update(self, db: Session, order_id: str, patch: schemas.OrderUpdate, user_id: Optional[str] = None) -> models.Order:
        """
        Update notes and addresses of an order.

        Raises:
            NotFoundError: If the order does not exist
            InvalidStateError: If addresses change after the order has shipped or ended
        """
        order = self.get(db, order_id)
        update_data = patch.model_dump(exclude_unset=True)
        if not update_data:
            return order
        if "shipping_address" in update_data and update_data["shipping_address"] is None:
            raise ValidationError("shipping_address cannot be removed from an order")

        address_change = {"shipping_address", "billing_address"} & update_data.keys()
        if address_change and order.status not in CANCELLABLE_STATUSES:
            raise InvalidStateError(
                f"Cannot change addresses of a {order.status} order", current_state=order.status
            )

        try:
            for key, value in update_data.items():
                setattr(order, key, value)
            crud.log_order_event(
                db, order.id, "updated", f"Updated {', '.join(sorted(update_data))}", user_id=user_id
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(order)
        logger.info(f"Order {order_id} updated: {sorted(update_data)}")
        return order

    def mark_inventory_reserved(
        self, db: Session, order_id: str, product_id: str, metadata: Optional[EventMetadata] = None
    ) -> models.Order:
        """
        Record that the stock for one line item is reserved.

        Setting the flag is idempotent. When auto-confirm is on and this was
        the last unreserved line of a pending order, the order is confirmed.

        Raises:
            NotFoundError: If the order or its tracking row does not exist
        """
        logger.info(f"Marking inventory reserved for order {order_id}, product {product_id}")
        try:
            order = crud.get_order(db, order_id, for_update=True)
            if order is None:
                raise NotFoundError("Order", order_id)
            tracking = (
                db.query(models.OrderInventoryTracking)
                .filter(
                    models.OrderInventoryTracking.order_id == order_id,
                    models.OrderInventoryTracking.product_id == product_id,
                )
                .first()
            )
            if tracking is None:
                raise NotFoundError("OrderInventoryTracking", f"{order_id}:{product_id}")
            if not tracking.reserved:
                tracking.reserved = True
                db.flush()

            confirmed = False
            if (
                self.auto_confirm
                and order.status == OrderStatus.PENDING.value
                and crud.is_fully_reserved(db, order_id)
            ):
                self._transition(db, order, OrderStatus.CONFIRMED, "Order confirmed: all items reserved")
                confirmed = True
            db.commit()
        except Exception:
            db.rollback()
            raise

        if confirmed:
            logger.info(f"Order {order_id} fully reserved; auto-confirmed")
            self._publish_confirmed(order, metadata)
        return order

    def confirm(self, db: Session, order_id: str, user_id: Optional[str] = None) -> models.Order:
        """
        Manually confirm an order.

        Confirming an already confirmed order is a no-op.

        Raises:
            NotFoundError: If the order does not exist
            InvalidStateError: If the order is neither pending nor confirmed
        """
        logger.info(f"Confirming order {order_id}")
        try:
            order = crud.get_order(db, order_id, for_update=True)
            if order is None:
                raise NotFoundError("Order", order_id)
            if order.status == OrderStatus.CONFIRMED.value:
                db.commit()
                logger.info(f"Order {order_id} is already confirmed")
                return order
            self._transition(db, order, OrderStatus.CONFIRMED, "Order confirmed manually", user_id)
            db.commit()
        except Exception:
            db.rollback()
            raise

        self._publish_confirmed(order, EventMetadata(correlation_id=order.id, user_id=user_id))
        logger.info(f"Order {order_id} confirmed")
        return order

    def record_payment_completed(
        self, db: Session, order_id: str, payment_id: str, transaction_id: str
    ) -> models.Order:
        """
        Move a paid order to processing and store the payment references.

        Raises:
            NotFoundError: If the order does not exist
            InvalidStateError: If the order is shipped or in a terminal state
        """
        logger.info(f"Recording payment {payment_id} for order {order_id}")
        try:
            order = crud.get_order(db, order_id, for_update=True)
            if order is None:
                raise NotFoundError("Order", order_id)
            if order.status == OrderStatus.PROCESSING.value:
                logger.info(f"Order {order_id} is already processing")
            else:
                self._transition(db, order, OrderStatus.PROCESSING, f"Payment {payment_id} completed")
            order.payment_id = payment_id
            order.transaction_id = transaction_id
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info(f"Order {order_id} moved to processing")
        return order

    def cancel(
        self,
        db: Session,
        order_id: str,
        reason: str,
        automated: bool = False,
        user_id: Optional[str] = None,
        metadata: Optional[EventMetadata] = None,
    ) -> models.Order:
        """
        Cancel an order and publish order.cancelled with every line item.

        The reason is appended to the notes. An automated cancellation of an
        order that is already cancelled is a no-op, so compensations may be
        delivered more than once.

        Args:
            db: Database session
            order_id: Order to cancel
            reason: Cancellation reason
            automated: Triggered by the saga rather than a user
            user_id: User requesting the cancellation (manual only)
            metadata: Correlation information for the published event

        Returns:
            The cancelled order

        Raises:
            NotFoundError: If the order does not exist
            InvalidStateError: If the order can no longer be cancelled
        """
        logger.info(f"Cancelling order {order_id} (automated={automated}): {reason}")
        try:
            order = crud.get_order(db, order_id, for_update=True)
            if order is None:
                raise NotFoundError("Order", order_id)
            if order.status == OrderStatus.CANCELLED.value and automated:
                db.commit()
                logger.info(f"Order {order_id} is already cancelled; nothing to do")
                return order
            if order.status not in CANCELLABLE_STATUSES:
                raise InvalidStateError(
                    f"Cannot cancel order {order_id} in status {order.status}", current_state=order.status
                )

            note = f"Cancellation reason: {reason}"
            order.notes = f"{order.notes}\n{note}" if order.notes else note
            order.cancelled_at = _utcnow()
            self._transition(db, order, OrderStatus.CANCELLED, note, user_id)
            db.commit()
        except Exception:
            db.rollback()
            raise

        self._publish(
            ORDER_CANCELLED,
            OrderCancelledPayload(
                order_id=order.id,
                user_id=order.user_id,
                items=[
                    CancelledItem(product_id=item.product_id, quantity=item.quantity, warehouse_id=item.warehouse_id)
                    for item in order.items
                ],
                reason=reason,
                cancelled_at=order.cancelled_at,
            ),
            metadata or EventMetadata(correlation_id=order.id, user_id=user_id),
        )
        logger.info(f"Order {order_id} cancelled")
        return order

    def ship(
        self,
        db: Session,
        order_id: str,
        tracking_number: Optional[str] = None,
        carrier: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> models.Order:
        """
        Mark a processing order as shipped.

        Raises:
            NotFoundError: If the order does not exist
            InvalidStateError: If the order is not processing
        """
        logger.info(f"Shipping order {order_id} (carrier={carrier}, tracking={tracking_number})")
        try:
            order = crud.get_order(db, order_id, for_update=True)
            if order is None:
                raise NotFoundError("Order", order_id)
            description = "Order shipped"
            if carrier or tracking_number:
                description += f" via {carrier or 'unknown carrier'} ({tracking_number or 'no tracking number'})"
            self._transition(db, order, OrderStatus.SHIPPED, description, user_id)
            db.commit()
        except Exception:
            db.rollback()
            raise

        self._publish(
            ORDER_SHIPPED,
            OrderShippedPayload(
                order_id=order.id,
                user_id=order.user_id,
                tracking_number=tracking_number,
                carrier=carrier,
                shipped_at=datetime.now(timezone.utc),
            ),
            EventMetadata(correlation_id=order.id, user_id=user_id),
        )
        logger.info(f"Order {order_id} shipped")
        return order

    # Helpers

    def _transition(
        self,
        db: Session,
        order: models.Order,
        new_status: OrderStatus,
        description: str,
        user_id: Optional[str] = None,
    ) -> None:
        old_status = order.status
        is_valid, error_msg = validators.validate_order_status_transition(old_status, new_status.value)
        if not is_valid:
            raise InvalidStateError(f"Order {order.id}: {error_msg}", current_state=old_status)
        order.status = new_status.value
        crud.log_order_event(
            db, order.id, "status_changed", description,
            old_value=old_status, new_value=new_status.value, user_id=user_id,
        )

    def _publish_confirmed(self, order: models.Order, metadata: Optional[EventMetadata]) -> None:
        self._publish(
            ORDER_CONFIRMED,
            OrderConfirmedPayload(
                order_id=order.id,
                user_id=order.user_id,
                total_amount=order.total_amount,
                confirmed_at=datetime.now(timezone.utc),
            ),
            metadata,
        )

    def _publish(self, event_type: str, payload, metadata: Optional[EventMetadata]) -> None:
        self.publisher.publish(create_event(event_type, payload, SERVICE_NAME, metadata))
