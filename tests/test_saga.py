"""
End-to-end fulfillment runs: both services wired to one in-memory channel,
each with its own database.
"""
from decimal import Decimal

import pytest

from services.common.events import Event
from services.inventory.app import consumers as inventory_consumers
from services.inventory.app import crud as inventory_crud
from services.orders.app import consumers as orders_consumers
from services.orders.app import crud as orders_crud
from services.orders.app import schemas as orders_schemas


@pytest.fixture
def saga(channel, inventory_sessions, orders_sessions, ledger, order_service):
    channel.subscribe(
        inventory_consumers.QUEUE,
        inventory_consumers.BINDINGS,
        inventory_consumers.build_handlers(inventory_sessions, ledger),
    )
    channel.subscribe(
        orders_consumers.PRODUCTS_QUEUE,
        orders_consumers.PRODUCTS_BINDINGS,
        orders_consumers.build_products_handlers(orders_sessions, order_service),
    )
    channel.subscribe(
        orders_consumers.PAYMENTS_QUEUE,
        orders_consumers.PAYMENTS_BINDINGS,
        orders_consumers.build_payments_handlers(orders_sessions, order_service),
    )
    return channel


@pytest.fixture
def stocked(inventory_db, warehouse, ledger):
    ledger.update(inventory_db, "P1", warehouse.id, 10)
    ledger.update(inventory_db, "P2", warehouse.id, 2)
    return warehouse


def place_order(order_service, orders_db, *items):
    data = orders_schemas.OrderCreate(
        items=[
            orders_schemas.OrderItemCreate(product_id=p, quantity=q, unit_price=Decimal("5.00"))
            for p, q in items
        ],
        shipping_address={"city": "Utrecht"},
    )
    return order_service.create(orders_db, data, user_id="user-1")


def order_state(orders_db, order_id):
    orders_db.expire_all()
    return orders_crud.get_order(orders_db, order_id)


def reservation_states(inventory_db, order_id):
    inventory_db.expire_all()
    return sorted(
        (r.product_id, r.quantity, r.status)
        for r in inventory_crud.get_reservations_for_order(inventory_db, order_id)
    )


def payment(event_type, order_id, **fields):
    return Event(
        type=event_type,
        source="payments-service",
        payload={"paymentId": "pay-1", "orderId": order_id, "amount": 15, **fields},
    )


def test_insufficient_item_cancels_order_and_releases_reserved_items(
    saga, stocked, orders_db, inventory_db, order_service
):
    order = place_order(order_service, orders_db, ("P1", 3), ("P2", 5))
    saga.drain()

    assert len(saga.events_of_type("inventory.reserved")) == 1
    insufficient = saga.events_of_type("inventory.insufficient")
    assert len(insufficient) == 1
    assert insufficient[0].payload["productId"] == "P2"
    assert insufficient[0].payload["availableQuantity"] == 2

    cancelled = order_state(orders_db, order.id)
    assert cancelled.status == "cancelled"
    assert "Insufficient inventory for product P2" in cancelled.notes
    assert len(saga.events_of_type("order.cancelled")) == 1

    assert reservation_states(inventory_db, order.id) == [("P1", 3, "released")]
    assert inventory_crud.get_stock_levels(inventory_db, "P1", stocked.id)[0].available == 10
    assert all(not saga.dead_letters(q) for q in (
        inventory_consumers.QUEUE, orders_consumers.PRODUCTS_QUEUE, orders_consumers.PAYMENTS_QUEUE,
    ))


def test_fully_reserved_order_is_paid_and_processing(saga, stocked, orders_db, inventory_db, order_service):
    order = place_order(order_service, orders_db, ("P1", 3), ("P2", 2))
    saga.drain()
    assert order_state(orders_db, order.id).status == "confirmed"

    saga.publisher("payments").publish(payment("payment.completed", order.id, transactionId="txn-1"))
    saga.drain()

    paid = order_state(orders_db, order.id)
    assert (paid.status, paid.payment_id, paid.transaction_id) == ("processing", "pay-1", "txn-1")
    assert reservation_states(inventory_db, order.id) == [("P1", 3, "pending"), ("P2", 2, "pending")]


def test_failed_payment_cancels_and_releases_every_item(saga, stocked, orders_db, inventory_db, order_service):
    order = place_order(order_service, orders_db, ("P1", 3), ("P2", 2))
    saga.drain()
    assert order_state(orders_db, order.id).status == "confirmed"

    saga.publisher("payments").publish(payment("payment.failed", order.id, error="card declined"))
    saga.drain()

    cancelled = order_state(orders_db, order.id)
    assert cancelled.status == "cancelled"
    assert cancelled.notes == "Cancellation reason: Payment failed: card declined"
    assert reservation_states(inventory_db, order.id) == [("P1", 3, "released"), ("P2", 2, "released")]


def test_duplicate_reserved_event_marks_tracking_once(saga, stocked, orders_db, order_service):
    order = place_order(order_service, orders_db, ("P1", 3), ("P2", 2))
    saga.drain()

    first_reserved = saga.events_of_type("inventory.reserved")[0]
    saga.deliver_raw(orders_consumers.PRODUCTS_QUEUE, first_reserved.to_json())
    saga.drain()

    tracking = orders_crud.get_tracking(orders_db, order.id)
    assert [t.reserved for t in tracking] == [True, True]
    assert len(saga.events_of_type("order.confirmed")) == 1


def test_redelivered_order_created_does_not_double_reserve(saga, stocked, orders_db, inventory_db, order_service):
    order = place_order(order_service, orders_db, ("P1", 3))
    saga.drain()

    created = saga.events_of_type("order.created")[0]
    saga.deliver_raw(inventory_consumers.QUEUE, created.to_json())
    saga.drain()

    assert reservation_states(inventory_db, order.id) == [("P1", 3, "pending")]


def test_manual_cancel_releases_stock(saga, stocked, orders_db, inventory_db, order_service):
    order = place_order(order_service, orders_db, ("P1", 4))
    saga.drain()

    order_service.cancel(orders_db, order.id, "Changed my mind", user_id="user-1")
    saga.drain()

    assert reservation_states(inventory_db, order.id) == [("P1", 4, "released")]
    assert inventory_crud.get_stock_levels(inventory_db, "P1", stocked.id)[0].available == 10


def test_cancel_overtaking_a_retried_order_created_leaves_no_stock_held(
    saga, stocked, orders_db, inventory_db, order_service, ledger, monkeypatch
):
    order = place_order(order_service, orders_db, ("P1", 4))
    order_service.cancel(orders_db, order.id, "Changed my mind", user_id="user-1")

    reserve = ledger.reserve
    attempts = []

    def reserve_failing_once(*args, **kwargs):
        attempts.append(kwargs["product_id"])
        if len(attempts) == 1:
            raise RuntimeError("connection reset")
        return reserve(*args, **kwargs)

    monkeypatch.setattr(ledger, "reserve", reserve_failing_once)
    # order.created fails and is retried behind order.cancelled
    saga.drain()

    assert attempts == ["P1", "P1"]
    assert order_state(orders_db, order.id).status == "cancelled"
    assert all(status == "released" for *_, status in reservation_states(inventory_db, order.id))
    assert inventory_crud.is_line_released(inventory_db, order.id, "P1")
    assert inventory_crud.get_stock_levels(inventory_db, "P1", stocked.id)[0].available == 10
    assert saga.events_of_type("inventory.reserved") == []
    assert saga.dead_letters(inventory_consumers.QUEUE) == []


def test_cancel_overtaking_a_retried_order_created_after_partial_reservation(
    saga, stocked, orders_db, inventory_db, order_service, ledger, monkeypatch
):
    order = place_order(order_service, orders_db, ("P1", 3), ("P2", 2))
    order_service.cancel(orders_db, order.id, "Changed my mind", user_id="user-1")

    reserve = ledger.reserve
    attempts = []

    def reserve_failing_on_second_item(*args, **kwargs):
        attempts.append(kwargs["product_id"])
        if len(attempts) == 2:
            raise RuntimeError("connection reset")
        return reserve(*args, **kwargs)

    monkeypatch.setattr(ledger, "reserve", reserve_failing_on_second_item)
    saga.drain()

    assert reservation_states(inventory_db, order.id) == [("P1", 3, "released")]
    assert inventory_crud.get_stock_levels(inventory_db, "P1", stocked.id)[0].available == 10
    assert inventory_crud.get_stock_levels(inventory_db, "P2", stocked.id)[0].available == 2
