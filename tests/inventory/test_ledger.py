import threading

import pytest

from services.common.errors import NotFoundError, ValidationError
from services.inventory.app import crud, models, schemas
from services.inventory.app.ledger import MAX_BATCH_SIZE, InventoryLedger


def stock(ledger, db, warehouse, product_id="P1", quantity=10):
    return ledger.update(db, product_id, warehouse.id, quantity)


def pending_rows(db, order_id=None):
    query = db.query(models.InventoryReservation).filter(
        models.InventoryReservation.status == models.ReservationStatus.PENDING.value
    )
    if order_id:
        query = query.filter(models.InventoryReservation.order_id == order_id)
    return query.all()


class TestReserve:
    def test_sufficient_stock_creates_one_pending_reservation(self, ledger, inventory_db, warehouse, channel):
        stock(ledger, inventory_db, warehouse, quantity=10)

        assert ledger.reserve(inventory_db, "P1", warehouse.id, 3, "order-1") is True

        rows = pending_rows(inventory_db)
        assert [(r.order_id, r.quantity) for r in rows] == [("order-1", 3)]
        reserved = channel.events_of_type("inventory.reserved")
        assert len(reserved) == 1
        assert reserved[0].source == "products-service"
        assert reserved[0].payload == {
            "orderId": "order-1",
            "productId": "P1",
            "warehouseId": warehouse.id,
            "quantity": 3,
            "reservedAt": reserved[0].payload["reservedAt"],
        }
        assert channel.events_of_type("inventory.insufficient") == []

    def test_insufficient_stock_reports_true_shortfall_and_writes_nothing(
        self, ledger, inventory_db, warehouse, channel
    ):
        stock(ledger, inventory_db, warehouse, quantity=5)
        ledger.reserve(inventory_db, "P1", warehouse.id, 3, "order-1")

        assert ledger.reserve(inventory_db, "P1", warehouse.id, 4, "order-2") is False

        assert pending_rows(inventory_db, "order-2") == []
        insufficient = channel.events_of_type("inventory.insufficient")
        assert len(insufficient) == 1
        assert insufficient[0].payload["requestedQuantity"] == 4
        assert insufficient[0].payload["availableQuantity"] == 2
        assert insufficient[0].payload["reason"] == "Only 2 units available, but 4 requested"

    def test_exact_availability_is_reservable(self, ledger, inventory_db, warehouse):
        stock(ledger, inventory_db, warehouse, quantity=4)
        assert ledger.reserve(inventory_db, "P1", warehouse.id, 4, "order-1") is True
        assert crud.get_stock_levels(inventory_db, "P1", warehouse.id)[0].available == 0

    def test_missing_inventory_row_is_not_found(self, ledger, inventory_db, warehouse, channel):
        with pytest.raises(NotFoundError):
            ledger.reserve(inventory_db, "unknown", warehouse.id, 1, "order-1")
        assert channel.published == []

    def test_non_positive_quantity_is_rejected(self, ledger, inventory_db, warehouse):
        stock(ledger, inventory_db, warehouse)
        with pytest.raises(ValidationError):
            ledger.reserve(inventory_db, "P1", warehouse.id, 0, "order-1")

    def test_repeated_reserve_for_same_order_does_not_double_book(
        self, ledger, inventory_db, warehouse, channel
    ):
        stock(ledger, inventory_db, warehouse, quantity=10)

        ledger.reserve(inventory_db, "P1", warehouse.id, 3, "order-1")
        assert ledger.reserve(inventory_db, "P1", warehouse.id, 3, "order-1") is True

        assert len(pending_rows(inventory_db, "order-1")) == 1
        assert len(channel.events_of_type("inventory.reserved")) == 2

    def test_released_reservation_is_not_reserved_again(self, ledger, inventory_db, warehouse, channel):
        stock(ledger, inventory_db, warehouse, quantity=10)
        ledger.reserve(inventory_db, "P1", warehouse.id, 3, "order-1")
        ledger.release(inventory_db, "P1", "order-1", 3)

        assert ledger.reserve(inventory_db, "P1", warehouse.id, 3, "order-1") is False
        assert pending_rows(inventory_db, "order-1") == []

    def test_concurrent_reservations_never_oversell(self, inventory_sessions, warehouse, channel):
        ledger = InventoryLedger(channel.publisher("products"))
        warehouse_id = warehouse.id
        setup = inventory_sessions()
        ledger.update(setup, "P1", warehouse_id, 10)
        setup.close()

        start = threading.Barrier(8)
        errors = []

        def attempt(n):
            db = inventory_sessions()
            try:
                start.wait()
                for i in range(3):
                    ledger.reserve(db, "P1", warehouse_id, 1 + (n + i) % 3, f"order-{n}-{i}")
            except Exception as e:
                errors.append(e)
            finally:
                db.close()

        threads = [threading.Thread(target=attempt, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        db = inventory_sessions()
        reserved = sum(r.quantity for r in pending_rows(db))
        db.close()
        assert reserved <= 10
        successes = len(channel.events_of_type("inventory.reserved"))
        failures = len(channel.events_of_type("inventory.insufficient"))
        assert successes + failures == 24


class TestRelease:
    def test_release_flips_pending_reservations(self, ledger, inventory_db, warehouse):
        stock(ledger, inventory_db, warehouse, quantity=10)
        ledger.reserve(inventory_db, "P1", warehouse.id, 3, "order-1")

        assert ledger.release(inventory_db, "P1", "order-1", 3) == 1

        assert pending_rows(inventory_db) == []
        assert crud.get_stock_levels(inventory_db, "P1", warehouse.id)[0].available == 10

    def test_release_is_idempotent(self, ledger, inventory_db, warehouse):
        stock(ledger, inventory_db, warehouse, quantity=10)
        ledger.reserve(inventory_db, "P1", warehouse.id, 3, "order-1")

        ledger.release(inventory_db, "P1", "order-1", 3)
        statuses_after_first = [r.status for r in crud.get_reservations_for_order(inventory_db, "order-1")]
        assert ledger.release(inventory_db, "P1", "order-1", 3) == 0
        statuses_after_second = [r.status for r in crud.get_reservations_for_order(inventory_db, "order-1")]

        assert statuses_after_first == statuses_after_second == ["released"]

    def test_release_without_reservation_is_a_no_op(self, ledger, inventory_db, warehouse):
        assert ledger.release(inventory_db, "P1", "never-reserved", 1) == 0

    def test_release_ahead_of_reserve_refuses_the_late_reservation(self, ledger, inventory_db, warehouse, channel):
        stock(ledger, inventory_db, warehouse, quantity=10)

        assert ledger.release(inventory_db, "P1", "order-1", 3) == 0
        assert crud.is_line_released(inventory_db, "order-1", "P1")

        assert ledger.reserve(inventory_db, "P1", warehouse.id, 3, "order-1") is False
        assert pending_rows(inventory_db, "order-1") == []
        assert channel.events_of_type("inventory.reserved") == []
        assert crud.get_stock_levels(inventory_db, "P1", warehouse.id)[0].available == 10

    def test_repeated_release_marks_the_line_once(self, ledger, inventory_db, warehouse):
        ledger.release(inventory_db, "P1", "order-1", 3)
        ledger.release(inventory_db, "P1", "order-1", 3)

        assert inventory_db.query(models.ReleasedOrderLine).count() == 1

    def test_release_only_touches_the_given_order_and_product(self, ledger, inventory_db, warehouse):
        stock(ledger, inventory_db, warehouse, "P1", 10)
        stock(ledger, inventory_db, warehouse, "P2", 10)
        ledger.reserve(inventory_db, "P1", warehouse.id, 2, "order-1")
        ledger.reserve(inventory_db, "P2", warehouse.id, 2, "order-1")
        ledger.reserve(inventory_db, "P1", warehouse.id, 2, "order-2")

        ledger.release(inventory_db, "P1", "order-1", 2)

        remaining = sorted((r.order_id, r.product_id) for r in pending_rows(inventory_db))
        assert remaining == [("order-1", "P2"), ("order-2", "P1")]


class TestUpdate:
    def test_update_upserts_quantity(self, ledger, inventory_db, warehouse):
        first = ledger.update(inventory_db, "P1", warehouse.id, 5)
        second = ledger.update(inventory_db, "P1", warehouse.id, 8)

        assert first.id == second.id
        assert crud.get_inventory(inventory_db, "P1", warehouse.id).quantity == 8

    def test_negative_quantity_is_rejected(self, ledger, inventory_db, warehouse):
        with pytest.raises(ValidationError):
            ledger.update(inventory_db, "P1", warehouse.id, -1)

    def test_unknown_warehouse_is_not_found(self, ledger, inventory_db):
        with pytest.raises(NotFoundError):
            ledger.update(inventory_db, "P1", "missing-warehouse", 5)

    def test_quantity_below_pending_reservations_is_rejected(self, ledger, inventory_db, warehouse):
        stock(ledger, inventory_db, warehouse, quantity=10)
        ledger.reserve(inventory_db, "P1", warehouse.id, 6, "order-1")

        with pytest.raises(ValidationError):
            ledger.update(inventory_db, "P1", warehouse.id, 5)
        assert crud.get_inventory(inventory_db, "P1", warehouse.id).quantity == 10


class TestBatchUpdate:
    def entries(self, warehouse, count, quantity=5):
        return [
            schemas.InventoryEntry(product_id=f"P{i}", warehouse_id=warehouse.id, quantity=quantity)
            for i in range(count)
        ]

    def test_batch_updates_every_entry(self, ledger, inventory_db, warehouse):
        assert ledger.batch_update(inventory_db, self.entries(warehouse, 3)) == 3
        assert inventory_db.query(models.Inventory).count() == 3

    @pytest.mark.parametrize("count", [0, MAX_BATCH_SIZE + 1])
    def test_batch_size_outside_bounds_is_rejected(self, ledger, inventory_db, warehouse, count):
        with pytest.raises(ValidationError):
            ledger.batch_update(inventory_db, self.entries(warehouse, count))
        assert inventory_db.query(models.Inventory).count() == 0

    def test_invalid_entry_rolls_back_whole_batch(self, ledger, inventory_db, warehouse):
        entries = self.entries(warehouse, 3)
        entries.append(schemas.InventoryEntry(product_id="bad", warehouse_id=warehouse.id, quantity=-3))

        with pytest.raises(ValidationError):
            ledger.batch_update(inventory_db, entries)

        assert inventory_db.query(models.Inventory).count() == 0
