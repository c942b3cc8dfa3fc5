import pytest
from fastapi.testclient import TestClient

from services.inventory.app.database import get_db
from services.inventory.app.main import app


@pytest.fixture
def client(inventory_sessions, ledger):
    def override_get_db():
        db = inventory_sessions()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.ledger = ledger
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def warehouse_id(client, admin_headers):
    response = client.post(
        "/api/v1/warehouses", json={"name": "Main", "location": "Amsterdam"}, headers=admin_headers
    )
    assert response.status_code == 201
    return response.json()["id"]


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "healthy"}


def test_requires_authentication(client):
    assert client.get("/api/v1/inventory/P1").status_code in (401, 403)


def test_stock_changes_are_admin_only(client, user_headers, warehouse_id):
    response = client.put(
        "/api/v1/inventory/P1", json={"warehouse_id": warehouse_id, "quantity": 5}, headers=user_headers
    )
    assert response.status_code == 403


def test_warehouses_crud(client, admin_headers, user_headers, warehouse_id):
    listed = client.get("/api/v1/warehouses", headers=user_headers).json()
    assert [w["id"] for w in listed] == [warehouse_id]

    assert client.get(f"/api/v1/warehouses/{warehouse_id}", headers=user_headers).json()["name"] == "Main"

    missing = client.get("/api/v1/warehouses/nope", headers=user_headers)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"


def test_update_and_read_stock_levels(client, admin_headers, user_headers, warehouse_id):
    response = client.put(
        "/api/v1/inventory/P1", json={"warehouse_id": warehouse_id, "quantity": 10}, headers=admin_headers
    )
    assert response.status_code == 200
    assert response.json()["available"] == 10

    client.post(
        "/api/v1/inventory/reserve",
        json={"product_id": "P1", "warehouse_id": warehouse_id, "quantity": 4, "order_id": "order-1"},
        headers=admin_headers,
    )

    levels = client.get(f"/api/v1/inventory/P1?warehouse_id={warehouse_id}", headers=user_headers).json()
    assert levels[0]["quantity"] == 10
    assert levels[0]["reserved"] == 4
    assert levels[0]["available"] == 6


def test_unknown_stock_row_is_404(client, user_headers, warehouse_id):
    response = client.get(f"/api/v1/inventory/P9?warehouse_id={warehouse_id}", headers=user_headers)
    assert response.status_code == 404


def test_negative_quantity_is_400(client, admin_headers, warehouse_id):
    response = client.put(
        "/api/v1/inventory/P1", json={"warehouse_id": warehouse_id, "quantity": -1}, headers=admin_headers
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_update_for_unknown_warehouse_is_404(client, admin_headers):
    response = client.put(
        "/api/v1/inventory/P1", json={"warehouse_id": "nope", "quantity": 1}, headers=admin_headers
    )
    assert response.status_code == 404


def test_batch_update(client, admin_headers, warehouse_id):
    updates = [{"product_id": f"P{i}", "warehouse_id": warehouse_id, "quantity": i} for i in range(5)]
    response = client.post("/api/v1/inventory/batch", json={"updates": updates}, headers=admin_headers)
    assert response.status_code == 200
    assert response.json() == {"updated": 5}


def test_empty_batch_is_400(client, admin_headers):
    response = client.post("/api/v1/inventory/batch", json={"updates": []}, headers=admin_headers)
    assert response.status_code == 400


def test_reserve_and_release(client, admin_headers, user_headers, warehouse_id, channel):
    client.put("/api/v1/inventory/P1", json={"warehouse_id": warehouse_id, "quantity": 3}, headers=admin_headers)
    reserve = {"product_id": "P1", "warehouse_id": warehouse_id, "quantity": 2, "order_id": "order-1"}

    assert client.post("/api/v1/inventory/reserve", json=reserve, headers=admin_headers).json() == {"reserved": True}
    too_much = {**reserve, "order_id": "order-2"}
    assert client.post("/api/v1/inventory/reserve", json=too_much, headers=admin_headers).json() == {"reserved": False}
    assert len(channel.events_of_type("inventory.insufficient")) == 1

    release = {"product_id": "P1", "order_id": "order-1", "quantity": 2}
    assert client.post("/api/v1/inventory/release", json=release, headers=admin_headers).json() == {"released": 1}
    assert client.post("/api/v1/inventory/release", json=release, headers=admin_headers).json() == {"released": 0}

    history = client.get("/api/v1/inventory/reservations/order-1", headers=user_headers).json()
    assert [r["status"] for r in history] == ["released"]
