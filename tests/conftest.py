"""
Shared fixtures: one SQLite database file per service and test, an
in-memory event channel, and JWT helpers for the HTTP tests.
"""
import pytest
from jose import jwt

from services.common import auth
from services.common.channel import InMemoryEventChannel
from services.common.database import create_session_factory
from services.inventory.app import crud as inventory_crud
from services.inventory.app import models as inventory_models
from services.inventory.app import schemas as inventory_schemas
from services.inventory.app.ledger import InventoryLedger
from services.orders.app import models as orders_models
from services.orders.app.service import OrderService


def _sqlite_sessions(path, base):
    engine, factory = create_session_factory(f"sqlite:///{path}", timeout=30)
    base.metadata.create_all(bind=engine)
    return engine, factory


@pytest.fixture
def inventory_sessions(tmp_path):
    engine, factory = _sqlite_sessions(tmp_path / "inventory.db", inventory_models.Base)
    yield factory
    engine.dispose()


@pytest.fixture
def orders_sessions(tmp_path):
    engine, factory = _sqlite_sessions(tmp_path / "orders.db", orders_models.Base)
    yield factory
    engine.dispose()


@pytest.fixture
def inventory_db(inventory_sessions):
    db = inventory_sessions()
    yield db
    db.close()


@pytest.fixture
def orders_db(orders_sessions):
    db = orders_sessions()
    yield db
    db.close()


@pytest.fixture
def channel():
    return InMemoryEventChannel(max_retries=2)


@pytest.fixture
def ledger(channel):
    return InventoryLedger(channel.publisher("products"))


@pytest.fixture
def order_service(channel):
    return OrderService(channel.publisher("orders"), auto_confirm=True)


@pytest.fixture
def warehouse(inventory_db):
    return inventory_crud.create_warehouse(
        inventory_db, inventory_schemas.WarehouseCreate(name="Main", location="Amsterdam")
    )


def make_token(user_id: str = "user-1", role: str = "user") -> str:
    claims = {"sub": user_id, "email": f"{user_id}@example.com", "role": role}
    return jwt.encode(claims, auth.SECRET_KEY, algorithm=auth.ALGORITHM)


def auth_headers(user_id: str = "user-1", role: str = "user") -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


@pytest.fixture
def headers_for():
    return auth_headers


@pytest.fixture
def user_headers():
    return auth_headers("user-1", "user")


@pytest.fixture
def admin_headers():
    return auth_headers("admin-1", "admin")
