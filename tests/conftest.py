from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import orderflow.persistence.pg as pg
from orderflow.core.config import get_settings
from orderflow.core.security import Actor
from orderflow.notifications.channels import FakeFiscalReceiptClient, LogEmailSender
from orderflow.orders.service import build_order_service
from orderflow.persistence.models import Base

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

ITEMS = [
    {"product_id": "tea-01", "name": "Green tea", "unit_price": 100, "quantity": 2},
    {"product_id": 42, "unit_price": 50, "quantity": 1},
]

DELIVERY = {
    "delivery_date": "2026-03-03",
    "time_slot": "14-18",
    "address": {"district": "Sukhbaatar", "street": "Peace Ave 1"},
    "email": "buyer@example.com",
    "phone": "99112233",
}


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingInventory:
    def __init__(self):
        self.calls: list[tuple[str, str]] = []

    def reserve(self, order) -> None:
        self.calls.append(("reserve", order.id))

    def release(self, order) -> None:
        self.calls.append(("release", order.id))


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.email_backend = "log"
    settings.receipt_backend = "fake"
    settings.sweeper_enabled = False
    settings.notification_workers = 0
    settings.auth_enabled = True

    engine = create_engine(
        f"sqlite+pysqlite:///{test_db_path}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    TestSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    pg.engine = engine
    pg.SessionLocal = TestSessionLocal

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables(configure_test_engine):
    yield
    with pg.session_scope() as s:
        for table in reversed(Base.metadata.sorted_tables):
            s.execute(table.delete())


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def email_sender() -> LogEmailSender:
    return LogEmailSender()


@pytest.fixture()
def receipt_client() -> FakeFiscalReceiptClient:
    return FakeFiscalReceiptClient()


@pytest.fixture()
def inventory() -> RecordingInventory:
    return RecordingInventory()


@pytest.fixture()
def service_settings():
    return get_settings().model_copy(
        update={
            "sweeper_enabled": False,
            "notification_workers": 0,
            "order_ttl_minutes": 60,
            "admin_notification_email": "ops@example.com",
        }
    )


@pytest.fixture()
def service(service_settings, clock, email_sender, receipt_client, inventory):
    svc = build_order_service(
        service_settings,
        email_sender=email_sender,
        receipt_client=receipt_client,
        inventory=inventory,
        clock=clock,
    )
    yield svc
    svc.stop()


@pytest.fixture()
def client(service):
    from orderflow.main import app

    app.state.order_service = service
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def admin() -> Actor:
    return Actor(role="admin", id=get_settings().admin_actor_id)


@pytest.fixture()
def customer() -> Actor:
    return Actor(role="customer", id="cust-1")


@pytest.fixture()
def auth_headers():
    settings = get_settings()
    return {
        "admin": {"X-API-Key": settings.admin_api_key},
        "system": {"X-API-Key": settings.system_api_key},
        "customer": {"X-API-Key": settings.customer_api_key, "X-Customer-Id": "cust-1"},
        "other_customer": {"X-API-Key": settings.customer_api_key, "X-Customer-Id": "cust-2"},
    }


@pytest.fixture()
def place_order(service):
    def _place(customer_id: str = "cust-1", items=None, delivery=None):
        return service.create_order(
            customer_id,
            ITEMS if items is None else items,
            DELIVERY if delivery is None else delivery,
        )

    return _place


PATHS = {
    "PENDING": [],
    "PAID": ["PAID"],
    "PROCESSING": ["PAID", "PROCESSING"],
    "SHIPPED": ["PAID", "PROCESSING", "SHIPPED"],
    "DELIVERED": ["PAID", "PROCESSING", "SHIPPED", "DELIVERED"],
    "CANCELLATION_REQUESTED": ["CANCELLATION_REQUESTED"],
    "CANCELLED": ["CANCELLATION_REQUESTED", "CANCELLED"],
    "EXPIRED": ["EXPIRED"],
    "FAILED": ["FAILED"],
}


@pytest.fixture()
def order_in_status(service, place_order, admin):
    def _drive(status: str, customer_id: str = "cust-1"):
        order = place_order(customer_id)
        for target in PATHS[status]:
            order = service.machine.advance_status(order.id, target, admin)
        return order

    return _drive
