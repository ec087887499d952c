"""Pytest configuration and fixtures."""

import os

# Settings are read at import time; point them at test values first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["ALERT_SWEEP_ENABLED"] = "false"

import pytest
from decimal import Decimal
from typing import Callable, Generator

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from medstock.core.events import EventBus, get_event_bus
from medstock.db.base import Base
from medstock.db.session import build_engine, get_db
from medstock.main import app
# Import all models to ensure they're registered with Base.metadata
from medstock.models import *
from medstock.models.clinic import Clinic
from medstock.models.stock import StockItem
from medstock.models.supplier import Supplier
from medstock.schemas.stock import StockCreate
from medstock.services.alert_engine import register_alert_engine
from medstock.services.stock_service import StockService

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = build_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine) -> sessionmaker:
    """Session factory bound to the test engine, used by event handlers."""
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def bus(session_factory) -> EventBus:
    """Event bus with the alert engine subscribed, as in the running app."""
    test_bus = EventBus()
    register_alert_engine(test_bus, session_factory)
    return test_bus


@pytest.fixture(scope="function")
def bare_bus() -> EventBus:
    """Event bus with no subscribers; alerts are only created by explicit reconcile calls."""
    return EventBus()


@pytest.fixture(scope="function")
def client(db_session: Session, bus: EventBus) -> Generator[TestClient, None, None]:
    """Create a test client with database and event bus overrides."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_bus] = lambda: bus
    # Disable rate limiter during tests to avoid flaky failures
    from medstock.core.rate_limit import limiter as global_limiter
    global_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def clinic_a(db_session: Session) -> Clinic:
    """Clinic that owns the source stock in most tests."""
    clinic = Clinic(name="Kadikoy Clinic", code="KDK", city="Istanbul", is_active=True)
    db_session.add(clinic)
    db_session.commit()
    db_session.refresh(clinic)
    return clinic


@pytest.fixture
def clinic_b(db_session: Session) -> Clinic:
    """Clinic that requests stock in most tests."""
    clinic = Clinic(name="Besiktas Clinic", code="BSK", city="Istanbul", is_active=True)
    db_session.add(clinic)
    db_session.commit()
    db_session.refresh(clinic)
    return clinic


@pytest.fixture
def test_supplier(db_session: Session) -> Supplier:
    """Create a test supplier."""
    supplier = Supplier(
        name="Medline Supplies",
        contact_person="Ayse Demir",
        phone="+902161234567",
        email="orders@medline.example.com",
    )
    db_session.add(supplier)
    db_session.commit()
    db_session.refresh(supplier)
    return supplier


@pytest.fixture
def make_stock(db_session: Session, clinic_a: Clinic, bare_bus: EventBus) -> Callable[..., StockItem]:
    """Factory creating stock items through the catalog service.

    Initial quantity is booked through the ledger. Uses a bus without
    subscribers so fixtures never create alerts.
    """
    counter = {"n": 0}

    def _make(**overrides) -> StockItem:
        counter["n"] += 1
        data = {
            "name": f"Surgical Gloves {counter['n']}",
            "unit": "box",
            "category": "Consumables",
            "clinic_id": clinic_a.id,
            "current_stock": Decimal("10"),
            "min_stock_level": Decimal("5"),
            "critical_stock_level": Decimal("2"),
            "purchase_price": Decimal("12.50"),
        }
        data.update(overrides)
        return StockService(db_session, bare_bus).create_stock(StockCreate(**data))

    return _make


@pytest.fixture
def stock(make_stock) -> StockItem:
    """Stock item with 10 units, min level 5, critical level 2."""
    return make_stock()
