"""Pytest configuration and fixtures."""

import os

# Configure the app before any stockroom import reads settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.setdefault("SECRET_KEY", "test-secret-key-with-at-least-32-characters")

import pytest
from datetime import date, timedelta
from decimal import Decimal
from typing import Generator

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stockroom.core.permissions import UserRole
from stockroom.core.security import create_access_token, get_password_hash
from stockroom.db.base import Base
from stockroom.db.session import enable_sqlite_foreign_keys, get_db
from stockroom.main import app
# Import all models to ensure they're registered with Base.metadata
from stockroom.models import *  # noqa: F401,F403
from stockroom.models.customer import Customer
from stockroom.models.product import Product
from stockroom.models.stock import StockItem, StockStatus
from stockroom.models.supplier import Supplier
from stockroom.models.user import User
from stockroom.models.warehouse import Location, Warehouse
from stockroom.services.base import today

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite://"
TEST_PASSWORD = "testpass123"
# Hashing is slow; every fixture user shares one hash
TEST_PASSWORD_HASH = get_password_hash(TEST_PASSWORD)


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Disable rate limiting during tests to avoid flaky failures
    from stockroom.core.rate_limit import limiter
    limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_user(db: Session, role: UserRole, email: str, is_active: bool = True) -> User:
    user = User(
        email=email,
        password_hash=TEST_PASSWORD_HASH,
        role=role.value,
        name=f"Test {role.value.replace('_', ' ').title()}",
        is_active=is_active,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def auth_headers_for(user: User) -> dict:
    token = create_access_token(data={"sub": str(user.id), "email": user.email, "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def viewer(db_session: Session) -> User:
    return make_user(db_session, UserRole.VIEWER, "viewer@example.com")


@pytest.fixture
def staff(db_session: Session) -> User:
    return make_user(db_session, UserRole.STAFF, "staff@example.com")


@pytest.fixture
def manager(db_session: Session) -> User:
    return make_user(db_session, UserRole.MANAGER, "manager@example.com")


@pytest.fixture
def admin(db_session: Session) -> User:
    return make_user(db_session, UserRole.ADMIN, "admin@example.com")


@pytest.fixture
def super_admin(db_session: Session) -> User:
    return make_user(db_session, UserRole.SUPER_ADMIN, "root@example.com")


@pytest.fixture
def viewer_headers(viewer: User) -> dict:
    return auth_headers_for(viewer)


@pytest.fixture
def staff_headers(staff: User) -> dict:
    return auth_headers_for(staff)


@pytest.fixture
def manager_headers(manager: User) -> dict:
    return auth_headers_for(manager)


@pytest.fixture
def admin_headers(admin: User) -> dict:
    return auth_headers_for(admin)


@pytest.fixture
def super_admin_headers(super_admin: User) -> dict:
    return auth_headers_for(super_admin)


@pytest.fixture
def warehouse(db_session: Session) -> Warehouse:
    """Create the main test warehouse."""
    wh = Warehouse(code="WH-MAIN", name="Main Warehouse", address="1 Dock Road", is_active=True)
    db_session.add(wh)
    db_session.commit()
    db_session.refresh(wh)
    return wh


@pytest.fixture
def second_warehouse(db_session: Session) -> Warehouse:
    wh = Warehouse(code="WH-EAST", name="East Warehouse", is_active=True)
    db_session.add(wh)
    db_session.commit()
    db_session.refresh(wh)
    return wh


@pytest.fixture
def location(db_session: Session, warehouse: Warehouse) -> Location:
    """Create a STANDARD bin in the main warehouse."""
    loc = Location(warehouse_id=warehouse.id, code="A-01", name="Aisle A bin 1", type="STANDARD", is_active=True)
    db_session.add(loc)
    db_session.commit()
    db_session.refresh(loc)
    return loc


@pytest.fixture
def product(db_session: Session) -> Product:
    """Create a plain, untracked product."""
    prod = Product(
        sku="WIDGET-001",
        name="Widget",
        unit="pcs",
        cost_price=250,
        sell_price=500,
        reorder_point=5,
        is_active=True,
    )
    db_session.add(prod)
    db_session.commit()
    db_session.refresh(prod)
    return prod


@pytest.fixture
def supplier(db_session: Session) -> Supplier:
    sup = Supplier(code="SUP-1", name="Acme Supplies", email="orders@acme.example", is_active=True)
    db_session.add(sup)
    db_session.commit()
    db_session.refresh(sup)
    return sup


@pytest.fixture
def customer(db_session: Session) -> Customer:
    cust = Customer(code="CUST-1", name="Globex", email="buyer@globex.example", is_active=True)
    db_session.add(cust)
    db_session.commit()
    db_session.refresh(cust)
    return cust


def add_stock(
    db: Session,
    product: Product,
    warehouse: Warehouse,
    quantity,
    location: Location = None,
    batch_number: str = None,
    serial_number: str = None,
    expiry_date: date = None,
    reserved=0,
    unit_cost: int = 100,
    status: str = StockStatus.AVAILABLE.value,
) -> StockItem:
    """Insert a bucket directly, bypassing the ledger."""
    item = StockItem(
        product_id=product.id,
        warehouse_id=warehouse.id,
        location_id=location.id if location else None,
        batch_number=batch_number,
        serial_number=serial_number,
        expiry_date=expiry_date,
        quantity=Decimal(str(quantity)),
        reserved_quantity=Decimal(str(reserved)),
        unit_cost=unit_cost,
        status=status,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


@pytest.fixture
def stock_item(db_session: Session, product: Product, warehouse: Warehouse, location: Location) -> StockItem:
    """100 units of the widget in bin A-01."""
    return add_stock(db_session, product, warehouse, 100, location=location)


def days_from_today(days: int) -> date:
    return today() + timedelta(days=days)
