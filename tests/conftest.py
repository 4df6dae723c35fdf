import os
import uuid
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["SHOPIFY_WEBHOOK_SECRET"] = "shopify-test-secret"
os.environ["COURIER_BOOKING_MODE"] = "live"

import httpx
import pytest

from app.core.realtime import manager as realtime
from app.core.security import create_access_token
from app.database import Base, async_session_factory, engine, get_db
from app.main import app
from app.models.inventory import Inventory
from app.models.order import Order, OrderItem, OrderStatus
from app.models.outlet import Outlet
from app.models.product import Product
from app.models.user import AppRole, User, UserRole


# One hash for every test user keeps the suite fast
PASSWORD = "password123"
_password_hash = None


def _hash() -> str:
    global _password_hash
    if _password_hash is None:
        from app.core.security import get_password_hash
        _password_hash = get_password_hash(PASSWORD)
    return _password_hash


def auth_headers(user: User) -> dict[str, str]:
    token = create_access_token(subject=user.id, additional_claims={"roles": user.roles})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def db_session():
    from app import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session = async_session_factory()
    try:
        yield session
    finally:
        await session.close()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def client(db_session):
    # In-memory SQLite is a single connection, so requests share the test session.
    # Failed requests leave it untouched so fixture rows survive a 4xx.
    async def override_get_db():
        yield db_session
        await db_session.commit()
        await realtime.publish_pending(db_session)

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db_session):
    async def _make_user(*roles: str, email: str = None) -> User:
        user = User(
            email=email or f"user-{uuid.uuid4().hex[:8]}@retailops.pk",
            full_name="Test User",
            password_hash=_hash(),
            user_roles=[UserRole(role=r) for r in roles],
        )
        db_session.add(user)
        await db_session.flush()
        return user

    return _make_user


@pytest.fixture
async def admin_user(make_user):
    return await make_user(AppRole.ADMIN.value, email="admin@retailops.pk")


@pytest.fixture
async def admin_headers(admin_user):
    return auth_headers(admin_user)


@pytest.fixture
async def staff_user(make_user):
    return await make_user(AppRole.STAFF.value)


@pytest.fixture
async def staff_headers(staff_user):
    return auth_headers(staff_user)


@pytest.fixture
async def manager_user(make_user):
    return await make_user(AppRole.WAREHOUSE_MANAGER.value)


@pytest.fixture
async def manager_headers(manager_user):
    return auth_headers(manager_user)


@pytest.fixture
async def cashier_user(make_user):
    return await make_user(AppRole.CASHIER.value)


@pytest.fixture
async def cashier_headers(cashier_user):
    return auth_headers(cashier_user)


@pytest.fixture
async def outlet(db_session):
    outlet = Outlet(name="Main Warehouse", code="WH-01", outlet_type="warehouse", city="Karachi")
    db_session.add(outlet)
    await db_session.flush()
    return outlet


@pytest.fixture
async def store(db_session):
    outlet = Outlet(name="Clifton Store", code="ST-01", outlet_type="retail", city="Karachi")
    db_session.add(outlet)
    await db_session.flush()
    return outlet


@pytest.fixture
async def product(db_session):
    product = Product(name="Blue Shirt", sku="SHIRT-BLUE-M", price=Decimal("1500.00"), reorder_level=5)
    db_session.add(product)
    await db_session.flush()
    return product


@pytest.fixture
def stock(db_session):
    async def _stock(product: Product, outlet: Outlet, quantity: int, reserved: int = 0) -> Inventory:
        inventory = Inventory(
            product_id=product.id,
            outlet_id=outlet.id,
            quantity=quantity,
            reserved_quantity=reserved,
            available_quantity=quantity - reserved,
        )
        db_session.add(inventory)
        await db_session.flush()
        return inventory

    return _stock


@pytest.fixture
def make_order(db_session):
    async def _make_order(status: str = OrderStatus.PENDING.value, **kwargs) -> Order:
        number = kwargs.pop("order_number", f"ORD-{uuid.uuid4().hex[:8].upper()}")
        order = Order(
            order_number=number,
            customer_name=kwargs.pop("customer_name", "Ayesha Khan"),
            customer_phone=kwargs.pop("customer_phone", "03001234567"),
            customer_address=kwargs.pop("customer_address", "House 12, Block 5, Clifton"),
            city=kwargs.pop("city", "Karachi"),
            total_amount=kwargs.pop("total_amount", Decimal("3000.00")),
            status=status,
            items=[{"name": "Blue Shirt", "quantity": 2, "price": "1500.00"}],
            order_items=[OrderItem(item_name="Blue Shirt", quantity=2, price=Decimal("1500.00"))],
            **kwargs,
        )
        db_session.add(order)
        await db_session.flush()
        return order

    return _make_order
