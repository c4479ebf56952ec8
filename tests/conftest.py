# exchange_engine/tests/conftest.py
# ---------------------------------------------------------------------
# Ground rules:
# - Settings come from the environment, so set them before any import
#   of exchange_engine
# - Every test gets its own SQLite database file (tmp_path) with all
#   tables created; nothing is shared between tests
# - Sessions are used one after another, never interleaved
# - Factories seed products, reason codes and original orders
# ---------------------------------------------------------------------

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["SECRET_KEY"] = "test-secret-key-not-for-production"

import uuid
from decimal import Decimal
from typing import Optional

import pytest
from httpx import ASGITransport, AsyncClient

from exchange_engine.core.security import create_access_token
from exchange_engine.database import create_engine_from_url, create_session_factory, get_db, init_db
from exchange_engine.main import app
from exchange_engine.models import Order, OrderItem, Product, ReturnReasonCode


# ---------- Database ----------
@pytest.fixture
async def engine(tmp_path):
    engine = create_engine_from_url(f"sqlite+aiosqlite:///{tmp_path / 'exchange.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ---------- Factories ----------
@pytest.fixture
def make_product(session_factory):
    async def _make(
        name: str = "Widget",
        price: str = "500.00",
        cost: Optional[str] = "300.00",
        qty_on_hand: int = 10,
        qty_reserved: int = 0,
        track_inventory: bool = True,
        allow_backorder: bool = False,
        taxable: bool = True,
    ) -> Product:
        product = Product(
            name=name,
            sku=f"SKU-{uuid.uuid4().hex[:8].upper()}",
            price=Decimal(price),
            cost=Decimal(cost) if cost is not None else None,
            qty_on_hand=qty_on_hand,
            qty_reserved=qty_reserved,
            track_inventory=track_inventory,
            allow_backorder=allow_backorder,
            taxable=taxable,
        )
        async with session_factory() as session:
            session.add(product)
            await session.commit()
        return product

    return _make


@pytest.fixture
def make_order(session_factory):
    """
    Seed an original order.

    lines: list of (product, quantity, unit_price_cents)
    Returns (order, order_items).
    """
    async def _make(
        lines,
        status: str = "completed",
        tax_jurisdiction: Optional[str] = "ON",
        tax_exempt: bool = False,
    ):
        order_id = uuid.uuid4()
        subtotal = sum(qty * price for _, qty, price in lines)
        order = Order(
            id=order_id,
            order_number=f"ORD-{uuid.uuid4().hex[:10].upper()}",
            source="pos",
            status=status,
            customer_id=uuid.uuid4(),
            customer_name="Jane Customer",
            customer_email="jane@example.com",
            customer_phone="416-555-0100",
            tax_jurisdiction=tax_jurisdiction,
            tax_exempt=tax_exempt,
            tax_exempt_number="EX-123" if tax_exempt else None,
            fulfillment_type="pickup",
            subtotal_cents=subtotal,
            total_cents=subtotal,
            amount_paid_cents=subtotal,
        )
        items = [
            OrderItem(
                order_id=order_id,
                product_id=product.id,
                product_name=product.name,
                product_sku=product.sku,
                quantity=qty,
                unit_price_cents=price,
                unit_cost_cents=0,
                line_total_cents=qty * price,
                taxable=product.taxable,
                sort_order=index,
            )
            for index, (product, qty, price) in enumerate(lines, start=1)
        ]
        async with session_factory() as session:
            session.add(order)
            await session.flush()
            session.add_all(items)
            await session.commit()
        return order, items

    return _make


@pytest.fixture
def make_reason_code(session_factory):
    async def _make(code: str = "CHANGED_MIND", is_active: bool = True) -> ReturnReasonCode:
        reason = ReturnReasonCode(code=code, description=code.replace("_", " ").title(), is_active=is_active)
        async with session_factory() as session:
            session.add(reason)
            await session.commit()
        return reason

    return _make


# ---------- HTTP ----------
@pytest.fixture
def user_id():
    return uuid.uuid4()


@pytest.fixture
def auth_headers(user_id):
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
