"""
Shared pytest fixtures for all tests.

Every test gets its own SQLite file, so tests can commit freely. SQLite
transactions take the write lock at BEGIN, so a session that is mid-transaction
blocks every other session: seed through ``db_session`` (which commits) and
read back through a fresh session when other sessions have been writing.
"""

import os
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional

# Ensure test environment before the settings are loaded
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./backoffice_test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ["ENVIRONMENT"] = "test"
os.environ["MIDTRANS_SERVER_KEY"] = "SB-Mid-server-test"
os.environ["NOTIFICATION_WEBHOOK_URL"] = ""
os.environ["LOCK_TIMEOUT_MS"] = "5000"

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.core.permissions import Actor, ActorRole
from backoffice.core.security import create_access_token
from backoffice.database import create_engine, create_session_factory, init_db
from backoffice.models import (
    Category,
    InventoryUnit,
    Order,
    OrderStatus,
    Product,
    ProductVariation,
    ReturnPolicy,
)
from backoffice.schemas.order import OrderCreate, OrderItemCreate, ShippingAddress
from backoffice.schemas.payment import PaymentNotification
from backoffice.services.notification_service import NotificationService, NotificationType
from backoffice.services.order_service import OrderService
from backoffice.services.payment_gateway import RefundResult
from backoffice.services.quality_check_service import QualityCheckService
from backoffice.services.refund_service import RefundService
from backoffice.services.returns_service import ReturnsService


# ============================================================================
# TEST DOUBLES
# ============================================================================


class FakeClock:
    """Controllable clock passed to services as ``clock``."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier(NotificationService):
    """Keeps notifications in memory instead of sending them."""

    def __init__(self):
        super().__init__(webhook_url="")
        self.sent: List[Dict[str, Any]] = []

    async def notify(self, user_id, template, context) -> None:
        self.sent.append({"user_id": user_id, "template": template, "context": dict(context)})

    def templates(self) -> List[NotificationType]:
        return [entry["template"] for entry in self.sent]


class FakeGateway:
    """
    In-memory payment gateway.

    Refunds are idempotent on ``refund_key`` like the real one: a key that was
    already applied is reported as success without refunding twice.
    """

    def __init__(self):
        self.refund_calls: List[Dict[str, Any]] = []
        self.applied: Dict[str, Decimal] = {}
        self.failures_remaining = 0
        self.failure_message = "Gateway timeout"
        self.statuses: Dict[str, Dict[str, Any]] = {}

    def fail_next(self, times: int = 1, message: str = "Gateway timeout") -> None:
        self.failures_remaining = times
        self.failure_message = message

    async def refund(self, payment_reference, amount, refund_key, reason="") -> RefundResult:
        self.refund_calls.append({
            "payment_reference": payment_reference,
            "amount": amount,
            "refund_key": refund_key,
            "reason": reason,
        })
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            return RefundResult(success=False, error=self.failure_message)
        if refund_key in self.applied:
            return RefundResult(success=True, refund_id=f"rf-{refund_key}", already_applied=True)
        self.applied[refund_key] = amount
        return RefundResult(success=True, refund_id=f"rf-{refund_key}")

    async def get_transaction_status(self, reference: str) -> Dict[str, Any]:
        return self.statuses[reference]


# ============================================================================
# SEEDING
# ============================================================================


class CatalogSeeder:
    """Creates catalog rows, stock and policies. Commits after every call."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def category(self, name: str = "Apparel") -> Category:
        category = Category(name=name, slug=f"{name.lower()}-{uuid.uuid4().hex[:6]}")
        self.session.add(category)
        await self.session.commit()
        return category

    async def product(
        self,
        price: str = "10000.00",
        stock: int = 10,
        category: Optional[Category] = None,
        name: str = "T-Shirt",
        is_active: bool = True,
    ) -> Product:
        product = Product(
            sku=f"SKU-{uuid.uuid4().hex[:8].upper()}",
            name=name,
            category_id=category.id if category else None,
            price=Decimal(price),
            is_active=is_active,
        )
        self.session.add(product)
        await self.session.flush()
        self.session.add(InventoryUnit(product_id=product.id, sku=product.sku, available_quantity=stock))
        await self.session.commit()
        return product

    async def variation(self, product: Product, price: Optional[str] = None, stock: int = 10, name: str = "L") -> ProductVariation:
        variation = ProductVariation(
            product_id=product.id,
            sku=f"{product.sku}-{name}-{uuid.uuid4().hex[:4].upper()}",
            name=name,
            price=Decimal(price) if price is not None else None,
        )
        self.session.add(variation)
        await self.session.flush()
        self.session.add(InventoryUnit(
            product_id=product.id,
            variation_id=variation.id,
            sku=variation.sku,
            available_quantity=stock,
        ))
        await self.session.commit()
        return variation

    async def policy(self, **kwargs) -> ReturnPolicy:
        kwargs.setdefault("name", "Policy")
        policy = ReturnPolicy(**kwargs)
        self.session.add(policy)
        await self.session.commit()
        return policy

    async def stock(self, product_id: uuid.UUID, variation_id: Optional[uuid.UUID] = None) -> int:
        stmt = select(InventoryUnit).where(InventoryUnit.product_id == product_id)
        if variation_id is None:
            stmt = stmt.where(InventoryUnit.variation_id.is_(None))
        else:
            stmt = stmt.where(InventoryUnit.variation_id == variation_id)
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        quantity = result.scalar_one().available_quantity
        await self.session.commit()
        return quantity


# ============================================================================
# SERVICE FACADE
# ============================================================================


def address() -> ShippingAddress:
    return ShippingAddress(
        recipient_name="Budi Santoso",
        phone="081234567890",
        address_line1="Jl. Sudirman No. 1",
        city="Jakarta",
        state="DKI Jakarta",
        postal_code="10210",
    )


def order_request(*lines, **kwargs) -> OrderCreate:
    """``lines`` are (product, quantity) or (product, variation, quantity)."""
    items = []
    for line in lines:
        if len(line) == 2:
            product, quantity = line
            items.append(OrderItemCreate(product_id=product.id, quantity=quantity))
        else:
            product, variation, quantity = line
            items.append(OrderItemCreate(product_id=product.id, variation_id=variation.id, quantity=quantity))
    return OrderCreate(items=items, shipping_address=address(), **kwargs)


class Backoffice:
    """All services on one session, sharing a clock, notifier and gateway."""

    def __init__(self, session: AsyncSession, clock: FakeClock, notifier: RecordingNotifier, gateway: FakeGateway):
        self.session = session
        self.clock = clock
        self.orders = OrderService(session, notifier=notifier, clock=clock)
        self.returns = ReturnsService(session, notifier=notifier, clock=clock)
        self.quality = QualityCheckService(session, notifier=notifier, clock=clock)
        self.refunds = RefundService(session, gateway=gateway, notifier=notifier, clock=clock)

    async def place(self, customer: Actor, *lines, **kwargs) -> Order:
        return await self.orders.place_order(customer, order_request(*lines, **kwargs))

    async def pay(self, order: Order, reference: Optional[str] = None) -> Order:
        notification = PaymentNotification(
            payment_type="bank_transfer",
            reference=reference or f"txn-{order.order_number}",
            order_number=order.order_number,
            status="settlement",
        )
        order, _ = await self.orders.apply_payment_notification(notification)
        return order

    async def deliver(self, order: Order, staff: Actor) -> Order:
        order = await self.pay(order)
        for status in (OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            order = await self.orders.transition_status(order.id, status.value, staff)
        return order


# ============================================================================
# FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database per test."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'backoffice.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def seeder(db_session) -> CatalogSeeder:
    return CatalogSeeder(db_session)


@pytest.fixture
def backoffice(db_session, clock, notifier, gateway) -> Backoffice:
    return Backoffice(db_session, clock, notifier, gateway)


@pytest.fixture
def customer() -> Actor:
    return Actor(id=uuid.uuid4(), role=ActorRole.CUSTOMER)


@pytest.fixture
def other_customer() -> Actor:
    return Actor(id=uuid.uuid4(), role=ActorRole.CUSTOMER)


@pytest.fixture
def staff() -> Actor:
    return Actor(id=uuid.uuid4(), role=ActorRole.STAFF)


# ============================================================================
# API FIXTURES
# ============================================================================


@pytest.fixture
def app(session_factory, gateway, notifier):
    from backoffice.main import create_app

    application = create_app()
    application.state.session_factory = session_factory
    application.state.payment_gateway = gateway
    application.state.notifier = notifier
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def reload(session: AsyncSession, model, object_id):
    """Re-read a row and its eager relationships, e.g. after a rolled back call."""
    result = await session.execute(
        select(model).where(model.id == object_id).execution_options(populate_existing=True)
    )
    instance = result.scalar_one()
    await session.commit()
    return instance


def auth_headers(actor: Actor) -> Dict[str, str]:
    token = create_access_token(actor.id, actor.role.value)
    return {"Authorization": f"Bearer {token}"}
