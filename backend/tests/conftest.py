"""
Pytest configuration and shared test fixtures.

Provides a per-test SQLite database, order factories, service instances
with their external clients mocked, bearer tokens for each role and an
async HTTP client bound to the application through ASGITransport.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("APP_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("APP_LOG_LEVEL", "WARNING")

import uuid
from types import SimpleNamespace
from typing import AsyncGenerator, Awaitable, Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from freshdrop.api.deps import DatabaseSession, get_order_service
from freshdrop.core.security import UserRole, create_access_token
from freshdrop.database.connection import get_db
from freshdrop.database.models import (
    Base,
    CustomerProfile,
    Order,
    PromoCode,
    PromoDiscountType,
)
from freshdrop.services.events.channel import OrderEventChannel, get_event_channel
from freshdrop.services.orders.enums import PickupType, ServiceType
from freshdrop.services.orders.repository import OrderRepository
from freshdrop.services.orders.service import OrderService
from freshdrop.services.orders.state_machine import FulfillmentState
from freshdrop.services.payments.stripe_client import StripeClient, get_stripe_client
from freshdrop.services.storage.evidence import EvidenceStorage

OrderFactory = Callable[..., Awaitable[Order]]


@pytest.fixture
async def engine(tmp_path):
    """
    File-backed SQLite engine with the full schema.

    A file rather than ``:memory:`` lets several sessions see each other's
    commits, which the claim race tests rely on.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'freshdrop.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def event_channel() -> OrderEventChannel:
    return OrderEventChannel()


@pytest.fixture
def stripe_client() -> MagicMock:
    """Stripe client returning a fixed payment intent."""
    client = MagicMock(spec=StripeClient)
    client.create_payment_intent.return_value = SimpleNamespace(
        id="pi_test_123", client_secret="pi_test_123_secret_abc"
    )
    client.create_refund.return_value = SimpleNamespace(id="re_test_123", status="succeeded")
    return client


@pytest.fixture
def evidence_storage() -> MagicMock:
    """Evidence storage returning a deterministic URL per step."""
    storage = MagicMock(spec=EvidenceStorage)

    async def store(order_id, step_number, photo):
        return f"https://evidence.test/orders/{order_id}/step-{step_number}/stored.jpg"

    async def exists(order_id, step_number, reference):
        prefix = f"https://evidence.test/orders/{order_id}/step-{step_number}/"
        return reference.strip().startswith(prefix)

    storage.store_step_photo = AsyncMock(side_effect=store)
    storage.reference_exists = AsyncMock(side_effect=exists)
    return storage


@pytest.fixture
def drain_requests() -> AsyncMock:
    """Stands in for the Celery nudge; counts awaits."""
    return AsyncMock()


@pytest.fixture
def order_service(
    db_session, stripe_client, evidence_storage, event_channel, drain_requests
) -> OrderService:
    return OrderService(
        db_session,
        stripe_client=stripe_client,
        evidence_storage=evidence_storage,
        event_channel=event_channel,
        request_drain=drain_requests,
    )


@pytest.fixture
def create_order(session_factory) -> OrderFactory:
    """
    Insert an order directly, bypassing placement.

    Example:
        order = await create_order(state=FulfillmentState.at_step(4), washer_id=op)
    """

    async def _create(state: Optional[FulfillmentState] = None, **overrides) -> Order:
        fields = {
            "customer_id": uuid.uuid4(),
            "pickup_type": PickupType.PICKUP_DELIVERY,
            "service_type": ServiceType.WASH_FOLD,
            "is_express": False,
            "bag_count": 2,
            "zip_code": "94110",
            "pickup_address": "100 Valencia St, San Francisco",
            "delivery_address": None,
            "total_amount_cents": 7000,
            "discount_amount_cents": 0,
            "operator_payout_cents": 3500,
            "business_cut_cents": 3500,
        }
        fields.update(overrides)
        async with session_factory() as session:
            order = await OrderRepository(session).create_order(
                state=state or FulfillmentState.open(), **fields
            )
            await session.commit()
        return order

    return _create


@pytest.fixture
def create_profile(session_factory):
    async def _create(user_id: uuid.UUID, **overrides) -> CustomerProfile:
        fields = {
            "user_id": user_id,
            "email": "jordan@example.com",
            "phone": "+15551234567",
            "first_name": "Jordan",
            "last_name": "Lee",
            "email_notifications": True,
            "sms_notifications": True,
        }
        fields.update(overrides)
        async with session_factory() as session:
            profile = CustomerProfile(**fields)
            session.add(profile)
            await session.commit()
        return profile

    return _create


@pytest.fixture
def create_promo(session_factory):
    """
    Insert a promo code.

    Example:
        await create_promo("SPRING20", PromoDiscountType.PERCENTAGE, 20)
    """

    async def _create(
        code: str, discount_type: PromoDiscountType, discount_value: int, **overrides
    ) -> PromoCode:
        fields = {
            "code": code,
            "discount_type": discount_type,
            "discount_value": discount_value,
            "is_active": True,
            "one_time_use_per_user": False,
        }
        fields.update(overrides)
        async with session_factory() as session:
            promo = PromoCode(**fields)
            session.add(promo)
            await session.commit()
        return promo

    return _create


@pytest.fixture
def auth_headers():
    """
    Bearer header factory.

    Example:
        headers = auth_headers(UserRole.CUSTOMER, customer_id)
    """

    def _headers(
        role: UserRole, user_id: Optional[uuid.UUID] = None, email: Optional[str] = None
    ) -> dict[str, str]:
        token = create_access_token(user_id or uuid.uuid4(), role, email=email)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def app(session_factory, stripe_client, evidence_storage, event_channel, drain_requests):
    """Application with database and external clients overridden."""
    from freshdrop.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    def override_order_service(db: DatabaseSession) -> OrderService:
        return OrderService(
            db,
            stripe_client=stripe_client,
            evidence_storage=evidence_storage,
            event_channel=event_channel,
            request_drain=drain_requests,
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_order_service] = override_order_service
    app.dependency_overrides[get_event_channel] = lambda: event_channel
    app.dependency_overrides[get_stripe_client] = lambda: stripe_client
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """
    Asynchronous test client for the FastAPI application.

    Example:
        async def test_health_endpoint_async(async_client):
            response = await async_client.get("/health")
            assert response.status_code == 200
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
