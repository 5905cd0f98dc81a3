"""
Pytest configuration and shared test fixtures.

Store-level tests run against a fresh SQLite file database per test so that
separate sessions contend for real database locks the way concurrent
requests do. Collaborators that leave the process (Redis, S3, the routing
service) are replaced with in-memory implementations or mocks.
"""

import os

os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("APP_DATABASE_URL", "sqlite+aiosqlite:///./test-delivery.db")
os.environ.setdefault("APP_STORE_RETRY_DELAY_SECONDS", "0.01")
os.environ.setdefault("APP_EVENT_BUS_BACKEND", "memory")

import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from delivery.core.config import get_settings
from delivery.database.connection import create_engine, create_session_factory, create_tables
from delivery.services.notifications.service import FeedNotificationSink, NotificationEmitter
from delivery.services.orders.service import DeliveryService
from delivery.services.storage.blob_store import LocalBlobStore
from delivery.services.tracking.events import InMemoryEventBus

get_settings.cache_clear()


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    SQLite file database with every table created.

    Yields:
        AsyncEngine: Engine bound to a database private to the test
    """
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Single session for tests that act as one client."""
    async with session_factory() as session:
        yield session


# ============================================================================
# Collaborator Fixtures
# ============================================================================


@pytest.fixture
def event_bus() -> InMemoryEventBus:
    """In-process change feed."""
    return InMemoryEventBus()


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    """Evidence photo store under the test's temporary directory."""
    return LocalBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def notifier(event_bus: InMemoryEventBus) -> NotificationEmitter:
    """Notification emitter publishing to the in-process feed."""
    return NotificationEmitter(FeedNotificationSink(event_bus))


@pytest_asyncio.fixture
async def make_service(session_factory, event_bus, notifier, blob_store):
    """
    Factory for delivery services, each with its own session.

    Every call opens a new session, so services created by one test behave
    like separate clients.
    """
    sessions: list[AsyncSession] = []

    def factory(**overrides: Any) -> DeliveryService:
        session = session_factory()
        sessions.append(session)
        options = {
            "event_bus": event_bus,
            "notifier": notifier,
            "blob_store": blob_store,
        }
        options.update(overrides)
        return DeliveryService(session, **options)

    yield factory

    for session in sessions:
        await session.close()


# ============================================================================
# Test Data
# ============================================================================


@pytest.fixture
def customer_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def courier_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def other_courier_id() -> uuid.UUID:
    return uuid.uuid4()


def order_payload(**overrides: Any) -> dict[str, Any]:
    """Order creation arguments as the cart service hands them over."""
    payload: dict[str, Any] = {
        "items": [
            {
                "product_id": str(uuid.uuid4()),
                "name": "Margherita pizza",
                "quantity": 2,
                "unit_price": "9.50",
            }
        ],
        "total_amount": Decimal("19.00"),
        "address": {
            "latitude": 52.52,
            "longitude": 13.405,
            "text": "Alexanderplatz 1, Berlin",
            "phone": "+49301234567",
            "instructions": "Ring twice",
        },
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def new_order(make_service, customer_id):
    """Create a ready-for-pickup order with a known delivery code."""

    async def create(code: str = "12345", **overrides: Any):
        service = make_service()
        return await service.create_order(
            customer_id=overrides.pop("customer_id", customer_id),
            delivery_code=code,
            **order_payload(**overrides),
        )

    return create

