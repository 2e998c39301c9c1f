"""Test configuration and fixtures.

Each test gets its own SQLite database file (via aiosqlite) with the schema
created from the models, and its own in-memory fakeredis server. The payment
gateway is replaced with ``FakeGateway``; item tracking uses the real
``SqlItemTracker`` against the test database unless a test overrides it.
"""

import uuid
from collections.abc import AsyncGenerator
from decimal import Decimal
from pathlib import Path

import fakeredis
import pytest
import pytest_asyncio
import redis.asyncio as aioredis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from yrdly_escrow.config import settings
from yrdly_escrow.database import Base, get_db
from yrdly_escrow.main import app
from yrdly_escrow.models.dispute import Dispute  # noqa: F401  registers the disputes table
from yrdly_escrow.models.escrow import EscrowTransaction
from yrdly_escrow.models.item import MarketplaceItem
from yrdly_escrow.redis import get_redis
from yrdly_escrow.services import escrow as escrow_service
from yrdly_escrow.services.payment_gateway import (
    PaymentInitiation,
    PaymentVerificationResult,
    get_payment_gateway,
)

ITEM_ID = "item-bicycle"
BUYER_ID = "user-buyer"
SELLER_ID = "user-seller"


# ---------------------------------------------------------------------------
# Settings, database and Redis
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "flutterwave_secret_hash", "test-webhook-secret")
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database per test."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[aioredis.Redis, None]:
    client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer())
    yield client
    await client.aclose()


# ---------------------------------------------------------------------------
# Payment gateway fake
# ---------------------------------------------------------------------------

class FakeGateway:
    """In-memory ``PaymentGateway``. Unknown references verify as declined."""

    def __init__(self) -> None:
        self.results: dict[str, PaymentVerificationResult] = {}
        self.verify_calls: list[str] = []
        self.initialized: list[PaymentInitiation] = []
        self.error: Exception | None = None
        self.payment_link = "https://checkout.flutterwave.test/pay/yrdly-123"

    def approve(
        self,
        reference: str,
        txn: EscrowTransaction,
        amount: Decimal | None = None,
        currency: str | None = None,
    ) -> None:
        self.results[reference] = PaymentVerificationResult(
            success=True,
            transaction_reference=str(txn.transaction_id),
            amount=txn.total_amount if amount is None else amount,
            currency=txn.currency if currency is None else currency,
            status="successful",
            gateway_reference=f"FLW-{reference}",
        )

    def decline(self, reference: str, error: str = "Transaction declined") -> None:
        self.results[reference] = PaymentVerificationResult(
            success=False, status="failed", error=error,
        )

    async def verify_payment(self, reference: str) -> PaymentVerificationResult:
        self.verify_calls.append(reference)
        if self.error is not None:
            raise self.error
        return self.results.get(
            reference,
            PaymentVerificationResult(success=False, error="No transaction was found for this id"),
        )

    async def initialize_payment(self, data: PaymentInitiation) -> str:
        self.initialized.append(data)
        if self.error is not None:
            raise self.error
        return self.payment_link


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    redis_client: aioredis.Redis,
    gateway: FakeGateway,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB, Redis and gateway dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_redis() -> AsyncGenerator[aioredis.Redis, None]:
        yield redis_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_transaction_data(**overrides) -> dict:
    """Factory for a create-transaction payload."""
    data = {
        "item_id": ITEM_ID,
        "buyer_id": BUYER_ID,
        "seller_id": SELLER_ID,
        "amount": "10000.00",
        "payment_method": "card",
        "delivery_details": {"option": "face_to_face", "meeting_point": "Ikeja City Mall"},
    }
    data.update(overrides)
    return data


async def create_transaction(db: AsyncSession, **overrides) -> EscrowTransaction:
    data = make_transaction_data(**overrides)
    return await escrow_service.create_transaction(db, **data)


async def add_item(
    db: AsyncSession, item_id: str = ITEM_ID, seller_id: str = SELLER_ID, **fields
) -> MarketplaceItem:
    item = MarketplaceItem(
        item_id=item_id,
        seller_id=seller_id,
        title=fields.pop("title", "Mountain bicycle"),
        price=fields.pop("price", Decimal("10000.00")),
        **fields,
    )
    db.add(item)
    await db.commit()
    return item


async def reload_item(db: AsyncSession, item_id: str = ITEM_ID) -> MarketplaceItem:
    from sqlalchemy import select

    result = await db.execute(
        select(MarketplaceItem)
        .where(MarketplaceItem.item_id == item_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


def random_reference() -> str:
    return str(uuid.uuid4().int)[:10]
