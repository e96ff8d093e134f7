"""Test configuration and fixtures.

Each test gets its own database: a throwaway SQLite file by default, or the
Postgres database named by ``TEST_DATABASE_URL``. Tables are created from the
models. Redis is replaced by a mock that always grants a token, and the payment
providers by ``FakeProvider``, which settles payments only when a test says so.
"""

import uuid
from collections.abc import AsyncGenerator
from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.database import Base, get_db
from app.main import app
from app.models.escrow import EscrowPayment
from app.models.milestone import EscrowMilestone, MilestoneEvidence  # noqa: F401
from app.models.payment import PaymentAttempt, ServiceFeePayment
from app.models.service_request import Artisan, Quote, ServiceRequest, ServiceRequestStatus
from app.redis import get_redis
from app.services import payment_flow
from app.services.confirmation import verify_now
from app.services.gateway import PaymentGateway, get_gateway
from app.services.milestone_planner import MilestoneTemplate
from app.services.poller import get_pollers
from app.services.providers.base import (
    InitiateResult, PaymentMethod, PaymentProvider, ProviderError, VerificationResult,
    VerificationStatus,
)


# ---------------------------------------------------------------------------
# Fake payment provider
# ---------------------------------------------------------------------------

class FakeProvider(PaymentProvider):
    """In-memory provider. Every payment stays pending until ``settle`` is called."""

    def __init__(self, name: str = "paystack", *, down: bool = False) -> None:
        super().__init__("sk_test", "https://provider.invalid")
        self.name = name
        self.down = down
        self.initiated: list[str] = []
        self.verify_calls = 0
        self._outcomes: dict[str, VerificationResult] = {}

    def settle(
        self,
        reference: str,
        amount: Decimal,
        status: VerificationStatus = VerificationStatus.SUCCESS,
        channel: str = "card",
        currency: str = "NGN",
    ) -> None:
        self._outcomes[reference] = VerificationResult(
            reference=reference,
            status=status,
            paid_amount=Decimal(amount),
            channel=channel,
            currency=currency,
        )

    async def initiate(
        self,
        amount: Decimal,
        method: PaymentMethod,
        payer: str,
        reference: str,
        metadata: dict | None = None,
    ) -> InitiateResult:
        if self.down:
            raise ProviderError(self.name, "service unavailable")
        self.initiated.append(reference)
        return InitiateResult(
            reference=reference,
            provider=self.name,
            redirect_url=f"https://checkout.{self.name}.test/{reference}",
        )

    async def verify(self, reference: str) -> VerificationResult:
        self.verify_calls += 1
        return self._outcomes.get(
            reference, VerificationResult(reference=reference, status=VerificationStatus.PENDING)
        )

    def estimate_fee(self, amount: Decimal, method: PaymentMethod) -> Decimal:
        return Decimal("0.00")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    url = settings.test_database_url or f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}"
    engine = create_async_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(
    engine: AsyncEngine, monkeypatch: pytest.MonkeyPatch
) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database.

    Also installed as ``app.database.async_session_factory`` so background work
    (poll results, startup recovery) writes to the same database.
    """
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr("app.database.async_session_factory", factory)
    return factory


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Gateway and HTTP client
# ---------------------------------------------------------------------------

@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider("paystack")


@pytest.fixture
def fallback_provider() -> FakeProvider:
    return FakeProvider("flutterwave")


@pytest.fixture
def gateway(provider: FakeProvider, fallback_provider: FakeProvider) -> PaymentGateway:
    return PaymentGateway(provider, fallback_provider, timeout=1.0)


@pytest.fixture
def fake_redis() -> AsyncMock:
    """Stands in for Redis. ``eval`` answers the token bucket script: allowed, 99 left."""
    redis = AsyncMock()
    redis.eval.return_value = [1, 99, 0]
    return redis


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    gateway: PaymentGateway,
    fake_redis: AsyncMock,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB, Redis and gateway dependencies.

    Background polling is off; tests settle payments through the verify endpoint.
    """

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_redis() -> AsyncGenerator[AsyncMock, None]:
        yield fake_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_pollers] = lambda: None

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def seed_request(
    db: AsyncSession,
    amount: str = "15000.00",
    *,
    job_type: str | None = "plumbing",
) -> tuple[ServiceRequest, Quote, Artisan]:
    """An open service request with one quote from a fresh artisan."""
    artisan = Artisan(
        artisan_id=uuid.uuid4(),
        display_name="Ada Plumbing",
        phone="+2348030000000",
        email="ada@plumbing.test",
        address="12 Marina Road, Lagos",
        balance=Decimal("0.00"),
    )
    request = ServiceRequest(
        request_id=uuid.uuid4(),
        customer_id=uuid.uuid4(),
        title="Fix leaking kitchen sink",
        job_type=job_type,
        status=ServiceRequestStatus.OPEN,
    )
    db.add_all([artisan, request])
    await db.flush()
    quote = Quote(
        quote_id=uuid.uuid4(),
        request_id=request.request_id,
        artisan_id=artisan.artisan_id,
        amount=Decimal(amount),
    )
    db.add(quote)
    await db.commit()
    return request, quote, artisan


async def settle(
    db: AsyncSession,
    gateway: PaymentGateway,
    attempt: PaymentAttempt,
    status: VerificationStatus = VerificationStatus.SUCCESS,
    amount: Decimal | None = None,
) -> PaymentAttempt:
    """Have the attempt's provider report an outcome and confirm it."""
    provider = gateway.providers[attempt.provider]
    provider.settle(attempt.reference, amount if amount is not None else attempt.amount, status)
    return await verify_now(db, gateway, attempt.reference)


async def accept(
    db: AsyncSession,
    request: ServiceRequest,
    quote: Quote,
    milestones: list[MilestoneTemplate] | None = None,
) -> tuple[ServiceFeePayment, EscrowPayment]:
    return await payment_flow.accept_quote(
        db, request.request_id, quote.quote_id, request.customer_id, milestones
    )


async def fund_request(
    db: AsyncSession,
    gateway: PaymentGateway,
    amount: str = "15000.00",
    milestones: list[MilestoneTemplate] | None = None,
) -> tuple[ServiceRequest, EscrowPayment, Artisan]:
    """Seed a request and take it through both payments: fee paid, job amount escrowed."""
    request, quote, artisan = await seed_request(db, amount)
    await accept(db, request, quote, milestones)

    fee_attempt = await payment_flow.pay_service_fee(
        db, gateway, None, request.request_id, PaymentMethod.CARD, "customer@example.com"
    )
    await settle(db, gateway, fee_attempt)
    escrow_attempt = await payment_flow.pay_escrow(
        db, gateway, None, request.request_id, PaymentMethod.CARD, "customer@example.com"
    )
    await settle(db, gateway, escrow_attempt)

    escrow = await db.get(EscrowPayment, escrow_attempt.payment_id, populate_existing=True)
    return request, escrow, artisan
