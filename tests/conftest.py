"""Shared test fixtures — single test DB for all test modules."""
from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from src.db.tables import Base
from src.db.engine import get_session

# Use a shared in-memory DB with check_same_thread=False and StaticPool
# This ensures all connections see the same in-memory database.
from sqlalchemy.pool import StaticPool

TEST_DB_URL = "sqlite+aiosqlite:///file:test?mode=memory&cache=shared&uri=true"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)

ADMIN_KEY = "test-admin-key-0123456789"
PAYSTACK_SECRET = "sk_test_paystack"
STRIPE_SECRET = "sk_test_stripe"
STRIPE_WEBHOOK_SECRET = "whsec_test"

# Premium monthly is 5000 minor units in both currencies
TIER_PRICES = {
    "basic": {"monthly": (2000, 500), "yearly": (20000, 5000)},
    "premium": {"monthly": (5000, 5000), "yearly": (50000, 50000)},
    "business": {"monthly": (15000, 3000), "yearly": (150000, 30000)},
}


async def override_get_session():
    async with TestSession() as session:
        yield session


# Import app and override BEFORE any test module imports app
from config.settings import settings  # noqa: E402
from src.api.main import app  # noqa: E402
from src.api.deps import get_notifier, get_providers  # noqa: E402

settings.ADMIN_API_KEY = ADMIN_KEY
app.dependency_overrides[get_session] = override_get_session

import src.db.engine as _engine_mod  # noqa: E402
_engine_mod.async_session = TestSession
_engine_mod.engine = test_engine

from src.db.subscription_tables import TierRow  # noqa: E402
from src.db.user_tables import UserRow  # noqa: E402
from src.models.billing import PaymentProvider, Plan  # noqa: E402
from src.services.notifications import MailNotifier  # noqa: E402
from src.services.providers.manual import ManualAdapter  # noqa: E402
from src.services.providers.paystack import PaystackAdapter  # noqa: E402
from src.services.providers.stripe import StripeAdapter  # noqa: E402


from contextlib import asynccontextmanager

@asynccontextmanager
async def get_test_session():
    """Context manager for seeding data in tests."""
    async with TestSession() as session:
        yield session


class FakeGateway:
    """Scripted provider HTTP behind httpx.MockTransport.

    Routes are keyed by (method, url path); unscripted calls get a 404.
    A route may map to an exception class to simulate transport failures.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], tuple[int, object]] = {}
        self.calls: list[httpx.Request] = []

    def on(self, method: str, path: str, status: int = 200, json: object = None):
        self.routes[(method, path)] = (status, json)

    def fail(self, method: str, path: str, exc: type[httpx.TransportError] = httpx.ConnectTimeout):
        self.routes[(method, path)] = (0, exc)

    def called(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.calls if r.method == method and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        status, body = self.routes.get(
            (request.method, request.url.path), (404, {"status": False, "message": "Not found"}),
        )
        if isinstance(body, type) and issubclass(body, Exception):
            raise body("simulated failure", request=request)
        return httpx.Response(status, json=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after. Seeds the tier catalog and user U1."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSession() as session:
        for name, cycles in TIER_PRICES.items():
            session.add(TierRow(
                name=Plan(name),
                description=f"{name.title()} plan",
                features=[f"{name} feature"],
                trial_period_days=0,
                auto_renew=True,
                monthly_price_local=cycles["monthly"][0],
                monthly_price_foreign=cycles["monthly"][1],
                yearly_price_local=cycles["yearly"][0],
                yearly_price_foreign=cycles["yearly"][1],
            ))
        session.add(UserRow(id="U1", email="u1@example.com", username="u1"))
        session.add(UserRow(id="U2", email="u2@example.com", username="u2"))
        await session.commit()

    yield

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def providers(gateway):
    registry = {
        PaymentProvider.PAYSTACK: PaystackAdapter(
            PAYSTACK_SECRET, "http://test/payment/callback", transport=gateway.transport,
        ),
        PaymentProvider.STRIPE: StripeAdapter(
            STRIPE_SECRET, STRIPE_WEBHOOK_SECRET, "http://test/payment/success", "http://test/pricing",
            transport=gateway.transport,
        ),
        PaymentProvider.MANUAL: ManualAdapter(),
    }
    app.dependency_overrides[get_providers] = lambda: registry
    yield registry
    app.dependency_overrides.pop(get_providers, None)


@pytest.fixture
def notifier():
    mock = AsyncMock(spec=MailNotifier)
    app.dependency_overrides[get_notifier] = lambda: mock
    yield mock
    app.dependency_overrides.pop(get_notifier, None)


@pytest_asyncio.fixture
async def session():
    async with TestSession() as s:
        yield s


@pytest_asyncio.fixture
async def client(providers, notifier):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY}
