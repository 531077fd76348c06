"""
Test Configuration — Fixtures for async DB, test client, clock, and fake platform clients.

Uses per-test transactions with SAVEPOINT/rollback so each test gets a
clean database state while sharing the same session-level schema. App code
commits freely: each commit only releases a SAVEPOINT inside the outer
transaction that is rolled back after the test.
"""

import os

os.environ.setdefault("SHOPIFY_WEBHOOK_SECRET", "test-webhook-secret")

from datetime import datetime

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from api.deps import (
    get_clock,
    get_current_user,
    get_db,
    get_klaviyo_client,
    get_public_intake_limiter,
    get_shopify_client,
)
from api.main import app
from core.clock import FrozenClock
from core.rate_limit import RateLimiter
from db.session import Base
from integrations.klaviyo import KlaviyoAPIError
from integrations.shopify import ShopifyAPIError

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

NOW = datetime(2026, 3, 2, 9, 0, 0)


class FakeShopifyClient:
    """In-memory stand-in for ShopifyClient. Records every write."""

    def __init__(self, configured: bool = True):
        self.configured = configured
        self.orders_by_id: dict[str, dict] = {}
        self.orders_by_name: dict[tuple[str, str], dict] = {}
        self.created_products: list[dict] = []
        self.updated_products: list[tuple[str, dict]] = []
        self.fail_next_write = False
        self.failing_titles: set[str] = set()

    @property
    def is_configured(self) -> bool:
        return self.configured

    def add_order(self, order_id: str, order: dict) -> None:
        self.orders_by_id[order_id] = order
        email = (order.get("email") or "").lower()
        self.orders_by_name[(order.get("name", "").lstrip("#"), email)] = order

    async def fetch_order(self, order_id):
        return self.orders_by_id.get(str(order_id))

    async def find_order(self, order_number: str, email: str):
        return self.orders_by_name.get((order_number.strip().lstrip("#"), email.strip().lower()))

    def _maybe_fail(self):
        if self.fail_next_write:
            self.fail_next_write = False
            raise ShopifyAPIError("Shopify is having a bad day")

    async def create_product(self, product: dict) -> dict:
        self._maybe_fail()
        if product["title"] in self.failing_titles:
            raise ShopifyAPIError(f"productCreate rejected {product['title']}")
        self.created_products.append(product)
        return {"id": f"gid://shopify/Product/{len(self.created_products)}", "title": product["title"], "status": "DRAFT"}

    async def update_product(self, product_id, fields: dict) -> dict:
        self._maybe_fail()
        self.updated_products.append((str(product_id), fields))
        return {"id": f"gid://shopify/Product/{product_id}", **fields}


class FakeKlaviyoClient:
    def __init__(self, configured: bool = True, sender_configured: bool = True):
        self.configured = configured
        self.sender_configured = sender_configured
        self.templates: list[dict] = []
        self.campaigns: list[dict] = []
        self.assignments: list[tuple[str, str]] = []
        self.fail_campaign = False

    @property
    def is_configured(self) -> bool:
        return self.configured

    def missing_sender_config(self) -> list[str]:
        return [] if self.sender_configured else ["KLAVIYO_DEFAULT_FROM_EMAIL"]

    async def create_template(self, name: str, html: str, plain_text: str | None = None) -> str:
        self.templates.append({"name": name, "html": html, "text": plain_text})
        return f"TPL{len(self.templates)}"

    async def create_campaign(self, name: str, subject: str, preview_text: str | None = None):
        if self.fail_campaign:
            raise KlaviyoAPIError("Campaign create failed", status_code=500)
        self.campaigns.append({"name": name, "subject": subject})
        return f"CMP{len(self.campaigns)}", f"MSG{len(self.campaigns)}"

    async def assign_template(self, message_id: str, template_id: str) -> None:
        self.assignments.append((message_id, template_id))



class FakeRedis:
    """The slice of redis.asyncio.Redis the rate limiter uses. TTLs only move via `expire_all`."""

    def __init__(self):
        self.counters: dict[str, int] = {}
        self.ttls: dict[str, int] = {}
        self.down = False

    def _check(self):
        if self.down:
            raise RedisConnectionError("Connection refused")

    async def incr(self, key: str) -> int:
        self._check()
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        self.ttls[key] = seconds
        return True

    async def ttl(self, key: str) -> int:
        self._check()
        if key not in self.counters:
            return -2
        return self.ttls.get(key, -1)

    def expire_all(self) -> None:
        self.counters.clear()
        self.ttls.clear()

@pytest.fixture(scope="session")
async def test_engine():
    """Create a test database engine and build all tables once."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    # pysqlite/aiosqlite defer BEGIN themselves, which breaks SAVEPOINT handling.
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    """Create a test session wrapped in a transaction that rolls back after each test."""
    async with test_engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(
            bind=conn,
            expire_on_commit=False,
            join_transaction_mode="create_savepoint",
        )

        yield session

        await session.close()
        await trans.rollback()


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def fake_shopify():
    return FakeShopifyClient()


@pytest.fixture
def fake_klaviyo():
    return FakeKlaviyoClient()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def public_limiter(fake_redis):
    return RateLimiter(fake_redis, scope="rma_public", max_requests=3, window_seconds=60)


@pytest.fixture
def mock_user():
    """Mock authenticated user."""
    return {
        "sub": "test-user-id",
        "email": "tech@serviceops.test",
    }


@pytest.fixture
async def client(test_db, mock_user, clock, fake_shopify, fake_klaviyo, public_limiter):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = lambda: mock_user
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_shopify_client] = lambda: fake_shopify
    app.dependency_overrides[get_klaviyo_client] = lambda: fake_klaviyo
    app.dependency_overrides[get_public_intake_limiter] = lambda: public_limiter

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def make_case(test_db, clock):
    """Factory for cases created through the store, with their initial event."""
    from rma.store import create_case

    async def _make(**fields):
        values = {"source": "manual", "issue_summary": "Unit will not power on"}
        values.update(fields)
        case, _ = await create_case(test_db, values, clock, actor="tech@serviceops.test")
        return case

    return _make
