"""
Pytest configuration and fixtures.

The service reads its configuration from the environment at import time, so
test values are set before anything from compliance_payments is imported.
"""
import os

os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_fake_key_for_testing"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["AUTH_JWT_SECRET"] = "test-jwt-secret-that-is-at-least-32-bytes"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["APP_ENV"] = "test"
os.environ["LOG_LEVEL"] = "DEBUG"

import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Type
from urllib.parse import unquote

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from compliance_payments.config import Settings, get_settings
from compliance_payments.core.payment_processor import PaymentProcessor
from compliance_payments.core.rate_limiter import RateLimiter
from compliance_payments.core.reconciliation import ReconciliationEngine
from compliance_payments.database.models import Base, PaymentTransaction
from compliance_payments.integrations.paystack_client import PaystackClient
from compliance_payments.integrations.webhook_handler import WebhookHandler
from compliance_payments.monitoring.health import HealthCheck


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without database or HTTP")
    config.addinivalue_line("markers", "race: concurrent writers on one transaction")
    config.addinivalue_line("markers", "integration: tests through the HTTP API")


class FakePaystack:
    """
    In-memory stand-in for the Paystack API, served through httpx.MockTransport.

    Initialised transactions start as "ongoing"; tests move them on with
    set_status().
    """

    def __init__(self) -> None:
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.requests: List[httpx.Request] = []
        self.initialize_response: Optional[httpx.Response] = None
        self.initialize_exception: Optional[Type[httpx.HTTPError]] = None
        self.verify_response: Optional[httpx.Response] = None
        self.reference_override: Optional[str] = None
        self.list_response: Optional[httpx.Response] = None

    def set_status(self, reference: str, status: str, **extra: Any) -> None:
        tx = self.transactions.setdefault(
            reference, {"reference": reference, "amount": 500000, "currency": "NGN"}
        )
        tx.update(status=status, **extra)

    def requests_to(self, path_prefix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith(path_prefix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "POST" and path == "/transaction/initialize":
            if self.initialize_exception is not None:
                raise self.initialize_exception("simulated failure", request=request)
            if self.initialize_response is not None:
                return self.initialize_response

            body = json.loads(request.content)
            reference = self.reference_override or body["reference"]
            self.transactions[reference] = {
                "reference": reference,
                "status": "ongoing",
                "amount": body["amount"],
                "currency": body["currency"],
            }
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "message": "Authorization URL created",
                    "data": {
                        "authorization_url": f"https://checkout.paystack.com/{reference}",
                        "access_code": f"ac_{reference[-8:]}",
                        "reference": reference,
                    },
                },
            )

        if request.method == "GET" and path.startswith("/transaction/verify/"):
            if self.verify_response is not None:
                return self.verify_response
            reference = unquote(path.rsplit("/", 1)[1])
            tx = self.transactions.get(reference)
            if tx is None:
                return httpx.Response(
                    404, json={"status": False, "message": "Transaction reference not found"}
                )
            return httpx.Response(
                200, json={"status": True, "message": "Verification successful", "data": tx}
            )

        if request.method == "GET" and path == "/transaction":
            if self.list_response is not None:
                return self.list_response
            return httpx.Response(200, json={"status": True, "data": []})

        return httpx.Response(404, json={"status": False, "message": "Not found"})


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Settings built from the test environment."""
    return get_settings()


@pytest.fixture
def fake_paystack() -> FakePaystack:
    return FakePaystack()


@pytest_asyncio.fixture
async def paystack_client(
    test_settings: Settings, fake_paystack: FakePaystack
) -> AsyncGenerator[PaystackClient, Any]:
    """Paystack client wired to the fake API."""
    client = PaystackClient(test_settings, transport=httpx.MockTransport(fake_paystack.handler))
    yield client
    await client.close()


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """SQLite database on a temp file, so concurrent sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def processor(paystack_client: PaystackClient, test_settings: Settings) -> PaymentProcessor:
    return PaymentProcessor(paystack_client=paystack_client, settings=test_settings)


@pytest.fixture
def webhook_handler(test_settings: Settings) -> WebhookHandler:
    return WebhookHandler(test_settings)


@pytest.fixture
def reconciliation_engine(
    paystack_client: PaystackClient,
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> ReconciliationEngine:
    return ReconciliationEngine(
        paystack_client=paystack_client,
        session_factory=session_factory,
        settings=test_settings,
    )


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def make_transaction(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Insert a PaymentTransaction directly, bypassing Paystack."""

    async def _make(
        user_id: uuid.UUID,
        status: str = "pending",
        reference: Optional[str] = None,
        amount: str = "5000.00",
        currency: str = "NGN",
        metadata: Optional[Dict[str, Any]] = None,
        age: Optional[timedelta] = None,
    ) -> PaymentTransaction:
        timestamp = datetime.now(timezone.utc) - (age or timedelta(0))
        transaction = PaymentTransaction(
            user_id=user_id,
            amount=Decimal(amount),
            currency=currency,
            payment_reference=reference or f"ref_{uuid.uuid4().hex[:12]}",
            provider="paystack",
            status=status,
            metadata_=metadata or {},
            created_at=timestamp,
            updated_at=timestamp,
        )
        async with session_factory() as session:
            session.add(transaction)
            await session.commit()
        return transaction

    return _make


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter()


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    processor: PaymentProcessor,
    webhook_handler: WebhookHandler,
    reconciliation_engine: ReconciliationEngine,
    paystack_client: PaystackClient,
    rate_limiter: RateLimiter,
    test_settings: Settings,
) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client against the app, with services bound to the test database and fake Paystack."""
    from compliance_payments.api import dependencies
    from compliance_payments.api.main import app
    from compliance_payments.database.connection import get_db

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[dependencies.get_payment_processor] = lambda: processor
    app.dependency_overrides[dependencies.get_webhook_handler] = lambda: webhook_handler
    app.dependency_overrides[dependencies.get_reconciliation_engine] = lambda: reconciliation_engine
    app.dependency_overrides[dependencies.get_rate_limiter] = lambda: rate_limiter
    app.dependency_overrides[dependencies.get_health_check] = lambda: HealthCheck(
        settings=test_settings,
        paystack_client=paystack_client,
        session_factory=session_factory,
    )

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
