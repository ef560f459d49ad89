"""
Pytest configuration and shared fixtures for Farm Shop tests.

Provides an in-memory SQLite session, a file-backed session factory for the
background workers, fakes for Stripe / Google / SMTP, and an httpx client
bound to the FastAPI app.
"""
import hashlib
import hmac
import json
import time
from typing import AsyncGenerator, Optional
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config import settings
from database import Base, enable_sqlite_foreign_keys, get_db
from deps import get_identity_provider, get_notification_dispatcher, get_payment_provider
from exceptions import EmailDeliveryError, IdentityProviderError, PaymentProviderError
from services.identity_provider import IdentityProfile
from services.payment_provider import PaymentIntentHandle, StripePaymentProvider

# ── Test Configuration ───────────────────────────────────────────────
# Set test-only values for settings that would normally come from .env
settings.jwt_secret = "test-jwt-secret-for-pytest-only"
settings.rate_limit_enabled = False
settings.admin_emails = "admin@farm.test"

TEST_WEBHOOK_SECRET = "whsec_test_secret"


# ── Database Fixtures ────────────────────────────────────────────────


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create an in-memory SQLite database session for each test.

    Uses StaticPool to allow in-memory SQLite with async SQLAlchemy.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine.sync_engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session_maker = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """
    File-backed session factory for code that opens its own sessions
    (notification dispatcher, reservation sweeper).
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}")
    enable_sqlite_foreign_keys(engine.sync_engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


# ── Provider Fakes ───────────────────────────────────────────────────


def sign_stripe_payload(payload: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def stripe_event(event_id: str, event_type: str, intent: dict) -> bytes:
    """Serialize a minimal Stripe event envelope around a PaymentIntent object."""
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": {"object": "payment_intent", **intent}},
        }
    ).encode()


class FakePaymentProvider:
    """
    In-memory PaymentProvider.

    Webhook verification is delegated to the real Stripe-backed provider so
    signatures are checked by the Stripe SDK.
    """

    def __init__(self):
        self.customers: list[dict] = []
        self.intents: dict[str, PaymentIntentHandle] = {}
        self.by_idempotency_key: dict[str, str] = {}
        self.created_calls: list[dict] = []
        self.cancelled: list[str] = []
        self.uncancellable: set[str] = set()
        self.fail_next_create = False
        self._verifier = StripePaymentProvider(api_key="", webhook_secret=TEST_WEBHOOK_SECRET)

    async def create_customer(self, *, email, name, metadata) -> str:
        customer_id = f"cus_test_{len(self.customers) + 1}"
        self.customers.append({"id": customer_id, "email": email, "metadata": metadata})
        return customer_id

    async def create_payment_intent(self, *, amount, currency, customer_id, metadata, idempotency_key):
        self.created_calls.append(
            {"amount": amount, "currency": currency, "customer": customer_id,
             "metadata": metadata, "idempotency_key": idempotency_key}
        )
        if self.fail_next_create:
            self.fail_next_create = False
            raise PaymentProviderError("card network unavailable")
        if idempotency_key in self.by_idempotency_key:
            return self.intents[self.by_idempotency_key[idempotency_key]]

        intent_id = f"pi_test_{len(self.intents) + 1}"
        handle = PaymentIntentHandle(
            id=intent_id,
            client_secret=f"{intent_id}_secret_abc",
            status="requires_payment_method",
            amount=amount,
            currency=currency,
        )
        self.intents[intent_id] = handle
        self.by_idempotency_key[idempotency_key] = intent_id
        return handle

    async def retrieve_payment_intent(self, payment_intent_id):
        return self.intents[payment_intent_id]

    async def cancel_payment_intent(self, payment_intent_id) -> bool:
        if payment_intent_id in self.uncancellable:
            return False
        self.cancelled.append(payment_intent_id)
        return True

    def construct_event(self, payload, signature_header):
        return self._verifier.construct_event(payload, signature_header)


class FakeIdentityProvider:
    """Maps authorization codes to canned Google profiles."""

    def __init__(self):
        self.profiles: dict[str, IdentityProfile] = {}

    def authorization_url(self, state: str) -> str:
        return f"https://accounts.google.test/o/oauth2/v2/auth?state={state}"

    async def exchange_code(self, code: str) -> IdentityProfile:
        if code not in self.profiles:
            raise IdentityProviderError("invalid_grant")
        return self.profiles[code]


class FakeEmailSender:
    """Records sent emails; fails the first `fail_times` sends."""

    def __init__(self, fail_times: int = 0):
        self.sent: list[dict] = []
        self.fail_times = fail_times
        self.calls = 0

    async def send(self, *, recipient: str, subject: str, body: str) -> None:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise EmailDeliveryError("SMTP relay refused connection")
        self.sent.append({"recipient": recipient, "subject": subject, "body": body})


@pytest.fixture
def payments() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


# ── Test Data Fixtures ────────────────────────────────────────────────


@pytest_asyncio.fixture
async def sample_user(db_session: AsyncSession):
    """Create a sample customer in test DB."""
    from db_models import User

    user = User(google_sub="google-sub-alice", email="alice@farm.test", name="Alice", role="customer")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def other_user(db_session: AsyncSession):
    from db_models import User

    user = User(google_sub="google-sub-bob", email="bob@farm.test", name="Bob", role="customer")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def sample_admin(db_session: AsyncSession):
    from db_models import User

    user = User(google_sub="google-sub-admin", email="admin@farm.test", name="Admin", role="admin")
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def sample_product(db_session: AsyncSession):
    """A dozen eggs at $6.00 with 5 on hand."""
    from db_models import Product

    product = Product(
        slug="eggs-dozen",
        name="Farm Eggs",
        unit="dozen",
        price_cents=600,
        inventory_quantity=5,
        reserved_quantity=0,
        max_per_order=10,
        active=True,
    )
    db_session.add(product)
    await db_session.commit()
    await db_session.refresh(product)
    return product


@pytest.fixture
def auth_headers(db_session: AsyncSession):
    """Factory: issue a real session token for a user."""
    from middleware.auth import create_session

    async def _make(user) -> dict:
        token, _session = await create_session(db_session, user)
        await db_session.commit()
        return {"Authorization": f"Bearer {token}"}

    return _make


# ── HTTP Client ──────────────────────────────────────────────────────


@pytest.fixture
def dispatcher_spy():
    return MagicMock()


@pytest_asyncio.fixture(scope="function")
async def client(db_session, payments, identity, dispatcher_spy) -> AsyncGenerator[AsyncClient, None]:
    """
    httpx client against the app with the test DB and provider fakes.

    The app lifespan is not run, so no background workers start.
    """
    from main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: payments
    app.dependency_overrides[get_identity_provider] = lambda: identity
    app.dependency_overrides[get_notification_dispatcher] = lambda: dispatcher_spy

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
