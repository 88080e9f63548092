"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import sys
import time
from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import httpx
import jwt
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from app.main import app
from app.core.config import settings
from app.core.providers import get_pesapal_client, get_stripe_client
from app.db.session import get_db
from app.models import Base
from app.services.pesapal_service import PesapalClient


# SQLite in-memory database for testing (aiosqlite driver for the async engine)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_JWT_SECRET = "test-jwt-secret-with-enough-length-for-hs256"
TEST_WEBHOOK_SECRET = "whsec_test_secret"
PESAPAL_TEST_BASE_URL = "https://pesapal.test/v3"


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Deterministic secrets and URLs for every test"""
    monkeypatch.setattr(settings, "JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "FRONTEND_URL", "https://shop.example.com")
    monkeypatch.setattr(settings, "STRIPE_CURRENCY", "usd")
    monkeypatch.setattr(settings, "DISCOUNT_CODES", "UBUNTU88")
    monkeypatch.setattr(settings, "ENRICH_MAX_PER_REQUEST", 10)
    return settings


@pytest.fixture(scope="function")
async def db_engine():
    """Fresh in-memory database per test"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    """Session factory bound to the test engine (for tests needing several sessions)"""
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test"""
    async with session_factory() as session:
        yield session


@pytest.fixture(scope="function")
def mock_stripe_client():
    """StripeClient stand-in with async checkout session methods"""
    client = MagicMock()
    sessions = client.v1.checkout.sessions
    sessions.create_async = AsyncMock(return_value={
        "id": "cs_test_123",
        "url": "https://checkout.stripe.com/c/pay/cs_test_123",
    })
    sessions.line_items.list_async = AsyncMock(return_value={"data": []})
    return client


class FakePesapal:
    """In-memory Pesapal v3 API served through httpx.MockTransport"""

    def __init__(self):
        self.requests = []
        self.token_requests = 0
        self.tracking_id = "trk_test_123"
        self.status_response = completed_status()
        self.status_http_error = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/api/Auth/RequestToken"):
            self.token_requests += 1
            return httpx.Response(200, json={
                "token": f"token-{self.token_requests}",
                "expiryDate": "2026-10-19T12:05:00.000Z",
                "error": None,
                "status": "200",
                "message": "Request processed successfully",
            })
        if path.endswith("/api/Transactions/SubmitOrderRequest"):
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "order_tracking_id": self.tracking_id,
                "merchant_reference": body["id"],
                "redirect_url": f"https://pay.pesapal.test/iframe?OrderTrackingId={self.tracking_id}",
                "error": None,
                "status": "200",
            })
        if path.endswith("/api/Transactions/GetTransactionStatus"):
            if self.status_http_error:
                return httpx.Response(503, text="Service unavailable")
            return httpx.Response(200, json=self.status_response)
        return httpx.Response(404, json={"error": {"message": "not found"}})

    def last_json(self, path_suffix: str) -> dict:
        for request in reversed(self.requests):
            if request.url.path.endswith(path_suffix):
                return json.loads(request.content)
        raise AssertionError(f"No request to {path_suffix}")


def completed_status(amount=25.5, currency="UGX", description="Completed", status_code=1):
    return {
        "payment_method": "MTN Mobile Money",
        "amount": amount,
        "created_date": "2026-10-19T12:00:00.000",
        "confirmation_code": "CONF123",
        "payment_status_description": description,
        "description": "",
        "message": "Request processed successfully",
        "payment_account": "256700000000",
        "call_back_url": "https://shop.example.com/checkout/success",
        "status_code": status_code,
        "merchant_reference": "ref-abc",
        "currency": currency,
        "error": {"error_type": None, "code": None, "message": None},
        "status": "200",
    }


@pytest.fixture(scope="function")
def fake_pesapal():
    return FakePesapal()


@pytest.fixture(scope="function")
async def pesapal_client(fake_pesapal):
    """PesapalClient wired to the fake Pesapal API"""
    http_client = httpx.AsyncClient(
        base_url=PESAPAL_TEST_BASE_URL,
        transport=httpx.MockTransport(fake_pesapal.handler),
    )
    client = PesapalClient(
        base_url=PESAPAL_TEST_BASE_URL,
        consumer_key="consumer-key",
        consumer_secret="consumer-secret",
        ipn_id="ipn-test-id",
        currency="UGX",
        http_client=http_client,
    )
    try:
        yield client
    finally:
        await client.aclose()


@pytest.fixture(scope="function")
async def client(db_session, mock_stripe_client, pesapal_client) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client against the app with test database and mocked providers"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_client] = lambda: mock_stripe_client
    app.dependency_overrides[get_pesapal_client] = lambda: pesapal_client

    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
            yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


def make_token(user_id="user-42", email="buyer@example.com", secret=TEST_JWT_SECRET, **claims) -> str:
    payload = {"sub": user_id, "email": email, "exp": int(time.time()) + 3600, **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(user_id="user-42", email="buyer@example.com") -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, email)}"}


def sign_stripe_payload(payload: str, secret: str = TEST_WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header for a payload"""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_session_event(event_type="checkout.session.completed", session_id="cs_test_123",
                         payment_status="paid", amount_total=1250, metadata=None, event_id="evt_test_1",
                         email="Buyer@Example.com", name="Ada Buyer") -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "payment_status": payment_status,
                "amount_total": amount_total,
                "currency": "USD",
                "customer_email": None,
                "customer_details": {"email": email, "name": name},
                "metadata": metadata if metadata is not None else {"user_id": "user-42", "location": "Kampala"},
            }
        },
    }
