import asyncio
import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from jose import jwk, jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from services.compute_provider import ProviderResult
from services.identity import ClerkSessionVerifier
from services.rate_limiter import RateLimiter
from services.webhook_signatures import sign_svix_payload


STRIPE_TEST_SECRET = "whsec_stripe_test_secret"
# base64("clerk-test-signing-key-32-bytes!")
CLERK_TEST_SECRET = "whsec_Y2xlcmstdGVzdC1zaWduaW5nLWtleS0zMi1ieXRlcyE="
ADMIN_TEST_KEY = "admin-test-key"
IDENTITY_KEY_ID = "ins_test_key"


def make_signing_key(kid: str = IDENTITY_KEY_ID):
    """Return (private PEM, JWKS) for an RS256 identity-provider signing key."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    public_jwk = {**jwk.construct(public_pem, "RS256").to_dict(), "kid": kid, "use": "sig"}
    return private_pem, {"keys": [public_jwk]}


IDENTITY_PRIVATE_PEM, IDENTITY_JWKS = make_signing_key()


def identity_session_token(
    subject: str,
    *,
    private_pem: str = IDENTITY_PRIVATE_PEM,
    kid: str = IDENTITY_KEY_ID,
    expires_in: int = 300,
    **claims: Any,
) -> str:
    """Sign a session JWT the way the identity provider issues them."""
    now = int(time.time())
    payload = {"sub": subject, "iat": now, "nbf": now, "exp": now + expires_in, **claims}
    return jwt.encode(payload, private_pem, algorithm="RS256", headers={"kid": kid})


class FakeProvider:
    """Compute provider double that records calls and returns a canned result."""

    def __init__(self, result: Optional[ProviderResult] = None, error: Optional[Exception] = None, delay: float = 0.0):
        self.result = result or ProviderResult(
            prediction_id="pred_test",
            status="succeeded",
            outputs=["https://cdn.test/out-1.png"],
        )
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, *, image_url: str, prompt: str, tier: str) -> ProviderResult:
        self.calls.append({"image_url": image_url, "prompt": prompt, "tier": tier})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def stripe_signed(event: Dict[str, Any], secret: str = STRIPE_TEST_SECRET, timestamp: Optional[int] = None):
    """Return (body, Stripe-Signature header) for ``event``."""
    body = json.dumps(event).encode()
    ts = int(timestamp if timestamp is not None else time.time())
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return body, f"t={ts},v1={digest}"


def svix_signed(event: Dict[str, Any], msg_id: str, secret: str = CLERK_TEST_SECRET, timestamp: Optional[int] = None):
    """Return (body, headers) for an identity event signed the svix way."""
    body = json.dumps(event).encode()
    ts = str(int(timestamp if timestamp is not None else time.time()))
    signature = sign_svix_payload(secret, msg_id, ts, body)
    return body, {"svix-id": msg_id, "svix-timestamp": ts, "svix-signature": f"v1,{signature}"}


def checkout_event(
    event_id: str,
    *,
    subject: Optional[str] = "user_ext_1",
    package_id: Optional[str] = "starter",
    payment_status: str = "paid",
    event_type: str = "checkout.session.completed",
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {}
    if subject:
        metadata["userId"] = subject
    if package_id:
        metadata["packageId"] = package_id
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": f"cs_{event_id}",
                "object": "checkout.session",
                "client_reference_id": subject,
                "payment_status": payment_status,
                "payment_intent": f"pi_{event_id}",
                "metadata": metadata,
            }
        },
    }


def user_event(event_type: str, external_id: str, *, email: Optional[str] = "ada@example.com", **extra) -> Dict[str, Any]:
    data: Dict[str, Any] = {"id": external_id, **extra}
    if email is not None:
        data["email_addresses"] = [{"id": "idn_1", "email_address": email}]
        data["primary_email_address_id"] = "idn_1"
    return {"type": event_type, "object": "event", "data": data}


@pytest.fixture(autouse=True)
def isolated_app_state(monkeypatch):
    """Deterministic secrets plus in-memory rate limiting and a fake provider per test."""
    monkeypatch.setattr(settings, "ENVIRONMENT", "test")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", STRIPE_TEST_SECRET)
    monkeypatch.setattr(settings, "CLERK_WEBHOOK_SECRET", CLERK_TEST_SECRET)
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_TEST_KEY)
    monkeypatch.setattr(settings, "IDENTITY_LAZY_PROVISIONING", False)
    monkeypatch.setattr(settings, "STARTER_CREDITS", 1)
    monkeypatch.setattr(settings, "CREDIT_COST_STANDARD", 1)
    monkeypatch.setattr(settings, "CREDIT_COST_PREMIUM", 2)
    monkeypatch.setattr(settings, "RATE_LIMIT_FREE", 20)
    monkeypatch.setattr(settings, "RATE_LIMIT_PAID", 100)

    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    app.state.rate_limiter = RateLimiter(backend="memory", window_seconds=3600)
    app.state.compute_provider = FakeProvider()
    app.state.identity_provider = None
    app.state.session_verifier = ClerkSessionVerifier(jwks=IDENTITY_JWKS, issuer="")
    yield
    app.state.disable_rate_limits = previous
    app.state.rate_limiter = None
    app.state.compute_provider = None
    app.state.identity_provider = None
    app.state.session_verifier = None

@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 30})
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.pop(get_db, None)
