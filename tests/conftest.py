"""
Shared fixtures: in-memory database, provider HTTP stubs and a wired API client.
"""
import os

# Must be set before paycore.database creates its engine
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["LOG_LEVEL"] = "WARNING"

import base64
import json
import time
import zlib
from typing import Any, Callable, Dict, List, Tuple, Union

import httpx
import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from paycore.adapters.paypal_adapter import PayPalAdapter
from paycore.adapters.registry import AdapterRegistry
from paycore.adapters.stp_adapter import STPAdapter
from paycore.adapters.stripe_adapter import StripeAdapter
from paycore.config import Settings
from paycore.database import init_db
from paycore.utils.hashing import hmac_sha256_hex

PAYPAL_WEBHOOK_ID = "WH-TEST-1"
STRIPE_WEBHOOK_SECRET = "whsec_test"
STP_WEBHOOK_SECRET = "stp_webhook_secret"

Reply = Union[Tuple[int, Any], Callable[[httpx.Request], httpx.Response]]


class MockProvider:
    """Scripted provider API behind ``httpx.MockTransport``.

    Each route holds a queue of replies; the last reply repeats once the
    queue is drained. A reply is ``(status, json)`` or a callable taking the
    request (which may raise, e.g. ``httpx.ReadTimeout``).
    """

    def __init__(self, base_url: str):
        self.base_url = base_url
        self.routes: Dict[Tuple[str, str], List[Reply]] = {}
        self.requests: List[httpx.Request] = []

    def on(self, method: str, path: str, *replies: Reply) -> "MockProvider":
        self.routes[(method.upper(), path)] = list(replies)
        return self

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": f"no route for {request.method} {request.url.path}"})
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(reply):
            return reply(request)
        status, body = reply
        return httpx.Response(status, json=body)

    def client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, transport=httpx.MockTransport(self.handler))


def timeout(request: httpx.Request) -> httpx.Response:
    raise httpx.ReadTimeout("read timed out", request=request)


def _private_pem(key) -> str:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")


def _public_pem(key) -> str:
    return key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


@pytest.fixture(scope="session")
def paypal_key():
    """Stands in for PayPal's certificate key pair."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def stp_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def settings(paypal_key, stp_key):
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite:///:memory:",
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=STRIPE_WEBHOOK_SECRET,
        PAYPAL_CLIENT_ID="paypal-client",
        PAYPAL_CLIENT_SECRET="paypal-secret",
        PAYPAL_WEBHOOK_ID=PAYPAL_WEBHOOK_ID,
        PAYPAL_WEBHOOK_CERT=_public_pem(paypal_key),
        STP_PRIVATE_KEY=_private_pem(stp_key),
        STP_INSTITUTION="90646",
        STP_ACCOUNT_NUMBER="646180110400000007",
        STP_WEBHOOK_SECRET=STP_WEBHOOK_SECRET,
        STP_UTILITY_API_KEY="utility-key",
    )


# ─── Database ────────────────────────────────────────────────────────

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# ─── Providers ───────────────────────────────────────────────────────

@pytest.fixture
def stripe_api():
    return MockProvider("https://stripe.test")


@pytest.fixture
def paypal_api():
    return MockProvider("https://paypal.test").on(
        "POST", "/v1/oauth2/token", (200, {"access_token": "A21AA-token", "expires_in": 32400}),
    )


@pytest.fixture
def stp_api():
    return MockProvider("https://stp.test")


@pytest.fixture
def utility_api():
    return MockProvider("https://utility.test")


@pytest.fixture
def stripe_adapter(settings, stripe_api):
    return StripeAdapter(settings, client=stripe_api.client())


@pytest.fixture
def paypal_adapter(settings, paypal_api):
    return PayPalAdapter(settings, client=paypal_api.client())


@pytest.fixture
def stp_adapter(settings, stp_api, utility_api):
    return STPAdapter(settings, client=stp_api.client(), utility_client=utility_api.client())


@pytest.fixture
def registry(stripe_adapter, paypal_adapter, stp_adapter):
    registry = AdapterRegistry([stripe_adapter, paypal_adapter, stp_adapter])
    yield registry
    registry.close()


# ─── Webhook signing ─────────────────────────────────────────────────

def stripe_signature_headers(body: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int = None) -> Dict[str, str]:
    t = str(timestamp if timestamp is not None else int(time.time()))
    v1 = hmac_sha256_hex(secret, t.encode("utf-8") + b"." + body)
    return {"Stripe-Signature": f"t={t},v1={v1}"}


def paypal_signature_headers(body: bytes, private_key, webhook_id: str = PAYPAL_WEBHOOK_ID) -> Dict[str, str]:
    transmission_id = "b2384410-f8d2-11ee-a1d6-3b1f1ad6a4c7"
    transmission_time = "2024-04-12T18:42:21Z"
    message = f"{transmission_id}|{transmission_time}|{webhook_id}|{zlib.crc32(body)}"
    signature = private_key.sign(message.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    return {
        "PAYPAL-TRANSMISSION-ID": transmission_id,
        "PAYPAL-TRANSMISSION-TIME": transmission_time,
        "PAYPAL-TRANSMISSION-SIG": base64.b64encode(signature).decode("ascii"),
        "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    }


def stp_signature_headers(body: bytes, secret: str = STP_WEBHOOK_SECRET) -> Dict[str, str]:
    timestamp = str(int(time.time()))
    return {
        "stp-timestamp": timestamp,
        "stp-signature": hmac_sha256_hex(secret, timestamp.encode("utf-8") + b"." + body),
    }


def to_body(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


# ─── Requests ────────────────────────────────────────────────────────

def billing(**extra) -> Dict[str, Any]:
    details = {
        "name": "Ana Torres",
        "email": "ana.torres@example.com",
        "phone": "+525512345678",
        "address": {
            "line1": "Av. Reforma 222",
            "city": "Ciudad de Mexico",
            "state": "CDMX",
            "postalCode": "06600",
            "country": "MX",
        },
    }
    details.update(extra)
    return details


def create_request(payment_method: str = "wallet", amount: Any = "1000", **billing_extra) -> Dict[str, Any]:
    return {
        "amount": amount,
        "currency": "MXN",
        "paymentMethod": payment_method,
        "purpose": {"type": "course", "itemId": "course-42"},
        "billingDetails": billing(**billing_extra),
    }


VALID_CLABE = "002010077777777771"

BANK_TRANSFER_DETAILS = {
    "beneficiaryName": "Eqhuma Servicios SA",
    "beneficiaryAccount": VALID_CLABE,
    "beneficiaryBank": {"code": "40002", "name": "BANAMEX"},
    "reference": "1234567",
}


# ─── API ─────────────────────────────────────────────────────────────

@pytest.fixture
def api(session_factory, registry, settings):
    from fastapi.testclient import TestClient

    from paycore.adapters.registry import get_registry
    from paycore.config import get_settings
    from paycore.database import get_db
    from paycore.main import app

    def override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_registry] = lambda: registry
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()
