"""Pytest fixtures for checkout service tests."""

import os

# Module-level app construction in checkout_service.main reads the environment.
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ["LOG_FILE"] = ""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Dict

import pytest
from fastapi.testclient import TestClient

from checkout_service.clients import payment_signature, webhook_signature
from checkout_service.config import Settings
from checkout_service.main import create_app
from checkout_service.models import AuthenticatedUser, PaymentOrder
from checkout_service.store import InMemoryDocumentStore

SITE_URL = "https://shop.example.com"
KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"
NATIVE_PRODUCT_ID = "65f1c0ffee00000000000001"


class FakeGateway:
    """In-process payment gateway that records created orders."""

    def __init__(self, key_secret: str = KEY_SECRET):
        self.key_secret = key_secret
        self.orders = []
        self.fail_with = None

    def create_order(self, amount: int, currency: str, receipt: str, notes: Dict[str, str]) -> PaymentOrder:
        if self.fail_with is not None:
            raise self.fail_with
        order = PaymentOrder(
            gatewayOrderId=f"order_test{len(self.orders) + 1}",
            amount=amount,
            currency=currency,
            receipt=receipt,
            notes=notes,
            status="created",
        )
        self.orders.append(order)
        return order

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        expected = payment_signature(order_id, payment_id, self.key_secret)
        return hmac.compare_digest(expected, signature.lower())


class StaticIdentityResolver:
    """Maps fixed bearer tokens to users."""

    def __init__(self, users: Dict[str, AuthenticatedUser]):
        self.users = users

    def resolve(self, token: str):
        return self.users.get(token)


def sign_payment(order_id: str, payment_id: str) -> str:
    return payment_signature(order_id, payment_id, KEY_SECRET)


def sign_webhook(body: bytes) -> str:
    return webhook_signature(body, WEBHOOK_SECRET)


ALICE = AuthenticatedUser(uid="alice", email="alice@example.com", emailVerified=True)
BOB = AuthenticatedUser(uid="bob", email="bob@example.com", emailVerified=True)


@pytest.fixture
def now():
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def store(now):
    """In-memory store seeded with a small catalog and a set of coupons."""
    store = InMemoryDocumentStore()
    store.seed("products", {
        "sku-1": {"id": "sku-1", "name": "Linen Shirt", "price": "₹1,599"},
        "sku-2": {"id": "sku-2", "name": "Chino Trousers", "price": 999},
        NATIVE_PRODUCT_ID: {"name": "Denim Jacket", "price": "2,499.00"},
        "sku-broken": {"id": "sku-broken", "name": "Mystery Item", "price": "contact us"},
    })
    store.seed("coupons", {
        "c-save10": {
            "code": "SAVE10", "type": "percentage", "value": 10, "isActive": True,
            "usageLimit": 100, "usageCount": 0, "minOrderAmount": 2000,
            "expiryDate": now + timedelta(days=30),
        },
        "c-expired": {
            "code": "EXPIRED5", "type": "percentage", "value": 5, "isActive": True,
            "usageLimit": 100, "usageCount": 0, "expiryDate": now - timedelta(days=1),
        },
        "c-usedup": {
            "code": "USEDUP", "type": "flat", "value": 100, "isActive": True,
            "usageLimit": 5, "usageCount": 5,
        },
        "c-inactive": {
            "code": "OLD", "type": "flat", "value": 100, "isActive": False,
            "usageLimit": 5, "usageCount": 0,
        },
        "c-flatall": {
            "code": "FLATALL", "type": "flat", "value": 5000, "isActive": True,
            "usageLimit": 10, "usageCount": 0,
        },
        "c-fixed": {
            "code": "FLAT100", "type": "fixed", "value": 100, "isActive": True,
            "usageLimit": 10, "usageCount": 0,
        },
    })
    return store


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def identity():
    return StaticIdentityResolver({"token-alice": ALICE, "token-bob": BOB})


@pytest.fixture
def settings():
    return Settings(
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret=KEY_SECRET,
        razorpay_webhook_secret=WEBHOOK_SECRET,
        store_backend="memory",
        site_url=SITE_URL,
        allowed_origins=(),
        log_file="",
    )


@pytest.fixture
def app(settings, store, gateway, identity):
    return create_app(settings=settings, store=store, gateway=gateway, identity=identity)


@pytest.fixture
def api_client(app):
    """Client authenticated as alice, sending the storefront origin."""
    with TestClient(app, headers={"Origin": SITE_URL, "Authorization": "Bearer token-alice"}) as client:
        yield client


@pytest.fixture
def anonymous_client(app):
    """Client without Origin or Authorization headers."""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def address():
    return {
        "fullName": "Asha Rao",
        "phone": "9876543210",
        "email": "asha@example.com",
        "addressLine1": "12 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "pincode": "560001",
    }
