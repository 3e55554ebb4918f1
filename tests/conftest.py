import hashlib
import hmac
import json
import time

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import database
from errors import Unavailable
from main import app
from notifications import OrderEventBus, get_event_bus
from payments import StripeGateway, get_payment_gateway
from security import create_jwt, hash_password
from settings import Settings, get_settings

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(StripeGateway):
    """Records network calls; webhook verification stays the real stripe code."""

    def __init__(self):
        super().__init__("sk_test_fake", WEBHOOK_SECRET)
        self.intents = []
        self.refunds = []
        self.fail_refund = False

    def create_intent(self, amount, currency, metadata):
        n = len(self.intents) + 1
        intent = {"id": f"pi_test_{n}", "client_secret": f"pi_test_{n}_secret_abc",
                  "amount": amount, "currency": currency, "metadata": metadata}
        self.intents.append(intent)
        return {"id": intent["id"], "client_secret": intent["client_secret"]}

    def refund(self, payment_intent_id):
        if self.fail_refund:
            raise Unavailable("Refund failed: processor unreachable")
        self.refunds.append(payment_intent_id)
        return f"re_test_{len(self.refunds)}"


class Env:
    def __init__(self):
        self.db = mongomock.MongoClient()["foodorder_test"]
        database.ensure_indexes(self.db)
        self.settings = Settings(jwt_secret="test-secret", stripe_secret_key="sk_test_fake",
                                 stripe_webhook_secret=WEBHOOK_SECRET, currency="usd", sse_ping_seconds=0.05)
        self.gateway = FakeGateway()
        self.bus = OrderEventBus()

    # -------- fixtures builders --------
    def account(self, role="customer", name=None, email=None):
        name = name or f"{role.title()} User"
        email = email or f"{role}-{ObjectId()}@example.com"
        account_id = database.create_document(self.db, "account", {
            "name": name, "email": email, "password_hash": hash_password("secret123"), "role": role,
        })
        token = create_jwt(self.settings, account_id, role)
        return {"id": account_id, "email": email, "token": token,
                "headers": {"Authorization": f"Bearer {token}"}}

    def restaurant(self, owner_id, approved=True, name="Kebab House", lat=41.0, lng=29.0):
        return database.create_document(self.db, "restaurant", {
            "name": name, "owner_id": owner_id, "is_approved": approved, "lat": lat, "lng": lng, "address": "",
        })

    def product(self, restaurant_id, name="Adana", price=25.0, category="general", available=True):
        return database.create_document(self.db, "product", {
            "restaurant_id": restaurant_id, "name": name, "price": price, "category": category,
            "image_url": "", "description": "", "is_available": available,
        })

    def merchant_with_product(self, price=25.0, approved=True, name="Kebab House"):
        merchant = self.account("merchant")
        rid = self.restaurant(merchant["id"], approved=approved, name=name)
        pid = self.product(rid, price=price)
        return merchant, rid, pid


def sign_webhook(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    ts = int(time.time())
    signed = f"{ts}.{payload.decode()}".encode()
    sig = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def payment_event(event_type: str, intent_id: str, order_id: str) -> bytes:
    return json.dumps({
        "id": f"evt_{intent_id}",
        "object": "event",
        "type": event_type,
        "data": {"object": {"id": intent_id, "object": "payment_intent", "metadata": {"orderId": order_id}}},
    }).encode()


@pytest.fixture
def env():
    env = Env()
    app.dependency_overrides[database.get_db] = lambda: env.db
    app.dependency_overrides[get_settings] = lambda: env.settings
    app.dependency_overrides[get_payment_gateway] = lambda: env.gateway
    app.dependency_overrides[get_event_bus] = lambda: env.bus
    yield env
    app.dependency_overrides.clear()


@pytest.fixture
def client(env):
    return TestClient(app)
