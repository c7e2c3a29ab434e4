"""Pytest fixtures for the shop tests."""

import hashlib
import hmac
import itertools
import json
import time

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import Database, to_id
from errors import ExternalServiceError
from main import create_app
from orders import OrderService
from payments import PaymentIntent, PaymentService, Refund, StripeGateway
from schemas import Address, OrderItem, Product
from security import create_token, hash_password

JWT_SECRET = "test-jwt-secret"
WEBHOOK_SECRET = "whsec_test_secret"
PASSWORD = "secret123"


class FakeGateway(StripeGateway):
    """Canned Stripe responses; webhook signatures are still verified for real."""

    def __init__(self):
        super().__init__("", WEBHOOK_SECRET)
        self.intents = {}
        self.refunds = []
        self.error = None

    def create_payment_intent(self, amount, metadata):
        if self.error:
            raise self.error
        n = len(self.intents) + 1
        intent = PaymentIntent(
            id=f"pi_{n}",
            status="requires_payment_method",
            amount=amount,
            client_secret=f"pi_{n}_secret_abc",
            metadata=dict(metadata),
        )
        self.intents[intent.id] = intent
        return intent

    def retrieve_payment_intent(self, intent_id):
        if self.error:
            raise self.error
        if intent_id not in self.intents:
            raise ExternalServiceError(detail=f"No such payment_intent: {intent_id}")
        return self.intents[intent_id]

    def succeed(self, intent_id):
        self.intents[intent_id].status = "succeeded"

    def create_refund(self, payment_intent_id, amount, metadata):
        if self.error:
            raise self.error
        refund = Refund(id=f"re_{len(self.refunds) + 1}", amount=amount, status="succeeded")
        self.refunds.append({"payment_intent": payment_intent_id, "amount": amount, "metadata": metadata})
        return refund


@pytest.fixture
def password():
    return PASSWORD


@pytest.fixture(scope="session")
def password_hash():
    return hash_password(PASSWORD)


@pytest.fixture
def settings():
    return Settings(
        database_name="shop_test",
        database_transactions=False,
        jwt_secret=JWT_SECRET,
        stripe_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def db(settings):
    database = Database(mongomock.MongoClient(), settings.database_name, use_transactions=False)
    database.ensure_indexes()
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def orders(db):
    return OrderService(db)


@pytest.fixture
def payments(db, orders, gateway):
    return PaymentService(db, orders, gateway)


@pytest.fixture
def make_user(db, password_hash):
    counter = itertools.count(1)

    def _make(role="user", is_active=True, email=None):
        n = next(counter)
        user_id = db.create_document("user", {
            "name": f"User {n}",
            "email": email or f"user{n}@mail.com",
            "hashed_password": password_hash,
            "role": role,
            "is_active": is_active,
        })
        return db["user"].find_one({"_id": to_id(user_id)})

    return _make


@pytest.fixture
def make_product(db):
    def _make(price=10.0, stock=10, category="phones", name="Phone", is_active=True):
        product = Product(name=name, price=price, stock=stock, category=category, is_active=is_active)
        return db.create_document("product", product)

    return _make


@pytest.fixture
def address():
    return Address(street="1 Main St", city="Springfield", state="IL", zip_code="62701", country="US")


@pytest.fixture
def place_order(orders, make_product, address):
    """Place the reference basket (2 x 10.00 + 1 x 5.00) for a user."""

    def _place(user):
        first = make_product(price=10.0, stock=10, name="Case")
        second = make_product(price=5.0, stock=10, name="Cable")
        items = [
            OrderItem(product_id=first, quantity=2, price=10.0),
            OrderItem(product_id=second, quantity=1, price=5.0),
        ]
        return orders.create_order(user, items, address)

    return _place


@pytest.fixture
def stock_of(db):
    def _stock(product_id):
        return db["product"].find_one({"_id": to_id(product_id)})["stock"]

    return _stock


@pytest.fixture
def stored_order(db):
    def _get(order_id):
        return db["order"].find_one({"_id": to_id(order_id)})

    return _get


@pytest.fixture
def sign_webhook():
    def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
        ts = int(timestamp if timestamp is not None else time.time())
        mac = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
        return f"t={ts},v1={mac}"

    return _sign


@pytest.fixture
def intent_event():
    def _event(event_type, order_id, intent_id="pi_1"):
        return json.dumps({
            "id": "evt_1",
            "object": "event",
            "type": event_type,
            "data": {"object": {
                "id": intent_id,
                "object": "payment_intent",
                "metadata": {"order_id": order_id},
            }},
        })

    return _event


@pytest.fixture
def client(settings, db, gateway):
    app = create_app(settings, database=db, gateway=gateway)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    def _headers(user):
        token = create_token(user, JWT_SECRET, 60)
        return {"Authorization": f"Bearer {token}"}

    return _headers
