import hashlib
import hmac
import json
import os
import time

os.environ["DATABASE_URL"] = "sqlite:///./test_app.db"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["ADMIN_NOTIFICATION_EMAIL"] = "atelier@example.com"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["EMAIL_API_URL"] = "https://mail.example.test/send"
os.environ["LOG_FORMAT"] = "console"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import storefront.auth
from storefront.database import Base, use_immediate_transactions
from storefront.main import app as fastapi_app
from storefront.models import Order
from storefront.notifications import EmailTransport
from storefront.orders import create_order

WEBHOOK_SECRET = "whsec_test"

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_storefront.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
use_immediate_transactions(engine)
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr("storefront.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("storefront.main.SessionLocal", TestingSessionLocal)
    fastapi_app.dependency_overrides[storefront.auth.verify_token] = lambda: "tester"

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def sent(mocker):
    """Captures outgoing notifications instead of calling the email API."""
    return mocker.patch.object(EmailTransport, "send", return_value=True)


@pytest.fixture
def make_order():
    def _make(order_id="ord_1", total=24000, status="pending_payment", email="client@example.com",
              payment_reference=None):
        session = TestingSessionLocal()
        create_order(
            session,
            customer_email=email,
            customer_name="Camille",
            items=[
                {"product_id": "table-oak", "name": "Oak table", "unit_price": total - 4000, "quantity": 1},
                {"product_id": "stool", "name": "Stool", "unit_price": 2000, "quantity": 2},
            ],
            order_id=order_id,
        )
        order = session.get(Order, order_id)
        order.status = status
        order.payment_reference = payment_reference
        session.commit()
        session.close()
        return order_id
    return _make


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def build_event(event_id, event_type, order_id, intent_id="pi_123"):
    if event_type == "checkout.session.completed":
        obj = {"id": "cs_test_1", "payment_intent": intent_id, "metadata": {"order_id": order_id}}
    else:
        obj = {"id": intent_id, "metadata": {"order_id": order_id}}
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode("utf-8")


@pytest.fixture
def post_event(client):
    def _post(event_id, event_type, order_id, intent_id="pi_123"):
        payload = build_event(event_id, event_type, order_id, intent_id)
        return client.post(
            "/webhook",
            content=payload,
            headers={"stripe-signature": sign(payload), "content-type": "application/json"},
        )
    return _post


@pytest.fixture
def signer():
    return sign


@pytest.fixture
def event_builder():
    return build_event
