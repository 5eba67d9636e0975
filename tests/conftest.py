import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("RAZORPAY_WEBHOOK_SECRET", None)
os.environ.pop("RAZORPAY_KEY_ID", None)
os.environ.pop("RAZORPAY_KEY_SECRET", None)

import hashlib
import hmac
import json
from datetime import datetime
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from app import models, schemas
from app.database import Base, SessionLocal, engine
from app.exceptions import ProviderError
from app.main import app
from app.utils.payment_gateway import get_gateway_factory, signature_matches

WEBHOOK_SECRET = "whsec_test"


class FakeGateway:
    """In-memory stand-in for one provider's gateway account."""

    def __init__(self, provider: models.PaymentProvider):
        self.key_id = provider.api_key
        self.key_secret = provider.api_secret
        self.provider_name = provider.name
        self.fail_with: Optional[str] = None
        self.capture_fails = False
        self.capture_status = "captured"
        self.payments: Dict[str, schemas.GatewayPayment] = {}
        self.calls: List[tuple] = []
        self._order_seq = 0

    @property
    def publishable_key(self) -> str:
        return self.key_id

    def _maybe_fail(self):
        if self.fail_with:
            raise ProviderError(self.fail_with)

    def create_order(self, amount, currency, receipt, notes=None):
        self.calls.append(("create_order", amount, currency, receipt, notes))
        self._maybe_fail()
        self._order_seq += 1
        return schemas.GatewayOrder(
            id=f"order_{self.key_id}_{self._order_seq}",
            amount=amount,
            currency=currency,
            receipt=receipt,
            status="created",
        )

    def create_subscription(self, plan_id, total_count, customer_name=None, customer_email=None, notes=None):
        self.calls.append(("create_subscription", plan_id, total_count, customer_email))
        self._maybe_fail()
        return schemas.GatewaySubscription(
            id=f"sub_{self.key_id}",
            plan_id=plan_id,
            status="created",
            short_url=f"https://rzp.io/i/{self.key_id}",
        )

    def fetch_payment(self, payment_id):
        self.calls.append(("fetch_payment", payment_id))
        self._maybe_fail()
        if payment_id not in self.payments:
            raise ProviderError(f"payment {payment_id} not found")
        return self.payments[payment_id]

    def capture_payment(self, payment_id, amount, currency):
        self.calls.append(("capture_payment", payment_id, amount))
        if self.capture_fails:
            raise ProviderError("capture failed")
        payment = self.payments[payment_id].model_copy(update={"status": self.capture_status, "captured": True})
        self.payments[payment_id] = payment
        return payment

    def checkout_signature_valid(self, order_id, payment_id, signature):
        return signature_matches(self.key_secret, f"{order_id}|{payment_id}".encode("utf-8"), signature)


class FakeGatewayFactory:
    def __init__(self):
        self.gateways: Dict[str, FakeGateway] = {}

    def for_key(self, key_id: str) -> FakeGateway:
        return self.gateways[key_id]

    def __call__(self, provider: models.PaymentProvider) -> FakeGateway:
        if provider.api_key not in self.gateways:
            self.gateways[provider.api_key] = FakeGateway(provider)
        return self.gateways[provider.api_key]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("RAZORPAY_WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("RAZORPAY_KEY_ID", raising=False)
    monkeypatch.delenv("RAZORPAY_KEY_SECRET", raising=False)


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def gateways():
    return FakeGatewayFactory()


@pytest.fixture
def client(db, gateways):
    app.dependency_overrides[get_gateway_factory] = lambda: gateways
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def plan(db):
    row = models.Plan(id="starter", name="Starter", price=149, period_days=30)
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def weekly_plan(db):
    row = models.Plan(id="trial", name="Trial", price=99, period_days=7)
    db.add(row)
    db.commit()
    return row


def add_provider(db, name="Razorpay", api_key="rzp_key", api_secret="rzp_secret", **kwargs):
    provider = models.PaymentProvider(
        name=name,
        type=kwargs.pop("type", "razorpay"),
        api_key=api_key,
        api_secret=api_secret,
        is_primary=kwargs.pop("is_primary", False),
        is_active=kwargs.pop("is_active", True),
        webhook_secret=kwargs.pop("webhook_secret", None),
        **kwargs,
    )
    db.add(provider)
    db.commit()
    return provider


def add_payment(db, provider, plan, order_id="order_abc", email="viewer@example.com", status="created", **kwargs):
    payment = models.Payment(
        provider_id=provider.id if provider else None,
        provider_order_id=order_id,
        user_email=email,
        plan_id=plan.id,
        amount=plan.price * 100,
        currency="INR",
        status=status,
        **kwargs,
    )
    db.add(payment)
    db.commit()
    return payment


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def captured_event(order_id="order_abc", payment_id="pay_123", **entity_fields) -> bytes:
    entity = {
        "id": payment_id,
        "order_id": order_id,
        "status": "captured",
        "amount": 14900,
        "currency": "INR",
        "method": "upi",
        "captured": True,
    }
    entity.update(entity_fields)
    return json.dumps({"event": "payment.captured", "payload": {"payment": {"entity": entity}}}).encode("utf-8")


def fresh_subscriber(email: str) -> Optional[models.Subscriber]:
    session = SessionLocal()
    try:
        return session.query(models.Subscriber).filter(models.Subscriber.email == email).first()
    finally:
        session.close()


def days_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 86400
