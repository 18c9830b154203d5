import json
from collections import defaultdict
from decimal import Decimal

import pytest
from faker import Faker

from paygate import create_app
from paygate.config.testing import TestingConfig
from paygate.engine import init_engine
from paygate.errors import InvalidRequest
from paygate.extensions import db
from paygate.models import PaymentProvider, SubscriptionPlan, TransactionStatus
from paygate.notifications import EVENT_NAMES
from paygate.providers.base import (
    InitiateResult,
    ProviderAdapter,
    RefundResult,
    WebhookEvent,
    hmac_hexdigest,
    signatures_match,
)

# Initialize Faker for generating test data
fake = Faker()

WEBHOOK_SECRET = "whsec_test_secret"


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "concurrency: test drives the engine from several threads"
    )


class FakeAdapter(ProviderAdapter):
    """
    In-memory provider rail.

    Records every call, signs webhooks with HMAC-SHA256 and can be told to
    fail the next initiate calls with queued exceptions.
    """

    signature_header = "X-Provider-Signature"

    EVENTS = {
        "payment.processing": TransactionStatus.PROCESSING,
        "payment.completed": TransactionStatus.COMPLETED,
        "payment.failed": TransactionStatus.FAILED,
    }

    def __init__(self, provider, initiate_status=TransactionStatus.PENDING, secret=WEBHOOK_SECRET):
        super().__init__(timeout=1)
        self.provider = provider
        self.initiate_status = initiate_status
        self.secret = secret
        self.initiate_calls = []
        self.refund_calls = []
        self.initiate_errors = []
        self.refund_success = True

    def initiate(self, request):
        self.initiate_calls.append(request)
        if self.initiate_errors:
            raise self.initiate_errors.pop(0)
        external_id = f"{self.provider.value}_{request.transaction_id}"
        return InitiateResult(
            provider_transaction_id=external_id,
            status=self.initiate_status,
            extra={"redirect_url": f"https://pay.example.com/{external_id}"},
            raw={"id": external_id, "status": self.initiate_status.value},
        )

    def verify_webhook_signature(self, raw_payload, signature_header):
        return signatures_match(hmac_hexdigest(self.secret, raw_payload), signature_header)

    def map_webhook_event(self, payload):
        event_type = payload.get("type")
        if not event_type:
            raise InvalidRequest("event without type")
        new_status = self.EVENTS.get(event_type)
        if new_status is None:
            return None
        if not payload.get("id"):
            raise InvalidRequest("event without id")
        return WebhookEvent(external_txn_id=payload["id"], new_status=new_status, event_type=event_type)

    def refund(self, provider_transaction_id, amount, currency):
        self.refund_calls.append((provider_transaction_id, amount, currency))
        if not self.refund_success:
            return RefundResult(success=False, provider_response={"error": "refund declined"})
        return RefundResult(success=True, provider_response={"refund": provider_transaction_id, "amount": str(amount)})

    # Test helpers

    def sign(self, body: bytes) -> str:
        return hmac_hexdigest(self.secret, body)

    def webhook(self, external_id, event_type="payment.completed"):
        """Signed (body, signature) pair for a provider event."""
        body = json.dumps({"id": external_id, "type": event_type}).encode()
        return body, self.sign(body)


def _build_app():
    app = create_app("testing")
    return app


def _seed_plans():
    db.session.add_all([
        SubscriptionPlan(id="basic", name="Basic", price=Decimal("5.00"), duration_days=30,
                         max_devices=1, bandwidth_limit=10 * 1024 ** 3),
        SubscriptionPlan(id="pro", name="Pro", price=Decimal("10.00"), duration_days=30, max_devices=3),
        SubscriptionPlan(id="premium", name="Premium", price=Decimal("19.99"), duration_days=30, max_devices=5),
        SubscriptionPlan(id="legacy", name="Legacy", price=Decimal("3.00"), duration_days=30, active=False),
    ])
    db.session.commit()


@pytest.fixture()
def app():
    """Application bound to a fresh in-memory database"""
    app = _build_app()
    with app.app_context():
        db.create_all()
        _seed_plans()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def file_app(tmp_path, monkeypatch):
    """Application on a file-backed SQLite database, for multi-threaded tests"""
    monkeypatch.setattr(TestingConfig, "SQLALCHEMY_DATABASE_URI", f"sqlite:///{tmp_path / 'paygate.db'}")
    app = _build_app()
    with app.app_context():
        db.create_all()
        _seed_plans()
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


def _fake_adapters():
    return {
        PaymentProvider.CARD: FakeAdapter(PaymentProvider.CARD, initiate_status=TransactionStatus.COMPLETED),
        PaymentProvider.WALLET_APPROVAL: FakeAdapter(PaymentProvider.WALLET_APPROVAL),
        PaymentProvider.HOSTED_CHARGE: FakeAdapter(PaymentProvider.HOSTED_CHARGE),
        PaymentProvider.CRYPTO_ADDRESS: FakeAdapter(PaymentProvider.CRYPTO_ADDRESS),
    }


@pytest.fixture()
def adapters():
    return _fake_adapters()


@pytest.fixture()
def engine(app, adapters):
    return init_engine(app, adapters=adapters)


@pytest.fixture()
def file_engine(file_app):
    return init_engine(file_app, adapters=_fake_adapters())


@pytest.fixture()
def events():
    """Collect every notification payload, keyed by event name"""
    captured = defaultdict(list)
    receivers = {}
    for name, signal in EVENT_NAMES.items():
        def receiver(sender, _name=name, **payload):
            captured[_name].append(payload)
        receivers[name] = receiver
        signal.connect(receiver, weak=False)

    yield captured

    for name, receiver in receivers.items():
        EVENT_NAMES[name].disconnect(receiver)


@pytest.fixture()
def checkout():
    """Factory for payment requests with realistic data"""
    def _checkout(method="hosted_charge", plan_id="basic", amount="5.00", **overrides):
        data = {
            "user_id": overrides.pop("user_id", fake.uuid4()),
            "plan_id": plan_id,
            "method": method,
            "amount": amount,
            "currency": "USD",
            "ip_address": overrides.pop("ip_address", fake.ipv4_public()),
        }
        if method == "card":
            data["payment_method_id"] = f"pm_{fake.lexify('????????????')}"
        data.update(overrides)
        return data
    return _checkout
