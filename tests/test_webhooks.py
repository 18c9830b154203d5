import json
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
import requests
from faker import Faker
from sqlalchemy import select

from paygate import setup_proxy
from paygate.engine import init_engine
from paygate.errors import InvalidRequest, SignatureInvalid
from paygate.extensions import db
from paygate.models import PaymentProvider, SecurityEvent, UserSubscription
from paygate.providers import WalletAdapter
from paygate.providers.base import hmac_hexdigest
from paygate.utils.clock import utcnow
from paygate.webhooks.ingestor import DUPLICATE, IGNORED, PROCESSED, UNKNOWN_TRANSACTION

fake = Faker()


@pytest.fixture()
def hosted(adapters):
    return adapters[PaymentProvider.HOSTED_CHARGE]


@pytest.fixture()
def pending_charge(engine, checkout):
    """A hosted charge waiting for the customer to pay"""
    request = checkout(method="hosted_charge")
    result = engine.process_payment(request)
    return engine.store.get(result.transaction_id)


def _subscriptions(user_id):
    return db.session.execute(
        select(UserSubscription).where(UserSubscription.user_id == user_id)
    ).scalars().all()


def test_completion_webhook_activates_subscription(engine, hosted, pending_charge, events):
    body, signature = hosted.webhook(pending_charge.provider_transaction_id)

    outcome = engine.handle_webhook("hosted_charge", body, signature)

    assert outcome.outcome == PROCESSED
    assert outcome.status == "completed"
    assert engine.store.get(pending_charge.id).status == "completed"
    assert engine.store.get(pending_charge.id).provider_response["type"] == "payment.completed"
    subscriptions = _subscriptions(pending_charge.user_id)
    assert len(subscriptions) == 1
    assert subscriptions[0].status == "active"
    assert len(events["payment_completed"]) == 1


def test_duplicate_webhook_activates_once(engine, hosted, pending_charge, events):
    """Test a repeated completion webhook is acknowledged but applied once"""
    body, signature = hosted.webhook(pending_charge.provider_transaction_id)

    first = engine.handle_webhook("hosted_charge", body, signature)
    second = engine.handle_webhook("hosted_charge", body, signature)

    assert first.outcome == PROCESSED
    assert second.outcome == DUPLICATE
    assert second.status == "completed"
    assert len(_subscriptions(pending_charge.user_id)) == 1
    assert len(events["subscription_activated"]) == 1
    assert len(events["payment_completed"]) == 1


def test_redelivery_activates_after_failed_activation(engine, hosted, pending_charge):
    """Test a completion whose activation failed is activated by the provider's redelivery"""
    body, signature = hosted.webhook(pending_charge.provider_transaction_id)
    activate = engine.activator.activate
    calls = []

    def flaky_activate(*args):
        calls.append(args)
        if len(calls) == 1:
            raise RuntimeError("database unavailable")
        return activate(*args)

    with patch.object(engine.activator, "activate", side_effect=flaky_activate):
        with pytest.raises(RuntimeError):
            engine.handle_webhook("hosted_charge", body, signature)
        assert engine.store.get(pending_charge.id).status == "completed"
        assert _subscriptions(pending_charge.user_id) == []

        outcome = engine.handle_webhook("hosted_charge", body, signature)

    assert outcome.outcome == DUPLICATE
    subscriptions = _subscriptions(pending_charge.user_id)
    assert len(subscriptions) == 1
    assert subscriptions[0].transaction_id == pending_charge.id
    assert subscriptions[0].status == "active"

    engine.handle_webhook("hosted_charge", body, signature)
    assert len(_subscriptions(pending_charge.user_id)) == 1


def test_processing_then_completed(engine, hosted, pending_charge):
    body, signature = hosted.webhook(pending_charge.provider_transaction_id, "payment.processing")
    assert engine.handle_webhook("hosted_charge", body, signature).status == "processing"

    body, signature = hosted.webhook(pending_charge.provider_transaction_id, "payment.completed")
    assert engine.handle_webhook("hosted_charge", body, signature).status == "completed"


def test_late_processing_after_completion_is_duplicate(engine, hosted, pending_charge):
    body, signature = hosted.webhook(pending_charge.provider_transaction_id, "payment.completed")
    engine.handle_webhook("hosted_charge", body, signature)

    body, signature = hosted.webhook(pending_charge.provider_transaction_id, "payment.processing")
    outcome = engine.handle_webhook("hosted_charge", body, signature)

    assert outcome.outcome == DUPLICATE
    assert engine.store.get(pending_charge.id).status == "completed"


def test_failure_webhook(engine, hosted, pending_charge, events):
    body, signature = hosted.webhook(pending_charge.provider_transaction_id, "payment.failed")

    outcome = engine.handle_webhook("hosted_charge", body, signature)

    assert outcome.status == "failed"
    assert _subscriptions(pending_charge.user_id) == []
    assert len(events["payment_failed"]) == 1


def test_completion_after_expiry_is_rejected(engine, hosted, pending_charge, events):
    """Test an expired transaction is never completed by a late webhook"""
    engine.sweep_expired(now=utcnow() + timedelta(minutes=31))
    body, signature = hosted.webhook(pending_charge.provider_transaction_id)

    outcome = engine.handle_webhook("hosted_charge", body, signature)

    assert outcome.outcome == DUPLICATE
    assert outcome.status == "expired"
    assert engine.store.get(pending_charge.id).status == "expired"
    assert _subscriptions(pending_charge.user_id) == []
    assert events["subscription_activated"] == []


def test_invalid_signature_rejected_and_recorded(engine, hosted, pending_charge):
    """Test a forged webhook changes nothing and records a security event"""
    body, _ = hosted.webhook(pending_charge.provider_transaction_id)
    ip = fake.ipv4_public()

    with pytest.raises(SignatureInvalid):
        engine.handle_webhook("hosted_charge", body, "0" * 64, source_ip=ip)

    assert engine.store.get(pending_charge.id).status == "pending"
    event = db.session.execute(select(SecurityEvent)).scalar_one()
    assert event.event_type == "webhook_signature_invalid"
    assert event.severity == "high"
    assert event.ip_address == ip


def test_missing_signature_rejected(engine, hosted, pending_charge):
    body, _ = hosted.webhook(pending_charge.provider_transaction_id)

    with pytest.raises(SignatureInvalid):
        engine.handle_webhook("hosted_charge", body, None)


def test_signature_from_other_rail_rejected(engine, adapters, pending_charge):
    """Test a payload signed for one rail does not verify on another"""
    card = adapters[PaymentProvider.CARD]
    card.secret = "whsec_card_only"
    body, signature = card.webhook(pending_charge.provider_transaction_id)

    with pytest.raises(SignatureInvalid):
        engine.handle_webhook("hosted_charge", body, signature)


def test_unknown_transaction_acknowledged(engine, hosted):
    body, signature = hosted.webhook("charge_never_seen")

    outcome = engine.handle_webhook("hosted_charge", body, signature)

    assert outcome.outcome == UNKNOWN_TRANSACTION
    assert outcome.transaction_id is None


def test_irrelevant_event_ignored(engine, hosted, pending_charge):
    body, signature = hosted.webhook(pending_charge.provider_transaction_id, "charge:created")

    assert engine.handle_webhook("hosted_charge", body, signature).outcome == IGNORED
    assert engine.store.get(pending_charge.id).status == "pending"


def test_unknown_provider(engine):
    with pytest.raises(InvalidRequest):
        engine.handle_webhook("carrier_pigeon", b"{}", "sig")


def test_malformed_payload(engine, hosted):
    body = b"not json"

    with pytest.raises(InvalidRequest):
        engine.handle_webhook("hosted_charge", body, hosted.sign(body))


def _paypal_response(status_code, body):
    response = requests.Response()
    response.status_code = status_code
    response._content = json.dumps(body).encode()
    return response


def test_wallet_approval_is_captured_and_activates(app, adapters, checkout, events):
    """Test the approval webhook captures the order and completes the payment"""
    wallet = WalletAdapter(client_id="client", client_secret="secret", webhook_secret="whsec_wallet",
                           api_base="https://paypal.test", return_url="https://shop.test/return",
                           cancel_url="https://shop.test/cancel")
    wallet.session = Mock()
    wallet.session.request.side_effect = [
        _paypal_response(200, {"access_token": "A21AA", "expires_in": 32400}),
        _paypal_response(201, {"id": "ORDER-1", "status": "PAYER_ACTION_REQUIRED", "links": []}),
        _paypal_response(201, {"id": "ORDER-1", "status": "COMPLETED", "purchase_units": [
            {"payments": {"captures": [{"id": "CAPTURE-9", "status": "COMPLETED"}]}},
        ]}),
    ]
    adapters[PaymentProvider.WALLET_APPROVAL] = wallet
    engine = init_engine(app, adapters=adapters)
    request = checkout(method="wallet_approval", plan_id="pro", amount="10.00")
    result = engine.process_payment(request)

    body = json.dumps({"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "ORDER-1"}}).encode()
    outcome = engine.handle_webhook("wallet_approval", body, hmac_hexdigest("whsec_wallet", body))

    assert outcome.outcome == PROCESSED
    assert outcome.status == "completed"
    capture_call = wallet.session.request.call_args.args
    assert capture_call == ("POST", "https://paypal.test/v2/checkout/orders/ORDER-1/capture")
    assert engine.activator.current_subscription(request["user_id"]).transaction_id == result.transaction_id

    captured = json.dumps({
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {"id": "CAPTURE-9", "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}}},
    }).encode()
    outcome = engine.handle_webhook("wallet_approval", captured, hmac_hexdigest("whsec_wallet", captured))
    assert outcome.outcome == DUPLICATE
    assert wallet.session.request.call_count == 3
    assert len(events["subscription_activated"]) == 1


# HTTP endpoint

def test_webhook_endpoint_processes_event(client, engine, hosted, pending_charge):
    body, signature = hosted.webhook(pending_charge.provider_transaction_id)

    response = client.post(
        "/webhooks/hosted_charge",
        data=body,
        headers={"X-Provider-Signature": signature, "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    data = response.get_json()
    assert data["received"] is True
    assert data["outcome"] == PROCESSED
    assert data["transaction_id"] == pending_charge.id


def test_webhook_endpoint_duplicate_returns_200(client, engine, hosted, pending_charge):
    body, signature = hosted.webhook(pending_charge.provider_transaction_id)
    headers = {"X-Provider-Signature": signature}

    client.post("/webhooks/hosted_charge", data=body, headers=headers)
    response = client.post("/webhooks/hosted_charge", data=body, headers=headers)

    assert response.status_code == 200
    assert response.get_json()["outcome"] == DUPLICATE


def test_webhook_endpoint_bad_signature(client, engine, hosted, pending_charge):
    body, _ = hosted.webhook(pending_charge.provider_transaction_id)

    response = client.post(
        "/webhooks/hosted_charge",
        data=body,
        headers={"X-Provider-Signature": "bad", "X-Forwarded-For": "198.51.100.4, 10.0.0.1"},
    )

    assert response.status_code == 400
    assert response.get_json()["code"] == "SIGNATURE_INVALID"
    event = db.session.execute(select(SecurityEvent)).scalar_one()
    assert event.ip_address == "127.0.0.1"


def test_webhook_endpoint_trusts_configured_proxy_hops(app, engine, hosted, pending_charge):
    """Test only the address appended by a trusted proxy is recorded"""
    app.config["TRUSTED_PROXY_HOPS"] = 1
    setup_proxy(app)
    body, _ = hosted.webhook(pending_charge.provider_transaction_id)

    response = app.test_client().post(
        "/webhooks/hosted_charge",
        data=body,
        headers={"X-Provider-Signature": "bad", "X-Forwarded-For": "203.0.113.9, 198.51.100.4"},
    )

    assert response.status_code == 400
    event = db.session.execute(select(SecurityEvent)).scalar_one()
    assert event.ip_address == "198.51.100.4"


def test_webhook_endpoint_unknown_provider(client, engine):
    response = client.post("/webhooks/unknown", data=json.dumps({}))

    assert response.status_code == 400
    assert response.get_json()["code"] == "INVALID_REQUEST"
