import pytest
from flask import Blueprint

from paygate.errors import (
    FraudSuspected,
    InvalidRequest,
    InvalidTransition,
    PaymentError,
    ProviderRejected,
    ProviderUnavailable,
    SignatureInvalid,
    TransactionNotFound,
)


@pytest.mark.parametrize("error,status,code", [
    (InvalidRequest("bad"), 400, "INVALID_REQUEST"),
    (TransactionNotFound("gone"), 404, "TRANSACTION_NOT_FOUND"),
    (FraudSuspected("review", transaction_id="txn_1", score=0.9), 403, "FRAUD_SUSPECTED"),
    (ProviderRejected("declined"), 402, "PROVIDER_REJECTED"),
    (ProviderUnavailable("down"), 503, "PROVIDER_UNAVAILABLE"),
    (InvalidTransition("no", current_status="failed"), 409, "INVALID_TRANSITION"),
    (SignatureInvalid("forged"), 400, "SIGNATURE_INVALID"),
])
def test_payment_errors_render_as_json(app, error, status, code):
    """Test every engine error maps to its HTTP status and stable code"""
    bp = Blueprint("boom", __name__)

    @bp.route("/boom")
    def boom():
        raise error

    app.register_blueprint(bp)
    response = app.test_client().get("/boom")

    assert response.status_code == status
    data = response.get_json()
    assert data["code"] == code
    assert data["error"] == type(error).__name__
    assert data["path"] == "/boom"


def test_error_context_is_serialized():
    error = FraudSuspected("review", transaction_id="txn_1", score=0.9)

    assert error.to_dict()["details"] == {"transaction_id": "txn_1", "score": "0.9"}
    assert "details" not in InvalidRequest("bad").to_dict()


def test_default_message_from_docstring():
    assert ProviderUnavailable().message == ProviderUnavailable.__doc__


def test_only_unavailable_is_retryable():
    assert ProviderUnavailable.retryable
    assert not ProviderRejected.retryable
    assert not PaymentError.retryable


def test_not_found(client):
    response = client.get("/nonexistent-route")

    assert response.status_code == 404
    assert response.get_json()["error"] == "Not found"


def test_method_not_allowed(client):
    response = client.get("/webhooks/card")

    assert response.status_code == 405
    assert response.get_json()["path"] == "/webhooks/card"


def test_request_id_header_round_trip(client):
    response = client.get("/nonexistent-route", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
