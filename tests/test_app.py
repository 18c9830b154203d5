import threading
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest

from paygate import create_app
from paygate.config import ConfigurationError, get_config
from paygate.config.production import ProductionConfig
from paygate.config.validator import configured_providers, validate_configuration
from paygate.engine import get_engine
from paygate.notifications import NotificationService
from paygate.notifications.notification_service import CeleryNotificationDispatcher
from paygate.utils.clock import utcnow


def test_testing_config(app):
    assert app.config["TESTING"] is True
    assert app.config["RETRY_QUEUE_AUTOSTART"] is False
    assert get_engine().retry_queue.running is False


def test_unknown_environment():
    with pytest.raises(ConfigurationError):
        get_config("staging")


def test_production_refuses_invalid_configuration(monkeypatch):
    """Test the factory fails fast when production settings are incomplete"""
    monkeypatch.setattr(ProductionConfig, "SECRET_KEY", None)

    with pytest.raises(ConfigurationError):
        create_app("production")


def test_validator_reports_partial_provider(app):
    app.config["STRIPE_SECRET_KEY"] = "sk_test"
    app.config["STRIPE_WEBHOOK_SECRET"] = None

    assert validate_configuration(app) is False
    assert "card" not in configured_providers(app.config)


def test_sweep_task_expires_stale_transactions(engine, checkout):
    from paygate.workers.payment_tasks import sweep_expired_transactions

    result = engine.process_payment(checkout())

    with patch("paygate.engine.utcnow", return_value=utcnow() + timedelta(minutes=31)):
        outcome = sweep_expired_transactions.run()

    assert outcome == {"expired": [result.transaction_id]}
    assert engine.store.get(result.transaction_id).status == "expired"


def test_celery_dispatcher_forwards_signals():
    """Test engine notifications are handed to the Celery broker"""
    celery_app = Mock()
    dispatcher = CeleryNotificationDispatcher(celery_app, "notifications.deliver").connect()
    transaction = Mock(id="txn_1", user_id="user-1", failure_reason="declined")

    try:
        NotificationService().payment_failed(transaction)
    finally:
        dispatcher.disconnect(wait=True)

    celery_app.send_task.assert_called_once_with(
        "notifications.deliver",
        kwargs={"event": "payment_failed",
                "payload": {"transaction_id": "txn_1", "user_id": "user-1", "reason": "declined"}},
        queue="notifications",
    )


def test_dispatch_backlog_is_bounded():
    """Test notifications beyond the pending limit are dropped instead of piling up"""
    release = threading.Event()
    celery_app = Mock()
    celery_app.send_task.side_effect = lambda *args, **kwargs: release.wait(timeout=10)
    dispatcher = CeleryNotificationDispatcher(
        celery_app, "notifications.deliver", max_workers=1, max_pending=2
    ).connect()
    transaction = Mock(id="txn_1", user_id="user-1", failure_reason="declined")

    try:
        for _ in range(5):
            NotificationService().payment_failed(transaction)
    finally:
        release.set()
        dispatcher.disconnect(wait=True)

    assert celery_app.send_task.call_count == 2


def test_broker_failure_never_raises():
    celery_app = Mock()
    celery_app.send_task.side_effect = ConnectionError("broker down")

    CeleryNotificationDispatcher(celery_app, "notifications.deliver")._send("payment_completed", {})


def test_receiver_failure_does_not_propagate():
    from paygate.notifications import payment_completed

    def broken(sender, **payload):
        raise RuntimeError("receiver bug")

    payment_completed.connect(broken)
    try:
        NotificationService().payment_completed(Mock(id="txn_1", user_id="u", amount="5.00", currency="USD"))
    finally:
        payment_completed.disconnect(broken)
