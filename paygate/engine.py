import atexit
import logging

from flask import current_app, has_app_context

from paygate.billing.refunds import RefundProcessor
from paygate.billing.settlement import Settlement
from paygate.billing.state_machine import TransactionStore
from paygate.billing.subscription_activator import SubscriptionActivator
from paygate.models import PaymentProvider
from paygate.notifications import NotificationService
from paygate.providers import build_adapters
from paygate.services.fraud_detector import FraudDetector, FraudPolicy
from paygate.services.orchestrator import PaymentOrchestrator
from paygate.utils.clock import utcnow
from paygate.webhooks.ingestor import WebhookIngestor
from paygate.workers.retry_queue import RetryQueue

logger = logging.getLogger(__name__)

EXTENSION_KEY = "paygate"


class PaymentEngine:
    """Wires the engine components together for one Flask app."""

    def __init__(self, app, adapters=None):
        config = app.config
        self.app = app
        self.adapters = build_adapters(config) if adapters is None else dict(adapters)

        self.notifications = NotificationService()
        self.store = TransactionStore(expiry_minutes=config.get("TRANSACTION_EXPIRY_MINUTES", 30))
        self.fraud_detector = FraudDetector(FraudPolicy.from_config(config))
        self.activator = SubscriptionActivator(self.notifications)
        self.settlement = Settlement(self.store, self.activator, self.notifications)

        self.retry_queue = RetryQueue(
            handler=self._with_app_context(self._retry),
            sweeper=self._with_app_context(self.sweep_expired),
            on_exhausted=self._with_app_context(self._abandon),
            max_attempts=config.get("RETRY_MAX_ATTEMPTS", 5),
            backoff_base=config.get("RETRY_BACKOFF_BASE_SECONDS", 2),
            backoff_max=config.get("RETRY_BACKOFF_MAX_SECONDS", 300),
            maxsize=config.get("RETRY_QUEUE_MAXSIZE", 1000),
            tick_seconds=config.get("RETRY_TICK_SECONDS", 1),
            sweep_interval=config.get("EXPIRY_SWEEP_INTERVAL_SECONDS", 60),
        )

        self.orchestrator = PaymentOrchestrator(
            self.store,
            self.adapters,
            self.fraud_detector,
            self.settlement,
            self.notifications,
            retry_scheduler=self.retry_queue.enqueue,
        )
        self.ingestor = WebhookIngestor(self.store, self.adapters, self.settlement)
        self.refunds = RefundProcessor(
            self.store,
            self.adapters,
            self.activator,
            self.notifications,
            revoke_immediately=config.get("REFUND_REVOKES_IMMEDIATELY", False),
        )

    def _with_app_context(self, func):
        def wrapper(*args, **kwargs):
            if has_app_context():
                return func(*args, **kwargs)
            with self.app.app_context():
                return func(*args, **kwargs)
        wrapper.__name__ = getattr(func, "__name__", "wrapper")
        return wrapper

    def _retry(self, transaction_id, attempt):
        return self.orchestrator.retry_initiate(transaction_id, attempt)

    def _abandon(self, transaction_id, attempts):
        return self.orchestrator.abandon(transaction_id, attempts)

    def adapter_for(self, provider):
        return self.adapters.get(PaymentProvider.parse(provider))

    # Facade

    def process_payment(self, request):
        return self.orchestrator.process_payment(request)

    def handle_webhook(self, provider, raw_payload, signature_header, source_ip=None):
        return self.ingestor.handle_webhook(provider, raw_payload, signature_header, source_ip=source_ip)

    def refund(self, transaction_id, amount=None):
        return self.refunds.refund(transaction_id, amount)

    def get_status(self, transaction_id):
        return self.orchestrator.get_status(transaction_id)

    def sweep_expired(self, now=None):
        now = now or utcnow()
        expired = self.store.expire_stale(now)
        self.activator.expire_lapsed(now)
        return expired

    # Lifecycle

    def start(self):
        self.retry_queue.start()
        return self

    def stop(self):
        self.retry_queue.stop()


def init_engine(app, adapters=None) -> PaymentEngine:
    previous = app.extensions.get(EXTENSION_KEY)
    if previous is not None:
        previous.stop()

    engine = PaymentEngine(app, adapters=adapters)
    app.extensions[EXTENSION_KEY] = engine

    if app.config.get("RETRY_QUEUE_AUTOSTART"):
        engine.start()
        atexit.register(engine.stop)

    logger.info(
        "Payment engine initialized",
        extra={"providers": sorted(provider.value for provider in engine.adapters)},
    )
    return engine


def get_engine() -> PaymentEngine:
    return current_app.extensions[EXTENSION_KEY]
