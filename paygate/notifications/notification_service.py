# paygate/notifications/notification_service.py
"""
Fire-and-forget payment notifications.

The engine publishes blinker signals; the notification service (a separate
component) receives them through the Celery broker when dispatch is enabled.
Nothing here ever raises into payment processing.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from blinker import Namespace

logger = logging.getLogger(__name__)

_signals = Namespace()

payment_completed = _signals.signal("payment_completed")
payment_failed = _signals.signal("payment_failed")
subscription_activated = _signals.signal("subscription_activated")
refund_processed = _signals.signal("refund_processed")

EVENT_NAMES = {
    "payment_completed": payment_completed,
    "payment_failed": payment_failed,
    "subscription_activated": subscription_activated,
    "refund_processed": refund_processed,
}


class NotificationService:
    """Handle all notification emission for the engine"""

    def emit(self, event_name: str, **payload):
        signal = EVENT_NAMES[event_name]
        try:
            signal.send(self, **payload)
        except Exception:
            logger.exception(
                "Notification receiver failed",
                extra={"notification_event": event_name},
            )

    def payment_completed(self, transaction):
        self.emit(
            "payment_completed",
            transaction_id=transaction.id,
            user_id=transaction.user_id,
            amount=str(transaction.amount),
            currency=transaction.currency,
        )

    def payment_failed(self, transaction, reason=None):
        self.emit(
            "payment_failed",
            transaction_id=transaction.id,
            user_id=transaction.user_id,
            reason=reason or transaction.failure_reason,
        )

    def subscription_activated(self, subscription):
        self.emit(
            "subscription_activated",
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            plan_id=subscription.plan_id,
            end_date=subscription.end_date.isoformat(),
        )

    def refund_processed(self, transaction, amount):
        self.emit(
            "refund_processed",
            transaction_id=transaction.id,
            user_id=transaction.user_id,
            amount=str(amount),
            currency=transaction.currency,
        )


class CeleryNotificationDispatcher:
    """
    Forward every engine signal to the notification service's Celery task.

    Sends run on a small worker pool so a slow broker never delays a payment
    or webhook response. At most ``max_pending`` sends wait at once; beyond
    that notifications are dropped and logged.
    """

    def __init__(self, celery_app, task_name: str, max_workers: int = 2, max_pending: int = 1000):
        self.celery_app = celery_app
        self.task_name = task_name
        self.max_workers = max_workers
        self._pending = threading.BoundedSemaphore(max_pending)
        self._executor = None
        self._receivers = {}

    def connect(self):
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="notifications")
        for event_name, signal in EVENT_NAMES.items():
            receiver = self._make_receiver(event_name)
            self._receivers[event_name] = receiver
            signal.connect(receiver, weak=False)
        return self

    def disconnect(self, wait: bool = False):
        for event_name, receiver in self._receivers.items():
            EVENT_NAMES[event_name].disconnect(receiver)
        self._receivers.clear()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def _make_receiver(self, event_name):
        def receiver(sender, **payload):
            executor = self._executor
            if executor is None:
                return
            if not self._pending.acquire(blocking=False):
                logger.warning(
                    f"Notification backlog full, dropping {event_name}",
                    extra={"notification_event": event_name},
                )
                return
            future = executor.submit(self._send, event_name, payload)
            future.add_done_callback(lambda _: self._pending.release())
        return receiver

    def _send(self, event_name, payload):
        try:
            self.celery_app.send_task(
                self.task_name,
                kwargs={"event": event_name, "payload": payload},
                queue="notifications",
            )
            logger.debug("Notification dispatched", extra={"notification_event": event_name})
        except Exception as e:
            logger.warning(
                f"Failed to dispatch notification {event_name}: {e}",
                extra={"notification_event": event_name},
            )
