from paygate.notifications.notification_service import (
    EVENT_NAMES,
    NotificationService,
    payment_completed,
    payment_failed,
    refund_processed,
    subscription_activated,
)

__all__ = [
    "EVENT_NAMES",
    "NotificationService",
    "payment_completed",
    "payment_failed",
    "refund_processed",
    "subscription_activated",
]
