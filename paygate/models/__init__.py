from paygate.models.payment import (
    PaymentProvider,
    PaymentTransaction,
    TransactionStatus,
    generate_transaction_id,
)
from paygate.models.security_event import HIGH_SEVERITIES, SecurityEvent
from paygate.models.subscription import SubscriptionPlan, SubscriptionStatus, UserSubscription

__all__ = [
    "HIGH_SEVERITIES",
    "PaymentProvider",
    "PaymentTransaction",
    "SecurityEvent",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "TransactionStatus",
    "UserSubscription",
    "generate_transaction_id",
]
