from datetime import timedelta
from enum import Enum

from sqlalchemy import Index, text

from paygate.extensions import db
from paygate.utils.clock import utcnow


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SubscriptionPlan(db.Model):
    """Static plan catalogue. Read-only to the payment engine."""

    __tablename__ = "subscription_plans"

    id = db.Column(db.String(64), primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    duration_days = db.Column(db.Integer, nullable=False, default=30)
    max_devices = db.Column(db.Integer, nullable=False, default=1)
    # None means unlimited
    bandwidth_limit = db.Column(db.BigInteger, nullable=True)
    active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price": str(self.price),
            "currency": self.currency,
            "duration_days": self.duration_days,
            "max_devices": self.max_devices,
            "bandwidth_limit": self.bandwidth_limit,
        }


class UserSubscription(db.Model):
    """One row per activation period. Written only by the subscription activator."""

    __tablename__ = "user_subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    plan_id = db.Column(db.String(64), db.ForeignKey("subscription_plans.id"), nullable=False)
    transaction_id = db.Column(
        db.String(40), db.ForeignKey("payment_transactions.id"), nullable=False, unique=True
    )
    start_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    end_date = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    auto_renew = db.Column(db.Boolean, nullable=False, default=False)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    plan = db.relationship("SubscriptionPlan", lazy="joined")

    __table_args__ = (
        # At most one active subscription per user.
        Index(
            "uq_active_subscription_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("idx_subscription_user_status", "user_id", "status"),
    )

    @staticmethod
    def period_end(start, plan: SubscriptionPlan):
        return start + timedelta(days=plan.duration_days)

    def days_remaining(self, now=None) -> int:
        now = now or utcnow()
        return max(0, (self.end_date - now).days)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "transaction_id": self.transaction_id,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "status": self.status,
            "auto_renew": self.auto_renew,
        }

    def __repr__(self):
        return f"<UserSubscription user={self.user_id} plan={self.plan_id} {self.status}>"
