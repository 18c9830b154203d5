import uuid
from decimal import Decimal
from enum import Enum

from sqlalchemy import CheckConstraint, Index, UniqueConstraint

from paygate.extensions import db
from paygate.utils.clock import utcnow


class PaymentProvider(str, Enum):
    CARD = "card"
    WALLET_APPROVAL = "wallet_approval"
    HOSTED_CHARGE = "hosted_charge"
    CRYPTO_ADDRESS = "crypto_address"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    EXPIRED = "expired"


def generate_transaction_id() -> str:
    return f"txn_{uuid.uuid4().hex}"


class PaymentTransaction(db.Model):
    """One row per payment attempt."""

    __tablename__ = "payment_transactions"

    id = db.Column(db.String(40), primary_key=True, default=generate_transaction_id)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    plan_id = db.Column(db.String(64), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    provider = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=TransactionStatus.PENDING.value, index=True)

    provider_transaction_id = db.Column(db.String(128), nullable=True)
    provider_response = db.Column(db.JSON, nullable=True)
    initiation_params = db.Column(db.JSON, nullable=True, default=dict)

    fraud_score = db.Column(db.Float, nullable=False, default=0.0)
    failure_reason = db.Column(db.String(255), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True, index=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    refunded_amount = db.Column(db.Numeric(12, 2), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    expires_at = db.Column(db.DateTime, nullable=True, index=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'refunded', 'expired')",
            name="valid_transaction_status",
        ),
        UniqueConstraint("provider", "provider_transaction_id", name="uq_provider_reference"),
        Index("idx_txn_user_created", "user_id", "created_at"),
        Index("idx_txn_status_expires", "status", "expires_at"),
    )

    @property
    def provider_enum(self) -> PaymentProvider:
        return PaymentProvider(self.provider)

    @property
    def status_enum(self) -> TransactionStatus:
        return TransactionStatus(self.status)

    @property
    def amount_decimal(self) -> Decimal:
        return Decimal(str(self.amount))

    def is_expired(self, now=None) -> bool:
        now = now or utcnow()
        return bool(self.expires_at and self.expires_at <= now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "provider": self.provider,
            "status": self.status,
            "provider_transaction_id": self.provider_transaction_id,
            "fraud_score": self.fraud_score,
            "failure_reason": self.failure_reason,
            "refunded_amount": str(self.refunded_amount) if self.refunded_amount is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    def __repr__(self):
        return f"<PaymentTransaction {self.id} {self.provider} {self.status}>"
