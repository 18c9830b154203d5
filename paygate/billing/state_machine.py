import logging
from datetime import timedelta
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from paygate.audit import audit_event
from paygate.errors import InvalidTransition, TransactionNotFound
from paygate.extensions import db
from paygate.models import (
    HIGH_SEVERITIES,
    PaymentTransaction,
    SecurityEvent,
    TransactionStatus,
)
from paygate.observability import get_metrics
from paygate.services.fraud_detector import FraudSignals
from paygate.utils.clock import utcnow

logger = logging.getLogger(__name__)

S = TransactionStatus

TRANSITIONS = {
    S.PENDING: frozenset({S.PROCESSING, S.COMPLETED, S.FAILED, S.EXPIRED}),
    S.PROCESSING: frozenset({S.COMPLETED, S.FAILED}),
    S.COMPLETED: frozenset({S.REFUNDED}),
    S.FAILED: frozenset(),
    S.REFUNDED: frozenset(),
    S.EXPIRED: frozenset(),
}


def can_transition(current: TransactionStatus, new: TransactionStatus) -> bool:
    return TransactionStatus(new) in TRANSITIONS[TransactionStatus(current)]


def predecessors(new: TransactionStatus) -> frozenset:
    """States from which ``new`` may legally be reached."""
    return frozenset(state for state, targets in TRANSITIONS.items() if new in targets)


class TransactionStore:
    """
    Authoritative record of a payment's lifecycle.

    This class is the ONLY place where payment rows change state. Every status
    change is a single compare-and-set UPDATE: it lands only if the row is still
    in one of the expected states, otherwise ``InvalidTransition`` is raised and
    nothing is written. Duplicate webhooks and racing workers are resolved here.
    """

    def __init__(self, expiry_minutes: int = 30):
        self.expiry_window = timedelta(minutes=expiry_minutes)

    # ------------------------------------------------------------------
    # Creation & lookup
    # ------------------------------------------------------------------

    def create(self, *, user_id, plan_id, amount, currency, provider,
               status=S.PENDING, fraud_score=0.0, ip_address=None,
               initiation_params=None, failure_reason=None) -> PaymentTransaction:
        now = utcnow()
        txn = PaymentTransaction(
            user_id=str(user_id),
            plan_id=plan_id,
            amount=amount,
            currency=currency,
            provider=provider.value if hasattr(provider, "value") else provider,
            status=TransactionStatus(status).value,
            fraud_score=fraud_score,
            ip_address=ip_address,
            initiation_params=initiation_params or {},
            failure_reason=failure_reason,
            created_at=now,
            updated_at=now,
            expires_at=now + self.expiry_window,
        )
        try:
            db.session.add(txn)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        audit_event(
            "transaction_created",
            transaction_id=txn.id,
            user_id=txn.user_id,
            provider=txn.provider,
            status=txn.status,
            fraud_score=fraud_score,
        )
        return txn

    def get(self, transaction_id: str) -> Optional[PaymentTransaction]:
        return db.session.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.id == transaction_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_or_raise(self, transaction_id: str) -> PaymentTransaction:
        txn = self.get(transaction_id)
        if txn is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found",
                                      transaction_id=transaction_id)
        return txn

    def find_by_provider_reference(self, provider, provider_transaction_id: str):
        provider = provider.value if hasattr(provider, "value") else provider
        return db.session.execute(
            select(PaymentTransaction)
            .where(
                PaymentTransaction.provider == provider,
                PaymentTransaction.provider_transaction_id == str(provider_transaction_id),
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def transition(self, transaction_id: str, expected: Iterable[TransactionStatus],
                   new_status: TransactionStatus, **fields) -> PaymentTransaction:
        """
        Compare-and-set ``status`` from any of ``expected`` to ``new_status``.

        Extra keyword arguments are written in the same UPDATE
        (provider_response, failure_reason, refunded_amount, ...).
        """
        new_status = TransactionStatus(new_status)
        allowed = [TransactionStatus(s) for s in expected if can_transition(s, new_status)]
        if not allowed:
            raise InvalidTransition(
                f"No legal transition into {new_status.value} from {sorted(s.value for s in expected)}",
                transaction_id=transaction_id,
                requested_status=new_status.value,
            )

        stmt = (
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction_id,
                PaymentTransaction.status.in_([s.value for s in allowed]),
            )
            .values(status=new_status.value, updated_at=utcnow(), **fields)
            .execution_options(synchronize_session=False)
        )

        try:
            result = db.session.execute(stmt)
            if result.rowcount != 1:
                db.session.rollback()
                current = db.session.execute(
                    select(PaymentTransaction.status).where(PaymentTransaction.id == transaction_id)
                ).scalar_one_or_none()
                if current is None:
                    raise TransactionNotFound(f"Transaction {transaction_id} not found",
                                              transaction_id=transaction_id)
                raise InvalidTransition(
                    f"Transaction {transaction_id} is {current}, cannot move to {new_status.value}",
                    transaction_id=transaction_id,
                    current_status=current,
                    requested_status=new_status.value,
                )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        get_metrics().record_transition(new_status.value)
        audit_event(
            "transaction_transition",
            transaction_id=transaction_id,
            from_states=[s.value for s in allowed],
            to_status=new_status.value,
        )
        return self.get(transaction_id)

    def attach_provider_reference(self, transaction_id: str, provider_transaction_id,
                                  provider_response=None) -> PaymentTransaction:
        """Record the provider's id for a transaction that does not have one yet."""
        values = {"updated_at": utcnow()}
        if provider_response is not None:
            values["provider_response"] = provider_response
        if provider_transaction_id is not None:
            values["provider_transaction_id"] = str(provider_transaction_id)

        stmt = (
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            db.session.execute(stmt)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return self.get(transaction_id)

    def claim_retry(self, transaction_id: str, attempt: int) -> bool:
        """
        Optimistically claim retry ``attempt`` for a still-pending transaction.

        Only one worker can move ``retry_count`` from ``attempt - 1`` to
        ``attempt``; everyone else gets False.
        """
        stmt = (
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction_id,
                PaymentTransaction.status == S.PENDING.value,
                PaymentTransaction.retry_count == attempt - 1,
            )
            .values(retry_count=attempt, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        try:
            claimed = db.session.execute(stmt).rowcount == 1
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return claimed

    def expire_stale(self, now=None) -> list:
        """Move every pending transaction past ``expires_at`` to expired."""
        now = now or utcnow()
        candidates = db.session.execute(
            select(PaymentTransaction.id).where(
                PaymentTransaction.status == S.PENDING.value,
                PaymentTransaction.expires_at.is_not(None),
                PaymentTransaction.expires_at <= now,
            )
        ).scalars().all()

        expired = []
        for transaction_id in candidates:
            try:
                self.transition(transaction_id, [S.PENDING], S.EXPIRED,
                                failure_reason="expired")
                expired.append(transaction_id)
            except InvalidTransition:
                logger.debug("Transaction advanced before expiry", extra={"transaction_id": transaction_id})

        if expired:
            logger.info(f"Expired {len(expired)} stale pending transactions",
                        extra={"expired_count": len(expired)})
        return expired

    # ------------------------------------------------------------------
    # Fraud history & security events
    # ------------------------------------------------------------------

    def fraud_signals(self, *, user_id, amount: Decimal, ip_address=None,
                      velocity_window_minutes: int = 5, now=None) -> FraudSignals:
        """Aggregate the history the fraud detector needs for one request."""
        now = now or utcnow()
        user_id = str(user_id)

        recent_count = db.session.execute(
            select(func.count(PaymentTransaction.id)).where(
                PaymentTransaction.user_id == user_id,
                PaymentTransaction.created_at >= now - timedelta(minutes=velocity_window_minutes),
            )
        ).scalar_one()

        average = db.session.execute(
            select(func.avg(PaymentTransaction.amount)).where(
                PaymentTransaction.user_id == user_id,
                PaymentTransaction.status == S.COMPLETED.value,
            )
        ).scalar_one_or_none()

        ip_incidents = 0
        if ip_address:
            ip_incidents = db.session.execute(
                select(func.count(SecurityEvent.id)).where(
                    SecurityEvent.ip_address == ip_address,
                    SecurityEvent.severity.in_(HIGH_SEVERITIES),
                )
            ).scalar_one()

        return FraudSignals(
            user_id=user_id,
            amount=Decimal(str(amount)),
            ip_address=ip_address,
            recent_transaction_count=recent_count,
            historical_average_amount=Decimal(str(average)) if average is not None else None,
            ip_incident_count=ip_incidents,
        )

    def payment_stats(self, days: int = 30, now=None) -> list:
        """Count, total and average amount per provider and status."""
        now = now or utcnow()
        rows = db.session.execute(
            select(
                PaymentTransaction.provider,
                PaymentTransaction.status,
                func.count(PaymentTransaction.id),
                func.sum(PaymentTransaction.amount),
                func.avg(PaymentTransaction.amount),
            )
            .where(PaymentTransaction.created_at >= now - timedelta(days=days))
            .group_by(PaymentTransaction.provider, PaymentTransaction.status)
            .order_by(PaymentTransaction.provider, PaymentTransaction.status)
        ).all()
        return [
            {
                "provider": provider,
                "status": status,
                "count": count,
                "total_amount": Decimal(str(total)).quantize(Decimal("0.01")) if total is not None else Decimal("0"),
                "average_amount": Decimal(str(average)).quantize(Decimal("0.01")) if average is not None else Decimal("0"),
            }
            for provider, status, count, total, average in rows
        ]

    def record_security_event(self, event_type: str, severity: str = "medium",
                              ip_address=None, **details) -> SecurityEvent:
        event = SecurityEvent(
            ip_address=ip_address,
            event_type=event_type,
            severity=severity,
            details=details,
        )
        try:
            db.session.add(event)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        logger.warning(
            f"Security event recorded: {event_type}",
            extra={"security_event": event_type, "severity": severity, "ip": ip_address},
        )
        return event
