import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from paygate.audit import audit_event
from paygate.errors import InvalidRequest
from paygate.extensions import db
from paygate.models import SubscriptionPlan, SubscriptionStatus, UserSubscription
from paygate.utils.clock import utcnow
from paygate.utils.locks import keyed_lock

logger = logging.getLogger(__name__)


def _lock_key(user_id) -> str:
    return f"subscription:{user_id}"


class SubscriptionActivator:
    """
    Grants, supersedes and revokes subscriptions.

    All writes for one user happen under that user's lock and inside a single
    database transaction, so a user never ends up with two active rows and a
    transaction never activates twice.
    """

    def __init__(self, notifications, lock_timeout: float = 30):
        self.notifications = notifications
        self.lock_timeout = lock_timeout

    def activate(self, user_id, plan_id, transaction_id) -> UserSubscription:
        """
        Activate ``plan_id`` for ``user_id`` on behalf of a completed transaction.

        Idempotent per ``transaction_id``: a second call returns the row created
        by the first one without touching anything.
        """
        user_id = str(user_id)
        created = False

        with keyed_lock(_lock_key(user_id), timeout=self.lock_timeout):
            subscription = self._for_transaction(transaction_id)
            if subscription is None:
                plan = db.session.get(SubscriptionPlan, plan_id)
                if plan is None:
                    raise InvalidRequest(f"Unknown plan {plan_id}", plan_id=plan_id)

                now = utcnow()
                try:
                    db.session.execute(
                        update(UserSubscription)
                        .where(
                            UserSubscription.user_id == user_id,
                            UserSubscription.status == SubscriptionStatus.ACTIVE.value,
                        )
                        .values(status=SubscriptionStatus.EXPIRED.value, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    subscription = UserSubscription(
                        user_id=user_id,
                        plan_id=plan.id,
                        transaction_id=transaction_id,
                        start_date=now,
                        end_date=UserSubscription.period_end(now, plan),
                        status=SubscriptionStatus.ACTIVE.value,
                        created_at=now,
                        updated_at=now,
                    )
                    db.session.add(subscription)
                    db.session.commit()
                    created = True
                except IntegrityError:
                    # Another process activated this transaction first.
                    db.session.rollback()
                    subscription = self._for_transaction(transaction_id)
                    if subscription is None:
                        raise
                except SQLAlchemyError:
                    db.session.rollback()
                    raise

        if created:
            logger.info(
                "Subscription activated",
                extra={"user_id": user_id, "plan_id": plan_id, "transaction_id": transaction_id},
            )
            audit_event(
                "subscription_activated",
                user_id=user_id,
                plan_id=plan_id,
                transaction_id=transaction_id,
                end_date=subscription.end_date.isoformat(),
            )
            self.notifications.subscription_activated(subscription)
        else:
            logger.debug("Subscription already activated", extra={"transaction_id": transaction_id})

        return subscription

    def cancel_for_transaction(self, transaction_id, immediate: bool = False) -> Optional[UserSubscription]:
        """
        Cancel the subscription created by ``transaction_id``.

        Access ends at once only when ``immediate``; otherwise the user keeps
        the paid period and the row simply stops renewing.
        """
        subscription = self._for_transaction(transaction_id)
        if subscription is None:
            return None

        with keyed_lock(_lock_key(subscription.user_id), timeout=self.lock_timeout):
            now = utcnow()
            values = {
                "status": SubscriptionStatus.CANCELLED.value,
                "cancelled_at": now,
                "auto_renew": False,
                "updated_at": now,
            }
            if immediate:
                values["end_date"] = now

            try:
                result = db.session.execute(
                    update(UserSubscription)
                    .where(
                        UserSubscription.id == subscription.id,
                        UserSubscription.status != SubscriptionStatus.CANCELLED.value,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                raise

        if result.rowcount:
            logger.info(
                "Subscription cancelled",
                extra={"transaction_id": transaction_id, "user_id": subscription.user_id, "immediate": immediate},
            )
            audit_event(
                "subscription_cancelled",
                transaction_id=transaction_id,
                user_id=subscription.user_id,
                immediate=immediate,
            )
        return self._for_transaction(transaction_id)

    def current_subscription(self, user_id) -> Optional[UserSubscription]:
        return db.session.execute(
            select(UserSubscription)
            .where(
                UserSubscription.user_id == str(user_id),
                UserSubscription.status == SubscriptionStatus.ACTIVE.value,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def expire_lapsed(self, now=None) -> int:
        """Mark active subscriptions past their end date as expired."""
        now = now or utcnow()
        try:
            result = db.session.execute(
                update(UserSubscription)
                .where(
                    UserSubscription.status == SubscriptionStatus.ACTIVE.value,
                    UserSubscription.end_date <= now,
                )
                .values(status=SubscriptionStatus.EXPIRED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

        if result.rowcount:
            logger.info(f"Expired {result.rowcount} lapsed subscriptions",
                        extra={"expired_count": result.rowcount})
        return result.rowcount

    def _for_transaction(self, transaction_id) -> Optional[UserSubscription]:
        return db.session.execute(
            select(UserSubscription)
            .where(UserSubscription.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
