import logging

from paygate.errors import InvalidTransition
from paygate.models import TransactionStatus
from paygate.billing.state_machine import predecessors

logger = logging.getLogger(__name__)


class Settlement:
    """
    Apply a provider-reported outcome to a transaction.

    The side effects (activation, notifications) run only when this call
    performed the transition. A lost compare-and-set raises ``InvalidTransition``
    and triggers nothing, except that a repeated completion re-runs the
    idempotent activation so a completed payment always ends up with its
    subscription.
    """

    def __init__(self, store, activator, notifications):
        self.store = store
        self.activator = activator
        self.notifications = notifications

    def apply(self, transaction_id: str, new_status: TransactionStatus, expected=None, **fields):
        new_status = TransactionStatus(new_status)
        expected = expected or predecessors(new_status)
        try:
            txn = self.store.transition(transaction_id, expected, new_status, **fields)
        except InvalidTransition as e:
            if (new_status is TransactionStatus.COMPLETED
                    and e.current_status == TransactionStatus.COMPLETED.value):
                self.ensure_activated(transaction_id)
            raise

        if new_status is TransactionStatus.COMPLETED:
            self._activate(txn)
            self.notifications.payment_completed(txn)
        elif new_status is TransactionStatus.FAILED:
            self.notifications.payment_failed(txn)

        return txn

    def ensure_activated(self, transaction_id: str):
        """Activate the subscription of an already completed transaction, if missing."""
        txn = self.store.get(transaction_id)
        if txn is None or txn.status_enum is not TransactionStatus.COMPLETED:
            return None
        return self._activate(txn)

    def _activate(self, txn):
        try:
            return self.activator.activate(txn.user_id, txn.plan_id, txn.id)
        except Exception:
            logger.exception(
                "Activation failed for completed transaction",
                extra={"transaction_id": txn.id, "user_id": txn.user_id},
            )
            raise
