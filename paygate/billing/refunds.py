import logging
from decimal import Decimal, InvalidOperation

from paygate.audit import audit_event
from paygate.errors import InvalidRequest, InvalidTransition, ProviderRejected
from paygate.models import TransactionStatus
from paygate.utils.locks import LockTimeout, keyed_lock

logger = logging.getLogger(__name__)


class RefundProcessor:
    """Refund completed transactions and revoke what they paid for."""

    def __init__(self, store, adapters, activator, notifications, revoke_immediately=False,
                 lock_timeout: float = 0):
        self.store = store
        self.adapters = adapters
        self.activator = activator
        self.notifications = notifications
        self.revoke_immediately = revoke_immediately
        self.lock_timeout = lock_timeout

    def refund(self, transaction_id: str, amount=None):
        """
        Refund ``amount`` (default: everything charged) of a completed transaction.

        One refund per transaction is in flight at a time; a second caller is
        turned away before anything reaches the provider.
        """
        acquired = False
        try:
            with keyed_lock(f"refund:{transaction_id}", timeout=self.lock_timeout):
                acquired = True
                return self._refund(transaction_id, amount)
        except LockTimeout as e:
            if acquired:
                raise
            raise InvalidTransition(
                "A refund for this transaction is already in progress",
                transaction_id=transaction_id,
                requested_status=TransactionStatus.REFUNDED.value,
            ) from e

    def _refund(self, transaction_id: str, amount):
        txn = self.store.get_or_raise(transaction_id)

        if txn.status_enum is not TransactionStatus.COMPLETED:
            raise InvalidTransition(
                f"Only completed transactions can be refunded (transaction is {txn.status})",
                transaction_id=transaction_id,
                current_status=txn.status,
                requested_status=TransactionStatus.REFUNDED.value,
            )

        charged = txn.amount_decimal
        try:
            refund_amount = charged if amount is None else Decimal(str(amount))
        except (InvalidOperation, ValueError) as e:
            raise InvalidRequest("Refund amount is not a number", amount=amount) from e

        if refund_amount <= 0 or refund_amount > charged:
            raise InvalidRequest(
                "Refund amount must be positive and not exceed the charged amount",
                amount=refund_amount,
                charged=charged,
            )

        adapter = self.adapters.get(txn.provider_enum)
        if adapter is None:
            raise ProviderRejected(f"Provider {txn.provider} is not configured", provider=txn.provider)

        result = adapter.refund(txn.provider_transaction_id, refund_amount, txn.currency)
        if not result.success:
            logger.warning(
                "Provider refused refund",
                extra={"transaction_id": transaction_id, "provider": txn.provider},
            )
            raise ProviderRejected(
                result.provider_response.get("error", "Refund rejected by provider"),
                transaction_id=transaction_id,
                provider=txn.provider,
            )

        txn = self.store.transition(
            transaction_id,
            [TransactionStatus.COMPLETED],
            TransactionStatus.REFUNDED,
            refunded_amount=refund_amount,
            provider_response=result.provider_response,
        )

        full_refund = refund_amount >= charged
        if full_refund:
            self.activator.cancel_for_transaction(transaction_id, immediate=self.revoke_immediately)

        audit_event(
            "refund_processed",
            transaction_id=transaction_id,
            amount=str(refund_amount),
            full_refund=full_refund,
        )
        self.notifications.refund_processed(txn, refund_amount)
        return txn
