"""
Payment orchestration.

``PaymentOrchestrator.process_payment`` is the single entry point for new
payments: validate, score, persist, dispatch to the provider rail. Retries of
transient provider failures re-enter through ``retry_initiate`` and operate on
the existing transaction only.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

import sentry_sdk

from paygate.audit import audit_event
from paygate.errors import (
    FraudSuspected,
    InvalidRequest,
    InvalidTransition,
    ProviderRejected,
    ProviderUnavailable,
)
from paygate.extensions import db
from paygate.models import PaymentProvider, SubscriptionPlan, TransactionStatus
from paygate.observability import get_metrics
from paygate.providers import PaymentRequest

logger = logging.getLogger(__name__)

FRAUD_FAILURE_REASON = "fraud_suspected"
RETRY_EXHAUSTED_REASON = "provider_unavailable"


@dataclass
class CheckoutRequest:
    """A client's request to pay for a plan."""
    user_id: str
    plan_id: str
    method: str
    amount: Any
    currency: str = "USD"
    ip_address: Optional[str] = None
    payment_method_id: Optional[str] = None
    pay_currency: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "CheckoutRequest":
        return cls(
            user_id=data.get("user_id"),
            plan_id=data.get("plan_id"),
            method=data.get("method"),
            amount=data.get("amount"),
            currency=data.get("currency") or "USD",
            ip_address=data.get("ip_address"),
            payment_method_id=data.get("payment_method_id"),
            pay_currency=data.get("pay_currency"),
            return_url=data.get("return_url"),
            cancel_url=data.get("cancel_url"),
        )


@dataclass
class PaymentResult:
    transaction_id: str
    status: TransactionStatus
    provider_continuation: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "status": self.status.value,
            "provider_continuation": self.provider_continuation,
        }


class PaymentOrchestrator:
    def __init__(self, store, adapters, fraud_detector, settlement, notifications,
                 retry_scheduler: Callable[[str, int], bool] = None):
        self.store = store
        self.adapters = adapters
        self.fraud_detector = fraud_detector
        self.settlement = settlement
        self.notifications = notifications
        self.retry_scheduler = retry_scheduler

    # ------------------------------------------------------------------
    # New payments
    # ------------------------------------------------------------------

    def process_payment(self, request) -> PaymentResult:
        if isinstance(request, dict):
            request = CheckoutRequest.from_dict(request)

        provider, amount, currency = self._validate(request)
        user_id = str(request.user_id)

        signals = self.store.fraud_signals(
            user_id=user_id,
            amount=amount,
            ip_address=request.ip_address,
            velocity_window_minutes=self.fraud_detector.policy.velocity_window_minutes,
        )
        score = self.fraud_detector.score(signals)
        audit_event(
            "fraud_scored",
            user_id=user_id,
            provider=provider.value,
            score=score,
            reasons=self.fraud_detector.reasons(signals),
        )

        if self.fraud_detector.is_fraudulent(score):
            txn = self.store.create(
                user_id=user_id,
                plan_id=request.plan_id,
                amount=amount,
                currency=currency,
                provider=provider,
                status=TransactionStatus.FAILED,
                fraud_score=score,
                ip_address=request.ip_address,
                failure_reason=FRAUD_FAILURE_REASON,
            )
            get_metrics().record_fraud_rejection()
            logger.warning(
                "Payment rejected by fraud gate",
                extra={"transaction_id": txn.id, "user_id": user_id, "fraud_score": score},
            )
            self.notifications.payment_failed(txn, FRAUD_FAILURE_REASON)
            raise FraudSuspected(
                "Payment flagged for manual review",
                transaction_id=txn.id,
                score=score,
            )

        txn = self.store.create(
            user_id=user_id,
            plan_id=request.plan_id,
            amount=amount,
            currency=currency,
            provider=provider,
            fraud_score=score,
            ip_address=request.ip_address,
            initiation_params={
                "payment_method_id": request.payment_method_id,
                "pay_currency": request.pay_currency,
                "return_url": request.return_url,
                "cancel_url": request.cancel_url,
            },
        )
        logger.info(
            "Payment transaction created",
            extra={"transaction_id": txn.id, "user_id": user_id, "provider": provider.value},
        )

        try:
            return self._initiate(txn)
        except ProviderUnavailable as e:
            scheduled = self._schedule_retry(txn.id, 1)
            logger.warning(
                f"Provider unavailable, retry {'scheduled' if scheduled else 'not scheduled'}",
                extra={"transaction_id": txn.id, "provider": provider.value, "error": e.message},
            )
            return PaymentResult(
                transaction_id=txn.id,
                status=TransactionStatus.PENDING,
                provider_continuation={"retry_scheduled": scheduled},
            )

    def _validate(self, request: CheckoutRequest):
        missing = [name for name in ("user_id", "plan_id", "method") if not getattr(request, name)]
        if request.amount in (None, ""):
            missing.append("amount")
        if missing:
            raise InvalidRequest(f"Missing required field(s): {', '.join(missing)}", fields=missing)

        try:
            amount = Decimal(str(request.amount))
        except (InvalidOperation, ValueError) as e:
            raise InvalidRequest("Amount must be a number", amount=request.amount) from e
        if not amount.is_finite() or amount <= 0:
            raise InvalidRequest("Amount must be greater than 0", amount=request.amount)

        currency = (request.currency or "").strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise InvalidRequest("Currency must be an ISO 4217 code", currency=request.currency)

        provider = PaymentProvider.parse(request.method)
        if provider is None:
            raise InvalidRequest(f"Unknown payment method {request.method}", method=request.method)
        if provider not in self.adapters:
            raise InvalidRequest(f"Payment method {provider.value} is not available", method=provider.value)
        if provider is PaymentProvider.CARD and not request.payment_method_id:
            raise InvalidRequest("Card payments require a payment method", field="payment_method_id")

        plan = db.session.get(SubscriptionPlan, request.plan_id)
        if plan is None or not plan.active:
            raise InvalidRequest(f"Unknown plan {request.plan_id}", plan_id=request.plan_id)

        return provider, amount, currency

    # ------------------------------------------------------------------
    # Provider dispatch
    # ------------------------------------------------------------------

    def _initiate(self, txn) -> PaymentResult:
        """Call the provider for a pending transaction and apply what it answers."""
        adapter = self.adapters[txn.provider_enum]
        params = txn.initiation_params or {}
        request = PaymentRequest(
            transaction_id=txn.id,
            user_id=txn.user_id,
            plan_id=txn.plan_id,
            amount=txn.amount_decimal,
            currency=txn.currency,
            description=f"Subscription {txn.plan_id}",
            payment_method_id=params.get("payment_method_id"),
            pay_currency=params.get("pay_currency"),
            return_url=params.get("return_url"),
            cancel_url=params.get("cancel_url"),
        )

        try:
            result = adapter.initiate(request)
        except ProviderRejected as e:
            self._fail(txn.id, e.message)
            raise

        txn = self.store.attach_provider_reference(txn.id, result.provider_transaction_id, result.raw)

        if result.status in (TransactionStatus.COMPLETED, TransactionStatus.PROCESSING, TransactionStatus.FAILED):
            try:
                txn = self.settlement.apply(
                    txn.id,
                    result.status,
                    failure_reason="declined" if result.status is TransactionStatus.FAILED else None,
                )
            except InvalidTransition as e:
                # A webhook got there first
                logger.debug(
                    "Synchronous provider status already applied",
                    extra={"transaction_id": txn.id, "current_status": e.current_status},
                )
                txn = self.store.get(txn.id)

        return PaymentResult(
            transaction_id=txn.id,
            status=txn.status_enum,
            provider_continuation=result.extra,
        )

    def _fail(self, transaction_id: str, reason: str):
        try:
            self.settlement.apply(
                transaction_id,
                TransactionStatus.FAILED,
                failure_reason=(reason or "rejected")[:255],
            )
        except InvalidTransition:
            logger.debug("Transaction already left pending", extra={"transaction_id": transaction_id})

    def _schedule_retry(self, transaction_id: str, attempt: int) -> bool:
        if self.retry_scheduler is None:
            logger.error("No retry queue configured", extra={"transaction_id": transaction_id})
            return False
        scheduled = self.retry_scheduler(transaction_id, attempt)
        if not scheduled:
            logger.error(
                "Retry queue full, transaction left to expire",
                extra={"transaction_id": transaction_id},
            )
        return scheduled

    # ------------------------------------------------------------------
    # Retry queue entry points
    # ------------------------------------------------------------------

    def retry_initiate(self, transaction_id: str, attempt: int) -> Optional[PaymentResult]:
        """
        Replay the provider call for a still-pending transaction.

        Returns None when the attempt was already claimed or the transaction
        moved on. ``ProviderUnavailable`` propagates so the queue reschedules.
        """
        if not self.store.claim_retry(transaction_id, attempt):
            logger.debug(
                "Retry attempt not claimed",
                extra={"transaction_id": transaction_id, "attempt": attempt},
            )
            return None

        txn = self.store.get(transaction_id)
        if txn is None or txn.status_enum is not TransactionStatus.PENDING:
            return None
        if txn.is_expired():
            logger.info("Skipping retry for expired transaction", extra={"transaction_id": transaction_id})
            return None

        logger.info(
            "Retrying provider initiation",
            extra={"transaction_id": transaction_id, "attempt": attempt, "provider": txn.provider},
        )
        try:
            return self._initiate(txn)
        except ProviderRejected:
            return PaymentResult(transaction_id=transaction_id, status=TransactionStatus.FAILED)

    def abandon(self, transaction_id: str, attempts: int = None):
        """Give up on a transaction whose retries are exhausted."""
        try:
            txn = self.settlement.apply(
                transaction_id,
                TransactionStatus.FAILED,
                expected=[TransactionStatus.PENDING],
                failure_reason=RETRY_EXHAUSTED_REASON,
            )
        except InvalidTransition:
            logger.debug("Exhausted transaction already resolved", extra={"transaction_id": transaction_id})
            return None

        logger.error(
            "Provider retries exhausted, transaction failed",
            extra={"transaction_id": transaction_id, "attempts": attempts, "provider": txn.provider},
        )
        audit_event("retries_exhausted", transaction_id=transaction_id, attempts=attempts)
        sentry_sdk.capture_message(
            f"Payment {transaction_id} failed after {attempts} provider retries",
            level="error",
        )
        return txn

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_status(self, transaction_id: str) -> dict:
        return self.store.get_or_raise(transaction_id).to_dict()
