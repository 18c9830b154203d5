import logging
import time
from decimal import Decimal
from typing import Optional

import stripe

from paygate.errors import InvalidRequest, ProviderRejected, ProviderUnavailable
from paygate.models import PaymentProvider, TransactionStatus
from paygate.observability import get_metrics
from paygate.providers.base import (
    InitiateResult,
    PaymentRequest,
    ProviderAdapter,
    RefundResult,
    WebhookEvent,
    to_minor_units,
)

logger = logging.getLogger(__name__)

INTENT_STATUSES = {
    "succeeded": TransactionStatus.COMPLETED,
    "processing": TransactionStatus.PROCESSING,
    "requires_action": TransactionStatus.PENDING,
    "requires_confirmation": TransactionStatus.PENDING,
    "requires_capture": TransactionStatus.PROCESSING,
    "requires_payment_method": TransactionStatus.FAILED,
    "canceled": TransactionStatus.FAILED,
}

WEBHOOK_EVENTS = {
    "payment_intent.succeeded": TransactionStatus.COMPLETED,
    "payment_intent.processing": TransactionStatus.PROCESSING,
    "payment_intent.payment_failed": TransactionStatus.FAILED,
    "payment_intent.canceled": TransactionStatus.FAILED,
}


def _as_dict(stripe_object) -> dict:
    for attr in ("to_dict_recursive", "to_dict"):
        method = getattr(stripe_object, attr, None)
        if callable(method):
            return method()
    return dict(stripe_object)


class CardAdapter(ProviderAdapter):
    """Card payments through Stripe PaymentIntents, confirmed immediately."""

    provider = PaymentProvider.CARD
    signature_header = "Stripe-Signature"

    def __init__(self, api_key: str, webhook_secret: str, tolerance: int = 300, timeout: float = 20):
        super().__init__(timeout=timeout)
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def initiate(self, request: PaymentRequest) -> InitiateResult:
        if not request.payment_method_id:
            raise InvalidRequest("Card payments require a payment method", field="payment_method_id")

        started = time.monotonic()
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=to_minor_units(request.amount, request.currency),
                currency=request.currency.lower(),
                payment_method=request.payment_method_id,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                description=request.description,
                metadata={
                    "transaction_id": request.transaction_id,
                    "user_id": request.user_id,
                    "plan_id": request.plan_id,
                },
                idempotency_key=request.transaction_id,
            )
        except stripe.CardError as e:
            self._record("initiate", "rejected", started)
            logger.info(
                "Card declined",
                extra={"transaction_id": request.transaction_id, "decline_code": getattr(e, "code", None)},
            )
            raise ProviderRejected(e.user_message or "Card declined", provider=self.name,
                                   decline_code=getattr(e, "code", None)) from e
        except (stripe.InvalidRequestError, stripe.AuthenticationError, stripe.PermissionError) as e:
            self._record("initiate", "rejected", started)
            raise ProviderRejected(str(e), provider=self.name) from e
        except stripe.StripeError as e:
            # APIConnectionError, RateLimitError, APIError
            self._record("initiate", "unavailable", started)
            logger.warning(
                f"Stripe unavailable: {e}",
                extra={"transaction_id": request.transaction_id, "stripe_error": type(e).__name__},
            )
            raise ProviderUnavailable("Stripe is unavailable", provider=self.name) from e

        self._record("initiate", "ok", started)
        raw = _as_dict(intent)
        status = INTENT_STATUSES.get(intent.status, TransactionStatus.PENDING)

        extra = {}
        if intent.status == "requires_action":
            extra["client_secret"] = raw.get("client_secret")
            extra["next_action"] = raw.get("next_action")

        logger.info(
            "Stripe payment intent created",
            extra={"transaction_id": request.transaction_id, "intent_id": intent.id, "intent_status": intent.status},
        )
        return InitiateResult(provider_transaction_id=intent.id, status=status, extra=extra, raw=raw)

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        if not signature_header or not self.webhook_secret:
            return False
        payload = raw_payload.decode("utf-8") if isinstance(raw_payload, bytes) else raw_payload
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature_header, self.webhook_secret, tolerance=self.tolerance
            )
        except stripe.SignatureVerificationError:
            return False
        return True

    def map_webhook_event(self, payload: dict) -> Optional[WebhookEvent]:
        event_type = payload.get("type")
        if not event_type:
            raise InvalidRequest("Stripe event without a type")

        new_status = WEBHOOK_EVENTS.get(event_type)
        if new_status is None:
            return None

        intent = (payload.get("data") or {}).get("object") or {}
        intent_id = intent.get("id")
        if not intent_id:
            raise InvalidRequest("Stripe event without a payment intent id", event_type=event_type)
        return WebhookEvent(external_txn_id=intent_id, new_status=new_status, event_type=event_type)

    def refund(self, provider_transaction_id: str, amount: Decimal, currency: str) -> RefundResult:
        minor = to_minor_units(amount, currency)
        started = time.monotonic()
        try:
            refund = stripe.Refund.create(
                api_key=self.api_key,
                payment_intent=provider_transaction_id,
                amount=minor,
                idempotency_key=f"refund-{provider_transaction_id}-{minor}",
            )
        except (stripe.CardError, stripe.InvalidRequestError) as e:
            self._record("refund", "rejected", started)
            return RefundResult(success=False, provider_response={"error": str(e)})
        except stripe.StripeError as e:
            self._record("refund", "unavailable", started)
            raise ProviderUnavailable("Stripe is unavailable", provider=self.name) from e

        self._record("refund", "ok", started)
        return RefundResult(
            success=refund.status in ("succeeded", "pending"),
            provider_response=_as_dict(refund),
        )

    def _record(self, operation, outcome, started):
        get_metrics().record_provider_call(self.name, operation, outcome, time.monotonic() - started)
