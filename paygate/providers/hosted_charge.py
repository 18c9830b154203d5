import hashlib
import logging
from decimal import Decimal
from typing import Optional

from paygate.errors import InvalidRequest, ProviderRejected
from paygate.models import PaymentProvider, TransactionStatus
from paygate.providers.base import (
    InitiateResult,
    PaymentRequest,
    ProviderAdapter,
    RefundResult,
    WebhookEvent,
    format_amount,
    hmac_hexdigest,
    signatures_match,
)

logger = logging.getLogger(__name__)

COINBASE_API_BASE = "https://api.commerce.coinbase.com"

WEBHOOK_EVENTS = {
    "charge:pending": TransactionStatus.PROCESSING,
    "charge:confirmed": TransactionStatus.COMPLETED,
    "charge:resolved": TransactionStatus.COMPLETED,
    "charge:failed": TransactionStatus.FAILED,
}


class HostedChargeAdapter(ProviderAdapter):
    """Coinbase Commerce hosted checkout pages."""

    provider = PaymentProvider.HOSTED_CHARGE
    signature_header = "X-CC-Webhook-Signature"

    def __init__(self, api_key: str, webhook_secret: str, api_version: str = "2018-03-22",
                 return_url: str = None, cancel_url: str = None, timeout: float = 20,
                 api_base: str = COINBASE_API_BASE):
        super().__init__(timeout=timeout)
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.api_version = api_version
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.api_base = api_base.rstrip("/")

    def initiate(self, request: PaymentRequest) -> InitiateResult:
        charge = {
            "name": f"Subscription - {request.plan_id}",
            "description": request.description or "Payment for subscription",
            "pricing_type": "fixed_price",
            "local_price": {
                "amount": format_amount(request.amount),
                "currency": request.currency.upper(),
            },
            "metadata": {
                "transaction_id": request.transaction_id,
                "user_id": request.user_id,
                "plan_id": request.plan_id,
            },
            "redirect_url": request.return_url or self.return_url,
            "cancel_url": request.cancel_url or self.cancel_url,
        }

        body = self._request(
            "POST",
            f"{self.api_base}/charges",
            "initiate",
            json=charge,
            headers={
                "X-CC-Api-Key": self.api_key,
                "X-CC-Version": self.api_version,
                "Content-Type": "application/json",
            },
        )

        data = body.get("data") or {}
        if not data.get("id"):
            raise ProviderRejected("Coinbase Commerce returned a charge without an id", provider=self.name)

        logger.info("Hosted charge created", extra={"transaction_id": request.transaction_id, "charge_id": data["id"]})
        return InitiateResult(
            provider_transaction_id=data["id"],
            status=TransactionStatus.PENDING,
            extra={"hosted_url": data.get("hosted_url"), "charge_code": data.get("code")},
            raw=body,
        )

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        if not self.webhook_secret:
            return False
        return signatures_match(hmac_hexdigest(self.webhook_secret, raw_payload, hashlib.sha256), signature_header)

    def map_webhook_event(self, payload: dict) -> Optional[WebhookEvent]:
        event = payload.get("event")
        if not isinstance(event, dict) or not event.get("type"):
            raise InvalidRequest("Coinbase Commerce webhook without an event")

        event_type = event["type"]
        new_status = WEBHOOK_EVENTS.get(event_type)
        if new_status is None:
            return None

        charge_id = (event.get("data") or {}).get("id")
        if not charge_id:
            raise InvalidRequest("Coinbase Commerce event without a charge id", event_type=event_type)
        return WebhookEvent(external_txn_id=charge_id, new_status=new_status, event_type=event_type)

    def refund(self, provider_transaction_id: str, amount: Decimal, currency: str) -> RefundResult:
        # Coinbase Commerce has no refund API; refunds are settled manually.
        logger.warning(
            "Refund requested for hosted charge",
            extra={"provider_transaction_id": provider_transaction_id, "amount": str(amount)},
        )
        return RefundResult(success=False, provider_response={"error": "refunds are not supported for hosted charges"})
