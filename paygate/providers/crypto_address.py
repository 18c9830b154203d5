import hashlib
import json
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

NOWPAYMENTS_API_BASE = "https://api.nowpayments.io/v1"

# "waiting" means no funds seen yet: nothing to do.
PAYMENT_STATUSES = {
    "confirming": TransactionStatus.PROCESSING,
    "confirmed": TransactionStatus.PROCESSING,
    "sending": TransactionStatus.PROCESSING,
    "partially_paid": TransactionStatus.PROCESSING,
    "finished": TransactionStatus.COMPLETED,
    "failed": TransactionStatus.FAILED,
    "expired": TransactionStatus.FAILED,
    "refunded": TransactionStatus.FAILED,
}


def canonical_json(payload: dict) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()


class CryptoAddressAdapter(ProviderAdapter):
    """
    Direct crypto deposits through NOWPayments.

    Each transaction gets its own deposit address; the buyer pays from any
    wallet and confirmation arrives through the IPN callback.
    """

    provider = PaymentProvider.CRYPTO_ADDRESS
    signature_header = "x-nowpayments-sig"

    def __init__(self, api_key: str, ipn_secret: str, pay_currency: str = "usdttrc20",
                 ipn_callback_url: str = None, timeout: float = 20, api_base: str = NOWPAYMENTS_API_BASE):
        super().__init__(timeout=timeout)
        self.api_key = api_key
        self.ipn_secret = ipn_secret
        self.pay_currency = pay_currency
        self.ipn_callback_url = ipn_callback_url
        self.api_base = api_base.rstrip("/")

    def initiate(self, request: PaymentRequest) -> InitiateResult:
        pay_currency = (request.pay_currency or self.pay_currency).lower()
        payment = {
            "price_amount": format_amount(request.amount),
            "price_currency": request.currency.lower(),
            "pay_currency": pay_currency,
            "order_id": request.transaction_id,
            "order_description": request.description or f"Subscription {request.plan_id}",
        }
        if self.ipn_callback_url:
            payment["ipn_callback_url"] = self.ipn_callback_url

        body = self._request(
            "POST",
            f"{self.api_base}/payment",
            "initiate",
            json=payment,
            headers={"x-api-key": self.api_key, "Content-Type": "application/json"},
        )

        payment_id = body.get("payment_id")
        address = body.get("pay_address")
        if not payment_id or not address:
            raise ProviderRejected("NOWPayments returned no deposit address", provider=self.name)

        pay_amount = body.get("pay_amount")
        extra = {
            "pay_address": address,
            "pay_amount": pay_amount,
            "pay_currency": body.get("pay_currency", pay_currency),
            "qr_payload": f"{body.get('pay_currency', pay_currency)}:{address}?amount={pay_amount}",
        }
        logger.info("Crypto deposit address issued",
                    extra={"transaction_id": request.transaction_id, "payment_id": payment_id})
        return InitiateResult(
            provider_transaction_id=str(payment_id),
            status=TransactionStatus.PENDING,
            extra=extra,
            raw=body,
        )

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        if not self.ipn_secret or not signature_header:
            return False
        try:
            payload = json.loads(raw_payload)
        except (TypeError, ValueError):
            return False
        if not isinstance(payload, dict):
            return False
        expected = hmac_hexdigest(self.ipn_secret, canonical_json(payload), hashlib.sha512)
        return signatures_match(expected, signature_header)

    def map_webhook_event(self, payload: dict) -> Optional[WebhookEvent]:
        payment_status = payload.get("payment_status")
        if not payment_status:
            raise InvalidRequest("NOWPayments IPN without payment_status")

        new_status = PAYMENT_STATUSES.get(payment_status)
        if new_status is None:
            return None

        payment_id = payload.get("payment_id")
        if payment_id in (None, ""):
            raise InvalidRequest("NOWPayments IPN without payment_id", payment_status=payment_status)
        return WebhookEvent(external_txn_id=str(payment_id), new_status=new_status, event_type=payment_status)

    def refund(self, provider_transaction_id: str, amount: Decimal, currency: str) -> RefundResult:
        logger.warning(
            "Refund requested for crypto deposit",
            extra={"provider_transaction_id": provider_transaction_id, "amount": str(amount)},
        )
        return RefundResult(success=False, provider_response={"error": "refunds are not supported for crypto deposits"})
