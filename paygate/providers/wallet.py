import hashlib
import logging
import threading
import time
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

WEBHOOK_EVENTS = {
    "CHECKOUT.ORDER.APPROVED": TransactionStatus.PROCESSING,
    "PAYMENT.CAPTURE.COMPLETED": TransactionStatus.COMPLETED,
    "PAYMENT.CAPTURE.DENIED": TransactionStatus.FAILED,
    "PAYMENT.CAPTURE.DECLINED": TransactionStatus.FAILED,
    "CHECKOUT.ORDER.VOIDED": TransactionStatus.FAILED,
}

APPROVAL_EVENT = "CHECKOUT.ORDER.APPROVED"

CAPTURE_STATUSES = {
    "COMPLETED": TransactionStatus.COMPLETED,
    "PENDING": TransactionStatus.PROCESSING,
    "DECLINED": TransactionStatus.FAILED,
    "FAILED": TransactionStatus.FAILED,
}

# Capture events reference the capture; the order id sits in supplementary data.
CAPTURE_EVENTS = frozenset({"PAYMENT.CAPTURE.COMPLETED", "PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"})


class WalletAdapter(ProviderAdapter):
    """
    Wallet approval payments through PayPal Orders v2.

    The buyer is redirected to PayPal to approve. The approval webhook
    triggers the capture; its outcome settles the transaction, and the
    capture webhooks that follow are duplicates. Webhooks are relayed with an
    HMAC-SHA256 signature in ``X-Provider-Signature``.
    """

    provider = PaymentProvider.WALLET_APPROVAL
    signature_header = "X-Provider-Signature"

    def __init__(self, client_id: str, client_secret: str, webhook_secret: str,
                 api_base: str = "https://api-m.sandbox.paypal.com",
                 return_url: str = None, cancel_url: str = None, timeout: float = 20):
        super().__init__(timeout=timeout)
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_secret = webhook_secret
        self.api_base = api_base.rstrip("/")
        self.return_url = return_url
        self.cancel_url = cancel_url
        self._token = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def _access_token(self) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            body = self._request(
                "POST",
                f"{self.api_base}/v1/oauth2/token",
                "oauth",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
            self._token = body["access_token"]
            # Refresh a minute early
            self._token_expires_at = time.monotonic() + max(int(body.get("expires_in", 0)) - 60, 0)
            return self._token

    def _headers(self, request_id: str = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    def initiate(self, request: PaymentRequest) -> InitiateResult:
        order = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": request.transaction_id,
                "custom_id": request.transaction_id,
                "description": request.description,
                "amount": {
                    "currency_code": request.currency.upper(),
                    "value": format_amount(request.amount),
                },
            }],
            "payment_source": {
                "paypal": {
                    "experience_context": {
                        "return_url": request.return_url or self.return_url,
                        "cancel_url": request.cancel_url or self.cancel_url,
                        "user_action": "PAY_NOW",
                    },
                },
            },
        }

        body = self._request(
            "POST",
            f"{self.api_base}/v2/checkout/orders",
            "initiate",
            json=order,
            headers=self._headers(request_id=request.transaction_id),
        )

        order_id = body.get("id")
        if not order_id:
            raise ProviderRejected("PayPal returned an order without an id", provider=self.name)

        approval_url = next(
            (link.get("href") for link in body.get("links", []) if link.get("rel") in ("payer-action", "approve")),
            None,
        )
        logger.info("PayPal order created", extra={"transaction_id": request.transaction_id, "order_id": order_id})
        return InitiateResult(
            provider_transaction_id=order_id,
            status=TransactionStatus.PENDING,
            extra={"approval_url": approval_url},
            raw=body,
        )

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        if not self.webhook_secret:
            return False
        return signatures_match(hmac_hexdigest(self.webhook_secret, raw_payload, hashlib.sha256), signature_header)

    def map_webhook_event(self, payload: dict) -> Optional[WebhookEvent]:
        event_type = payload.get("event_type")
        if not event_type:
            raise InvalidRequest("PayPal event without an event_type")

        new_status = WEBHOOK_EVENTS.get(event_type)
        if new_status is None:
            return None

        resource = payload.get("resource") or {}
        if event_type in CAPTURE_EVENTS:
            order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
        else:
            order_id = resource.get("id")

        if not order_id:
            raise InvalidRequest("PayPal event without an order id", event_type=event_type)
        return WebhookEvent(external_txn_id=order_id, new_status=new_status, event_type=event_type)

    def capture_approved(self, event: WebhookEvent) -> WebhookEvent:
        if event.event_type != APPROVAL_EVENT:
            return event

        order_id = event.external_txn_id
        rejected = False
        try:
            body = self._request(
                "POST",
                f"{self.api_base}/v2/checkout/orders/{order_id}/capture",
                "capture",
                json={},
                headers=self._headers(request_id=f"capture-{order_id}"),
            )
        except ProviderRejected:
            # Already captured, or the instrument was declined; the order tells which
            rejected = True
            body = self._request(
                "GET",
                f"{self.api_base}/v2/checkout/orders/{order_id}",
                "capture_lookup",
                headers=self._headers(),
            )

        captures = _captures(body)
        capture_status = captures[0].get("status") if captures else None
        new_status = CAPTURE_STATUSES.get(capture_status)
        if new_status is None:
            new_status = TransactionStatus.FAILED if rejected else TransactionStatus.PROCESSING
        logger.info(
            "PayPal order captured",
            extra={"order_id": order_id, "capture_status": capture_status},
        )
        return WebhookEvent(external_txn_id=order_id, new_status=new_status, event_type=event.event_type)

    def refund(self, provider_transaction_id: str, amount: Decimal, currency: str) -> RefundResult:
        try:
            order = self._request(
                "GET",
                f"{self.api_base}/v2/checkout/orders/{provider_transaction_id}",
                "refund_lookup",
                headers=self._headers(),
            )
            captures = _captures(order)
            if not captures:
                return RefundResult(success=False, provider_response={"error": "order has no capture"})

            body = self._request(
                "POST",
                f"{self.api_base}/v2/payments/captures/{captures[0]['id']}/refund",
                "refund",
                json={"amount": {"currency_code": currency.upper(), "value": format_amount(amount)}},
                headers=self._headers(request_id=f"refund-{provider_transaction_id}-{format_amount(amount)}"),
            )
        except ProviderRejected as e:
            return RefundResult(success=False, provider_response={"error": e.message})

        return RefundResult(success=body.get("status") in ("COMPLETED", "PENDING"), provider_response=body)


def _captures(order: dict) -> list:
    return [
        capture
        for unit in order.get("purchase_units", [])
        for capture in (unit.get("payments") or {}).get("captures", [])
    ]
