"""
Provider adapter contract.

Every payment rail implements the same four operations so the orchestrator,
webhook ingestor and refund processor never branch on the provider. Adapters
translate transport failures into the engine's error taxonomy:

- timeouts, connection errors, HTTP 429 and 5xx -> ``ProviderUnavailable``
- declines and other 4xx answers -> ``ProviderRejected``
"""

import hashlib
import hmac
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import requests

from paygate.errors import InvalidRequest, ProviderRejected, ProviderUnavailable
from paygate.models import PaymentProvider, TransactionStatus
from paygate.observability import get_metrics

logger = logging.getLogger(__name__)

ZERO_DECIMAL_CURRENCIES = frozenset({"BIF", "CLP", "JPY", "KRW", "PYG", "RWF", "UGX", "VND", "XAF", "XOF"})


@dataclass
class PaymentRequest:
    """Everything an adapter needs to start a payment for one transaction."""
    transaction_id: str
    user_id: str
    plan_id: str
    amount: Decimal
    currency: str
    description: Optional[str] = None
    payment_method_id: Optional[str] = None
    pay_currency: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InitiateResult:
    provider_transaction_id: Optional[str]
    status: TransactionStatus
    extra: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    external_txn_id: str
    new_status: TransactionStatus
    event_type: Optional[str] = None


@dataclass
class RefundResult:
    success: bool
    provider_response: Dict[str, Any] = field(default_factory=dict)


def to_minor_units(amount, currency: str) -> int:
    """Decimal major units -> integer minor units (cents) for the currency."""
    amount = Decimal(str(amount))
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(amount) -> str:
    return str(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def hmac_hexdigest(secret: str, payload: bytes, digestmod=hashlib.sha256) -> str:
    return hmac.new(secret.encode(), payload, digestmod).hexdigest()


def signatures_match(expected: str, provided: Optional[str]) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.strip().lower(), provided.strip().lower())


def load_payload(raw_payload) -> dict:
    """Decode a webhook body, raising ``InvalidRequest`` for anything but a JSON object."""
    if isinstance(raw_payload, dict):
        return raw_payload
    try:
        payload = json.loads(raw_payload)
    except (TypeError, ValueError) as e:
        raise InvalidRequest("Webhook body is not valid JSON") from e
    if not isinstance(payload, dict):
        raise InvalidRequest("Webhook body must be a JSON object")
    return payload


class ProviderAdapter(ABC):
    """Base class for the four payment rails."""

    provider: PaymentProvider = None
    signature_header: str = None

    def __init__(self, timeout: float = 20):
        self.timeout = timeout
        self.session = requests.Session()

    @property
    def name(self) -> str:
        return self.provider.value

    @abstractmethod
    def initiate(self, request: PaymentRequest) -> InitiateResult:
        """Start a payment with the provider."""

    @abstractmethod
    def verify_webhook_signature(self, raw_payload: bytes, signature_header: Optional[str]) -> bool:
        """Constant-time check of the webhook signature. Never raises."""

    @abstractmethod
    def map_webhook_event(self, payload: dict) -> Optional[WebhookEvent]:
        """Translate a provider event; ``None`` for events the engine ignores."""

    @abstractmethod
    def refund(self, provider_transaction_id: str, amount: Decimal, currency: str) -> RefundResult:
        """Refund (part of) a completed payment."""

    def capture_approved(self, event: WebhookEvent) -> WebhookEvent:
        """
        Collect the funds of a payment the buyer has just approved.

        Rails that settle on their own return ``event`` unchanged.
        """
        return event

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _request(self, method: str, url: str, operation: str, **kwargs) -> dict:
        kwargs.setdefault("timeout", self.timeout)
        metrics = get_metrics()
        started = time.monotonic()

        try:
            response = self.session.request(method, url, **kwargs)
        except requests.Timeout as e:
            metrics.record_provider_call(self.name, operation, "timeout", time.monotonic() - started)
            logger.warning(f"{self.name} {operation} timed out", extra={"provider": self.name})
            raise ProviderUnavailable(f"{self.name} {operation} timed out", provider=self.name) from e
        except requests.RequestException as e:
            metrics.record_provider_call(self.name, operation, "connection_error", time.monotonic() - started)
            logger.warning(
                f"{self.name} {operation} failed: {e}",
                extra={"provider": self.name, "error_type": type(e).__name__},
            )
            raise ProviderUnavailable(f"{self.name} {operation} unreachable", provider=self.name) from e

        duration = time.monotonic() - started
        status = response.status_code

        if status == 429 or status >= 500:
            metrics.record_provider_call(self.name, operation, "unavailable", duration)
            logger.warning(
                f"{self.name} {operation} answered {status}",
                extra={"provider": self.name, "http_status": status},
            )
            raise ProviderUnavailable(
                f"{self.name} {operation} answered HTTP {status}",
                provider=self.name,
                http_status=status,
            )

        if status >= 400:
            metrics.record_provider_call(self.name, operation, "rejected", duration)
            detail = _error_detail(response)
            logger.info(
                f"{self.name} {operation} rejected: {detail}",
                extra={"provider": self.name, "http_status": status},
            )
            raise ProviderRejected(
                f"{self.name} rejected {operation}: {detail}",
                provider=self.name,
                http_status=status,
            )

        try:
            body = response.json() if response.content else {}
        except ValueError as e:
            metrics.record_provider_call(self.name, operation, "invalid_response", duration)
            raise ProviderUnavailable(f"{self.name} {operation} returned invalid JSON",
                                      provider=self.name) from e

        metrics.record_provider_call(self.name, operation, "ok", duration)
        return body


def _error_detail(response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] if response.text else f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("message", "error_description", "error"):
            value = body.get(key)
            if isinstance(value, str):
                return value
            if isinstance(value, dict) and value.get("message"):
                return value["message"]
    return f"HTTP {response.status_code}"
