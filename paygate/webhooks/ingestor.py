import logging
from dataclasses import dataclass
from typing import Optional

from paygate.audit import audit_event
from paygate.errors import InvalidRequest, InvalidTransition, SignatureInvalid
from paygate.models import PaymentProvider, TransactionStatus
from paygate.observability import get_metrics
from paygate.providers.base import load_payload

logger = logging.getLogger(__name__)

PROCESSED = "processed"
IGNORED = "ignored"
UNKNOWN_TRANSACTION = "unknown_transaction"
DUPLICATE = "duplicate"


@dataclass
class WebhookOutcome:
    outcome: str
    transaction_id: Optional[str] = None
    status: Optional[str] = None

    def to_dict(self) -> dict:
        return {"outcome": self.outcome, "transaction_id": self.transaction_id, "status": self.status}


class WebhookIngestor:
    """Verify provider callbacks and apply them exactly once."""

    def __init__(self, store, adapters, settlement):
        self.store = store
        self.adapters = adapters
        self.settlement = settlement

    def handle_webhook(self, provider, raw_payload: bytes, signature_header: Optional[str],
                       source_ip: Optional[str] = None) -> WebhookOutcome:
        provider_enum = PaymentProvider.parse(provider)
        adapter = self.adapters.get(provider_enum) if provider_enum else None
        if adapter is None:
            raise InvalidRequest(f"Unknown payment provider {provider}", provider=provider)

        metrics = get_metrics()
        if not adapter.verify_webhook_signature(raw_payload, signature_header):
            metrics.record_webhook(adapter.name, "invalid")
            audit_event("webhook_verification", provider=adapter.name, outcome="invalid", source_ip=source_ip)
            self.store.record_security_event(
                "webhook_signature_invalid",
                severity="high",
                ip_address=source_ip,
                provider=adapter.name,
                signature_present=bool(signature_header),
            )
            raise SignatureInvalid("Webhook signature verification failed", provider=adapter.name)

        metrics.record_webhook(adapter.name, "valid")
        audit_event("webhook_verification", provider=adapter.name, outcome="valid", source_ip=source_ip)

        payload = load_payload(raw_payload)
        event = adapter.map_webhook_event(payload)
        if event is None:
            logger.debug("Ignoring webhook event", extra={"provider": adapter.name})
            return WebhookOutcome(IGNORED)

        txn = self.store.find_by_provider_reference(provider_enum, event.external_txn_id)
        if txn is None:
            logger.info(
                "Webhook for unknown provider transaction acknowledged",
                extra={"provider": adapter.name, "external_txn_id": event.external_txn_id},
            )
            return WebhookOutcome(UNKNOWN_TRANSACTION)

        if txn.status_enum in (TransactionStatus.PENDING, TransactionStatus.PROCESSING):
            event = adapter.capture_approved(event)

        try:
            txn = self.settlement.apply(txn.id, event.new_status, provider_response=payload)
        except InvalidTransition as e:
            logger.debug(
                "Duplicate or stale webhook",
                extra={
                    "transaction_id": txn.id,
                    "current_status": e.current_status,
                    "requested_status": event.new_status.value,
                    "event_type": event.event_type,
                },
            )
            return WebhookOutcome(DUPLICATE, transaction_id=txn.id, status=e.current_status)

        logger.info(
            "Webhook applied",
            extra={"transaction_id": txn.id, "status": txn.status, "event_type": event.event_type},
        )
        return WebhookOutcome(PROCESSED, transaction_id=txn.id, status=txn.status)
