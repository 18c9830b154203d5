from paygate.webhooks.ingestor import WebhookIngestor, WebhookOutcome

__all__ = ["WebhookIngestor", "WebhookOutcome"]
