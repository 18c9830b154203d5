"""
Observability metrics module.

This module provides a metrics interface that can operate in two modes:
1. No-op mode: All functions exist for API compatibility but do nothing
2. Active mode: When configured with Prometheus via METRICS_ENABLED

Engine code always calls the same counters; whether anything is recorded is
decided once at startup.
"""

import typing as t

MetricLabels = t.Dict[str, str]


class _DummyMetric:
    """Stand-in for a Prometheus metric when metrics are disabled."""

    def labels(self, *args: t.Any, **kwargs: t.Any) -> "_DummyMetric":
        return self

    def inc(self, amount: float = 1) -> None:
        pass

    def observe(self, amount: float) -> None:
        pass


class MetricsManager:
    """Central manager for payment engine metrics."""

    def __init__(self, enabled: bool = False):
        """
        Initialize the metrics manager.

        Args:
            enabled: Whether metrics collection is active
        """
        self.enabled = enabled
        self._initialize_metrics()

    def _initialize_metrics(self) -> None:
        """Initialize metric objects based on enabled state."""
        if self.enabled:
            from prometheus_client import Counter, Histogram

            self.transaction_transitions_total = Counter(
                "payment_transaction_transitions_total",
                "Applied payment status transitions",
                ["to_status"],
            )
            self.webhook_verifications_total = Counter(
                "payment_webhook_verifications_total",
                "Webhook signature verification outcomes",
                ["provider", "outcome"],
            )
            self.provider_calls_total = Counter(
                "payment_provider_calls_total",
                "Outbound provider calls",
                ["provider", "operation", "outcome"],
            )
            self.provider_call_duration_seconds = Histogram(
                "payment_provider_call_duration_seconds",
                "Outbound provider call latency in seconds",
                ["provider", "operation"],
                buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            )
            self.fraud_rejections_total = Counter(
                "payment_fraud_rejections_total",
                "Requests rejected by the fraud gate",
            )
            self.retry_attempts_total = Counter(
                "payment_retry_attempts_total",
                "Retry queue attempts",
                ["outcome"],
            )
        else:
            self.transaction_transitions_total = _DummyMetric()
            self.webhook_verifications_total = _DummyMetric()
            self.provider_calls_total = _DummyMetric()
            self.provider_call_duration_seconds = _DummyMetric()
            self.fraud_rejections_total = _DummyMetric()
            self.retry_attempts_total = _DummyMetric()

    def record_transition(self, to_status: str) -> None:
        self.transaction_transitions_total.labels(to_status=to_status).inc()

    def record_webhook(self, provider: str, outcome: str) -> None:
        self.webhook_verifications_total.labels(provider=provider, outcome=outcome).inc()

    def record_provider_call(self, provider: str, operation: str, outcome: str,
                             duration: t.Optional[float] = None) -> None:
        self.provider_calls_total.labels(
            provider=provider, operation=operation, outcome=outcome
        ).inc()
        if duration is not None:
            self.provider_call_duration_seconds.labels(
                provider=provider, operation=operation
            ).observe(duration)

    def record_fraud_rejection(self) -> None:
        self.fraud_rejections_total.inc()

    def record_retry(self, outcome: str) -> None:
        self.retry_attempts_total.labels(outcome=outcome).inc()


_metrics = MetricsManager(enabled=False)


def init_metrics(app) -> MetricsManager:
    """Switch to Prometheus-backed metrics when METRICS_ENABLED is set."""
    global _metrics
    if app.config.get("METRICS_ENABLED") and not _metrics.enabled:
        _metrics = MetricsManager(enabled=True)
    return _metrics


def get_metrics() -> MetricsManager:
    return _metrics
