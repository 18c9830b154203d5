from paygate.observability.metrics import get_metrics, init_metrics

__all__ = ["get_metrics", "init_metrics"]
