from src.monitoring.metrics import get_metrics, record_request, record_upstream_call

__all__ = ["get_metrics", "record_request", "record_upstream_call"]
