"""Prometheus metrics for BMC Assist.

Cardinality rule: client addresses and user ids are NOT labels (unbounded).
outcome, reason and direction are labels (bounded).
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Lazy-load prometheus_client to allow graceful degradation
_prom = None


def _get_prom():
    """Lazily import prometheus_client."""
    global _prom
    if _prom is None:
        try:
            import prometheus_client
            _prom = prometheus_client
        except ImportError:
            logger.warning("prometheus_client not installed; metrics disabled")
            _prom = False
    return _prom if _prom else None


# --- Metric singletons (created on first access) ---

_metrics = {}


def _metric(name, metric_type, description, labelnames=()):
    """Get or create a Prometheus metric."""
    if name in _metrics:
        return _metrics[name]
    prom = _get_prom()
    if prom is None:
        _metrics[name] = None
        return None
    cls = getattr(prom, metric_type)
    m = cls(name, description, labelnames=labelnames)
    _metrics[name] = m
    return m


def chat_requests_total():
    return _metric(
        "bmc_assist_chat_requests_total",
        "Counter",
        "Streamed chat requests by final outcome",
        labelnames=["outcome"],
    )


def rejections_total():
    return _metric(
        "bmc_assist_rejections_total",
        "Counter",
        "Requests rejected before streaming started",
        labelnames=["reason"],
    )


def tokens_total():
    return _metric(
        "bmc_assist_tokens_total",
        "Counter",
        "Provider-reported tokens",
        labelnames=["direction"],
    )


def stream_duration():
    return _metric(
        "bmc_assist_stream_duration_seconds",
        "Histogram",
        "Duration of completion streams in seconds",
    )


def usage_write_failures_total():
    return _metric(
        "bmc_assist_usage_write_failures_total",
        "Counter",
        "Usage records that could not be persisted",
    )


# --- Helper functions for recording metrics ---

def record_chat_request(outcome: str):
    m = chat_requests_total()
    if m:
        m.labels(outcome=outcome).inc()


def record_rejection(reason: str):
    m = rejections_total()
    if m:
        m.labels(reason=reason).inc()


def record_tokens(tokens_in: int, tokens_out: int):
    m = tokens_total()
    if m:
        m.labels(direction="in").inc(tokens_in)
        m.labels(direction="out").inc(tokens_out)


def observe_stream_duration(seconds: float):
    m = stream_duration()
    if m:
        m.observe(seconds)


def record_usage_write_failure():
    m = usage_write_failures_total()
    if m:
        m.inc()


def generate_metrics_text() -> Optional[str]:
    """Generate Prometheus metrics text output."""
    prom = _get_prom()
    if prom is None:
        return None
    return prom.generate_latest().decode("utf-8")
