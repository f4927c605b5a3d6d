"""
Observability module - Logging, Metrics, and Tracing.
"""

from faucet.observability.logging import log_context, setup_logging
from faucet.observability.metrics import metrics, start_metrics_server
from faucet.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "log_context",
    "setup_logging",
    "metrics",
    "start_metrics_server",
    "setup_tracing",
    "trace_operation",
]
