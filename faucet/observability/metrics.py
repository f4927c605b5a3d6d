"""
Metrics Collection with Prometheus.

Exposes mint pipeline, rate-limit and storage metrics for monitoring.
"""

from enum import Enum

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, start_http_server

from faucet.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    STATUS = "status"
    CHANNEL = "channel"
    ROLE = "role"
    REASON = "reason"
    BACKEND = "backend"
    OPERATION = "operation"
    MODE = "mode"


class FaucetMetrics:
    """
    Centralized metrics for the faucet.

    Covers:
    - Mints (rate by status, amounts)
    - Rate-limit rejections
    - Transfer latency
    - Queue claims and depth
    - Storage connectivity errors
    - Identity traffic
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """Initialize all Prometheus metrics."""
        kwargs = {"registry": registry} if registry is not None else {}

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("faucet_service", "Service information", **kwargs)
        self.service_info.info(
            {
                "version": settings.service_version,
                "service_name": settings.service_name,
                "storage_backend": settings.storage_backend,
            }
        )

        # ====================================================================
        # Mint Metrics
        # ====================================================================
        self.mints_total = Counter(
            "faucet_mints_total",
            "Mint requests reaching a terminal state",
            [MetricLabels.STATUS, MetricLabels.CHANNEL, MetricLabels.MODE],
            **kwargs,
        )

        self.mint_amount = Histogram(
            "faucet_mint_amount",
            "Amounts of completed mints",
            buckets=(1, 10, 50, 100, 250, 500, 1000, 5000, 10000),
            **kwargs,
        )

        self.rate_limit_rejections_total = Counter(
            "faucet_rate_limit_rejections_total",
            "Mints rejected by the rate-limit engine",
            [MetricLabels.ROLE, MetricLabels.REASON],
            **kwargs,
        )

        # ====================================================================
        # Transfer Metrics
        # ====================================================================
        self.transfer_duration_seconds = Histogram(
            "faucet_transfer_duration_seconds",
            "Transfer capability call duration in seconds",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            **kwargs,
        )

        # ====================================================================
        # Queue Metrics
        # ====================================================================
        self.claims_total = Counter(
            "faucet_claims_total",
            "Mint requests claimed by workers",
            ["reclaimed"],
            **kwargs,
        )

        self.queue_depth = Gauge(
            "faucet_queue_depth",
            "Wake-up signals waiting in the mint queue",
            **kwargs,
        )

        # ====================================================================
        # Storage Metrics
        # ====================================================================
        self.storage_errors_total = Counter(
            "faucet_storage_errors_total",
            "Storage connectivity failures",
            [MetricLabels.BACKEND, MetricLabels.OPERATION],
            **kwargs,
        )

        # ====================================================================
        # Identity Metrics
        # ====================================================================
        self.identities_touched_total = Counter(
            "faucet_identities_touched_total",
            "Identity touches",
            [MetricLabels.CHANNEL, "created"],
            **kwargs,
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_mint(self, status: str, channel: str, mode: str, amount: int) -> None:
        """Record a terminal mint outcome."""
        self.mints_total.labels(status=status, channel=channel, mode=mode).inc()
        if status == "completed":
            self.mint_amount.observe(amount)

    def record_rejection(self, role: str, reason: str) -> None:
        self.rate_limit_rejections_total.labels(role=role, reason=reason).inc()

    def record_claim(self, reclaimed: bool) -> None:
        self.claims_total.labels(reclaimed=str(reclaimed)).inc()

    def record_storage_error(self, backend: str, operation: str) -> None:
        self.storage_errors_total.labels(backend=backend, operation=operation).inc()

    def record_identity(self, channel: str, created: bool) -> None:
        self.identities_touched_total.labels(channel=channel, created=str(created)).inc()


# Global metrics instance
metrics = FaucetMetrics()


def start_metrics_server() -> None:
    """Expose /metrics on the configured port when enabled."""
    if settings.metrics_enabled:
        start_http_server(settings.metrics_port)
