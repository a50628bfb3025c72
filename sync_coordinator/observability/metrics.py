"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

from sync_coordinator.constants import (
    METRIC_API_LATENCY,
    METRIC_API_REQUESTS,
    METRIC_LEASE_ACQUIRE,
    METRIC_LEASE_EXPIRED,
    METRIC_LEASE_RELEASED,
    METRIC_LEASE_RENEW,
    METRIC_RUNS_ABANDONED,
    METRIC_SYNC_DURATION,
    METRIC_SYNC_RUNS,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the sync coordinator.

    Collects metrics for:
    - Lease acquisition, renewal, release and expiry
    - Sync runs by kind and outcome
    - Sync run duration
    - API requests
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        # Lease acquire attempts (acquired / contended)
        self.lease_acquire = Counter(
            METRIC_LEASE_ACQUIRE,
            "Total number of lease acquisition attempts",
            ["lock_name", "result"],
            registry=self._registry,
        )

        # Lease renewals (renewed / lost / error)
        self.lease_renew = Counter(
            METRIC_LEASE_RENEW,
            "Total number of lease renewal attempts",
            ["lock_name", "result"],
            registry=self._registry,
        )

        self.lease_released = Counter(
            METRIC_LEASE_RELEASED,
            "Total number of leases released by their holder",
            ["lock_name"],
            registry=self._registry,
        )

        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of expired leases deactivated",
            registry=self._registry,
        )

        # Sync runs by outcome (completed / failed / throttled / busy)
        self.sync_runs = Counter(
            METRIC_SYNC_RUNS,
            "Total number of sync invocations",
            ["kind", "outcome"],
            registry=self._registry,
        )

        self.sync_duration = Histogram(
            METRIC_SYNC_DURATION,
            "Sync work duration in seconds",
            ["kind", "outcome"],
            buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0),
            registry=self._registry,
        )

        self.runs_abandoned = Counter(
            METRIC_RUNS_ABANDONED,
            "Total number of running records reconciled as failed",
            registry=self._registry,
        )

        # API requests counter
        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

        # API latency histogram
        self.api_latency = Histogram(
            METRIC_API_LATENCY,
            "API request latency in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

    def record_lease_acquire(self, lock_name: str, acquired: bool) -> None:
        """Record a lease acquisition attempt."""
        result = "acquired" if acquired else "contended"
        self.lease_acquire.labels(lock_name=lock_name, result=result).inc()

    def record_lease_renew(self, lock_name: str, result: str) -> None:
        """Record a lease renewal attempt."""
        self.lease_renew.labels(lock_name=lock_name, result=result).inc()

    def record_lease_released(self, lock_name: str) -> None:
        """Record a lease release."""
        self.lease_released.labels(lock_name=lock_name).inc()

    def record_leases_expired(self, count: int) -> None:
        """Record expired leases deactivated."""
        if count > 0:
            self.lease_expired.inc(count)

    def record_sync(
        self,
        kind: str,
        outcome: str,
        duration_seconds: float | None = None,
    ) -> None:
        """Record a sync invocation outcome."""
        self.sync_runs.labels(kind=kind, outcome=outcome).inc()
        if duration_seconds is not None:
            self.sync_duration.labels(kind=kind, outcome=outcome).observe(duration_seconds)

    def record_runs_abandoned(self, count: int) -> None:
        """Record running records reconciled as failed."""
        if count > 0:
            self.runs_abandoned.inc(count)

    def record_api_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration_seconds: float,
    ) -> None:
        """Record an API request."""
        self.api_requests.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()
        self.api_latency.labels(method=method, endpoint=endpoint).observe(
            duration_seconds
        )

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
