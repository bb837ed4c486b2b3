"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from analysis_queue.constants import (
    METRIC_API_LATENCY,
    METRIC_API_REQUESTS,
    METRIC_JOB_DURATION,
    METRIC_JOB_OUTCOMES,
    METRIC_JOBS_ENQUEUED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_RECLAIMED,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the analysis queue.

    Collects metrics for:
    - Jobs by status
    - Submissions and their dedupe outcome
    - Attempt outcomes and execution duration
    - Lease acquisition and reclamation
    - API requests
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs by status",
            ["status"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of job submissions",
            ["outcome"],
            registry=self._registry,
        )

        self.job_outcomes = Counter(
            METRIC_JOB_OUTCOMES,
            "Total number of finished attempts by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job attempt duration in seconds",
            ["outcome"],
            buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0),
            registry=self._registry,
        )

        self.lease_reclaimed = Counter(
            METRIC_LEASE_RECLAIMED,
            "Total number of expired leases reclaimed",
            ["outcome"],
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["worker_id"],
            registry=self._registry,
        )

        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

        self.api_latency = Histogram(
            METRIC_API_LATENCY,
            "API request latency in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

    def record_enqueued(self, duplicate: bool) -> None:
        """Record a submission, new or deduplicated."""
        self.jobs_enqueued.labels(outcome="duplicate" if duplicate else "created").inc()

    def record_outcome(self, outcome: str, duration_seconds: float | None = None) -> None:
        """Record how an attempt ended (completed, retrying, dead, canceled, lost)."""
        self.job_outcomes.labels(outcome=outcome).inc()
        if duration_seconds is not None:
            self.job_duration.labels(outcome=outcome).observe(duration_seconds)

    def record_reclaimed(self, reclaimed: int, dead: int) -> None:
        """Record the result of a reclaim sweep."""
        if reclaimed:
            self.lease_reclaimed.labels(outcome="pending").inc(reclaimed)
        if dead:
            self.lease_reclaimed.labels(outcome="dead").inc(dead)

    def record_lease_acquired(self, worker_id: str) -> None:
        """Record lease acquisition."""
        self.lease_acquired.labels(worker_id=worker_id).inc()

    def update_queue_depth(self, counts: dict[str, int]) -> None:
        """Set the per-status job gauges."""
        for status, count in counts.items():
            self.queue_depth.labels(status=status).set(count)

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
    """Get the metrics collector, creating it on first use."""
    if _metrics is None:
        return setup_metrics()
    return _metrics
