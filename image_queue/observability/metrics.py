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

from image_queue.constants import (
    METRIC_BURST_EXITS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_CLAIMED,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_ENQUEUED,
    METRIC_LEASE_ACQUIRE,
    METRIC_LEASE_LOST,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the image queue.

    Collects metrics for:
    - Queue depth
    - Job enqueues, claims and outcomes
    - Job execution duration
    - Worker lease acquisition and loss
    - Burst worker exits
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
            "Number of pending jobs",
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["job_type", "source"],
            registry=self._registry,
        )

        self.jobs_claimed = Counter(
            METRIC_JOBS_CLAIMED,
            "Total number of jobs claimed",
            ["job_type"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of claimed jobs by outcome",
            ["job_type", "outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Handler execution duration in seconds",
            ["job_type", "outcome"],
            buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.lease_acquire = Counter(
            METRIC_LEASE_ACQUIRE,
            "Worker lease acquisition attempts by result",
            ["lease", "result"],
            registry=self._registry,
        )

        self.lease_lost = Counter(
            METRIC_LEASE_LOST,
            "Worker lease renewals that found the lease lost",
            ["lease"],
            registry=self._registry,
        )

        self.burst_exits = Counter(
            METRIC_BURST_EXITS,
            "Burst worker runs by exit reason",
            ["reason"],
            registry=self._registry,
        )

    def record_job_enqueued(self, job_type: str, source: str) -> None:
        """Record a job enqueue."""
        self.jobs_enqueued.labels(job_type=job_type, source=source).inc()

    def record_jobs_claimed(self, job_type: str, count: int = 1) -> None:
        """Record claimed jobs."""
        self.jobs_claimed.labels(job_type=job_type).inc(count)

    def record_job_completed(
        self,
        job_type: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of a claimed job."""
        self.jobs_completed.labels(job_type=job_type, outcome=outcome).inc()
        self.job_duration.labels(job_type=job_type, outcome=outcome).observe(
            duration_seconds
        )

    def record_lease_acquire(self, lease: str, acquired: bool) -> None:
        """Record a lease acquisition attempt."""
        result = "acquired" if acquired else "busy"
        self.lease_acquire.labels(lease=lease, result=result).inc()

    def record_lease_lost(self, lease: str) -> None:
        """Record a failed lease renewal."""
        self.lease_lost.labels(lease=lease).inc()

    def record_burst_exit(self, reason: str) -> None:
        """Record why a burst worker stopped."""
        self.burst_exits.labels(reason=reason).inc()

    def update_queue_depth(self, depth: int) -> None:
        """Update the pending queue depth."""
        self.queue_depth.set(depth)

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
