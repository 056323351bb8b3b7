"""
Worker Metrics Module.

Prometheus metrics for background workers:
- Outbound delivery queue (enqueue, attempts, terminal outcomes, depth)
- Gateway connection health monitor

Usage:
    from workers.metrics import delivery_jobs_failed_total

    delivery_jobs_failed_total.labels(kind="send-text").inc()
"""
from prometheus_client import Counter, Gauge, Histogram

# Delivery Queue Metrics
delivery_jobs_enqueued_total = Counter(
    'delivery_jobs_enqueued_total',
    'Total number of delivery jobs enqueued',
    ['kind']
)

delivery_jobs_completed_total = Counter(
    'delivery_jobs_completed_total',
    'Total number of delivery jobs delivered by the gateway',
    ['kind']
)

delivery_jobs_failed_total = Counter(
    'delivery_jobs_failed_total',
    'Total number of delivery jobs that exhausted all attempts',
    ['kind']
)

delivery_job_retries_total = Counter(
    'delivery_job_retries_total',
    'Total number of failed attempts rescheduled with backoff',
    ['kind']
)

delivery_attempt_duration_seconds = Histogram(
    'delivery_attempt_duration_seconds',
    'Time spent on a single gateway delivery attempt',
    ['kind'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

delivery_queue_jobs = Gauge(
    'delivery_queue_jobs',
    'Delivery jobs per status',
    ['status']
)

# Gateway Health Metrics
gateway_connected = Gauge(
    'whatsapp_gateway_connected',
    'Gateway link state (1=open, 0=anything else)'
)

gateway_health_checks_total = Counter(
    'whatsapp_gateway_health_checks_total',
    'Gateway health checks by result',
    ['result']
)

gateway_reinitializations_total = Counter(
    'whatsapp_gateway_reinitializations_total',
    'Gateway re-initialization calls issued by the health monitor'
)


def update_queue_depth(counts: dict) -> None:
    """
    Publish per-status job counts.

    Args:
        counts: Mapping of status -> count as returned by DeliveryQueue.get_status()
    """
    for status in ("waiting", "active", "completed", "failed"):
        delivery_queue_jobs.labels(status=status).set(counts.get(status, 0))

