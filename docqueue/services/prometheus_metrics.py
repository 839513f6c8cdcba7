"""
Prometheus metrics for the job service
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
import os

# Build info
BUILD_INFO = Gauge(
    'docqueue_build_info',
    'Build information',
    ['version', 'image_tag']
)

# Request counters
REQUESTS_TOTAL = Counter(
    'docqueue_requests_total',
    'Total number of HTTP requests',
    ['status_class', 'path_group']
)

# Job lifecycle
JOBS_SUBMITTED_TOTAL = Counter(
    'docqueue_jobs_submitted_total',
    'Jobs accepted into the queue'
)

JOBS_REJECTED_TOTAL = Counter(
    'docqueue_jobs_rejected_total',
    'Submissions rejected before a job was created',
    ['reason']
)

JOBS_FINISHED_TOTAL = Counter(
    'docqueue_jobs_finished_total',
    'Jobs that reached a terminal state',
    ['status']
)

JOBS_RUNNING = Gauge(
    'docqueue_jobs_running',
    'Jobs currently executing the engine'
)

JOB_DURATION_SECONDS = Histogram(
    'docqueue_job_duration_seconds',
    'Wall time from start to terminal state',
    ['status'],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1200, 3600, 7200]
)

# Queue metrics
QUEUE_DEPTH = Gauge(
    'docqueue_queue_depth',
    'Jobs waiting in the queue'
)

QUEUE_SATURATION = Gauge(
    'docqueue_queue_saturation',
    'Queue depth divided by capacity'
)

QUEUE_DROPS_TOTAL = Counter(
    'docqueue_queue_drops_total',
    'Jobs refused because the queue was full'
)

WORKER_ERRORS_TOTAL = Counter(
    'docqueue_worker_errors_total',
    'Unexpected exceptions raised while processing a job'
)

class PrometheusMetrics:
    """Service for managing Prometheus metrics."""

    def __init__(self):
        self._setup_build_info()

    def _setup_build_info(self):
        """Set up build information gauge."""
        version = os.getenv("APP_VERSION", "1.0.0")
        image_tag = os.getenv("IMAGE_TAG", "latest")
        BUILD_INFO.labels(version=version, image_tag=image_tag).set(1)

    def increment_requests(self, status_code: int, path: str = "/unknown"):
        """Increment request counter."""
        if 200 <= status_code < 300:
            status_class = "2xx"
        elif 300 <= status_code < 400:
            status_class = "3xx"
        elif 400 <= status_code < 500:
            status_class = "4xx"
        elif 500 <= status_code < 600:
            status_class = "5xx"
        else:
            status_class = "other"

        if path.startswith("/api/tasks/submit"):
            path_group = "submit"
        elif path.startswith("/api/tasks/download"):
            path_group = "download"
        elif path.startswith("/api/tasks/logs"):
            path_group = "logs"
        elif path.startswith("/api/tasks"):
            path_group = "tasks"
        else:
            path_group = "other"

        REQUESTS_TOTAL.labels(status_class=status_class, path_group=path_group).inc()

    def increment_jobs_submitted(self, count: int = 1):
        JOBS_SUBMITTED_TOTAL.inc(count)

    def increment_jobs_rejected(self, reason: str, count: int = 1):
        JOBS_REJECTED_TOTAL.labels(reason=reason).inc(count)

    def job_started(self):
        JOBS_RUNNING.inc()

    def job_finished(self, status: str, seconds: float):
        """Record a terminal transition and the job's running time."""
        JOBS_RUNNING.dec()
        JOBS_FINISHED_TOTAL.labels(status=status).inc()
        JOB_DURATION_SECONDS.labels(status=status).observe(seconds)

    def set_queue_depth(self, depth: int):
        QUEUE_DEPTH.set(depth)

    def set_queue_saturation(self, saturation: float):
        QUEUE_SATURATION.set(saturation)

    def increment_queue_drops(self, count: int = 1):
        QUEUE_DROPS_TOTAL.inc(count)

    def increment_worker_errors(self, count: int = 1):
        WORKER_ERRORS_TOTAL.inc(count)

    def get_metrics(self) -> bytes:
        """Get metrics in Prometheus format."""
        return generate_latest()

    def get_content_type(self) -> str:
        """Get content type for Prometheus metrics."""
        return CONTENT_TYPE_LATEST

# Global metrics instance
prometheus_metrics = PrometheusMetrics()
