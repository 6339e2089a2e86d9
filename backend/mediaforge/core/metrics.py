"""Prometheus metrics for the transcoding pipeline.

Exposes queue depth, in-flight slots, job outcomes and rendition failures.
"""

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    multiprocess,
)
import os

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., with gunicorn)
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "mediaforge_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# Queue Metrics
# ============================================
QUEUE_DEPTH = Gauge(
    "transcoding_queue_depth",
    "Number of transcoding jobs by scheduler state",
    ["state"],
    registry=REGISTRY,
)

JOBS_TOTAL = Counter(
    "transcoding_jobs_total",
    "Total number of transcoding job transitions by type and status",
    ["job_type", "status"],
    registry=REGISTRY,
)

JOB_RETRIES_TOTAL = Counter(
    "transcoding_job_retries_total",
    "Total number of transcoding job re-queues",
    ["job_type"],
    registry=REGISTRY,
)

JOB_DURATION_SECONDS = Histogram(
    "transcoding_job_duration_seconds",
    "Transcoding job attempt duration in seconds",
    ["job_type"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
    registry=REGISTRY,
)


# ============================================
# Engine Metrics
# ============================================
RENDITION_FAILURES_TOTAL = Counter(
    "transcoding_rendition_failures_total",
    "Renditions that failed to encode or upload",
    ["kind"],
    registry=REGISTRY,
)


# ============================================
# HTTP Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format.

    Returns:
        bytes: Prometheus-formatted metrics
    """
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    """Set application info metrics.

    Args:
        version: Application version
        environment: Deployment environment
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })


def update_queue_depth(queued: int, processing: int) -> None:
    """Publish the current scheduler occupancy."""
    QUEUE_DEPTH.labels(state="queued").set(queued)
    QUEUE_DEPTH.labels(state="processing").set(processing)
