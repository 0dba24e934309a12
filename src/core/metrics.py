"""
Prometheus Metrics for Observability

Tracks pipeline performance, background-removal tool outcomes and retries.
Exposes /api/v1/metrics endpoint for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "pipeline_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

# Total Pipeline Duration
pipeline_total_duration = Histogram(
    "pipeline_total_duration_seconds",
    "Total time for a complete pipeline run",
    labelnames=["status"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# Images Counter
images_total = Counter(
    "wardrobe_images_total",
    "Total number of pipeline runs by outcome",
    labelnames=["status", "failure_stage"]
)

# Active Pipelines
active_pipelines_gauge = Gauge(
    "wardrobe_active_pipelines",
    "Number of pipeline runs currently executing"
)

# Background removal tool
background_removal_runs_total = Counter(
    "background_removal_runs_total",
    "Background removal subprocess outcomes",
    labelnames=["outcome"]  # success, failure, timeout
)

# Retries
retry_requests_total = Counter(
    "wardrobe_retry_requests_total",
    "Retry requests by outcome",
    labelnames=["outcome"]  # accepted, invalid_state, limit_reached
)

stalled_records_total = Counter(
    "wardrobe_stalled_records_total",
    "Records failed by stall recovery"
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "wardrobe_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("thumbnail"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_pipeline_started():
    active_pipelines_gauge.inc()


def record_pipeline_finished(status: str, duration_seconds: float, failure_stage: str = "none"):
    """Record the outcome of a pipeline run."""
    images_total.labels(status=status, failure_stage=failure_stage).inc()
    pipeline_total_duration.labels(status=status).observe(duration_seconds)
    active_pipelines_gauge.dec()


def record_background_removal(outcome: str):
    background_removal_runs_total.labels(outcome=outcome).inc()


def record_retry_request(outcome: str):
    retry_requests_total.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
