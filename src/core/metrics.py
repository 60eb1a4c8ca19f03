"""
Prometheus Metrics for Observability

Tracks run ingestion, barrier outcomes and composition performance.
Exposes /metrics endpoint for Prometheus scraping.
"""

import time
import functools
from typing import Callable
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Stage Latency
stage_latency_seconds = Histogram(
    "mask_stage_latency_seconds",
    "Time spent in each aggregation stage",
    labelnames=["stage", "status"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# Composition
composition_duration_seconds = Histogram(
    "mask_composition_duration_seconds",
    "Time to project, vote and encode one consensus mask",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Run ingestion
runs_submitted_total = Counter(
    "mask_runs_submitted_total",
    "Run results received by the collector",
    labelnames=["outcome"]  # accepted, empty, job_not_found, job_closed, conflict
)

region_rejections_total = Counter(
    "mask_region_rejections_total",
    "Regions rejected by ingress validation"
)

# Barrier
barrier_checks_total = Counter(
    "mask_barrier_checks_total",
    "Completion barrier checks by outcome",
    labelnames=["outcome"]  # awaiting, claimed, conflict, already_resolved, not_found
)

# Jobs
jobs_total = Counter(
    "mask_aggregation_jobs_total",
    "Aggregation jobs by terminal status",
    labelnames=["status"]
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
    "mask_aggregation_app",
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
        with track_stage_latency("compose"):
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
        stage_latency_seconds.labels(stage=stage, status=status).observe(time.time() - start)


def track_latency(stage: str):
    """
    Decorator to track function latency.

    Usage:
        @track_latency("watchdog")
        def sweep():
            ...
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with track_stage_latency(stage):
                return func(*args, **kwargs)
        return wrapper

    return decorator


def record_run_submission(outcome: str):
    runs_submitted_total.labels(outcome=outcome).inc()


def record_region_rejection():
    region_rejections_total.inc()


def record_barrier_check(outcome: str):
    barrier_checks_total.labels(outcome=outcome).inc()


def record_job_completion(status: str):
    """Record a job reaching a terminal status."""
    jobs_total.labels(status=status).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
