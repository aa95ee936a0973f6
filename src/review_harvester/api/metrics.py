"""Prometheus metrics for Review Harvester.

All metrics are module-level singletons registered on the default
``REGISTRY``.  Celery workers and the API process each expose their own
copies; the API serves its registry at ``GET /metrics``.

Metrics defined here:

  scrape_tasks_total{status}
      Counter: scrape tasks reaching a final status as seen by their
      supervisor (completed, failed, cancelled, preempted).

  reviews_ingested_total
      Counter: reviews newly created by the ingestor.

  worker_launches_total{outcome}
      Counter: worker process launches (started, failed).

  http_requests_total{method, path, status}
      Counter: HTTP requests handled by the FastAPI application.

  http_request_duration_seconds{method, path}
      Histogram: HTTP request latency in seconds.

  celery_tasks_total{task_name, status}
      Counter: Celery task completions by task name and outcome.

  celery_task_duration_seconds{task_name}
      Histogram: Celery task wall-clock duration in seconds.

Usage::

    from review_harvester.api.metrics import reviews_ingested_total
    reviews_ingested_total.inc(created)
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)

# ---------------------------------------------------------------------------
# Scraping metrics
# ---------------------------------------------------------------------------

scrape_tasks_total: Counter = Counter(
    "scrape_tasks_total",
    "Scrape tasks finished by their supervisor, by resulting status.",
    labelnames=["status"],
)

reviews_ingested_total: Counter = Counter(
    "reviews_ingested_total",
    "Reviews newly created by the ingestor.",
)

worker_launches_total: Counter = Counter(
    "worker_launches_total",
    "Scraping worker launches by outcome.",
    labelnames=["outcome"],
)

# ---------------------------------------------------------------------------
# HTTP metrics
# ---------------------------------------------------------------------------

http_requests_total: Counter = Counter(
    "http_requests_total",
    "Total HTTP requests by method, path, and status code.",
    labelnames=["method", "path", "status"],
)

http_request_duration_seconds: Histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds.",
    labelnames=["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ---------------------------------------------------------------------------
# Celery metrics
# ---------------------------------------------------------------------------

celery_tasks_total: Counter = Counter(
    "celery_tasks_total",
    "Total Celery task completions by task name and outcome.",
    labelnames=["task_name", "status"],
)

celery_task_duration_seconds: Histogram = Histogram(
    "celery_task_duration_seconds",
    "Celery task wall-clock duration in seconds.",
    labelnames=["task_name"],
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0, 1800.0, 3600.0),
)


def get_metrics_response() -> tuple[bytes, str]:
    """Return the serialised default registry and its content type."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
