"""Prometheus metrics for the product scraper.

Exposes application-level metrics alongside the standard process metrics
from prometheus_client.

All metrics are module-level singletons registered on the default
``REGISTRY``.  They are imported by the job engine as well as by the API
middleware.

Metrics defined here:

  scrape_jobs_total{status}
      Counter - jobs reaching a terminal state (completed, failed, cancelled).

  scrape_products_total{recipe}
      Counter - product records extracted, labelled by recipe name.

  scrape_items_skipped_total{reason}
      Counter - work items skipped after retries (network, http, parse).

  scrape_fetch_duration_seconds{strategy}
      Histogram - page fetch latency by strategy (http, browser).

  http_requests_total{method, path, status}
      Counter - HTTP requests handled by the FastAPI application.

  http_request_duration_seconds{method, path}
      Histogram - HTTP request latency in seconds.

Usage::

    from product_scraper.api.metrics import scrape_jobs_total
    scrape_jobs_total.labels(status="completed").inc()
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

# ---------------------------------------------------------------------------
# Job engine metrics
# ---------------------------------------------------------------------------

scrape_jobs_total: Counter = Counter(
    "scrape_jobs_total",
    "Scrape jobs reaching a terminal state, by status.",
    labelnames=["status"],
)
"""Counter incremented once per job on its terminal transition.

Labels:
  status: one of completed, failed, cancelled
"""

scrape_products_total: Counter = Counter(
    "scrape_products_total",
    "Product records extracted, by recipe.",
    labelnames=["recipe"],
)

scrape_items_skipped_total: Counter = Counter(
    "scrape_items_skipped_total",
    "Work items skipped after retries, by reason.",
    labelnames=["reason"],
)
"""Labels:
  reason: network (transient errors exhausted), http (permanent HTTP
          error or binary content), parse (no product data on the page)
"""

scrape_fetch_duration_seconds: Histogram = Histogram(
    "scrape_fetch_duration_seconds",
    "Page fetch latency in seconds, by strategy.",
    labelnames=["strategy"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

# ---------------------------------------------------------------------------
# HTTP metrics (populated by middleware in main.py)
# ---------------------------------------------------------------------------

http_requests_total: Counter = Counter(
    "http_requests_total",
    "HTTP requests handled by the FastAPI application.",
    labelnames=["method", "path", "status"],
)
"""Counter incremented after every HTTP response.

Labels:
  method: HTTP method (GET, POST, …)
  path:   route template where available (``/api/scrape/status/{job_id}``)
  status: HTTP response status code as string (e.g. '200', '404')
"""

http_request_duration_seconds: Histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds.",
    labelnames=["method", "path"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)


# ---------------------------------------------------------------------------
# Response helper
# ---------------------------------------------------------------------------


def get_metrics_response() -> tuple[bytes, str]:
    """Generate a Prometheus text-format metrics response.

    Returns:
        A tuple of (body_bytes, content_type_string) suitable for constructing
        a FastAPI ``Response`` object.
    """
    from prometheus_client import CONTENT_TYPE_LATEST, generate_latest  # noqa: PLC0415

    return generate_latest(), CONTENT_TYPE_LATEST
