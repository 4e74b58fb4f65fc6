"""Prometheus metrics for SafeWork push delivery.

Provides observability into HTTP traffic and the push pipeline:
attempts, outcomes, retries, batch sizes and delivery latency.
"""

import re
import time
from typing import Callable

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    multiprocess,
    REGISTRY,
)
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from safework.config import settings


# Custom registry for multiprocess mode
def get_registry() -> CollectorRegistry:
    """Get the appropriate registry for the current mode."""
    if settings.environment == "production":
        # In production with multiple workers, use multiprocess mode
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        return registry
    return REGISTRY


# Application info
APP_INFO = Info("safework_push", "SafeWork push delivery information")
APP_INFO.info({
    "version": "0.1.0",
    "environment": settings.environment,
})


# HTTP Request Metrics
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "HTTP requests currently being processed",
    ["method", "endpoint"],
)


# Push Delivery Metrics
PUSH_ATTEMPTS_TOTAL = Counter(
    "push_attempts_total",
    "Network attempts made against push services",
    ["result"],  # "ok", "transient", "rate_limited", "permanent"
)

PUSH_DELIVERIES_TOTAL = Counter(
    "push_deliveries_total",
    "Resolved single-recipient deliveries",
    ["priority", "outcome"],  # outcome: "sent", "failed"
)

PUSH_DELIVERY_DURATION = Histogram(
    "push_delivery_duration_seconds",
    "Time to resolve a delivery, retries included",
    ["priority"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

PUSH_SUPPRESSED_TOTAL = Counter(
    "push_suppressed_total",
    "Notifications suppressed by recipient preferences",
    ["type"],
)

PUSH_BATCH_RECIPIENTS = Histogram(
    "push_batch_recipients",
    "Eligible recipients per batch",
    [],
    buckets=(1, 10, 50, 100, 250, 500, 1000, 5000, 10000),
)

PUSH_SUBSCRIPTIONS_DEACTIVATED_TOTAL = Counter(
    "push_subscriptions_deactivated_total",
    "Subscriptions deactivated",
    ["reason"],  # "unsubscribe", "permanent_failure"
)


# Helper functions for recording metrics
def normalize_endpoint(path: str) -> str:
    """Normalize endpoint path to reduce metric cardinality.

    Replaces UUIDs, prefixed hex IDs and numeric IDs with placeholders.
    """
    # Replace UUIDs
    path = re.sub(
        r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
        "{id}",
        path,
        flags=re.IGNORECASE,
    )
    # Replace prefixed hex IDs (sub_..., hist_...)
    path = re.sub(r"\b[a-z]+_[0-9a-f]{32}\b", "{id}", path)
    # Replace numeric IDs
    path = re.sub(r"/\d+(/|$)", "/{id}\\1", path)
    return path


def record_push_attempt(result: str) -> None:
    """Record one network attempt."""
    PUSH_ATTEMPTS_TOTAL.labels(result=result).inc()


def record_push_delivery(priority: str, success: bool, duration: float) -> None:
    """Record a resolved delivery."""
    outcome = "sent" if success else "failed"
    PUSH_DELIVERIES_TOTAL.labels(priority=priority, outcome=outcome).inc()
    PUSH_DELIVERY_DURATION.labels(priority=priority).observe(duration)


def record_push_suppressed(notification_type: str) -> None:
    PUSH_SUPPRESSED_TOTAL.labels(type=notification_type).inc()


def record_batch(recipients: int) -> None:
    PUSH_BATCH_RECIPIENTS.observe(recipients)


def record_subscription_deactivated(reason: str) -> None:
    PUSH_SUBSCRIPTIONS_DEACTIVATED_TOTAL.labels(reason=reason).inc()


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to automatically track HTTP metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics endpoint itself
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        normalized = normalize_endpoint(request.url.path)

        HTTP_REQUESTS_IN_PROGRESS.labels(method=method, endpoint=normalized).inc()
        start_time = time.perf_counter()
        status = 500

        try:
            response = await call_next(request)
            status = response.status_code
        finally:
            duration = time.perf_counter() - start_time
            HTTP_REQUESTS_IN_PROGRESS.labels(method=method, endpoint=normalized).dec()
            HTTP_REQUESTS_TOTAL.labels(
                method=method,
                endpoint=normalized,
                status=status,
            ).inc()
            HTTP_REQUEST_DURATION.labels(
                method=method,
                endpoint=normalized,
            ).observe(duration)

        return response


async def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics output."""
    registry = get_registry()
    return generate_latest(registry), CONTENT_TYPE_LATEST
