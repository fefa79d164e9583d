"""Prometheus metrics for the user service.

Each app owns its own ``CollectorRegistry`` so several apps can live in one
process (tests build a fresh app per case) without duplicate registration.

Usage:
    with metrics.track_request("POST", "/api/v1/auth/login") as ctx:
        response = await call_next(request)
        ctx["status_code"] = response.status_code
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Generator, Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST


class ServiceMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total number of HTTP requests",
            ["method", "route", "status_code"],
            registry=self.registry,
        )
        self.http_request_duration = Histogram(
            "http_request_duration_seconds",
            "Duration of HTTP requests in seconds",
            ["method", "route"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry,
        )
        self.auth_events_total = Counter(
            "auth_events_total",
            "Authentication events by outcome",
            ["event", "outcome"],
            registry=self.registry,
        )
        self.rate_limit_rejections_total = Counter(
            "rate_limit_rejections_total",
            "Requests rejected by a rate-limit bucket",
            ["category"],
            registry=self.registry,
        )

    def auth_event(self, event: str, outcome: str) -> None:
        self.auth_events_total.labels(event=event, outcome=outcome).inc()

    def rate_limited(self, category: str) -> None:
        self.rate_limit_rejections_total.labels(category=category).inc()

    @contextmanager
    def track_request(self, method: str, route: str) -> Generator[dict, None, None]:
        start_time = time.perf_counter()
        context = {"status_code": "500"}  # Default to error
        try:
            yield context
        finally:
            duration = time.perf_counter() - start_time
            self.http_request_duration.labels(method=method, route=route).observe(duration)
            self.http_requests_total.labels(
                method=method,
                route=route,
                status_code=str(context.get("status_code", "500")),
            ).inc()

    def render(self) -> bytes:
        return generate_latest(self.registry)
