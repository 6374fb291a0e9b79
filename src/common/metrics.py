"""Prometheus metrics definitions and FastAPI middleware for the data plane.

Exposes counters and histograms for every stage of the pipeline, from
touch tracking through identity resolution, feature computation, segment
evaluation, and transition dispatch.  A lightweight middleware instruments
HTTP request duration and status codes for the API.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

from fastapi import FastAPI, Request, Response
from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

# --------------------------------------------------------------------------- #
# Counters                                                                     #
# --------------------------------------------------------------------------- #
events_tracked_total = Counter(
    "gdp_events_tracked_total",
    "Events appended to the event store.",
    labelnames=["source", "event_name"],
)

identity_resolution_total = Counter(
    "gdp_identity_resolution_total",
    "Identity resolution outcomes by matched key.",
    labelnames=["outcome"],
)

identity_conflicts_total = Counter(
    "gdp_identity_conflicts_total",
    "Unique-index races hit while creating identities.",
)

events_stitched_total = Counter(
    "gdp_events_stitched_total",
    "Anonymous events back-filled with a person id.",
)

feature_computations_total = Counter(
    "gdp_feature_computations_total",
    "Person feature recomputations by status.",
    labelnames=["status"],
)

segment_transitions_total = Counter(
    "gdp_segment_transitions_total",
    "Segment membership transitions committed.",
    labelnames=["transition"],
)

segment_evaluation_errors_total = Counter(
    "gdp_segment_evaluation_errors_total",
    "Segment conditions that failed to evaluate.",
)

dispatch_failures_total = Counter(
    "gdp_dispatch_failures_total",
    "Transitions the automation dispatcher did not accept.",
    labelnames=["transition"],
)

# --------------------------------------------------------------------------- #
# Histograms                                                                   #
# --------------------------------------------------------------------------- #
processing_latency_seconds = Histogram(
    "gdp_processing_latency_seconds",
    "Latency for a pipeline stage.",
    labelnames=["pipeline_stage"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# --------------------------------------------------------------------------- #
# FastAPI Prometheus middleware                                                 #
# --------------------------------------------------------------------------- #
_http_requests_total = Counter(
    "gdp_http_requests_total",
    "Total HTTP requests handled.",
    labelnames=["method", "endpoint", "status_code"],
)

_http_request_duration_seconds = Histogram(
    "gdp_http_request_duration_seconds",
    "HTTP request duration in seconds.",
    labelnames=["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that records request count and latency."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        method = request.method
        start = time.perf_counter()
        response: Response = await call_next(request)
        elapsed = time.perf_counter() - start
        # Route templates keep label cardinality bounded.
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)

        _http_requests_total.labels(
            method=method,
            endpoint=path,
            status_code=response.status_code,
        ).inc()
        _http_request_duration_seconds.labels(
            method=method,
            endpoint=path,
        ).observe(elapsed)
        return response


# --------------------------------------------------------------------------- #
# Metrics app factory                                                          #
# --------------------------------------------------------------------------- #
def get_metrics_app() -> FastAPI:
    """Return a minimal FastAPI application that serves ``/metrics``.

    Mounted under the main API or run on a dedicated internal port so
    Prometheus can scrape it without exposing it to public traffic.
    """
    app = FastAPI(
        title="Growth Data Plane Metrics",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint() -> StarletteResponse:
        body = generate_latest(REGISTRY)
        return StarletteResponse(
            content=body,
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    return app
