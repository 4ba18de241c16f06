"""Prometheus metrics, Sentry integration, and integration lifecycle counters.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry with a before_send callback that strips tokens
- OAuth / webhook counters incremented by the integration services
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time
from urllib.parse import parse_qsl, urlencode, urlsplit

from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Integration Metrics ──────────────────────────────────────────────────────

oauth_token_exchanges_total = Counter(
    "oauth_token_exchanges_total",
    "Authorization code exchanges",
    ["service", "status"],
)

oauth_token_refreshes_total = Counter(
    "oauth_token_refreshes_total",
    "Access token refreshes",
    ["service", "status"],
)

webhook_channel_operations_total = Counter(
    "webhook_channel_operations_total",
    "Push channel register/renew/stop operations",
    ["operation", "status"],
)

webhook_notifications_total = Counter(
    "webhook_notifications_total",
    "Inbound push notifications by resource state and outcome",
    ["resource_state", "outcome"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # Route path pattern once routing matched, raw path otherwise
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sentry Integration ───────────────────────────────────────────────────────

_SENSITIVE_KEYS = ("token", "secret", "authorization", "code", "state")


def _is_sensitive(key: object) -> bool:
    return any(s in str(key).lower() for s in _SENSITIVE_KEYS)


def _scrub_query(query: str) -> str:
    pairs = parse_qsl(query, keep_blank_values=True)
    return urlencode([(k, "[redacted]" if _is_sensitive(k) else v) for k, v in pairs])


def _scrub_entry(key: object, value: object) -> object:
    if _is_sensitive(key):
        return "[redacted]"
    if key == "query_string" and isinstance(value, str):
        return _scrub_query(value)
    if key == "url" and isinstance(value, str):
        # Query parameters are reported separately as query_string
        return urlsplit(value)._replace(query="", fragment="").geturl()
    return _scrub(value)


def _scrub(data: object) -> object:
    if isinstance(data, dict):
        return {k: _scrub_entry(k, v) for k, v in data.items()}
    if isinstance(data, list):
        return [_scrub(v) for v in data]
    return data


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Request data and extras are scrubbed of token-like keys before sending;
    query strings are redacted per parameter and URLs lose their query.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        for key in ("request", "extra"):
            if key in event:
                event[key] = _scrub(event[key])
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        send_default_pii=False,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
