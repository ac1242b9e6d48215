"""FastAPI middleware stack — request ID, access logging, HTTP metrics."""

from __future__ import annotations

import re
import time
import uuid
from collections.abc import Callable, Awaitable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from relay.shared.observability.metrics import HTTP_REQUEST_DURATION, HTTP_REQUESTS_TOTAL

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

# Polled by probes and scrapers; logged at debug only.
_QUIET_ROUTES = frozenset({"/api/v1/health", "/api/v1/metrics"})

Dispatch = Callable[[Request], Awaitable[Response]]


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Propagates the caller's X-Request-ID (or mints one) into logs and the response.

    Inbound ids that are too long or carry odd characters are replaced so
    they cannot pollute log lines.
    """

    async def dispatch(self, request: Request, call_next: Dispatch) -> Response:
        inbound = request.headers.get(REQUEST_ID_HEADER, "")
        request_id = inbound if _REQUEST_ID_RE.match(inbound) else uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(request_id=request_id)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """One access-log event per request; 5xx responses are logged as errors."""

    async def dispatch(self, request: Request, call_next: Dispatch) -> Response:
        start = time.monotonic()
        response = await call_next(request)
        elapsed_ms = round((time.monotonic() - start) * 1000, 2)

        route = _route_template(request)
        if response.status_code >= 500:
            log = logger.error
        elif route in _QUIET_ROUTES:
            log = logger.debug
        else:
            log = logger.info
        log(
            "http_request",
            method=request.method,
            route=route,
            path=request.url.path,
            status=response.status_code,
            duration_ms=elapsed_ms,
            client=request.client.host if request.client else "unknown",
        )
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """Prometheus request counter + latency histogram, labelled by route template."""

    async def dispatch(self, request: Request, call_next: Dispatch) -> Response:
        start = time.monotonic()
        response = await call_next(request)
        route = _route_template(request)

        HTTP_REQUESTS_TOTAL.labels(
            method=request.method, endpoint=route, status_code=response.status_code
        ).inc()
        HTTP_REQUEST_DURATION.labels(method=request.method, endpoint=route).observe(
            time.monotonic() - start
        )
        return response


def _route_template(request: Request) -> str:
    """Matched route path (``/api/v1/providers/{provider_id}/test``) to bound label cardinality."""
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    return path if isinstance(path, str) else "unmatched"
