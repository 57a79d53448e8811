"""4 Golden Signals middleware for the lifecycle HTTP API.

- Latency: request duration histogram (seconds)
- Traffic: request counter
- Errors: error counter (HTTP 5xx)
- Saturation: active request gauge
"""

from __future__ import annotations

import re
import time
from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, Histogram

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from fastapi import Request, Response

# -- Latency --
REQUEST_DURATION = Histogram(
    "lifecycle_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path", "status_code"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# -- Traffic --
REQUEST_TOTAL = Counter(
    "lifecycle_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_code"],
)

# -- Errors --
ERROR_TOTAL = Counter(
    "lifecycle_http_errors_total",
    "Total HTTP error responses (5xx)",
    ["method", "path", "status_code"],
)

# -- Saturation --
ACTIVE_REQUESTS = Gauge(
    "lifecycle_http_active_requests",
    "Number of active HTTP requests",
    ["method"],
)

_EXEMPT_PATHS = frozenset({"/metrics", "/healthz"})

_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


def normalize_path(path: str) -> str:
    """Collapse deployment ids to reduce label cardinality.

    /api/v1/token/deployments/6f1c...-.../history -> /api/v1/token/deployments/{id}/history
    """
    parts = path.rstrip("/").split("/")
    normalized = [
        "{id}" if part and (_UUID_RE.match(part) or part.isdigit()) else part for part in parts
    ]
    return "/".join(normalized) or "/"


async def golden_signals_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Collect 4 golden signals for each request."""
    path = request.url.path

    if path in _EXEMPT_PATHS:
        return await call_next(request)

    method = request.method
    normalized = normalize_path(path)

    ACTIVE_REQUESTS.labels(method=method).inc()
    start = time.monotonic()

    try:
        response = await call_next(request)
    except Exception:
        labels = {"method": method, "path": normalized, "status_code": "500"}
        REQUEST_DURATION.labels(**labels).observe(time.monotonic() - start)
        REQUEST_TOTAL.labels(**labels).inc()
        ERROR_TOTAL.labels(**labels).inc()
        raise
    finally:
        ACTIVE_REQUESTS.labels(method=method).dec()

    labels = {"method": method, "path": normalized, "status_code": str(response.status_code)}
    REQUEST_DURATION.labels(**labels).observe(time.monotonic() - start)
    REQUEST_TOTAL.labels(**labels).inc()

    if response.status_code >= 500:
        ERROR_TOTAL.labels(**labels).inc()

    return response
