"""
FastAPI middleware for automatic Prometheus metrics collection.

This middleware tracks:
- Total API requests with method, endpoint, and status labels
- Request duration histograms
- In-progress request gauges
"""
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from stashbox.metrics import api_requests_in_progress, record_api_request

UNTRACKED_PATHS = ("/metrics", "/health")


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Middleware to automatically track API request metrics.

    /metrics and /health are not tracked, so scrapes and probes do not
    pollute the request series.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        path = request.url.path

        if path in UNTRACKED_PATHS:
            return await call_next(request)

        endpoint = normalize_path(path)
        api_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.time()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            record_api_request(method, endpoint, status_code, time.time() - start_time)
            api_requests_in_progress.labels(method=method, endpoint=endpoint).dec()


def normalize_path(path: str) -> str:
    """
    Replace file ids with a placeholder to keep label cardinality bounded.

    Examples:
        /api/v1/files/3f2a...-.../url -> /api/v1/files/{file_id}/url
        /api/v1/files/3f2a...        -> /api/v1/files/{file_id}
    """
    parts = path.split("/")
    for i in range(1, len(parts)):
        if parts[i - 1] == "files" and _looks_like_id(parts[i]):
            parts[i] = "{file_id}"
    return "/".join(parts)


def _looks_like_id(value: str) -> bool:
    # uuid4 strings and similar opaque ids
    if len(value) < 8 or len(value) > 64:
        return False
    return value.replace("-", "").replace("_", "").isalnum()
