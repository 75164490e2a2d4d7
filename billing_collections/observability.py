import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from billing_collections.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Assigns a request id and records request metrics per route template."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            route = request.scope.get("route")
            path = getattr(route, "path", request.url.path)
            labels = {
                "method": request.method,
                "path": path,
                "status": str(status_code),
            }
            REQUEST_COUNT.labels(**labels).inc()
            REQUEST_LATENCY.labels(**labels).observe(time.monotonic() - start)
            if status_code >= 500:
                REQUEST_ERRORS.labels(**labels).inc()
        response.headers["x-request-id"] = request_id
        return response
