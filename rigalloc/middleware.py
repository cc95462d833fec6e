"""Request middleware for tracing and logging."""

import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from rigalloc.logging import bind_context, clear_context, get_logger
from rigalloc.metrics import record_request

logger = get_logger(__name__)


class RequestTracingMiddleware(BaseHTTPMiddleware):
    """Binds a request id (and the caller's X-Correlation-ID) to every log
    line emitted while the request is handled, and records request metrics.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex[:8]
        correlation_id = request.headers.get("X-Correlation-ID") or request_id

        clear_context()
        bind_context(
            request_id=request_id,
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
        )
        request.state.request_id = request_id

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            raise
        else:
            duration = time.perf_counter() - start_time
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
            )
            # Metrics scrapes would only measure themselves
            if not request.url.path.startswith("/metrics"):
                record_request(
                    request.method,
                    _route_path(request),
                    response.status_code,
                    duration,
                )
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Correlation-ID"] = correlation_id
            return response
        finally:
            clear_context()


def _route_path(request: Request) -> str:
    """Route template (``/v1/equipment/{equipment_id}/status``) when matched."""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)
