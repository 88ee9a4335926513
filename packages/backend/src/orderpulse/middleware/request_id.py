"""Request ID middleware — one ID per request, carried into every log line.

Learn: The ID comes from the incoming X-Request-ID header (so a gateway's
trace survives) or is generated here. It's bound to structlog's
contextvars, which means every `logger.info(...)` made while handling the
request, including long-poll wake-ups, carries it automatically.

Long polls and SSE streams can take a while, so the completion log line
records how long the handler held the request.
"""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Generate, bind and echo a request ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        started = time.perf_counter()
        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.debug(
            "http.request",
            status=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return response
