"""Response headers for browsers and proxies.

Learn: Two kinds of headers go on every HTTP response:
1. Standard security headers (no MIME sniffing, no framing, strict referrer)
2. Anti-buffering hints for event streams. A reverse proxy that buffers
   `text/event-stream` holds driver locations back until its buffer fills,
   which defeats the point of streaming them.

HSTS is only sent over HTTPS.
"""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        if response.headers.get("content-type", "").startswith("text/event-stream"):
            response.headers["X-Accel-Buffering"] = "no"
            response.headers["Cache-Control"] = "no-cache"
        elif "/status" in request.url.path:
            # Polled endpoints must never be served from a cache.
            response.headers["Cache-Control"] = "no-store"

        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response
