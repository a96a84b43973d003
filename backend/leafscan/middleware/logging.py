"""
LeafScan Backend — Request Logging Middleware
===============================================

What:  One access log line per request with status and duration.
Why:   Analyze latency is dominated by Gemini; a per-request duration is
       the first thing to look at when users report slowness.
How:   Measures from middleware entry to response return; picks the log
       level from the status code.
When:  Inside RequestIDMiddleware; the request ID reaches the line through
       RequestIDLogFilter.

Logged: method, path, status, duration, client IP, request ID.
Not logged: request bodies (they are images) or headers.

Why not uvicorn's access log:
    It has no request ID and no duration, and it is silenced in
    setup_logging() so each request appears once.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("leafscan.access")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Typical durations:
        - GET /health: 1-5ms
        - POST /analyze: 2000-10000ms (Gemini call dominates)
        - POST /analyze rate-limited: <5ms
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        start_time = time.perf_counter()

        client_ip = getattr(request.client, "host", "unknown") if request.client else "unknown"
        method = request.method
        path = request.url.path

        # Health checks are polled constantly; logging them buries real traffic
        if path == "/health":
            return await call_next(request)

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000

        # Level by status so alerting can key on WARNING/ERROR
        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            "%s %s %d %.1fms from %s",
            method,
            path,
            status,
            duration_ms,
            client_ip,
            extra={
                "method": method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )

        return response
