"""
LeafScan Backend — Request ID Middleware
==========================================

What:  Assigns a short ID to each request and returns it in X-Request-ID.
Why:   One diagnosis produces log lines from the route, the image service,
       Gemini and the parser. The ID ties them together, and a user can quote
       it from an error response.
How:   Stores the ID in a ContextVar so every log record emitted while the
       request is handled carries it (see RequestIDLogFilter), and error
       responses include it for support correlation.
When:  Outermost middleware, so the access log line carries the ID too.

Why accept client-provided IDs:
    A frontend that generates the ID before uploading can show it next to
    a failed upload without waiting for the response.
"""

import logging
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests on one event loop each see their own ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIDLogFilter(logging.Filter):
    """Adds `request_id` to every log record ("-" outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get("") or "-"
        return True


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Behavior:
        1. Use the client's X-Request-ID header if present, else a new 8-char ID
        2. Store in ContextVar and request.state
        3. Echo in the response headers
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        # Client-supplied IDs are truncated; they end up in log lines
        # 8 hex chars: enough to tell apart the requests of one log window
        rid = request.headers.get("X-Request-ID", "")[:64] or str(uuid.uuid4())[:8]

        token = request_id_var.set(rid)
        # ContextVar for loggers, request.state for handlers
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = rid
        return response
