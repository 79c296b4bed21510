"""Request context middleware: one ID per request, on every log line.

Concurrent requests interleave their log lines.  The request ID (taken
from ``X-Request-ID`` or generated) is stored in a ContextVar, which is
per-task in asyncio where a thread-local would leak between requests on
the same thread.  The stdout handler installed by ``setup_logging`` copies
it onto every record, whichever module logs.

The middleware also:
  - logs one summary line per request (method, path, status, duration)
  - echoes ``X-Request-ID`` on the response
  - copies the X-RateLimit-* headers the rate limit dependency left in
    ``request.state`` onto successful responses (429s carry their own)
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.core.logging import request_id_var

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        req_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request_id_var.set(req_id)

        start = time.monotonic()
        response = await call_next(request)
        duration_ms = round((time.monotonic() - start) * 1000, 1)

        logger.info(
            "%s %s -> %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={
                "request_id": req_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )

        response.headers["X-Request-ID"] = req_id
        for name, value in getattr(request.state, "rate_limit_headers", {}).items():
            response.headers.setdefault(name, value)
        return response
