"""
SIHA Backend — Request Logging Middleware
===========================================

What:  One access-log line per request: method, path, status, duration,
       request size and request ID.
Why:   Frame uploads are large and slow; size and duration side by side show
       where time goes. uvicorn's access log has neither the ID nor the size.
How:   Level follows the status class (5xx ERROR, 4xx WARNING, else INFO).
       GET /health is not logged.

Request bodies are never logged: they carry face images.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from siha.middleware.request_id import request_id_var

logger = logging.getLogger("siha.access")


def _content_length(request: Request) -> int:
    try:
        return int(request.headers.get("content-length", 0))
    except ValueError:
        return 0


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each completed request with its duration."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path == "/health":
            return await call_next(request)

        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        size_kb = _content_length(request) / 1024
        rid = request_id_var.get("")

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            "%s %s %d %.1fms %.1fKB [%s] from %s",
            request.method,
            path,
            status,
            duration_ms,
            size_kb,
            rid,
            client_ip,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "request_kb": round(size_kb, 1),
            },
        )
        return response
