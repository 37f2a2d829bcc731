"""
Correlation ID Middleware

Tags every request with an X-Correlation-Id so engine, action and history
log lines of one transition can be grouped, and logs request timing.
"""

import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from ...utils.logger import get_logger, set_correlation_id
from ...utils.idgen import generate_correlation_id

logger = get_logger(__name__)

# Health checks would flood the request log
QUIET_PATHS = frozenset({"/health", "/"})


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's correlation id or mint one, and echo it back"""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = request.headers.get("X-Correlation-Id") or generate_correlation_id()
        set_correlation_id(correlation_id)

        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - started) * 1000)

        response.headers["X-Correlation-Id"] = correlation_id
        if request.url.path not in QUIET_PATHS:
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms}ms)",
                extra={"status_code": response.status_code, "duration_ms": duration_ms}
            )
        return response
