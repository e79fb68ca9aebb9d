from __future__ import annotations

import time
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from ..telemetry.logging import get_logger
from ..telemetry.metrics import api_request_duration_seconds, api_requests_total

TRACE_HEADER = "X-Trace-Id"


def _session_address(request: Request) -> str | None:
    # only present when SessionMiddleware runs outside this middleware
    if "session" not in request.scope:
        return None
    siwe = request.session.get("siwe")
    return siwe.get("address") if isinstance(siwe, dict) else None


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Trace id, one structured log line and request metrics per request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        trace_id = uuid.uuid4().hex
        structlog.contextvars.bind_contextvars(trace_id=trace_id)
        logger = get_logger()
        method = request.method.upper()
        # read before the handler runs: logout clears the session
        address = _session_address(request)

        t0 = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[TRACE_HEADER] = trace_id
            return response
        finally:
            dt = time.perf_counter() - t0
            endpoint = getattr(request.scope.get("route"), "path", None) or request.url.path
            api_requests_total.labels(method=method, endpoint=endpoint, status=str(status_code)).inc()
            api_request_duration_seconds.labels(endpoint=endpoint).observe(dt)
            logger.info(
                "request",
                action=f"{method} {endpoint}",
                duration_ms=round(dt * 1000.0, 3),
                result="ok" if status_code < 400 else "error",
                status=status_code,
                address=address or _session_address(request),
            )
            structlog.contextvars.unbind_contextvars("trace_id")
