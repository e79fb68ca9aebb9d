from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import (  # type: ignore[reportMissingImports]
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

# In-process API metrics
api_requests_total = Counter(
    "api_requests_total", "Total API requests", ["method", "endpoint", "status"]
)
api_request_duration_seconds = Histogram(
    "api_request_duration_seconds", "API request duration seconds", ["endpoint"]
)

# Sign-in pipeline
ssx_login_attempts_total = Counter(
    "ssx_login_attempts_total", "SIWE login attempts by result", ["result"]
)
ssx_contract_fallback_logins_total = Counter(
    "ssx_contract_fallback_logins_total", "Logins accepted through the EIP-1271 fallback"
)
ssx_login_duration_seconds = Histogram(
    "ssx_login_duration_seconds", "Time spent verifying a SIWE login"
)
ens_resolutions_total = Counter(
    "ssx_ens_resolutions_total", "ENS lookups by result", ["result"]
)
audit_events_total = Counter(
    "ssx_audit_events_total", "Audit event deliveries by sink and result", ["sink", "result"]
)
pending_audit_events = Gauge(
    "ssx_pending_audit_events", "Audit event deliveries still in flight"
)

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def metrics() -> PlainTextResponse:
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)
