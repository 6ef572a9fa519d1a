"""Health check endpoints for TrustLedger API v1.

Provides liveness and readiness probes.  The readiness check verifies
that the ledger backend answers and that the services are wired.
"""

from __future__ import annotations

import time

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Basic health check response."""

    status: str
    version: str
    uptime_seconds: float


class ReadinessResponse(BaseModel):
    """Readiness check response with individual component statuses."""

    status: str
    checks: dict[str, str]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe.  Does *not* check downstream dependencies."""
    start_time: float = getattr(request.app.state, "start_time", time.time())
    uptime = time.time() - start_time

    return HealthResponse(
        status="healthy",
        version=request.app.version,
        uptime_seconds=round(uptime, 2),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    """Readiness probe.

    A down ledger reports ``degraded`` rather than failing: audit writes
    keep working index-only and are reconciled later.
    """
    checks: dict[str, str] = {}
    all_ok = True

    # -- Ledger connectivity -----------------------------------------------
    ledger = getattr(request.app.state, "ledger", None)
    if ledger is not None:
        try:
            checks["ledger"] = "ok" if await ledger.ping() else "unreachable"
        except Exception as exc:
            checks["ledger"] = f"error: {exc!s}"
        if checks["ledger"] != "ok":
            all_ok = False
    else:
        checks["ledger"] = "not_configured"
        all_ok = False

    # -- Service wiring ----------------------------------------------------
    for name in ("recorder", "scanner", "erasure", "gdpr", "sca", "wwft"):
        if getattr(request.app.state, name, None) is not None:
            checks[name] = "ok"
        else:
            checks[name] = "not_initialised"
            all_ok = False

    jobs = getattr(request.app.state, "jobs", None)
    checks["jobs"] = "running" if jobs is not None and jobs.is_running else "idle"

    status = "ready" if all_ok else "degraded"
    logger.info("health.readiness_check", status=status, checks=checks)
    return ReadinessResponse(status=status, checks=checks)
