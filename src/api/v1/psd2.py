"""PSD2 Strong Customer Authentication API endpoints for TrustLedger v1.

Endpoints
---------
- ``POST /api/v1/psd2/authentications``                     -- Initiate.
- ``POST /api/v1/psd2/authentications/{auth_id}/complete``  -- Complete.
- ``GET  /api/v1/psd2/authentications/{auth_id}``           -- Status.
- ``GET  /api/v1/psd2/users/{user_id}/history``             -- History.
- ``GET  /api/v1/psd2/stats``                               -- Statistics.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, HTTPException, Query, Request

from src.middleware.privacy import audit_context_from_request
from src.models.risk import (
    AuthenticationFactors,
    AuthenticationRequest,
    AuthenticationStats,
    AuthenticationStatusReport,
    PSD2Authentication,
)
from src.services.errors import AuthenticationExpired, AuthenticationFailed, NotFoundError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/psd2", tags=["psd2"])


def _get_sca(request: Request):
    """Retrieve the SCA service from app state, or raise 503."""
    sca = getattr(request.app.state, "sca", None)
    if sca is None:
        raise HTTPException(status_code=503, detail="SCA service not initialised.")
    return sca


@router.post("/authentications", response_model=PSD2Authentication, status_code=201)
async def initiate(body: AuthenticationRequest, request: Request) -> PSD2Authentication:
    """Start an attempt.  The network factor uses the caller's address."""
    sca = _get_sca(request)
    context = audit_context_from_request(request)
    body = body.model_copy(update={"ip_address": context.ip_address or body.ip_address})
    return await sca.initiate(body, context=context)


@router.post("/authentications/{auth_id}/complete", response_model=PSD2Authentication)
async def complete(
    auth_id: str, body: AuthenticationFactors, request: Request
) -> PSD2Authentication:
    sca = _get_sca(request)
    try:
        return await sca.complete(auth_id, body, context=audit_context_from_request(request))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Authentication not found.") from None
    except AuthenticationExpired:
        raise HTTPException(status_code=410, detail="Authentication has expired.") from None
    except AuthenticationFailed as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None


@router.get("/authentications/{auth_id}", response_model=AuthenticationStatusReport)
async def status(auth_id: str, request: Request) -> AuthenticationStatusReport:
    sca = _get_sca(request)
    try:
        return await sca.check_status(auth_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Authentication not found.") from None


@router.get("/users/{user_id}/history", response_model=list[PSD2Authentication])
async def history(
    user_id: str, request: Request, limit: int = Query(default=50, ge=1, le=500)
) -> list[PSD2Authentication]:
    return await _get_sca(request).history(user_id, limit)


@router.get("/stats", response_model=AuthenticationStats)
async def stats(request: Request, user_id: str | None = None) -> AuthenticationStats:
    return await _get_sca(request).stats(user_id=user_id)
