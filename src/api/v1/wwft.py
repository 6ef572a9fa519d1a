"""Wwft customer due diligence API endpoints for TrustLedger v1.

Endpoints
---------
- ``POST /api/v1/wwft/checks``                                 -- Run CDD.
- ``POST /api/v1/wwft/checks/{check_id}/beneficial-owners``    -- Record UBOs.
- ``POST /api/v1/wwft/checks/{check_id}/review``               -- Complete review.
- ``GET  /api/v1/wwft/reviews/overdue``                        -- Overdue reviews.
- ``GET  /api/v1/wwft/report``                                 -- Summary report.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from src.middleware.privacy import audit_context_from_request
from src.models.risk import BeneficialOwner, CDDRequest, WwftCheck, WwftReport
from src.services.errors import NotFoundError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/wwft", tags=["wwft"])


class BeneficialOwnershipRequest(BaseModel):
    owners: list[BeneficialOwner]
    ownership_structure: dict[str, Any] = Field(default_factory=dict)
    verified_by: str = Field(..., min_length=1)


class ReviewRequest(BaseModel):
    reviewed_by: str = Field(..., min_length=1)


def _get_wwft(request: Request):
    """Retrieve the Wwft service from app state, or raise 503."""
    wwft = getattr(request.app.state, "wwft", None)
    if wwft is None:
        raise HTTPException(status_code=503, detail="Wwft service not initialised.")
    return wwft


@router.post("/checks", response_model=WwftCheck, status_code=201)
async def perform_cdd_check(body: CDDRequest, request: Request) -> WwftCheck:
    return await _get_wwft(request).perform_cdd_check(
        body, context=audit_context_from_request(request)
    )


@router.post("/checks/{check_id}/beneficial-owners", response_model=WwftCheck)
async def update_beneficial_ownership(
    check_id: str, body: BeneficialOwnershipRequest, request: Request
) -> WwftCheck:
    wwft = _get_wwft(request)
    try:
        return await wwft.update_beneficial_ownership(
            check_id,
            body.owners,
            body.verified_by,
            ownership_structure=body.ownership_structure,
            context=audit_context_from_request(request),
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Wwft check not found.") from None


@router.post("/checks/{check_id}/review", response_model=WwftCheck)
async def complete_review(check_id: str, body: ReviewRequest, request: Request) -> WwftCheck:
    wwft = _get_wwft(request)
    try:
        return await wwft.complete_review(
            check_id, body.reviewed_by, context=audit_context_from_request(request)
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Wwft check not found.") from None


@router.get("/reviews/overdue", response_model=list[WwftCheck])
async def overdue_reviews(request: Request) -> list[WwftCheck]:
    return await _get_wwft(request).overdue_reviews()


@router.get("/report", response_model=WwftReport)
async def report(request: Request) -> WwftReport:
    return await _get_wwft(request).report()
