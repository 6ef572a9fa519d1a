"""Compliance monitoring API endpoints for TrustLedger v1.

Endpoints
---------
- ``POST /api/v1/compliance/scan/{entity_type}``         -- Run a scan.
- ``GET  /api/v1/compliance/issues``                     -- List issues.
- ``POST /api/v1/compliance/issues/{issue_id}/resolve``  -- Resolve one.
- ``GET  /api/v1/compliance/summary``                    -- Dashboard counts.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from src.middleware.auth import require_admin_api_key
from src.middleware.privacy import audit_context_from_request
from src.models.compliance import ComplianceIssue, ComplianceSummary, ScanResult
from src.models.enums import IssueSeverity
from src.services.errors import NotFoundError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/compliance", tags=["compliance"])


class ResolveIssueRequest(BaseModel):
    resolved_by: str = Field(..., min_length=1)
    resolution: str = Field(..., min_length=1, max_length=2000)


def _get_scanner(request: Request):
    """Retrieve the compliance engine from app state, or raise 503."""
    scanner = getattr(request.app.state, "scanner", None)
    if scanner is None:
        raise HTTPException(status_code=503, detail="Compliance engine not initialised.")
    return scanner


@router.post(
    "/scan/{entity_type}",
    response_model=ScanResult,
    dependencies=[Depends(require_admin_api_key)],
)
async def run_scan(entity_type: str, request: Request) -> ScanResult:
    """Scan all live entities of *entity_type* against their policy."""
    scanner = _get_scanner(request)
    try:
        return await scanner.run_scan(entity_type)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None


@router.get("/issues", response_model=list[ComplianceIssue])
async def list_issues(
    request: Request,
    entity_type: str | None = None,
    open_only: bool = True,
    severity: IssueSeverity | None = None,
) -> list[ComplianceIssue]:
    scanner = _get_scanner(request)
    return await scanner.list_issues(entity_type, open_only=open_only, severity=severity)


@router.post("/issues/{issue_id}/resolve", response_model=ComplianceIssue)
async def resolve_issue(
    issue_id: str, body: ResolveIssueRequest, request: Request
) -> ComplianceIssue:
    scanner = _get_scanner(request)
    try:
        return await scanner.resolve_issue(
            issue_id,
            body.resolved_by,
            body.resolution,
            context=audit_context_from_request(request),
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Compliance issue not found.") from None


@router.get("/summary", response_model=ComplianceSummary)
async def summary(request: Request) -> ComplianceSummary:
    return await _get_scanner(request).summary()
