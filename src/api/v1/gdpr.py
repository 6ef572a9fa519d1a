"""GDPR/AVG data-subject rights API endpoints for TrustLedger v1.

Endpoints
---------
- ``POST /api/v1/gdpr/erasure``                      -- Request erasure (Art. 17).
- ``GET  /api/v1/gdpr/erasure/{record_id}``          -- Erasure record.
- ``POST /api/v1/gdpr/erasure/{record_id}/execute``  -- Execute now (admin).
- ``POST /api/v1/gdpr/erasure/{record_id}/retry``    -- Retry a failure (admin).
- ``GET  /api/v1/gdpr/access/{entity_type}/{entity_id}`` -- Access export (Art. 15).
- ``POST /api/v1/gdpr/rectification``                 -- Correct data (Art. 16).
- ``GET  /api/v1/gdpr/portability/{entity_type}/{entity_id}`` -- Download (Art. 20).
- ``POST /api/v1/gdpr/consent/{consent_id}/withdraw``  -- Withdraw a consent.
- ``GET  /api/v1/gdpr/report``                         -- Period report (admin).

A request refused because of a legal hold is a normal ``200`` answer
with ``can_delete=false`` and the legal basis in ``retention_reasons``.
"""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from src.middleware.auth import require_admin_api_key
from src.middleware.privacy import audit_context_from_request
from src.models.enums import ExportFormat
from src.models.erasure import AccessReport, ErasureDecision, ErasureRecord, ErasureRequest
from src.models.gdpr import (
    ConsentWithdrawal,
    GDPRComplianceReport,
    RectificationRequest,
    RectificationResult,
)
from src.services.errors import ExecutionFailure, NotFoundError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/gdpr", tags=["gdpr"])


class RetryRequest(BaseModel):
    requested_by: str = Field(..., min_length=1)


class WithdrawConsentRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


def _get_erasure(request: Request):
    """Retrieve the erasure workflow from app state, or raise 503."""
    erasure = getattr(request.app.state, "erasure", None)
    if erasure is None:
        raise HTTPException(status_code=503, detail="Erasure workflow not initialised.")
    return erasure


def _get_gdpr(request: Request):
    """Retrieve the data-subject rights service from app state, or raise 503."""
    gdpr = getattr(request.app.state, "gdpr", None)
    if gdpr is None:
        raise HTTPException(status_code=503, detail="GDPR service not initialised.")
    return gdpr


@router.post("/erasure", response_model=ErasureDecision)
async def request_erasure(body: ErasureRequest, request: Request) -> ErasureDecision:
    erasure = _get_erasure(request)
    try:
        return await erasure.request_erasure(body, context=audit_context_from_request(request))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Entity not found.") from None


@router.get("/erasure/{record_id}", response_model=ErasureRecord)
async def get_erasure_record(record_id: str, request: Request) -> ErasureRecord:
    record = await _get_erasure(request).get_record(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Erasure record not found.")
    return record


@router.post(
    "/erasure/{record_id}/execute",
    response_model=ErasureRecord,
    dependencies=[Depends(require_admin_api_key)],
)
async def execute_erasure(record_id: str, request: Request) -> ErasureRecord:
    """Run the record's strategy now, ignoring the grace period.

    Calling this on a finished record returns it unchanged.
    """
    erasure = _get_erasure(request)
    try:
        return await erasure.execute(record_id, context=audit_context_from_request(request))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Erasure record not found.") from None
    except ExecutionFailure as exc:
        logger.error("api.gdpr.execute_failed", record_id=record_id, error=str(exc))
        raise HTTPException(status_code=500, detail=str(exc)) from None


@router.post(
    "/erasure/{record_id}/retry",
    response_model=ErasureRecord,
    status_code=201,
    dependencies=[Depends(require_admin_api_key)],
)
async def retry_erasure(record_id: str, body: RetryRequest, request: Request) -> ErasureRecord:
    erasure = _get_erasure(request)
    try:
        return await erasure.retry(record_id, body.requested_by)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Erasure record not found.") from None
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None


@router.get("/access/{entity_type}/{entity_id}", response_model=AccessReport)
async def access_request(entity_type: str, entity_id: str, request: Request) -> AccessReport:
    erasure = _get_erasure(request)
    try:
        return await erasure.process_access_request(
            entity_type, entity_id, context=audit_context_from_request(request)
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Entity not found.") from None


@router.post("/rectification", response_model=RectificationResult)
async def rectify(body: RectificationRequest, request: Request) -> RectificationResult:
    gdpr = _get_gdpr(request)
    try:
        return await gdpr.rectify(body, context=audit_context_from_request(request))
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None


@router.get("/portability/{entity_type}/{entity_id}")
async def portability_export(
    entity_type: str,
    entity_id: str,
    request: Request,
    export_format: ExportFormat = Query(ExportFormat.JSON, alias="format"),
) -> Response:
    """Download the subject's data as an attachment in the chosen format."""
    gdpr = _get_gdpr(request)
    try:
        export = await gdpr.export_portable_data(
            entity_type, entity_id, export_format, context=audit_context_from_request(request)
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Entity not found.") from None
    return Response(
        content=export.data,
        media_type=export.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{export.filename}"'},
    )


@router.post("/consent/{consent_id}/withdraw", response_model=ConsentWithdrawal)
async def withdraw_consent(
    consent_id: str, body: WithdrawConsentRequest, request: Request
) -> ConsentWithdrawal:
    gdpr = _get_gdpr(request)
    try:
        return await gdpr.withdraw_consent(
            consent_id, body.reason, context=audit_context_from_request(request)
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Consent not found.") from None
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None


@router.get(
    "/report",
    response_model=GDPRComplianceReport,
    dependencies=[Depends(require_admin_api_key)],
)
async def compliance_report(
    request: Request,
    period_from: datetime = Query(...),
    period_to: datetime = Query(...),
) -> GDPRComplianceReport:
    gdpr = _get_gdpr(request)
    try:
        return await gdpr.compliance_report(period_from, period_to)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None
