"""Audit trail API endpoints for TrustLedger v1.

Endpoints
---------
- ``POST /api/v1/audit/events``                         -- Record an event.
- ``GET  /api/v1/audit/{entity_type}/{entity_id}``      -- Entity trail.
- ``GET  /api/v1/audit/records/{record_id}/verify``     -- Ledger read-back.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from src.middleware.privacy import audit_context_from_request
from src.models.audit import AuditEvent, AuditFilter, AuditRecord
from src.models.enums import AuditAction, ComplianceLevel
from src.services.errors import NotFoundError, PartialWriteError, VerificationMismatch

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

router = APIRouter(prefix="/audit", tags=["audit"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class AuditEventRequest(BaseModel):
    action: AuditAction
    entity_type: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    compliance_level: ComplianceLevel | None = None


class VerificationResponse(BaseModel):
    record_id: str
    verified: bool
    ledger_key: str | None = None


# ---------------------------------------------------------------------------
# Helper
# ---------------------------------------------------------------------------


def _get_recorder(request: Request):
    """Retrieve the audit recorder from app state, or raise 503."""
    recorder = getattr(request.app.state, "recorder", None)
    if recorder is None:
        raise HTTPException(status_code=503, detail="Audit recorder not initialised.")
    return recorder


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/events", response_model=AuditRecord, status_code=201)
async def record_event(body: AuditEventRequest, request: Request) -> AuditRecord:
    """Record one business mutation.

    The record is created even when the ledger is unavailable
    (``ledger_verified`` is then ``false``).
    """
    recorder = _get_recorder(request)
    event = AuditEvent(**body.model_dump(), context=audit_context_from_request(request))
    try:
        return await recorder.record(event)
    except PartialWriteError as exc:
        logger.error("api.audit.partial_write", ledger_key=exc.ledger_key)
        raise HTTPException(
            status_code=500,
            detail={
                "error": "partial_write",
                "ledger_key": exc.ledger_key,
                "ledger_written": exc.ledger_written,
            },
        ) from None


@router.get("/{entity_type}/{entity_id}", response_model=list[AuditRecord])
async def get_trail(
    entity_type: str,
    entity_id: str,
    request: Request,
    actor_id: str | None = None,
    action: AuditAction | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    compliance_level: ComplianceLevel | None = None,
    verified: bool | None = None,
    limit: int = Query(default=50, ge=1, le=1000),
) -> list[AuditRecord]:
    """Audit records for one entity, newest first."""
    recorder = _get_recorder(request)
    filters = AuditFilter(
        actor_id=actor_id,
        action=action,
        date_from=date_from,
        date_to=date_to,
        compliance_level=compliance_level,
        verified=verified,
        limit=limit,
    )
    return await recorder.get_trail(entity_type, entity_id, filters)


@router.get("/records/{record_id}/verify", response_model=VerificationResponse)
async def verify_record(record_id: str, request: Request) -> VerificationResponse:
    """Read a record back from the ledger and compare hashes.

    Returns 409 on a mismatch; the record is never corrected here.
    """
    recorder = _get_recorder(request)
    try:
        verified = await recorder.verify(record_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Audit record not found.") from None
    except VerificationMismatch as exc:
        raise HTTPException(
            status_code=409,
            detail={"error": "verification_mismatch", "ledger_key": exc.ledger_key},
        ) from None

    record = await recorder.get(record_id)
    return VerificationResponse(
        record_id=record_id,
        verified=verified,
        ledger_key=record.ledger_key if record else None,
    )
