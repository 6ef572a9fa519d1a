"""Data-subject rights models: rectification, portability, consent and reporting."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from src.models.enums import ExportFormat


class RectificationRequest(BaseModel):
    """Article 16 correction of personal data.

    For a ``user`` subject, a nested ``profile`` mapping in ``corrections``
    is applied to the user's profile rather than to the user row.
    """

    entity_type: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    corrections: dict[str, Any] = Field(..., min_length=1)
    requested_by: str = Field(..., min_length=1)


class RectificationResult(BaseModel):
    entity_type: str
    entity_id: str
    updated_fields: list[str] = Field(default_factory=list)
    rectified_at: datetime


class PortabilityExport(BaseModel):
    """Article 20 export, rendered and ready to download."""

    entity_type: str
    entity_id: str
    format: ExportFormat
    data: str
    filename: str
    mime_type: str


class ConsentWithdrawal(BaseModel):
    """Outcome of withdrawing one consent."""

    consent_id: str
    withdrawn_at: datetime
    affected_processing: list[str] = Field(default_factory=list)
    data_retention_impact: list[str] = Field(default_factory=list)


class RequestCounts(BaseModel):
    access_requests: int = 0
    rectification_requests: int = 0
    erasure_requests: int = 0
    portability_requests: int = 0
    consent_withdrawals: int = 0
    scheduled_deletions: int = 0
    completed_deletions: int = 0


class ConsentStatistics(BaseModel):
    active: int = 0
    withdrawn: int = 0
    expired: int = 0
    active_by_type: dict[str, int] = Field(default_factory=dict)


class DeletionBacklog(BaseModel):
    """Erasure records not yet executed, split on their scheduled date."""

    active_policies: int = 0
    pending_deletions: int = 0
    overdue_deletions: int = 0


class GDPRComplianceReport(BaseModel):
    period_from: datetime
    period_to: datetime
    requests: RequestCounts = Field(default_factory=RequestCounts)
    consents: ConsentStatistics = Field(default_factory=ConsentStatistics)
    deletions: DeletionBacklog = Field(default_factory=DeletionBacklog)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
