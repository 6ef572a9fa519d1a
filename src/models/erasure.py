"""Data-subject erasure and retention sweep models (GDPR/AVG Article 17)."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from src.models.enums import DeletionMethod, DeletionResult, ErasureState


class ErasurePolicy(BaseModel):
    """How erasure is carried out for one entity type."""

    policy_id: str
    entity_type: str
    deletion_method: DeletionMethod
    is_active: bool = True


class ErasureRequest(BaseModel):
    """Inbound request from the GDPR erasure surface."""

    entity_type: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    reason: str = "data_subject_request"
    requested_by: str
    force_delete: bool = False


class ErasureDecision(BaseModel):
    """Answer returned to the requester.

    A refused request carries the legal basis in ``retention_reasons`` so
    it can be explained to the data subject.
    """

    can_delete: bool
    deletion_scheduled: bool
    retention_reasons: list[str] = Field(default_factory=list)
    scheduled_for: datetime | None = None
    record_id: str | None = None


class ErasureRecord(BaseModel):
    record_id: str = Field(default_factory=lambda: uuid4().hex)
    policy_id: str
    entity_type: str
    entity_id: str
    scheduled_for: datetime
    deletion_method: DeletionMethod
    entity_snapshot: dict[str, Any] = Field(default_factory=dict)
    state: ErasureState = ErasureState.SCHEDULED
    result: DeletionResult = DeletionResult.PENDING
    reason: str = ""
    requested_by: str = ""
    forced: bool = False
    error: str | None = None
    deleted_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ErasureRunSummary(BaseModel):
    """Counts returned by the scheduled erasure executor."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    deferred: int = 0
    errors: list[str] = Field(default_factory=list)


class AccessReport(BaseModel):
    """Article 15 export: what is held about a subject and for how long."""

    entity_type: str
    entity_id: str
    personal_data: dict[str, Any] = Field(default_factory=dict)
    related_records: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    data_categories: list[str] = Field(default_factory=list)
    retention_reasons: list[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RetentionSweepResult(BaseModel):
    """Counts returned by the retention cleanup job."""

    processed: int = 0
    deleted: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
