"""Compliance monitoring models: mandatory-field policies and issues."""

from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

from pydantic import BaseModel, Field

from src.models.enums import IssueSeverity, IssueType


class MandatoryFieldPolicy(BaseModel):
    """Fields a live entity of ``entity_type`` must carry.

    ``blocking`` fields prevent the entity from being used in regulated
    flows (invoicing, payouts) and raise the issue severity to HIGH.
    """

    entity_type: str
    required: list[str]
    blocking: frozenset[str] = frozenset()
    due_days: int = 7


class ComplianceIssue(BaseModel):
    """An open or resolved finding for a single entity.

    One issue per entity and issue type: every missing field is listed
    in ``missing_fields`` rather than creating an issue per field.
    """

    issue_id: str = Field(default_factory=lambda: uuid4().hex)
    entity_type: str
    entity_id: str
    issue_type: IssueType = IssueType.MANDATORY_FIELDS
    severity: IssueSeverity
    missing_fields: list[str] = Field(default_factory=list)
    validation_errors: dict[str, str] = Field(default_factory=dict)
    cycles: int = 1  # consecutive scans that reported this issue
    detected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_seen_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    due_date: datetime
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution: str | None = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


class ScanResult(BaseModel):
    """Outcome of one :meth:`ComplianceCheckEngine.scan` run."""

    scan_id: str = Field(default_factory=lambda: uuid4().hex)
    entity_type: str
    scanned: int = 0
    issues: list[ComplianceIssue] = Field(default_factory=list)
    new_issues: int = 0
    resolved: int = 0
    errors: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ComplianceSummary(BaseModel):
    """Open-issue counts for the compliance dashboard."""

    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    open_issues: int = 0
    by_entity_type: dict[str, int] = Field(default_factory=dict)
    by_severity: dict[str, int] = Field(default_factory=dict)
    overdue: int = 0
