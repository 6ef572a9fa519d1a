"""Audit trail data models.

An :class:`AuditRecord` is written once per business mutation and never
edited afterwards.  The one exception is its ledger reference
(``ledger_tx_id`` / ``ledger_hash`` / ``ledger_verified``), which the
reconciler fills in when the ledger half of the dual write is retried.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from src.models.enums import AuditAction, ComplianceLevel

_LEDGER_REFERENCE_FIELDS = frozenset({"ledger_tx_id", "ledger_hash", "ledger_verified"})


class AuditContext(BaseModel):
    """Who performed a mutation and from where.

    Passed explicitly through the call chain; never stored globally.
    """

    model_config = ConfigDict(frozen=True)

    actor_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None


class AuditEvent(BaseModel):
    """Input to :meth:`AuditRecorder.record`."""

    action: AuditAction
    entity_type: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    compliance_level: ComplianceLevel | str | None = None  # explicit hint
    context: AuditContext = Field(default_factory=AuditContext)


class AuditRecord(BaseModel):
    """Row in the relational audit index."""

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: uuid4().hex)
    action: AuditAction
    entity_type: str
    entity_id: str
    actor_id: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None
    compliance_level: ComplianceLevel
    retention_until: datetime
    ledger_key: str
    ledger_tx_id: str | None = None
    ledger_hash: str | None = None
    ledger_verified: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def ledger_payload(self) -> dict[str, Any]:
        """The value written to the ledger: everything but the ledger reference."""
        return self.model_dump(mode="json", exclude=set(_LEDGER_REFERENCE_FIELDS))

    def with_ledger_reference(self, tx_id: str, ledger_hash: str) -> AuditRecord:
        return self.model_copy(
            update={"ledger_tx_id": tx_id, "ledger_hash": ledger_hash, "ledger_verified": True},
        )


class LedgerEntry(BaseModel):
    """One transaction in the append-only ledger."""

    model_config = ConfigDict(frozen=True)

    key: str
    value_json: str
    tx_id: str
    hash: str
    timestamp: datetime


class AuditFilter(BaseModel):
    """Query filters for :meth:`AuditRecorder.get_trail`."""

    actor_id: str | None = None
    action: AuditAction | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    compliance_level: ComplianceLevel | None = None
    verified: bool | None = None
    limit: int = Field(default=50, ge=1, le=1000)

    def matches(self, record: AuditRecord) -> bool:
        if self.actor_id is not None and record.actor_id != self.actor_id:
            return False
        if self.action is not None and record.action != self.action:
            return False
        if self.date_from is not None and record.created_at < self.date_from:
            return False
        if self.date_to is not None and record.created_at > self.date_to:
            return False
        if self.compliance_level is not None and record.compliance_level != self.compliance_level:
            return False
        if self.verified is not None and record.ledger_verified != self.verified:
            return False
        return True


class ReconcileResult(BaseModel):
    """Counts returned by the ledger reconciliation job."""

    processed: int = 0
    verified: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
