"""Risk scoring models shared by PSD2 SCA and Wwft customer due diligence."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from src.models.enums import (
    AuthenticationStatus,
    CDDLevel,
    ComplianceStatus,
    MonitoringLevel,
    PEPStatus,
    RiskLevel,
    SanctionsResult,
)


class RiskAssessmentResult(BaseModel):
    """Outcome of a weighted-factor score.

    ``factors`` holds each factor's weighted contribution.  Ephemeral:
    it is embedded in the authentication attempt or Wwft check that
    produced it and not stored on its own.
    """

    model_config = ConfigDict(frozen=True)

    score: float = Field(..., ge=0.0, le=1.0)
    factors: dict[str, float] = Field(default_factory=dict)
    exemption_applied: bool = False
    exemption_reason: str | None = None


class RiskThresholds(BaseModel):
    """Lower bounds (inclusive) of each risk level on the [0, 1] scale."""

    model_config = ConfigDict(frozen=True)

    medium: float
    high: float
    critical: float


class PEPCheck(BaseModel):
    status: PEPStatus
    details: str = ""


class SanctionsCheck(BaseModel):
    result: SanctionsResult
    details: str = ""


# ---------------------------------------------------------------------------
# PSD2 Strong Customer Authentication
# ---------------------------------------------------------------------------


class AuthenticationFactors(BaseModel):
    knowledge_factor: str | None = None  # password, PIN
    possession_factor: str | None = None  # SMS code, app confirmation
    inherence_factor: str | None = None  # biometric

    def count(self) -> int:
        return sum(
            1
            for factor in (self.knowledge_factor, self.possession_factor, self.inherence_factor)
            if factor
        )


class AuthenticationRequest(BaseModel):
    """Inbound payment authentication attempt."""

    user_id: str = Field(..., min_length=1)
    transaction_id: str | None = None
    amount: float | None = Field(default=None, ge=0.0)
    payee: str | None = None
    transaction_type: str | None = None  # e.g. RECURRING
    ip_address: str = "0.0.0.0"
    device_id: str | None = None
    location: str | None = None


class PSD2Authentication(BaseModel):
    auth_id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: str
    transaction_id: str | None = None
    amount: float | None = None
    payee: str | None = None
    transaction_type: str | None = None
    status: AuthenticationStatus = AuthenticationStatus.PENDING
    risk: RiskAssessmentResult
    risk_level: RiskLevel = RiskLevel.LOW
    compliance_status: ComplianceStatus = ComplianceStatus.COMPLIANT
    sanctions_result: SanctionsResult = SanctionsResult.CLEAR
    ip_address: str
    device_id: str | None = None
    location: str | None = None
    factors_used: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime
    authenticated_at: datetime | None = None


class AuthenticationStatusReport(BaseModel):
    auth_id: str
    status: AuthenticationStatus
    is_valid: bool
    expires_at: datetime
    remaining_seconds: int


class AuthenticationStats(BaseModel):
    total: int = 0
    authenticated: int = 0
    failed: int = 0
    expired: int = 0
    exempted: int = 0
    average_risk_score: float = 0.0
    exemption_rate: float = 0.0  # percentage


# ---------------------------------------------------------------------------
# Wwft customer due diligence
# ---------------------------------------------------------------------------


class CDDRequest(BaseModel):
    entity_type: str
    entity_id: str
    client_name: str
    kvk_number: str | None = None
    identity_documents: list[str] = Field(default_factory=list)
    business_type: str | None = None
    transaction_volume: float | None = None
    geographic_risk: str | None = None  # LOW | MEDIUM | HIGH
    performed_by: str


class BeneficialOwner(BaseModel):
    name: str
    percentage: float = Field(..., ge=0.0, le=100.0)
    identity_verified: bool = False
    pep_status: PEPStatus = PEPStatus.NOT_PEP


class WwftCheck(BaseModel):
    check_id: str = Field(default_factory=lambda: uuid4().hex)
    entity_type: str
    entity_id: str
    cdd_level: CDDLevel
    risk_level: RiskLevel
    risk: RiskAssessmentResult
    identity_verified: bool = False
    identity_documents: list[str] = Field(default_factory=list)
    identity_verified_at: datetime | None = None
    identity_verified_by: str | None = None
    beneficial_owners: list[BeneficialOwner] = Field(default_factory=list)
    ownership_structure: dict[str, Any] = Field(default_factory=dict)
    beneficial_owners_verified: bool = False
    pep_status: PEPStatus
    sanctions_result: SanctionsResult
    checked_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    monitoring_level: MonitoringLevel
    records_retain_until: datetime
    status: ComplianceStatus
    next_review_date: datetime
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None


class WwftReport(BaseModel):
    total: int = 0
    compliant: int = 0
    non_compliant: int = 0
    pending: int = 0
    high_risk: int = 0
    checks: list[WwftCheck] = Field(default_factory=list)
