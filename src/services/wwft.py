"""Wwft (Dutch anti-money-laundering act) customer due diligence.

A CDD check scores four factors in points, 11 points in total:

=====================  ========================================  ======
Factor                 Tiers                                     Max
=====================  ========================================  ======
business type          CASINO/CRYPTO 3, FINANCE 2                3
transaction volume     > 50k 3, > 15k 2, > 1k 1                  3
geographic risk        HIGH 3, MEDIUM 1                          3
identity verification  no identity documents 2                   2
=====================  ========================================  ======

Risk levels start at 2 (MEDIUM), 4 (HIGH) and 6 (CRITICAL) points.  The
level drives the CDD depth, the monitoring intensity and the next
mandatory review (3, 6 or 12 months).  Files are kept for five years
after the check, which places the subject under a legal hold.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Final

import structlog

from src.models.audit import AuditContext, AuditEvent
from src.models.enums import (
    AuditAction,
    CDDLevel,
    ComplianceStatus,
    MonitoringLevel,
    PEPStatus,
    RiskLevel,
)
from src.models.risk import BeneficialOwner, CDDRequest, WwftCheck, WwftReport
from src.services.errors import NotFoundError, PartialWriteError
from src.services.retention import add_months, add_years, utcnow
from src.services.risk import WWFT_THRESHOLDS, classify, determine_compliance_status, score

if TYPE_CHECKING:
    from src.services.audit_recorder import AuditRecorder
    from src.services.risk import ScreeningProvider
    from src.services.storage import InMemoryRepository

logger = structlog.get_logger(__name__)

_TOTAL_POINTS: Final[int] = 11
WWFT_WEIGHTS: Final[dict[str, float]] = {
    "business_type": 3 / _TOTAL_POINTS,
    "transaction_volume": 3 / _TOTAL_POINTS,
    "geographic_risk": 3 / _TOTAL_POINTS,
    "identity_unverified": 2 / _TOTAL_POINTS,
}

_HIGH_RISK_BUSINESS: Final[frozenset[str]] = frozenset({"CASINO", "CRYPTO"})
_MEDIUM_RISK_BUSINESS: Final[frozenset[str]] = frozenset({"FINANCE"})

# Beneficial owners at or above this share must be identified.
_UBO_THRESHOLD_PERCENT: Final[float] = 25.0

_CDD_BY_RISK: Final[dict[RiskLevel, CDDLevel]] = {
    RiskLevel.LOW: CDDLevel.SIMPLIFIED,
    RiskLevel.MEDIUM: CDDLevel.STANDARD,
    RiskLevel.HIGH: CDDLevel.ENHANCED,
    RiskLevel.CRITICAL: CDDLevel.ENHANCED,
}
_MONITORING_BY_RISK: Final[dict[RiskLevel, MonitoringLevel]] = {
    RiskLevel.LOW: MonitoringLevel.BASIC,
    RiskLevel.MEDIUM: MonitoringLevel.STANDARD,
    RiskLevel.HIGH: MonitoringLevel.ENHANCED,
    RiskLevel.CRITICAL: MonitoringLevel.CONTINUOUS,
}


def cdd_factors(request: CDDRequest) -> dict[str, float]:
    """Factor values in ``[0, 1]``; multiplied by :data:`WWFT_WEIGHTS` they give points / 11."""
    business = (request.business_type or "").upper()
    if business in _HIGH_RISK_BUSINESS:
        business_value = 1.0
    elif business in _MEDIUM_RISK_BUSINESS:
        business_value = 2 / 3
    else:
        business_value = 0.0

    volume = request.transaction_volume or 0.0
    if volume > 50_000:
        volume_value = 1.0
    elif volume > 15_000:
        volume_value = 2 / 3
    elif volume > 1_000:
        volume_value = 1 / 3
    else:
        volume_value = 0.0

    geo = (request.geographic_risk or "").upper()
    geo_value = {"HIGH": 1.0, "MEDIUM": 1 / 3}.get(geo, 0.0)

    return {
        "business_type": business_value,
        "transaction_volume": volume_value,
        "geographic_risk": geo_value,
        "identity_unverified": 0.0 if request.identity_documents else 1.0,
    }


def review_months(risk_level: RiskLevel, cdd_level: CDDLevel) -> int:
    if risk_level == RiskLevel.CRITICAL:
        return 3
    if risk_level == RiskLevel.HIGH or cdd_level == CDDLevel.ENHANCED:
        return 6
    return 12


class WwftService:
    """Performs and maintains customer due diligence checks.

    Parameters
    ----------
    checks:
        Repository of :class:`WwftCheck` keyed by ``check_id``.  Shared
        with the retention engine, which treats live files as legal holds.
    screening:
        PEP and sanctions screening.
    recorder:
        Audit recorder; every check and review is audited.
    record_retention_years:
        How long a CDD file must be kept after the check.
    """

    def __init__(
        self,
        checks: InMemoryRepository[WwftCheck],
        screening: ScreeningProvider,
        recorder: AuditRecorder,
        *,
        record_retention_years: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._checks = checks
        self._screening = screening
        self._recorder = recorder
        self._retention_years = record_retention_years
        self._clock = clock

    async def perform_cdd_check(
        self, request: CDDRequest, context: AuditContext | None = None
    ) -> WwftCheck:
        now = self._clock()
        risk = score(cdd_factors(request), WWFT_WEIGHTS)
        risk_level = classify(risk.score, WWFT_THRESHOLDS)
        cdd_level = _CDD_BY_RISK[risk_level]

        pep = await self._screening.check_pep(request.client_name)
        sanctions = await self._screening.check_sanctions(request.client_name)
        status = determine_compliance_status(risk_level, pep.status, sanctions.result)
        identified = bool(request.identity_documents)

        check = WwftCheck(
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            cdd_level=cdd_level,
            risk_level=risk_level,
            risk=risk,
            identity_verified=identified,
            identity_documents=list(request.identity_documents),
            identity_verified_at=now if identified else None,
            identity_verified_by=request.performed_by if identified else None,
            pep_status=pep.status,
            sanctions_result=sanctions.result,
            checked_at=now,
            monitoring_level=_MONITORING_BY_RISK[risk_level],
            records_retain_until=add_years(now, self._retention_years),
            status=status,
            next_review_date=add_months(now, review_months(risk_level, cdd_level)),
        )
        await self._checks.add(check)

        await self._audit(
            AuditAction.CREATE,
            check,
            context or AuditContext(actor_id=request.performed_by),
            new_values={
                "risk_score": risk.score,
                "risk_level": str(risk_level),
                "cdd_level": str(cdd_level),
                "pep_status": str(pep.status),
                "sanctions_result": str(sanctions.result),
                "status": str(status),
            },
        )
        log = logger.warning if status == ComplianceStatus.NON_COMPLIANT else logger.info
        log(
            "wwft.cdd_check_completed",
            check_id=check.check_id,
            entity_type=request.entity_type,
            risk_level=risk_level,
            status=status,
        )
        return check

    async def _require(self, check_id: str) -> WwftCheck:
        check = await self._checks.get(check_id)
        if check is None:
            raise NotFoundError(f"Wwft check {check_id} not found")
        return check

    async def update_beneficial_ownership(
        self,
        check_id: str,
        owners: list[BeneficialOwner],
        verified_by: str,
        ownership_structure: dict | None = None,
        context: AuditContext | None = None,
    ) -> WwftCheck:
        """Record the UBOs; a PEP among them carries over to the check."""
        check = await self._require(check_id)
        significant = [o for o in owners if o.percentage >= _UBO_THRESHOLD_PERCENT]
        pep_owner = next((o for o in owners if o.pep_status != PEPStatus.NOT_PEP), None)

        check.beneficial_owners = owners
        check.ownership_structure = ownership_structure or {}
        check.beneficial_owners_verified = all(o.identity_verified for o in significant)
        if pep_owner is not None and check.pep_status == PEPStatus.NOT_PEP:
            check.pep_status = pep_owner.pep_status
        previous = check.status
        check.status = determine_compliance_status(
            check.risk_level, check.pep_status, check.sanctions_result
        )
        await self._checks.update(check)

        await self._audit(
            AuditAction.UPDATE,
            check,
            context or AuditContext(actor_id=verified_by),
            old_values={"status": str(previous)},
            new_values={
                "beneficial_owners": len(owners),
                "beneficial_owners_verified": check.beneficial_owners_verified,
                "pep_status": str(check.pep_status),
                "status": str(check.status),
            },
        )
        return check

    async def complete_review(
        self, check_id: str, reviewed_by: str, context: AuditContext | None = None
    ) -> WwftCheck:
        """Record a periodic review and schedule the next one."""
        check = await self._require(check_id)
        now = self._clock()
        check.reviewed_by = reviewed_by
        check.reviewed_at = now
        check.next_review_date = add_months(now, review_months(check.risk_level, check.cdd_level))
        await self._checks.update(check)

        await self._audit(
            AuditAction.APPROVE,
            check,
            context or AuditContext(actor_id=reviewed_by),
            new_values={
                "reviewed_by": reviewed_by,
                "next_review_date": check.next_review_date.isoformat(),
            },
        )
        return check

    async def overdue_reviews(self) -> list[WwftCheck]:
        now = self._clock()
        overdue = await self._checks.filter(lambda c: c.next_review_date <= now)
        return sorted(overdue, key=lambda c: c.next_review_date)

    async def checks_for(self, entity_type: str, entity_id: str) -> list[WwftCheck]:
        checks = await self._checks.filter(
            lambda c: c.entity_type == entity_type and c.entity_id == entity_id
        )
        return sorted(checks, key=lambda c: c.checked_at, reverse=True)

    async def report(
        self, since: datetime | None = None, until: datetime | None = None
    ) -> WwftReport:
        checks = await self._checks.filter(
            lambda c: (since is None or c.checked_at >= since)
            and (until is None or c.checked_at <= until)
        )
        checks.sort(key=lambda c: c.checked_at, reverse=True)
        return WwftReport(
            total=len(checks),
            compliant=sum(1 for c in checks if c.status == ComplianceStatus.COMPLIANT),
            non_compliant=sum(1 for c in checks if c.status == ComplianceStatus.NON_COMPLIANT),
            pending=sum(1 for c in checks if c.status == ComplianceStatus.PENDING),
            high_risk=sum(1 for c in checks if c.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)),
            checks=checks,
        )

    async def _audit(
        self,
        action: AuditAction,
        check: WwftCheck,
        context: AuditContext,
        *,
        old_values: dict | None = None,
        new_values: dict | None = None,
    ) -> None:
        try:
            await self._recorder.record(
                AuditEvent(
                    action=action,
                    entity_type="WwftCheck",
                    entity_id=check.check_id,
                    old_values=old_values,
                    new_values=new_values,
                    context=context,
                )
            )
        except PartialWriteError as exc:
            logger.error("wwft.audit_write_failed", check_id=check.check_id, error=str(exc))
