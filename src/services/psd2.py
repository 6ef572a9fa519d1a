"""PSD2 Strong Customer Authentication (SCA) for payment transactions.

An attempt is either exempted from SCA or left PENDING until the payer
completes it with at least two independent factors (knowledge,
possession, inherence).  Exemptions are terminal: an exempt attempt is
AUTHENTICATED immediately and no further factor is evaluated.

Checked in order:

1. Payee sanctions screening.  A confirmed match fails the attempt.
2. Low-value exemption (amount below the configured threshold).
3. Recurring-transaction exemption.
4. Risk factors (amount tier, 24h attempt frequency, device familiarity,
   network origin); a score below the low-risk threshold is exempt.

PENDING attempts expire after ``sca_expiry_minutes``.  Every read path
coerces an overdue PENDING attempt to EXPIRED before answering.

Exempted attempts are stored like any other, so they count toward the
frequency factor of later attempts by the same user.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Final

import structlog

from src.models.audit import AuditContext, AuditEvent
from src.models.enums import (
    AuditAction,
    AuthenticationStatus,
    PEPStatus,
    SanctionsResult,
)
from src.models.risk import (
    AuthenticationFactors,
    AuthenticationRequest,
    AuthenticationStats,
    AuthenticationStatusReport,
    PSD2Authentication,
    RiskAssessmentResult,
)
from src.services.errors import (
    AuthenticationExpired,
    AuthenticationFailed,
    NotFoundError,
    PartialWriteError,
)
from src.services.retention import utcnow
from src.services.risk import SCA_THRESHOLDS, classify, determine_compliance_status, score

if TYPE_CHECKING:
    from src.services.audit_recorder import AuditRecorder
    from src.services.risk import ScreeningProvider
    from src.services.storage import InMemoryRepository

logger = structlog.get_logger(__name__)

_RECURRING: Final[str] = "RECURRING"
_REQUIRED_FACTORS: Final[int] = 2
_FREQUENCY_WINDOW: Final = timedelta(hours=24)


# ---------------------------------------------------------------------------
# Factor tiers
# ---------------------------------------------------------------------------


def amount_factor(amount: float | None) -> float:
    if amount is None:
        return 0.0
    if amount > 10_000:
        return 0.3
    if amount > 1_000:
        return 0.2
    if amount > 100:
        return 0.1
    return 0.0


def frequency_factor(recent_attempts: int) -> float:
    if recent_attempts > 10:
        return 0.3
    if recent_attempts > 5:
        return 0.2
    if recent_attempts > 2:
        return 0.1
    return 0.0


def network_factor(ip_address: str) -> float:
    return 0.0 if ip_address.startswith("127.") else 0.05


# ---------------------------------------------------------------------------
# SCAService
# ---------------------------------------------------------------------------


class SCAService:
    """Initiates, completes and reports on SCA attempts.

    Parameters
    ----------
    attempts:
        Repository of :class:`PSD2Authentication` keyed by ``auth_id``.
    screening:
        Sanctions screening for the payee.
    recorder:
        Audit recorder; initiation and completion are audited.
    """

    def __init__(
        self,
        attempts: InMemoryRepository[PSD2Authentication],
        screening: ScreeningProvider,
        recorder: AuditRecorder,
        *,
        low_value_threshold: float = 30.0,
        low_risk_threshold: float = 0.1,
        expiry_minutes: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._attempts = attempts
        self._screening = screening
        self._recorder = recorder
        self._low_value = low_value_threshold
        self._low_risk = low_risk_threshold
        self._expiry = timedelta(minutes=expiry_minutes)
        self._clock = clock

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    async def _device_factor(self, user_id: str, device_id: str | None) -> float:
        if not device_id:
            return 0.2
        known = await self._attempts.filter(
            lambda a: a.user_id == user_id
            and a.device_id == device_id
            and a.status == AuthenticationStatus.AUTHENTICATED
        )
        return 0.0 if known else 0.1

    async def _recent_attempts(self, user_id: str, now: datetime) -> int:
        since = now - _FREQUENCY_WINDOW
        recent = await self._attempts.filter(lambda a: a.user_id == user_id and a.created_at >= since)
        return len(recent)

    async def assess(self, request: AuthenticationRequest) -> RiskAssessmentResult:
        """Score an attempt on the four SCA factors without storing it."""
        now = self._clock()
        return score(
            {
                "amount": amount_factor(request.amount),
                "frequency": frequency_factor(await self._recent_attempts(request.user_id, now)),
                "device": await self._device_factor(request.user_id, request.device_id),
                "network": network_factor(request.ip_address),
            }
        )

    async def initiate(
        self, request: AuthenticationRequest, context: AuditContext | None = None
    ) -> PSD2Authentication:
        now = self._clock()
        sanctions = SanctionsResult.CLEAR
        if request.payee:
            sanctions = (await self._screening.check_sanctions(request.payee)).result

        status = AuthenticationStatus.PENDING
        exemption: str | None = None

        if sanctions == SanctionsResult.CONFIRMED_MATCH:
            risk = RiskAssessmentResult(score=1.0, factors={"sanctions": 1.0})
            status = AuthenticationStatus.FAILED
        elif (
            sanctions == SanctionsResult.CLEAR
            and request.amount is not None
            and request.amount < self._low_value
        ):
            exemption = f"Low-value transaction exemption (< €{self._low_value:g})"
            risk = RiskAssessmentResult(score=0.0, exemption_applied=True, exemption_reason=exemption)
        elif sanctions == SanctionsResult.CLEAR and (request.transaction_type or "").upper() == _RECURRING:
            exemption = "Recurring transaction exemption"
            risk = RiskAssessmentResult(score=0.0, exemption_applied=True, exemption_reason=exemption)
        else:
            risk = await self.assess(request)
            if sanctions == SanctionsResult.CLEAR and risk.score < self._low_risk:
                exemption = "Low-risk transaction exemption"
                risk = risk.model_copy(
                    update={"exemption_applied": True, "exemption_reason": exemption}
                )

        if exemption is not None:
            status = AuthenticationStatus.AUTHENTICATED

        risk_level = classify(risk.score, SCA_THRESHOLDS)
        attempt = PSD2Authentication(
            user_id=request.user_id,
            transaction_id=request.transaction_id,
            amount=request.amount,
            payee=request.payee,
            transaction_type=request.transaction_type,
            status=status,
            risk=risk,
            risk_level=risk_level,
            compliance_status=determine_compliance_status(risk_level, PEPStatus.NOT_PEP, sanctions),
            sanctions_result=sanctions,
            ip_address=request.ip_address,
            device_id=request.device_id,
            location=request.location,
            created_at=now,
            expires_at=now + self._expiry,
            authenticated_at=now if exemption is not None else None,
        )
        await self._attempts.add(attempt)

        await self._audit(
            AuditAction.CREATE,
            attempt,
            context,
            new_values={
                "status": str(attempt.status),
                "amount": attempt.amount,
                "risk_score": risk.score,
                "risk_level": str(risk_level),
                "exemption_reason": exemption,
                "sanctions_result": str(sanctions),
            },
        )
        logger.info(
            "psd2.attempt_initiated",
            auth_id=attempt.auth_id,
            status=attempt.status,
            risk_score=risk.score,
            exempt=risk.exemption_applied,
        )
        return attempt

    # ------------------------------------------------------------------
    # Completion and status
    # ------------------------------------------------------------------

    async def _load(self, auth_id: str) -> PSD2Authentication:
        attempt = await self._attempts.get(auth_id)
        if attempt is None:
            raise NotFoundError(f"authentication {auth_id} not found")
        return await self._coerce_expiry(attempt)

    async def _coerce_expiry(self, attempt: PSD2Authentication) -> PSD2Authentication:
        if attempt.status != AuthenticationStatus.PENDING or self._clock() < attempt.expires_at:
            return attempt
        expired = await self._attempts.compare_and_transition(
            attempt.auth_id,
            "status",
            AuthenticationStatus.PENDING,
            {"status": AuthenticationStatus.EXPIRED},
        )
        if expired is not None:
            logger.info("psd2.attempt_expired", auth_id=attempt.auth_id)
            return expired
        current = await self._attempts.get(attempt.auth_id)
        return current if current is not None else attempt

    async def complete(
        self,
        auth_id: str,
        factors: AuthenticationFactors,
        context: AuditContext | None = None,
    ) -> PSD2Authentication:
        """Finish a PENDING attempt.

        Two or more factors authenticate it; fewer fail it.

        Raises
        ------
        AuthenticationExpired
            The attempt passed its expiry.
        AuthenticationFailed
            The attempt is no longer PENDING.
        """
        attempt = await self._load(auth_id)
        if attempt.status == AuthenticationStatus.EXPIRED:
            raise AuthenticationExpired(f"authentication {auth_id} has expired")
        if attempt.status != AuthenticationStatus.PENDING:
            raise AuthenticationFailed(f"authentication {auth_id} is already {attempt.status}")

        used = factors.count()
        now = self._clock()
        if used >= _REQUIRED_FACTORS:
            changes = {
                "status": AuthenticationStatus.AUTHENTICATED,
                "factors_used": used,
                "authenticated_at": now,
            }
        else:
            changes = {"status": AuthenticationStatus.FAILED, "factors_used": used}

        updated = await self._attempts.compare_and_transition(
            auth_id, "status", AuthenticationStatus.PENDING, changes
        )
        if updated is None:
            raise AuthenticationFailed(f"authentication {auth_id} was completed concurrently")

        await self._audit(
            AuditAction.UPDATE,
            updated,
            context,
            old_values={"status": str(AuthenticationStatus.PENDING)},
            new_values={"status": str(updated.status), "factors_used": used},
        )
        logger.info("psd2.attempt_completed", auth_id=auth_id, status=updated.status, factors=used)
        return updated

    async def check_status(self, auth_id: str) -> AuthenticationStatusReport:
        attempt = await self._load(auth_id)
        remaining = (attempt.expires_at - self._clock()).total_seconds()
        return AuthenticationStatusReport(
            auth_id=auth_id,
            status=attempt.status,
            is_valid=attempt.status == AuthenticationStatus.AUTHENTICATED,
            expires_at=attempt.expires_at,
            remaining_seconds=max(0, int(remaining)),
        )

    async def history(self, user_id: str, limit: int = 50) -> list[PSD2Authentication]:
        attempts = await self._attempts.filter(lambda a: a.user_id == user_id)
        attempts.sort(key=lambda a: a.created_at, reverse=True)
        return [await self._coerce_expiry(a) for a in attempts[:limit]]

    async def stats(
        self, user_id: str | None = None, since: datetime | None = None
    ) -> AuthenticationStats:
        attempts = await self._attempts.filter(
            lambda a: (user_id is None or a.user_id == user_id)
            and (since is None or a.created_at >= since)
        )
        attempts = [await self._coerce_expiry(a) for a in attempts]
        total = len(attempts)
        if total == 0:
            return AuthenticationStats()
        exempted = sum(1 for a in attempts if a.risk.exemption_applied)
        return AuthenticationStats(
            total=total,
            authenticated=sum(1 for a in attempts if a.status == AuthenticationStatus.AUTHENTICATED),
            failed=sum(1 for a in attempts if a.status == AuthenticationStatus.FAILED),
            expired=sum(1 for a in attempts if a.status == AuthenticationStatus.EXPIRED),
            exempted=exempted,
            average_risk_score=round(sum(a.risk.score for a in attempts) / total, 4),
            exemption_rate=round(exempted / total * 100, 2),
        )

    async def cleanup_expired(self) -> int:
        """Persist EXPIRED on every overdue PENDING attempt."""
        now = self._clock()
        overdue = await self._attempts.filter(
            lambda a: a.status == AuthenticationStatus.PENDING and a.expires_at <= now
        )
        count = 0
        for attempt in overdue:
            expired = await self._coerce_expiry(attempt)
            if expired.status == AuthenticationStatus.EXPIRED:
                count += 1
        logger.info("psd2.cleanup_complete", expired=count)
        return count

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _audit(
        self,
        action: AuditAction,
        attempt: PSD2Authentication,
        context: AuditContext | None,
        *,
        old_values: dict | None = None,
        new_values: dict | None = None,
    ) -> None:
        ctx = context or AuditContext(actor_id=attempt.user_id, ip_address=attempt.ip_address)
        try:
            await self._recorder.record(
                AuditEvent(
                    action=action,
                    entity_type="PSD2Authentication",
                    entity_id=attempt.auth_id,
                    old_values=old_values,
                    new_values=new_values,
                    context=ctx,
                )
            )
        except PartialWriteError as exc:
            logger.error("psd2.audit_write_failed", auth_id=attempt.auth_id, error=str(exc))
