"""Weighted-factor risk scoring shared by PSD2 SCA and Wwft CDD.

:func:`score` is pure: each factor value is clamped to ``[0, 1]``,
multiplied by its weight (default ``1.0``), summed, and the sum clamped to
``[0, 1]``.  Adding a factor with a positive weight can therefore never
lower a score.

Screening (politically exposed persons and sanctions lists) is behind
:class:`ScreeningProvider` so the fixed development lists and a remote
screening service are interchangeable.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Final, Protocol, runtime_checkable

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.models.enums import ComplianceStatus, PEPStatus, RiskLevel, SanctionsResult
from src.models.risk import PEPCheck, RiskAssessmentResult, RiskThresholds, SanctionsCheck

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

# Tolerance for scores that were rounded to six decimals.
_EPSILON: Final[float] = 1e-6

SCA_THRESHOLDS: Final = RiskThresholds(medium=0.25, high=0.5, critical=0.75)
# Wwft scores are points out of 11; levels start at 2, 4 and 6 points.
WWFT_THRESHOLDS: Final = RiskThresholds(medium=2 / 11, high=4 / 11, critical=6 / 11)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def score(
    factors: Mapping[str, float],
    weights: Mapping[str, float] | None = None,
) -> RiskAssessmentResult:
    """Combine factor values into a score in ``[0, 1]``.

    Parameters
    ----------
    factors:
        Factor name to raw value; values outside ``[0, 1]`` are clamped.
    weights:
        Factor name to weight.  Missing weights default to ``1.0``.

    Returns
    -------
    RiskAssessmentResult
        ``factors`` holds each weighted contribution.
    """
    weights = weights or {}
    contributions = {
        name: _clamp(value) * float(weights.get(name, 1.0)) for name, value in factors.items()
    }
    total = _clamp(sum(contributions.values()))
    return RiskAssessmentResult(
        score=round(total, 6),
        factors={name: round(c, 6) for name, c in contributions.items()},
    )


def classify(value: float, thresholds: RiskThresholds) -> RiskLevel:
    if value >= thresholds.critical - _EPSILON:
        return RiskLevel.CRITICAL
    if value >= thresholds.high - _EPSILON:
        return RiskLevel.HIGH
    if value >= thresholds.medium - _EPSILON:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def determine_compliance_status(
    risk_level: RiskLevel,
    pep_status: PEPStatus,
    sanctions_result: SanctionsResult,
) -> ComplianceStatus:
    """Terminal classification from risk, PEP and sanctions results.

    A confirmed sanctions match is NON_COMPLIANT whatever the score.
    """
    if sanctions_result == SanctionsResult.CONFIRMED_MATCH:
        return ComplianceStatus.NON_COMPLIANT
    if pep_status != PEPStatus.NOT_PEP and risk_level == RiskLevel.CRITICAL:
        return ComplianceStatus.NON_COMPLIANT
    if sanctions_result in (SanctionsResult.POTENTIAL_MATCH, SanctionsResult.UNDER_REVIEW):
        return ComplianceStatus.PENDING
    return ComplianceStatus.COMPLIANT


# ---------------------------------------------------------------------------
# Screening
# ---------------------------------------------------------------------------


@runtime_checkable
class ScreeningProvider(Protocol):
    async def check_pep(self, name: str) -> PEPCheck: ...

    async def check_sanctions(self, name: str) -> SanctionsCheck: ...


_DEFAULT_PEP_LIST: Final[tuple[str, ...]] = ("John Politician", "Jane Minister", "Bob Ambassador")
_DEFAULT_SANCTIONS_LIST: Final[tuple[str, ...]] = (
    "Sanctioned Person",
    "Blocked Entity",
    "Restricted Company",
)


class StaticListScreening:
    """Case-insensitive substring match against fixed lists.

    Used in development and tests; names containing ``suspect`` are
    reported as a potential sanctions match.
    """

    __slots__ = ("_pep", "_sanctions")

    def __init__(
        self,
        pep_list: tuple[str, ...] = _DEFAULT_PEP_LIST,
        sanctions_list: tuple[str, ...] = _DEFAULT_SANCTIONS_LIST,
    ) -> None:
        self._pep = tuple(n.lower() for n in pep_list)
        self._sanctions = tuple(n.lower() for n in sanctions_list)

    async def check_pep(self, name: str) -> PEPCheck:
        lowered = name.lower()
        if any(entry in lowered for entry in self._pep):
            return PEPCheck(status=PEPStatus.DOMESTIC_PEP, details="Match on PEP list")
        return PEPCheck(status=PEPStatus.NOT_PEP, details="No PEP match found")

    async def check_sanctions(self, name: str) -> SanctionsCheck:
        lowered = name.lower()
        if any(entry in lowered for entry in self._sanctions):
            return SanctionsCheck(
                result=SanctionsResult.CONFIRMED_MATCH, details="Match on sanctions list"
            )
        if "suspect" in lowered:
            return SanctionsCheck(
                result=SanctionsResult.POTENTIAL_MATCH, details="Partial match requires review"
            )
        return SanctionsCheck(result=SanctionsResult.CLEAR, details="No sanctions match found")


class HttpScreeningClient:
    """Client for a remote PEP/sanctions screening service.

    ``POST {base_url}/pep`` and ``POST {base_url}/sanctions`` with
    ``{"name": ...}``; each answers ``{"status"|"result": ..., "details": ...}``.
    An unreachable service degrades to UNDER_REVIEW for sanctions so the
    subject is held as PENDING instead of passing unchecked.
    """

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 10.0) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=headers)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _post(self, path: str, name: str) -> dict[str, Any]:
        response = await self._client.post(path, json={"name": name})
        response.raise_for_status()
        return response.json()

    async def check_pep(self, name: str) -> PEPCheck:
        try:
            body = await self._post("/pep", name)
            return PEPCheck(status=PEPStatus(body["status"]), details=body.get("details", ""))
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.warning("screening.pep_unavailable", error=str(exc))
            return PEPCheck(status=PEPStatus.NOT_PEP, details="PEP screening unavailable")

    async def check_sanctions(self, name: str) -> SanctionsCheck:
        try:
            body = await self._post("/sanctions", name)
            return SanctionsCheck(
                result=SanctionsResult(body["result"]), details=body.get("details", "")
            )
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.warning("screening.sanctions_unavailable", error=str(exc))
            return SanctionsCheck(
                result=SanctionsResult.UNDER_REVIEW,
                details="Sanctions screening unavailable; manual review required",
            )

    async def close(self) -> None:
        await self._client.aclose()


def build_screening_provider(settings: object) -> ScreeningProvider:
    url = getattr(settings, "screening_service_url", "")
    if url:
        return HttpScreeningClient(
            url,
            api_key=getattr(settings, "screening_api_key", ""),
            timeout=getattr(settings, "screening_timeout_seconds", 10.0),
        )
    return StaticListScreening()
