"""Tests for weighted risk scoring, classification and screening providers."""

from __future__ import annotations

import httpx
import pytest

from src.models.enums import ComplianceStatus, PEPStatus, RiskLevel, SanctionsResult
from src.services.risk import (
    SCA_THRESHOLDS,
    WWFT_THRESHOLDS,
    HttpScreeningClient,
    StaticListScreening,
    build_screening_provider,
    classify,
    determine_compliance_status,
    score,
)


# -----------------------------------------------------------------------
# score()
# -----------------------------------------------------------------------


class TestScore:
    def test_sum_of_factors(self) -> None:
        result = score({"amount": 0.1, "device": 0.2, "network": 0.05})
        assert result.score == pytest.approx(0.35)
        assert result.factors == {"amount": 0.1, "device": 0.2, "network": 0.05}

    def test_weights_apply(self) -> None:
        result = score({"a": 1.0, "b": 1.0}, {"a": 0.25, "b": 0.5})
        assert result.score == pytest.approx(0.75)
        assert result.factors["a"] == pytest.approx(0.25)

    def test_bounded(self) -> None:
        assert score({"a": 0.9, "b": 0.9}).score == 1.0, "sum above 1 is clamped"
        assert score({"a": -5.0}).score == 0.0, "negative factors are clamped to 0"
        assert score({}).score == 0.0

    def test_monotonic_when_adding_factor(self) -> None:
        base = {"amount": 0.2, "network": 0.05}
        before = score(base).score
        for extra in (0.0, 0.01, 0.3, 2.0):
            after = score({**base, "extra": extra}).score
            assert after >= before, f"adding factor {extra} must not lower the score"

    def test_monotonic_when_raising_factor(self) -> None:
        previous = 0.0
        for value in (0.0, 0.1, 0.2, 0.5, 1.0):
            current = score({"amount": value, "device": 0.1}).score
            assert current >= previous
            previous = current


# -----------------------------------------------------------------------
# classify()
# -----------------------------------------------------------------------


class TestClassify:
    @pytest.mark.parametrize(
        ("value", "level"),
        [
            (0.0, RiskLevel.LOW),
            (0.24, RiskLevel.LOW),
            (0.25, RiskLevel.MEDIUM),
            (0.5, RiskLevel.HIGH),
            (0.75, RiskLevel.CRITICAL),
            (1.0, RiskLevel.CRITICAL),
        ],
    )
    def test_sca_thresholds(self, value, level) -> None:
        assert classify(value, SCA_THRESHOLDS) == level

    def test_wwft_thresholds_on_rounded_scores(self) -> None:
        four_points = score({"x": 1.0}, {"x": 4 / 11}).score
        assert classify(four_points, WWFT_THRESHOLDS) == RiskLevel.HIGH, (
            "rounding must not push an exact threshold score into the lower level"
        )
        assert classify(score({"x": 1.0}, {"x": 1 / 11}).score, WWFT_THRESHOLDS) == RiskLevel.LOW


class TestComplianceStatus:
    def test_confirmed_sanctions_always_non_compliant(self) -> None:
        for level in RiskLevel:
            status = determine_compliance_status(
                level, PEPStatus.NOT_PEP, SanctionsResult.CONFIRMED_MATCH
            )
            assert status == ComplianceStatus.NON_COMPLIANT

    def test_pep_with_critical_risk(self) -> None:
        assert (
            determine_compliance_status(RiskLevel.CRITICAL, PEPStatus.FOREIGN_PEP, SanctionsResult.CLEAR)
            == ComplianceStatus.NON_COMPLIANT
        )
        assert (
            determine_compliance_status(RiskLevel.HIGH, PEPStatus.FOREIGN_PEP, SanctionsResult.CLEAR)
            == ComplianceStatus.COMPLIANT
        )

    def test_potential_match_pending(self) -> None:
        assert (
            determine_compliance_status(RiskLevel.LOW, PEPStatus.NOT_PEP, SanctionsResult.POTENTIAL_MATCH)
            == ComplianceStatus.PENDING
        )


# -----------------------------------------------------------------------
# Screening providers
# -----------------------------------------------------------------------


class TestStaticListScreening:
    async def test_sanctions(self) -> None:
        screening = StaticListScreening()
        assert (await screening.check_sanctions("BLOCKED ENTITY B.V.")).result == (
            SanctionsResult.CONFIRMED_MATCH
        )
        assert (await screening.check_sanctions("Suspect Trading")).result == (
            SanctionsResult.POTENTIAL_MATCH
        )
        assert (await screening.check_sanctions("Bakkerij")).result == SanctionsResult.CLEAR

    async def test_pep(self) -> None:
        screening = StaticListScreening(pep_list=("Minister Jansen",))
        assert (await screening.check_pep("minister jansen")).status == PEPStatus.DOMESTIC_PEP
        assert (await screening.check_pep("Piet")).status == PEPStatus.NOT_PEP


class TestHttpScreeningClient:
    async def test_parses_service_answer(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/sanctions":
                return httpx.Response(200, json={"result": "POTENTIAL_MATCH", "details": "fuzzy"})
            return httpx.Response(200, json={"status": "FOREIGN_PEP"})

        client = HttpScreeningClient("http://screening")
        client._client = httpx.AsyncClient(
            base_url="http://screening", transport=httpx.MockTransport(handler)
        )
        sanctions = await client.check_sanctions("Someone")
        pep = await client.check_pep("Someone")
        await client.close()

        assert sanctions.result == SanctionsResult.POTENTIAL_MATCH
        assert sanctions.details == "fuzzy"
        assert pep.status == PEPStatus.FOREIGN_PEP

    async def test_unavailable_service_degrades_to_review(self) -> None:
        client = HttpScreeningClient("http://screening")
        client._client = httpx.AsyncClient(
            base_url="http://screening",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        sanctions = await client.check_sanctions("Someone")
        pep = await client.check_pep("Someone")
        await client.close()

        assert sanctions.result == SanctionsResult.UNDER_REVIEW, (
            "an unreachable screening service must not pass the subject as CLEAR"
        )
        assert pep.status == PEPStatus.NOT_PEP

    def test_provider_selection(self, test_settings) -> None:
        assert isinstance(build_screening_provider(test_settings), StaticListScreening)
        remote = test_settings.model_copy(update={"screening_service_url": "http://screening"})
        assert isinstance(build_screening_provider(remote), HttpScreeningClient)
