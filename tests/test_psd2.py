"""Tests for PSD2 Strong Customer Authentication."""

from __future__ import annotations

import pytest

from src.models.enums import (
    AuditAction,
    AuthenticationStatus,
    ComplianceStatus,
    RiskLevel,
    SanctionsResult,
)
from src.models.risk import AuthenticationFactors, AuthenticationRequest
from src.services.errors import AuthenticationExpired, AuthenticationFailed, NotFoundError
from src.services.psd2 import amount_factor, frequency_factor, network_factor

_TWO_FACTORS = AuthenticationFactors(knowledge_factor="pin", possession_factor="sms-code")


def _request(**overrides) -> AuthenticationRequest:
    fields = {"user_id": "u-1", "amount": 500.0, "ip_address": "10.0.0.1"}
    fields.update(overrides)
    return AuthenticationRequest(**fields)


# -----------------------------------------------------------------------
# Factor tiers
# -----------------------------------------------------------------------


class TestFactorTiers:
    def test_amount_tiers(self) -> None:
        assert amount_factor(None) == 0.0
        assert amount_factor(100) == 0.0
        assert amount_factor(100.01) == 0.1
        assert amount_factor(1_500) == 0.2
        assert amount_factor(25_000) == 0.3

    def test_frequency_tiers(self) -> None:
        assert [frequency_factor(n) for n in (0, 2, 3, 6, 11)] == [0.0, 0.0, 0.1, 0.2, 0.3]

    def test_network(self) -> None:
        assert network_factor("127.0.0.1") == 0.0
        assert network_factor("192.168.1.4") == 0.05


# -----------------------------------------------------------------------
# Initiation and exemptions
# -----------------------------------------------------------------------


class TestInitiate:
    async def test_low_value_exemption(self, services) -> None:
        attempt = await services.sca.initiate(_request(amount=25.0))
        assert attempt.status == AuthenticationStatus.AUTHENTICATED, (
            "an exempt attempt is authenticated without factors"
        )
        assert attempt.risk.exemption_applied is True
        assert attempt.risk.exemption_reason == "Low-value transaction exemption (< €30)"
        assert attempt.authenticated_at is not None

    async def test_recurring_exemption(self, services) -> None:
        attempt = await services.sca.initiate(_request(transaction_type="recurring"))
        assert attempt.status == AuthenticationStatus.AUTHENTICATED
        assert attempt.risk.exemption_reason == "Recurring transaction exemption"

    async def test_scored_attempt_stays_pending(self, services, clock) -> None:
        attempt = await services.sca.initiate(_request())
        assert attempt.status == AuthenticationStatus.PENDING
        # amount 0.1 + unknown device 0.2 + external network 0.05
        assert attempt.risk.score == pytest.approx(0.35)
        assert attempt.risk_level == RiskLevel.MEDIUM
        assert attempt.expires_at == attempt.created_at.replace(minute=15)
        assert attempt.created_at == clock.now

    async def test_low_risk_exemption_for_known_device(self, services) -> None:
        first = await services.sca.initiate(_request(device_id="laptop-1"))
        await services.sca.complete(first.auth_id, _TWO_FACTORS)

        second = await services.sca.initiate(
            _request(amount=50.0, device_id="laptop-1", ip_address="127.0.0.1")
        )
        assert second.risk.score == 0.0
        assert second.status == AuthenticationStatus.AUTHENTICATED
        assert second.risk.exemption_reason == "Low-risk transaction exemption"

    async def test_unknown_device_scores_lower_than_missing_device(self, services) -> None:
        with_device = await services.sca.assess(_request(device_id="phone-9"))
        without_device = await services.sca.assess(_request())
        assert with_device.factors["device"] == 0.1
        assert without_device.factors["device"] == 0.2

    async def test_frequency_counts_exempt_attempts(self, services) -> None:
        for _ in range(3):
            await services.sca.initiate(_request(amount=10.0))
        risk = await services.sca.assess(_request())
        assert risk.factors["frequency"] == 0.1, "exempted attempts still count toward frequency"

    async def test_sanctioned_payee_fails(self, services) -> None:
        attempt = await services.sca.initiate(_request(amount=10.0, payee="Sanctioned Person"))
        assert attempt.status == AuthenticationStatus.FAILED
        assert attempt.sanctions_result == SanctionsResult.CONFIRMED_MATCH
        assert attempt.compliance_status == ComplianceStatus.NON_COMPLIANT
        assert attempt.risk.score == 1.0
        assert attempt.risk.exemption_applied is False, "a sanctioned payee is never exempt"

    async def test_potential_match_blocks_exemption(self, services) -> None:
        attempt = await services.sca.initiate(_request(amount=10.0, payee="Suspect Trading"))
        assert attempt.status == AuthenticationStatus.PENDING
        assert attempt.compliance_status == ComplianceStatus.PENDING

    async def test_initiation_is_audited(self, services) -> None:
        attempt = await services.sca.initiate(_request())
        trail = await services.recorder.get_trail("PSD2Authentication", attempt.auth_id)
        assert [r.action for r in trail] == [AuditAction.CREATE]
        assert trail[0].actor_id == "u-1"


# -----------------------------------------------------------------------
# Completion, expiry and status
# -----------------------------------------------------------------------


class TestComplete:
    async def test_two_factors_authenticate(self, services) -> None:
        attempt = await services.sca.initiate(_request())
        done = await services.sca.complete(attempt.auth_id, _TWO_FACTORS)
        assert done.status == AuthenticationStatus.AUTHENTICATED
        assert done.factors_used == 2

        trail = await services.recorder.get_trail("PSD2Authentication", attempt.auth_id)
        assert {r.action for r in trail} == {AuditAction.CREATE, AuditAction.UPDATE}

    async def test_one_factor_fails(self, services) -> None:
        attempt = await services.sca.initiate(_request())
        done = await services.sca.complete(
            attempt.auth_id, AuthenticationFactors(knowledge_factor="pin")
        )
        assert done.status == AuthenticationStatus.FAILED
        assert done.factors_used == 1

    async def test_completed_attempt_cannot_be_reused(self, services) -> None:
        attempt = await services.sca.initiate(_request())
        await services.sca.complete(attempt.auth_id, _TWO_FACTORS)
        with pytest.raises(AuthenticationFailed):
            await services.sca.complete(attempt.auth_id, _TWO_FACTORS)

    async def test_expired_attempt(self, services, clock) -> None:
        attempt = await services.sca.initiate(_request())
        clock.advance(minutes=16)
        with pytest.raises(AuthenticationExpired):
            await services.sca.complete(attempt.auth_id, _TWO_FACTORS)

        status = await services.sca.check_status(attempt.auth_id)
        assert status.status == AuthenticationStatus.EXPIRED
        assert status.is_valid is False
        assert status.remaining_seconds == 0

    async def test_unknown_attempt(self, services) -> None:
        with pytest.raises(NotFoundError):
            await services.sca.complete("missing", _TWO_FACTORS)

    async def test_check_status_remaining(self, services, clock) -> None:
        attempt = await services.sca.initiate(_request())
        clock.advance(minutes=5)
        status = await services.sca.check_status(attempt.auth_id)
        assert status.status == AuthenticationStatus.PENDING
        assert status.remaining_seconds == 600


class TestReporting:
    async def test_history_newest_first(self, services, clock) -> None:
        older = await services.sca.initiate(_request())
        clock.advance(minutes=1)
        newer = await services.sca.initiate(_request(amount=10.0))
        await services.sca.initiate(_request(user_id="u-2"))

        history = await services.sca.history("u-1")
        assert [a.auth_id for a in history] == [newer.auth_id, older.auth_id]
        assert len(await services.sca.history("u-1", limit=1)) == 1

    async def test_stats(self, services) -> None:
        await services.sca.initiate(_request(amount=10.0))
        await services.sca.initiate(_request())
        stats = await services.sca.stats(user_id="u-1")
        assert stats.total == 2
        assert stats.authenticated == 1
        assert stats.exempted == 1
        assert stats.exemption_rate == 50.0

    async def test_stats_empty(self, services) -> None:
        stats = await services.sca.stats(user_id="nobody")
        assert stats.total == 0
        assert stats.exemption_rate == 0.0

    async def test_cleanup_expired(self, services, clock) -> None:
        await services.sca.initiate(_request())
        await services.sca.initiate(_request(user_id="u-2"))
        await services.sca.initiate(_request(amount=10.0))

        assert await services.sca.cleanup_expired() == 0
        clock.advance(minutes=20)
        assert await services.sca.cleanup_expired() == 2
        assert await services.sca.cleanup_expired() == 0, "expired attempts are persisted once"
