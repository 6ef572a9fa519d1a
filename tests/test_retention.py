"""Tests for retention deadlines, legal holds and the expired-record sweep."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from src.models.audit import AuditRecord
from src.models.enums import (
    AuditAction,
    CDDLevel,
    ComplianceLevel,
    ComplianceStatus,
    MonitoringLevel,
    PEPStatus,
    RiskLevel,
    SanctionsResult,
)
from src.models.risk import RiskAssessmentResult, WwftCheck
from src.services.errors import RetentionViolation
from src.services.retention import (
    RetentionEngine,
    RetentionPolicy,
    add_months,
    add_years,
    coerce_level,
    parse_timestamp,
)
from src.services.storage import InMemoryAuditIndex, InMemoryRepository


def _row(record_id: str, retention_until: datetime) -> AuditRecord:
    return AuditRecord(
        record_id=record_id,
        action=AuditAction.CREATE,
        entity_type="Client",
        entity_id="1",
        compliance_level=ComplianceLevel.STANDARD,
        retention_until=retention_until,
        ledger_key=f"audit:Client:1:{record_id}",
    )


def _wwft_check(entity_id: str, retain_until: datetime) -> WwftCheck:
    return WwftCheck(
        entity_type="client",
        entity_id=entity_id,
        cdd_level=CDDLevel.STANDARD,
        risk_level=RiskLevel.LOW,
        risk=RiskAssessmentResult(score=0.0),
        pep_status=PEPStatus.NOT_PEP,
        sanctions_result=SanctionsResult.CLEAR,
        monitoring_level=MonitoringLevel.BASIC,
        records_retain_until=retain_until,
        status=ComplianceStatus.COMPLIANT,
        next_review_date=retain_until,
    )


@pytest.fixture
def index() -> InMemoryAuditIndex:
    return InMemoryAuditIndex()


@pytest.fixture
def engine(index, entities, clock) -> RetentionEngine:
    return RetentionEngine(RetentionPolicy(), index, entities, clock=clock)


# -----------------------------------------------------------------------
# Calendar helpers
# -----------------------------------------------------------------------


class TestCalendarHelpers:
    def test_add_years_plain(self) -> None:
        start = datetime(2024, 3, 1, tzinfo=UTC)
        assert add_years(start, 7) == datetime(2031, 3, 1, tzinfo=UTC)

    def test_add_years_leap_day(self) -> None:
        assert add_years(datetime(2024, 2, 29, tzinfo=UTC), 1) == datetime(2025, 2, 28, tzinfo=UTC)

    def test_add_years_naive_treated_as_utc(self) -> None:
        assert add_years(datetime(2024, 1, 1), 1).tzinfo is not None

    def test_add_months_clamps_to_month_end(self) -> None:
        assert add_months(datetime(2024, 1, 31, tzinfo=UTC), 1) == datetime(2024, 2, 29, tzinfo=UTC)
        assert add_months(datetime(2024, 11, 15, tzinfo=UTC), 3) == datetime(2025, 2, 15, tzinfo=UTC)

    def test_parse_timestamp(self) -> None:
        assert parse_timestamp("2023-05-01T00:00:00Z") == datetime(2023, 5, 1, tzinfo=UTC)
        assert parse_timestamp(None) is None

    def test_coerce_level(self) -> None:
        assert coerce_level("critical") == ComplianceLevel.CRITICAL
        assert coerce_level("bogus") is None


# -----------------------------------------------------------------------
# Deadlines
# -----------------------------------------------------------------------


class TestDeadlines:
    @pytest.mark.parametrize(
        ("level", "years"),
        [
            (ComplianceLevel.STANDARD, 3),
            (ComplianceLevel.ENHANCED, 5),
            (ComplianceLevel.CRITICAL, 7),
            (ComplianceLevel.REGULATORY, 10),
        ],
    )
    def test_years_per_level(self, engine, clock, level, years) -> None:
        deadline = engine.deadline("Invoice", level, clock.now)
        assert deadline == clock.now.replace(year=clock.now.year + years)

    def test_unknown_level_is_standard(self, engine, clock) -> None:
        assert engine.deadline("Invoice", "GOLD", clock.now).year == clock.now.year + 3

    def test_entity_override(self, index, entities, clock) -> None:
        policy = RetentionPolicy(overrides={"invoice": {ComplianceLevel.CRITICAL: 8}})
        engine = RetentionEngine(policy, index, entities, clock=clock)
        assert engine.deadline("Invoice", ComplianceLevel.CRITICAL, clock.now).year == clock.now.year + 8

    def test_from_settings(self, test_settings) -> None:
        policy = RetentionPolicy.from_settings(test_settings)
        assert policy.years[ComplianceLevel.REGULATORY] == 10
        assert policy.financial_record_years == 7


# -----------------------------------------------------------------------
# Legal holds
# -----------------------------------------------------------------------


class TestLegalHolds:
    async def test_client_with_recent_invoice_is_held(self, engine, entities, clock) -> None:
        await entities.put("client", {"id": "7", "name": "Klant BV"})
        await entities.put(
            "invoice",
            {"id": "inv-1", "client_id": "7", "created_at": (clock.now - timedelta(days=365)).isoformat()},
        )
        reasons = await engine.legal_hold_reasons("Client", "7")
        assert reasons == ["Financial record retention obligation (7 years)"]
        assert await engine.has_active_legal_hold("client", "7") is True
        with pytest.raises(RetentionViolation) as excinfo:
            await engine.ensure_erasable("client", "7")
        assert excinfo.value.reasons == reasons

    async def test_client_with_old_invoice_is_free(self, engine, entities, clock) -> None:
        await entities.put(
            "invoice",
            {"id": "inv-1", "client_id": "7", "created_at": datetime(2010, 1, 1, tzinfo=UTC)},
        )
        assert await engine.legal_hold_reasons("Client", "7") == []
        await engine.ensure_erasable("Client", "7")

    async def test_undated_invoice_is_held(self, engine, entities) -> None:
        await entities.put("invoice", {"id": "inv-1", "client_id": "7", "created_at": None})
        await entities.put("invoice", {"id": "inv-2", "user_id": "u-1"})
        assert await engine.legal_hold_reasons("client", "7") == [
            "Financial record retention obligation (7 years)"
        ], "an invoice without a date cannot be shown to be past retention"
        assert await engine.has_active_legal_hold("user", "u-1") is True

    async def test_user_profile_resolves_owning_user(self, engine, entities, clock) -> None:
        await entities.put("user_profile", {"id": "p-1", "user_id": "u-1"})
        await entities.put("invoice", {"id": "inv-1", "user_id": "u-1", "created_at": clock.now})
        reasons = await engine.legal_hold_reasons("UserProfile", "p-1")
        assert reasons == ["Tax record retention obligation (7 years)"]

    async def test_wwft_file_holds_subject(self, index, entities, clock) -> None:
        checks: InMemoryRepository[WwftCheck] = InMemoryRepository("check_id")
        await checks.add(_wwft_check("9", clock.now + timedelta(days=30)))
        await checks.add(_wwft_check("10", clock.now - timedelta(days=1)))
        engine = RetentionEngine(RetentionPolicy(), index, entities, wwft_checks=checks, clock=clock)
        assert await engine.legal_hold_reasons("client", "9") == [
            "Wwft record retention obligation (5 years)"
        ]
        assert await engine.legal_hold_reasons("client", "10") == [], "expired Wwft files do not hold"


# -----------------------------------------------------------------------
# Expiry and sweep
# -----------------------------------------------------------------------


class TestSweep:
    async def test_expiring_soon_and_expired(self, engine, index, clock) -> None:
        await index.insert(_row("old", clock.now - timedelta(days=1)))
        await index.insert(_row("soon", clock.now + timedelta(days=10)))
        await index.insert(_row("later", clock.now + timedelta(days=400)))

        assert [r.record_id for r in await engine.expired()] == ["old"]
        assert [r.record_id for r in await engine.expiring_soon()] == ["soon"]

    async def test_sweep_deletes_only_expired_rows(self, engine, index, clock) -> None:
        await index.insert(_row("old", clock.now - timedelta(days=1)))
        await index.insert(_row("keep", clock.now + timedelta(days=1)))
        result = await engine.sweep()
        assert (result.processed, result.deleted, result.failed) == (1, 1, 0)
        assert await index.get("old") is None
        assert await index.get("keep") is not None

    async def test_sweep_isolates_failures(self, entities, clock) -> None:
        class FlakyIndex(InMemoryAuditIndex):
            async def delete(self, record_id: str) -> None:
                if record_id == "bad":
                    raise RuntimeError("row locked")
                await super().delete(record_id)

        index = FlakyIndex()
        engine = RetentionEngine(RetentionPolicy(), index, entities, clock=clock)
        await index.insert(_row("bad", clock.now - timedelta(days=2)))
        await index.insert(_row("good", clock.now - timedelta(days=1)))

        result = await engine.sweep()
        assert result.deleted == 1
        assert result.failed == 1
        assert result.errors == ["bad: row locked"]
