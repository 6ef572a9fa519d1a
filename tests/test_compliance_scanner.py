"""Tests for mandatory-field scanning and compliance issue tracking."""

from __future__ import annotations

import pytest

from src.models.compliance import ComplianceIssue
from src.models.enums import AuditAction, ComplianceLevel, IssueSeverity, IssueType
from src.services.compliance_scanner import (
    DEFAULT_POLICIES,
    ComplianceCheckEngine,
    base_severity,
    is_live,
    validate_fields,
)
from src.services.errors import NotFoundError
from src.services.storage import InMemoryRepository


def _complete_profile(**overrides) -> dict:
    profile = {
        "id": "p-1",
        "user_id": "u-1",
        "company_name": "Bakkerij de Vries",
        "kvk_number": "12345678",
        "vat_number": "NL123456789B01",
        "phone": "0612345678",
        "address": "Dorpsstraat 1",
        "postal_code": "1234 AB",
        "city": "Utrecht",
        "iban": "NL91ABNA0417164300",
        "bank_name": "ABN AMRO",
        "account_holder": "J. de Vries",
    }
    profile.update(overrides)
    return profile


# -----------------------------------------------------------------------
# Pure helpers
# -----------------------------------------------------------------------


class TestHelpers:
    def test_is_live(self) -> None:
        assert is_live({"id": "1"}) is True
        assert is_live({"id": "1", "is_active": False}) is False
        assert is_live({"id": "1", "deleted_at": "2024-01-01"}) is False
        assert is_live({"id": "1", "archived_at": "2024-01-01"}) is False

    def test_validate_fields(self) -> None:
        errors = validate_fields({"kvk_number": "123", "iban": "not-an-iban", "email": "nope"})
        assert set(errors) == {"kvk_number", "iban", "email"}
        assert validate_fields(_complete_profile()) == {}

    def test_base_severity(self) -> None:
        policy = DEFAULT_POLICIES["userprofile"]
        assert base_severity(policy, ["kvk_number"]) == IssueSeverity.HIGH
        assert base_severity(policy, ["phone", "city"]) == IssueSeverity.MEDIUM
        assert base_severity(policy, ["phone"]) == IssueSeverity.LOW


# -----------------------------------------------------------------------
# Scanning
# -----------------------------------------------------------------------


class TestScan:
    async def test_missing_blocking_field_escalates(self, services, entities) -> None:
        await entities.put("user_profile", _complete_profile(kvk_number=None))
        scanner = services.scanner

        first = await scanner.scan("user_profile")
        assert len(first) == 1
        assert first[0].missing_fields == ["kvk_number"]
        assert first[0].severity == IssueSeverity.HIGH, "a missing blocking field is HIGH"

        second = await scanner.scan("user_profile")
        assert len(second) == 1
        assert second[0].issue_id == first[0].issue_id, "the same issue is carried across cycles"
        assert second[0].severity == IssueSeverity.CRITICAL, (
            "a field still missing on the next cycle escalates to CRITICAL"
        )
        assert second[0].cycles == 2

    async def test_missing_non_blocking_field_escalates(self, services, entities) -> None:
        await entities.put("client", {"id": "c-1", "name": "Jan", "email": "jan@example.nl"})

        first = await services.scanner.scan("client")
        assert first[0].severity == IssueSeverity.LOW, "one missing non-blocking field is LOW"

        second = await services.scanner.scan("client")
        assert second[0].severity == IssueSeverity.CRITICAL, (
            "any field still missing on the next cycle escalates, blocking or not"
        )

    async def test_all_missing_fields_in_one_issue(self, services, entities) -> None:
        await entities.put("client", {"id": "c-1", "name": "", "email": None, "phone": None})
        issues = await services.scanner.scan("client")
        assert len(issues) == 1
        assert issues[0].missing_fields == ["name", "email", "phone"]

    async def test_completed_fields_resolve_issue(self, services, entities) -> None:
        await entities.put("client", {"id": "c-1", "name": "Jan", "email": "jan@example.nl"})
        first = await services.scanner.run_scan("client")
        assert first.new_issues == 1

        await entities.update("client", "c-1", {"phone": "0612345678"})
        second = await services.scanner.run_scan("client")
        assert second.resolved == 1
        assert second.issues == []

    async def test_inactive_entities_skipped_and_resolved(self, services, entities) -> None:
        await entities.put("client", {"id": "c-1", "name": "Jan"})
        await services.scanner.scan("client")
        await entities.update("client", "c-1", {"is_active": False})

        result = await services.scanner.run_scan("client")
        assert result.scanned == 0
        assert result.resolved == 1
        assert await services.scanner.list_issues("client") == []

    async def test_invalid_formats_raise_validation_issue(self, services, entities) -> None:
        await entities.put("creditor", {"id": "cr-1", "kvk_number": "12AB", "name": "X"})
        issues = await services.scanner.scan("creditor")
        validation = [i for i in issues if i.issue_type == IssueType.DATA_VALIDATION]
        assert len(validation) == 1
        assert validation[0].severity == IssueSeverity.MEDIUM
        assert "kvk_number" in validation[0].validation_errors

    async def test_unknown_entity_type(self, services) -> None:
        with pytest.raises(NotFoundError):
            await services.scanner.scan("spaceship")

    async def test_scan_is_audited(self, services, entities) -> None:
        await entities.put("client", {"id": "c-1", "name": "Jan", "email": "j@x.nl", "phone": "1"})
        result = await services.scanner.run_scan("client")
        trail = await services.recorder.get_trail("ComplianceScan", f"client:{result.scan_id}")
        assert len(trail) == 1
        assert trail[0].action == AuditAction.VALIDATE
        assert trail[0].compliance_level == ComplianceLevel.ENHANCED


# -----------------------------------------------------------------------
# Operator actions
# -----------------------------------------------------------------------


class TestIssueManagement:
    async def test_resolve_issue_is_idempotent(self, services, entities) -> None:
        await entities.put("client", {"id": "c-1", "name": "Jan"})
        [issue] = await services.scanner.scan("client")

        resolved = await services.scanner.resolve_issue(issue.issue_id, "ops-1", "Called client")
        again = await services.scanner.resolve_issue(issue.issue_id, "ops-2", "Again")
        assert resolved.resolved_by == "ops-1"
        assert again.resolved_by == "ops-1", "resolving twice must not overwrite the first resolution"

        trail = await services.recorder.get_trail("ComplianceIssue", issue.issue_id)
        assert len(trail) == 1, "only the first resolution is audited"

    async def test_resolve_unknown_issue(self, services) -> None:
        with pytest.raises(NotFoundError):
            await services.scanner.resolve_issue("missing", "ops", "n/a")

    async def test_list_and_summary(self, services, entities) -> None:
        await entities.put("client", {"id": "c-1", "name": "Jan"})
        await entities.put("user_profile", _complete_profile(iban=None))
        await services.scanner.scan("client")
        await services.scanner.scan("user_profile")

        high = await services.scanner.list_issues(severity=IssueSeverity.HIGH)
        assert {i.entity_type for i in high} == {"client", "user_profile"}

        summary = await services.scanner.summary()
        assert summary.open_issues == 2
        assert summary.by_entity_type == {"client": 1, "user_profile": 1}
        assert summary.by_severity == {"HIGH": 2}
        assert summary.overdue == 0


# -----------------------------------------------------------------------
# Failure isolation
# -----------------------------------------------------------------------


class _FailingIssueStore(InMemoryRepository[ComplianceIssue]):
    """Issue repository that cannot store issues for one entity."""

    def __init__(self, broken_entity_id: str) -> None:
        super().__init__("issue_id")
        self.broken_entity_id = broken_entity_id

    async def add(self, item: ComplianceIssue) -> ComplianceIssue:
        if item.entity_id == self.broken_entity_id:
            raise RuntimeError("issue store unavailable")
        return await super().add(item)


class TestFailureIsolation:
    async def test_one_failing_entity_does_not_stop_the_scan(
        self, services, entities, clock
    ) -> None:
        for client_id in ("c-1", "c-bad", "c-3"):
            await entities.put("client", {"id": client_id, "name": "Jan"})
        scanner = ComplianceCheckEngine(
            entities, _FailingIssueStore("c-bad"), services.recorder, clock=clock
        )

        result = await scanner.run_scan("client")
        assert result.scanned == 3
        assert result.new_issues == 2, "the other entities are still scanned"
        assert {i.entity_id for i in result.issues} == {"c-1", "c-3"}
        assert result.errors == ["c-bad: issue store unavailable"]
