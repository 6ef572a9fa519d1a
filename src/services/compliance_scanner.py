"""Mandatory-field and data-validation scanning for business entities.

Each live entity of a scanned type is compared against its
:class:`MandatoryFieldPolicy`.  All missing fields of one entity are
collected into a single :class:`ComplianceIssue`; a second issue of type
DATA_VALIDATION lists malformed KvK numbers, IBANs and e-mail addresses.

Severity of a mandatory-field issue:

- CRITICAL -- the same fields were already missing in the previous cycle.
- HIGH     -- a blocking field is missing.
- MEDIUM   -- more than one field is missing.
- LOW      -- exactly one non-blocking field is missing.

Every scan is itself audited (action VALIDATE on ``ComplianceScan``).
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Final

import structlog

from src.models.audit import AuditContext, AuditEvent
from src.models.compliance import (
    ComplianceIssue,
    ComplianceSummary,
    MandatoryFieldPolicy,
    ScanResult,
)
from src.models.enums import AuditAction, ComplianceLevel, IssueSeverity, IssueType
from src.services.errors import NotFoundError, PartialWriteError
from src.services.retention import utcnow
from src.services.storage import normalize_entity_type

if TYPE_CHECKING:
    from src.services.audit_recorder import AuditRecorder
    from src.services.storage import EntityStore, InMemoryRepository

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

_BANK_FIELDS: Final[list[str]] = ["iban", "bank_name", "account_holder"]
_ADDRESS_FIELDS: Final[list[str]] = ["address", "postal_code", "city"]

DEFAULT_POLICIES: Final[dict[str, MandatoryFieldPolicy]] = {
    "userprofile": MandatoryFieldPolicy(
        entity_type="user_profile",
        required=["company_name", "kvk_number", "vat_number", "phone", *_ADDRESS_FIELDS, *_BANK_FIELDS],
        blocking=frozenset({"kvk_number", "vat_number", "iban"}),
    ),
    "creditor": MandatoryFieldPolicy(
        entity_type="creditor",
        required=[
            "name",
            "email",
            "phone",
            "company_name",
            "kvk_number",
            "vat_number",
            *_ADDRESS_FIELDS,
            *_BANK_FIELDS,
        ],
        blocking=frozenset({"kvk_number", "iban"}),
    ),
    "client": MandatoryFieldPolicy(
        entity_type="client",
        required=["name", "email", "phone"],
        blocking=frozenset({"email"}),
    ),
    "invoice": MandatoryFieldPolicy(
        entity_type="invoice",
        required=[
            "invoice_number",
            "amount",
            "btw_amount",
            "total_amount",
            "btw_rate",
            "due_date",
            "description",
        ],
        blocking=frozenset({"invoice_number", "total_amount", "btw_rate"}),
    ),
}

_KVK_RE: Final = re.compile(r"^\d{8}$")
_IBAN_RE: Final = re.compile(r"^[A-Z]{2}\d{2}[A-Z0-9]{4,30}$")
_EMAIL_RE: Final = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_SCAN_CONTEXT: Final = AuditContext(actor_id="system:compliance-scanner")


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


def is_live(entity: dict[str, Any]) -> bool:
    """Not inactive, soft-deleted or archived."""
    return (
        entity.get("is_active", True) is not False
        and not entity.get("deleted_at")
        and not entity.get("archived_at")
    )


def validate_fields(entity: dict[str, Any]) -> dict[str, str]:
    """Format errors for the KvK number, IBAN and e-mail, keyed by field."""
    errors: dict[str, str] = {}
    kvk = entity.get("kvk_number")
    if not _is_missing(kvk) and not _KVK_RE.match(str(kvk).strip()):
        errors["kvk_number"] = "KvK number must be exactly 8 digits"
    iban = entity.get("iban")
    if not _is_missing(iban) and not _IBAN_RE.match(str(iban).replace(" ", "").upper()):
        errors["iban"] = "Invalid IBAN format"
    email = entity.get("email")
    if not _is_missing(email) and not _EMAIL_RE.match(str(email).strip()):
        errors["email"] = "Invalid e-mail address"
    return errors


def base_severity(policy: MandatoryFieldPolicy, missing: list[str]) -> IssueSeverity:
    if policy.blocking.intersection(missing):
        return IssueSeverity.HIGH
    if len(missing) > 1:
        return IssueSeverity.MEDIUM
    return IssueSeverity.LOW


# ---------------------------------------------------------------------------
# ComplianceCheckEngine
# ---------------------------------------------------------------------------


class ComplianceCheckEngine:
    """Scans entities and tracks the resulting issues across cycles.

    Parameters
    ----------
    entities:
        Store holding the entities to scan.
    issues:
        Repository of :class:`ComplianceIssue` keyed by ``issue_id``.
    recorder:
        Audit recorder; scans and resolutions are audited.
    policies:
        Mandatory-field policies keyed by normalised entity type.
    """

    def __init__(
        self,
        entities: EntityStore,
        issues: InMemoryRepository[ComplianceIssue],
        recorder: AuditRecorder,
        policies: dict[str, MandatoryFieldPolicy] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._entities = entities
        self._issues = issues
        self._recorder = recorder
        self._policies = dict(policies if policies is not None else DEFAULT_POLICIES)
        self._clock = clock

    def policy_for(self, entity_type: str) -> MandatoryFieldPolicy:
        policy = self._policies.get(normalize_entity_type(entity_type))
        if policy is None:
            raise NotFoundError(f"no mandatory-field policy for entity type {entity_type!r}")
        return policy

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    async def scan(self, entity_type: str) -> list[ComplianceIssue]:
        """Scan every live entity of *entity_type*; return its open issues."""
        return (await self.run_scan(entity_type)).issues

    async def run_scan(self, entity_type: str) -> ScanResult:
        """Like :meth:`scan` but with counts, for jobs and the API."""
        policy = self.policy_for(entity_type)
        result = ScanResult(entity_type=policy.entity_type, started_at=self._clock())

        for entity in await self._entities.list(policy.entity_type):
            entity_id = str(entity.get("id", ""))
            try:
                if not is_live(entity):
                    result.resolved += await self._resolve_open(
                        policy.entity_type, entity_id, None, "Entity is no longer active"
                    )
                    continue
                result.scanned += 1
                await self._check_entity(policy, entity_id, entity, result)
            except Exception as exc:
                result.errors.append(f"{entity_id}: {exc}")
                logger.error(
                    "compliance.entity_check_failed",
                    entity_type=policy.entity_type,
                    entity_id=entity_id,
                    error=str(exc),
                )

        await self._audit_scan(result)
        logger.info(
            "compliance.scan_complete",
            entity_type=policy.entity_type,
            scanned=result.scanned,
            open_issues=len(result.issues),
            new_issues=result.new_issues,
            resolved=result.resolved,
            errors=len(result.errors),
        )
        return result

    async def _open_issue(
        self, entity_type: str, entity_id: str, issue_type: IssueType
    ) -> ComplianceIssue | None:
        kind = normalize_entity_type(entity_type)
        found = await self._issues.filter(
            lambda i: i.is_open
            and i.issue_type == issue_type
            and i.entity_id == entity_id
            and normalize_entity_type(i.entity_type) == kind
        )
        return found[0] if found else None

    async def _check_entity(
        self,
        policy: MandatoryFieldPolicy,
        entity_id: str,
        entity: dict[str, Any],
        result: ScanResult,
    ) -> None:
        now = self._clock()

        missing = [f for f in policy.required if _is_missing(entity.get(f))]
        existing = await self._open_issue(policy.entity_type, entity_id, IssueType.MANDATORY_FIELDS)
        if missing:
            if existing is not None:
                repeated = bool(set(existing.missing_fields).intersection(missing))
                existing.cycles = existing.cycles + 1 if repeated else 1
                existing.severity = (
                    IssueSeverity.CRITICAL if repeated else base_severity(policy, missing)
                )
                existing.missing_fields = missing
                existing.last_seen_at = now
                await self._issues.update(existing)
                result.issues.append(existing)
                if repeated:
                    logger.warning(
                        "compliance.issue_escalated",
                        issue_id=existing.issue_id,
                        entity_type=policy.entity_type,
                        cycles=existing.cycles,
                    )
            else:
                issue = ComplianceIssue(
                    entity_type=policy.entity_type,
                    entity_id=entity_id,
                    issue_type=IssueType.MANDATORY_FIELDS,
                    severity=base_severity(policy, missing),
                    missing_fields=missing,
                    detected_at=now,
                    last_seen_at=now,
                    due_date=now + timedelta(days=policy.due_days),
                )
                await self._issues.add(issue)
                result.issues.append(issue)
                result.new_issues += 1
        elif existing is not None:
            await self._resolve(existing, None, "Mandatory fields completed")
            result.resolved += 1

        errors = validate_fields(entity)
        invalid = await self._open_issue(policy.entity_type, entity_id, IssueType.DATA_VALIDATION)
        if errors:
            if invalid is not None:
                invalid.validation_errors = errors
                invalid.cycles += 1
                invalid.last_seen_at = now
                await self._issues.update(invalid)
                result.issues.append(invalid)
            else:
                issue = ComplianceIssue(
                    entity_type=policy.entity_type,
                    entity_id=entity_id,
                    issue_type=IssueType.DATA_VALIDATION,
                    severity=IssueSeverity.MEDIUM,
                    validation_errors=errors,
                    detected_at=now,
                    last_seen_at=now,
                    due_date=now + timedelta(days=policy.due_days),
                )
                await self._issues.add(issue)
                result.issues.append(issue)
                result.new_issues += 1
        elif invalid is not None:
            await self._resolve(invalid, None, "Field formats corrected")
            result.resolved += 1

    async def _resolve_open(
        self, entity_type: str, entity_id: str, resolved_by: str | None, resolution: str
    ) -> int:
        count = 0
        for issue_type in IssueType:
            issue = await self._open_issue(entity_type, entity_id, issue_type)
            if issue is not None:
                await self._resolve(issue, resolved_by, resolution)
                count += 1
        return count

    async def _resolve(
        self, issue: ComplianceIssue, resolved_by: str | None, resolution: str
    ) -> ComplianceIssue:
        issue.resolved_at = self._clock()
        issue.resolved_by = resolved_by or "system"
        issue.resolution = resolution
        await self._issues.update(issue)
        logger.info("compliance.issue_resolved", issue_id=issue.issue_id, resolved_by=issue.resolved_by)
        return issue

    async def _audit_scan(self, result: ScanResult) -> None:
        try:
            await self._recorder.record(
                AuditEvent(
                    action=AuditAction.VALIDATE,
                    entity_type="ComplianceScan",
                    entity_id=f"{result.entity_type}:{result.scan_id}",
                    new_values={
                        "entity_type": result.entity_type,
                        "scanned": result.scanned,
                        "open_issues": len(result.issues),
                        "new_issues": result.new_issues,
                        "resolved": result.resolved,
                        "errors": len(result.errors),
                    },
                    compliance_level=ComplianceLevel.ENHANCED,
                    context=_SCAN_CONTEXT,
                )
            )
        except PartialWriteError as exc:
            result.errors.append(f"audit: {exc}")
            logger.error("compliance.scan_audit_failed", scan_id=result.scan_id, error=str(exc))

    # ------------------------------------------------------------------
    # Operator actions and queries
    # ------------------------------------------------------------------

    async def resolve_issue(
        self,
        issue_id: str,
        resolved_by: str,
        resolution: str,
        context: AuditContext | None = None,
    ) -> ComplianceIssue:
        """Mark an issue resolved by an operator.  Resolving twice is a no-op."""
        issue = await self._issues.get(issue_id)
        if issue is None:
            raise NotFoundError(f"compliance issue {issue_id} not found")
        if not issue.is_open:
            return issue

        issue = await self._resolve(issue, resolved_by, resolution)
        await self._recorder.record(
            AuditEvent(
                action=AuditAction.UPDATE,
                entity_type="ComplianceIssue",
                entity_id=issue_id,
                old_values={"resolved_at": None},
                new_values={
                    "resolved_at": issue.resolved_at.isoformat() if issue.resolved_at else None,
                    "resolved_by": resolved_by,
                    "resolution": resolution,
                },
                context=context or AuditContext(actor_id=resolved_by),
            )
        )
        return issue

    async def list_issues(
        self,
        entity_type: str | None = None,
        *,
        open_only: bool = True,
        severity: IssueSeverity | None = None,
    ) -> list[ComplianceIssue]:
        kind = normalize_entity_type(entity_type) if entity_type else None
        issues = await self._issues.filter(
            lambda i: (not open_only or i.is_open)
            and (kind is None or normalize_entity_type(i.entity_type) == kind)
            and (severity is None or i.severity == severity)
        )
        return sorted(issues, key=lambda i: i.detected_at, reverse=True)

    async def summary(self) -> ComplianceSummary:
        now = self._clock()
        open_issues = await self._issues.filter(lambda i: i.is_open)
        return ComplianceSummary(
            generated_at=now,
            open_issues=len(open_issues),
            by_entity_type=dict(Counter(i.entity_type for i in open_issues)),
            by_severity=dict(Counter(str(i.severity) for i in open_issues)),
            overdue=sum(1 for i in open_issues if i.due_date < now),
        )
