"""GDPR/AVG Article 17 erasure workflow and Article 15 access requests.

State machine per :class:`ErasureRecord`::

    REQUESTED --(legal hold check)--> SCHEDULED --> EXECUTING --> SUCCESS
                                                             \\-> FAILED

A request blocked by a legal hold is refused with its reasons and no
record is stored, unless ``force_delete`` is set.  Scheduled records wait
out a grace period before :meth:`ErasureWorkflow.execute_due` runs them.
``force_delete`` only lifts the refusal: a record never reaches SUCCESS
while a legal hold is active, so execution is deferred until it lapses.

Execution claims the record with a compare-and-transition from SCHEDULED
to EXECUTING, so two executors can never run the same deletion.  Records
that already reached SUCCESS or FAILED are returned unchanged.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from src.models.audit import AuditContext, AuditEvent
from src.models.enums import AuditAction, ComplianceLevel, DeletionMethod, DeletionResult, ErasureState
from src.models.erasure import (
    AccessReport,
    ErasureDecision,
    ErasurePolicy,
    ErasureRecord,
    ErasureRequest,
    ErasureRunSummary,
)
from src.services.errors import (
    ExecutionFailure,
    NotFoundError,
    PartialWriteError,
    RetentionViolation,
)
from src.services.retention import utcnow
from src.services.storage import normalize_entity_type

if TYPE_CHECKING:
    from src.services.audit_recorder import AuditRecorder
    from src.services.retention import RetentionEngine
    from src.services.storage import EntityStore, InMemoryRepository

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_NAME_FIELDS: Final[frozenset[str]] = frozenset({
    "name",
    "first_name",
    "last_name",
    "company_name",
    "account_holder",
})
_EMAIL_FIELDS: Final[frozenset[str]] = frozenset({"email"})
_PHONE_FIELDS: Final[frozenset[str]] = frozenset({"phone", "mobile"})
_OTHER_PII_FIELDS: Final[frozenset[str]] = frozenset({
    "address",
    "postal_code",
    "city",
    "iban",
    "bank_name",
    "bsn",
    "date_of_birth",
    "notes",
})
PII_FIELDS: Final[frozenset[str]] = _NAME_FIELDS | _EMAIL_FIELDS | _PHONE_FIELDS | _OTHER_PII_FIELDS

_DATA_CATEGORIES: Final[dict[str, frozenset[str]]] = {
    "identity": _NAME_FIELDS | frozenset({"bsn", "date_of_birth"}),
    "contact": _EMAIL_FIELDS | _PHONE_FIELDS,
    "address": frozenset({"address", "postal_code", "city"}),
    "financial": frozenset({"iban", "bank_name", "vat_number", "kvk_number"}),
}

# Dependant tables removed before the parent on SECURE_DELETE, in order.
CASCADES: Final[dict[str, list[tuple[str, str]]]] = {
    "client": [("client_consent", "client_id"), ("email_log", "client_id")],
    "user": [("user_profile", "user_id")],
}

_DEFAULT_POLICY_ID: Final[str] = "default"
_SYSTEM_CONTEXT: Final = AuditContext(actor_id="system:erasure-executor")


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class ErasureStrategy(Protocol):
    """Transforms or removes one entity.  Raises on failure."""

    async def apply(
        self, entities: EntityStore, entity_type: str, entity_id: str, now: datetime
    ) -> dict[str, Any]: ...


async def _require(entities: EntityStore, entity_type: str, entity_id: str) -> dict[str, Any]:
    entity = await entities.get(entity_type, entity_id)
    if entity is None:
        raise ExecutionFailure(f"{entity_type}#{entity_id} not found")
    return entity


class SoftDeleteStrategy:
    """Overwrite PII with placeholders and keep the row."""

    __slots__ = ()

    async def apply(
        self, entities: EntityStore, entity_type: str, entity_id: str, now: datetime
    ) -> dict[str, Any]:
        entity = await _require(entities, entity_type, entity_id)
        changes: dict[str, Any] = {}
        for field in PII_FIELDS.intersection(entity):
            if field in _NAME_FIELDS:
                changes[field] = "[DELETED]"
            elif field in _EMAIL_FIELDS:
                changes[field] = f"deleted_{entity_id}@example.com"
            else:
                changes[field] = None
        changes.update(is_active=False, deleted_at=now.isoformat())
        await entities.update(entity_type, entity_id, changes)
        return changes


class SecureDeleteStrategy:
    """Remove dependant rows, then the entity itself."""

    __slots__ = ()

    async def apply(
        self, entities: EntityStore, entity_type: str, entity_id: str, now: datetime
    ) -> dict[str, Any]:
        await _require(entities, entity_type, entity_id)
        removed: dict[str, Any] = {}
        for dependant, foreign_key in CASCADES.get(normalize_entity_type(entity_type), []):
            removed[dependant] = await entities.delete_where(dependant, **{foreign_key: entity_id})
        if not await entities.delete(entity_type, entity_id):
            raise ExecutionFailure(f"{entity_type}#{entity_id} vanished during secure delete")
        removed[entity_type] = 1
        return {"removed": removed}


class AnonymizationStrategy:
    """Replace PII with random, non-reversible values."""

    __slots__ = ()

    async def apply(
        self, entities: EntityStore, entity_type: str, entity_id: str, now: datetime
    ) -> dict[str, Any]:
        entity = await _require(entities, entity_type, entity_id)
        token = secrets.token_hex(8)
        changes: dict[str, Any] = {}
        for field in PII_FIELDS.intersection(entity):
            if field in _NAME_FIELDS:
                changes[field] = f"anon_{token}"
            elif field in _EMAIL_FIELDS:
                changes[field] = f"anon_{token}@anonymous.local"
            elif field in _PHONE_FIELDS:
                changes[field] = "XXX-XXX-XXXX"
            else:
                changes[field] = "[ANONYMIZED]"
        changes["anonymized_at"] = now.isoformat()
        await entities.update(entity_type, entity_id, changes)
        return {"anonymized_fields": sorted(k for k in changes if k != "anonymized_at")}


class PseudonymizationStrategy:
    """Replace PII with an HMAC-SHA256 pseudonym of the entity id.

    The mapping back to the subject is only recoverable by someone
    holding the key.
    """

    __slots__ = ("_key",)

    def __init__(self, key: str) -> None:
        self._key = key.encode()

    def pseudonym(self, entity_id: str) -> str:
        return hmac.new(self._key, entity_id.encode(), hashlib.sha256).hexdigest()[:16]

    async def apply(
        self, entities: EntityStore, entity_type: str, entity_id: str, now: datetime
    ) -> dict[str, Any]:
        entity = await _require(entities, entity_type, entity_id)
        alias = self.pseudonym(entity_id)
        prefix = normalize_entity_type(entity_type)
        changes: dict[str, Any] = {}
        for field in PII_FIELDS.intersection(entity):
            if field in _NAME_FIELDS:
                changes[field] = f"User_{alias}"
            elif field in _EMAIL_FIELDS:
                changes[field] = f"{prefix}_{alias}@pseudonym.local"
            else:
                changes[field] = None
        changes.update(pseudonym=alias, pseudonymized_at=now.isoformat())
        await entities.update(entity_type, entity_id, changes)
        return {"pseudonym": alias}


class ArchivalStrategy:
    """Mark inactive and flag for cold storage; no field is scrubbed."""

    __slots__ = ()

    async def apply(
        self, entities: EntityStore, entity_type: str, entity_id: str, now: datetime
    ) -> dict[str, Any]:
        await _require(entities, entity_type, entity_id)
        changes = {
            "is_active": False,
            "archived_at": now.isoformat(),
            "cold_storage_pending": True,
            "archive_reason": "GDPR_RETENTION_POLICY",
        }
        await entities.update(entity_type, entity_id, changes)
        return changes


def build_strategies(pseudonymization_key: str) -> dict[DeletionMethod, ErasureStrategy]:
    return {
        DeletionMethod.SOFT_DELETE: SoftDeleteStrategy(),
        DeletionMethod.SECURE_DELETE: SecureDeleteStrategy(),
        DeletionMethod.ANONYMIZATION: AnonymizationStrategy(),
        DeletionMethod.PSEUDONYMIZATION: PseudonymizationStrategy(pseudonymization_key),
        DeletionMethod.ARCHIVAL: ArchivalStrategy(),
    }


# ---------------------------------------------------------------------------
# ErasureWorkflow
# ---------------------------------------------------------------------------


class ErasureWorkflow:
    """Drives erasure records from request to a terminal state.

    Parameters
    ----------
    entities:
        Store holding the entities to erase.
    records:
        Repository of :class:`ErasureRecord` keyed by ``record_id``.
    retention:
        Consulted for legal holds at request and at execution time.
    recorder:
        Audit recorder; requests and executions are audited.
    grace_period_days:
        Delay between scheduling and execution.
    pseudonymization_key:
        HMAC key for :class:`PseudonymizationStrategy`.
    policies:
        Erasure policies; entity types without one use SOFT_DELETE.
    """

    def __init__(
        self,
        entities: EntityStore,
        records: InMemoryRepository[ErasureRecord],
        retention: RetentionEngine,
        recorder: AuditRecorder,
        *,
        grace_period_days: int = 30,
        pseudonymization_key: str,
        policies: list[ErasurePolicy] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._entities = entities
        self._records = records
        self._retention = retention
        self._recorder = recorder
        self._grace = timedelta(days=grace_period_days)
        self._strategies = build_strategies(pseudonymization_key)
        self._policies: dict[str, ErasurePolicy] = {}
        self._clock = clock
        for policy in policies or []:
            self.register_policy(policy)

    def register_policy(self, policy: ErasurePolicy) -> None:
        self._policies[normalize_entity_type(policy.entity_type)] = policy

    def active_policies(self) -> list[ErasurePolicy]:
        return [p for p in self._policies.values() if p.is_active]

    def policy_for(self, entity_type: str) -> ErasurePolicy:
        policy = self._policies.get(normalize_entity_type(entity_type))
        if policy is not None and policy.is_active:
            return policy
        return ErasurePolicy(
            policy_id=_DEFAULT_POLICY_ID,
            entity_type=entity_type,
            deletion_method=DeletionMethod.SOFT_DELETE,
        )

    async def _audit(self, event: AuditEvent) -> None:
        try:
            await self._recorder.record(event)
        except PartialWriteError as exc:
            logger.error(
                "gdpr.audit_write_failed",
                ledger_key=exc.ledger_key,
                ledger_written=exc.ledger_written,
            )

    # ------------------------------------------------------------------
    # Article 17: erasure
    # ------------------------------------------------------------------

    async def request_erasure(
        self, request: ErasureRequest, context: AuditContext | None = None
    ) -> ErasureDecision:
        """Refuse with reasons, or schedule a record after the grace period.

        Raises
        ------
        NotFoundError
            The entity does not exist.
        """
        entity = await self._entities.get(request.entity_type, request.entity_id)
        if entity is None:
            raise NotFoundError(f"{request.entity_type}#{request.entity_id} not found")

        reasons = await self._retention.legal_hold_reasons(request.entity_type, request.entity_id)
        if reasons and not request.force_delete:
            logger.warning(
                "gdpr.erasure_refused",
                entity_type=request.entity_type,
                entity_id=request.entity_id,
                reasons=reasons,
            )
            return ErasureDecision(
                can_delete=False,
                deletion_scheduled=False,
                retention_reasons=reasons,
            )

        now = self._clock()
        policy = self.policy_for(request.entity_type)
        record = ErasureRecord(
            policy_id=policy.policy_id,
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            scheduled_for=now + self._grace,
            deletion_method=policy.deletion_method,
            entity_snapshot=self._recorder.sanitize(entity) or {},
            reason=request.reason,
            requested_by=request.requested_by,
            forced=bool(reasons),
            created_at=now,
        )
        await self._records.add(record)

        if reasons:
            logger.warning(
                "gdpr.legal_hold_overridden",
                record_id=record.record_id,
                entity_type=request.entity_type,
                reasons=reasons,
            )
        await self._audit(
            AuditEvent(
                action=AuditAction.CREATE,
                entity_type="GDPRErasureRequest",
                entity_id=record.record_id,
                new_values={
                    "entity_type": request.entity_type,
                    "entity_id": request.entity_id,
                    "reason": request.reason,
                    "requested_by": request.requested_by,
                    "deletion_method": str(record.deletion_method),
                    "scheduled_for": record.scheduled_for.isoformat(),
                    "forced": record.forced,
                    "overridden_reasons": reasons,
                },
                compliance_level=ComplianceLevel.REGULATORY,
                context=context or AuditContext(actor_id=request.requested_by),
            )
        )
        logger.info(
            "gdpr.erasure_scheduled",
            record_id=record.record_id,
            method=record.deletion_method,
            scheduled_for=record.scheduled_for.isoformat(),
        )
        return ErasureDecision(
            can_delete=True,
            deletion_scheduled=True,
            retention_reasons=reasons,
            scheduled_for=record.scheduled_for,
            record_id=record.record_id,
        )

    async def execute(self, record_id: str, context: AuditContext | None = None) -> ErasureRecord:
        """Run the record's strategy once.

        - SUCCESS/FAILED records are returned unchanged.
        - A record whose entity is under a legal hold stays SCHEDULED and
          nothing runs, forced or not.
        - A strategy failure ends in FAILED with the error kept.
        """
        record = await self._records.get(record_id)
        if record is None:
            raise NotFoundError(f"erasure record {record_id} not found")
        if record.state != ErasureState.SCHEDULED:
            logger.info("gdpr.execute_noop", record_id=record_id, state=record.state)
            return record

        try:
            await self._retention.ensure_erasable(record.entity_type, record.entity_id)
        except RetentionViolation as exc:
            logger.warning(
                "gdpr.execution_deferred",
                record_id=record_id,
                forced=record.forced,
                reasons=exc.reasons,
            )
            return record

        claimed = await self._records.compare_and_transition(
            record_id, "state", ErasureState.SCHEDULED, {"state": ErasureState.EXECUTING}
        )
        if claimed is None:
            # Another executor got there first.
            current = await self._records.get(record_id)
            return current if current is not None else record

        now = self._clock()
        outcome: dict[str, Any] = {}
        try:
            strategy = self._strategies[claimed.deletion_method]
            outcome = await strategy.apply(
                self._entities, claimed.entity_type, claimed.entity_id, now
            )
            final: dict[str, Any] = {
                "state": ErasureState.SUCCESS,
                "result": DeletionResult.SUCCESS,
                "deleted_at": now,
                "error": None,
            }
        except Exception as exc:
            logger.error(
                "gdpr.erasure_failed",
                record_id=record_id,
                method=claimed.deletion_method,
                error=str(exc),
            )
            final = {
                "state": ErasureState.FAILED,
                "result": DeletionResult.FAILED,
                "error": str(exc),
            }

        updated = await self._records.compare_and_transition(
            record_id, "state", ErasureState.EXECUTING, final
        )
        if updated is None:
            raise ExecutionFailure(f"erasure record {record_id} left EXECUTING unexpectedly")

        await self._audit(
            AuditEvent(
                action=AuditAction.DELETE,
                entity_type="ErasureRecord",
                entity_id=record_id,
                old_values={"state": str(ErasureState.SCHEDULED)},
                new_values={
                    "state": str(updated.state),
                    "result": str(updated.result),
                    "deletion_method": str(updated.deletion_method),
                    "target": f"{updated.entity_type}#{updated.entity_id}",
                    "error": updated.error,
                    "outcome": outcome,
                },
                compliance_level=ComplianceLevel.REGULATORY,
                context=context or _SYSTEM_CONTEXT,
            )
        )
        logger.info(
            "gdpr.erasure_executed",
            record_id=record_id,
            state=updated.state,
            method=updated.deletion_method,
        )
        return updated

    async def execute_due(self) -> ErasureRunSummary:
        """Execute every SCHEDULED record whose grace period has ended."""
        now = self._clock()
        due = await self._records.filter(
            lambda r: r.state == ErasureState.SCHEDULED and r.scheduled_for <= now
        )
        summary = ErasureRunSummary()
        for record in sorted(due, key=lambda r: r.scheduled_for):
            summary.processed += 1
            try:
                result = await self.execute(record.record_id)
            except Exception as exc:
                summary.failed += 1
                summary.errors.append(f"{record.record_id}: {exc}")
                continue
            if result.state == ErasureState.SUCCESS:
                summary.successful += 1
            elif result.state == ErasureState.FAILED:
                summary.failed += 1
                summary.errors.append(f"{record.record_id}: {result.error}")
            else:
                summary.deferred += 1

        logger.info(
            "gdpr.scheduled_run_complete",
            processed=summary.processed,
            successful=summary.successful,
            failed=summary.failed,
            deferred=summary.deferred,
        )
        return summary

    async def retry(self, record_id: str, requested_by: str) -> ErasureRecord:
        """Schedule a fresh attempt for a FAILED record, due immediately."""
        failed = await self._records.get(record_id)
        if failed is None:
            raise NotFoundError(f"erasure record {record_id} not found")
        if failed.state != ErasureState.FAILED:
            raise ValueError(f"only FAILED records can be retried (state is {failed.state})")

        now = self._clock()
        fresh = ErasureRecord(
            policy_id=failed.policy_id,
            entity_type=failed.entity_type,
            entity_id=failed.entity_id,
            scheduled_for=now,
            deletion_method=failed.deletion_method,
            entity_snapshot=failed.entity_snapshot,
            reason=f"retry of {record_id}: {failed.reason}",
            requested_by=requested_by,
            forced=failed.forced,
            created_at=now,
        )
        await self._records.add(fresh)
        await self._audit(
            AuditEvent(
                action=AuditAction.CREATE,
                entity_type="GDPRErasureRequest",
                entity_id=fresh.record_id,
                new_values={"retry_of": record_id, "requested_by": requested_by},
                compliance_level=ComplianceLevel.REGULATORY,
                context=AuditContext(actor_id=requested_by),
            )
        )
        return fresh

    async def get_record(self, record_id: str) -> ErasureRecord | None:
        return await self._records.get(record_id)

    async def list_records(self, state: ErasureState | None = None) -> list[ErasureRecord]:
        records = await self._records.filter(lambda r: state is None or r.state == state)
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    # ------------------------------------------------------------------
    # Article 15: access
    # ------------------------------------------------------------------

    async def process_access_request(
        self, entity_type: str, entity_id: str, context: AuditContext | None = None
    ) -> AccessReport:
        """Export what is held about a subject and what keeps it held.

        Each request is audited as a ``GDPRAccessRequest`` for the
        periodic compliance report.
        """
        report = await self.build_access_report(entity_type, entity_id)
        await self._audit(
            AuditEvent(
                action=AuditAction.CREATE,
                entity_type="GDPRAccessRequest",
                entity_id=entity_id,
                new_values={"entity_type": entity_type, "data_categories": report.data_categories},
                compliance_level=ComplianceLevel.REGULATORY,
                context=context or AuditContext(),
            )
        )
        logger.info(
            "gdpr.access_request_processed",
            entity_type=entity_type,
            related=sum(len(v) for v in report.related_records.values()),
        )
        return report

    async def build_access_report(self, entity_type: str, entity_id: str) -> AccessReport:
        """Collect the Article 15 data set without auditing the lookup."""
        entity = await self._entities.get(entity_type, entity_id)
        if entity is None:
            raise NotFoundError(f"{entity_type}#{entity_id} not found")

        related: dict[str, list[dict[str, Any]]] = {}
        for dependant, foreign_key in CASCADES.get(normalize_entity_type(entity_type), []):
            rows = await self._entities.find(dependant, **{foreign_key: entity_id})
            if rows:
                related[dependant] = rows
        if normalize_entity_type(entity_type) == "client":
            invoices = await self._entities.find("invoice", client_id=entity_id)
            if invoices:
                related["invoice"] = invoices

        present = {k for k, v in entity.items() if v not in (None, "")}
        categories = sorted(name for name, fields in _DATA_CATEGORIES.items() if fields & present)
        return AccessReport(
            entity_type=entity_type,
            entity_id=entity_id,
            personal_data=entity,
            related_records=related,
            data_categories=categories,
            retention_reasons=await self._retention.legal_hold_reasons(entity_type, entity_id),
            generated_at=self._clock(),
        )
