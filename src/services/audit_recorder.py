"""Audit recorder: sanitise, classify, append to the ledger, index.

Every business mutation is recorded through :meth:`AuditRecorder.record`
with an explicit :class:`AuditContext`.  The write is two halves:

1. Ledger append (best effort).  If the ledger is down the record is
   still indexed, flagged ``ledger_verified=False``, and picked up later
   by :meth:`AuditRecorder.reconcile`.
2. Index insert (mandatory).  If it fails a :class:`PartialWriteError`
   is raised carrying the ledger key and the attempted row.  The caller's
   business operation is never rolled back because of it.

Sensitive values are redacted before either half is attempted, so
unsanitised data never reaches the ledger.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Final

import structlog

from src.models.audit import (
    AuditContext,
    AuditEvent,
    AuditFilter,
    AuditRecord,
    ReconcileResult,
)
from src.models.enums import AuditAction, ComplianceLevel
from src.services.errors import (
    NotFoundError,
    PartialWriteError,
    VerificationMismatch,
)
from src.services.ledger import compute_hash
from src.services.retention import coerce_level, utcnow

if TYPE_CHECKING:
    from src.services.ledger import ImmutableLedger
    from src.services.retention import RetentionEngine
    from src.services.storage import AuditIndex

logger = structlog.get_logger(__name__)

REDACTED: Final[str] = "[REDACTED]"

# Compared against keys lowercased with ``_`` and ``-`` removed, so
# ``credit_card``, ``creditCard`` and ``CREDIT-CARD`` all match.
DEFAULT_SENSITIVE_FIELDS: Final[frozenset[str]] = frozenset({
    "password",
    "token",
    "secret",
    "privatekey",
    "creditcard",
    "cardnumber",
    "cvv",
    "ssn",
    "bsn",
    "apikey",
})

_EPOCH: Final[datetime] = datetime(1970, 1, 1, tzinfo=UTC)


def _normalize_key(key: str) -> str:
    return key.replace("_", "").replace("-", "").lower()


def epoch_nanos(moment: datetime) -> int:
    """Nanoseconds since the Unix epoch, exact for microsecond datetimes."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return (moment - _EPOCH) // timedelta(microseconds=1) * 1000


class AuditRecorder:
    """Writes :class:`AuditRecord` rows to the ledger and the audit index.

    Parameters
    ----------
    ledger:
        Any :class:`ImmutableLedger` backend.
    index:
        The relational :class:`AuditIndex`.
    retention:
        Supplies per-entity default levels and retention deadlines.
    sensitive_fields:
        Normalised field names whose values are redacted.
    clock:
        Returns the current UTC time.  Injected by tests.
    """

    def __init__(
        self,
        ledger: ImmutableLedger,
        index: AuditIndex,
        retention: RetentionEngine,
        *,
        sensitive_fields: Iterable[str] = DEFAULT_SENSITIVE_FIELDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._ledger = ledger
        self._index = index
        self._retention = retention
        self._sensitive = frozenset(_normalize_key(f) for f in sensitive_fields)
        self._clock = clock
        self._last_nanos = -1
        self._collisions = 0

    # ------------------------------------------------------------------
    # Sanitisation and classification
    # ------------------------------------------------------------------

    def _is_sensitive(self, key: str) -> bool:
        norm = _normalize_key(key)
        return any(s in norm for s in self._sensitive)

    def _sanitize_value(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {
                k: REDACTED if self._is_sensitive(str(k)) else self._sanitize_value(v)
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [self._sanitize_value(v) for v in value]
        return value

    def sanitize(self, values: Mapping[str, Any] | None) -> dict[str, Any] | None:
        """Redact sensitive keys at any nesting depth."""
        if values is None:
            return None
        return self._sanitize_value(values)

    def resolve_level(
        self, entity_type: str, hint: ComplianceLevel | str | None = None
    ) -> ComplianceLevel:
        """Explicit hint first, then the entity type's default.

        A hint that names no known level resolves to STANDARD.
        """
        if hint is not None:
            return coerce_level(hint) or ComplianceLevel.STANDARD
        return self._retention.policy.default_level(entity_type)

    def _ledger_key(self, entity_type: str, entity_id: str, created_at: datetime) -> str:
        nanos = epoch_nanos(created_at)
        # No await between read and write, so this is atomic on the loop.
        if nanos == self._last_nanos:
            self._collisions += 1
            return f"audit:{entity_type}:{entity_id}:{nanos}:{self._collisions}"
        self._last_nanos = nanos
        self._collisions = 0
        return f"audit:{entity_type}:{entity_id}:{nanos}"

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record(self, event: AuditEvent) -> AuditRecord:
        """Record one audit event.

        Raises
        ------
        PartialWriteError
            The index write failed.  ``ledger_written`` tells whether the
            ledger half already succeeded.
        """
        now = self._clock()
        level = self.resolve_level(event.entity_type, event.compliance_level)
        ledger_key = self._ledger_key(event.entity_type, event.entity_id, now)
        ctx = event.context

        record = AuditRecord(
            action=event.action,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            actor_id=ctx.actor_id,
            old_values=self.sanitize(event.old_values),
            new_values=self.sanitize(event.new_values),
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            session_id=ctx.session_id,
            compliance_level=level,
            retention_until=self._retention.deadline(event.entity_type, level, now),
            ledger_key=ledger_key,
            created_at=now,
        )

        ledger_written = False
        try:
            tx_id, ledger_hash = await self._ledger.append(ledger_key, record.ledger_payload())
            record = record.with_ledger_reference(tx_id, ledger_hash)
            ledger_written = True
        except Exception as exc:
            logger.warning(
                "audit.ledger_append_failed",
                ledger_key=ledger_key,
                entity_type=event.entity_type,
                error=str(exc),
            )

        try:
            await self._index.insert(record)
        except Exception as exc:
            logger.error(
                "audit.index_write_failed",
                ledger_key=ledger_key,
                ledger_written=ledger_written,
                error=str(exc),
            )
            raise PartialWriteError(ledger_key, ledger_written, record) from exc

        logger.info(
            "audit.recorded",
            record_id=record.record_id,
            action=record.action,
            entity_type=record.entity_type,
            compliance_level=record.compliance_level,
            ledger_verified=record.ledger_verified,
        )
        return record

    async def log_auth_event(
        self,
        action: AuditAction,
        user_id: str,
        context: AuditContext,
        details: dict[str, Any] | None = None,
    ) -> AuditRecord:
        """Record a LOGIN or LOGOUT against the ``User`` entity."""
        if action not in (AuditAction.LOGIN, AuditAction.LOGOUT):
            raise ValueError(f"{action} is not an authentication action")
        return await self.record(
            AuditEvent(
                action=action,
                entity_type="User",
                entity_id=user_id,
                new_values=details,
                compliance_level=ComplianceLevel.ENHANCED,
                context=context,
            )
        )

    async def log_validation_event(
        self,
        entity_type: str,
        entity_id: str,
        action: AuditAction,
        result: dict[str, Any],
        context: AuditContext,
    ) -> AuditRecord:
        """Record a VALIDATE, APPROVE or REJECT decision on an entity."""
        if action not in (AuditAction.VALIDATE, AuditAction.APPROVE, AuditAction.REJECT):
            raise ValueError(f"{action} is not a validation action")
        return await self.record(
            AuditEvent(
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                new_values=result,
                context=context,
            )
        )

    # ------------------------------------------------------------------
    # Reconciliation and verification
    # ------------------------------------------------------------------

    async def reconcile(self, limit: int = 100) -> ReconcileResult:
        """Retry the ledger half for unverified rows.

        The same ledger key and payload are appended again and only the
        row's ledger reference is updated, so no second row is created.
        """
        result = ReconcileResult()
        for row in await self._index.list_unverified(limit):
            result.processed += 1
            try:
                tx_id, ledger_hash = await self._ledger.append(row.ledger_key, row.ledger_payload())
                await self._index.update_ledger_reference(row.record_id, tx_id, ledger_hash)
                result.verified += 1
            except Exception as exc:
                result.failed += 1
                result.errors.append(f"{row.record_id}: {exc}")
                logger.warning("audit.reconcile_failed", record_id=row.record_id, error=str(exc))

        logger.info(
            "audit.reconcile_complete",
            processed=result.processed,
            verified=result.verified,
            failed=result.failed,
        )
        return result

    async def verify(self, record_id: str) -> bool:
        """Check an indexed record against the ledger.

        Returns ``False`` for rows that were never written to the ledger.

        Raises
        ------
        NotFoundError
            No such record.
        VerificationMismatch
            The row or the ledger entry no longer hashes to the stored
            value.  Never corrected automatically.
        """
        row = await self._index.get(record_id)
        if row is None:
            raise NotFoundError(f"audit record {record_id} not found")
        if not row.ledger_verified or row.ledger_hash is None or row.ledger_tx_id is None:
            return False

        row_intact = compute_hash(row.ledger_payload(), row.ledger_tx_id) == row.ledger_hash
        if row_intact and await self._ledger.verify(row.ledger_key, row.ledger_hash):
            return True

        logger.critical(
            "audit.verification_mismatch",
            record_id=record_id,
            ledger_key=row.ledger_key,
            row_intact=row_intact,
        )
        raise VerificationMismatch(record_id, row.ledger_key)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, record_id: str) -> AuditRecord | None:
        return await self._index.get(record_id)

    async def get_trail(
        self, entity_type: str, entity_id: str, filters: AuditFilter | None = None
    ) -> list[AuditRecord]:
        """Audit rows for one entity, newest first."""
        return await self._index.query(entity_type, entity_id, filters)
