"""Exception taxonomy for the trust ledger services.

Routes translate these into HTTP status codes; batch jobs catch them per
item and report them as ``"{id}: {message}"`` strings.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.models.audit import AuditRecord


class TrustLedgerError(Exception):
    """Base class for every error raised by the services package."""


class LedgerUnavailableError(TrustLedgerError):
    """The immutable ledger cannot be reached or refused the write."""


class PartialWriteError(TrustLedgerError):
    """The audit index write failed after the ledger half was attempted.

    Carries enough for an operator to reconcile by hand: the ledger key,
    whether the ledger append succeeded, and the row that was not stored.
    """

    def __init__(self, ledger_key: str, ledger_written: bool, record: AuditRecord) -> None:
        self.ledger_key = ledger_key
        self.ledger_written = ledger_written
        self.record = record
        super().__init__(
            f"audit index write failed for {ledger_key} (ledger_written={ledger_written})"
        )


class RetentionViolation(TrustLedgerError):
    """An erasure was attempted on an entity under an active legal hold."""

    def __init__(self, entity_type: str, entity_id: str, reasons: list[str]) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reasons = reasons
        super().__init__(f"{entity_type}#{entity_id} is under legal hold: {'; '.join(reasons)}")


class ExecutionFailure(TrustLedgerError):
    """A deletion strategy failed; the erasure record moves to FAILED."""


class VerificationMismatch(TrustLedgerError):
    """The ledger no longer confirms an audit record's stored hash."""

    def __init__(self, record_id: str, ledger_key: str) -> None:
        self.record_id = record_id
        self.ledger_key = ledger_key
        super().__init__(f"ledger hash mismatch for audit record {record_id} ({ledger_key})")


class NotFoundError(TrustLedgerError):
    """A referenced entity or record does not exist."""


class AuthenticationExpired(TrustLedgerError):
    """An SCA attempt was completed after its expiry."""


class AuthenticationFailed(TrustLedgerError):
    """An SCA attempt could not be completed."""
