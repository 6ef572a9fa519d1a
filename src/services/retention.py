"""Retention deadlines, legal holds and the expired-record sweep.

Retention periods are calendar years per compliance level, added in UTC.
A start date of 29 February lands on 28 February of the target year, so
``retention_until - created_at`` is always the configured number of
calendar years and never drifts with leap days or local time zones.

Legal holds are retention obligations that outlive a data subject's
erasure request:

- Clients with invoices younger than the fiscal retention period.
- Users (and their profiles) with invoices younger than that period.
- Any entity with a Wwft due-diligence file still inside its retention
  window.
"""

from __future__ import annotations

import calendar
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Final

import structlog
from pydantic import BaseModel, ConfigDict, Field

from src.models.enums import ComplianceLevel
from src.models.erasure import RetentionSweepResult
from src.services.errors import RetentionViolation
from src.services.storage import normalize_entity_type

if TYPE_CHECKING:
    from src.models.audit import AuditRecord
    from src.models.risk import WwftCheck
    from src.services.storage import AuditIndex, EntityStore, InMemoryRepository

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Calendar helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def add_years(moment: datetime, years: int) -> datetime:
    """Add calendar years in UTC, clamping 29 February to 28 February."""
    moment = _as_utc(moment)
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, day=28)


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months in UTC, clamping to the last day of the month."""
    moment = _as_utc(moment)
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def parse_timestamp(value: Any) -> datetime | None:
    """Accept datetimes and ISO-8601 strings as stored on entities."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, str):
        return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise TypeError(f"unsupported timestamp value: {value!r}")


def coerce_level(level: ComplianceLevel | str | None) -> ComplianceLevel | None:
    """Return the matching :class:`ComplianceLevel`, or ``None`` if unknown."""
    if level is None:
        return None
    if isinstance(level, ComplianceLevel):
        return level
    try:
        return ComplianceLevel(str(level).upper())
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

# Default compliance level per entity type when the caller gives no hint.
_DEFAULT_ENTITY_LEVELS: Final[dict[str, ComplianceLevel]] = {
    "client": ComplianceLevel.STANDARD,
    "user": ComplianceLevel.STANDARD,
    "userprofile": ComplianceLevel.ENHANCED,
    "creditor": ComplianceLevel.ENHANCED,
    "document": ComplianceLevel.ENHANCED,
    "invoice": ComplianceLevel.CRITICAL,
    "payment": ComplianceLevel.CRITICAL,
    "btwrecord": ComplianceLevel.CRITICAL,
    "taxreservation": ComplianceLevel.CRITICAL,
    "psd2authentication": ComplianceLevel.REGULATORY,
    "wwftcheck": ComplianceLevel.REGULATORY,
    "erasurerecord": ComplianceLevel.REGULATORY,
    "gdprerasurerequest": ComplianceLevel.REGULATORY,
}


class RetentionPolicy(BaseModel):
    """Immutable retention configuration, loaded once at startup."""

    model_config = ConfigDict(frozen=True)

    years: dict[ComplianceLevel, int] = Field(
        default_factory=lambda: {
            ComplianceLevel.STANDARD: 3,
            ComplianceLevel.ENHANCED: 5,
            ComplianceLevel.CRITICAL: 7,
            ComplianceLevel.REGULATORY: 10,
        }
    )
    # entity type -> level -> years, for entities with their own statute
    overrides: dict[str, dict[ComplianceLevel, int]] = Field(default_factory=dict)
    entity_levels: dict[str, ComplianceLevel] = Field(
        default_factory=lambda: dict(_DEFAULT_ENTITY_LEVELS)
    )
    financial_record_years: int = 7
    wwft_record_years: int = 5
    expiry_warning_days: int = 90

    @classmethod
    def from_settings(cls, settings: object) -> RetentionPolicy:
        return cls(
            years={
                ComplianceLevel.STANDARD: getattr(settings, "retention_standard_years", 3),
                ComplianceLevel.ENHANCED: getattr(settings, "retention_enhanced_years", 5),
                ComplianceLevel.CRITICAL: getattr(settings, "retention_critical_years", 7),
                ComplianceLevel.REGULATORY: getattr(settings, "retention_regulatory_years", 10),
            },
            financial_record_years=getattr(settings, "financial_record_retention_years", 7),
            wwft_record_years=getattr(settings, "wwft_record_retention_years", 5),
            expiry_warning_days=getattr(settings, "retention_expiry_warning_days", 90),
        )

    def default_level(self, entity_type: str) -> ComplianceLevel:
        return self.entity_levels.get(normalize_entity_type(entity_type), ComplianceLevel.STANDARD)

    def years_for(self, entity_type: str, level: ComplianceLevel | str | None) -> int:
        resolved = coerce_level(level) or ComplianceLevel.STANDARD
        override = self.overrides.get(normalize_entity_type(entity_type), {})
        if resolved in override:
            return override[resolved]
        return self.years.get(resolved, self.years[ComplianceLevel.STANDARD])


# ---------------------------------------------------------------------------
# RetentionEngine
# ---------------------------------------------------------------------------


class RetentionEngine:
    """Computes deadlines and answers legal-hold questions.

    Parameters
    ----------
    policy:
        The loaded :class:`RetentionPolicy`.
    index:
        Audit index queried by :meth:`expiring_soon`, :meth:`expired` and
        :meth:`sweep`.
    entities:
        Business entity store used to look up invoices for legal holds.
    wwft_checks:
        Repository of Wwft due-diligence checks, if the Wwft module is
        enabled.
    clock:
        Returns the current UTC time.  Injected by tests.
    """

    def __init__(
        self,
        policy: RetentionPolicy,
        index: AuditIndex,
        entities: EntityStore,
        wwft_checks: InMemoryRepository[WwftCheck] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._policy = policy
        self._index = index
        self._entities = entities
        self._wwft_checks = wwft_checks
        self._clock = clock

    @property
    def policy(self) -> RetentionPolicy:
        return self._policy

    # -- Deadlines -------------------------------------------------------------

    def deadline(
        self,
        entity_type: str,
        level: ComplianceLevel | str | None,
        write_time: datetime,
    ) -> datetime:
        """Return ``write_time`` plus the retention years for *level*.

        Unknown levels fall back to STANDARD.
        """
        return add_years(write_time, self._policy.years_for(entity_type, level))

    async def expiring_soon(self, window: timedelta | None = None) -> list[AuditRecord]:
        now = self._clock()
        window = window or timedelta(days=self._policy.expiry_warning_days)
        rows = await self._index.list_expiring(now + window)
        return [r for r in rows if r.retention_until > now]

    async def expired(self) -> list[AuditRecord]:
        return await self._index.list_expiring(self._clock())

    # -- Legal holds -----------------------------------------------------------

    async def legal_hold_reasons(self, entity_type: str, entity_id: str) -> list[str]:
        """Every retention obligation currently blocking erasure."""
        kind = normalize_entity_type(entity_type)
        now = self._clock()
        financial_cutoff = add_years(now, -self._policy.financial_record_years)
        reasons: list[str] = []

        if kind == "client":
            invoices = await self._entities.find("invoice", client_id=entity_id)
            if self._any_newer_than(invoices, financial_cutoff):
                reasons.append(
                    f"Financial record retention obligation "
                    f"({self._policy.financial_record_years} years)"
                )
        elif kind in ("user", "userprofile"):
            user_id = entity_id
            if kind == "userprofile":
                profile = await self._entities.get("user_profile", entity_id)
                user_id = str(profile.get("user_id", entity_id)) if profile else entity_id
            invoices = await self._entities.find("invoice", user_id=user_id)
            if self._any_newer_than(invoices, financial_cutoff):
                reasons.append(
                    f"Tax record retention obligation ({self._policy.financial_record_years} years)"
                )

        if self._wwft_checks is not None:
            checks = await self._wwft_checks.filter(
                lambda c: normalize_entity_type(c.entity_type) == kind
                and c.entity_id == entity_id
                and c.records_retain_until > now
            )
            if checks:
                reasons.append(
                    f"Wwft record retention obligation ({self._policy.wwft_record_years} years)"
                )

        return reasons

    async def has_active_legal_hold(self, entity_type: str, entity_id: str) -> bool:
        return bool(await self.legal_hold_reasons(entity_type, entity_id))

    async def ensure_erasable(self, entity_type: str, entity_id: str) -> None:
        """Raise :class:`RetentionViolation` if a legal hold applies."""
        reasons = await self.legal_hold_reasons(entity_type, entity_id)
        if reasons:
            raise RetentionViolation(entity_type, entity_id, reasons)

    @staticmethod
    def _any_newer_than(rows: list[dict[str, Any]], cutoff: datetime) -> bool:
        """True if any row is newer than *cutoff*.

        A row without ``created_at`` cannot be shown to be outside the
        retention window and counts as newer.
        """
        for row in rows:
            created = parse_timestamp(row.get("created_at"))
            if created is None or created > cutoff:
                return True
        return False

    # -- Cleanup ---------------------------------------------------------------

    async def sweep(self) -> RetentionSweepResult:
        """Delete expired audit index rows, one failure boundary per row.

        Ledger entries are never touched.
        """
        result = RetentionSweepResult()
        for record in await self.expired():
            result.processed += 1
            try:
                await self._index.delete(record.record_id)
                result.deleted += 1
            except Exception as exc:
                result.failed += 1
                result.errors.append(f"{record.record_id}: {exc}")
                logger.error(
                    "retention.delete_failed",
                    record_id=record.record_id,
                    error=str(exc),
                )

        logger.info(
            "retention.sweep_complete",
            processed=result.processed,
            deleted=result.deleted,
            failed=result.failed,
        )
        return result
