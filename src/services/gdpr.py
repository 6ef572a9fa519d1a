"""GDPR/AVG data-subject rights beyond erasure and access.

Covers rectification (Article 16), portability (Article 20), consent
withdrawal and the periodic compliance report.  Erasure and access stay
in :mod:`src.services.erasure`; this service reuses the access data set
for portability and the erasure records for the report.

Every request is audited under the entity names the report counts:
``GDPRAccessRequest``, ``GDPRRectification``, ``GDPRErasureRequest``
and ``GDPRPortabilityRequest``.
"""

from __future__ import annotations

import csv
import io
import re
import xml.etree.ElementTree as ET
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any, Final

import orjson
import structlog

from src.models.audit import AuditContext, AuditEvent
from src.models.enums import (
    AuditAction,
    ComplianceLevel,
    ConsentStatus,
    ConsentType,
    DeletionResult,
    ErasureState,
    ExportFormat,
)
from src.models.gdpr import (
    ConsentStatistics,
    ConsentWithdrawal,
    DeletionBacklog,
    GDPRComplianceReport,
    PortabilityExport,
    RectificationRequest,
    RectificationResult,
    RequestCounts,
)
from src.services.errors import NotFoundError, PartialWriteError
from src.services.retention import parse_timestamp, utcnow
from src.services.storage import normalize_entity_type

if TYPE_CHECKING:
    from src.services.audit_recorder import AuditRecorder
    from src.services.erasure import ErasureWorkflow
    from src.services.retention import RetentionEngine
    from src.services.storage import AuditIndex, EntityStore

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CONSENT_TABLE: Final[str] = "client_consent"

# Keys a rectification may never rewrite.
_PROTECTED_FIELDS: Final[frozenset[str]] = frozenset({
    "id",
    "user_id",
    "client_id",
    "created_at",
})

# Markers left by the erasure strategies; erased subjects are not rectified.
_ERASURE_MARKERS: Final[tuple[str, ...]] = ("deleted_at", "anonymized_at", "pseudonymized_at")

_AFFECTED_PROCESSING: Final[dict[ConsentType, list[str]]] = {
    ConsentType.DATA_PROCESSING: ["Basic data processing", "Account management"],
    ConsentType.MARKETING: ["Marketing communications", "Newsletter sending"],
    ConsentType.PROFILING: ["Automated profiling", "Personalized services"],
    ConsentType.THIRD_PARTY_SHARING: ["Data sharing with partners", "Third-party integrations"],
    ConsentType.COOKIES: ["Analytics cookies", "Marketing cookies"],
}

_MIME_TYPES: Final[dict[ExportFormat, str]] = {
    ExportFormat.JSON: "application/json",
    ExportFormat.CSV: "text/csv",
    ExportFormat.XML: "application/xml",
}

REQUEST_ENTITY_TYPES: Final[dict[str, str]] = {
    "GDPRAccessRequest": "access_requests",
    "GDPRRectification": "rectification_requests",
    "GDPRErasureRequest": "erasure_requests",
    "GDPRPortabilityRequest": "portability_requests",
}

_XML_TAG_INVALID = re.compile(r"[^A-Za-z0-9_.-]")


def consent_status(consent: dict[str, Any]) -> ConsentStatus:
    """Stored status of a consent row; rows without one count as GIVEN."""
    raw = consent.get("status")
    return ConsentStatus(raw) if raw else ConsentStatus.GIVEN


# ---------------------------------------------------------------------------
# Export rendering
# ---------------------------------------------------------------------------


def _flatten(value: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, item in value.items():
        name = f"{prefix}{key}"
        if isinstance(item, dict):
            flat.update(_flatten(item, f"{name}."))
        elif isinstance(item, list):
            flat[name] = orjson.dumps(item, default=str).decode()
        elif isinstance(item, datetime):
            flat[name] = item.isoformat()
        else:
            flat[name] = "" if item is None else item
    return flat


def render_csv(payload: dict[str, Any]) -> str:
    """One header row of dotted keys and one value row; lists become JSON."""
    flat = _flatten(payload)
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(flat.keys())
    writer.writerow(flat.values())
    return buffer.getvalue()


def _xml_tag(key: str) -> str:
    tag = _XML_TAG_INVALID.sub("_", key)
    if not tag or not (tag[0].isalpha() or tag[0] == "_"):
        tag = f"_{tag}"
    return tag


def _xml_fill(parent: ET.Element, value: Any) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            _xml_fill(ET.SubElement(parent, _xml_tag(str(key))), item)
    elif isinstance(value, list):
        for item in value:
            _xml_fill(ET.SubElement(parent, "item"), item)
    elif isinstance(value, datetime):
        parent.text = value.isoformat()
    elif value is not None:
        parent.text = str(value)


def render_xml(payload: dict[str, Any]) -> str:
    root = ET.Element("data")
    _xml_fill(root, payload)
    ET.indent(root)
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root, encoding="unicode")


def render_export(payload: dict[str, Any], export_format: ExportFormat) -> str:
    if export_format == ExportFormat.JSON:
        return orjson.dumps(payload, option=orjson.OPT_INDENT_2, default=str).decode()
    if export_format == ExportFormat.CSV:
        return render_csv(payload)
    return render_xml(payload)


# ---------------------------------------------------------------------------
# DataSubjectRightsService
# ---------------------------------------------------------------------------


class DataSubjectRightsService:
    """Rectification, portability, consent withdrawal and reporting.

    Parameters
    ----------
    entities:
        Business entity store holding subjects and ``client_consent`` rows.
    erasure:
        Erasure workflow; supplies the access data set and erasure records.
    retention:
        Consulted for the retention impact of a consent withdrawal.
    recorder:
        Audit recorder.
    index:
        Audit index, read by :meth:`compliance_report`.
    """

    def __init__(
        self,
        entities: EntityStore,
        erasure: ErasureWorkflow,
        retention: RetentionEngine,
        recorder: AuditRecorder,
        index: AuditIndex,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._entities = entities
        self._erasure = erasure
        self._retention = retention
        self._recorder = recorder
        self._index = index
        self._clock = clock

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
    # Article 16: rectification
    # ------------------------------------------------------------------

    async def rectify(
        self, request: RectificationRequest, context: AuditContext | None = None
    ) -> RectificationResult:
        """Apply corrections to a subject and audit the old and new values.

        Raises
        ------
        NotFoundError
            The subject, or for profile corrections the user's profile,
            does not exist.
        ValueError
            A protected field is targeted or the subject was erased.
        """
        entity = await self._entities.get(request.entity_type, request.entity_id)
        if entity is None:
            raise NotFoundError(f"{request.entity_type}#{request.entity_id} not found")
        if any(entity.get(marker) for marker in _ERASURE_MARKERS):
            raise ValueError(f"{request.entity_type}#{request.entity_id} has been erased")

        corrections = dict(request.corrections)
        profile_changes: dict[str, Any] = {}
        if normalize_entity_type(request.entity_type) == "user" and "profile" in corrections:
            nested = corrections.pop("profile")
            if not isinstance(nested, dict):
                raise ValueError("profile corrections must be a mapping")
            profile_changes = nested

        protected = _PROTECTED_FIELDS.intersection(corrections) | _PROTECTED_FIELDS.intersection(
            profile_changes
        )
        if protected:
            raise ValueError(f"fields cannot be rectified: {sorted(protected)}")

        old_values: dict[str, Any] = {}
        updated_fields: list[str] = []
        if corrections:
            old_values.update({k: entity.get(k) for k in corrections})
            await self._entities.update(request.entity_type, request.entity_id, corrections)
            updated_fields.extend(corrections)

        if profile_changes:
            profiles = await self._entities.find("user_profile", user_id=request.entity_id)
            if not profiles:
                raise NotFoundError(f"no profile for user#{request.entity_id}")
            profile = profiles[0]
            old_values["profile"] = {k: profile.get(k) for k in profile_changes}
            await self._entities.update("user_profile", str(profile["id"]), profile_changes)
            updated_fields.extend(f"profile.{k}" for k in profile_changes)

        now = self._clock()
        await self._audit(
            AuditEvent(
                action=AuditAction.UPDATE,
                entity_type="GDPRRectification",
                entity_id=request.entity_id,
                old_values=old_values,
                new_values={
                    "entity_type": request.entity_type,
                    "corrections": request.corrections,
                    "updated_fields": updated_fields,
                    "requested_by": request.requested_by,
                },
                compliance_level=ComplianceLevel.REGULATORY,
                context=context or AuditContext(actor_id=request.requested_by),
            )
        )
        logger.info(
            "gdpr.rectification_processed",
            entity_type=request.entity_type,
            fields=len(updated_fields),
        )
        return RectificationResult(
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            updated_fields=updated_fields,
            rectified_at=now,
        )

    # ------------------------------------------------------------------
    # Article 20: portability
    # ------------------------------------------------------------------

    async def export_portable_data(
        self,
        entity_type: str,
        entity_id: str,
        export_format: ExportFormat | str = ExportFormat.JSON,
        context: AuditContext | None = None,
    ) -> PortabilityExport:
        """Render the subject's provided data in a machine-readable format.

        Only consents with legal basis ``CONSENT`` are portable; related
        records held under a legal obligation (invoices) are not.

        Raises
        ------
        NotFoundError
            The subject does not exist.
        ValueError
            The format is not one of json, csv or xml.
        """
        export_format = ExportFormat(export_format)
        report = await self._erasure.build_access_report(entity_type, entity_id)
        now = self._clock()

        consents = [
            c
            for c in report.related_records.get(CONSENT_TABLE, [])
            if str(c.get("legal_basis", "")).upper() == "CONSENT"
        ]
        payload = {
            "personal_data": report.personal_data,
            "consents": consents,
            "export_date": now.isoformat(),
            "format": str(export_format),
        }
        filename = f"data_export_{entity_id}_{int(now.timestamp() * 1000)}.{export_format}"
        export = PortabilityExport(
            entity_type=entity_type,
            entity_id=entity_id,
            format=export_format,
            data=render_export(payload, export_format),
            filename=filename,
            mime_type=_MIME_TYPES[export_format],
        )

        await self._audit(
            AuditEvent(
                action=AuditAction.CREATE,
                entity_type="GDPRPortabilityRequest",
                entity_id=entity_id,
                new_values={
                    "entity_type": entity_type,
                    "format": str(export_format),
                    "filename": filename,
                },
                compliance_level=ComplianceLevel.REGULATORY,
                context=context or AuditContext(),
            )
        )
        logger.info("gdpr.portability_export", entity_type=entity_type, format=export_format)
        return export

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------

    async def withdraw_consent(
        self, consent_id: str, reason: str, context: AuditContext | None = None
    ) -> ConsentWithdrawal:
        """Mark a consent WITHDRAWN and describe what stops and what is kept.

        Raises
        ------
        NotFoundError
            No consent with this id.
        ValueError
            The consent was already withdrawn.
        """
        consent = await self._entities.get(CONSENT_TABLE, consent_id)
        if consent is None:
            raise NotFoundError(f"consent {consent_id} not found")
        previous = consent_status(consent)
        if previous == ConsentStatus.WITHDRAWN:
            raise ValueError(f"consent {consent_id} is already withdrawn")

        context = context or AuditContext()
        now = self._clock()
        await self._entities.update(
            CONSENT_TABLE,
            consent_id,
            {
                "status": str(ConsentStatus.WITHDRAWN),
                "withdrawn_at": now,
                "withdrawal": {
                    "timestamp": now.isoformat(),
                    "reason": reason,
                    "ip_address": context.ip_address,
                },
            },
        )

        try:
            affected = list(_AFFECTED_PROCESSING.get(ConsentType(consent.get("consent_type")), []))
        except ValueError:
            affected = []
        impact = await self._retention_impact(consent)

        await self._audit(
            AuditEvent(
                action=AuditAction.UPDATE,
                entity_type="ClientConsent",
                entity_id=consent_id,
                old_values={"status": str(previous)},
                new_values={
                    "status": str(ConsentStatus.WITHDRAWN),
                    "withdrawal_reason": reason,
                },
                compliance_level=ComplianceLevel.REGULATORY,
                context=context,
            )
        )
        logger.info(
            "gdpr.consent_withdrawn",
            consent_id=consent_id,
            consent_type=consent.get("consent_type"),
            impacts=len(impact),
        )
        return ConsentWithdrawal(
            consent_id=consent_id,
            withdrawn_at=now,
            affected_processing=affected,
            data_retention_impact=impact,
        )

    async def _retention_impact(self, consent: dict[str, Any]) -> list[str]:
        impact: list[str] = []
        if consent.get("retention_period"):
            impact.append(
                f"Custom retention period of {consent['retention_period']} days no longer applies"
            )
        if consent.get("third_party_sharing"):
            impact.append("Data sharing with third parties will be stopped")
            impact.append("Third parties will be notified of consent withdrawal")

        if consent.get("client_id"):
            subject_type, subject_key = "client", "client_id"
        else:
            subject_type, subject_key = "user", "user_id"
        subject_id = consent.get(subject_key)
        if subject_id is None:
            return impact

        others = [
            c
            for c in await self._entities.find(CONSENT_TABLE, **{subject_key: subject_id})
            if c.get("id") != consent.get("id") and consent_status(c) == ConsentStatus.GIVEN
        ]
        if not others:
            impact.append("This may trigger data deletion as no other legal basis exists")
            for reason in await self._retention.legal_hold_reasons(subject_type, str(subject_id)):
                impact.append(f"Data remains held: {reason}")
        return impact

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def compliance_report(
        self, period_from: datetime, period_to: datetime
    ) -> GDPRComplianceReport:
        """Data-subject request volume for a period plus the current backlog.

        Request counts come from the audit index; consent and deletion
        figures from the live stores.  Naive bounds are taken as UTC.
        """
        period_from = parse_timestamp(period_from)
        period_to = parse_timestamp(period_to)
        if period_from > period_to:
            raise ValueError("period_from must not be after period_to")
        now = self._clock()

        requests = RequestCounts()
        for row in await self._index.list_between(REQUEST_ENTITY_TYPES, period_from, period_to):
            field = REQUEST_ENTITY_TYPES.get(row.entity_type)
            if field is not None:
                setattr(requests, field, getattr(requests, field) + 1)

        consents = ConsentStatistics()
        for consent in await self._entities.list(CONSENT_TABLE):
            status = consent_status(consent)
            if status == ConsentStatus.GIVEN:
                consents.active += 1
                kind = str(consent.get("consent_type") or "UNKNOWN")
                consents.active_by_type[kind] = consents.active_by_type.get(kind, 0) + 1
            elif status == ConsentStatus.WITHDRAWN:
                consents.withdrawn += 1
                withdrawn_at = parse_timestamp(consent.get("withdrawn_at"))
                if withdrawn_at is not None and period_from <= withdrawn_at <= period_to:
                    requests.consent_withdrawals += 1
            else:
                consents.expired += 1

        deletions = DeletionBacklog(active_policies=len(self._erasure.active_policies()))
        for record in await self._erasure.list_records():
            if period_from <= record.created_at <= period_to:
                requests.scheduled_deletions += 1
            if (
                record.result == DeletionResult.SUCCESS
                and record.deleted_at is not None
                and period_from <= record.deleted_at <= period_to
            ):
                requests.completed_deletions += 1
            if record.state == ErasureState.SCHEDULED:
                if record.scheduled_for < now:
                    deletions.overdue_deletions += 1
                else:
                    deletions.pending_deletions += 1

        logger.info(
            "gdpr.compliance_report_generated",
            period_from=period_from.isoformat(),
            period_to=period_to.isoformat(),
            overdue=deletions.overdue_deletions,
        )
        return GDPRComplianceReport(
            period_from=period_from,
            period_to=period_to,
            requests=requests,
            consents=consents,
            deletions=deletions,
            generated_at=now,
        )
