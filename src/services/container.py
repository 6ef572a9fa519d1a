"""Wiring of the service graph from settings.

``build_services`` is called once by the application lifespan; tests call
it with in-memory stores and a fixed clock.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import structlog

from src.models.compliance import ComplianceIssue
from src.models.enums import DeletionMethod
from src.models.erasure import ErasurePolicy, ErasureRecord
from src.models.risk import PSD2Authentication, WwftCheck
from src.services.audit_recorder import AuditRecorder
from src.services.compliance_scanner import ComplianceCheckEngine
from src.services.erasure import ErasureWorkflow
from src.services.gdpr import DataSubjectRightsService
from src.services.jobs import ComplianceJobRunner
from src.services.ledger import ImmutableLedger, build_ledger
from src.services.psd2 import SCAService
from src.services.retention import RetentionEngine, RetentionPolicy, utcnow
from src.services.risk import ScreeningProvider, build_screening_provider
from src.services.storage import (
    AuditIndex,
    EntityStore,
    InMemoryAuditIndex,
    InMemoryEntityStore,
    InMemoryRepository,
)
from src.services.wwft import WwftService

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class TrustLedgerServices:
    ledger: ImmutableLedger
    index: AuditIndex
    entities: EntityStore
    retention: RetentionEngine
    recorder: AuditRecorder
    scanner: ComplianceCheckEngine
    erasure: ErasureWorkflow
    gdpr: DataSubjectRightsService
    screening: ScreeningProvider
    sca: SCAService
    wwft: WwftService
    jobs: ComplianceJobRunner

    async def close(self) -> None:
        for resource in (self.ledger, self.screening):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()


def build_services(
    settings: object,
    *,
    ledger: ImmutableLedger | None = None,
    entities: EntityStore | None = None,
    screening: ScreeningProvider | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> TrustLedgerServices:
    """Construct every service, sharing one index, entity store and clock."""
    ledger = ledger or build_ledger(settings)
    index = InMemoryAuditIndex()
    entities = entities or InMemoryEntityStore()
    screening = screening or build_screening_provider(settings)
    wwft_checks: InMemoryRepository[WwftCheck] = InMemoryRepository("check_id")

    retention = RetentionEngine(
        RetentionPolicy.from_settings(settings),
        index,
        entities,
        wwft_checks=wwft_checks,
        clock=clock,
    )
    recorder = AuditRecorder(ledger, index, retention, clock=clock)
    scanner = ComplianceCheckEngine(
        entities,
        InMemoryRepository[ComplianceIssue]("issue_id"),
        recorder,
        clock=clock,
    )
    erasure = ErasureWorkflow(
        entities,
        InMemoryRepository[ErasureRecord]("record_id"),
        retention,
        recorder,
        grace_period_days=getattr(settings, "erasure_grace_period_days", 30),
        pseudonymization_key=getattr(settings, "pseudonymization_key", ""),
        policies=[
            ErasurePolicy(
                policy_id=f"settings:{entity_type}",
                entity_type=entity_type,
                deletion_method=DeletionMethod(method),
            )
            for entity_type, method in getattr(settings, "erasure_methods", {}).items()
        ],
        clock=clock,
    )
    gdpr = DataSubjectRightsService(entities, erasure, retention, recorder, index, clock=clock)
    sca = SCAService(
        InMemoryRepository[PSD2Authentication]("auth_id"),
        screening,
        recorder,
        low_value_threshold=getattr(settings, "sca_low_value_threshold", 30.0),
        low_risk_threshold=getattr(settings, "sca_low_risk_threshold", 0.1),
        expiry_minutes=getattr(settings, "sca_expiry_minutes", 15),
        clock=clock,
    )
    wwft = WwftService(
        wwft_checks,
        screening,
        recorder,
        record_retention_years=getattr(settings, "wwft_record_retention_years", 5),
        clock=clock,
    )
    jobs = ComplianceJobRunner(recorder, retention, scanner, erasure, sca, settings)

    logger.info("services.initialised", screening=type(screening).__name__)
    return TrustLedgerServices(
        ledger=ledger,
        index=index,
        entities=entities,
        retention=retention,
        recorder=recorder,
        scanner=scanner,
        erasure=erasure,
        gdpr=gdpr,
        screening=screening,
        sca=sca,
        wwft=wwft,
        jobs=jobs,
    )
