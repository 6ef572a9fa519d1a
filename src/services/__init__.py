"""TrustLedger service layer -- ledger, audit trail, retention and compliance engines."""

from __future__ import annotations

from src.services.audit_recorder import AuditRecorder
from src.services.compliance_scanner import ComplianceCheckEngine
from src.services.container import TrustLedgerServices, build_services
from src.services.erasure import ErasureWorkflow
from src.services.gdpr import DataSubjectRightsService
from src.services.jobs import ComplianceJobRunner
from src.services.ledger import ImmutableLedger, InMemoryLedger, RedisLedger, build_ledger
from src.services.psd2 import SCAService
from src.services.retention import RetentionEngine, RetentionPolicy
from src.services.risk import HttpScreeningClient, ScreeningProvider, StaticListScreening
from src.services.wwft import WwftService

__all__ = [
    "AuditRecorder",
    "ComplianceCheckEngine",
    "ComplianceJobRunner",
    "DataSubjectRightsService",
    "ErasureWorkflow",
    "HttpScreeningClient",
    "ImmutableLedger",
    "InMemoryLedger",
    "RedisLedger",
    "RetentionEngine",
    "RetentionPolicy",
    "SCAService",
    "ScreeningProvider",
    "StaticListScreening",
    "TrustLedgerServices",
    "WwftService",
    "build_ledger",
    "build_services",
]
