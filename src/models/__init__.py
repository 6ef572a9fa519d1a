from src.models.audit import (
    AuditContext,
    AuditEvent,
    AuditFilter,
    AuditRecord,
    LedgerEntry,
    ReconcileResult,
)
from src.models.compliance import (
    ComplianceIssue,
    ComplianceSummary,
    MandatoryFieldPolicy,
    ScanResult,
)
from src.models.enums import (
    AuditAction,
    AuthenticationStatus,
    CDDLevel,
    ComplianceLevel,
    ComplianceStatus,
    ConsentStatus,
    ConsentType,
    DeletionMethod,
    DeletionResult,
    ErasureState,
    ExportFormat,
    IssueSeverity,
    IssueType,
    MonitoringLevel,
    PEPStatus,
    RiskLevel,
    SanctionsResult,
)
from src.models.erasure import (
    AccessReport,
    ErasureDecision,
    ErasurePolicy,
    ErasureRecord,
    ErasureRequest,
    ErasureRunSummary,
    RetentionSweepResult,
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
from src.models.risk import (
    AuthenticationFactors,
    PSD2Authentication,
    RiskAssessmentResult,
    RiskThresholds,
    WwftCheck,
)

__all__ = [
    "AccessReport",
    "AuditAction",
    "AuditContext",
    "AuditEvent",
    "AuditFilter",
    "AuditRecord",
    "AuthenticationFactors",
    "AuthenticationStatus",
    "CDDLevel",
    "ComplianceIssue",
    "ComplianceLevel",
    "ComplianceStatus",
    "ComplianceSummary",
    "ConsentStatistics",
    "ConsentStatus",
    "ConsentType",
    "ConsentWithdrawal",
    "DeletionBacklog",
    "DeletionMethod",
    "DeletionResult",
    "ErasureDecision",
    "ErasurePolicy",
    "ErasureRecord",
    "ErasureRequest",
    "ErasureRunSummary",
    "ErasureState",
    "ExportFormat",
    "GDPRComplianceReport",
    "IssueSeverity",
    "IssueType",
    "LedgerEntry",
    "MandatoryFieldPolicy",
    "MonitoringLevel",
    "PEPStatus",
    "PSD2Authentication",
    "PortabilityExport",
    "ReconcileResult",
    "RectificationRequest",
    "RectificationResult",
    "RequestCounts",
    "RetentionSweepResult",
    "RiskAssessmentResult",
    "RiskLevel",
    "RiskThresholds",
    "SanctionsResult",
    "ScanResult",
    "WwftCheck",
]
