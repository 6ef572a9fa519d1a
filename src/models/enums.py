from __future__ import annotations

from enum import StrEnum


class AuditAction(StrEnum):
    __slots__ = ()

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    VALIDATE = "VALIDATE"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    PAYMENT_PROCESS = "PAYMENT_PROCESS"
    STATUS_CHANGE = "STATUS_CHANGE"


class ComplianceLevel(StrEnum):
    """Tiering that drives how long an audit record must be retained."""

    __slots__ = ()

    STANDARD = "STANDARD"
    ENHANCED = "ENHANCED"
    CRITICAL = "CRITICAL"
    REGULATORY = "REGULATORY"


class IssueType(StrEnum):
    __slots__ = ()

    MANDATORY_FIELDS = "MANDATORY_FIELDS"
    DATA_VALIDATION = "DATA_VALIDATION"


class IssueSeverity(StrEnum):
    __slots__ = ()

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class DeletionMethod(StrEnum):
    __slots__ = ()

    SOFT_DELETE = "SOFT_DELETE"
    SECURE_DELETE = "SECURE_DELETE"
    ANONYMIZATION = "ANONYMIZATION"
    PSEUDONYMIZATION = "PSEUDONYMIZATION"
    ARCHIVAL = "ARCHIVAL"


class DeletionResult(StrEnum):
    __slots__ = ()

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class ErasureState(StrEnum):
    """Lifecycle of an erasure record.

    REQUESTED is transient: a request either becomes SCHEDULED or is
    refused without a record being stored.
    """

    __slots__ = ()

    REQUESTED = "REQUESTED"
    SCHEDULED = "SCHEDULED"
    EXECUTING = "EXECUTING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ErasureState.SUCCESS, ErasureState.FAILED)


class ConsentStatus(StrEnum):
    """State of a data subject's consent record."""

    __slots__ = ()

    GIVEN = "GIVEN"
    WITHDRAWN = "WITHDRAWN"
    EXPIRED = "EXPIRED"


class ConsentType(StrEnum):
    __slots__ = ()

    DATA_PROCESSING = "DATA_PROCESSING"
    MARKETING = "MARKETING"
    PROFILING = "PROFILING"
    THIRD_PARTY_SHARING = "THIRD_PARTY_SHARING"
    COOKIES = "COOKIES"


class ExportFormat(StrEnum):
    """Article 20 portability export formats."""

    __slots__ = ()

    JSON = "json"
    CSV = "csv"
    XML = "xml"


class RiskLevel(StrEnum):
    __slots__ = ()

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class CDDLevel(StrEnum):
    __slots__ = ()

    SIMPLIFIED = "SIMPLIFIED"
    STANDARD = "STANDARD"
    ENHANCED = "ENHANCED"


class MonitoringLevel(StrEnum):
    __slots__ = ()

    BASIC = "BASIC"
    STANDARD = "STANDARD"
    ENHANCED = "ENHANCED"
    CONTINUOUS = "CONTINUOUS"


class PEPStatus(StrEnum):
    __slots__ = ()

    NOT_PEP = "NOT_PEP"
    DOMESTIC_PEP = "DOMESTIC_PEP"
    FOREIGN_PEP = "FOREIGN_PEP"
    PEP_RELATIVE = "PEP_RELATIVE"


class SanctionsResult(StrEnum):
    __slots__ = ()

    CLEAR = "CLEAR"
    POTENTIAL_MATCH = "POTENTIAL_MATCH"
    UNDER_REVIEW = "UNDER_REVIEW"
    CONFIRMED_MATCH = "CONFIRMED_MATCH"


class ComplianceStatus(StrEnum):
    __slots__ = ()

    COMPLIANT = "COMPLIANT"
    PENDING = "PENDING"
    NON_COMPLIANT = "NON_COMPLIANT"


class AuthenticationStatus(StrEnum):
    __slots__ = ()

    PENDING = "PENDING"
    AUTHENTICATED = "AUTHENTICATED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
