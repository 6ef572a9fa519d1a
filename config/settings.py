"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. Every key uses
the ``TRUSTLEDGER_`` prefix; infrastructure URLs additionally accept
their conventional names via ``validation_alias``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Central configuration for the TrustLedger service.

    Environment variables are loaded from a ``.env`` file when present.
    Retention and threshold values are read once at startup and treated
    as read-only for the lifetime of the process.
    """

    model_config = SettingsConfigDict(
        env_prefix="TRUSTLEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── Ledger backend ─────────────────────────────────────────────────
    ledger_backend: Literal["memory", "redis"] = "memory"
    ledger_redis_url: str = Field(
        default="redis://localhost:6379/1",
        validation_alias=AliasChoices("TRUSTLEDGER_LEDGER_REDIS_URL", "REDIS_URL"),
    )
    ledger_namespace: str = "ledger:"

    # ── Admin API Key ──────────────────────────────────────────────────
    admin_api_key: str = ""
    # Still accepted during a rotation; leave empty once retired.
    admin_api_key_previous: str = ""

    # ── CORS (production only; development allows localhost) ──────────
    cors_origins: list[str] = Field(default_factory=list)

    # ── Reverse proxies in front of the service (X-Forwarded-For) ──────
    trusted_proxy_count: int = 1

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"

    # ── Retention (years per compliance level) ─────────────────────────
    retention_standard_years: int = Field(default=3, ge=1)
    retention_enhanced_years: int = Field(default=5, ge=1)
    retention_critical_years: int = Field(default=7, ge=1)
    retention_regulatory_years: int = Field(default=10, ge=1)
    retention_expiry_warning_days: int = 90

    # ── Legal holds ────────────────────────────────────────────────────
    financial_record_retention_years: int = 7  # Dutch fiscal bewaarplicht
    wwft_record_retention_years: int = 5

    # ── Erasure ────────────────────────────────────────────────────────
    erasure_grace_period_days: int = 30
    pseudonymization_key: str = Field(default="change-me", repr=False)
    # entity type -> DeletionMethod; unlisted types are soft-deleted
    erasure_methods: dict[str, str] = Field(
        default_factory=lambda: {"user": "SECURE_DELETE", "creditor": "ANONYMIZATION"},
    )

    # ── PSD2 Strong Customer Authentication ────────────────────────────
    sca_low_value_threshold: float = 30.0  # EUR
    sca_low_risk_threshold: float = 0.1
    sca_expiry_minutes: int = 15

    # ── Sanctions / PEP screening ──────────────────────────────────────
    screening_service_url: str = ""
    screening_api_key: str = Field(default="", repr=False)
    screening_timeout_seconds: float = 10.0

    # ── Scheduled jobs ─────────────────────────────────────────────────
    enable_auto_jobs: bool = True
    job_check_interval_seconds: int = 900
    compliance_scan_entity_types: list[str] = Field(
        default_factory=lambda: ["user_profile", "creditor", "client", "invoice"],
    )

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION


# Module-level singleton; import ``settings`` everywhere.
settings = Settings()
