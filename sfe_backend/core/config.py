"""
Core application configuration using Pydantic Settings.

All environment variables are loaded here and validated once at startup.
Nested sections use a double underscore, e.g.:

    SFE_TELEMETRY__BATCH_SIZE=50
    SFE_MULTI_TENANT__ENABLED=true
    SFE_MULTI_TENANT__TENANTS='{"bank-a": {"tenantId": "bank-a", "policies": {...}}}'

Components never read `settings` directly. The composition root (main.py)
hands each component the section it needs.
"""

from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sfe_backend.models.policy import PolicyTable


class TelemetryConfig(BaseModel):
    """Telemetry collection, batching and anonymization settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    enable_batching: bool = True
    batch_size: int = Field(100, ge=1)
    batch_timeout_ms: int = Field(60_000, gt=0)  # Periodic flush interval
    enable_anonymization: bool = True
    salt_key: str = "default-salt-key"
    report_interval_seconds: int = Field(86_400, ge=0)  # 0 disables the compliance report job
    regulatory_timeout_ms: int = Field(5_000, gt=0)

    @property
    def batch_timeout_seconds(self) -> float:
        return self.batch_timeout_ms / 1000.0


class RegulatoryConfig(BaseModel):
    """Regulatory authority and reporting settings."""

    model_config = ConfigDict(frozen=True)

    authority_id: str = "UNKNOWN"
    jurisdiction_code: str = "GLOBAL"
    api_endpoint: Optional[str] = None
    enable_real_time_reporting: bool = True
    audit_interval_days: int = Field(90, ge=1)


class TenantConfig(BaseModel):
    """Per-tenant overrides. A None section falls back to the default."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    tenant_id: str = Field("", alias="tenantId")
    name: Optional[str] = None
    policies: Optional[PolicyTable] = None
    regulatory: Optional[RegulatoryConfig] = None
    active: bool = True


class MultiTenantConfig(BaseModel):
    """Multi-tenant policy resolution settings."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    tenant_header_name: str = "X-Tenant-ID"
    tenants: Dict[str, TenantConfig] = Field(default_factory=dict)


class AttestationConfig(BaseModel):
    """Attestation provider settings."""

    model_config = ConfigDict(frozen=True)

    project_id: Optional[str] = None
    api_key: Optional[str] = None
    provider_timeout_ms: int = Field(5_000, gt=0)

    @property
    def provider_timeout_seconds(self) -> float:
        return self.provider_timeout_ms / 1000.0


class ThreatDetectionConfig(BaseModel):
    """Threat analyzer selection and score thresholds."""

    model_config = ConfigDict(frozen=True)

    analyzer: Literal["baseline", "signals"] = "signals"
    threat_score_threshold: int = Field(70, ge=0, le=100)  # HIGH at or above
    critical_threat_threshold: int = Field(90, ge=0, le=100)  # CRITICAL at or above


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SFE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # App Configuration
    APP_NAME: str = "SFE Backend"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    SDK_VERSION: str = "1.0.0"
    POLICY_VERSION: str = "1.0.0"

    # Sentry Monitoring
    SENTRY_DSN: Optional[str] = None

    # Sections
    TELEMETRY: TelemetryConfig = Field(default_factory=TelemetryConfig)
    POLICIES: PolicyTable = Field(default_factory=PolicyTable)
    MULTI_TENANT: MultiTenantConfig = Field(default_factory=MultiTenantConfig)
    REGULATORY: RegulatoryConfig = Field(default_factory=RegulatoryConfig)
    ATTESTATION: AttestationConfig = Field(default_factory=AttestationConfig)
    THREAT_DETECTION: ThreatDetectionConfig = Field(default_factory=ThreatDetectionConfig)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"


# Global settings instance (composition root only)
settings = Settings()
