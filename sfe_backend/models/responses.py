"""Response models for the verification, telemetry and policy interfaces."""

from typing import Any, Dict, Optional

from pydantic import Field

from sfe_backend.models.attestation import AttestationResult
from sfe_backend.models.base import CamelModel
from sfe_backend.models.decision import ThreatResult
from sfe_backend.models.telemetry import now_ms


class ComplianceStatus(CamelModel):
    """Regulatory compliance summary attached to every verification."""
    compliant: bool
    regulatory_authority_id: str
    last_audit: int  # epoch ms
    next_audit: int  # epoch ms


class SecurityVerificationResponse(CamelModel):
    """
    Response to a verification request.

    On an internal failure success is False and error_message holds a
    sanitized description; no device identifiers or tokens are echoed back.
    """
    verification_id: str
    timestamp: int = Field(default_factory=now_ms)
    attestation_result: Optional[AttestationResult] = None
    risk_level: str
    recommended_action: str
    threat_analysis: Optional[ThreatResult] = None
    compliance_status: Optional[ComplianceStatus] = None
    security_score: int = Field(0, ge=0, le=100)
    device_trusted: bool = False
    success: bool = True
    error_message: Optional[str] = None


class TelemetryAck(CamelModel):
    """Acknowledgement for a telemetry submission."""
    submission_id: str
    timestamp: int = Field(default_factory=now_ms)
    events_processed: int = 0
    critical_events_reported: int = 0
    status: str = "ACCEPTED"
    success: bool = True
    error_message: Optional[str] = None


class PolicyQueryResponse(CamelModel):
    """Current policy snapshot for a tenant, with a client refresh hint."""
    timestamp: int = Field(default_factory=now_ms)
    version: str
    policies: Dict[str, Any] = Field(default_factory=dict)
    update_required: bool = False
    next_check_interval_seconds: int = 3600
    success: bool = True
    error_message: Optional[str] = None


class HealthResponse(CamelModel):
    """Component health summary."""
    status: str
    timestamp: int = Field(default_factory=now_ms)
    version: str
    components: Dict[str, str] = Field(default_factory=dict)
