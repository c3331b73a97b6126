"""
Decision models returned by the threat analyzer and the decision coordinator.
"""

from typing import Dict, List, Optional

from pydantic import Field, field_validator

from sfe_backend.models.attestation import AttestationResult
from sfe_backend.models.base import CamelModel
from sfe_backend.models.risk import PolicyAction, RiskLevel


class ThreatResult(CamelModel):
    """
    Supplementary threat analysis.

    threat_level is a plain string so analyzers can report levels beyond
    LOW..CRITICAL; unknown levels carry no security-score penalty.
    """
    threat_level: str = RiskLevel.LOW.value
    detected_threats: List[str] = Field(default_factory=list)
    risk_score: int = Field(0, ge=0, le=100)
    recommendations: List[str] = Field(default_factory=list)
    immediate_action: str = "NONE"

    @field_validator("threat_level", mode="before")
    @classmethod
    def _normalize_level(cls, v):
        if isinstance(v, RiskLevel):
            return v.value
        return str(v).strip().upper() if v is not None else "UNKNOWN"


class Decision(CamelModel):
    """
    Verification outcome for one caller request.

    A Decision is always returned; internal failures produce a fail-closed
    Decision (CRITICAL / BLOCK) with error_message set.
    """
    risk_level: RiskLevel
    action: PolicyAction
    security_score: int = Field(..., ge=0, le=100)
    threat_result: Optional[ThreatResult] = None
    attestation_result: Optional[AttestationResult] = None
    violations: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    error_message: Optional[str] = None

    @property
    def device_trusted(self) -> bool:
        """Consumed by the session issuer: verified, integrity met and not escalated."""
        return (
            self.error_message is None
            and self.attestation_result is not None
            and self.attestation_result.is_successful
            and self.attestation_result.meets_integrity_requirements
            and self.action <= PolicyAction.MONITOR
        )

    @classmethod
    def fail_closed(cls, message: str = "Verification failed") -> "Decision":
        return cls(
            risk_level=RiskLevel.CRITICAL,
            action=PolicyAction.BLOCK,
            security_score=0,
            error_message=message,
        )
