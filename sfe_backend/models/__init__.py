"""
Pydantic models package.

Wire-facing models accept and emit camelCase; Python code uses snake_case.
"""

from sfe_backend.models.risk import PolicyAction, RiskLevel, compare_risk_levels
from sfe_backend.models.attestation import (
    AttestationEvidence,
    AttestationResult,
    AttestationStatus,
    BindingInfo,
    DeviceInfo,
    IntegrityVerdict,
)
from sfe_backend.models.telemetry import ComplianceReport, EventType, TelemetryEvent

__all__ = [
    "PolicyAction",
    "RiskLevel",
    "compare_risk_levels",
    "AttestationEvidence",
    "AttestationResult",
    "AttestationStatus",
    "BindingInfo",
    "DeviceInfo",
    "IntegrityVerdict",
    "ComplianceReport",
    "EventType",
    "TelemetryEvent",
]
