"""
Telemetry models: security events, regulatory records and compliance reports.

CRITICAL SECURITY:
- device_fingerprint is a derived identifier, hashed again on anonymization
- Once anonymized, an event is never re-identified
- The anonymized flag cannot be set from input, so client events are always
  anonymized by the pipeline
"""

import secrets
import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import Field, field_validator

from sfe_backend.models.base import CamelModel
from sfe_backend.models.risk import RiskLevel


class EventType(str, Enum):
    """Security-relevant facts recorded for audit and regulatory reporting."""
    SECURITY_CHECK = "SECURITY_CHECK"
    ATTESTATION_VERIFICATION = "ATTESTATION_VERIFICATION"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    RISK_ASSESSMENT = "RISK_ASSESSMENT"
    TRANSACTION_BLOCKED = "TRANSACTION_BLOCKED"
    DEVICE_BINDING_FAILURE = "DEVICE_BINDING_FAILURE"


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_event_id() -> str:
    """Event id of the form evt_<epoch ms>_<8 hex chars>."""
    return f"evt_{now_ms()}_{secrets.token_hex(4)}"


class TelemetryEvent(CamelModel):
    """
    A recorded security-relevant fact.

    Example:
        {
            "eventType": "POLICY_VIOLATION",
            "eventId": "evt_1735689600000_3fa9c2d1",
            "timestamp": 1735689600000,
            "deviceFingerprint": "9f86d08...",
            "riskLevel": "HIGH",
            "payload": {"violationType": "root_detection", "actionTaken": "BLOCK"},
            "anonymized": false
        }
    """
    event_type: EventType
    event_id: str = Field(default_factory=generate_event_id)
    timestamp: int = Field(default_factory=now_ms, description="Epoch ms")
    device_fingerprint: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    anonymized: bool = False

    @field_validator("anonymized", mode="before")
    @classmethod
    def _ignore_submitted_anonymized_flag(cls, v):
        # Only anonymize_event() marks an event anonymized (via model_copy,
        # which skips validation). Parsed or constructed events never are.
        return False

    @classmethod
    def attestation_verification(cls, device_fingerprint: str, risk_level: RiskLevel, successful: bool):
        return cls(
            event_type=EventType.ATTESTATION_VERIFICATION,
            device_fingerprint=device_fingerprint,
            risk_level=risk_level,
            payload={"successful": successful, "attestationType": "play_integrity"},
        )

    @classmethod
    def policy_violation(cls, device_fingerprint: str, violation_type: str, action: str,
                         risk_level: RiskLevel = RiskLevel.HIGH):
        return cls(
            event_type=EventType.POLICY_VIOLATION,
            device_fingerprint=device_fingerprint,
            risk_level=risk_level,
            payload={"violationType": violation_type, "actionTaken": action},
        )

    @classmethod
    def transaction_blocked(cls, device_fingerprint: str, risk_level: RiskLevel, reason: str):
        return cls(
            event_type=EventType.TRANSACTION_BLOCKED,
            device_fingerprint=device_fingerprint,
            risk_level=risk_level,
            payload={"reason": reason},
        )

    @classmethod
    def device_binding_failure(cls, device_fingerprint: str, issue: str):
        return cls(
            event_type=EventType.DEVICE_BINDING_FAILURE,
            device_fingerprint=device_fingerprint,
            risk_level=RiskLevel.MEDIUM,
            payload={"issue": issue},
        )


class RegulatoryRecord(CamelModel):
    """Anonymized event in the shape submitted to the regulatory sink."""
    event_type: str
    timestamp: int
    risk_level: Optional[str] = None
    anonymized_data: Dict[str, Any] = Field(default_factory=dict)
    compliance_required: bool = False


class ComplianceReport(CamelModel):
    """Event counts over one reporting window. Emitted even when empty."""
    period_start: datetime
    period_end: datetime
    total_events: int = 0
    counts_by_type: Dict[str, int] = Field(default_factory=dict)
    counts_by_risk_level: Dict[str, int] = Field(default_factory=dict)


class TelemetryStats(CamelModel):
    """Point-in-time view of the telemetry pipeline."""
    total_events_recorded: int
    events_in_queue: int
    telemetry_enabled: bool
    batching_enabled: bool
    anonymization_enabled: bool
