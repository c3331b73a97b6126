"""
Attestation models: the evidence a client submits and the verdict we return.

AttestationEvidence is immutable once received. AttestationResult is produced
once per verification call and never mutated; callers judge trust from the
integrity flags, not from the status alone.
"""

import time
from enum import Enum
from typing import Optional

from pydantic import Field

from sfe_backend.models.base import CamelModel
from sfe_backend.models.risk import RiskLevel


class DeviceInfo(CamelModel):
    """Device facts reported by the client SDK."""
    os_version: Optional[str] = Field(None, description="Operating system version")
    model: Optional[str] = Field(None, description="Device model")
    rooted: bool = Field(False, description="Root / jailbreak detected on device")
    debugger_attached: bool = Field(False, description="Debugger attached to the app process")
    tampered: bool = Field(False, description="App signature or code tampering detected")


class BindingInfo(CamelModel):
    """SIM / network binding facts used to tie a device to an account."""
    sim_present: bool = Field(False, description="SIM card present in device")
    network_operator: Optional[str] = Field(None, description="Mobile network operator name")
    binding_token: Optional[str] = Field(None, description="Opaque device binding token")


class AttestationEvidence(CamelModel):
    """
    Attestation evidence submitted by login and payment-initiation callers.

    Example:
        {
            "appVersion": "2.4.1",
            "sdkVersion": "1.0.0",
            "timestamp": 1735689600000,
            "deviceInfo": {"osVersion": "14", "model": "Pixel 8", "rooted": false},
            "bindingInfo": {"simPresent": true, "networkOperator": "Airtel"},
            "attestationToken": "eyJhbGciOi..."
        }
    """
    app_version: Optional[str] = None
    sdk_version: Optional[str] = None
    timestamp: Optional[int] = Field(None, description="Client timestamp (epoch ms)")
    device_info: Optional[DeviceInfo] = None
    binding_info: Optional[BindingInfo] = None
    attestation_token: Optional[str] = Field(None, description="Opaque attestation token (header.payload.signature)")

    @property
    def is_high_risk_device(self) -> bool:
        """Rooted, tampered or debugged devices are high risk regardless of policy."""
        if self.device_info is None:
            return False
        return (
            self.device_info.rooted
            or self.device_info.tampered
            or self.device_info.debugger_attached
        )


class AttestationStatus(str, Enum):
    """
    Outcome of token verification.

    - SUCCESS: token verified; integrity flags carry the verdict
    - FAILED: verification capability unreachable or errored
    - INVALID_TOKEN: token missing or malformed
    - VERIFICATION_ERROR: provider answered but the answer was unusable
    """
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    INVALID_TOKEN = "INVALID_TOKEN"
    VERIFICATION_ERROR = "VERIFICATION_ERROR"


class IntegrityVerdict(CamelModel):
    """Structured result of evaluating an attestation token."""
    meets_device_integrity: bool = False
    meets_basic_integrity: bool = False
    app_integrity_verdict: str = "UNEVALUATED"
    device_recognition_verdict: str = "UNEVALUATED"
    environment_details: Optional[str] = None


def _now_ms() -> int:
    return int(time.time() * 1000)


class AttestationResult(CamelModel):
    """Result of AttestationVerifier.verify(). Always populated, never raised."""
    status: AttestationStatus
    message: str
    verdict: Optional[IntegrityVerdict] = None
    risk_level_hint: RiskLevel = RiskLevel.LOW
    timestamp: int = Field(default_factory=_now_ms)

    @property
    def is_successful(self) -> bool:
        return self.status == AttestationStatus.SUCCESS

    @property
    def meets_integrity_requirements(self) -> bool:
        """True only when a verdict exists and both integrity flags are met."""
        return (
            self.verdict is not None
            and self.verdict.meets_device_integrity
            and self.verdict.meets_basic_integrity
        )

    @classmethod
    def success(cls, verdict: IntegrityVerdict, risk_level_hint: RiskLevel) -> "AttestationResult":
        return cls(
            status=AttestationStatus.SUCCESS,
            message="Attestation verification successful",
            verdict=verdict,
            risk_level_hint=risk_level_hint,
        )

    @classmethod
    def failed(cls, message: str) -> "AttestationResult":
        return cls(
            status=AttestationStatus.FAILED,
            message=message,
            risk_level_hint=RiskLevel.CRITICAL,
        )

    @classmethod
    def invalid_token(cls, message: str) -> "AttestationResult":
        return cls(
            status=AttestationStatus.INVALID_TOKEN,
            message=message,
            risk_level_hint=RiskLevel.HIGH,
        )
