"""
Supplementary threat analysis.

Analyzers are pure functions of (evidence, attestation result) and always
return a populated ThreatResult. They are selected at composition time; the
decision coordinator only knows the ThreatAnalyzer interface.

Signal scoring (SignalThreatAnalyzer):
- Base score: 10
- Rooted: +40
- Tampered: +50
- Debugger attached: +25
- Attestation not SUCCESS: +40
- Attestation SUCCESS but integrity not met: +30
- SIM not present: +10
Capped at 100.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from sfe_backend.models.attestation import AttestationEvidence, AttestationResult
from sfe_backend.models.decision import ThreatResult
from sfe_backend.models.risk import RiskLevel

logger = logging.getLogger(__name__)


BASE_RISK_SCORE = 10
MEDIUM_THREAT_THRESHOLD = 40

IMMEDIATE_ACTION_BY_LEVEL = {
    RiskLevel.CRITICAL: "BLOCK",
    RiskLevel.HIGH: "REQUIRE_ADDITIONAL_AUTH",
    RiskLevel.MEDIUM: "MONITOR",
    RiskLevel.LOW: "NONE",
}

RECOMMENDATION_BY_THREAT = {
    "ROOTED_DEVICE": "Block sensitive operations on rooted devices.",
    "APP_TAMPERING": "Force reinstall from the official store.",
    "DEBUGGER_ATTACHED": "Terminate the session and require re-authentication.",
    "ATTESTATION_FAILED": "Retry attestation before allowing the transaction.",
    "INTEGRITY_NOT_MET": "Require step-up authentication.",
    "SIM_NOT_PRESENT": "Re-verify device binding.",
}

NO_ACTION_RECOMMENDATION = "No immediate action required."


class ThreatAnalyzer(ABC):
    """Extension point for behavioral and anomaly detectors."""

    @abstractmethod
    def analyze(
        self,
        evidence: AttestationEvidence,
        attestation_result: Optional[AttestationResult],
    ) -> ThreatResult:
        raise NotImplementedError


class BaselineThreatAnalyzer(ThreatAnalyzer):
    """Constant LOW analyzer. Contributes nothing beyond the policy engine."""

    def analyze(self, evidence, attestation_result) -> ThreatResult:
        return ThreatResult(
            threat_level=RiskLevel.LOW,
            detected_threats=[],
            risk_score=BASE_RISK_SCORE,
            recommendations=[NO_ACTION_RECOMMENDATION],
            immediate_action="NONE",
        )


def _detect_threats(
    evidence: AttestationEvidence,
    attestation_result: Optional[AttestationResult],
) -> List[Tuple[str, int]]:
    """Collect (threat name, weight) for every signal present."""
    threats = []

    device = evidence.device_info
    if device is not None:
        if device.rooted:
            threats.append(("ROOTED_DEVICE", 40))
        if device.tampered:
            threats.append(("APP_TAMPERING", 50))
        if device.debugger_attached:
            threats.append(("DEBUGGER_ATTACHED", 25))

    if attestation_result is not None:
        if not attestation_result.is_successful:
            threats.append(("ATTESTATION_FAILED", 40))
        elif not attestation_result.meets_integrity_requirements:
            threats.append(("INTEGRITY_NOT_MET", 30))

    binding = evidence.binding_info
    if binding is not None and not binding.sim_present:
        threats.append(("SIM_NOT_PRESENT", 10))

    return threats


class SignalThreatAnalyzer(ThreatAnalyzer):
    """
    Additive device-signal scorer.

    Thresholds:
    - >= critical_threshold (90): CRITICAL
    - >= threshold (70): HIGH
    - >= 40: MEDIUM
    - < 40: LOW

    Usage:
        analyzer = SignalThreatAnalyzer(threshold=70, critical_threshold=90)
        result = analyzer.analyze(evidence, attestation_result)
    """

    def __init__(self, threshold: int = 70, critical_threshold: int = 90):
        self.threshold = threshold
        self.critical_threshold = critical_threshold

    def _level_for_score(self, score: int) -> RiskLevel:
        if score >= self.critical_threshold:
            return RiskLevel.CRITICAL
        if score >= self.threshold:
            return RiskLevel.HIGH
        if score >= MEDIUM_THREAT_THRESHOLD:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def analyze(self, evidence, attestation_result) -> ThreatResult:
        threats = _detect_threats(evidence, attestation_result)
        score = min(100, BASE_RISK_SCORE + sum(weight for _, weight in threats))
        level = self._level_for_score(score)

        names = [name for name, _ in threats]
        recommendations = [RECOMMENDATION_BY_THREAT[name] for name in names] or [NO_ACTION_RECOMMENDATION]

        return ThreatResult(
            threat_level=level,
            detected_threats=names,
            risk_score=score,
            recommendations=recommendations,
            immediate_action=IMMEDIATE_ACTION_BY_LEVEL[level],
        )


def safe_analyze(
    analyzer: ThreatAnalyzer,
    evidence: AttestationEvidence,
    attestation_result: Optional[AttestationResult],
) -> ThreatResult:
    """
    Run an analyzer, converting any failure into a CRITICAL result.

    Third-party analyzers may break the never-raise contract; the decision
    path must not.
    """
    try:
        result = analyzer.analyze(evidence, attestation_result)
        if not isinstance(result, ThreatResult):
            raise TypeError(f"{type(analyzer).__name__} returned {type(result).__name__}")
        return result
    except Exception as e:
        logger.error(
            f"Threat analyzer {type(analyzer).__name__} failed: {type(e).__name__}",
            exc_info=True
        )
        return ThreatResult(
            threat_level=RiskLevel.CRITICAL,
            detected_threats=["ANALYZER_ERROR"],
            risk_score=100,
            recommendations=["Threat analysis unavailable - treat device as untrusted."],
            immediate_action="BLOCK",
        )
