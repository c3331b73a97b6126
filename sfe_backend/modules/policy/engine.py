"""
Risk policy engine.

Evaluates device and binding signals against a policy table and aggregates
them into one risk level, then maps that level to an action.

Checks:
1. rooted            -> policies.root_detection
2. debugger_attached -> policies.debugger_detection
3. tampered          -> policies.app_tampering
4. integrity not met -> fixed HIGH
5. SIM not present   -> fixed MEDIUM

Aggregation is the maximum over triggered checks, never a sum. No check
triggered means LOW.

The engine is pure: it reads the table it is handed and records nothing.
"""

import logging
from typing import Any, Dict, Optional

from sfe_backend.models.attestation import AttestationEvidence, AttestationResult
from sfe_backend.models.policy import PolicyEvaluation, PolicyTable, RiskAssessment, SecurityPolicy
from sfe_backend.models.risk import PolicyAction, RiskLevel

logger = logging.getLogger(__name__)


# Static, monotonic risk -> action table
ACTION_BY_RISK = {
    RiskLevel.LOW: PolicyAction.ALLOW,
    RiskLevel.MEDIUM: PolicyAction.MONITOR,
    RiskLevel.HIGH: PolicyAction.REQUIRE_ADDITIONAL_AUTH,
    RiskLevel.CRITICAL: PolicyAction.BLOCK,
}

# Violation keys for the fixed-contribution checks
ATTESTATION_FAILURE = "attestation_failure"
DEVICE_BINDING = "device_binding"

# Device flag backing each configurable check
DEVICE_CHECKS = (
    ("root_detection", "rooted", "Root access detected"),
    ("debugger_detection", "debugger_attached", "Debugger attached"),
    ("app_tampering", "tampered", "App tampering detected"),
)


def determine_action(risk_level: Any) -> PolicyAction:
    """
    Map a risk level to its action.

    Args:
        risk_level: RiskLevel or risk level name

    Returns:
        PolicyAction; BLOCK for anything unrecognized
    """
    level = RiskLevel.parse(risk_level)
    if level is None:
        logger.warning(
            f"Unrecognized risk level {risk_level!r} - failing closed to BLOCK",
            extra={"risk_level": str(risk_level)}
        )
        return PolicyAction.BLOCK
    return ACTION_BY_RISK[level]


def _violation(action: PolicyAction, risk_level: RiskLevel, **details: str) -> Dict[str, str]:
    violation = {"action": action.value, "riskLevel": risk_level.value}
    violation.update(details)
    return violation


class RiskPolicyEngine:
    """
    Aggregates policy checks into a RiskAssessment.

    Usage:
        engine = RiskPolicyEngine()
        assessment = engine.evaluate(evidence, attestation_result, table)
        action = engine.determine_action(assessment.risk_level)
    """

    determine_action = staticmethod(determine_action)

    def evaluate(
        self,
        evidence: AttestationEvidence,
        attestation_result: Optional[AttestationResult],
        policies: PolicyTable,
    ) -> RiskAssessment:
        """
        Evaluate every check and aggregate to the most severe level.

        Args:
            evidence: Submitted attestation evidence
            attestation_result: Verifier output (None skips the integrity check)
            policies: Resolved policy table for the caller

        Returns:
            RiskAssessment with the aggregated level and triggered checks
        """
        risk_level = RiskLevel.LOW
        violations: Dict[str, Dict[str, str]] = {}

        device = evidence.device_info
        if device is not None:
            for check_name, flag, _ in DEVICE_CHECKS:
                if not getattr(device, flag):
                    continue
                policy = policies.get(check_name)
                if policy is None or not policy.enabled:
                    logger.debug(f"Check '{check_name}' triggered but policy disabled")
                    continue
                violations[check_name] = _violation(policy.action, policy.risk_level)
                risk_level = max(risk_level, policy.risk_level)

        if attestation_result is not None and not attestation_result.meets_integrity_requirements:
            violations[ATTESTATION_FAILURE] = _violation(
                ACTION_BY_RISK[RiskLevel.HIGH],
                RiskLevel.HIGH,
                status=attestation_result.status.value,
            )
            risk_level = max(risk_level, RiskLevel.HIGH)

        binding = evidence.binding_info
        if binding is not None and not binding.sim_present:
            violations[DEVICE_BINDING] = _violation(
                ACTION_BY_RISK[RiskLevel.MEDIUM],
                RiskLevel.MEDIUM,
                issue="sim_not_present",
            )
            risk_level = max(risk_level, RiskLevel.MEDIUM)

        if violations:
            logger.info(
                f"Risk assessment: {risk_level.value} ({len(violations)} checks triggered)",
                extra={"risk_level": risk_level.value, "checks": sorted(violations)}
            )

        return RiskAssessment(risk_level=risk_level, violations=violations)

    def assess_risk(
        self,
        evidence: AttestationEvidence,
        attestation_result: Optional[AttestationResult],
        policies: PolicyTable,
    ) -> RiskLevel:
        """Aggregated risk level only."""
        return self.evaluate(evidence, attestation_result, policies).risk_level

    def evaluate_policy(
        self,
        policy_type: str,
        evidence: AttestationEvidence,
        policies: PolicyTable,
    ) -> PolicyEvaluation:
        """
        Evaluate one named device check.

        Supports root_detection, debugger_detection and app_tampering. Any
        other name is reported as not violated with ALLOW / LOW.
        """
        for check_name, flag, message in DEVICE_CHECKS:
            if check_name != policy_type:
                continue

            policy: Optional[SecurityPolicy] = policies.get(check_name)
            triggered = evidence.device_info is not None and getattr(evidence.device_info, flag)
            if policy is None or not policy.enabled or not triggered:
                return PolicyEvaluation(
                    policy_type=policy_type,
                    violated=False,
                    action=PolicyAction.ALLOW,
                    risk_level=RiskLevel.LOW,
                    message="No violation",
                )
            return PolicyEvaluation(
                policy_type=policy_type,
                violated=True,
                action=policy.action,
                risk_level=policy.risk_level,
                message=message,
            )

        return PolicyEvaluation(
            policy_type=policy_type,
            violated=False,
            action=PolicyAction.ALLOW,
            risk_level=RiskLevel.LOW,
            message="Unknown policy type",
        )

    @staticmethod
    def is_high_risk_device(evidence: AttestationEvidence) -> bool:
        return evidence.is_high_risk_device
