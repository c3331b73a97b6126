"""
Transaction decision coordinator.

Sequence:
1. Verify attestation
2. Resolve the caller's policy table and assess risk
3. Determine action
4. Analyze threats
5. Compute the security score
6. Record telemetry (best effort)
7. Return the Decision

decide() never raises. Any unexpected failure yields a fail-closed Decision
(CRITICAL / BLOCK, score 0).
"""

import logging
from typing import Callable, Optional

from sfe_backend.core.security import generate_device_fingerprint
from sfe_backend.core.sentry import capture_business_error
from sfe_backend.models.attestation import AttestationEvidence, AttestationResult
from sfe_backend.models.decision import Decision, ThreatResult
from sfe_backend.models.policy import PolicyTable, RiskAssessment
from sfe_backend.models.risk import PolicyAction, RiskLevel
from sfe_backend.models.telemetry import TelemetryEvent
from sfe_backend.modules.attestation.verifier import AttestationVerifier
from sfe_backend.modules.policy.engine import DEVICE_BINDING, RiskPolicyEngine
from sfe_backend.modules.policy.store import PolicyStore, resolve_policy_table
from sfe_backend.modules.telemetry.pipeline import TelemetryPipeline
from sfe_backend.modules.threat.analyzer import ThreatAnalyzer, safe_analyze

logger = logging.getLogger(__name__)


ATTESTATION_FAILURE_PENALTY = 30

# Unknown threat levels carry no penalty
THREAT_PENALTY = {
    "CRITICAL": 50,
    "HIGH": 30,
    "MEDIUM": 15,
    "LOW": 5,
}


def calculate_security_score(
    attestation_result: Optional[AttestationResult],
    threat_result: Optional[ThreatResult],
) -> int:
    """
    Security score in [0, 100].

    Starts at 100, minus 30 when attestation did not succeed, minus the
    threat penalty for the threat level.
    """
    score = 100
    if attestation_result is None or not attestation_result.is_successful:
        score -= ATTESTATION_FAILURE_PENALTY
    if threat_result is not None:
        score -= THREAT_PENALTY.get(threat_result.threat_level, 0)
    return max(0, min(100, score))


def device_fingerprint_for(evidence: AttestationEvidence) -> str:
    device = evidence.device_info
    binding = evidence.binding_info
    return generate_device_fingerprint(
        device.model if device else None,
        device.os_version if device else None,
        binding.network_operator if binding else None,
        binding.binding_token if binding else None,
    )


class TransactionDecisionCoordinator:
    """
    Composes verifier, policy engine, threat analyzer and telemetry.

    Usage:
        coordinator = TransactionDecisionCoordinator(
            verifier=AttestationVerifier(StubIntegrityProvider()),
            engine=RiskPolicyEngine(),
            threat_analyzer=SignalThreatAnalyzer(),
            policy_store=PolicyStore.from_settings(settings),
            telemetry=pipeline,
        )
        decision = coordinator.decide(evidence, tenant_id="bank-a")
    """

    def __init__(
        self,
        verifier: AttestationVerifier,
        engine: RiskPolicyEngine,
        threat_analyzer: ThreatAnalyzer,
        policy_store: PolicyStore,
        telemetry: Optional[TelemetryPipeline] = None,
        resolve_policy: Callable[[Optional[str], PolicyStore], PolicyTable] = resolve_policy_table,
    ):
        self.verifier = verifier
        self.engine = engine
        self.threat_analyzer = threat_analyzer
        self.policy_store = policy_store
        self.telemetry = telemetry
        self.resolve_policy = resolve_policy

    def decide(self, evidence: AttestationEvidence, tenant_id: Optional[str] = None) -> Decision:
        """
        Produce a Decision for one request.

        Args:
            evidence: Attestation evidence from the caller
            tenant_id: Tenant id from the request context, if any

        Returns:
            Decision (never raises)
        """
        try:
            attestation_result = self.verifier.verify(evidence)

            policies = self.resolve_policy(tenant_id, self.policy_store)
            assessment = self.engine.evaluate(evidence, attestation_result, policies)
            action = self.engine.determine_action(assessment.risk_level)

            threat_result = safe_analyze(self.threat_analyzer, evidence, attestation_result)
            score = calculate_security_score(attestation_result, threat_result)

            decision = Decision(
                risk_level=assessment.risk_level,
                action=action,
                security_score=score,
                threat_result=threat_result,
                attestation_result=attestation_result,
                violations=assessment.violations,
            )
        except Exception as e:
            logger.error(f"Decision failed, failing closed: {type(e).__name__}", exc_info=True)
            capture_business_error(e, {"operation": "decide", "tenant_id": tenant_id})
            return Decision.fail_closed()

        self._record_telemetry(evidence, decision, assessment)

        logger.info(
            f"Decision: {decision.risk_level.value} -> {decision.action.value} (score {decision.security_score})",
            extra={
                "risk_level": decision.risk_level.value,
                "action": decision.action.value,
                "security_score": decision.security_score,
                "tenant_id": tenant_id,
            }
        )
        return decision

    def _record_telemetry(self, evidence: AttestationEvidence, decision: Decision, assessment: RiskAssessment):
        """Record decision telemetry. Failures are logged and never affect the Decision."""
        if self.telemetry is None:
            return

        try:
            fingerprint = device_fingerprint_for(evidence)

            self.telemetry.record(TelemetryEvent.attestation_verification(
                fingerprint,
                decision.risk_level,
                decision.attestation_result is not None and decision.attestation_result.is_successful,
            ))

            for check_name, details in assessment.violations.items():
                if check_name == DEVICE_BINDING:
                    self.telemetry.record(TelemetryEvent.device_binding_failure(
                        fingerprint, details.get("issue", "unknown")
                    ))
                    continue
                self.telemetry.record(TelemetryEvent.policy_violation(
                    fingerprint,
                    check_name,
                    details["action"],
                    risk_level=RiskLevel.parse(details.get("riskLevel")) or RiskLevel.HIGH,
                ))

            if decision.action == PolicyAction.BLOCK:
                reason = ",".join(sorted(assessment.violations)) or decision.risk_level.value
                self.telemetry.record(TelemetryEvent.transaction_blocked(
                    fingerprint, decision.risk_level, reason
                ))
        except Exception as e:
            logger.error(f"Failed to record decision telemetry: {type(e).__name__}", exc_info=True)
