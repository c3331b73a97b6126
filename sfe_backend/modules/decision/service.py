"""
Security service facade.

Framework-free implementation of the verification, telemetry submission,
policy query and health interfaces. The HTTP adapter in sfe_backend.api is a
thin layer over this class.

CRITICAL SECURITY:
- Responses never contain raw device identifiers, binding tokens or salts
- Internal failures are reported with a generic message only
"""

import logging
import secrets
from datetime import timedelta
from typing import List, Optional

from sfe_backend.core.config import RegulatoryConfig
from sfe_backend.core.sentry import capture_business_error
from sfe_backend.models.attestation import AttestationEvidence
from sfe_backend.models.decision import Decision
from sfe_backend.models.responses import (
    ComplianceStatus,
    HealthResponse,
    PolicyQueryResponse,
    SecurityVerificationResponse,
    TelemetryAck,
)
from sfe_backend.models.risk import RiskLevel
from sfe_backend.models.telemetry import TelemetryEvent, now_ms
from sfe_backend.modules.decision.coordinator import TransactionDecisionCoordinator
from sfe_backend.modules.policy.store import PolicyStore, policies_for, resolve_tenant
from sfe_backend.modules.telemetry.pipeline import TelemetryPipeline

logger = logging.getLogger(__name__)


POLICY_MAX_AGE_MS = int(timedelta(hours=24).total_seconds() * 1000)
POLICY_CHECK_INTERVAL_SECONDS = 3600


def _request_id(prefix: str) -> str:
    return f"{prefix}_{now_ms()}_{secrets.token_hex(4)}"


class SecurityService:
    """
    Entry point for callers (login and payment-initiation flows).

    Usage:
        service = SecurityService(coordinator, telemetry, policy_store, settings.REGULATORY, "1.0.0")
        response = service.verify(evidence, tenant_id="bank-a")
        if response.recommended_action == "BLOCK":
            ...
    """

    def __init__(
        self,
        coordinator: TransactionDecisionCoordinator,
        telemetry: TelemetryPipeline,
        policy_store: PolicyStore,
        regulatory: RegulatoryConfig,
        sdk_version: str = "1.0.0",
    ):
        self.coordinator = coordinator
        self.telemetry = telemetry
        self.policy_store = policy_store
        self.regulatory = regulatory
        self.sdk_version = sdk_version

    def verify(self, evidence: AttestationEvidence, tenant_id: Optional[str] = None) -> SecurityVerificationResponse:
        """
        Verify attestation evidence and build the caller response.

        Args:
            evidence: Attestation evidence from the client
            tenant_id: Tenant from the request context

        Returns:
            SecurityVerificationResponse; success is False only when the
            decision failed closed
        """
        verification_id = _request_id("verify")
        decision = self.coordinator.decide(evidence, tenant_id)

        return SecurityVerificationResponse(
            verification_id=verification_id,
            attestation_result=decision.attestation_result,
            risk_level=decision.risk_level.value,
            recommended_action=decision.action.value,
            threat_analysis=decision.threat_result,
            compliance_status=self._compliance_status(tenant_id, decision),
            security_score=decision.security_score,
            device_trusted=decision.device_trusted,
            success=decision.error_message is None,
            error_message=decision.error_message,
        )

    def _regulatory_for(self, tenant_id: Optional[str]) -> RegulatoryConfig:
        tenant = resolve_tenant(tenant_id, self.policy_store.snapshot())
        if tenant is not None and tenant.regulatory is not None:
            return tenant.regulatory
        return self.regulatory

    def _compliance_status(self, tenant_id: Optional[str], decision: Decision) -> ComplianceStatus:
        regulatory = self._regulatory_for(tenant_id)
        now = now_ms()
        return ComplianceStatus(
            compliant=decision.error_message is None,
            regulatory_authority_id=regulatory.authority_id,
            last_audit=now,
            next_audit=now + int(timedelta(days=regulatory.audit_interval_days).total_seconds() * 1000),
        )

    def submit_telemetry(self, events: List[TelemetryEvent], tenant_id: Optional[str] = None) -> TelemetryAck:
        """
        Record client-submitted telemetry.

        Each event goes through the pipeline (anonymization, batching,
        regulatory escalation). Critical events are those at HIGH or above.
        """
        submission_id = _request_id("telemetry")
        try:
            processed = 0
            critical = 0
            for event in events:
                self.telemetry.record(event)
                processed += 1
                if event.risk_level is not None and event.risk_level >= RiskLevel.HIGH:
                    critical += 1

            logger.info(
                f"Telemetry submission accepted: {processed} events, {critical} critical",
                extra={"submission_id": submission_id, "tenant_id": tenant_id}
            )
            return TelemetryAck(
                submission_id=submission_id,
                events_processed=processed,
                critical_events_reported=critical,
            )
        except Exception as e:
            logger.error(f"Telemetry submission failed: {type(e).__name__}", exc_info=True)
            capture_business_error(e, {"operation": "submit_telemetry", "tenant_id": tenant_id})
            return TelemetryAck(
                submission_id=submission_id,
                status="FAILED",
                success=False,
                error_message="Telemetry processing failed",
            )

    def get_policies(self, tenant_id: Optional[str] = None, last_update: Optional[int] = None) -> PolicyQueryResponse:
        """
        Current policy table for the tenant.

        update_required is True when the client has no policies yet, its copy
        is older than 24 hours, or the store changed since its last update.
        """
        snapshot = self.policy_store.snapshot()
        policies = policies_for(tenant_id, snapshot)

        now = now_ms()
        update_required = (
            last_update is None
            or now - last_update > POLICY_MAX_AGE_MS
            or last_update < snapshot.updated_at
        )

        return PolicyQueryResponse(
            version=snapshot.version,
            policies=policies.to_dict(),
            update_required=update_required,
            next_check_interval_seconds=POLICY_CHECK_INTERVAL_SECONDS,
        )

    def health(self) -> HealthResponse:
        stats = self.telemetry.stats()
        return HealthResponse(
            status="UP",
            version=self.sdk_version,
            components={
                "attestation": "UP",
                "policyEngine": "UP",
                "threatDetection": "UP",
                "telemetry": "UP" if stats.telemetry_enabled else "DISABLED",
            },
        )
