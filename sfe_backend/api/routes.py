"""
SFE API routes.

Endpoints:
- POST /api/v1/sfe/verify     attestation verification (403 on BLOCK, 422 on CRITICAL)
- POST /api/v1/sfe/telemetry  client telemetry submission
- GET  /api/v1/sfe/policies   current policy table for the tenant
- GET  /api/v1/sfe/health     component health

Handlers are sync: verification may wait on the attestation provider, so
FastAPI runs them in its threadpool.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from sfe_backend.api.dependencies import get_security_service, get_tenant_id
from sfe_backend.models.attestation import AttestationEvidence
from sfe_backend.models.risk import PolicyAction, RiskLevel
from sfe_backend.models.telemetry import TelemetryEvent
from sfe_backend.modules.decision.service import SecurityService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sfe", tags=["sfe"])


def _status_for(recommended_action: str, risk_level: str) -> int:
    if recommended_action == PolicyAction.BLOCK.value:
        return status.HTTP_403_FORBIDDEN
    if risk_level == RiskLevel.CRITICAL.value:
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    return status.HTTP_200_OK


@router.post("/verify")
def verify_attestation(
    evidence: AttestationEvidence,
    tenant_id: Optional[str] = Depends(get_tenant_id),
    service: SecurityService = Depends(get_security_service),
):
    """
    Verify device attestation evidence.

    Returns:
        SecurityVerificationResponse (camelCase)

    Status codes:
    - 200: ALLOW / MONITOR / REQUIRE_ADDITIONAL_AUTH
    - 403: BLOCK
    - 422: CRITICAL risk without a BLOCK action

    Usage:
        curl -X POST http://localhost:8000/api/v1/sfe/verify \\
          -H "Content-Type: application/json" \\
          -H "X-Tenant-ID: bank-a" \\
          -d '{"attestationToken": "...", "deviceInfo": {...}, "bindingInfo": {...}}'
    """
    response = service.verify(evidence, tenant_id)
    return JSONResponse(
        status_code=_status_for(response.recommended_action, response.risk_level),
        content=response.to_dict(),
    )


@router.post("/telemetry")
def submit_telemetry(
    events: List[TelemetryEvent],
    tenant_id: Optional[str] = Depends(get_tenant_id),
    service: SecurityService = Depends(get_security_service),
):
    """Accept a batch of client telemetry events."""
    ack = service.submit_telemetry(events, tenant_id)
    return JSONResponse(
        status_code=status.HTTP_200_OK if ack.success else status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ack.to_dict(),
    )


@router.get("/policies")
def get_policies(
    last_update: Optional[int] = Query(None, alias="lastUpdate", description="Client's last policy update (epoch ms)"),
    tenant_id: Optional[str] = Depends(get_tenant_id),
    service: SecurityService = Depends(get_security_service),
):
    """Current policy table and whether the client should refresh."""
    return JSONResponse(content=service.get_policies(tenant_id, last_update).to_dict())


@router.get("/health")
def health(service: SecurityService = Depends(get_security_service)):
    return JSONResponse(content=service.health().to_dict())
