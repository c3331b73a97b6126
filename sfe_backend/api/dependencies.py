"""
FastAPI dependencies for the SFE routes.

The composition root stores the service and settings on app.state; routes
receive them through these dependencies so tests can build an app with
their own wiring.
"""

import logging
from typing import Optional

from fastapi import Request

from sfe_backend.core.config import Settings
from sfe_backend.modules.decision.service import SecurityService
from sfe_backend.modules.policy.store import resolve_tenant

logger = logging.getLogger(__name__)


def get_security_service(request: Request) -> SecurityService:
    return request.app.state.security_service


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_tenant_id(request: Request) -> Optional[str]:
    """
    Tenant id from the configured tenant header.

    Unknown tenants are not rejected: they are logged and resolved to the
    default policies downstream.

    Usage:
        @router.post("/verify")
        def verify(tenant_id: Optional[str] = Depends(get_tenant_id)):
            ...
    """
    settings = get_settings(request)
    if not settings.MULTI_TENANT.enabled:
        return None

    tenant_id = request.headers.get(settings.MULTI_TENANT.tenant_header_name)
    if not tenant_id:
        return None

    service = get_security_service(request)
    if resolve_tenant(tenant_id, service.policy_store.snapshot()) is None:
        logger.warning(
            f"Tenant not found or inactive: {tenant_id} - using default configuration",
            extra={"tenant_id": tenant_id}
        )
    return tenant_id
