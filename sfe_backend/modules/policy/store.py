"""
Policy snapshot store and tenant policy resolution.

Readers take a reference to the current PolicySnapshot and work from it for
the rest of the request. A reload builds a complete new snapshot and swaps
the reference under a lock, so readers see either the old snapshot or the
new one, never a mix.
"""

import logging
import threading
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from sfe_backend.core.config import MultiTenantConfig, TenantConfig
from sfe_backend.models.policy import PolicyTable
from sfe_backend.models.telemetry import now_ms

logger = logging.getLogger(__name__)


class PolicySnapshot(BaseModel):
    """Immutable view of every policy table in effect."""

    model_config = ConfigDict(frozen=True)

    version: str
    default_policies: PolicyTable = Field(default_factory=PolicyTable)
    tenants: Dict[str, TenantConfig] = Field(default_factory=dict)
    multi_tenant_enabled: bool = False
    updated_at: int = Field(default_factory=now_ms)


class PolicyStore:
    """
    Holds the current PolicySnapshot.

    Usage:
        store = PolicyStore.from_settings(settings)
        table = resolve_policy_table(tenant_id, store)
        store.replace(version="1.1.0", default_policies=new_table)
    """

    def __init__(self, snapshot: PolicySnapshot):
        self._snapshot = snapshot
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "PolicyStore":
        return cls(_build_snapshot(
            version=settings.POLICY_VERSION,
            default_policies=settings.POLICIES,
            multi_tenant=settings.MULTI_TENANT,
        ))

    def snapshot(self) -> PolicySnapshot:
        """Current snapshot. Lock-free: a single reference read."""
        return self._snapshot

    def replace(
        self,
        version: str,
        default_policies: Optional[PolicyTable] = None,
        multi_tenant: Optional[MultiTenantConfig] = None,
    ) -> PolicySnapshot:
        """
        Atomically install a new snapshot.

        Sections left as None are carried over from the current snapshot.

        Returns:
            The snapshot now in effect
        """
        with self._lock:
            current = self._snapshot
            snapshot = PolicySnapshot(
                version=version,
                default_policies=default_policies if default_policies is not None else current.default_policies,
                tenants=multi_tenant.tenants if multi_tenant is not None else current.tenants,
                multi_tenant_enabled=(
                    multi_tenant.enabled if multi_tenant is not None else current.multi_tenant_enabled
                ),
            )
            self._snapshot = snapshot

        logger.info(
            f"Policy snapshot replaced: {current.version} -> {version}",
            extra={"policy_version": version, "tenant_count": len(snapshot.tenants)}
        )
        return snapshot


def _build_snapshot(version: str, default_policies: PolicyTable, multi_tenant: MultiTenantConfig) -> PolicySnapshot:
    return PolicySnapshot(
        version=version,
        default_policies=default_policies,
        tenants=dict(multi_tenant.tenants),
        multi_tenant_enabled=multi_tenant.enabled,
    )


def resolve_tenant(tenant_id: Optional[str], snapshot: PolicySnapshot) -> Optional[TenantConfig]:
    """Active tenant config for tenant_id, or None when multi-tenant is off or the tenant is unknown."""
    if not snapshot.multi_tenant_enabled or not tenant_id:
        return None

    tenant = snapshot.tenants.get(tenant_id)
    if tenant is None:
        logger.debug(f"Unknown tenant '{tenant_id}' - using default policies")
        return None
    if not tenant.active:
        logger.warning(f"Tenant '{tenant_id}' is inactive - using default policies")
        return None
    return tenant


def resolve_policy_table(tenant_id: Optional[str], store: PolicyStore) -> PolicyTable:
    """
    Resolve the policy table for a caller.

    The tenant's table is used only when multi-tenant mode is on, the tenant
    is configured and active, and it carries a policy override. Everything
    else gets the default table. Never raises for unknown tenants.

    Args:
        tenant_id: Tenant id from the request context (may be None)
        store: PolicyStore to read from

    Returns:
        Immutable PolicyTable
    """
    return policies_for(tenant_id, store.snapshot())


def policies_for(tenant_id: Optional[str], snapshot: PolicySnapshot) -> PolicyTable:
    """Policy table for tenant_id within one snapshot."""
    tenant = resolve_tenant(tenant_id, snapshot)
    if tenant is not None and tenant.policies is not None:
        return tenant.policies
    return snapshot.default_policies
