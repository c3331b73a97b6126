"""
Security policy models.

A PolicyTable holds one SecurityPolicy per check type. Tables are immutable
snapshots: a policy reload builds a new table and swaps it in, it never edits
one in place.

Misconfiguration fails closed:
- unrecognized action strings become BLOCK (never ALLOW)
- unrecognized risk level strings become CRITICAL
"""

import logging
from typing import Any, Dict, Optional

from pydantic import Field, field_validator

from sfe_backend.core.exceptions import PolicyConfigurationError
from sfe_backend.models.base import CamelModel
from sfe_backend.models.risk import PolicyAction, RiskLevel

logger = logging.getLogger(__name__)


# Action names used by older policy files
LEGACY_ACTION_ALIASES = {
    "REJECT": PolicyAction.BLOCK,
    "WARN": PolicyAction.MONITOR,
}


def parse_policy_action(value: Any) -> PolicyAction:
    """
    Parse a configured action, failing closed to BLOCK.

    Args:
        value: PolicyAction or action name ("ALLOW", "MONITOR", "REJECT", ...)

    Returns:
        Parsed PolicyAction; BLOCK when the value is not recognized
    """
    action = PolicyAction.parse(value)
    if action is not None:
        return action

    if isinstance(value, str) and value.strip().upper() in LEGACY_ACTION_ALIASES:
        return LEGACY_ACTION_ALIASES[value.strip().upper()]

    error = PolicyConfigurationError(f"Unrecognized policy action: {value!r}")
    logger.error(
        f"{error} - failing closed to BLOCK",
        extra={"configured_action": str(value)}
    )
    return PolicyAction.BLOCK


def parse_policy_risk_level(value: Any) -> RiskLevel:
    """Parse a configured risk level, failing closed to CRITICAL."""
    level = RiskLevel.parse(value)
    if level is not None:
        return level

    error = PolicyConfigurationError(f"Unrecognized policy risk level: {value!r}")
    logger.error(
        f"{error} - failing closed to CRITICAL",
        extra={"configured_risk_level": str(value)}
    )
    return RiskLevel.CRITICAL


class SecurityPolicy(CamelModel):
    """
    Configured response to one check type.

    Example:
        SecurityPolicy(check_name="root_detection", action="BLOCK", risk_level="HIGH")
    """
    check_name: str = ""
    action: PolicyAction = PolicyAction.BLOCK
    risk_level: RiskLevel = RiskLevel.HIGH
    enabled: bool = True
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("action", mode="before")
    @classmethod
    def _parse_action(cls, v):
        return parse_policy_action(v)

    @field_validator("risk_level", mode="before")
    @classmethod
    def _parse_risk_level(cls, v):
        return parse_policy_risk_level(v)


def _policy(check_name: str, action: PolicyAction, risk_level: RiskLevel):
    return lambda: SecurityPolicy(check_name=check_name, action=action, risk_level=risk_level)


class PolicyTable(CamelModel):
    """
    Full policy table for one tenant (or the process-wide default).

    Only root_detection, debugger_detection and app_tampering drive risk
    assessment today; the remaining policies are distributed to clients via
    the policy query interface.
    """
    root_detection: SecurityPolicy = Field(
        default_factory=_policy("root_detection", PolicyAction.BLOCK, RiskLevel.HIGH))
    debugger_detection: SecurityPolicy = Field(
        default_factory=_policy("debugger_detection", PolicyAction.MONITOR, RiskLevel.MEDIUM))
    app_tampering: SecurityPolicy = Field(
        default_factory=_policy("app_tampering", PolicyAction.BLOCK, RiskLevel.CRITICAL))

    malware_detection: SecurityPolicy = Field(
        default_factory=_policy("malware_detection", PolicyAction.BLOCK, RiskLevel.CRITICAL))
    fraud_detection: SecurityPolicy = Field(
        default_factory=_policy("fraud_detection", PolicyAction.REQUIRE_ADDITIONAL_AUTH, RiskLevel.HIGH))
    unusual_behavior: SecurityPolicy = Field(
        default_factory=_policy("unusual_behavior", PolicyAction.MONITOR, RiskLevel.MEDIUM))
    device_binding: SecurityPolicy = Field(
        default_factory=_policy("device_binding", PolicyAction.REQUIRE_ADDITIONAL_AUTH, RiskLevel.HIGH))
    network_security: SecurityPolicy = Field(
        default_factory=_policy("network_security", PolicyAction.BLOCK, RiskLevel.HIGH))
    geolocation_anomaly: SecurityPolicy = Field(
        default_factory=_policy("geolocation_anomaly", PolicyAction.MONITOR, RiskLevel.MEDIUM))

    custom_policies: Dict[str, SecurityPolicy] = Field(default_factory=dict)

    def get(self, check_name: str) -> Optional[SecurityPolicy]:
        """Look up a policy by snake_case check name (built-in or custom)."""
        if check_name in type(self).model_fields and check_name != "custom_policies":
            return getattr(self, check_name)
        return self.custom_policies.get(check_name)


class PolicyEvaluation(CamelModel):
    """Result of evaluating a single named policy against evidence."""
    policy_type: str
    violated: bool
    action: PolicyAction
    risk_level: RiskLevel
    message: str


class RiskAssessment(CamelModel):
    """
    Aggregated risk for one request.

    risk_level is the maximum over all triggered checks (LOW when none
    triggered). violations maps check name to the details that triggered it.
    """
    risk_level: RiskLevel = RiskLevel.LOW
    violations: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    @property
    def has_violations(self) -> bool:
        return bool(self.violations)
