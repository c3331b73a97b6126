"""
Ordered severity enums shared by every component.

RiskLevel:    LOW < MEDIUM < HIGH < CRITICAL
PolicyAction: ALLOW < MONITOR < REQUIRE_ADDITIONAL_AUTH < BLOCK

Both orderings are total and fixed. Members are str-valued so they serialize
as their names in JSON responses and telemetry payloads.
"""

from enum import Enum
from typing import Any, Optional


class _OrderedEnum(str, Enum):
    """str Enum whose comparisons follow declaration order, not string order."""

    @property
    def severity(self) -> int:
        return list(type(self)).index(self)

    def __lt__(self, other):
        if isinstance(other, type(self)):
            return self.severity < other.severity
        return NotImplemented

    def __le__(self, other):
        if isinstance(other, type(self)):
            return self.severity <= other.severity
        return NotImplemented

    def __gt__(self, other):
        if isinstance(other, type(self)):
            return self.severity > other.severity
        return NotImplemented

    def __ge__(self, other):
        if isinstance(other, type(self)):
            return self.severity >= other.severity
        return NotImplemented

    @classmethod
    def parse(cls, value: Any) -> Optional["_OrderedEnum"]:
        """
        Parse a member from a member or a case-insensitive name.

        Returns None for anything unrecognized; callers decide how to fail closed.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


class RiskLevel(_OrderedEnum):
    """Severity classification for a request."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class PolicyAction(_OrderedEnum):
    """Response directive derived from a risk level."""
    ALLOW = "ALLOW"
    MONITOR = "MONITOR"
    REQUIRE_ADDITIONAL_AUTH = "REQUIRE_ADDITIONAL_AUTH"
    BLOCK = "BLOCK"


def compare_risk_levels(first: RiskLevel, second: RiskLevel) -> int:
    """
    Three-way comparison of two risk levels.

    Returns:
        negative if first < second, 0 if equal, positive if first > second

    Example:
        >>> compare_risk_levels(RiskLevel.LOW, RiskLevel.MEDIUM)
        -1
    """
    return first.severity - second.severity
