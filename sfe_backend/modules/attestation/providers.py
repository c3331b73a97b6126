"""
Integrity verification providers.

A provider turns a structurally valid attestation token into integrity
verdict flags. The verifier never assumes which provider it has; providers
are selected at composition time.

Providers raise AttestationProviderError (or anything else) when they cannot
produce a verdict. The verifier maps that to FAILED / CRITICAL.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from sfe_backend.models.attestation import IntegrityVerdict

logger = logging.getLogger(__name__)


class IntegrityProvider(ABC):
    """Capability boundary for real attestation backends."""

    @abstractmethod
    def fetch_verdict(self, token: str) -> IntegrityVerdict:
        """
        Evaluate a token and return integrity flags.

        Args:
            token: Structurally valid attestation token

        Returns:
            IntegrityVerdict (flags may be False; that is not an error)

        Raises:
            AttestationProviderError: Backend unreachable or errored
        """
        raise NotImplementedError


class StubIntegrityProvider(IntegrityProvider):
    """
    Stand-in for a Play Integrity style backend.

    Every structurally valid token is reported as meeting device and basic
    integrity. No cryptographic verification is performed.
    """

    def __init__(self, project_id: Optional[str] = None, api_key: Optional[str] = None):
        self.project_id = project_id
        self.api_key = api_key

        if not project_id or not api_key:
            logger.warning("Attestation provider credentials not configured - using stub verdicts")

        logger.debug(f"Stub integrity provider initialized for project: {project_id}")

    def fetch_verdict(self, token: str) -> IntegrityVerdict:
        return IntegrityVerdict(
            meets_device_integrity=True,
            meets_basic_integrity=True,
            app_integrity_verdict="MEETS_DEVICE_INTEGRITY",
            device_recognition_verdict="MEETS_DEVICE_INTEGRITY",
            environment_details="Play Protect verified",
        )
