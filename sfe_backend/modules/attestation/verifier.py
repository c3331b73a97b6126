"""
Attestation token verification.

Flow:
1. Reject missing or malformed tokens (INVALID_TOKEN, hint HIGH)
2. Delegate well-formed tokens to the configured IntegrityProvider under a timeout
3. Provider failure or timeout -> FAILED, hint CRITICAL
4. Otherwise SUCCESS, with the provider's flags (which may be False)

verify() never raises. Every outcome is an AttestationResult.
"""

import base64
import binascii
import hmac
import json
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Optional

from sfe_backend.core.exceptions import AttestationProviderError, InputValidationError
from sfe_backend.core.security import (
    generate_device_fingerprint,
    hash_device_id,
    is_jwt_format,
    is_valid_timestamp,
)
from sfe_backend.core.sentry import capture_business_error
from sfe_backend.models.attestation import (
    AttestationEvidence,
    AttestationResult,
    IntegrityVerdict,
)
from sfe_backend.models.risk import RiskLevel
from sfe_backend.modules.attestation.providers import IntegrityProvider

logger = logging.getLogger(__name__)

BASE64URL_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+={0,2}$")


def _b64url_decode(segment: str) -> bytes:
    stripped = segment.rstrip("=")
    padded = stripped + "=" * (-len(stripped) % 4)
    return base64.b64decode(padded, altchars=b"-_", validate=True)


def is_valid_token_format(token: Optional[str]) -> bool:
    """
    Structural check: exactly three non-empty, dot-separated base64url segments.

    Does not verify signatures; that is the provider's job.
    """
    if not is_jwt_format(token):
        return False

    for part in token.split("."):
        if not BASE64URL_SEGMENT.match(part):
            return False
        try:
            _b64url_decode(part)
        except (binascii.Error, ValueError):
            return False

    return True


def require_token(token: Optional[str]) -> str:
    """
    Return the token if it is present and well-formed.

    Raises:
        InputValidationError: Token missing, blank or malformed
    """
    if not token or not token.strip():
        raise InputValidationError("Attestation token is required")
    if not is_valid_token_format(token):
        raise InputValidationError("Attestation token is malformed")
    return token


def extract_nonce_from_token(token: Optional[str]) -> Optional[str]:
    """
    Read the `nonce` claim from the token's payload segment.

    Returns:
        Nonce string, or None if the token or payload cannot be decoded
    """
    if not is_valid_token_format(token):
        return None

    try:
        payload = json.loads(_b64url_decode(token.split(".")[1]).decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        logger.debug(f"Could not decode attestation payload: {type(e).__name__}")
        return None

    if not isinstance(payload, dict):
        return None
    nonce = payload.get("nonce")
    return nonce if isinstance(nonce, str) else None


def validate_nonce(provided_nonce: Optional[str], expected_nonce: Optional[str]) -> bool:
    """Constant-time nonce comparison. Missing values never match."""
    if provided_nonce is None or expected_nonce is None:
        return False
    return hmac.compare_digest(provided_nonce.encode("utf-8"), expected_nonce.encode("utf-8"))


def _device_log_id(evidence: AttestationEvidence) -> str:
    device = evidence.device_info
    binding = evidence.binding_info
    return hash_device_id(generate_device_fingerprint(
        device.model if device else None,
        device.os_version if device else None,
        binding.network_operator if binding else None,
        binding.binding_token if binding else None,
    ))


class AttestationVerifier:
    """
    Validates attestation tokens and produces integrity verdicts.

    Usage:
        verifier = AttestationVerifier(StubIntegrityProvider(), timeout_seconds=5.0)
        result = verifier.verify(evidence)
        if not result.meets_integrity_requirements:
            ...
    """

    def __init__(
        self,
        provider: IntegrityProvider,
        timeout_seconds: float = 5.0,
        max_workers: int = 4,
    ):
        self.provider = provider
        self.timeout_seconds = timeout_seconds
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    def verify(self, evidence: AttestationEvidence) -> AttestationResult:
        """
        Verify the attestation evidence.

        Args:
            evidence: Evidence submitted by the caller

        Returns:
            AttestationResult (never raises)
        """
        try:
            device_log_id = _device_log_id(evidence)
            logger.info(
                f"Starting attestation verification for device: {device_log_id}",
                extra={"device_hash": device_log_id}
            )

            try:
                token = require_token(evidence.attestation_token)
            except InputValidationError as e:
                logger.warning(f"Attestation token rejected: {e}", extra={"device_hash": device_log_id})
                return AttestationResult.invalid_token(str(e))

            try:
                verdict = self._fetch_verdict(token)
            except AttestationProviderError as e:
                logger.error(f"Attestation provider error: {e}", extra={"device_hash": device_log_id})
                capture_business_error(e, {"operation": "attestation_verify"}, level="warning")
                return AttestationResult.failed(f"Attestation verification failed: {e}")

            hint = self._hint_risk_level(verdict, evidence)
            logger.info(
                f"Attestation verification completed with risk hint: {hint.value}",
                extra={"device_hash": device_log_id, "risk_level_hint": hint.value}
            )
            return AttestationResult.success(verdict, hint)

        except Exception as e:
            logger.error(f"Unexpected error during attestation verification: {type(e).__name__}", exc_info=True)
            capture_business_error(e, {"operation": "attestation_verify"})
            return AttestationResult.failed("Attestation verification failed")

    def _fetch_verdict(self, token: str) -> IntegrityVerdict:
        """
        Call the provider on a worker thread, bounded by timeout_seconds.

        Raises:
            AttestationProviderError: Timeout, provider error or unusable answer
        """
        future = self._get_executor().submit(self.provider.fetch_verdict, token)
        try:
            verdict = future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise AttestationProviderError(
                f"provider timed out after {self.timeout_seconds}s"
            )
        except AttestationProviderError:
            raise
        except Exception as e:
            raise AttestationProviderError(f"provider error ({type(e).__name__})") from e

        if not isinstance(verdict, IntegrityVerdict):
            raise AttestationProviderError("provider returned no verdict")
        return verdict

    @staticmethod
    def _hint_risk_level(verdict: IntegrityVerdict, evidence: AttestationEvidence) -> RiskLevel:
        """Coarse risk hint from the verdict and device facts (policy engine decides the real level)."""
        if evidence.is_high_risk_device:
            return RiskLevel.HIGH

        if not verdict.meets_device_integrity or not verdict.meets_basic_integrity:
            return RiskLevel.HIGH

        if evidence.binding_info is not None and not evidence.binding_info.sim_present:
            return RiskLevel.MEDIUM

        if verdict.app_integrity_verdict == "UNEVALUATED":
            return RiskLevel.MEDIUM

        if evidence.timestamp is not None and not is_valid_timestamp(evidence.timestamp):
            logger.warning("Attestation evidence timestamp outside accepted window")
            return RiskLevel.MEDIUM

        return RiskLevel.LOW

    def _get_executor(self) -> ThreadPoolExecutor:
        """Provider worker pool, created on first use and again after close()."""
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="sfe-attestation",
                )
            return self._executor

    def close(self):
        """Release the provider worker threads. The next verify() starts a new pool."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)
