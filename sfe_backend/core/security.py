"""
Security utilities for device identifier hashing and sensitive data protection.

CRITICAL SECURITY REQUIREMENTS:
1. NEVER log raw device identifiers, binding tokens or attestation tokens
2. ALWAYS hash device identifiers before they leave the request context
3. NEVER expose the anonymization salt in logs or responses
4. Hashing is one-way; there is no function that reverses it
"""

import base64
import hashlib
import secrets
import time
from datetime import datetime, timezone
from typing import Optional

DEFAULT_SALT = "sfe-backend-salt-2025"

# Accepted client clock skew for request timestamps
MAX_TIMESTAMP_AGE_MS = 5 * 60 * 1000
MAX_TIMESTAMP_FUTURE_MS = 60 * 1000


def hash_device_id(device_id: Optional[str], salt: Optional[str] = None) -> str:
    """
    Deterministic one-way hash of a device identifier.

    Same (device_id, salt) always yields the same digest. Different salts
    yield different digests for the same identifier.

    Args:
        device_id: Raw identifier (fingerprint, binding token, IMEI, ...)
        salt: Anonymization salt (defaults to DEFAULT_SALT when empty)

    Returns:
        64-char SHA-256 hex digest, or "unknown" for an empty identifier

    Usage:
        digest = hash_device_id(event.device_fingerprint, config.salt_key)
    """
    if not device_id:
        return "unknown"
    salt_to_use = salt if salt else DEFAULT_SALT
    return hashlib.sha256(f"{device_id}{salt_to_use}".encode("utf-8")).hexdigest()


def truncate_to_hour(timestamp_ms: int) -> int:
    """Truncate an epoch-millisecond timestamp to the start of its UTC hour."""
    hour_ms = 60 * 60 * 1000
    return (int(timestamp_ms) // hour_ms) * hour_ms


def sanitize_for_logging(value: Optional[str]) -> str:
    """
    Mask a sensitive string for log output.

    Returns:
        "abcd****wxyz" for values longer than 8 chars, "***" otherwise

    WARNING: Use for identifiers only. Never log tokens, even sanitized.
    """
    if value is None or len(value) <= 8:
        return "***"
    return f"{value[:4]}****{value[-4:]}"


def generate_device_fingerprint(
    device_model: Optional[str],
    os_version: Optional[str],
    network_operator: Optional[str],
    binding_token: Optional[str],
) -> str:
    """
    Derive a device fingerprint from device and binding attributes.

    The fingerprint is itself a salted hash, so the binding token never
    appears in telemetry even before anonymization.
    """
    combined = "|".join([
        device_model or "",
        os_version or "",
        network_operator or "",
        binding_token or "",
    ])
    return hashlib.sha256(f"{combined}{DEFAULT_SALT}".encode("utf-8")).hexdigest()


def generate_nonce() -> str:
    """
    Generate a 32-byte attestation nonce.

    Returns:
        43-char base64url string without padding
    """
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii").rstrip("=")


def is_valid_timestamp(timestamp_ms: int, now_ms: Optional[int] = None) -> bool:
    """Reject client timestamps older than 5 minutes or more than 1 minute ahead."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if timestamp_ms < now_ms - MAX_TIMESTAMP_AGE_MS:
        return False
    if timestamp_ms > now_ms + MAX_TIMESTAMP_FUTURE_MS:
        return False
    return True


def is_jwt_format(token: Optional[str]) -> bool:
    """Cheap shape check: three dot-separated parts."""
    if not token:
        return False
    return len(token.split(".")) == 3


def epoch_ms_to_datetime(timestamp_ms: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)
