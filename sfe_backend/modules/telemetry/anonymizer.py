"""
Telemetry anonymization.

CRITICAL SECURITY:
- Device fingerprints are re-hashed with the configured salt
- Timestamps are truncated to the hour
- Payload values under sensitive keys are hashed (strings) or redacted
- Anonymized events are returned unchanged; nothing is ever re-identified
"""

from typing import Any, Dict

from sfe_backend.core.security import hash_device_id, truncate_to_hour
from sfe_backend.models.telemetry import TelemetryEvent

# Payload keys containing any of these (case-insensitive) are masked
SENSITIVE_FIELD_PATTERNS = ("device", "id", "token", "imei", "serial")

REDACTION_MARKER = "***"


def is_sensitive_field(key: str) -> bool:
    lowered = str(key).lower()
    return any(pattern in lowered for pattern in SENSITIVE_FIELD_PATTERNS)


def anonymize_payload(payload: Dict[str, Any], salt: str) -> Dict[str, Any]:
    """
    Mask sensitive payload fields.

    Args:
        payload: Event payload
        salt: Anonymization salt

    Returns:
        New dict; sensitive string values hashed, other sensitive values
        replaced with REDACTION_MARKER, everything else copied as-is
    """
    anonymized = {}
    for key, value in payload.items():
        if not is_sensitive_field(key):
            anonymized[key] = value
        elif isinstance(value, str):
            anonymized[key] = hash_device_id(value, salt)
        else:
            anonymized[key] = REDACTION_MARKER
    return anonymized


def anonymize_event(event: TelemetryEvent, salt: str) -> TelemetryEvent:
    """
    Return an anonymized copy of the event.

    Usage:
        event = anonymize_event(event, config.salt_key)
    """
    if event.anonymized:
        return event

    return event.model_copy(update={
        "device_fingerprint": (
            hash_device_id(event.device_fingerprint, salt)
            if event.device_fingerprint else None
        ),
        "timestamp": truncate_to_hour(event.timestamp),
        "payload": anonymize_payload(event.payload, salt),
        "anonymized": True,
    })
