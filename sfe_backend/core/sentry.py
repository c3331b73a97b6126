"""
Sentry initialization and error monitoring configuration.

Captures:
- Python exceptions
- FastAPI errors
- Business errors from the decision and telemetry pipeline

Privacy:
- Device identifiers, binding tokens, attestation tokens and salts are
  redacted before any event leaves the process
"""

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from sfe_backend import __version__

logger = logging.getLogger(__name__)


# Any key containing one of these substrings is redacted
SENSITIVE_KEYS = [
    "token",
    "salt",
    "secret",
    "password",
    "api_key",
    "apikey",
    "imei",
    "serial",
    "fingerprint",
    "binding",
    "device_id",
    "deviceid",
]

REDACTED = "[REDACTED]"


def init_sentry(settings=None):
    """
    Initialize Sentry error monitoring.

    Only initializes if SENTRY_DSN is configured.

    Args:
        settings: Settings instance (defaults to the global settings)
    """
    if settings is None:
        from sfe_backend.core.config import settings

    if not settings.SENTRY_DSN:
        logger.info("Sentry DSN not configured - error monitoring disabled")
        return

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        release=f"sfe-backend@{__version__}",

        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            LoggingIntegration(
                level=logging.INFO,  # Breadcrumbs from info and above
                event_level=logging.ERROR,  # Send errors to Sentry
            ),
        ],

        traces_sample_rate=0.1 if settings.is_production else 1.0,
        sample_rate=1.0,

        # Privacy Settings
        send_default_pii=False,
        max_breadcrumbs=50,

        before_send=filter_sensitive_data,
    )

    logger.info(f"Sentry initialized - environment: {settings.ENVIRONMENT}")


def _is_sensitive_key(key) -> bool:
    lowered = str(key).lower()
    return any(sensitive in lowered for sensitive in SENSITIVE_KEYS)


def _redact(obj):
    if isinstance(obj, dict):
        for key in list(obj.keys()):
            if _is_sensitive_key(key):
                obj[key] = REDACTED
            else:
                _redact(obj[key])
    elif isinstance(obj, list):
        for item in obj:
            _redact(item)


def filter_sensitive_data(event, hint):
    """
    Filter sensitive data before sending to Sentry.

    Removes:
    - Attestation and binding tokens
    - Device identifiers and fingerprints
    - Anonymization salts and API keys

    Args:
        event: Sentry event dict
        hint: Additional context

    Returns:
        Redacted event
    """
    for section in ("extra", "contexts", "request", "tags"):
        if event.get(section):
            _redact(event[section])

    breadcrumbs = event.get("breadcrumbs")
    if isinstance(breadcrumbs, dict):
        for crumb in breadcrumbs.get("values", []):
            if isinstance(crumb, dict) and crumb.get("data"):
                _redact(crumb["data"])

    return event


def capture_business_error(
    error: Exception,
    context: Optional[dict] = None,
    level: str = "error"
):
    """
    Capture a business logic error with enriched context.

    Use this for expected errors that need tracking:
    - Attestation provider failures and timeouts
    - Telemetry persistence failures
    - Regulatory submission failures
    - Fail-closed decisions

    Args:
        error: The exception that occurred
        context: Dict with business context (operation, hashed device id, ...)
        level: Sentry level (info, warning, error, fatal)

    Example:
        capture_business_error(
            error=e,
            context={"operation": "telemetry_flush", "batch_size": len(batch)},
            level="warning"
        )
    """
    safe_context = {
        k: v for k, v in (context or {}).items()
        if not _is_sensitive_key(k)
    }

    sentry_sdk.capture_exception(
        error,
        level=level,
        extras=safe_context,
    )

    logger.error(
        f"Business error captured: {type(error).__name__}",
        extra=safe_context,
    )
