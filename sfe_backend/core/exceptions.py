"""
Error taxonomy for the decision and telemetry pipeline.

These are raised by collaborators (attestation providers, telemetry stores,
regulatory sinks, policy loaders) and converted into well-formed result
objects at each component boundary. They never reach the caller of
TransactionDecisionCoordinator.decide().

Messages must not contain raw device identifiers, tokens or salts.
"""


class SFEError(Exception):
    """Base class for all pipeline errors."""
    pass


class InputValidationError(SFEError):
    """Missing or malformed token or evidence. Mapped to INVALID_TOKEN / HIGH, never retried."""
    pass


class AttestationProviderError(SFEError):
    """Verification capability unreachable, timed out or errored. Mapped to FAILED / CRITICAL."""
    pass


class TelemetryPersistenceError(SFEError):
    """Flushing a telemetry batch to storage failed. Handled by re-queuing the batch."""
    pass


class PolicyConfigurationError(SFEError):
    """A policy table contains an unrecognized action or risk level. Fails closed."""
    pass


class RegulatorySubmissionError(SFEError):
    """Forwarding events to the regulatory sink failed. Logged, not retried inline."""
    pass
