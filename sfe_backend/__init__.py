"""
SFE Backend - device attestation, risk policy and compliance telemetry.

Callers (login and payment-initiation endpoints) submit attestation evidence
and receive a risk level, a recommended action and a security score.
"""

__version__ = "0.1.0"
