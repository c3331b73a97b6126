"""
SFE Backend - Main FastAPI Application

Composition root: builds every component from Settings once, wires the
security service into the app, and owns the telemetry worker lifecycle.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from sfe_backend import __version__
from sfe_backend.api.routes import router as sfe_router
from sfe_backend.core.config import Settings
from sfe_backend.core.logging_config import configure_logging
from sfe_backend.core.sentry import init_sentry
from sfe_backend.models.telemetry import ComplianceReport
from sfe_backend.modules.attestation.providers import StubIntegrityProvider
from sfe_backend.modules.attestation.verifier import AttestationVerifier
from sfe_backend.modules.decision.coordinator import TransactionDecisionCoordinator
from sfe_backend.modules.decision.service import SecurityService
from sfe_backend.modules.policy.engine import RiskPolicyEngine
from sfe_backend.modules.policy.store import PolicyStore
from sfe_backend.modules.telemetry.pipeline import TelemetryPipeline
from sfe_backend.modules.telemetry.sinks import LoggingRegulatorySink, LoggingTelemetryStore
from sfe_backend.modules.threat.analyzer import BaselineThreatAnalyzer, SignalThreatAnalyzer

logger = logging.getLogger(__name__)


def _log_compliance_report(report: ComplianceReport):
    logger.info(
        f"Compliance report {report.period_start.isoformat()} - {report.period_end.isoformat()}: "
        f"{report.total_events} events",
        extra={"report": report.to_dict()}
    )


def build_security_service(settings: Settings) -> SecurityService:
    """
    Build the full decision pipeline from settings.

    Args:
        settings: Validated application settings

    Returns:
        SecurityService with its coordinator, telemetry pipeline and policy store
    """
    verifier = AttestationVerifier(
        StubIntegrityProvider(settings.ATTESTATION.project_id, settings.ATTESTATION.api_key),
        timeout_seconds=settings.ATTESTATION.provider_timeout_seconds,
    )

    threat_config = settings.THREAT_DETECTION
    if threat_config.analyzer == "signals":
        threat_analyzer = SignalThreatAnalyzer(
            threshold=threat_config.threat_score_threshold,
            critical_threshold=threat_config.critical_threat_threshold,
        )
    else:
        threat_analyzer = BaselineThreatAnalyzer()

    regulatory = settings.REGULATORY
    regulatory_sink = None
    if regulatory.api_endpoint and regulatory.enable_real_time_reporting:
        regulatory_sink = LoggingRegulatorySink(regulatory.api_endpoint, regulatory.authority_id)

    telemetry = TelemetryPipeline(
        settings.TELEMETRY,
        LoggingTelemetryStore(),
        regulatory_sink=regulatory_sink,
        report_handler=_log_compliance_report,
    )

    policy_store = PolicyStore.from_settings(settings)

    coordinator = TransactionDecisionCoordinator(
        verifier=verifier,
        engine=RiskPolicyEngine(),
        threat_analyzer=threat_analyzer,
        policy_store=policy_store,
        telemetry=telemetry,
    )

    return SecurityService(
        coordinator=coordinator,
        telemetry=telemetry,
        policy_store=policy_store,
        regulatory=regulatory,
        sdk_version=settings.SDK_VERSION,
    )


def create_app(settings: Optional[Settings] = None, service: Optional[SecurityService] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Settings to use (defaults to the global settings)
        service: Pre-built service (defaults to build_security_service(settings))
    """
    if settings is None:
        from sfe_backend.core.config import settings

    if service is None:
        service = build_security_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan events.

        Startup: logging, Sentry, telemetry workers.
        Shutdown: stop workers with a final telemetry drain.
        """
        configure_logging(settings.LOG_LEVEL)
        logger.info(f"Starting {settings.APP_NAME} ({settings.ENVIRONMENT})")

        init_sentry(settings)
        service.telemetry.start()

        yield

        logger.info("Shutting down...")
        service.telemetry.stop(flush=True)
        service.coordinator.verifier.close()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Device attestation, risk policy and compliance telemetry for financial transactions",
        version=__version__,
        docs_url="/docs" if settings.DEBUG else None,  # Disable docs in production
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.security_service = service

    app.include_router(sfe_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    from sfe_backend.core.config import settings

    uvicorn.run(
        "sfe_backend.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
