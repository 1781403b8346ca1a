"""FastAPI application factory for the stack status surface.

The application is read-only: it serves persisted runtime and certificate
state and never mutates the stack.
"""

from fastapi import FastAPI

from nodestack import __version__
from nodestack.config import OrchestratorSettings
from nodestack.db import CertificateRepositoryPort, DatabaseHealthPort, RuntimeStateRepositoryPort

from .routers import api_create_certificates_router, api_create_health_router, api_create_services_router


def create_api_application(
    settings: OrchestratorSettings,
    db_health_service: DatabaseHealthPort,
    state_repository: RuntimeStateRepositoryPort,
    certificate_repository: CertificateRepositoryPort,
) -> FastAPI:
    """Create the FastAPI application instance for stack status.

    Args:
        settings: Validated orchestrator settings used for runtime metadata.
        db_health_service: Database health service used by health endpoints.
        state_repository: Runtime state repository for service listings.
        certificate_repository: Certificate repository for certificate lookups.

    Returns:
        FastAPI: Framework application instance.

    Raises:
        RuntimeError: Raised if application initialization fails.
    """
    application = FastAPI(title="nodestack", version=__version__)

    @application.get("/", tags=["foundation"])
    def foundation_index() -> dict[str, str]:
        """Return a minimal identity response."""

        return {
            "service": "nodestack",
            "status": "running",
            "environment": settings.environment_name,
        }

    application.include_router(
        api_create_health_router(db_health_service=db_health_service, state_repository=state_repository)
    )
    application.include_router(api_create_services_router(state_repository=state_repository))
    application.include_router(api_create_certificates_router(certificate_repository=certificate_repository))

    return application
