"""API router package for endpoint composition."""

from .certificates import api_create_certificates_router
from .health import api_create_health_router
from .services import api_create_services_router

__all__ = ["api_create_certificates_router", "api_create_health_router", "api_create_services_router"]
