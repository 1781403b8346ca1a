"""API layer package for the read-only status application."""

from .application import create_api_application

__all__ = ["create_api_application"]
