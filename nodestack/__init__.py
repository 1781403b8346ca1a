"""Supervisory orchestrator for interdependent blockchain network services."""

__version__ = "0.1.0"
