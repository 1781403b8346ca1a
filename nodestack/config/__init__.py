"""Configuration package for orchestrator settings and credentials."""

from .credentials import CredentialStore, CredentialValidationResult
from .settings import OrchestratorSettings, SettingsLoadError, config_load_settings

__all__ = [
	"CredentialStore",
	"CredentialValidationResult",
	"OrchestratorSettings",
	"SettingsLoadError",
	"config_load_settings",
]
