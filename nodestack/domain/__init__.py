"""Domain models used across orchestrator layer boundaries."""

from .errors import (
	CertificateRenewalError,
	ConfigError,
	DefaultCredentialError,
	DependencyCycleError,
	DependencyNotHealthyError,
	ManifestValidationError,
	MissingCredentialsError,
	OrchestratorError,
	PortZoneViolationError,
	ProbeTimeoutError,
	ProcessCrashError,
	UnknownDependencyError,
)
from .models import (
	CertificateRecord,
	Credential,
	DependencyEdge,
	HealthProbeDescriptor,
	HealthStatus,
	PortDeclaration,
	PortZone,
	ProbeKind,
	ResourceLimits,
	RestartPolicy,
	RuntimeState,
	ServiceRuntimeRecord,
	ServiceSpec,
)
from .backoff import BackoffStrategy
from .timeline import domain_build_lifecycle_event, domain_utc_now

__all__ = [
	"BackoffStrategy",
	"CertificateRecord",
	"CertificateRenewalError",
	"ConfigError",
	"Credential",
	"DefaultCredentialError",
	"DependencyCycleError",
	"DependencyEdge",
	"DependencyNotHealthyError",
	"HealthProbeDescriptor",
	"HealthStatus",
	"ManifestValidationError",
	"MissingCredentialsError",
	"OrchestratorError",
	"PortDeclaration",
	"PortZone",
	"PortZoneViolationError",
	"ProbeKind",
	"ProbeTimeoutError",
	"ProcessCrashError",
	"ResourceLimits",
	"RestartPolicy",
	"RuntimeState",
	"ServiceRuntimeRecord",
	"ServiceSpec",
	"UnknownDependencyError",
	"domain_build_lifecycle_event",
	"domain_utc_now",
]
