"""Stack bootstrap wiring for startup validation and dependency assembly."""

from __future__ import annotations

import json
import signal
from dataclasses import asdict, dataclass, replace
from pathlib import Path

from sqlalchemy import Engine

from nodestack.config import CredentialStore, OrchestratorSettings
from nodestack.db import (
    SQLAlchemyCertificateRecordService,
    SQLAlchemyDatabaseHealthService,
    SQLAlchemyRuntimeStateService,
    db_create_engine,
)
from nodestack.domain import BackoffStrategy, ServiceSpec
from nodestack.manifest import ServiceManifestBuilder, manifest_load_file
from nodestack.network import NetworkPolicyPlan, network_build_policy
from nodestack.probes import HealthProbeEngine
from nodestack.sequencer import StartupPlan, sequencer_plan
from nodestack.supervisor import AsyncioProcessLauncher, ServiceSupervisor, SupervisorConfig
from nodestack.tls import CertificatePublisher, CommandCertificateAuthority, TlsCertificateManager

NETWORK_POLICY_FILE_NAME = "network-policy.json"


@dataclass(frozen=True)
class StackDefinition:
    """Validated, fully resolved stack ready for supervision.

    Attributes:
        settings: Orchestrator settings.
        credentials: Loaded credential store.
        services: Resolved service specs in manifest order.
        plan: Startup stages.
        network_plan: Network publication plan.
    """

    settings: OrchestratorSettings
    credentials: CredentialStore
    services: tuple[ServiceSpec, ...]
    plan: StartupPlan
    network_plan: NetworkPolicyPlan

    def definition_services_by_name(self) -> dict[str, ServiceSpec]:
        """Return resolved services keyed by name."""

        return {service.name: service for service in self.services}


@dataclass(frozen=True)
class StateServices:
    """Durable state services sharing one engine."""

    engine: Engine
    state_repository: SQLAlchemyRuntimeStateService
    certificate_repository: SQLAlchemyCertificateRecordService
    db_health_service: SQLAlchemyDatabaseHealthService


def bootstrap_load_stack(settings: OrchestratorSettings) -> StackDefinition:
    """Load, validate and resolve the service stack.

    Validation order: manifest structure, required credentials, dependency
    graph, then network segmentation. Nothing is started here.

    Args:
        settings: Orchestrator settings.

    Returns:
        StackDefinition: Resolved stack.

    Raises:
        ManifestValidationError: Raised when the manifest is invalid.
        MissingCredentialsError: Raised when required credentials are absent.
        DefaultCredentialError: Raised when placeholder credentials are enforced against.
        UnknownDependencyError: Raised when a dependency name is not declared.
        DependencyCycleError: Raised when the dependency graph is cyclic.
        PortZoneViolationError: Raised when port declarations break segmentation rules.
    """

    builder = _bootstrap_manifest_builder(settings)
    manifest = builder.manifest_parse(manifest_load_file(settings.stack_manifest_path))

    credentials = CredentialStore.credential_load_file(
        settings.stack_credentials_file,
        placeholder_values=settings.credential_placeholder_values,
        enforce_non_default=settings.credential_enforce_non_default,
    )
    credentials.credential_require(manifest.manifest_required_credentials().keys())

    plan = sequencer_plan(manifest.services)
    services = builder.manifest_resolve(manifest, credentials.credential_values())
    network_plan = network_build_policy(
        services,
        overlay_cidr=settings.overlay_network_cidr,
        public_bind_address=settings.public_bind_address,
        privileged_port_names=settings.privileged_port_names,
    )
    services = bootstrap_attach_proxy_environment(services, network_plan, settings)
    return StackDefinition(
        settings=settings,
        credentials=credentials,
        services=services,
        plan=plan,
        network_plan=network_plan,
    )


def bootstrap_attach_proxy_environment(
    services: tuple[ServiceSpec, ...],
    network_plan: NetworkPolicyPlan,
    settings: OrchestratorSettings,
) -> tuple[ServiceSpec, ...]:
    """Inject route table and certificate location into the reverse proxy environment.

    Args:
        services: Resolved services.
        network_plan: Network publication plan.
        settings: Orchestrator settings.

    Returns:
        tuple[ServiceSpec, ...]: Services with the proxy environment extended.

    Raises:
        RuntimeError: This helper does not raise runtime errors.
    """

    if network_plan.proxy_service is None:
        return services
    proxy_environment = {
        "NODESTACK_PROXY_ROUTES": json.dumps([asdict(route) for route in network_plan.routes], sort_keys=True),
        "NODESTACK_PUBLIC_ADDRESS": network_plan.public_bind_address,
        "NODESTACK_CERT_DIR": str(Path(settings.tls_certificate_directory).resolve()),
    }
    return tuple(
        replace(service, environment={**service.environment, **proxy_environment})
        if service.name == network_plan.proxy_service
        else service
        for service in services
    )


def bootstrap_create_state_services(settings: OrchestratorSettings) -> StateServices:
    """Create repositories over the state database.

    Raises:
        ValueError: Raised when the database URL is blank.
    """

    engine = db_create_engine(database_url=settings.stack_state_database_url)
    return StateServices(
        engine=engine,
        state_repository=SQLAlchemyRuntimeStateService(engine=engine),
        certificate_repository=SQLAlchemyCertificateRecordService(engine=engine),
        db_health_service=SQLAlchemyDatabaseHealthService(engine=engine),
    )


def bootstrap_create_supervisor(
    settings: OrchestratorSettings,
    state_repository: SQLAlchemyRuntimeStateService,
    probe_engine: HealthProbeEngine,
) -> ServiceSupervisor:
    """Create the service supervisor with an asyncio process launcher."""

    launcher = AsyncioProcessLauncher(
        log_directory=settings.stack_log_directory,
        log_max_bytes=settings.log_max_bytes,
        log_backup_count=settings.log_backup_count,
    )
    return ServiceSupervisor(
        config=SupervisorConfig(
            stop_grace_seconds=settings.stop_grace_seconds,
            restart_backoff_floor_seconds=settings.restart_backoff_floor_seconds,
            restart_backoff_max_seconds=settings.restart_backoff_max_seconds,
            crash_rate_threshold=settings.crash_rate_threshold,
            crash_rate_window_seconds=settings.crash_rate_window_seconds,
            health_monitor_interval_seconds=settings.health_monitor_interval_seconds,
            network_audit_interval_seconds=settings.network_audit_interval_seconds,
            network_violation_action=settings.network_violation_action,
        ),
        launcher=launcher,
        state_repository=state_repository,
        probe_engine=probe_engine,
    )


def bootstrap_create_certificate_manager(
    settings: OrchestratorSettings,
    certificate_repository: SQLAlchemyCertificateRecordService,
    supervisor: ServiceSupervisor,
    proxy_service: str | None,
) -> TlsCertificateManager:
    """Create the certificate manager wired to reload or stop the reverse proxy.

    Args:
        settings: Orchestrator settings.
        certificate_repository: Certificate record repository.
        supervisor: Supervisor owning the reverse proxy process.
        proxy_service: Reverse proxy service name, if any.

    Returns:
        TlsCertificateManager: Configured manager.

    Raises:
        ValueError: Raised when TLS settings are invalid.
    """

    certificate_directory = Path(settings.tls_certificate_directory).resolve()
    reload_signal = getattr(signal, settings.tls_reload_signal)

    async def _on_certificate_updated(domain: str) -> None:
        if proxy_service is not None:
            supervisor.supervisor_signal(proxy_service, reload_signal)

    async def _on_domain_failed(domain: str) -> None:
        if proxy_service is not None:
            supervisor.supervisor_mark_failed(proxy_service, f"certificate for {domain} could not be renewed")
            await supervisor.supervisor_stop(proxy_service)

    return TlsCertificateManager(
        repository=certificate_repository,
        authority=CommandCertificateAuthority(
            command_template=settings.tls_issuer_command,
            certificate_path_template=settings.tls_issuer_certificate_path,
            key_path_template=settings.tls_issuer_key_path,
            work_directory=certificate_directory / "acme",
            timeout_seconds=settings.tls_issuer_timeout_seconds,
        ),
        publisher=CertificatePublisher(certificate_directory),
        renewal_threshold_days=settings.tls_renewal_threshold_days,
        failure_escalation_hours=settings.tls_failure_escalation_hours,
        backoff=BackoffStrategy(
            floor_seconds=settings.tls_backoff_base_seconds,
            base_seconds=settings.tls_backoff_base_seconds,
            max_seconds=settings.tls_backoff_max_seconds,
            jitter_min_multiplier=0.8,
            jitter_max_multiplier=1.2,
        ),
        failure_policy=settings.tls_failure_policy,
        on_certificate_updated=_on_certificate_updated,
        on_domain_failed=_on_domain_failed,
    )


def bootstrap_network_policy_path(settings: OrchestratorSettings) -> Path:
    """Return the path of the generated network policy file."""

    return Path(settings.stack_data_root) / NETWORK_POLICY_FILE_NAME


def bootstrap_service_names(settings: OrchestratorSettings) -> list[str]:
    """Return service names declared by the manifest without loading credentials.

    Raises:
        ManifestValidationError: Raised when the manifest is invalid.
    """

    manifest = _bootstrap_manifest_builder(settings).manifest_parse(manifest_load_file(settings.stack_manifest_path))
    return [service.name for service in manifest.services]


def _bootstrap_manifest_builder(settings: OrchestratorSettings) -> ServiceManifestBuilder:
    return ServiceManifestBuilder(
        overlay_network_cidr=settings.overlay_network_cidr,
        data_root=Path(settings.stack_data_root).resolve(),
        privileged_port_names=settings.privileged_port_names,
    )
