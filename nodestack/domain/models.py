"""Typed domain models shared across orchestrator layers.

Service manifests are turned into these immutable contracts once at startup.
Runtime layers exchange them instead of raw manifest dictionaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Mapping


class RuntimeState(str, Enum):
    """Lifecycle state of one managed service."""

    PENDING = "pending"
    STARTING = "starting"
    AWAITING_HEALTH = "awaiting_health"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    STOPPED = "stopped"
    FAILED = "failed"


class PortZone(str, Enum):
    """Reachability zone of a declared listening port."""

    INTERNAL = "internal"
    EXPOSED = "exposed"


class ProbeKind(str, Enum):
    """Supported health probe mechanisms."""

    COMMAND = "command"
    TCP = "tcp"
    HTTP = "http"


class RestartPolicy(str, Enum):
    """Restart behavior applied after an unexpected process exit."""

    NO = "no"
    ON_FAILURE = "on-failure"
    ALWAYS = "always"
    UNLESS_STOPPED = "unless-stopped"


@dataclass(frozen=True)
class HealthProbeDescriptor:
    """Health probe configuration for one service.

    Attributes:
        kind: Probe mechanism.
        target: Command line, `host:port` address, or URL depending on kind.
        expected_result: Expected exit code (command) or HTTP status (http).
        expected_body: Optional substring required in HTTP response bodies.
        poll_interval_seconds: Delay between probe attempts.
        timeout_seconds: Per-attempt timeout.
        retry_budget: Failed attempts tolerated after the start period.
        success_threshold: Consecutive passes required before healthy.
        start_period_seconds: Grace window where failures are not counted.
    """

    kind: ProbeKind
    target: str
    expected_result: int = 0
    expected_body: str | None = None
    poll_interval_seconds: float = 5.0
    timeout_seconds: float = 5.0
    retry_budget: int = 10
    success_threshold: int = 1
    start_period_seconds: float = 0.0

    def descriptor_default_budget_seconds(self) -> float:
        """Return the wall-clock budget implied by the retry configuration.

        Returns:
            float: Start period plus the time needed to exhaust the retry budget.

        Raises:
            RuntimeError: This helper does not raise runtime errors.
        """

        per_attempt_seconds = self.poll_interval_seconds + self.timeout_seconds
        attempts = self.retry_budget + self.success_threshold
        return self.start_period_seconds + (per_attempt_seconds * attempts)


@dataclass(frozen=True)
class PortDeclaration:
    """One listening port declared by a service manifest.

    Attributes:
        name: Port label, unique per service.
        port: Listening port number.
        zone: Declared reachability zone.
        privileged: Whether the port is an RPC-style control surface.
        domain: TLS domain served for this port through the reverse proxy.
        public_port: Reverse-proxy listener that forwards to this port.
        tls: Whether the listener terminates TLS.
    """

    name: str
    port: int
    zone: PortZone = PortZone.INTERNAL
    privileged: bool = False
    domain: str | None = None
    public_port: int | None = None
    tls: bool = False


@dataclass(frozen=True)
class ResourceLimits:
    """Resource limits applied when a service process is spawned.

    Attributes:
        memory_bytes: Address-space limit in bytes.
        cpus: Number of CPUs the process may be scheduled on.
    """

    memory_bytes: int | None = None
    cpus: float | None = None


@dataclass(frozen=True)
class ServiceSpec:
    """Immutable, fully resolved definition of one managed service.

    Attributes:
        name: Unique service identity.
        command: Process argv with credentials and addresses interpolated.
        dependencies: Names of services that must be healthy first.
        probe: Health probe descriptor.
        ports: Declared listening ports.
        required_credentials: Credential keys that must be present.
        environment: Environment injected into the process.
        limits: Resource limits.
        restart_policy: Restart behavior after unexpected exit.
        data_directory: Optional data directory created by `init`.
        working_directory: Optional process working directory.
        reverse_proxy: Whether this service is the TLS-terminating proxy.
        overlay_address: Private overlay address assigned to the service.
    """

    name: str
    command: tuple[str, ...]
    dependencies: tuple[str, ...]
    probe: HealthProbeDescriptor
    ports: tuple[PortDeclaration, ...] = ()
    required_credentials: tuple[str, ...] = ()
    environment: Mapping[str, str] = field(default_factory=dict)
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    restart_policy: RestartPolicy = RestartPolicy.UNLESS_STOPPED
    data_directory: str | None = None
    working_directory: str | None = None
    reverse_proxy: bool = False
    overlay_address: str | None = None


@dataclass(frozen=True)
class DependencyEdge:
    """Directed relation from a dependent service to its dependency."""

    dependent: str
    dependency: str


@dataclass(frozen=True)
class Credential:
    """One credential value sourced from the credential file.

    Attributes:
        key: Credential key.
        value: Raw value.
        required: Whether at least one service requires the key.
        sensitive: Whether the key holds password-like material.
    """

    key: str
    value: str
    required: bool = False
    sensitive: bool = False


@dataclass(frozen=True)
class ServiceRuntimeRecord:
    """Persisted runtime snapshot of one managed service.

    Attributes:
        service_name: Service identity.
        state: Current lifecycle state.
        pid: Process id when running.
        start_sequence: Monotonic start order used for LIFO teardown.
        restart_count: Restarts performed since registration.
        stop_requested: Whether an operator asked the service to stop.
        detail: Last diagnostic message.
        updated_at_utc: Timestamp of the last transition.
    """

    service_name: str
    state: RuntimeState
    pid: int | None
    start_sequence: int | None
    restart_count: int
    stop_requested: bool
    detail: str | None
    updated_at_utc: datetime


@dataclass(frozen=True)
class CertificateRecord:
    """Persisted certificate state for one exposed domain.

    Attributes:
        domain: Domain name.
        validation_status: `valid`, `pending`, or `failed`.
        issued_at_utc: Certificate `notBefore` timestamp.
        expires_at_utc: Certificate `notAfter` timestamp.
        certificate_path: Published full-chain path read by the reverse proxy.
        failure_count: Consecutive renewal failures.
        last_error: Last renewal failure message.
        first_failure_at_utc: Start of the current failure streak.
        next_attempt_at_utc: Earliest time for the next issuance attempt.
        updated_at_utc: Timestamp of the last record write.
    """

    domain: str
    validation_status: str
    issued_at_utc: datetime | None
    expires_at_utc: datetime | None
    certificate_path: str | None
    failure_count: int
    last_error: str | None
    first_failure_at_utc: datetime | None
    next_attempt_at_utc: datetime | None
    updated_at_utc: datetime

    def record_has_usable_certificate(self, now_utc: datetime) -> bool:
        """Return whether a published, unexpired certificate exists.

        Args:
            now_utc: Reference timestamp.

        Returns:
            bool: True when a certificate is published and not yet expired.

        Raises:
            RuntimeError: This helper does not raise runtime errors.
        """

        if self.certificate_path is None or self.expires_at_utc is None:
            return False
        return self.expires_at_utc > now_utc


@dataclass(frozen=True)
class HealthStatus:
    """Health response contract used by health-check surfaces.

    Attributes:
        status: Overall status text.
        detail: Message suitable for operational diagnostics.
    """

    status: str
    detail: str
