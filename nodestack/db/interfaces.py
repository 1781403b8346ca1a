"""Typed interfaces for database-layer services.

All SQL access must remain in the db package and its submodules.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from nodestack.domain import CertificateRecord, HealthStatus, ServiceRuntimeRecord


@dataclass(frozen=True)
class OrchestratorProcessRecord:
    """Registration of the foreground process supervising the stack.

    Attributes:
        pid: Orchestrator process id.
        started_at_utc: Registration timestamp.
        hostname: Host running the orchestrator.
    """

    pid: int
    started_at_utc: datetime
    hostname: str


class DatabaseHealthPort(Protocol):
    """Port definition for state database connectivity verification."""

    def db_connection_label(self) -> str:
        """Return a stable label for the active database connection target.

        Returns:
            str: Database target label for diagnostics.

        Raises:
            RuntimeError: Raised when connection metadata is unavailable.
        """

    def db_check_health(self) -> HealthStatus:
        """Check database connectivity and return deterministic health payload.

        Returns:
            HealthStatus: Database health status payload.

        Raises:
            ConnectionError: Raised when database cannot be reached.
        """


class RuntimeStateRepositoryPort(Protocol):
    """Port definition for durable runtime state snapshots."""

    def db_runtime_state_upsert(self, record: ServiceRuntimeRecord) -> None:
        """Insert or replace the snapshot row of one service.

        Args:
            record: Runtime snapshot to persist.

        Returns:
            None: Persists as side effect.

        Raises:
            RuntimeError: Raised when persistence fails.
        """

    def db_runtime_state_get(self, service_name: str) -> ServiceRuntimeRecord | None:
        """Fetch the snapshot row of one service.

        Args:
            service_name: Service identity.

        Returns:
            ServiceRuntimeRecord | None: Snapshot, or None when absent.

        Raises:
            RuntimeError: Raised when the read fails.
        """

    def db_runtime_state_list(self) -> list[ServiceRuntimeRecord]:
        """List every snapshot row ordered by start sequence then name.

        Returns:
            list[ServiceRuntimeRecord]: Snapshot rows.

        Raises:
            RuntimeError: Raised when the read fails.
        """

    def db_runtime_state_delete_absent(self, service_names: list[str]) -> int:
        """Delete snapshot rows of services that are no longer declared.

        Args:
            service_names: Services that remain declared.

        Returns:
            int: Number of removed rows.

        Raises:
            RuntimeError: Raised when persistence fails.
        """

    def db_orchestrator_register(self, pid: int, hostname: str) -> OrchestratorProcessRecord:
        """Register the running orchestrator process.

        Args:
            pid: Orchestrator process id.
            hostname: Host running the orchestrator.

        Returns:
            OrchestratorProcessRecord: Stored registration.

        Raises:
            RuntimeError: Raised when persistence fails.
        """

    def db_orchestrator_get(self) -> OrchestratorProcessRecord | None:
        """Return the registered orchestrator process, if any."""

    def db_orchestrator_clear(self, pid: int) -> None:
        """Remove the registration when it still belongs to `pid`."""


class CertificateRepositoryPort(Protocol):
    """Port definition for durable certificate records."""

    def db_certificate_get(self, domain: str) -> CertificateRecord | None:
        """Fetch one certificate record.

        Args:
            domain: Domain name.

        Returns:
            CertificateRecord | None: Record, or None when absent.

        Raises:
            RuntimeError: Raised when the read fails.
        """

    def db_certificate_upsert(self, record: CertificateRecord) -> CertificateRecord:
        """Atomically insert or replace one certificate record.

        Args:
            record: Record to persist.

        Returns:
            CertificateRecord: Persisted record.

        Raises:
            RuntimeError: Raised when persistence fails.
        """

    def db_certificate_list(self) -> list[CertificateRecord]:
        """List every certificate record ordered by domain.

        Returns:
            list[CertificateRecord]: Certificate records.

        Raises:
            RuntimeError: Raised when the read fails.
        """
