"""Database service for service runtime snapshots and orchestrator registration."""

from __future__ import annotations

from typing import Any

from sqlalchemy import Engine, text
from sqlalchemy.exc import SQLAlchemyError

from nodestack.domain import RuntimeState, ServiceRuntimeRecord
from nodestack.domain.timeline import domain_utc_now

from .codec import db_format_timestamp, db_parse_timestamp
from .interfaces import OrchestratorProcessRecord, RuntimeStateRepositoryPort


class SQLAlchemyRuntimeStateService(RuntimeStateRepositoryPort):
    """SQLAlchemy-backed runtime state service.

    One row per service holds the latest snapshot written by the supervisor.
    A single-row table records which process currently supervises the stack
    so that `down` and `status` can run from a separate process.
    """

    def __init__(self, engine: Engine):
        """Initialize runtime state persistence service.

        Args:
            engine: SQLAlchemy engine used for all persistence operations.

        Returns:
            None: This initializer does not return a value.

        Raises:
            ValueError: Raised when engine is None.
        """

        if engine is None:
            raise ValueError("engine must not be None")
        self._engine = engine

    def db_runtime_state_upsert(self, record: ServiceRuntimeRecord) -> None:
        """Insert or replace the snapshot row of one service.

        Args:
            record: Runtime snapshot to persist.

        Returns:
            None: Persists as side effect.

        Raises:
            ValueError: Raised when the service name is blank.
            RuntimeError: Raised when persistence fails.
        """

        service_name = self._validate_non_empty_text(record.service_name, "service_name")
        try:
            with self._engine.begin() as connection:
                connection.execute(
                    text(
                        "INSERT INTO service_runtime_state "
                        "(service_name, state, pid, start_sequence, restart_count, stop_requested, detail, updated_at_utc) "
                        "VALUES (:service_name, :state, :pid, :start_sequence, :restart_count, :stop_requested, "
                        ":detail, :updated_at_utc) "
                        "ON CONFLICT (service_name) DO UPDATE SET "
                        "state = excluded.state, "
                        "pid = excluded.pid, "
                        "start_sequence = excluded.start_sequence, "
                        "restart_count = excluded.restart_count, "
                        "stop_requested = excluded.stop_requested, "
                        "detail = excluded.detail, "
                        "updated_at_utc = excluded.updated_at_utc"
                    ),
                    {
                        "service_name": service_name,
                        "state": RuntimeState(record.state).value,
                        "pid": record.pid,
                        "start_sequence": record.start_sequence,
                        "restart_count": int(record.restart_count),
                        "stop_requested": bool(record.stop_requested),
                        "detail": record.detail,
                        "updated_at_utc": db_format_timestamp(record.updated_at_utc),
                    },
                )
        except SQLAlchemyError as error:
            raise RuntimeError(f"failed to persist runtime state of {service_name}") from error

    def db_runtime_state_get(self, service_name: str) -> ServiceRuntimeRecord | None:
        """Fetch the snapshot row of one service.

        Args:
            service_name: Service identity.

        Returns:
            ServiceRuntimeRecord | None: Snapshot, or None when absent.

        Raises:
            ValueError: Raised when the service name is blank.
            RuntimeError: Raised when the read fails.
        """

        normalized_name = self._validate_non_empty_text(service_name, "service_name")
        try:
            with self._engine.connect() as connection:
                row = connection.execute(
                    text(
                        "SELECT service_name, state, pid, start_sequence, restart_count, stop_requested, "
                        "detail, updated_at_utc "
                        "FROM service_runtime_state WHERE service_name = :service_name"
                    ),
                    {"service_name": normalized_name},
                ).mappings().first()
                if row is None:
                    return None
                return self._map_runtime_record(row)
        except SQLAlchemyError as error:
            raise RuntimeError("failed to fetch runtime state") from error

    def db_runtime_state_list(self) -> list[ServiceRuntimeRecord]:
        """List every snapshot row ordered by start sequence then name.

        Services that never started sort last.

        Returns:
            list[ServiceRuntimeRecord]: Snapshot rows.

        Raises:
            RuntimeError: Raised when the read fails.
        """

        try:
            with self._engine.connect() as connection:
                rows = connection.execute(
                    text(
                        "SELECT service_name, state, pid, start_sequence, restart_count, stop_requested, "
                        "detail, updated_at_utc "
                        "FROM service_runtime_state "
                        "ORDER BY CASE WHEN start_sequence IS NULL THEN 1 ELSE 0 END, start_sequence, service_name"
                    )
                ).mappings().all()
                return [self._map_runtime_record(row) for row in rows]
        except SQLAlchemyError as error:
            raise RuntimeError("failed to list runtime state") from error

    def db_runtime_state_delete_absent(self, service_names: list[str]) -> int:
        """Delete snapshot rows of services no longer present in the manifest.

        Args:
            service_names: Services that remain declared.

        Returns:
            int: Number of removed rows.

        Raises:
            RuntimeError: Raised when persistence fails.
        """

        keep = set(service_names)
        try:
            with self._engine.begin() as connection:
                rows = connection.execute(text("SELECT service_name FROM service_runtime_state")).mappings().all()
                stale = [row["service_name"] for row in rows if row["service_name"] not in keep]
                for name in stale:
                    connection.execute(
                        text("DELETE FROM service_runtime_state WHERE service_name = :service_name"),
                        {"service_name": name},
                    )
                return len(stale)
        except SQLAlchemyError as error:
            raise RuntimeError("failed to prune runtime state") from error

    def db_orchestrator_register(self, pid: int, hostname: str) -> OrchestratorProcessRecord:
        """Register the running orchestrator process.

        Args:
            pid: Orchestrator process id.
            hostname: Host running the orchestrator.

        Returns:
            OrchestratorProcessRecord: Stored registration.

        Raises:
            ValueError: Raised when pid is not positive.
            RuntimeError: Raised when persistence fails.
        """

        if pid <= 0:
            raise ValueError("pid must be positive")
        started_at_utc = domain_utc_now()
        try:
            with self._engine.begin() as connection:
                connection.execute(
                    text(
                        "INSERT INTO orchestrator_process (slot, pid, hostname, started_at_utc) "
                        "VALUES (1, :pid, :hostname, :started_at_utc) "
                        "ON CONFLICT (slot) DO UPDATE SET "
                        "pid = excluded.pid, hostname = excluded.hostname, started_at_utc = excluded.started_at_utc"
                    ),
                    {"pid": pid, "hostname": hostname, "started_at_utc": db_format_timestamp(started_at_utc)},
                )
        except SQLAlchemyError as error:
            raise RuntimeError("failed to register orchestrator process") from error
        return OrchestratorProcessRecord(pid=pid, started_at_utc=started_at_utc, hostname=hostname)

    def db_orchestrator_get(self) -> OrchestratorProcessRecord | None:
        """Return the registered orchestrator process, if any."""

        try:
            with self._engine.connect() as connection:
                row = connection.execute(
                    text("SELECT pid, hostname, started_at_utc FROM orchestrator_process WHERE slot = 1")
                ).mappings().first()
        except SQLAlchemyError as error:
            raise RuntimeError("failed to fetch orchestrator registration") from error
        if row is None:
            return None
        return OrchestratorProcessRecord(
            pid=int(row["pid"]),
            started_at_utc=db_parse_timestamp(row["started_at_utc"]),
            hostname=str(row["hostname"]),
        )

    def db_orchestrator_clear(self, pid: int) -> None:
        """Remove the registration when it still belongs to `pid`."""

        try:
            with self._engine.begin() as connection:
                connection.execute(
                    text("DELETE FROM orchestrator_process WHERE slot = 1 AND pid = :pid"),
                    {"pid": pid},
                )
        except SQLAlchemyError as error:
            raise RuntimeError("failed to clear orchestrator registration") from error

    def _map_runtime_record(self, row: Any) -> ServiceRuntimeRecord:
        """Map SQLAlchemy row mapping to typed runtime record.

        Args:
            row: SQLAlchemy mapping row.

        Returns:
            ServiceRuntimeRecord: Typed runtime snapshot.

        Raises:
            ValueError: Raised when the stored state is unknown.
        """

        return ServiceRuntimeRecord(
            service_name=str(row["service_name"]),
            state=RuntimeState(row["state"]),
            pid=int(row["pid"]) if row["pid"] is not None else None,
            start_sequence=int(row["start_sequence"]) if row["start_sequence"] is not None else None,
            restart_count=int(row["restart_count"]),
            stop_requested=bool(row["stop_requested"]),
            detail=row["detail"],
            updated_at_utc=db_parse_timestamp(row["updated_at_utc"]),
        )

    def _validate_non_empty_text(self, value: str, field_name: str) -> str:
        """Validate required text input and return stripped value.

        Args:
            value: Candidate string value.
            field_name: Field name for error reporting.

        Returns:
            str: Stripped text value.

        Raises:
            ValueError: Raised when value is blank.
        """

        normalized_value = value.strip()
        if not normalized_value:
            raise ValueError(f"{field_name} must not be blank")
        return normalized_value
