"""State database readiness check: connectivity, applied revision and state tables."""

from sqlalchemy import Engine, text
from sqlalchemy.exc import SQLAlchemyError

from nodestack.domain import HealthStatus

from .interfaces import DatabaseHealthPort

_STATE_TABLES = ("service_runtime_state", "orchestrator_process", "certificate_record")


class SQLAlchemyDatabaseHealthService(DatabaseHealthPort):
    """Report whether the state database is reachable and migrated."""

    def __init__(self, engine: Engine):
        """Initialize the readiness check.

        Args:
            engine: Engine bound to the state database.

        Raises:
            ValueError: Raised when engine is None.
        """

        if engine is None:
            raise ValueError("engine must not be None")
        self._engine = engine

    def db_connection_label(self) -> str:
        """Return the state database URL with any password masked."""

        return self._engine.url.render_as_string(hide_password=True)

    def db_check_health(self) -> HealthStatus:
        """Read the applied migration revision and touch every state table.

        An unmigrated database fails here because `alembic_version` or one of
        the state tables is missing; `nodestack init` fixes that.

        Returns:
            HealthStatus: `ok` with the applied schema revision in the detail.

        Raises:
            ConnectionError: Raised when the database is unreachable or not migrated.
        """

        try:
            with self._engine.connect() as connection:
                revision = connection.execute(text("SELECT version_num FROM alembic_version")).scalar()
                row_counts = {
                    table_name: connection.execute(text(f"SELECT COUNT(*) FROM {table_name}")).scalar_one()
                    for table_name in _STATE_TABLES
                }
        except SQLAlchemyError as error:
            raise ConnectionError("state database is unreachable or not migrated") from error
        if revision is None:
            raise ConnectionError("state database has no applied schema revision")
        return HealthStatus(
            status="ok",
            detail=f"schema revision {revision}, {row_counts['service_runtime_state']} services tracked",
        )
