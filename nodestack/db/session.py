"""Database engine and schema migration utilities.

This module centralizes database connectivity primitives to enforce the db-layer
boundary for all SQLAlchemy usage.
"""

from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import make_url

_MIGRATIONS_DIRECTORY = Path(__file__).resolve().parent / "migrations"


def db_create_engine(database_url: str) -> Engine:
    """Create the SQLAlchemy engine for orchestrator state access.

    SQLite databases get their parent directory created and run in WAL
    journal mode so readers are not blocked by renewal or state writes.

    Args:
        database_url: SQLAlchemy database URL.

    Returns:
        Engine: Configured SQLAlchemy engine.

    Raises:
        ValueError: Raised when the database URL is blank.
    """

    if not database_url.strip():
        raise ValueError("database_url must not be blank")

    parsed_url = make_url(database_url)
    if parsed_url.get_backend_name() != "sqlite":
        return create_engine(database_url, pool_pre_ping=True)

    if parsed_url.database and parsed_url.database != ":memory:":
        Path(parsed_url.database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(database_url, pool_pre_ping=True, connect_args={"timeout": 30})

    @event.listens_for(engine, "connect")
    def _db_configure_sqlite(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


def db_upgrade_schema(database_url: str) -> None:
    """Apply every pending Alembic migration to the state database.

    Args:
        database_url: SQLAlchemy database URL.

    Returns:
        None: Schema is upgraded as a side effect.

    Raises:
        ValueError: Raised when the database URL is blank.
        RuntimeError: Raised when a migration fails.
    """

    if not database_url.strip():
        raise ValueError("database_url must not be blank")

    parsed_url = make_url(database_url)
    if parsed_url.get_backend_name() == "sqlite" and parsed_url.database and parsed_url.database != ":memory:":
        Path(parsed_url.database).parent.mkdir(parents=True, exist_ok=True)

    alembic_config = Config()
    alembic_config.set_main_option("script_location", str(_MIGRATIONS_DIRECTORY))
    alembic_config.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    try:
        command.upgrade(alembic_config, "head")
    except Exception as error:
        raise RuntimeError(f"state database migration failed: {error}") from error
