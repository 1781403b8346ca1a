"""Database layer package for all SQL and persistence boundaries."""

from .certificate_store import SQLAlchemyCertificateRecordService
from .health import SQLAlchemyDatabaseHealthService
from .interfaces import (
	CertificateRepositoryPort,
	DatabaseHealthPort,
	OrchestratorProcessRecord,
	RuntimeStateRepositoryPort,
)
from .runtime_state import SQLAlchemyRuntimeStateService
from .session import db_create_engine, db_upgrade_schema

__all__ = [
	"CertificateRepositoryPort",
	"DatabaseHealthPort",
	"OrchestratorProcessRecord",
	"RuntimeStateRepositoryPort",
	"SQLAlchemyCertificateRecordService",
	"SQLAlchemyDatabaseHealthService",
	"SQLAlchemyRuntimeStateService",
	"db_create_engine",
	"db_upgrade_schema",
]
