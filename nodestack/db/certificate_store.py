"""Database service for TLS certificate records."""

from __future__ import annotations

from typing import Any

from sqlalchemy import Engine, text
from sqlalchemy.exc import SQLAlchemyError

from nodestack.domain import CertificateRecord

from .codec import db_format_timestamp, db_parse_timestamp
from .interfaces import CertificateRepositoryPort

_CERTIFICATE_COLUMNS = (
    "domain, validation_status, issued_at_utc, expires_at_utc, certificate_path, failure_count, "
    "last_error, first_failure_at_utc, next_attempt_at_utc, updated_at_utc"
)
_VALIDATION_STATUSES = frozenset({"valid", "pending", "failed"})


class SQLAlchemyCertificateRecordService(CertificateRepositoryPort):
    """SQLAlchemy-backed certificate record service.

    Each upsert replaces the whole row inside one transaction, so readers see
    either the previous or the new record and never a mix of both.
    """

    def __init__(self, engine: Engine):
        """Initialize certificate persistence service.

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

    def db_certificate_get(self, domain: str) -> CertificateRecord | None:
        """Fetch one certificate record.

        Args:
            domain: Domain name.

        Returns:
            CertificateRecord | None: Record, or None when absent.

        Raises:
            ValueError: Raised when domain is blank.
            RuntimeError: Raised when the read fails.
        """

        normalized_domain = self._validate_domain(domain)
        try:
            with self._engine.connect() as connection:
                row = connection.execute(
                    text(f"SELECT {_CERTIFICATE_COLUMNS} FROM certificate_record WHERE domain = :domain"),
                    {"domain": normalized_domain},
                ).mappings().first()
                if row is None:
                    return None
                return self._map_certificate_record(row)
        except SQLAlchemyError as error:
            raise RuntimeError("failed to fetch certificate record") from error

    def db_certificate_upsert(self, record: CertificateRecord) -> CertificateRecord:
        """Atomically insert or replace one certificate record.

        Args:
            record: Record to persist.

        Returns:
            CertificateRecord: Persisted record as read back from storage.

        Raises:
            ValueError: Raised when domain is blank or status is unknown.
            RuntimeError: Raised when persistence fails.
        """

        normalized_domain = self._validate_domain(record.domain)
        if record.validation_status not in _VALIDATION_STATUSES:
            raise ValueError(f"unsupported validation_status {record.validation_status!r}")
        try:
            with self._engine.begin() as connection:
                connection.execute(
                    text(
                        f"INSERT INTO certificate_record ({_CERTIFICATE_COLUMNS}) "
                        "VALUES (:domain, :validation_status, :issued_at_utc, :expires_at_utc, :certificate_path, "
                        ":failure_count, :last_error, :first_failure_at_utc, :next_attempt_at_utc, :updated_at_utc) "
                        "ON CONFLICT (domain) DO UPDATE SET "
                        "validation_status = excluded.validation_status, "
                        "issued_at_utc = excluded.issued_at_utc, "
                        "expires_at_utc = excluded.expires_at_utc, "
                        "certificate_path = excluded.certificate_path, "
                        "failure_count = excluded.failure_count, "
                        "last_error = excluded.last_error, "
                        "first_failure_at_utc = excluded.first_failure_at_utc, "
                        "next_attempt_at_utc = excluded.next_attempt_at_utc, "
                        "updated_at_utc = excluded.updated_at_utc"
                    ),
                    {
                        "domain": normalized_domain,
                        "validation_status": record.validation_status,
                        "issued_at_utc": db_format_timestamp(record.issued_at_utc),
                        "expires_at_utc": db_format_timestamp(record.expires_at_utc),
                        "certificate_path": record.certificate_path,
                        "failure_count": int(record.failure_count),
                        "last_error": record.last_error,
                        "first_failure_at_utc": db_format_timestamp(record.first_failure_at_utc),
                        "next_attempt_at_utc": db_format_timestamp(record.next_attempt_at_utc),
                        "updated_at_utc": db_format_timestamp(record.updated_at_utc),
                    },
                )
                row = connection.execute(
                    text(f"SELECT {_CERTIFICATE_COLUMNS} FROM certificate_record WHERE domain = :domain"),
                    {"domain": normalized_domain},
                ).mappings().one()
                return self._map_certificate_record(row)
        except SQLAlchemyError as error:
            raise RuntimeError(f"failed to persist certificate record for {normalized_domain}") from error

    def db_certificate_list(self) -> list[CertificateRecord]:
        """List every certificate record ordered by domain.

        Returns:
            list[CertificateRecord]: Certificate records.

        Raises:
            RuntimeError: Raised when the read fails.
        """

        try:
            with self._engine.connect() as connection:
                rows = connection.execute(
                    text(f"SELECT {_CERTIFICATE_COLUMNS} FROM certificate_record ORDER BY domain")
                ).mappings().all()
                return [self._map_certificate_record(row) for row in rows]
        except SQLAlchemyError as error:
            raise RuntimeError("failed to list certificate records") from error

    def _map_certificate_record(self, row: Any) -> CertificateRecord:
        """Map SQLAlchemy row mapping to typed certificate record."""

        return CertificateRecord(
            domain=str(row["domain"]),
            validation_status=str(row["validation_status"]),
            issued_at_utc=db_parse_timestamp(row["issued_at_utc"]),
            expires_at_utc=db_parse_timestamp(row["expires_at_utc"]),
            certificate_path=row["certificate_path"],
            failure_count=int(row["failure_count"]),
            last_error=row["last_error"],
            first_failure_at_utc=db_parse_timestamp(row["first_failure_at_utc"]),
            next_attempt_at_utc=db_parse_timestamp(row["next_attempt_at_utc"]),
            updated_at_utc=db_parse_timestamp(row["updated_at_utc"]),
        )

    def _validate_domain(self, domain: str) -> str:
        normalized_domain = domain.strip().lower()
        if not normalized_domain:
            raise ValueError("domain must not be blank")
        return normalized_domain
