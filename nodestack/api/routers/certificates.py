"""Certificate status router."""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from nodestack.db import CertificateRepositoryPort
from nodestack.domain import CertificateRecord


def api_create_certificates_router(certificate_repository: CertificateRepositoryPort) -> APIRouter:
    """Create router exposing certificate records per domain.

    Args:
        certificate_repository: Certificate repository.

    Returns:
        APIRouter: Router exposing `/certificates` endpoints.

    Raises:
        ValueError: Raised when certificate_repository is None.
    """

    if certificate_repository is None:
        raise ValueError("certificate_repository must not be None")

    router = APIRouter(prefix="/certificates", tags=["certificates"])

    @router.get("")
    def api_certificates_list() -> JSONResponse:
        items = [api_serialize_certificate_record(record) for record in certificate_repository.db_certificate_list()]
        return JSONResponse(content={"items": items, "total": len(items)}, status_code=status.HTTP_200_OK)

    @router.get("/{domain}")
    def api_certificates_detail(domain: str) -> JSONResponse:
        """Return the certificate record of one domain.

        Returns:
            JSONResponse: Record payload, or 404 when the domain is unknown.

        Raises:
            RuntimeError: Raised when the record cannot be read.
        """

        try:
            record = certificate_repository.db_certificate_get(domain)
        except ValueError as error:
            return JSONResponse(
                content={"status": "error", "message": str(error)},
                status_code=status.HTTP_400_BAD_REQUEST,
            )
        if record is None:
            return JSONResponse(
                content={"status": "error", "message": f"no certificate record for {domain}"},
                status_code=status.HTTP_404_NOT_FOUND,
            )
        return JSONResponse(content=api_serialize_certificate_record(record), status_code=status.HTTP_200_OK)

    return router


def api_serialize_certificate_record(record: CertificateRecord) -> dict[str, object]:
    """Serialize a certificate record into a JSON-safe payload."""

    def _iso(value):
        return value.isoformat() if value is not None else None

    return {
        "domain": record.domain,
        "validation_status": record.validation_status,
        "issued_at_utc": _iso(record.issued_at_utc),
        "expires_at_utc": _iso(record.expires_at_utc),
        "certificate_path": record.certificate_path,
        "failure_count": record.failure_count,
        "last_error": record.last_error,
        "first_failure_at_utc": _iso(record.first_failure_at_utc),
        "next_attempt_at_utc": _iso(record.next_attempt_at_utc),
        "updated_at_utc": _iso(record.updated_at_utc),
    }
