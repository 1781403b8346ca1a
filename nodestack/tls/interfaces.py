"""Typed interfaces for TLS certificate management."""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class IssuedCertificate:
    """PEM material returned by a certificate authority.

    Attributes:
        domain: Domain the certificate was issued for.
        certificate_pem: Full-chain certificate PEM bytes.
        key_pem: Private key PEM bytes.
    """

    domain: str
    certificate_pem: bytes
    key_pem: bytes


@dataclass(frozen=True)
class CertificateStatusResult:
    """Outcome of ensuring a certificate for one domain.

    Attributes:
        domain: Domain name.
        status: `valid`, `pending` or `failed`.
        expires_at_utc: Expiry of the certificate currently served.
        detail: Diagnostic of the last renewal failure.
    """

    domain: str
    status: str
    expires_at_utc: datetime | None = None
    detail: str | None = None


class CertificateAuthorityPort(Protocol):
    """Port definition for obtaining certificates from an ACME authority."""

    async def authority_issue(self, domain: str) -> IssuedCertificate:
        """Obtain a fresh certificate for one domain.

        Args:
            domain: Domain name.

        Returns:
            IssuedCertificate: Issued PEM material.

        Raises:
            CertificateRenewalError: Raised when issuance fails.
        """
