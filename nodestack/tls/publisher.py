"""Certificate parsing and atomic publication for the reverse proxy.

Each issued certificate is written to its own versioned directory
`<root>/<domain>/<serial>/`; the `current` symlink is then swapped with a
single rename. The proxy always reads `<root>/<domain>/current/fullchain.pem`
and never observes a half-written pair.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from nodestack.domain import CertificateRenewalError

from .interfaces import IssuedCertificate

logger = logging.getLogger(__name__)

CERTIFICATE_FILE_NAME = "fullchain.pem"
KEY_FILE_NAME = "privkey.pem"
CURRENT_LINK_NAME = "current"


@dataclass(frozen=True)
class CertificateDetails:
    """Validity facts parsed from a leaf certificate.

    Attributes:
        serial_hex: Certificate serial number in hex.
        not_before_utc: Start of validity.
        not_after_utc: End of validity.
        subject_names: DNS names from the subject alternative name extension.
    """

    serial_hex: str
    not_before_utc: datetime
    not_after_utc: datetime
    subject_names: tuple[str, ...]


def tls_parse_certificate(certificate_pem: bytes) -> CertificateDetails:
    """Parse the leaf certificate of a PEM chain.

    Args:
        certificate_pem: PEM bytes; the first certificate is the leaf.

    Returns:
        CertificateDetails: Parsed validity facts.

    Raises:
        ValueError: Raised when the PEM data holds no certificate.
    """

    certificate = x509.load_pem_x509_certificate(certificate_pem)
    try:
        san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        subject_names = tuple(san.value.get_values_for_type(x509.DNSName))
    except x509.ExtensionNotFound:
        subject_names = ()
    return CertificateDetails(
        serial_hex=format(certificate.serial_number, "x"),
        not_before_utc=certificate.not_valid_before_utc,
        not_after_utc=certificate.not_valid_after_utc,
        subject_names=subject_names,
    )


class CertificatePublisher:
    """Publish certificate material with an atomic symlink swap."""

    def __init__(self, certificate_directory: str | Path):
        self._root = Path(certificate_directory)

    def publisher_current_certificate_path(self, domain: str) -> Path:
        """Return the stable path the reverse proxy reads for one domain."""

        return self._root / domain / CURRENT_LINK_NAME / CERTIFICATE_FILE_NAME

    def publisher_publish(self, issued: IssuedCertificate) -> tuple[Path, CertificateDetails]:
        """Validate and publish issued material.

        Args:
            issued: PEM material from the authority.

        Returns:
            tuple[Path, CertificateDetails]: Stable certificate path and parsed details.

        Raises:
            CertificateRenewalError: Raised when the material is invalid or cannot be written.
        """

        try:
            details = tls_parse_certificate(issued.certificate_pem)
            serialization.load_pem_private_key(issued.key_pem, password=None)
        except (ValueError, TypeError) as error:
            raise CertificateRenewalError(issued.domain, f"issued material is invalid: {error}") from error
        if details.subject_names and issued.domain not in details.subject_names:
            raise CertificateRenewalError(
                issued.domain,
                f"certificate covers {', '.join(details.subject_names)} but not {issued.domain}",
            )

        domain_directory = self._root / issued.domain
        version_directory = domain_directory / details.serial_hex
        try:
            version_directory.mkdir(parents=True, exist_ok=True)
            _publisher_write_file(version_directory / CERTIFICATE_FILE_NAME, issued.certificate_pem, 0o644)
            _publisher_write_file(version_directory / KEY_FILE_NAME, issued.key_pem, 0o600)

            staging_link = domain_directory / f".{CURRENT_LINK_NAME}.{os.getpid()}"
            if staging_link.is_symlink() or staging_link.exists():
                staging_link.unlink()
            staging_link.symlink_to(details.serial_hex, target_is_directory=True)
            os.replace(staging_link, domain_directory / CURRENT_LINK_NAME)
        except OSError as error:
            raise CertificateRenewalError(issued.domain, f"publication failed: {error}") from error

        logger.info(
            "Published certificate %s for %s valid until %s",
            details.serial_hex,
            issued.domain,
            details.not_after_utc.isoformat(),
        )
        return self.publisher_current_certificate_path(issued.domain), details


def _publisher_write_file(path: Path, content: bytes, mode: int) -> None:
    temporary_path = path.with_name(f".{path.name}.tmp")
    with open(os.open(temporary_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode), "wb") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(temporary_path, path)
