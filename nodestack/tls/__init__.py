"""TLS package for certificate issuance, publication and renewal."""

from .authority import CommandCertificateAuthority
from .interfaces import CertificateAuthorityPort, CertificateStatusResult, IssuedCertificate
from .manager import TlsCertificateManager
from .publisher import CertificateDetails, CertificatePublisher, tls_parse_certificate

__all__ = [
	"CertificateAuthorityPort",
	"CertificateDetails",
	"CertificatePublisher",
	"CertificateStatusResult",
	"CommandCertificateAuthority",
	"IssuedCertificate",
	"TlsCertificateManager",
	"tls_parse_certificate",
]
