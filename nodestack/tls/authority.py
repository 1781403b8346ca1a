"""Certificate authority adapter running an external ACME client."""

from __future__ import annotations

import asyncio
import logging
import shlex
from pathlib import Path

from nodestack.domain import CertificateRenewalError

from .interfaces import CertificateAuthorityPort, IssuedCertificate

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_CHARACTERS = 2000


class CommandCertificateAuthority(CertificateAuthorityPort):
    """Issue certificates by running an ACME client command such as certbot.

    The command and output paths are templates with `{domain}` and
    `{work_dir}` placeholders. The client is treated as a black box: a zero
    exit status plus readable PEM files at the configured paths is success.
    """

    def __init__(
        self,
        command_template: str,
        certificate_path_template: str,
        key_path_template: str,
        work_directory: str | Path,
        timeout_seconds: float,
    ):
        """Initialize command certificate authority.

        Args:
            command_template: Issuer command line template.
            certificate_path_template: Full-chain PEM path template.
            key_path_template: Private key PEM path template.
            work_directory: Working directory handed to the issuer.
            timeout_seconds: Maximum issuer run time.

        Returns:
            None: Initializer does not return a value.

        Raises:
            ValueError: Raised when templates are blank or timeout is not positive.
        """

        if not command_template.strip():
            raise ValueError("command_template must not be blank")
        if not certificate_path_template.strip():
            raise ValueError("certificate_path_template must not be blank")
        if not key_path_template.strip():
            raise ValueError("key_path_template must not be blank")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self._command_template = command_template
        self._certificate_path_template = certificate_path_template
        self._key_path_template = key_path_template
        self._work_directory = Path(work_directory)
        self._timeout_seconds = timeout_seconds

    def authority_command(self, domain: str) -> list[str]:
        """Return the issuer argv for one domain."""

        return [
            argument.format(domain=domain, work_dir=str(self._work_directory))
            for argument in shlex.split(self._command_template)
        ]

    async def authority_issue(self, domain: str) -> IssuedCertificate:
        """Run the issuer and read the resulting PEM files.

        Args:
            domain: Domain name.

        Returns:
            IssuedCertificate: Issued PEM material.

        Raises:
            CertificateRenewalError: Raised when the issuer fails, times out or leaves no files.
        """

        self._work_directory.mkdir(parents=True, exist_ok=True)
        argv = self.authority_command(domain)
        logger.info("Requesting certificate for %s", domain)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as error:
            raise CertificateRenewalError(domain, f"issuer could not start: {error}") from error

        try:
            output, _ = await asyncio.wait_for(process.communicate(), timeout=self._timeout_seconds)
        except asyncio.TimeoutError as error:
            process.kill()
            await process.wait()
            raise CertificateRenewalError(domain, f"issuer timed out after {self._timeout_seconds:g}s") from error
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            tail = output.decode("utf-8", errors="replace")[-_OUTPUT_TAIL_CHARACTERS:].strip()
            raise CertificateRenewalError(domain, f"issuer exited with status {process.returncode}: {tail}")

        certificate_path = Path(self._certificate_path_template.format(domain=domain, work_dir=str(self._work_directory)))
        key_path = Path(self._key_path_template.format(domain=domain, work_dir=str(self._work_directory)))
        try:
            return IssuedCertificate(
                domain=domain,
                certificate_pem=certificate_path.read_bytes(),
                key_pem=key_path.read_bytes(),
            )
        except OSError as error:
            raise CertificateRenewalError(domain, f"issued files are unreadable: {error}") from error
