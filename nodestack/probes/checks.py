"""Probe implementations for command, TCP and HTTP health checks."""

from __future__ import annotations

import asyncio
import shlex

import httpx

from nodestack.domain import HealthProbeDescriptor

from .interfaces import ProbePort, ProbeResult

_DETAIL_LIMIT = 200


class CommandProbe(ProbePort):
    """Probe that runs a command without a shell and checks its exit code."""

    async def probe_check(self, descriptor: HealthProbeDescriptor) -> ProbeResult:
        """Run the probe command once.

        Args:
            descriptor: Probe configuration; `target` is a shell-quoted argv.

        Returns:
            ProbeResult: Healthy when the exit code matches `expected_result`.

        Raises:
            asyncio.CancelledError: Propagated when the caller cancels the probe.
        """

        arguments = shlex.split(descriptor.target)
        try:
            process = await asyncio.create_subprocess_exec(
                *arguments,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as error:
            return ProbeResult(healthy=False, detail=f"cannot execute {arguments[0]}: {error}")

        try:
            output, _ = await asyncio.wait_for(process.communicate(), timeout=descriptor.timeout_seconds)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if process.returncode == descriptor.expected_result:
            return ProbeResult(healthy=True)
        rendered_output = output.decode("utf-8", errors="replace").strip()[-_DETAIL_LIMIT:]
        return ProbeResult(healthy=False, detail=f"exit code {process.returncode}: {rendered_output}")


class TcpProbe(ProbePort):
    """Probe that opens and closes one TCP connection."""

    async def probe_check(self, descriptor: HealthProbeDescriptor) -> ProbeResult:
        host, _, raw_port = descriptor.target.rpartition(":")
        host = host.strip("[]")
        try:
            port = int(raw_port)
        except ValueError:
            return ProbeResult(healthy=False, detail=f"invalid tcp target {descriptor.target}")

        try:
            _, writer = await asyncio.open_connection(host, port)
        except OSError as error:
            return ProbeResult(healthy=False, detail=f"connect {host}:{port} failed: {error}")
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return ProbeResult(healthy=True)


class HttpProbe(ProbePort):
    """Probe that issues one HTTP GET through httpx."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None, verify: bool = True):
        """Initialize HTTP probe.

        Args:
            transport: Optional transport override, used by tests.
            verify: Whether TLS certificates are verified.

        Returns:
            None: Initializer does not return a value.

        Raises:
            RuntimeError: This initializer does not raise runtime errors.
        """

        self._transport = transport
        self._verify = verify

    async def probe_check(self, descriptor: HealthProbeDescriptor) -> ProbeResult:
        """Issue one GET request against the probe URL.

        Args:
            descriptor: Probe configuration; `target` is the URL.

        Returns:
            ProbeResult: Healthy when status and optional body substring match.

        Raises:
            RuntimeError: This method does not raise runtime errors.
        """

        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=descriptor.timeout_seconds,
                verify=self._verify,
            ) as client:
                response = await client.get(descriptor.target)
        except httpx.TimeoutException:
            return ProbeResult(healthy=False, detail=f"GET {descriptor.target} timed out")
        except httpx.HTTPError as error:
            return ProbeResult(healthy=False, detail=f"GET {descriptor.target} failed: {error}")

        if response.status_code != descriptor.expected_result:
            return ProbeResult(
                healthy=False,
                detail=f"GET {descriptor.target} returned HTTP {response.status_code}",
            )
        if descriptor.expected_body and descriptor.expected_body not in response.text:
            return ProbeResult(
                healthy=False,
                detail=f"GET {descriptor.target} body does not contain {descriptor.expected_body!r}",
            )
        return ProbeResult(healthy=True)
