"""Typed interfaces for health probe responsibilities."""

from dataclasses import dataclass
from typing import Protocol

from nodestack.domain import HealthProbeDescriptor


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one probe attempt.

    Attributes:
        healthy: Whether the attempt met the success condition.
        detail: Optional diagnostic string.
    """

    healthy: bool
    detail: str | None = None


@dataclass(frozen=True)
class AwaitHealthResult:
    """Outcome of waiting for a service to become healthy.

    Attributes:
        status: `healthy` or `timed_out`.
        attempts: Probe attempts performed.
        reason: Diagnostic of the last failed attempt when timed out.
    """

    status: str
    attempts: int
    reason: str | None = None

    def result_is_healthy(self) -> bool:
        """Return whether the wait ended healthy."""

        return self.status == "healthy"


class ProbePort(Protocol):
    """Port definition for one probe mechanism."""

    async def probe_check(self, descriptor: HealthProbeDescriptor) -> ProbeResult:
        """Run one probe attempt.

        Args:
            descriptor: Probe configuration.

        Returns:
            ProbeResult: Success signal with optional diagnostic.

        Raises:
            OSError: Raised when the probe transport fails unexpectedly.
        """
