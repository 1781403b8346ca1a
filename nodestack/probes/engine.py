"""Health probe engine with success-streak and budget semantics.

A service is healthy only after `success_threshold` consecutive passing
attempts; any failure resets the streak to zero. Failures observed during
the start period do not consume the retry budget, but the wall-clock budget
always applies.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Mapping

from nodestack.domain import HealthProbeDescriptor, ProbeKind

from .checks import CommandProbe, HttpProbe, TcpProbe
from .interfaces import AwaitHealthResult, ProbePort, ProbeResult

logger = logging.getLogger(__name__)


class HealthProbeEngine:
    """Polymorphic probe dispatcher and readiness gate."""

    def __init__(
        self,
        probes: Mapping[ProbeKind, ProbePort] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize health probe engine.

        Args:
            probes: Probe implementation per kind; defaults cover every kind.
            clock: Monotonic clock used for deadlines.
            sleep: Awaitable sleep used between attempts.

        Returns:
            None: Initializer does not return a value.

        Raises:
            ValueError: Raised when a probe kind has no implementation.
        """

        resolved_probes: dict[ProbeKind, ProbePort] = {
            ProbeKind.COMMAND: CommandProbe(),
            ProbeKind.TCP: TcpProbe(),
            ProbeKind.HTTP: HttpProbe(),
        }
        if probes is not None:
            resolved_probes.update(probes)
        missing_kinds = [kind.value for kind in ProbeKind if kind not in resolved_probes]
        if missing_kinds:
            raise ValueError(f"no probe implementation for kinds: {', '.join(missing_kinds)}")

        self._probes = resolved_probes
        self._clock = clock
        self._sleep = sleep

    async def probe(self, descriptor: HealthProbeDescriptor) -> ProbeResult:
        """Run one bounded probe attempt.

        Args:
            descriptor: Probe configuration.

        Returns:
            ProbeResult: Attempt outcome. Transport errors and per-attempt
            timeouts are reported as unhealthy results.

        Raises:
            asyncio.CancelledError: Propagated when the caller cancels the probe.
        """

        probe_implementation = self._probes[descriptor.kind]
        try:
            return await asyncio.wait_for(
                probe_implementation.probe_check(descriptor),
                timeout=descriptor.timeout_seconds,
            )
        except asyncio.TimeoutError:
            return ProbeResult(healthy=False, detail=f"probe timed out after {descriptor.timeout_seconds:g}s")
        except OSError as error:
            return ProbeResult(healthy=False, detail=f"probe failed: {error}")

    async def await_healthy(
        self,
        descriptor: HealthProbeDescriptor,
        budget_seconds: float | None = None,
        service_name: str = "",
    ) -> AwaitHealthResult:
        """Poll until the success streak is reached or the budget is exhausted.

        Args:
            descriptor: Probe configuration.
            budget_seconds: Wall-clock budget; defaults to the descriptor's implied budget.
            service_name: Service label for diagnostics.

        Returns:
            AwaitHealthResult: `healthy` or `timed_out` with the last failure reason.

        Raises:
            asyncio.CancelledError: Propagated when the caller cancels the wait.
        """

        budget = descriptor.descriptor_default_budget_seconds() if budget_seconds is None else budget_seconds
        started_at = self._clock()
        deadline = started_at + budget
        streak = 0
        counted_failures = 0
        attempts = 0
        last_reason: str | None = None

        while True:
            attempts += 1
            result = await self.probe(descriptor)
            if result.healthy:
                streak += 1
                if streak >= descriptor.success_threshold:
                    logger.info("Service %s healthy after %d probe attempts", service_name, attempts)
                    return AwaitHealthResult(status="healthy", attempts=attempts)
            else:
                if streak:
                    logger.debug("Service %s probe flapped after %d successes", service_name, streak)
                streak = 0
                last_reason = result.detail or "probe failed"
                if self._clock() - started_at >= descriptor.start_period_seconds:
                    counted_failures += 1
                if counted_failures >= descriptor.retry_budget:
                    return self._engine_timed_out(service_name, attempts, f"retry budget exhausted: {last_reason}")

            if self._clock() >= deadline:
                return self._engine_timed_out(
                    service_name,
                    attempts,
                    f"deadline of {budget:g}s elapsed: {last_reason or 'success streak not reached'}",
                )
            await self._sleep(descriptor.poll_interval_seconds)

    def _engine_timed_out(self, service_name: str, attempts: int, reason: str) -> AwaitHealthResult:
        logger.warning("Service %s did not become healthy: %s", service_name, reason)
        return AwaitHealthResult(status="timed_out", attempts=attempts, reason=reason)
