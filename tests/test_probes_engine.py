"""Tests for health probe streak, start-period and budget semantics."""

from __future__ import annotations

import asyncio
import shlex
import socket
import sys

import httpx

from nodestack.domain import HealthProbeDescriptor, ProbeKind
from nodestack.probes import CommandProbe, HealthProbeEngine, HttpProbe, ProbeResult, TcpProbe


class _FakeClock:
    """Deterministic clock advanced only by the engine's sleep calls."""

    def __init__(self):
        """Initialize clock at zero.

        Returns:
            None: Initializer does not return values.

        Raises:
            RuntimeError: This stub does not raise runtime errors.
        """

        self.now = 0.0
        self.sleeps: list[float] = []

    def clock_now(self) -> float:
        """Return current fake time."""

        return self.now

    async def clock_sleep(self, seconds: float) -> None:
        """Advance fake time instead of sleeping."""

        self.sleeps.append(seconds)
        self.now += seconds


class _ScriptedProbe:
    """Probe stub replaying a fixed outcome sequence and then failing."""

    def __init__(self, outcomes: list[bool]):
        """Initialize scripted outcomes.

        Args:
            outcomes: Healthy flags returned in order.

        Returns:
            None: Initializer does not return values.

        Raises:
            RuntimeError: This stub does not raise runtime errors.
        """

        self._outcomes = list(outcomes)
        self.calls = 0

    async def probe_check(self, descriptor: HealthProbeDescriptor) -> ProbeResult:
        """Return the next scripted outcome.

        Args:
            descriptor: Probe configuration.

        Returns:
            ProbeResult: Scripted outcome.

        Raises:
            RuntimeError: This stub does not raise runtime errors.
        """

        _ = descriptor
        self.calls += 1
        healthy = self._outcomes.pop(0) if self._outcomes else False
        return ProbeResult(healthy=healthy, detail=None if healthy else f"scripted failure {self.calls}")


class _SlowProbe:
    """Probe stub that never answers within the per-attempt timeout."""

    async def probe_check(self, descriptor: HealthProbeDescriptor) -> ProbeResult:
        await asyncio.sleep(5)
        return ProbeResult(healthy=True)


def _build_engine(probe, clock: _FakeClock) -> HealthProbeEngine:
    """Create an engine using one stub for every probe kind.

    Returns:
        HealthProbeEngine: Engine with a fake clock.

    Raises:
        ValueError: Raised by the engine when a probe kind is missing.
    """

    return HealthProbeEngine(
        probes={kind: probe for kind in ProbeKind},
        clock=clock.clock_now,
        sleep=clock.clock_sleep,
    )


def test_probes_engine_flap_resets_success_streak() -> None:
    """Require consecutive passes; one failure restarts the streak.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when a flapping probe is reported healthy early.
    """

    clock = _FakeClock()
    probe = _ScriptedProbe([True, True, False, True, True, True])
    descriptor = HealthProbeDescriptor(
        kind=ProbeKind.TCP,
        target="127.0.0.1:1",
        poll_interval_seconds=1.0,
        success_threshold=3,
    )

    result = asyncio.run(_build_engine(probe, clock).await_healthy(descriptor, budget_seconds=60, service_name="node"))

    assert result.result_is_healthy()
    assert result.attempts == 6
    assert clock.sleeps == [1.0] * 5


def test_probes_engine_exhausts_retry_budget() -> None:
    """Time out once counted failures reach the retry budget.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when the retry budget is not enforced.
    """

    clock = _FakeClock()
    descriptor = HealthProbeDescriptor(kind=ProbeKind.TCP, target="127.0.0.1:1", retry_budget=3)

    result = asyncio.run(_build_engine(_ScriptedProbe([]), clock).await_healthy(descriptor, budget_seconds=600))

    assert result.status == "timed_out"
    assert result.attempts == 3
    assert result.reason == "retry budget exhausted: scripted failure 3"


def test_probes_engine_start_period_failures_do_not_consume_budget() -> None:
    """Ignore failures inside the start period when counting retries.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when early failures are counted.
    """

    clock = _FakeClock()
    descriptor = HealthProbeDescriptor(
        kind=ProbeKind.COMMAND,
        target="true",
        poll_interval_seconds=10.0,
        retry_budget=2,
        start_period_seconds=30.0,
    )

    result = asyncio.run(_build_engine(_ScriptedProbe([]), clock).await_healthy(descriptor))

    assert result.status == "timed_out"
    assert result.attempts == 5
    assert clock.now == 40.0


def test_probes_engine_wall_clock_budget_applies_during_start_period() -> None:
    """Stop polling when the wall-clock budget elapses.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when the deadline is ignored.
    """

    clock = _FakeClock()
    descriptor = HealthProbeDescriptor(
        kind=ProbeKind.HTTP,
        target="http://127.0.0.1:1/",
        poll_interval_seconds=10.0,
        retry_budget=100,
        start_period_seconds=300.0,
    )

    result = asyncio.run(_build_engine(_ScriptedProbe([]), clock).await_healthy(descriptor, budget_seconds=15))

    assert result.status == "timed_out"
    assert result.attempts == 3
    assert result.reason is not None and result.reason.startswith("deadline of 15s elapsed")


def test_probes_engine_per_attempt_timeout_is_unhealthy() -> None:
    """Report a hung probe attempt as an unhealthy result."""

    descriptor = HealthProbeDescriptor(kind=ProbeKind.TCP, target="127.0.0.1:1", timeout_seconds=0.05)
    engine = HealthProbeEngine(probes={ProbeKind.TCP: _SlowProbe()})

    result = asyncio.run(engine.probe(descriptor))

    assert not result.healthy
    assert result.detail == "probe timed out after 0.05s"


def test_probes_http_probe_checks_status_and_body() -> None:
    """Match HTTP status and optional body substring through httpx.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when HTTP responses are misclassified.
    """

    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/metrics":
            return httpx.Response(200, text="electrs_index_height 812345\n")
        return httpx.Response(503, text="syncing")

    probe = HttpProbe(transport=httpx.MockTransport(_handler))

    healthy = asyncio.run(
        probe.probe_check(
            HealthProbeDescriptor(
                kind=ProbeKind.HTTP,
                target="http://127.77.0.3:4224/metrics",
                expected_result=200,
                expected_body="index_height",
            )
        )
    )
    wrong_body = asyncio.run(
        probe.probe_check(
            HealthProbeDescriptor(
                kind=ProbeKind.HTTP,
                target="http://127.77.0.3:4224/metrics",
                expected_result=200,
                expected_body="synced",
            )
        )
    )
    wrong_status = asyncio.run(
        probe.probe_check(
            HealthProbeDescriptor(kind=ProbeKind.HTTP, target="http://127.77.0.3:4224/ready", expected_result=200)
        )
    )

    assert healthy.healthy
    assert not wrong_body.healthy and "does not contain" in (wrong_body.detail or "")
    assert not wrong_status.healthy and "HTTP 503" in (wrong_status.detail or "")


def test_probes_command_probe_compares_exit_code() -> None:
    """Compare the command exit code with the expected result."""

    target = shlex.join([sys.executable, "-c", "import sys; sys.exit(3)"])
    probe = CommandProbe()

    matching = asyncio.run(probe.probe_check(HealthProbeDescriptor(kind=ProbeKind.COMMAND, target=target, expected_result=3)))
    failing = asyncio.run(probe.probe_check(HealthProbeDescriptor(kind=ProbeKind.COMMAND, target=target)))
    missing = asyncio.run(
        probe.probe_check(HealthProbeDescriptor(kind=ProbeKind.COMMAND, target="/nonexistent/nodestack-probe"))
    )

    assert matching.healthy
    assert not failing.healthy and (failing.detail or "").startswith("exit code 3")
    assert not missing.healthy


def test_probes_tcp_probe_connects_to_listener() -> None:
    """Pass against a listening socket and fail against a closed port."""

    async def _run() -> tuple[ProbeResult, ProbeResult]:
        server = await asyncio.start_server(lambda reader, writer: writer.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            open_result = await TcpProbe().probe_check(HealthProbeDescriptor(kind=ProbeKind.TCP, target=f"127.0.0.1:{port}"))
        finally:
            server.close()
            await server.wait_closed()

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as placeholder:
            placeholder.bind(("127.0.0.1", 0))
            closed_port = placeholder.getsockname()[1]
        closed_result = await TcpProbe().probe_check(
            HealthProbeDescriptor(kind=ProbeKind.TCP, target=f"127.0.0.1:{closed_port}")
        )
        return open_result, closed_result

    open_result, closed_result = asyncio.run(_run())

    assert open_result.healthy
    assert not closed_result.healthy
