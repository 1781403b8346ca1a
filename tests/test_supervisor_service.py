"""Tests for service supervisor lifecycle, restart and teardown behavior."""

from __future__ import annotations

import asyncio
import signal
from datetime import datetime, timezone

import pytest

from nodestack.domain import (
    BackoffStrategy,
    DependencyNotHealthyError,
    HealthProbeDescriptor,
    ProbeKind,
    ProcessCrashError,
    RestartPolicy,
    RuntimeState,
    ServiceRuntimeRecord,
    ServiceSpec,
)
from nodestack.network import ListenerObservation, network_build_policy
from nodestack.probes import AwaitHealthResult, ProbeResult
from nodestack.supervisor import ServiceSupervisor, SupervisorConfig


class _StubHandle:
    """Process handle stub whose exit is driven by the test."""

    def __init__(self, name: str, pid: int, reapable: bool = True):
        """Initialize handle stub.

        Args:
            name: Service name.
            pid: Fake process id.
            reapable: Whether terminate succeeds.

        Returns:
            None: Initializer does not return values.

        Raises:
            RuntimeError: This stub does not raise runtime errors.
        """

        self.name = name
        self.pid = pid
        self.returncode: int | None = None
        self.signals: list[int] = []
        self._reapable = reapable
        self._exited = asyncio.Event()

    async def handle_wait(self) -> int:
        await self._exited.wait()
        return int(self.returncode)

    def handle_signal(self, signum: int) -> None:
        self.signals.append(signum)

    async def handle_terminate(self, grace_seconds: float) -> int | None:
        _ = grace_seconds
        if not self._reapable:
            return None
        if self.returncode is None:
            self.handle_exit(-signal.SIGTERM)
        return self.returncode

    def handle_exit(self, return_code: int) -> None:
        """Simulate process exit with the given status."""

        self.returncode = return_code
        self._exited.set()


class _StubLauncher:
    """Launcher stub recording spawns and terminate order."""

    def __init__(self, unreapable: frozenset[str] = frozenset()):
        self.spawned: list[_StubHandle] = []
        self.terminated: list[str] = []
        self._unreapable = unreapable

    async def launcher_spawn(self, spec: ServiceSpec) -> _StubHandle:
        """Return a new handle stub for the service.

        Args:
            spec: Service definition.

        Returns:
            _StubHandle: Running handle.

        Raises:
            OSError: Raised when the command is `missing-binary`.
        """

        if spec.command[0] == "missing-binary":
            raise FileNotFoundError(spec.command[0])
        handle = _StubHandle(spec.name, pid=1000 + len(self.spawned), reapable=spec.name not in self._unreapable)
        original_terminate = handle.handle_terminate

        async def _terminate(grace_seconds: float) -> int | None:
            self.terminated.append(spec.name)
            return await original_terminate(grace_seconds)

        handle.handle_terminate = _terminate
        self.spawned.append(handle)
        return handle

    def launcher_latest(self, name: str) -> _StubHandle:
        """Return the most recent handle spawned for a service."""

        return [handle for handle in self.spawned if handle.name == name][-1]


class _MemoryStateRepository:
    """In-memory runtime state repository."""

    def __init__(self, initial: list[ServiceRuntimeRecord] | None = None):
        self.records = {record.service_name: record for record in initial or []}
        self.writes = 0

    def db_runtime_state_upsert(self, record: ServiceRuntimeRecord) -> None:
        self.records[record.service_name] = record
        self.writes += 1

    def db_runtime_state_get(self, service_name: str) -> ServiceRuntimeRecord | None:
        return self.records.get(service_name)


class _StubProbeEngine:
    """Probe engine stub with per-service gate and probe outcomes."""

    def __init__(self):
        self.unhealthy: set[str] = set()

    async def await_healthy(self, descriptor, budget_seconds=None, service_name: str = "") -> AwaitHealthResult:
        _ = (descriptor, budget_seconds)
        if service_name in self.unhealthy:
            return AwaitHealthResult(status="timed_out", attempts=3, reason="retry budget exhausted")
        return AwaitHealthResult(status="healthy", attempts=1)

    async def probe(self, descriptor: HealthProbeDescriptor) -> ProbeResult:
        if descriptor.target in self.unhealthy:
            return ProbeResult(healthy=False, detail="connection refused")
        return ProbeResult(healthy=True)


class _RecordingSleep:
    """Awaitable sleep stub recording requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


def _service(
    name: str,
    *dependencies: str,
    restart_policy: RestartPolicy = RestartPolicy.ALWAYS,
    command: str | None = None,
) -> ServiceSpec:
    """Build a service spec whose probe target equals its name.

    Returns:
        ServiceSpec: Service under test.

    Raises:
        RuntimeError: This helper does not raise runtime errors.
    """

    return ServiceSpec(
        name=name,
        command=(command or f"{name}d",),
        dependencies=tuple(dependencies),
        probe=HealthProbeDescriptor(kind=ProbeKind.TCP, target=name, poll_interval_seconds=1.0),
        restart_policy=restart_policy,
    )


def _build_supervisor(
    launcher: _StubLauncher,
    repository: _MemoryStateRepository,
    engine: _StubProbeEngine,
    sleeper: _RecordingSleep,
    crash_rate_threshold: int = 5,
    network_violation_action: str = "degrade",
) -> ServiceSupervisor:
    """Create a supervisor over stubs with deterministic backoff.

    Returns:
        ServiceSupervisor: Supervisor under test.

    Raises:
        ValueError: Raised by the supervisor when configuration is invalid.
    """

    return ServiceSupervisor(
        config=SupervisorConfig(
            stop_grace_seconds=1.0,
            crash_rate_threshold=crash_rate_threshold,
            crash_rate_window_seconds=600.0,
            network_violation_action=network_violation_action,
        ),
        launcher=launcher,
        state_repository=repository,
        probe_engine=engine,
        clock=lambda: 0.0,
        sleep=sleeper.sleep,
        backoff=BackoffStrategy(floor_seconds=2.0, base_seconds=2.0, max_seconds=120.0),
    )


async def _settle(condition, rounds: int = 200) -> None:
    """Yield to the event loop until the condition holds."""

    for _ in range(rounds):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition was not reached")


def test_supervisor_start_refuses_unhealthy_dependencies() -> None:
    """Refuse to start a service before its dependencies are healthy.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when a dependent starts early.
    """

    async def _run() -> None:
        launcher = _StubLauncher()
        supervisor = _build_supervisor(launcher, _MemoryStateRepository(), _StubProbeEngine(), _RecordingSleep())
        supervisor.supervisor_register([_service("bitcoin"), _service("electrs", "bitcoin")])

        with pytest.raises(DependencyNotHealthyError) as error_info:
            await supervisor.supervisor_start("electrs")
        assert error_info.value.dependency_states == {"bitcoin": "pending"}
        assert launcher.spawned == []

        await supervisor.supervisor_start("bitcoin")
        await supervisor.supervisor_gate_health("bitcoin")
        await supervisor.supervisor_start("electrs")
        assert [handle.name for handle in launcher.spawned] == ["bitcoin", "electrs"]
        await supervisor.supervisor_stop_all()
        await supervisor.supervisor_close()

    asyncio.run(_run())


def test_supervisor_persists_every_transition_and_stops_in_reverse_order() -> None:
    """Persist snapshots and tear down strictly in reverse start order.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when teardown order or persisted state is wrong.
    """

    async def _run() -> None:
        launcher = _StubLauncher()
        repository = _MemoryStateRepository()
        supervisor = _build_supervisor(launcher, repository, _StubProbeEngine(), _RecordingSleep())
        supervisor.supervisor_register([_service("a"), _service("b", "a"), _service("c", "b")])

        for name in ("a", "b", "c"):
            await supervisor.supervisor_start(name)
            assert repository.records[name].state == RuntimeState.AWAITING_HEALTH
            await supervisor.supervisor_gate_health(name)
            assert repository.records[name].state == RuntimeState.HEALTHY

        assert [repository.records[name].start_sequence for name in ("a", "b", "c")] == [1, 2, 3]
        assert supervisor.supervisor_running_pids() == {"a": 1000, "b": 1001, "c": 1002}

        failures = await supervisor.supervisor_stop_all()

        assert failures == []
        assert launcher.terminated == ["c", "b", "a"]
        for name in ("a", "b", "c"):
            assert repository.records[name].state == RuntimeState.STOPPED
            assert repository.records[name].stop_requested
            assert repository.records[name].pid is None
        await supervisor.supervisor_close()

    asyncio.run(_run())


def test_supervisor_restarts_crashed_service_with_backoff() -> None:
    """Restart an unexpectedly exited service and gate it on health again.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when the restart policy is not applied.
    """

    async def _run() -> None:
        launcher = _StubLauncher()
        repository = _MemoryStateRepository()
        sleeper = _RecordingSleep()
        supervisor = _build_supervisor(launcher, repository, _StubProbeEngine(), sleeper)
        supervisor.supervisor_register([_service("bitcoin")])
        await supervisor.supervisor_start("bitcoin")
        await supervisor.supervisor_gate_health("bitcoin")

        launcher.launcher_latest("bitcoin").handle_exit(137)
        await _settle(lambda: len(launcher.spawned) == 2 and supervisor.supervisor_state("bitcoin") == RuntimeState.HEALTHY)

        record = repository.records["bitcoin"]
        assert record.restart_count == 1
        assert record.pid == 1001
        assert record.start_sequence == 2
        assert sleeper.delays[0] == 2.0
        await supervisor.supervisor_stop_all()
        await supervisor.supervisor_close()

    asyncio.run(_run())


def test_supervisor_marks_failed_when_crash_rate_exceeds_threshold() -> None:
    """Stop restarting once crashes exceed the threshold inside the window.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when a crash loop is not escalated.
    """

    async def _run() -> None:
        launcher = _StubLauncher()
        repository = _MemoryStateRepository()
        supervisor = _build_supervisor(
            launcher, repository, _StubProbeEngine(), _RecordingSleep(), crash_rate_threshold=2
        )
        supervisor.supervisor_register([_service("electrs")])
        await supervisor.supervisor_start("electrs")
        await supervisor.supervisor_gate_health("electrs")

        for expected_spawns in (2, 3):
            launcher.launcher_latest("electrs").handle_exit(1)
            await _settle(
                lambda: len(launcher.spawned) == expected_spawns
                and supervisor.supervisor_state("electrs") == RuntimeState.HEALTHY
            )
        launcher.launcher_latest("electrs").handle_exit(1)
        await _settle(lambda: supervisor.supervisor_state("electrs") == RuntimeState.FAILED)

        assert len(launcher.spawned) == 3
        assert repository.records["electrs"].detail == "crashed 3 times within 600s"
        assert supervisor.supervisor_running_pids() == {}
        await supervisor.supervisor_close()

    asyncio.run(_run())


def test_supervisor_applies_no_and_on_failure_policies() -> None:
    """Leave exited services down according to their restart policy.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when exit handling ignores the policy.
    """

    async def _run() -> None:
        launcher = _StubLauncher()
        supervisor = _build_supervisor(launcher, _MemoryStateRepository(), _StubProbeEngine(), _RecordingSleep())
        supervisor.supervisor_register(
            [
                _service("oneshot", restart_policy=RestartPolicy.NO),
                _service("indexer", restart_policy=RestartPolicy.ON_FAILURE),
            ]
        )
        for name in ("oneshot", "indexer"):
            await supervisor.supervisor_start(name)
            await supervisor.supervisor_gate_health(name)

        launcher.launcher_latest("oneshot").handle_exit(2)
        launcher.launcher_latest("indexer").handle_exit(0)
        await _settle(
            lambda: supervisor.supervisor_state("oneshot") == RuntimeState.FAILED
            and supervisor.supervisor_state("indexer") == RuntimeState.STOPPED
        )

        assert len(launcher.spawned) == 2
        await supervisor.supervisor_close()

    asyncio.run(_run())


def test_supervisor_spawn_failure_marks_service_failed() -> None:
    """Mark a service failed when its executable cannot be spawned."""

    async def _run() -> None:
        repository = _MemoryStateRepository()
        supervisor = _build_supervisor(_StubLauncher(), repository, _StubProbeEngine(), _RecordingSleep())
        supervisor.supervisor_register([_service("bitcoin", command="missing-binary")])

        with pytest.raises(ProcessCrashError):
            await supervisor.supervisor_start("bitcoin")
        assert repository.records["bitcoin"].state == RuntimeState.FAILED
        assert (repository.records["bitcoin"].detail or "").startswith("spawn failed")

    asyncio.run(_run())


def test_supervisor_keeps_persisted_failure_until_reset() -> None:
    """Keep a failed state across registration and clear it only on reset.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when failed state is lost or reset misbehaves.
    """

    failed_record = ServiceRuntimeRecord(
        service_name="bitcoin",
        state=RuntimeState.FAILED,
        pid=4242,
        start_sequence=7,
        restart_count=5,
        stop_requested=False,
        detail="crashed 6 times within 600s",
        updated_at_utc=datetime(2026, 10, 1, tzinfo=timezone.utc),
    )
    repository = _MemoryStateRepository([failed_record])
    supervisor = _build_supervisor(_StubLauncher(), repository, _StubProbeEngine(), _RecordingSleep())

    supervisor.supervisor_register([_service("bitcoin"), _service("electrs", "bitcoin")])

    assert supervisor.supervisor_state("bitcoin") == RuntimeState.FAILED
    assert supervisor.supervisor_state("electrs") == RuntimeState.PENDING
    with pytest.raises(ValueError):
        supervisor.supervisor_reset("electrs")

    record = supervisor.supervisor_reset("bitcoin")

    assert record.state == RuntimeState.PENDING
    assert record.restart_count == 0
    assert repository.records["bitcoin"].detail == "reset by operator"


def test_supervisor_monitor_round_degrades_and_recovers() -> None:
    """Flip running services between healthy and degraded on probe results.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when runtime probing does not update state.
    """

    async def _run() -> None:
        engine = _StubProbeEngine()
        supervisor = _build_supervisor(_StubLauncher(), _MemoryStateRepository(), engine, _RecordingSleep())
        supervisor.supervisor_register([_service("bitcoin")])
        await supervisor.supervisor_start("bitcoin")
        await supervisor.supervisor_gate_health("bitcoin")

        engine.unhealthy.add("bitcoin")
        assert await supervisor.supervisor_probe_running_once() == {"bitcoin": False}
        assert supervisor.supervisor_state("bitcoin") == RuntimeState.DEGRADED

        engine.unhealthy.clear()
        assert await supervisor.supervisor_probe_running_once() == {"bitcoin": True}
        assert supervisor.supervisor_state("bitcoin") == RuntimeState.HEALTHY

        assert supervisor.supervisor_signal("bitcoin", signal.SIGHUP)
        await supervisor.supervisor_stop_all()
        assert not supervisor.supervisor_signal("bitcoin", signal.SIGHUP)
        await supervisor.supervisor_close()

    asyncio.run(_run())


def test_supervisor_network_audit_stops_violating_service() -> None:
    """Stop and fail a service listening on a host-routable address.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when the violation action is not applied.
    """

    async def _run() -> None:
        launcher = _StubLauncher()
        supervisor = _build_supervisor(
            launcher, _MemoryStateRepository(), _StubProbeEngine(), _RecordingSleep(), network_violation_action="stop"
        )
        services = [_service("bitcoin"), _service("electrs", "bitcoin")]
        supervisor.supervisor_register(services)
        for name in ("bitcoin", "electrs"):
            await supervisor.supervisor_start(name)
            await supervisor.supervisor_gate_health(name)
        plan = network_build_policy(
            [
                ServiceSpec(
                    name=spec.name,
                    command=spec.command,
                    dependencies=spec.dependencies,
                    probe=spec.probe,
                    overlay_address=address,
                )
                for spec, address in zip(services, ("127.77.0.2", "127.77.0.3"))
            ],
            overlay_cidr="127.77.0.0/24",
            public_bind_address="0.0.0.0",
        )

        def _collector(service_pids) -> list[ListenerObservation]:
            assert set(service_pids) == {"bitcoin", "electrs"}
            return [
                ListenerObservation(service="bitcoin", address="127.77.0.2", port=8332),
                ListenerObservation(service="electrs", address="0.0.0.0", port=50001),
            ]

        offenders = await supervisor.supervisor_audit_network_once(plan, _collector)

        assert offenders == ["electrs"]
        assert supervisor.supervisor_state("electrs") == RuntimeState.FAILED
        assert supervisor.supervisor_state("bitcoin") == RuntimeState.HEALTHY
        assert launcher.terminated == ["electrs"]
        await supervisor.supervisor_stop_all()
        await supervisor.supervisor_close()

    asyncio.run(_run())


class _HeldSleep:
    """Awaitable sleep stub that blocks until the test releases it."""

    def __init__(self):
        self.delays: list[float] = []
        self.release = asyncio.Event()

    async def sleep(self, seconds: float) -> None:
        self.delays.append(seconds)
        await self.release.wait()


def test_supervisor_stop_all_cancels_restart_waiting_in_backoff() -> None:
    """Keep a crash-looping service down once teardown ran during its backoff.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when a stopped service is spawned again.
    """

    async def _run() -> None:
        launcher = _StubLauncher()
        repository = _MemoryStateRepository()
        sleeper = _HeldSleep()
        supervisor = _build_supervisor(launcher, repository, _StubProbeEngine(), sleeper)
        supervisor.supervisor_register([_service("electrs")])
        await supervisor.supervisor_start("electrs")

        launcher.launcher_latest("electrs").handle_exit(1)
        await _settle(lambda: sleeper.delays == [2.0])
        supervisor.supervisor_mark_failed("electrs", "stage timeout of 5s elapsed")

        failures = await supervisor.supervisor_stop_all()
        sleeper.release.set()
        for _ in range(20):
            await asyncio.sleep(0)

        assert failures == []
        assert len(launcher.spawned) == 1
        assert supervisor.supervisor_state("electrs") == RuntimeState.FAILED
        assert repository.records["electrs"].stop_requested
        assert repository.records["electrs"].detail == "stage timeout of 5s elapsed"
        await supervisor.supervisor_close()

    asyncio.run(_run())


def test_supervisor_restart_skipped_when_service_failed_during_backoff() -> None:
    """Abandon a pending restart once the service itself is marked failed."""

    async def _run() -> None:
        launcher = _StubLauncher()
        sleeper = _HeldSleep()
        supervisor = _build_supervisor(launcher, _MemoryStateRepository(), _StubProbeEngine(), sleeper)
        supervisor.supervisor_register([_service("electrs")])
        await supervisor.supervisor_start("electrs")

        launcher.launcher_latest("electrs").handle_exit(1)
        await _settle(lambda: sleeper.delays == [2.0])
        supervisor.supervisor_mark_failed("electrs", "network policy violation: public listener")
        sleeper.release.set()
        for _ in range(20):
            await asyncio.sleep(0)

        assert len(launcher.spawned) == 1
        assert supervisor.supervisor_state("electrs") == RuntimeState.FAILED
        await supervisor.supervisor_close()

    asyncio.run(_run())


class _HeldGateProbeEngine(_StubProbeEngine):
    """Probe engine stub whose health gate blocks until released."""

    def __init__(self):
        super().__init__()
        self.gate_calls = 0
        self.cancelled_gates = 0
        self.release = asyncio.Event()

    async def await_healthy(self, descriptor, budget_seconds=None, service_name: str = "") -> AwaitHealthResult:
        self.gate_calls += 1
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            self.cancelled_gates += 1
            raise
        return await super().await_healthy(descriptor, budget_seconds, service_name)


def test_supervisor_stop_cancels_health_gate_of_restarted_service() -> None:
    """Cancel the health gate that a restart leaves running when the service stops.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when a restart gate outlives the stop.
    """

    async def _run() -> None:
        launcher = _StubLauncher()
        engine = _HeldGateProbeEngine()
        repository = _MemoryStateRepository()
        supervisor = _build_supervisor(launcher, repository, engine, _RecordingSleep())
        supervisor.supervisor_register([_service("electrs")])
        await supervisor.supervisor_start("electrs")

        launcher.launcher_latest("electrs").handle_exit(1)
        await _settle(lambda: len(launcher.spawned) == 2 and engine.gate_calls == 1)

        await supervisor.supervisor_stop("electrs")

        assert engine.cancelled_gates == 1
        assert supervisor.supervisor_state("electrs") == RuntimeState.STOPPED
        assert repository.records["electrs"].state == RuntimeState.STOPPED
        await supervisor.supervisor_close()

    asyncio.run(_run())
