"""Tests for staged startup, health gating and rollback."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from nodestack.domain import (
    BackoffStrategy,
    HealthProbeDescriptor,
    ProbeKind,
    RuntimeState,
    ServiceRuntimeRecord,
    ServiceSpec,
)
from nodestack.probes import AwaitHealthResult
from nodestack.sequencer import (
    EXIT_CONFIG_ERROR,
    EXIT_OK,
    EXIT_PARTIAL_TEARDOWN,
    EXIT_STARTUP_TIMEOUT,
    StartupSequencer,
    sequencer_plan,
)
from nodestack.supervisor import ServiceSupervisor, SupervisorConfig


class _StubHandle:
    """Process handle stub that exits only when terminated."""

    def __init__(self, name: str, pid: int, journal: list[str], reapable: bool):
        self.name = name
        self.pid = pid
        self.returncode: int | None = None
        self._journal = journal
        self._reapable = reapable
        self._exited = asyncio.Event()

    async def handle_wait(self) -> int:
        await self._exited.wait()
        return int(self.returncode)

    def handle_signal(self, signum: int) -> None:
        _ = signum

    async def handle_terminate(self, grace_seconds: float) -> int | None:
        """Record the stop and exit unless the stub is unreapable.

        Args:
            grace_seconds: Grace period, ignored.

        Returns:
            int | None: Exit status, or None when unreapable.

        Raises:
            RuntimeError: This stub does not raise runtime errors.
        """

        _ = grace_seconds
        self._journal.append(f"stop:{self.name}")
        if not self._reapable:
            return None
        self.returncode = -15
        self._exited.set()
        return self.returncode


class _StubLauncher:
    """Launcher stub journaling spawn and stop events in order."""

    def __init__(self, unreapable: frozenset[str] = frozenset()):
        self.journal: list[str] = []
        self._unreapable = unreapable
        self._next_pid = 2000

    async def launcher_spawn(self, spec: ServiceSpec) -> _StubHandle:
        self.journal.append(f"start:{spec.name}")
        self._next_pid += 1
        return _StubHandle(spec.name, self._next_pid, self.journal, spec.name not in self._unreapable)


class _MemoryStateRepository:
    """In-memory runtime state repository."""

    def __init__(self, initial: list[ServiceRuntimeRecord] | None = None):
        self.records = {record.service_name: record for record in initial or []}

    def db_runtime_state_upsert(self, record: ServiceRuntimeRecord) -> None:
        self.records[record.service_name] = record

    def db_runtime_state_get(self, service_name: str) -> ServiceRuntimeRecord | None:
        return self.records.get(service_name)


class _GateEngine:
    """Probe engine stub with unhealthy and never-answering services."""

    def __init__(self, unhealthy: frozenset[str] = frozenset(), hanging: frozenset[str] = frozenset()):
        self.unhealthy = unhealthy
        self.hanging = hanging
        self.cancelled: list[str] = []

    async def await_healthy(self, descriptor, budget_seconds=None, service_name: str = "") -> AwaitHealthResult:
        """Return the scripted gate outcome for a service.

        Args:
            descriptor: Probe configuration, ignored.
            budget_seconds: Gate budget, ignored.
            service_name: Service being gated.

        Returns:
            AwaitHealthResult: Scripted outcome.

        Raises:
            asyncio.CancelledError: Raised when a hanging gate is cancelled.
        """

        _ = (descriptor, budget_seconds)
        if service_name in self.hanging:
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                self.cancelled.append(service_name)
                raise
        if service_name in self.unhealthy:
            return AwaitHealthResult(status="timed_out", attempts=10, reason="retry budget exhausted: exit code 1")
        return AwaitHealthResult(status="healthy", attempts=1)


def _service(name: str, *dependencies: str) -> ServiceSpec:
    """Build a service spec with a command probe.

    Returns:
        ServiceSpec: Service under test.

    Raises:
        RuntimeError: This helper does not raise runtime errors.
    """

    return ServiceSpec(
        name=name,
        command=(f"{name}d",),
        dependencies=tuple(dependencies),
        probe=HealthProbeDescriptor(kind=ProbeKind.COMMAND, target="true"),
    )


async def _run_startup(
    services: list[ServiceSpec],
    engine: _GateEngine,
    launcher: _StubLauncher,
    repository: _MemoryStateRepository,
    stage_timeout_seconds: float = 30.0,
):
    """Register services and run one staged startup.

    Returns:
        tuple: Startup result and supervisor.

    Raises:
        RuntimeError: Raised when runtime state persistence fails.
    """

    supervisor = ServiceSupervisor(
        config=SupervisorConfig(stop_grace_seconds=1.0),
        launcher=launcher,
        state_repository=repository,
        probe_engine=engine,
    )
    supervisor.supervisor_register(services)
    sequencer = StartupSequencer(supervisor=supervisor, stage_timeout_seconds=stage_timeout_seconds)
    result = await sequencer.sequencer_start_all(
        {service.name: service for service in services},
        sequencer_plan(services),
    )
    return result, supervisor


def test_sequencer_startup_success_marks_every_service_healthy() -> None:
    """Start all stages in dependency order when every gate passes.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when start order or final states are wrong.
    """

    async def _run() -> None:
        launcher = _StubLauncher()
        repository = _MemoryStateRepository()
        services = [_service("a"), _service("b", "a"), _service("c", "b")]

        result, supervisor = await _run_startup(services, _GateEngine(), launcher, repository)

        assert result.status == "success"
        assert result.result_exit_code() == EXIT_OK
        assert result.started == ("a", "b", "c")
        assert launcher.journal == ["start:a", "start:b", "start:c"]
        assert {name: record.state for name, record in repository.records.items()} == {
            "a": RuntimeState.HEALTHY,
            "b": RuntimeState.HEALTHY,
            "c": RuntimeState.HEALTHY,
        }
        events = [(event["service"], event["event"]) for event in result.timeline]
        assert events[0] == ("stack", "startup_started")
        assert events[-1] == ("stack", "startup_completed")
        await supervisor.supervisor_stop_all()
        await supervisor.supervisor_close()

    asyncio.run(_run())


def test_sequencer_startup_timeout_rolls_back_in_reverse_order() -> None:
    """Abort on a failed gate, never start later stages, stop in LIFO order.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when rollback or exit code are wrong.
    """

    async def _run() -> None:
        launcher = _StubLauncher()
        repository = _MemoryStateRepository()
        services = [_service("a"), _service("b", "a"), _service("c", "b")]

        result, supervisor = await _run_startup(services, _GateEngine(unhealthy=frozenset({"b"})), launcher, repository)

        assert result.status == "timed_out"
        assert result.result_exit_code() == EXIT_STARTUP_TIMEOUT
        assert result.failed_stage == 1
        assert result.failed_services == ("b",)
        assert launcher.journal == ["start:a", "start:b", "stop:b", "stop:a"]
        assert repository.records["a"].state == RuntimeState.STOPPED
        assert repository.records["b"].state == RuntimeState.FAILED
        assert repository.records["c"].state == RuntimeState.PENDING
        assert "retry budget exhausted" in (result.reason or "")
        await supervisor.supervisor_close()

    asyncio.run(_run())


def test_sequencer_startup_stage_budget_cancels_hanging_gates() -> None:
    """Cancel in-flight gates once the collective stage budget elapses.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when hanging gates survive the stage budget.
    """

    async def _run() -> None:
        launcher = _StubLauncher()
        repository = _MemoryStateRepository()
        engine = _GateEngine(hanging=frozenset({"electrs"}))
        services = [_service("bitcoin"), _service("electrs", "bitcoin"), _service("explorer", "bitcoin")]

        result, supervisor = await _run_startup(services, engine, launcher, repository, stage_timeout_seconds=0.05)

        assert result.status == "timed_out"
        assert result.failed_services == ("electrs",)
        assert engine.cancelled == ["electrs"]
        assert launcher.journal[:3] == ["start:bitcoin", "start:electrs", "start:explorer"]
        assert launcher.journal[3:] == ["stop:explorer", "stop:electrs", "stop:bitcoin"]
        assert repository.records["explorer"].state == RuntimeState.STOPPED
        assert "stage timeout of 0.05s elapsed" in (result.reason or "")
        await supervisor.supervisor_close()

    asyncio.run(_run())


def test_sequencer_startup_skips_dependents_of_failed_service() -> None:
    """Skip a persisted failed service and its dependents but start the rest.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when blocked services are started.
    """

    async def _run() -> None:
        launcher = _StubLauncher()
        repository = _MemoryStateRepository(
            [
                ServiceRuntimeRecord(
                    service_name="electrs",
                    state=RuntimeState.FAILED,
                    pid=None,
                    start_sequence=None,
                    restart_count=0,
                    stop_requested=False,
                    detail="crashed 6 times within 600s",
                    updated_at_utc=datetime(2026, 10, 1, tzinfo=timezone.utc),
                )
            ]
        )
        services = [_service("bitcoin"), _service("electrs", "bitcoin"), _service("proxy", "electrs")]

        result, supervisor = await _run_startup(services, _GateEngine(), launcher, repository)

        assert result.status == "blocked"
        assert result.result_exit_code() == EXIT_CONFIG_ERROR
        assert result.blocked_services == ("electrs", "proxy")
        assert launcher.journal == ["start:bitcoin"]
        assert repository.records["bitcoin"].state == RuntimeState.HEALTHY
        await supervisor.supervisor_stop_all()
        await supervisor.supervisor_close()

    asyncio.run(_run())


def test_sequencer_startup_reports_partial_teardown() -> None:
    """Exit with the partial-teardown code when rollback cannot reap a process."""

    async def _run() -> None:
        launcher = _StubLauncher(unreapable=frozenset({"a"}))
        repository = _MemoryStateRepository()
        services = [_service("a"), _service("b", "a")]

        result, supervisor = await _run_startup(services, _GateEngine(unhealthy=frozenset({"b"})), launcher, repository)

        assert result.teardown_failures == ("a",)
        assert result.result_exit_code() == EXIT_PARTIAL_TEARDOWN
        assert repository.records["a"].state == RuntimeState.FAILED
        await supervisor.supervisor_close()

    asyncio.run(_run())


class _CrashingLauncher(_StubLauncher):
    """Launcher stub whose processes exit with status 1 right after spawn."""

    async def launcher_spawn(self, spec: ServiceSpec) -> _StubHandle:
        handle = await super().launcher_spawn(spec)
        handle.returncode = 1
        handle._exited.set()
        return handle


def test_sequencer_rollback_keeps_crash_looping_service_down() -> None:
    """Never respawn a crash-looping service after its stage was rolled back.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when a pending restart survives the rollback.
    """

    async def _run() -> None:
        launcher = _CrashingLauncher()
        repository = _MemoryStateRepository()
        services = [_service("a")]
        supervisor = ServiceSupervisor(
            config=SupervisorConfig(stop_grace_seconds=1.0),
            launcher=launcher,
            state_repository=repository,
            probe_engine=_GateEngine(unhealthy=frozenset({"a"})),
            backoff=BackoffStrategy(floor_seconds=0.05, base_seconds=0.05, max_seconds=0.1),
        )
        supervisor.supervisor_register(services)
        sequencer = StartupSequencer(supervisor=supervisor, stage_timeout_seconds=5.0)

        result = await sequencer.sequencer_start_all({"a": services[0]}, sequencer_plan(services))
        await asyncio.sleep(0.3)

        assert result.status == "timed_out"
        assert launcher.journal.count("start:a") == 1
        assert repository.records["a"].state == RuntimeState.FAILED
        assert repository.records["a"].stop_requested
        await supervisor.supervisor_close()

    asyncio.run(_run())
