"""Service supervisor owning process lifecycles and runtime state.

The supervisor is the only writer of runtime state: every transition is
applied to the in-memory record and persisted immediately. Unexpected exits
are handled by a watcher task per process which applies the restart policy.
"""

from __future__ import annotations

import asyncio
import collections
import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Mapping, Sequence

from nodestack.db import RuntimeStateRepositoryPort
from nodestack.domain import (
    BackoffStrategy,
    DependencyNotHealthyError,
    ProcessCrashError,
    RestartPolicy,
    RuntimeState,
    ServiceRuntimeRecord,
    ServiceSpec,
    domain_utc_now,
)
from nodestack.network import ListenerObservation, NetworkPolicyPlan, network_audit_listeners
from nodestack.probes import AwaitHealthResult, HealthProbeEngine

from .interfaces import ProcessHandlePort, ProcessLauncherPort

logger = logging.getLogger(__name__)

_RUNNING_STATES = frozenset({RuntimeState.STARTING, RuntimeState.AWAITING_HEALTH, RuntimeState.HEALTHY, RuntimeState.DEGRADED})


@dataclass(frozen=True)
class SupervisorConfig:
    """Configuration values for process supervision.

    Attributes:
        stop_grace_seconds: Time between SIGTERM and SIGKILL on stop.
        restart_backoff_floor_seconds: Minimum delay before a restart.
        restart_backoff_max_seconds: Maximum delay before a restart.
        crash_rate_threshold: Crashes tolerated inside the crash window.
        crash_rate_window_seconds: Sliding window for crash counting.
        health_monitor_interval_seconds: Delay between monitor probe rounds.
        network_audit_interval_seconds: Delay between listener audits.
        network_violation_action: `degrade` or `stop` on listener violations.
    """

    stop_grace_seconds: float = 30.0
    restart_backoff_floor_seconds: float = 2.0
    restart_backoff_max_seconds: float = 120.0
    crash_rate_threshold: int = 5
    crash_rate_window_seconds: float = 600.0
    health_monitor_interval_seconds: float = 30.0
    network_audit_interval_seconds: float = 60.0
    network_violation_action: str = "degrade"


class ServiceSupervisor:
    """Start, stop, restart and observe managed service processes."""

    def __init__(
        self,
        config: SupervisorConfig,
        launcher: ProcessLauncherPort,
        state_repository: RuntimeStateRepositoryPort,
        probe_engine: HealthProbeEngine,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        backoff: BackoffStrategy | None = None,
    ):
        """Initialize service supervisor dependencies.

        Args:
            config: Supervision configuration.
            launcher: Process launcher used to spawn services.
            state_repository: Durable runtime state repository.
            probe_engine: Health probe engine used for gating and monitoring.
            clock: Monotonic clock used for crash-rate windows.
            sleep: Awaitable sleep used for backoff and dependency waits.
            backoff: Restart backoff override.

        Returns:
            None: Initializer does not return a value.

        Raises:
            ValueError: Raised when dependencies or config values are invalid.
        """

        if launcher is None:
            raise ValueError("launcher must not be None")
        if state_repository is None:
            raise ValueError("state_repository must not be None")
        if probe_engine is None:
            raise ValueError("probe_engine must not be None")
        if config.stop_grace_seconds <= 0:
            raise ValueError("config.stop_grace_seconds must be positive")
        if config.crash_rate_threshold < 1:
            raise ValueError("config.crash_rate_threshold must be at least 1")
        if config.network_violation_action not in {"degrade", "stop"}:
            raise ValueError("config.network_violation_action must be one of: degrade, stop")

        self._config = config
        self._launcher = launcher
        self._state_repository = state_repository
        self._probe_engine = probe_engine
        self._clock = clock
        self._sleep = sleep
        self._backoff = backoff or BackoffStrategy(
            floor_seconds=config.restart_backoff_floor_seconds,
            base_seconds=config.restart_backoff_floor_seconds,
            max_seconds=config.restart_backoff_max_seconds,
            jitter_min_multiplier=0.8,
            jitter_max_multiplier=1.2,
        )
        self._specs: dict[str, ServiceSpec] = {}
        self._records: dict[str, ServiceRuntimeRecord] = {}
        self._handles: dict[str, ProcessHandlePort] = {}
        self._watchers: dict[str, set[asyncio.Task]] = {}
        self._crash_times: dict[str, collections.deque[float]] = {}
        self._stopping: set[str] = set()
        self._start_counter = 0
        self._closed = False

    def supervisor_register(self, specs: Iterable[ServiceSpec]) -> None:
        """Register services and seed their runtime records.

        A persisted `failed` state survives registration so that dependents
        stay blocked until the operator resets the service.

        Args:
            specs: Resolved service definitions.

        Returns:
            None: Records are persisted as side effect.

        Raises:
            RuntimeError: Raised when runtime state persistence fails.
        """

        for spec in specs:
            self._specs[spec.name] = spec
            self._crash_times.setdefault(spec.name, collections.deque())
            persisted = self._state_repository.db_runtime_state_get(spec.name)
            if persisted is not None and persisted.state == RuntimeState.FAILED:
                self._records[spec.name] = dataclasses.replace(persisted, pid=None, start_sequence=None)
                logger.warning("Service %s is failed from a previous run: %s", spec.name, persisted.detail)
                continue
            self._records[spec.name] = ServiceRuntimeRecord(
                service_name=spec.name,
                state=RuntimeState.PENDING,
                pid=None,
                start_sequence=None,
                restart_count=0,
                stop_requested=False,
                detail=None,
                updated_at_utc=domain_utc_now(),
            )
            self._state_repository.db_runtime_state_upsert(self._records[spec.name])

    def supervisor_state(self, name: str) -> RuntimeState:
        """Return the current state of one registered service."""

        return self._supervisor_record(name).state

    def supervisor_snapshot(self) -> list[ServiceRuntimeRecord]:
        """Return current runtime records ordered by service name."""

        return [self._records[name] for name in sorted(self._records)]

    def supervisor_restart_policy(self, name: str) -> RestartPolicy:
        """Return the restart policy of one registered service."""

        return self._supervisor_spec(name).restart_policy

    def supervisor_running_pids(self) -> dict[str, int]:
        """Return the root pid of every service with a live process."""

        return {name: handle.pid for name, handle in self._handles.items() if handle.returncode is None}

    async def supervisor_start(self, name: str) -> ProcessHandlePort:
        """Start one service once all of its dependencies are healthy.

        Args:
            name: Service identity.

        Returns:
            ProcessHandlePort: Handle of the running process.

        Raises:
            LookupError: Raised when the service is not registered.
            DependencyNotHealthyError: Raised when a dependency is not healthy.
            ProcessCrashError: Raised when the process cannot be spawned.
        """

        spec = self._supervisor_spec(name)
        existing = self._handles.get(name)
        if existing is not None and existing.returncode is None:
            return existing

        dependency_states = {dependency: self.supervisor_state(dependency) for dependency in spec.dependencies}
        unhealthy = {
            dependency: state.value for dependency, state in dependency_states.items() if state != RuntimeState.HEALTHY
        }
        if unhealthy:
            raise DependencyNotHealthyError(name, unhealthy)

        self._stopping.discard(name)
        self._supervisor_transition(name, RuntimeState.STARTING, stop_requested=False, detail=None)
        try:
            handle = await self._launcher.launcher_spawn(spec)
        except OSError as error:
            self._supervisor_transition(name, RuntimeState.FAILED, pid=None, detail=f"spawn failed: {error}")
            raise ProcessCrashError(name, None) from error

        self._start_counter += 1
        self._handles[name] = handle
        self._supervisor_transition(
            name,
            RuntimeState.AWAITING_HEALTH,
            pid=handle.pid,
            start_sequence=self._start_counter,
        )
        watcher = asyncio.create_task(self._supervisor_watch(name, handle))
        self._watchers.setdefault(name, set()).add(watcher)
        watcher.add_done_callback(self._watchers[name].discard)
        return handle

    async def supervisor_gate_health(self, name: str, budget_seconds: float | None = None) -> AwaitHealthResult:
        """Wait for a started service to pass its readiness probe.

        Args:
            name: Service identity.
            budget_seconds: Optional wall-clock budget override.

        Returns:
            AwaitHealthResult: Gate outcome; healthy services are marked healthy.

        Raises:
            LookupError: Raised when the service is not registered.
        """

        spec = self._supervisor_spec(name)
        result = await self._probe_engine.await_healthy(spec.probe, budget_seconds=budget_seconds, service_name=name)
        if result.result_is_healthy() and name in self._handles and self._handles[name].returncode is None:
            self.supervisor_mark_healthy(name)
        return result

    async def supervisor_stop(self, name: str, detail: str | None = None) -> bool:
        """Stop one service on operator request; no restart follows.

        A service already marked `failed` keeps that state after its process
        is stopped.

        Args:
            name: Service identity.
            detail: Optional diagnostic stored with the new state.

        Returns:
            bool: True when the process is gone.

        Raises:
            LookupError: Raised when the service is not registered.
        """

        self._supervisor_spec(name)
        self._stopping.add(name)
        handle = self._handles.get(name)
        return_code: int | None = None
        stopped = True
        if handle is not None:
            if handle.returncode is None:
                logger.info("Stopping service %s (pid %d)", name, handle.pid)
            return_code = await handle.handle_terminate(self._config.stop_grace_seconds)
            stopped = return_code is not None
        current_task = asyncio.current_task()
        watchers = [watcher for watcher in self._watchers.get(name, set()) if watcher is not current_task]
        for watcher in watchers:
            watcher.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)
        if stopped:
            self._handles.pop(name, None)

        final_state = RuntimeState.FAILED if self.supervisor_state(name) == RuntimeState.FAILED else RuntimeState.STOPPED
        if not stopped:
            final_state = RuntimeState.FAILED
            detail = f"process {handle.pid if handle else '?'} could not be reaped"
        self._supervisor_transition(
            name,
            final_state,
            pid=None if stopped else self._records[name].pid,
            stop_requested=True,
            detail=detail if detail is not None else self._records[name].detail,
        )
        if return_code is not None:
            logger.info("Service %s stopped with exit status %s", name, return_code)
        return stopped

    async def supervisor_stop_all(self, names: Sequence[str] | None = None) -> list[str]:
        """Stop services in strict reverse start order.

        Services waiting out a restart backoff have no live process but are
        stopped too, so their pending restart is cancelled.

        Args:
            names: Services to stop; defaults to every service ever started.

        Returns:
            list[str]: Services whose processes could not be stopped.

        Raises:
            RuntimeError: Raised when runtime state persistence fails.
        """

        candidates = set(self._records if names is None else names)
        started = [
            record for name, record in self._records.items() if name in candidates and record.start_sequence is not None
        ]
        started.sort(key=lambda record: record.start_sequence, reverse=True)
        failures: list[str] = []
        for record in started:
            if not await self.supervisor_stop(record.service_name):
                failures.append(record.service_name)
        return failures

    def supervisor_signal(self, name: str, signum: int) -> bool:
        """Deliver a signal to a running service.

        Args:
            name: Service identity.
            signum: Signal number.

        Returns:
            bool: True when the service had a live process.

        Raises:
            LookupError: Raised when the service is not registered.
        """

        self._supervisor_spec(name)
        handle = self._handles.get(name)
        if handle is None or handle.returncode is not None:
            return False
        handle.handle_signal(signum)
        return True

    def supervisor_mark_healthy(self, name: str) -> None:
        self._supervisor_transition(name, RuntimeState.HEALTHY, detail=None)

    def supervisor_mark_degraded(self, name: str, detail: str) -> None:
        self._supervisor_transition(name, RuntimeState.DEGRADED, detail=detail)

    def supervisor_mark_failed(self, name: str, detail: str) -> None:
        logger.error("Service %s failed: %s", name, detail)
        self._supervisor_transition(name, RuntimeState.FAILED, detail=detail)

    def supervisor_reset(self, name: str) -> ServiceRuntimeRecord:
        """Clear a `failed` state so the service can be started again.

        Args:
            name: Service identity.

        Returns:
            ServiceRuntimeRecord: Updated record.

        Raises:
            LookupError: Raised when the service is not registered.
            ValueError: Raised when the service is not failed.
        """

        if self.supervisor_state(name) != RuntimeState.FAILED:
            raise ValueError(f"service {name} is not failed")
        self._crash_times[name].clear()
        self._supervisor_transition(name, RuntimeState.PENDING, pid=None, detail="reset by operator", restart_count=0)
        return self._records[name]

    async def supervisor_monitor_health(self, stop_event: asyncio.Event) -> None:
        """Probe running services periodically and flip healthy/degraded.

        Args:
            stop_event: Event ending the loop.

        Returns:
            None: Runs until the stop event is set.

        Raises:
            asyncio.CancelledError: Propagated when the loop is cancelled.
        """

        while not stop_event.is_set():
            await self.supervisor_probe_running_once()
            if await _supervisor_wait_event(stop_event, self._config.health_monitor_interval_seconds):
                return

    async def supervisor_probe_running_once(self) -> dict[str, bool]:
        """Run one probe round over healthy and degraded services."""

        names = [
            name
            for name, record in sorted(self._records.items())
            if record.state in {RuntimeState.HEALTHY, RuntimeState.DEGRADED} and name in self._handles
        ]
        results = await asyncio.gather(*(self._probe_engine.probe(self._specs[name].probe) for name in names))
        outcome: dict[str, bool] = {}
        for name, result in zip(names, results):
            if self._records[name].state not in {RuntimeState.HEALTHY, RuntimeState.DEGRADED}:
                continue
            outcome[name] = result.healthy
            if result.healthy and self._records[name].state == RuntimeState.DEGRADED:
                logger.info("Service %s recovered", name)
                self.supervisor_mark_healthy(name)
            elif not result.healthy and self._records[name].state == RuntimeState.HEALTHY:
                logger.warning("Service %s degraded: %s", name, result.detail)
                self.supervisor_mark_degraded(name, result.detail or "probe failed")
        return outcome

    async def supervisor_audit_network(
        self,
        plan: NetworkPolicyPlan,
        collector: Callable[[Mapping[str, int]], list[ListenerObservation]],
        stop_event: asyncio.Event,
    ) -> None:
        """Audit listening sockets periodically against the network plan.

        Args:
            plan: Network publication plan.
            collector: Callable returning listeners of the given process trees.
            stop_event: Event ending the loop.

        Returns:
            None: Runs until the stop event is set.

        Raises:
            asyncio.CancelledError: Propagated when the loop is cancelled.
        """

        while not stop_event.is_set():
            await self.supervisor_audit_network_once(plan, collector)
            if await _supervisor_wait_event(stop_event, self._config.network_audit_interval_seconds):
                return

    async def supervisor_audit_network_once(
        self,
        plan: NetworkPolicyPlan,
        collector: Callable[[Mapping[str, int]], list[ListenerObservation]],
    ) -> list[str]:
        """Run one listener audit and apply the violation action.

        Returns:
            list[str]: Services found in violation.
        """

        observations = await asyncio.to_thread(collector, self.supervisor_running_pids())
        violations = network_audit_listeners(plan, observations)
        offenders: dict[str, str] = {}
        for violation in violations:
            logger.error(
                "Network policy violation by %s on %s:%d: %s",
                violation.service,
                violation.address,
                violation.port,
                violation.reason,
            )
            offenders.setdefault(violation.service, f"network policy violation: {violation.reason}")

        for name, detail in sorted(offenders.items()):
            if self._config.network_violation_action == "stop":
                self.supervisor_mark_failed(name, detail)
                await self.supervisor_stop(name, detail=detail)
            elif self.supervisor_state(name) in _RUNNING_STATES:
                self.supervisor_mark_degraded(name, detail)
        return sorted(offenders)

    async def supervisor_close(self) -> None:
        """Cancel watcher tasks without touching processes."""

        self._closed = True
        watchers = [watcher for service_watchers in self._watchers.values() for watcher in service_watchers]
        self._watchers.clear()
        for watcher in watchers:
            watcher.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)

    async def _supervisor_watch(self, name: str, handle: ProcessHandlePort) -> None:
        return_code = await handle.handle_wait()
        if name in self._stopping or self._closed:
            return
        if self._handles.get(name) is handle:
            del self._handles[name]
        logger.warning("Service %s exited unexpectedly with status %s", name, return_code)
        await self._supervisor_handle_exit(name, return_code)

    async def _supervisor_handle_exit(self, name: str, return_code: int) -> None:
        spec = self._specs[name]
        policy = spec.restart_policy
        if policy == RestartPolicy.NO or (policy == RestartPolicy.ON_FAILURE and return_code == 0):
            final_state = RuntimeState.STOPPED if return_code == 0 else RuntimeState.FAILED
            self._supervisor_transition(name, final_state, pid=None, detail=f"exited with status {return_code}")
            return

        now = self._clock()
        crash_times = self._crash_times[name]
        crash_times.append(now)
        while crash_times and now - crash_times[0] > self._config.crash_rate_window_seconds:
            crash_times.popleft()
        if len(crash_times) > self._config.crash_rate_threshold:
            detail = f"crashed {len(crash_times)} times within {self._config.crash_rate_window_seconds:g}s"
            logger.error("Service %s failed: %s", name, detail)
            self._supervisor_transition(name, RuntimeState.FAILED, pid=None, detail=detail)
            return

        restart_count = self._records[name].restart_count + 1
        self._supervisor_transition(
            name,
            RuntimeState.PENDING,
            pid=None,
            restart_count=restart_count,
            detail=f"restarting after exit status {return_code}",
        )
        await self._sleep(self._backoff.strategy_calculate_wait_seconds(len(crash_times) - 1))

        while True:
            if name in self._stopping or self._closed or self.supervisor_state(name) == RuntimeState.FAILED:
                return
            dependency_states = {dependency: self.supervisor_state(dependency) for dependency in spec.dependencies}
            failed_dependencies = sorted(
                dependency for dependency, state in dependency_states.items() if state == RuntimeState.FAILED
            )
            if failed_dependencies:
                self._supervisor_transition(
                    name,
                    RuntimeState.PENDING,
                    detail=f"blocked by failed dependency: {', '.join(failed_dependencies)}",
                )
                return
            if all(state == RuntimeState.HEALTHY for state in dependency_states.values()):
                break
            await self._sleep(spec.probe.poll_interval_seconds)

        try:
            await self.supervisor_start(name)
        except DependencyNotHealthyError as error:
            self._supervisor_transition(name, RuntimeState.PENDING, detail=str(error))
            return
        except ProcessCrashError:
            return

        result = await self.supervisor_gate_health(name)
        if not result.result_is_healthy() and self.supervisor_state(name) == RuntimeState.AWAITING_HEALTH:
            self.supervisor_mark_degraded(name, result.reason or "health gate failed after restart")

    def _supervisor_transition(self, name: str, state: RuntimeState, **changes) -> None:
        record = dataclasses.replace(
            self._supervisor_record(name),
            state=state,
            updated_at_utc=domain_utc_now(),
            **changes,
        )
        self._records[name] = record
        self._state_repository.db_runtime_state_upsert(record)
        logger.debug("Service %s -> %s", name, state.value)

    def _supervisor_spec(self, name: str) -> ServiceSpec:
        try:
            return self._specs[name]
        except KeyError as error:
            raise LookupError(f"service {name} is not registered") from error

    def _supervisor_record(self, name: str) -> ServiceRuntimeRecord:
        try:
            return self._records[name]
        except KeyError as error:
            raise LookupError(f"service {name} is not registered") from error


async def _supervisor_wait_event(event: asyncio.Event, timeout_seconds: float) -> bool:
    try:
        await asyncio.wait_for(event.wait(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        return False
    return True
