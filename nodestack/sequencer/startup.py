"""Staged startup execution with health gating and LIFO rollback."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Mapping

from nodestack.domain import (
    OrchestratorError,
    ProbeTimeoutError,
    RuntimeState,
    ServiceSpec,
    domain_build_lifecycle_event,
)
from nodestack.supervisor import ServiceSupervisor

from .planner import StartupPlan, sequencer_transitive_dependents

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_STARTUP_TIMEOUT = 2
EXIT_PARTIAL_TEARDOWN = 3


@dataclass(frozen=True)
class StartupResult:
    """Outcome of a staged startup.

    Attributes:
        status: `success`, `blocked`, `timed_out` or `start_failed`.
        started: Services whose processes were spawned, in start order.
        failed_services: Services marked failed by this startup.
        blocked_services: Services skipped because a dependency is failed.
        failed_stage: Zero-based index of the aborted stage.
        reason: Diagnostic of the abort cause.
        teardown_failures: Services that could not be stopped during rollback.
        timeline: Structured lifecycle events.
    """

    status: str
    started: tuple[str, ...] = ()
    failed_services: tuple[str, ...] = ()
    blocked_services: tuple[str, ...] = ()
    failed_stage: int | None = None
    reason: str | None = None
    teardown_failures: tuple[str, ...] = ()
    timeline: tuple[dict[str, object], ...] = ()

    def result_exit_code(self) -> int:
        """Map the outcome to the CLI exit code."""

        if self.teardown_failures:
            return EXIT_PARTIAL_TEARDOWN
        if self.status in {"timed_out", "start_failed"}:
            return EXIT_STARTUP_TIMEOUT
        if self.status == "blocked":
            return EXIT_CONFIG_ERROR
        return EXIT_OK


class StartupSequencer:
    """Run startup stages through the supervisor and gate them on health."""

    def __init__(self, supervisor: ServiceSupervisor, stage_timeout_seconds: float):
        """Initialize startup sequencer.

        Args:
            supervisor: Service supervisor starting and stopping processes.
            stage_timeout_seconds: Collective health budget of one stage.

        Returns:
            None: Initializer does not return a value.

        Raises:
            ValueError: Raised when dependencies or timeout are invalid.
        """

        if supervisor is None:
            raise ValueError("supervisor must not be None")
        if stage_timeout_seconds <= 0:
            raise ValueError("stage_timeout_seconds must be positive")
        self._supervisor = supervisor
        self._stage_timeout_seconds = stage_timeout_seconds

    async def sequencer_start_all(self, specs: Mapping[str, ServiceSpec], plan: StartupPlan) -> StartupResult:
        """Start every planned service stage by stage.

        Stage members start concurrently and are probed concurrently. A probe
        that times out, or the stage budget elapsing, cancels in-flight probes,
        marks the offending services failed and stops everything started so
        far in reverse start order.

        Args:
            specs: Registered services by name.
            plan: Startup stages.

        Returns:
            StartupResult: Startup outcome with timeline.

        Raises:
            RuntimeError: Raised when runtime state persistence fails.
        """

        timeline: list[dict[str, object]] = [domain_build_lifecycle_event(service="stack", event="startup_started")]
        graph = {name: tuple(spec.dependencies) for name, spec in specs.items()}
        failed_roots = {name for name in plan.plan_service_names() if self._supervisor.supervisor_state(name) == RuntimeState.FAILED}
        blocked = failed_roots | sequencer_transitive_dependents(graph, failed_roots)
        if blocked:
            logger.warning("Skipping services blocked by failed dependencies: %s", ", ".join(sorted(blocked)))
            timeline.append(
                domain_build_lifecycle_event(
                    service="stack",
                    event="blocked",
                    details={"failed": sorted(failed_roots), "blocked": sorted(blocked)},
                )
            )

        started: list[str] = []
        for stage_index, stage in enumerate(plan.stages):
            members = [name for name in stage if name not in blocked]
            if not members:
                continue
            logger.info("Starting stage %d: %s", stage_index, ", ".join(members))
            timeline.append(
                domain_build_lifecycle_event(
                    service="stack",
                    event="stage_started",
                    details={"stage": stage_index, "services": members},
                )
            )

            outcomes = await asyncio.gather(
                *(self._supervisor.supervisor_start(name) for name in members),
                return_exceptions=True,
            )
            start_failures: dict[str, str] = {}
            stage_started: list[str] = []
            for name, outcome in zip(members, outcomes):
                if isinstance(outcome, OrchestratorError):
                    start_failures[name] = str(outcome)
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    stage_started.append(name)
                    timeline.append(domain_build_lifecycle_event(service=name, event="started"))
            started.extend(self._sequencer_order_by_start(stage_started))

            if start_failures:
                for name, reason in sorted(start_failures.items()):
                    timeline.append(domain_build_lifecycle_event(service=name, event="start_failed", details={"reason": reason}))
                return await self._sequencer_abort(
                    status="start_failed",
                    stage_index=stage_index,
                    offenders=start_failures,
                    started=started,
                    blocked=blocked,
                    timeline=timeline,
                )

            offenders = await self._sequencer_gate_stage(stage_started)
            if offenders:
                for name, reason in sorted(offenders.items()):
                    logger.error("%s", ProbeTimeoutError(name, stage_index, reason))
                    timeline.append(domain_build_lifecycle_event(service=name, event="timed_out", details={"reason": reason}))
                return await self._sequencer_abort(
                    status="timed_out",
                    stage_index=stage_index,
                    offenders=offenders,
                    started=started,
                    blocked=blocked,
                    timeline=timeline,
                )
            for name in stage_started:
                timeline.append(domain_build_lifecycle_event(service=name, event="healthy"))

        status = "blocked" if blocked else "success"
        timeline.append(domain_build_lifecycle_event(service="stack", event="startup_completed", details={"status": status}))
        return StartupResult(
            status=status,
            started=tuple(started),
            blocked_services=tuple(sorted(blocked)),
            timeline=tuple(timeline),
        )

    async def _sequencer_gate_stage(self, names: list[str]) -> dict[str, str]:
        """Wait for stage members to become healthy.

        Returns:
            dict[str, str]: Offending services and reasons; empty when the stage is healthy.
        """

        if not names:
            return {}
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._stage_timeout_seconds
        tasks = {
            asyncio.create_task(self._supervisor.supervisor_gate_health(name, budget_seconds=self._stage_timeout_seconds)): name
            for name in names
        }
        pending = set(tasks)
        offenders: dict[str, str] = {}
        try:
            while pending and not offenders:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    name = tasks[task]
                    error = task.exception()
                    if error is not None:
                        offenders[name] = f"health gate raised: {error}"
                        continue
                    result = task.result()
                    if not result.result_is_healthy():
                        offenders[name] = result.reason or "health probe timed out"
            if pending and not offenders:
                for task in pending:
                    offenders[tasks[task]] = f"stage timeout of {self._stage_timeout_seconds:g}s elapsed"
        finally:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        return offenders

    async def _sequencer_abort(
        self,
        status: str,
        stage_index: int,
        offenders: dict[str, str],
        started: list[str],
        blocked: set[str],
        timeline: list[dict[str, object]],
    ) -> StartupResult:
        reason = "; ".join(f"{name}: {detail}" for name, detail in sorted(offenders.items()))
        logger.error("Stage %d aborted: %s", stage_index, reason)
        for name, detail in sorted(offenders.items()):
            self._supervisor.supervisor_mark_failed(name, detail)

        teardown_failures = await self._supervisor.supervisor_stop_all(started)
        for name in reversed(started):
            timeline.append(domain_build_lifecycle_event(service=name, event="stopped"))
        if teardown_failures:
            logger.error("Rollback could not stop: %s", ", ".join(teardown_failures))
        timeline.append(domain_build_lifecycle_event(service="stack", event="startup_aborted", details={"status": status}))
        return StartupResult(
            status=status,
            started=tuple(started),
            failed_services=tuple(sorted(offenders)),
            blocked_services=tuple(sorted(blocked)),
            failed_stage=stage_index,
            reason=reason,
            teardown_failures=tuple(teardown_failures),
            timeline=tuple(timeline),
        )

    def _sequencer_order_by_start(self, names: list[str]) -> list[str]:
        records = {record.service_name: record for record in self._supervisor.supervisor_snapshot()}
        return sorted(names, key=lambda name: records[name].start_sequence or 0)
