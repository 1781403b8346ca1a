"""Main module entrypoint for the orchestrator command line.

Exit codes: 0 success, 1 configuration or validation error, 2 startup
timeout (or an unhealthy service for `health`), 3 partial failure while
tearing services down.
"""

from __future__ import annotations

import argparse
import asyncio
import collections
import json
import logging
import os
import signal
import socket
import sys
import threading
import time
from dataclasses import replace
from pathlib import Path

import uvicorn

from nodestack.api import create_api_application
from nodestack.api.routers.certificates import api_serialize_certificate_record
from nodestack.bootstrap import (
    StackDefinition,
    StateServices,
    bootstrap_create_certificate_manager,
    bootstrap_create_state_services,
    bootstrap_create_supervisor,
    bootstrap_load_stack,
    bootstrap_network_policy_path,
    bootstrap_service_names,
)
from nodestack.config import OrchestratorSettings, SettingsLoadError, config_load_settings
from nodestack.db import db_upgrade_schema
from nodestack.domain import ConfigError, MissingCredentialsError, RuntimeState, ServiceRuntimeRecord, domain_utc_now
from nodestack.network import network_write_policy
from nodestack.probes import HealthProbeEngine
from nodestack.sequencer import (
    EXIT_CONFIG_ERROR,
    EXIT_OK,
    EXIT_PARTIAL_TEARDOWN,
    EXIT_STARTUP_TIMEOUT,
    StartupSequencer,
)
from nodestack.supervisor import process_collect_listeners, process_is_running, process_log_path, process_terminate_pid

logger = logging.getLogger(__name__)

_COMMANDS = ("init", "plan", "up", "down", "status", "health", "logs", "cert-status", "reset")


def main() -> None:
    """Run the selected command and exit with its status code.

    Returns:
        None: This function exits the interpreter.

    Raises:
        SystemExit: Always raised with the command exit code.
    """

    raise SystemExit(main_run(sys.argv[1:]))


def main_run(argv: list[str] | None = None) -> int:
    """Parse arguments, run one command and return its exit code.

    Args:
        argv: Command-line arguments without the program name.

    Returns:
        int: Process exit code.

    Raises:
        SystemExit: Raised by argparse for invalid arguments.
    """

    parsed_arguments = main_build_parser().parse_args(argv)
    try:
        settings = config_load_settings(**main_settings_overrides(parsed_arguments))
    except SettingsLoadError as error:
        print(f"error: {error}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    logging_configure(settings.log_level)

    handlers = {
        "init": main_command_init,
        "plan": main_command_plan,
        "up": main_command_up,
        "down": main_command_down,
        "status": main_command_status,
        "health": main_command_health,
        "logs": main_command_logs,
        "cert-status": main_command_cert_status,
        "reset": main_command_reset,
    }
    try:
        return handlers[parsed_arguments.command](settings, parsed_arguments)
    except MissingCredentialsError as error:
        print(f"error: {error}", file=sys.stderr)
        for key in error.missing_keys:
            print(f"  missing: {key}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except ConfigError as error:
        print(f"error: {error}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except RuntimeError as error:
        logger.debug("Command %s failed", parsed_arguments.command, exc_info=True)
        cause = f": {error.__cause__}" if error.__cause__ is not None else ""
        print(f"error: {error}{cause}", file=sys.stderr)
        print("hint: run `nodestack init` if the state database was never created", file=sys.stderr)
        return EXIT_CONFIG_ERROR


def main_build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""

    argument_parser = argparse.ArgumentParser(prog="nodestack", description="Blockchain service stack orchestrator")
    argument_parser.add_argument("--manifest", dest="manifest", type=str, help="Service manifest path override")
    argument_parser.add_argument("--credentials", dest="credentials", type=str, help="Credential file path override")
    argument_parser.add_argument("--data-root", dest="data_root", type=str, help="Data root directory override")
    argument_parser.add_argument(
        "command",
        choices=_COMMANDS,
        help="`init` validates and prepares, `up` starts and supervises, `down` stops the stack",
        type=str,
    )
    argument_parser.add_argument("target", nargs="?", type=str, help="Service for `logs`/`reset`, domain for `cert-status`")
    argument_parser.add_argument("--lines", dest="lines", type=int, default=100, help="Log lines printed by `logs`")
    argument_parser.add_argument("--json", dest="as_json", action="store_true", help="Print machine-readable output")
    return argument_parser


def main_settings_overrides(parsed_arguments: argparse.Namespace) -> dict[str, object]:
    """Map CLI path overrides to settings field values."""

    overrides: dict[str, object] = {}
    if parsed_arguments.manifest:
        overrides["stack_manifest_path"] = parsed_arguments.manifest
    if parsed_arguments.credentials:
        overrides["stack_credentials_file"] = parsed_arguments.credentials
    if parsed_arguments.data_root:
        overrides["stack_data_root"] = parsed_arguments.data_root
    return overrides


def logging_configure(level: str) -> None:
    """Configure root logging for the orchestrator process."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def main_command_init(settings: OrchestratorSettings, parsed_arguments: argparse.Namespace) -> int:
    """Validate the stack, create directories and migrate the state database."""

    definition = bootstrap_load_stack(settings)
    directories = [
        Path(settings.stack_data_root),
        Path(settings.stack_log_directory),
        Path(settings.tls_certificate_directory),
    ]
    directories.extend(
        Path(service.environment["NODESTACK_DATA_DIR"])
        for service in definition.services
        if "NODESTACK_DATA_DIR" in service.environment
    )
    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)
    db_upgrade_schema(settings.stack_state_database_url)
    policy_path = network_write_policy(definition.network_plan, bootstrap_network_policy_path(settings))

    print(f"credentials: ok ({len(definition.credentials.credential_values())} values from {definition.credentials.source_label})")
    print(f"services: {', '.join(service.name for service in definition.services)}")
    print(f"state database: migrated ({settings.stack_state_database_url})")
    print(f"network policy: {policy_path}")
    return EXIT_OK


def main_command_plan(settings: OrchestratorSettings, parsed_arguments: argparse.Namespace) -> int:
    """Print startup stages and the network publication plan."""

    definition = bootstrap_load_stack(settings)
    if parsed_arguments.as_json:
        payload = {
            "stages": [list(stage) for stage in definition.plan.stages],
            "network": definition.network_plan.plan_as_dict(),
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return EXIT_OK

    for index, stage in enumerate(definition.plan.stages):
        print(f"stage {index}: {', '.join(stage)}")
    print("internal bindings:")
    for binding in definition.network_plan.internal_bindings:
        print(f"  {binding.service}.{binding.port_name} -> {binding.bind_address}:{binding.port}")
    print("exposed bindings:")
    for binding in definition.network_plan.exposed_bindings:
        print(f"  {binding.service}.{binding.port_name} -> {binding.bind_address}:{binding.port}")
    for route in definition.network_plan.routes:
        print(
            f"  route {route.domain or '*'}:{route.public_port} -> "
            f"{route.upstream_service} {route.upstream_address}:{route.upstream_port}"
        )
    return EXIT_OK


def main_command_up(settings: OrchestratorSettings, parsed_arguments: argparse.Namespace) -> int:
    """Start the stack and supervise it in the foreground."""

    definition = bootstrap_load_stack(settings)
    db_upgrade_schema(settings.stack_state_database_url)
    state_services = bootstrap_create_state_services(settings)

    registration = state_services.state_repository.db_orchestrator_get()
    if registration is not None and registration.pid != os.getpid() and process_is_running(registration.pid):
        print(f"error: stack is already supervised by pid {registration.pid}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    return asyncio.run(main_run_stack(definition, state_services))


async def main_run_stack(definition: StackDefinition, state_services: StateServices) -> int:
    """Run the sequencer, then supervise until SIGINT or SIGTERM.

    Args:
        definition: Resolved stack.
        state_services: Durable state services.

    Returns:
        int: Exit code.

    Raises:
        RuntimeError: Raised when runtime state persistence fails.
    """

    settings = definition.settings
    state_repository = state_services.state_repository
    probe_engine = HealthProbeEngine()
    supervisor = bootstrap_create_supervisor(settings, state_repository, probe_engine)
    supervisor.supervisor_register(definition.services)
    state_repository.db_runtime_state_delete_absent([service.name for service in definition.services])
    network_write_policy(definition.network_plan, bootstrap_network_policy_path(settings))
    state_repository.db_orchestrator_register(os.getpid(), socket.gethostname())

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)

    background_tasks: list[asyncio.Task] = []
    api_server: uvicorn.Server | None = None
    api_thread: threading.Thread | None = None
    try:
        domains = definition.network_plan.plan_domains()
        if settings.tls_enabled and domains:
            certificate_manager = bootstrap_create_certificate_manager(
                settings,
                state_services.certificate_repository,
                supervisor,
                definition.network_plan.proxy_service,
            )
            background_tasks.append(
                asyncio.create_task(
                    certificate_manager.manager_run_forever(domains, stop_event, settings.tls_check_interval_seconds)
                )
            )

        sequencer = StartupSequencer(supervisor=supervisor, stage_timeout_seconds=settings.stage_timeout_seconds)
        startup_task = asyncio.create_task(
            sequencer.sequencer_start_all(definition.definition_services_by_name(), definition.plan)
        )
        stop_waiter = asyncio.create_task(stop_event.wait())
        await asyncio.wait([startup_task, stop_waiter], return_when=asyncio.FIRST_COMPLETED)
        if not startup_task.done():
            logger.warning("Shutdown requested during startup")
            startup_task.cancel()
            await asyncio.gather(startup_task, return_exceptions=True)
            teardown_failures = await supervisor.supervisor_stop_all()
            return EXIT_PARTIAL_TEARDOWN if teardown_failures else EXIT_OK
        result = startup_task.result()
        if result.status in {"timed_out", "start_failed"}:
            print(f"error: startup aborted in stage {result.failed_stage}: {result.reason}", file=sys.stderr)
            if result.teardown_failures:
                print(f"error: could not stop: {', '.join(result.teardown_failures)}", file=sys.stderr)
            return result.result_exit_code()
        if result.blocked_services:
            print(f"warning: blocked by failed dependencies: {', '.join(result.blocked_services)}", file=sys.stderr)
        print(f"stack up: {', '.join(result.started)}")

        background_tasks.append(asyncio.create_task(supervisor.supervisor_monitor_health(stop_event)))
        background_tasks.append(
            asyncio.create_task(
                supervisor.supervisor_audit_network(definition.network_plan, process_collect_listeners, stop_event)
            )
        )
        if settings.status_api_enabled:
            api_server = uvicorn.Server(
                uvicorn.Config(
                    create_api_application(
                        settings=settings,
                        db_health_service=state_services.db_health_service,
                        state_repository=state_repository,
                        certificate_repository=state_services.certificate_repository,
                    ),
                    host=settings.status_api_host,
                    port=settings.status_api_port,
                    log_level=settings.log_level.lower(),
                )
            )
            api_thread = threading.Thread(target=api_server.run, name="nodestack-status-api", daemon=True)
            api_thread.start()

        await asyncio.wait([stop_waiter, *background_tasks], return_when=asyncio.FIRST_COMPLETED)
        stop_waiter.cancel()
        for task in background_tasks:
            if task.done() and not task.cancelled() and task.exception() is not None:
                logger.error("Background task failed", exc_info=task.exception())
        logger.info("Shutting down stack")

        teardown_failures = await supervisor.supervisor_stop_all()
        if teardown_failures:
            print(f"error: could not stop: {', '.join(teardown_failures)}", file=sys.stderr)
            return EXIT_PARTIAL_TEARDOWN
        return result.result_exit_code()
    finally:
        stop_event.set()
        for task in background_tasks:
            task.cancel()
        await asyncio.gather(*background_tasks, return_exceptions=True)
        if api_server is not None:
            api_server.should_exit = True
        if api_thread is not None:
            await asyncio.to_thread(api_thread.join, 10.0)
        await supervisor.supervisor_close()
        state_repository.db_orchestrator_clear(os.getpid())
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)


def main_command_down(settings: OrchestratorSettings, parsed_arguments: argparse.Namespace) -> int:
    """Stop the stack through its orchestrator, or directly by recorded pids."""

    state_services = bootstrap_create_state_services(settings)
    state_repository = state_services.state_repository
    registration = state_repository.db_orchestrator_get()
    if registration is not None and process_is_running(registration.pid):
        print(f"signalling orchestrator pid {registration.pid}")
        os.kill(registration.pid, signal.SIGTERM)
        service_count = max(1, len(state_repository.db_runtime_state_list()))
        deadline = time.monotonic() + settings.stop_grace_seconds * (service_count + 1)
        while time.monotonic() < deadline and process_is_running(registration.pid):
            time.sleep(0.5)
        if not process_is_running(registration.pid):
            print("stack stopped")
            return EXIT_OK
        print("orchestrator did not exit; stopping recorded processes directly", file=sys.stderr)

    failures: list[str] = []
    records = [record for record in state_repository.db_runtime_state_list() if record.pid is not None]
    records.sort(key=lambda record: record.start_sequence or 0, reverse=True)
    for record in records:
        print(f"stopping {record.service_name} (pid {record.pid})")
        if not process_terminate_pid(record.pid, settings.stop_grace_seconds):
            failures.append(record.service_name)
            continue
        final_state = RuntimeState.FAILED if record.state == RuntimeState.FAILED else RuntimeState.STOPPED
        state_repository.db_runtime_state_upsert(
            _main_replace_record(record, state=final_state, pid=None, stop_requested=True)
        )
    if registration is not None:
        state_repository.db_orchestrator_clear(registration.pid)
    if failures:
        print(f"error: could not stop: {', '.join(failures)}", file=sys.stderr)
        return EXIT_PARTIAL_TEARDOWN
    print("stack stopped")
    return EXIT_OK


def main_command_status(settings: OrchestratorSettings, parsed_arguments: argparse.Namespace) -> int:
    """Print the persisted runtime state of every service."""

    state_services = bootstrap_create_state_services(settings)
    records = state_services.state_repository.db_runtime_state_list()
    registration = state_services.state_repository.db_orchestrator_get()
    if parsed_arguments.as_json:
        payload = {
            "orchestrator_pid": registration.pid if registration else None,
            "services": [
                {
                    "service_name": record.service_name,
                    "state": record.state.value,
                    "pid": record.pid,
                    "restart_count": record.restart_count,
                    "detail": record.detail,
                    "updated_at_utc": record.updated_at_utc.isoformat(),
                }
                for record in records
            ],
        }
        print(json.dumps(payload, indent=2))
        return EXIT_OK

    if registration is not None:
        print(f"orchestrator: pid {registration.pid} on {registration.hostname} since {registration.started_at_utc.isoformat()}")
    else:
        print("orchestrator: not running")
    if not records:
        print("no services recorded; run `nodestack up`")
        return EXIT_OK
    width = max(len(record.service_name) for record in records)
    for record in records:
        pid = str(record.pid) if record.pid is not None else "-"
        line = f"{record.service_name:<{width}}  {record.state.value:<15}  pid={pid:<8}  restarts={record.restart_count}"
        if record.detail:
            line += f"  {record.detail}"
        print(line)
    return EXIT_OK


def main_command_health(settings: OrchestratorSettings, parsed_arguments: argparse.Namespace) -> int:
    """Probe every service once, concurrently."""

    definition = bootstrap_load_stack(settings)
    probe_engine = HealthProbeEngine()

    async def _probe_all():
        return await asyncio.gather(*(probe_engine.probe(service.probe) for service in definition.services))

    results = asyncio.run(_probe_all())
    unhealthy = False
    for service, result in zip(definition.services, results):
        if result.healthy:
            print(f"{service.name}: healthy")
        else:
            unhealthy = True
            print(f"{service.name}: unhealthy ({result.detail or 'probe failed'})")
    return EXIT_STARTUP_TIMEOUT if unhealthy else EXIT_OK


def main_command_logs(settings: OrchestratorSettings, parsed_arguments: argparse.Namespace) -> int:
    """Print the tail of one service log."""

    if not parsed_arguments.target:
        print("error: `logs` requires a service name", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    if parsed_arguments.lines <= 0:
        print("error: --lines must be positive", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    service_names = bootstrap_service_names(settings)
    if parsed_arguments.target not in service_names:
        print(
            f"error: unknown service {parsed_arguments.target}; declared: {', '.join(service_names)}",
            file=sys.stderr,
        )
        return EXIT_CONFIG_ERROR
    log_path = process_log_path(settings.stack_log_directory, parsed_arguments.target)
    if not log_path.is_file():
        print(f"error: no log for service {parsed_arguments.target} at {log_path}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    with log_path.open("r", encoding="utf-8", errors="replace") as handle:
        for line in collections.deque(handle, maxlen=parsed_arguments.lines):
            print(line.rstrip("\n"))
    return EXIT_OK


def main_command_cert_status(settings: OrchestratorSettings, parsed_arguments: argparse.Namespace) -> int:
    """Print the certificate record of one domain."""

    if not parsed_arguments.target:
        print("error: `cert-status` requires a domain", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    state_services = bootstrap_create_state_services(settings)
    record = state_services.certificate_repository.db_certificate_get(parsed_arguments.target)
    if record is None:
        print(f"error: no certificate record for {parsed_arguments.target}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    payload = api_serialize_certificate_record(record)
    if parsed_arguments.as_json:
        print(json.dumps(payload, indent=2))
        return EXIT_OK
    for key, value in payload.items():
        print(f"{key}: {value if value is not None else '-'}")
    return EXIT_OK


def main_command_reset(settings: OrchestratorSettings, parsed_arguments: argparse.Namespace) -> int:
    """Clear a persisted `failed` state so the service starts on the next `up`."""

    if not parsed_arguments.target:
        print("error: `reset` requires a service name", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    state_services = bootstrap_create_state_services(settings)
    record = state_services.state_repository.db_runtime_state_get(parsed_arguments.target)
    if record is None or record.state != RuntimeState.FAILED:
        print(f"error: service {parsed_arguments.target} is not failed", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    state_services.state_repository.db_runtime_state_upsert(
        _main_replace_record(record, state=RuntimeState.PENDING, pid=None, detail="reset by operator", restart_count=0)
    )
    print(f"{parsed_arguments.target}: reset to pending")
    return EXIT_OK


def _main_replace_record(record: ServiceRuntimeRecord, **changes) -> ServiceRuntimeRecord:
    return replace(record, updated_at_utc=domain_utc_now(), **changes)


if __name__ == "__main__":
    main()
