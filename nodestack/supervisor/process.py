"""Process launching, output capture and process-tree utilities.

Service processes run in their own session so that a whole tree can be
signalled. Output is captured line by line into a size-rotated log file per
service; resource limits are applied through psutil right after spawn.
"""

from __future__ import annotations

import asyncio
import logging
import logging.handlers
import math
import os
from pathlib import Path
from typing import Mapping

import psutil

from nodestack.domain import ResourceLimits, ServiceSpec
from nodestack.network import ListenerObservation

from .interfaces import ProcessHandlePort, ProcessLauncherPort

logger = logging.getLogger(__name__)

_INHERITED_ENVIRONMENT_KEYS = ("PATH", "HOME", "LANG", "LC_ALL", "TZ", "TMPDIR")
_KILL_REAP_TIMEOUT_SECONDS = 10.0
_OUTPUT_LINE_LIMIT_BYTES = 4 * 1024 * 1024


class SubprocessHandle(ProcessHandlePort):
    """Handle over an asyncio subprocess and its output reader task."""

    def __init__(self, service_name: str, process: asyncio.subprocess.Process, output_task: asyncio.Task | None):
        self._service_name = service_name
        self._process = process
        self._output_task = output_task

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def handle_wait(self) -> int:
        """Wait for process exit and drain the output reader."""

        return_code = await self._process.wait()
        if self._output_task is not None:
            await asyncio.gather(self._output_task, return_exceptions=True)
        return return_code

    def handle_signal(self, signum: int) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.send_signal(signum)
        except ProcessLookupError:
            logger.debug("Service %s exited before signal %s was delivered", self._service_name, signum)

    async def handle_terminate(self, grace_seconds: float) -> int | None:
        """Terminate the process and its descendants.

        The direct child is reaped through asyncio; descendants are waited on
        with psutil in a worker thread.

        Args:
            grace_seconds: Time allowed for graceful shutdown.

        Returns:
            int | None: Exit status, or None when the process could not be reaped.

        Raises:
            RuntimeError: This method does not raise runtime errors.
        """

        if self._process.returncode is not None:
            return self._process.returncode

        descendants = process_list_descendants(self._process.pid)
        for process in descendants:
            _process_send_terminate(process)
        try:
            self._process.terminate()
        except ProcessLookupError:
            pass

        try:
            return_code: int | None = await asyncio.wait_for(self._process.wait(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Service %s did not exit within %.1fs of SIGTERM, sending SIGKILL",
                self._service_name,
                grace_seconds,
            )
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
            try:
                return_code = await asyncio.wait_for(self._process.wait(), timeout=_KILL_REAP_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                return_code = None

        if descendants:
            alive = await asyncio.to_thread(_process_wait_gone, descendants, grace_seconds)
            for process in alive:
                _process_send_kill(process)
            if alive:
                still_alive = await asyncio.to_thread(_process_wait_gone, alive, _KILL_REAP_TIMEOUT_SECONDS)
                if still_alive:
                    logger.error(
                        "Service %s left %d unreaped descendant processes",
                        self._service_name,
                        len(still_alive),
                    )
                    return None

        if self._output_task is not None:
            await asyncio.gather(self._output_task, return_exceptions=True)
        return return_code


class AsyncioProcessLauncher(ProcessLauncherPort):
    """Spawn service processes with asyncio and capture their output."""

    def __init__(self, log_directory: str | Path, log_max_bytes: int, log_backup_count: int):
        """Initialize process launcher.

        Args:
            log_directory: Directory holding one log file per service.
            log_max_bytes: Size at which a service log is rotated.
            log_backup_count: Rotated files kept per service.

        Returns:
            None: Initializer does not return a value.

        Raises:
            ValueError: Raised when rotation settings are invalid.
        """

        if log_max_bytes <= 0:
            raise ValueError("log_max_bytes must be positive")
        if log_backup_count < 0:
            raise ValueError("log_backup_count must not be negative")
        self._log_directory = Path(log_directory)
        self._log_max_bytes = log_max_bytes
        self._log_backup_count = log_backup_count

    async def launcher_spawn(self, spec: ServiceSpec) -> SubprocessHandle:
        """Spawn the process of one service.

        Args:
            spec: Resolved service definition.

        Returns:
            SubprocessHandle: Handle of the running process.

        Raises:
            OSError: Raised when the executable cannot be started.
        """

        if spec.data_directory:
            Path(spec.data_directory).mkdir(parents=True, exist_ok=True)
        service_logger = process_service_logger(
            spec.name, self._log_directory, self._log_max_bytes, self._log_backup_count
        )

        process = await asyncio.create_subprocess_exec(
            *spec.command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=process_build_environment(spec.environment),
            cwd=spec.working_directory,
            start_new_session=True,
            limit=_OUTPUT_LINE_LIMIT_BYTES,
        )
        logger.info("Spawned service %s with pid %d", spec.name, process.pid)
        process_apply_limits(spec.name, process.pid, spec.limits)

        output_task = asyncio.create_task(_process_pump_output(process.stdout, service_logger))
        return SubprocessHandle(service_name=spec.name, process=process, output_task=output_task)


def process_build_environment(service_environment: Mapping[str, str]) -> dict[str, str]:
    """Build a child environment from a minimal inherited base plus service values."""

    environment = {key: os.environ[key] for key in _INHERITED_ENVIRONMENT_KEYS if key in os.environ}
    environment.update(service_environment)
    return environment


def process_service_logger(
    service_name: str,
    log_directory: Path,
    log_max_bytes: int,
    log_backup_count: int,
) -> logging.Logger:
    """Return the dedicated output logger of one service.

    Args:
        service_name: Service identity.
        log_directory: Directory holding service logs.
        log_max_bytes: Rotation size.
        log_backup_count: Rotated files kept.

    Returns:
        logging.Logger: Non-propagating logger writing `<service>.log`.

    Raises:
        OSError: Raised when the log directory cannot be created.
    """

    log_directory.mkdir(parents=True, exist_ok=True)
    service_logger = logging.getLogger(f"nodestack.services.{service_name}")
    service_logger.setLevel(logging.INFO)
    service_logger.propagate = False
    log_path = str(process_log_path(log_directory, service_name))
    if not any(getattr(handler, "baseFilename", None) == log_path for handler in service_logger.handlers):
        handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=log_max_bytes,
            backupCount=log_backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
        service_logger.addHandler(handler)
    return service_logger


def process_log_path(log_directory: str | Path, service_name: str) -> Path:
    """Return the active log file path of one service."""

    return Path(log_directory).resolve() / f"{service_name}.log"


def process_apply_limits(service_name: str, pid: int, limits: ResourceLimits) -> None:
    """Apply memory and CPU limits to a running process.

    Args:
        service_name: Service identity for diagnostics.
        pid: Process id.
        limits: Requested limits.

    Returns:
        None: Limits are applied as side effect.

    Raises:
        RuntimeError: This helper does not raise runtime errors.
    """

    if limits.memory_bytes is None and limits.cpus is None:
        return
    try:
        process = psutil.Process(pid)
        if limits.memory_bytes is not None:
            if hasattr(process, "rlimit"):
                process.rlimit(psutil.RLIMIT_AS, (limits.memory_bytes, limits.memory_bytes))
            else:
                logger.warning("Memory limits are not supported on this platform; %s runs unbounded", service_name)
        if limits.cpus is not None:
            if hasattr(process, "cpu_affinity"):
                available_cpus = process.cpu_affinity()
                allowed_count = max(1, min(len(available_cpus), math.ceil(limits.cpus)))
                process.cpu_affinity(available_cpus[:allowed_count])
            else:
                logger.warning("CPU affinity is not supported on this platform; %s uses every CPU", service_name)
    except psutil.NoSuchProcess:
        logger.warning("Service %s exited before resource limits were applied", service_name)
    except (psutil.AccessDenied, OSError) as error:
        logger.warning("Could not apply resource limits to %s: %s", service_name, error)


def process_list_descendants(pid: int) -> list[psutil.Process]:
    """Return every live descendant of a process."""

    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        return []


def process_is_running(pid: int) -> bool:
    """Return whether a process id refers to a live, non-zombie process."""

    try:
        process = psutil.Process(pid)
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def process_terminate_pid(pid: int, grace_seconds: float) -> bool:
    """Terminate a process tree that is not a child of this process.

    Args:
        pid: Root process id.
        grace_seconds: Time allowed before escalating to SIGKILL.

    Returns:
        bool: True when every process of the tree is gone.

    Raises:
        RuntimeError: This helper does not raise runtime errors.
    """

    try:
        root = psutil.Process(pid)
        processes = [root, *root.children(recursive=True)]
    except psutil.NoSuchProcess:
        return True

    for process in processes:
        _process_send_terminate(process)
    alive = _process_wait_gone(processes, grace_seconds)
    for process in alive:
        _process_send_kill(process)
    if not alive:
        return True
    still_alive = _process_wait_gone(alive, _KILL_REAP_TIMEOUT_SECONDS)
    return not still_alive


def process_collect_listeners(service_pids: Mapping[str, int]) -> list[ListenerObservation]:
    """Collect listening inet sockets owned by supervised process trees.

    Args:
        service_pids: Root process id per service.

    Returns:
        list[ListenerObservation]: Observed listeners, deduplicated.

    Raises:
        RuntimeError: This helper does not raise runtime errors.
    """

    observations: set[ListenerObservation] = set()
    for service_name, pid in service_pids.items():
        try:
            root = psutil.Process(pid)
            processes = [root, *root.children(recursive=True)]
        except psutil.NoSuchProcess:
            continue
        for process in processes:
            try:
                connections = process.net_connections(kind="inet")
            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                continue
            except psutil.AccessDenied:
                logger.debug("Listener audit cannot inspect pid %d of %s", process.pid, service_name)
                continue
            for connection in connections:
                if connection.status != psutil.CONN_LISTEN or not connection.laddr:
                    continue
                observations.add(
                    ListenerObservation(service=service_name, address=connection.laddr.ip, port=connection.laddr.port)
                )
    return sorted(observations, key=lambda item: (item.service, item.address, item.port))


async def _process_pump_output(stream: asyncio.StreamReader | None, service_logger: logging.Logger) -> None:
    if stream is None:
        return
    while True:
        line = await stream.readline()
        if not line:
            return
        service_logger.info(line.decode("utf-8", errors="replace").rstrip("\r\n"))


def _process_send_terminate(process: psutil.Process) -> None:
    try:
        process.terminate()
    except psutil.NoSuchProcess:
        pass


def _process_send_kill(process: psutil.Process) -> None:
    try:
        process.kill()
    except psutil.NoSuchProcess:
        pass


def _process_wait_gone(processes: list[psutil.Process], timeout_seconds: float) -> list[psutil.Process]:
    # Zombies of non-children are dead already; only their parent can reap them.
    _, alive = psutil.wait_procs(processes, timeout=timeout_seconds)
    return [process for process in alive if process_is_running(process.pid)]
