"""Typed interfaces for process supervision responsibilities."""

from typing import Protocol

from nodestack.domain import ServiceSpec


class ProcessHandlePort(Protocol):
    """Port definition for one spawned service process."""

    @property
    def pid(self) -> int:
        """Return the operating-system process id."""

    @property
    def returncode(self) -> int | None:
        """Return the exit status, or None while the process runs."""

    async def handle_wait(self) -> int:
        """Wait for process exit and return its exit status.

        Returns:
            int: Exit status; negative values name the terminating signal.

        Raises:
            asyncio.CancelledError: Propagated when the waiter is cancelled.
        """

    def handle_signal(self, signum: int) -> None:
        """Deliver a signal to the process when it is still running.

        Args:
            signum: Signal number.

        Returns:
            None: Signal is delivered as side effect.

        Raises:
            RuntimeError: This port does not raise runtime errors.
        """

    async def handle_terminate(self, grace_seconds: float) -> int | None:
        """Terminate the process tree, escalating to kill after the grace period.

        Args:
            grace_seconds: Time allowed for graceful shutdown.

        Returns:
            int | None: Exit status, or None when the process could not be reaped.

        Raises:
            RuntimeError: This port does not raise runtime errors.
        """


class ProcessLauncherPort(Protocol):
    """Port definition for spawning service processes."""

    async def launcher_spawn(self, spec: ServiceSpec) -> ProcessHandlePort:
        """Spawn the process of one service.

        Args:
            spec: Resolved service definition.

        Returns:
            ProcessHandlePort: Handle of the running process.

        Raises:
            OSError: Raised when the executable cannot be started.
        """
