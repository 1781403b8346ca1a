"""Supervisor package for process lifecycles of managed services."""

from .interfaces import ProcessHandlePort, ProcessLauncherPort
from .process import (
	AsyncioProcessLauncher,
	SubprocessHandle,
	process_collect_listeners,
	process_is_running,
	process_log_path,
	process_terminate_pid,
)
from .service_supervisor import ServiceSupervisor, SupervisorConfig

__all__ = [
	"AsyncioProcessLauncher",
	"ProcessHandlePort",
	"ProcessLauncherPort",
	"ServiceSupervisor",
	"SubprocessHandle",
	"SupervisorConfig",
	"process_collect_listeners",
	"process_is_running",
	"process_log_path",
	"process_terminate_pid",
]
