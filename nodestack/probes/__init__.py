"""Health probe package for readiness checks of managed services."""

from .checks import CommandProbe, HttpProbe, TcpProbe
from .engine import HealthProbeEngine
from .interfaces import AwaitHealthResult, ProbePort, ProbeResult

__all__ = [
	"AwaitHealthResult",
	"CommandProbe",
	"HealthProbeEngine",
	"HttpProbe",
	"ProbePort",
	"ProbeResult",
	"TcpProbe",
]
