"""Dependency sequencing package for ordered, health-gated startup."""

from .planner import (
	StartupPlan,
	sequencer_dependency_edges,
	sequencer_detect_cycles,
	sequencer_plan,
	sequencer_transitive_dependents,
)
from .startup import (
	EXIT_CONFIG_ERROR,
	EXIT_OK,
	EXIT_PARTIAL_TEARDOWN,
	EXIT_STARTUP_TIMEOUT,
	StartupResult,
	StartupSequencer,
)

__all__ = [
	"EXIT_CONFIG_ERROR",
	"EXIT_OK",
	"EXIT_PARTIAL_TEARDOWN",
	"EXIT_STARTUP_TIMEOUT",
	"StartupPlan",
	"StartupResult",
	"StartupSequencer",
	"sequencer_dependency_edges",
	"sequencer_detect_cycles",
	"sequencer_plan",
	"sequencer_transitive_dependents",
]
