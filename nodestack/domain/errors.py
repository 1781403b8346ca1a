"""Project-native typed exceptions for orchestrator failures.

`ConfigError` subclasses are fatal and raised before any process starts.
The remaining errors describe runtime conditions that are either fatal to a
startup stage or recovered through retry policies.
"""

from __future__ import annotations

from typing import Iterable


class OrchestratorError(Exception):
    """Base exception for orchestrator failures."""


class ConfigError(OrchestratorError):
    """Fatal configuration error that requires an operator fix."""


class ManifestValidationError(ConfigError):
    """Service manifest failed structural validation.

    Attributes:
        issues: Every validation issue found in the manifest.
    """

    def __init__(self, issues: Iterable[str]):
        self.issues = tuple(issues)
        super().__init__("service manifest is invalid: " + "; ".join(self.issues))


class MissingCredentialsError(ConfigError):
    """Required credential keys are absent or blank.

    Attributes:
        missing_keys: Sorted missing credential keys.
    """

    def __init__(self, missing_keys: Iterable[str]):
        self.missing_keys = tuple(sorted(missing_keys))
        super().__init__("missing required credentials: " + ", ".join(self.missing_keys))


class DefaultCredentialError(ConfigError):
    """Sensitive credentials still hold known placeholder values.

    Attributes:
        keys: Sorted credential keys holding placeholder values.
    """

    def __init__(self, keys: Iterable[str]):
        self.keys = tuple(sorted(keys))
        super().__init__("credentials use placeholder values: " + ", ".join(self.keys))


class UnknownDependencyError(ConfigError):
    """A service depends on a name that is not declared.

    Attributes:
        references: Sorted `(service, missing_dependency)` pairs.
    """

    def __init__(self, references: Iterable[tuple[str, str]]):
        self.references = tuple(sorted(references))
        rendered = ", ".join(f"{service} -> {dependency}" for service, dependency in self.references)
        super().__init__(f"unknown dependencies: {rendered}")


class DependencyCycleError(ConfigError):
    """The dependency graph contains at least one cycle.

    Attributes:
        cycles: Strongly connected groups of services, each sorted.
        participants: Sorted union of every service found on a cycle.
    """

    def __init__(self, cycles: Iterable[Iterable[str]]):
        self.cycles = tuple(tuple(sorted(cycle)) for cycle in cycles)
        self.participants = tuple(sorted({name for cycle in self.cycles for name in cycle}))
        rendered = "; ".join(" <-> ".join(cycle) for cycle in self.cycles)
        super().__init__(f"dependency cycle detected: {rendered}")


class PortZoneViolationError(ConfigError):
    """Port declarations break the network segmentation rules.

    Attributes:
        violations: Every violation found.
    """

    def __init__(self, violations: Iterable[str]):
        self.violations = tuple(violations)
        super().__init__("network segmentation violation: " + "; ".join(self.violations))


class ProbeTimeoutError(OrchestratorError):
    """A service did not become healthy within its budget.

    Attributes:
        service_name: Service that timed out.
        stage_index: Zero-based startup stage index.
    """

    def __init__(self, service_name: str, stage_index: int, reason: str):
        self.service_name = service_name
        self.stage_index = stage_index
        super().__init__(f"service {service_name} in stage {stage_index} did not become healthy: {reason}")


class DependencyNotHealthyError(OrchestratorError):
    """A start was requested while a dependency is not healthy."""

    def __init__(self, service_name: str, dependency_states: dict[str, str]):
        self.service_name = service_name
        self.dependency_states = dict(dependency_states)
        rendered = ", ".join(f"{name}={state}" for name, state in sorted(self.dependency_states.items()))
        super().__init__(f"cannot start {service_name}: dependencies not healthy ({rendered})")


class ProcessCrashError(OrchestratorError):
    """A supervised process exited unexpectedly."""

    def __init__(self, service_name: str, return_code: int | None):
        self.service_name = service_name
        self.return_code = return_code
        super().__init__(f"service {service_name} exited unexpectedly with code {return_code}")


class CertificateRenewalError(OrchestratorError):
    """Certificate issuance or renewal failed for a domain."""

    def __init__(self, domain: str, reason: str):
        self.domain = domain
        self.reason = reason
        super().__init__(f"certificate renewal failed for {domain}: {reason}")
