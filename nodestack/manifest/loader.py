"""Service manifest parsing, validation and resolution.

Manifests are YAML documents with a top-level `services` mapping. Parsing
collects every structural issue before raising so operators can fix a
manifest in one pass. Resolution interpolates `${NAME}` and
`${NAME:-default}` references with credentials and overlay addresses and
returns immutable `ServiceSpec` objects.
"""

from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from nodestack.domain import (
    HealthProbeDescriptor,
    ManifestValidationError,
    PortDeclaration,
    PortZone,
    PortZoneViolationError,
    ProbeKind,
    ResourceLimits,
    RestartPolicy,
    ServiceSpec,
    UnknownDependencyError,
)
from nodestack.network import network_assign_overlay_addresses, network_find_violations

logger = logging.getLogger(__name__)

_SERVICE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
_INTERPOLATION_PATTERN = re.compile(r"\$\$|\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}")
_DURATION_PATTERN = re.compile(r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h)?\s*$")
_MEMORY_PATTERN = re.compile(r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>[kmgt]?)b?\s*$", re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_MEMORY_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}
_KNOWN_SERVICE_KEYS = frozenset(
    {
        "command",
        "depends_on",
        "credentials",
        "environment",
        "ports",
        "healthcheck",
        "resources",
        "restart",
        "data_directory",
        "working_directory",
        "reverse_proxy",
    }
)


@dataclass(frozen=True)
class ServiceManifest:
    """Validated manifest holding unresolved service templates.

    Attributes:
        services: Service specs whose command, environment and probe target
            still contain interpolation references.
        overlay_addresses: Overlay address assigned to each service.
    """

    services: tuple[ServiceSpec, ...]
    overlay_addresses: Mapping[str, str]

    def manifest_service_names(self) -> tuple[str, ...]:
        """Return declared service names in manifest order."""

        return tuple(service.name for service in self.services)

    def manifest_required_credentials(self) -> dict[str, tuple[str, ...]]:
        """Return every required credential key mapped to the services needing it.

        Returns:
            dict[str, tuple[str, ...]]: Credential key to sorted service names.

        Raises:
            RuntimeError: This helper does not raise runtime errors.
        """

        required: dict[str, set[str]] = {}
        for service in self.services:
            for key in service.required_credentials:
                required.setdefault(key, set()).add(service.name)
        return {key: tuple(sorted(names)) for key, names in sorted(required.items())}


def manifest_load_file(path: str | Path) -> Mapping[str, Any]:
    """Load a YAML manifest document from disk.

    Args:
        path: Manifest file path.

    Returns:
        Mapping[str, Any]: Parsed YAML document.

    Raises:
        ManifestValidationError: Raised when the file is missing or not valid YAML.
    """

    manifest_path = Path(path)
    try:
        with manifest_path.open("r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
    except FileNotFoundError as error:
        raise ManifestValidationError([f"manifest file {manifest_path} does not exist"]) from error
    except yaml.YAMLError as error:
        raise ManifestValidationError([f"manifest file {manifest_path} is not valid YAML: {error}"]) from error

    if not isinstance(document, Mapping):
        raise ManifestValidationError([f"manifest file {manifest_path} must contain a mapping"])
    return document


def manifest_interpolate(template: str, values: Mapping[str, str], context_label: str) -> str:
    """Expand `${NAME}` and `${NAME:-default}` references in a template.

    Args:
        template: Template text.
        values: Variables available for expansion.
        context_label: Label used in error messages.

    Returns:
        str: Expanded text. `$$` renders a literal dollar sign.

    Raises:
        ManifestValidationError: Raised when a reference without default is undefined.
    """

    undefined: list[str] = []

    def _expand(match: re.Match[str]) -> str:
        if match.group(0) == "$$":
            return "$"
        name = match.group("name")
        default = match.group("default")
        value = values.get(name)
        if value:
            return value
        if default is not None:
            return default
        undefined.append(name)
        return ""

    expanded = _INTERPOLATION_PATTERN.sub(_expand, template)
    if undefined:
        raise ManifestValidationError(
            [f"{context_label} references undefined variable {name}" for name in sorted(set(undefined))]
        )
    return expanded


def manifest_variable_name(*parts: str) -> str:
    """Return an upper-case environment variable name for the given parts."""

    joined = "_".join(part for part in parts if part)
    return re.sub(r"[^A-Za-z0-9]+", "_", joined).strip("_").upper()


class ServiceManifestBuilder:
    """Builder turning manifest documents into validated service specs."""

    def __init__(
        self,
        overlay_network_cidr: str,
        data_root: str | Path,
        privileged_port_names: Iterable[str] = ("rpc", "admin"),
    ):
        """Initialize manifest builder.

        Args:
            overlay_network_cidr: Private overlay range used for address assignment.
            data_root: Root directory for per-service data directories.
            privileged_port_names: Port names always treated as privileged.

        Returns:
            None: Initializer does not return a value.

        Raises:
            ValueError: Raised when the overlay range is blank.
        """

        if not overlay_network_cidr.strip():
            raise ValueError("overlay_network_cidr must not be blank")
        self._overlay_network_cidr = overlay_network_cidr.strip()
        self._data_root = Path(data_root)
        self._privileged_port_names = tuple(privileged_port_names)

    def manifest_parse(self, document: Mapping[str, Any]) -> ServiceManifest:
        """Validate a manifest document exhaustively and build service templates.

        Args:
            document: Parsed manifest document.

        Returns:
            ServiceManifest: Validated manifest.

        Raises:
            ManifestValidationError: Raised when structural issues are found.
            UnknownDependencyError: Raised when a dependency name is not declared.
            PortZoneViolationError: Raised when port declarations break segmentation rules.
        """

        raw_services = document.get("services")
        if not isinstance(raw_services, Mapping) or not raw_services:
            raise ManifestValidationError(["manifest must declare a non-empty `services` mapping"])

        issues: list[str] = []
        services: list[ServiceSpec] = []
        for raw_name, raw_definition in raw_services.items():
            name = str(raw_name)
            if not _SERVICE_NAME_PATTERN.match(name):
                issues.append(f"service name {name!r} must match {_SERVICE_NAME_PATTERN.pattern}")
                continue
            if not isinstance(raw_definition, Mapping):
                issues.append(f"service {name} must be a mapping")
                continue
            service = self._manifest_parse_service(name=name, definition=raw_definition, issues=issues)
            if service is not None:
                services.append(service)
        if issues:
            raise ManifestValidationError(issues)

        declared_names = {service.name for service in services}
        unknown_references = [
            (service.name, dependency)
            for service in services
            for dependency in service.dependencies
            if dependency not in declared_names
        ]
        if unknown_references:
            raise UnknownDependencyError(unknown_references)

        violations = network_find_violations(services, privileged_port_names=self._privileged_port_names)
        if violations:
            raise PortZoneViolationError(violations)

        try:
            overlay_addresses = network_assign_overlay_addresses(declared_names, self._overlay_network_cidr)
        except ValueError as error:
            raise ManifestValidationError([str(error)]) from error
        services = [replace(service, overlay_address=overlay_addresses[service.name]) for service in services]
        logger.debug("Parsed manifest with services: %s", ", ".join(service.name for service in services))
        return ServiceManifest(services=tuple(services), overlay_addresses=overlay_addresses)

    def manifest_resolve(self, manifest: ServiceManifest, credentials: Mapping[str, str]) -> tuple[ServiceSpec, ...]:
        """Interpolate credentials and addresses and inject process environments.

        Every service receives its own required credentials, its overlay
        address, its data directory, and the address and port variables of
        its direct dependencies.

        Args:
            manifest: Validated manifest.
            credentials: Credential values.

        Returns:
            tuple[ServiceSpec, ...]: Resolved immutable service specs.

        Raises:
            ManifestValidationError: Raised when a reference cannot be resolved.
        """

        address_variables = self._manifest_address_variables(manifest)
        all_address_variables = {
            key: value for variables in address_variables.values() for key, value in variables.items()
        }
        issues: list[str] = []
        resolved_services: list[ServiceSpec] = []
        for service in manifest.services:
            service_variables = self._manifest_service_variables(service)
            values = {**credentials, **all_address_variables, **service_variables}
            try:
                resolved_services.append(
                    self._manifest_resolve_service(
                        service=service,
                        values=values,
                        credentials=credentials,
                        address_variables=address_variables,
                        service_variables=service_variables,
                    )
                )
            except ManifestValidationError as error:
                issues.extend(error.issues)
        if issues:
            raise ManifestValidationError(issues)
        return tuple(resolved_services)

    def manifest_data_directory(self, service: ServiceSpec) -> Path:
        """Return the data directory path for a service."""

        return self._data_root / (service.data_directory or service.name)

    def _manifest_resolve_service(
        self,
        service: ServiceSpec,
        values: Mapping[str, str],
        credentials: Mapping[str, str],
        address_variables: Mapping[str, Mapping[str, str]],
        service_variables: Mapping[str, str],
    ) -> ServiceSpec:
        label = f"service {service.name}"
        issues: list[str] = []

        def _resolve(template: str, context_label: str) -> str:
            try:
                return manifest_interpolate(template, values, context_label)
            except ManifestValidationError as error:
                issues.extend(error.issues)
                return template

        command = tuple(_resolve(argument, f"{label} command") for argument in service.command)
        environment: dict[str, str] = {}
        for dependency in service.dependencies:
            environment.update(address_variables[dependency])
        environment.update(service_variables)
        environment.update({key: credentials[key] for key in service.required_credentials if key in credentials})
        for key, template in service.environment.items():
            environment[key] = _resolve(template, f"{label} environment {key}")

        probe = service.probe
        if probe.kind is ProbeKind.COMMAND:
            probe_arguments = [_resolve(argument, f"{label} healthcheck") for argument in shlex.split(probe.target)]
            probe_target = shlex.join(probe_arguments)
        else:
            probe_target = _resolve(probe.target, f"{label} healthcheck")

        if issues:
            raise ManifestValidationError(issues)
        return replace(
            service,
            command=command,
            environment=environment,
            probe=replace(probe, target=probe_target),
        )

    def _manifest_address_variables(self, manifest: ServiceManifest) -> dict[str, dict[str, str]]:
        variables: dict[str, dict[str, str]] = {}
        for service in manifest.services:
            prefix = manifest_variable_name(service.name)
            service_variables = {f"{prefix}_HOST": manifest.overlay_addresses[service.name]}
            for declaration in service.ports:
                service_variables[f"{prefix}_{manifest_variable_name(declaration.name)}_PORT"] = str(declaration.port)
            variables[service.name] = service_variables
        return variables

    def _manifest_service_variables(self, service: ServiceSpec) -> dict[str, str]:
        return {
            "NODESTACK_SERVICE_NAME": service.name,
            "NODESTACK_SERVICE_ADDRESS": str(service.overlay_address),
            "NODESTACK_DATA_DIR": str(self.manifest_data_directory(service)),
            "NODESTACK_DATA_ROOT": str(self._data_root),
        }

    def _manifest_parse_service(self, name: str, definition: Mapping[str, Any], issues: list[str]) -> ServiceSpec | None:
        label = f"service {name}"
        issue_count = len(issues)
        unknown_keys = sorted(set(map(str, definition)) - _KNOWN_SERVICE_KEYS)
        if unknown_keys:
            issues.append(f"{label} has unknown keys: {', '.join(unknown_keys)}")

        command = self._manifest_parse_argv(definition.get("command"), f"{label} command", issues)
        if command is not None and not command:
            issues.append(f"{label} command must not be empty")

        dependencies = self._manifest_parse_names(definition.get("depends_on", []), f"{label} depends_on", issues)
        credentials = self._manifest_parse_names(definition.get("credentials", []), f"{label} credentials", issues)

        environment: dict[str, str] = {}
        raw_environment = definition.get("environment", {}) or {}
        if not isinstance(raw_environment, Mapping):
            issues.append(f"{label} environment must be a mapping")
        else:
            for key, value in raw_environment.items():
                if isinstance(value, (Mapping, list)):
                    issues.append(f"{label} environment {key} must be a scalar")
                    continue
                environment[str(key)] = "" if value is None else str(value)

        ports = self._manifest_parse_ports(definition.get("ports", []), label, issues)
        probe = self._manifest_parse_probe(definition.get("healthcheck"), label, issues)
        limits = self._manifest_parse_limits(definition.get("resources", {}) or {}, label, issues)

        restart_policy = RestartPolicy.UNLESS_STOPPED
        raw_restart = definition.get("restart")
        if raw_restart is not None:
            try:
                restart_policy = RestartPolicy(str(raw_restart).strip().lower())
            except ValueError:
                allowed = ", ".join(policy.value for policy in RestartPolicy)
                issues.append(f"{label} restart must be one of: {allowed}")

        reverse_proxy = definition.get("reverse_proxy", False)
        if not isinstance(reverse_proxy, bool):
            issues.append(f"{label} reverse_proxy must be a boolean")

        if len(issues) != issue_count or command is None or probe is None:
            return None
        return ServiceSpec(
            name=name,
            command=tuple(command),
            dependencies=tuple(dependencies),
            probe=probe,
            ports=tuple(ports),
            required_credentials=tuple(credentials),
            environment=environment,
            limits=limits,
            restart_policy=restart_policy,
            data_directory=_manifest_optional_text(definition.get("data_directory")),
            working_directory=_manifest_optional_text(definition.get("working_directory")),
            reverse_proxy=bool(reverse_proxy),
        )

    def _manifest_parse_argv(self, raw_value: Any, label: str, issues: list[str]) -> list[str] | None:
        if raw_value is None:
            issues.append(f"{label} is required")
            return None
        if isinstance(raw_value, str):
            try:
                return shlex.split(raw_value)
            except ValueError as error:
                issues.append(f"{label} cannot be split: {error}")
                return None
        if isinstance(raw_value, list) and all(isinstance(item, (str, int, float)) for item in raw_value):
            return [str(item) for item in raw_value]
        issues.append(f"{label} must be a string or a list of strings")
        return None

    def _manifest_parse_names(self, raw_value: Any, label: str, issues: list[str]) -> list[str]:
        if raw_value is None:
            return []
        if not isinstance(raw_value, list) or not all(isinstance(item, str) and item.strip() for item in raw_value):
            issues.append(f"{label} must be a list of non-empty strings")
            return []
        names = [item.strip() for item in raw_value]
        if len(set(names)) != len(names):
            issues.append(f"{label} contains duplicates")
        return list(dict.fromkeys(names))

    def _manifest_parse_ports(self, raw_value: Any, label: str, issues: list[str]) -> list[PortDeclaration]:
        if raw_value is None:
            return []
        if not isinstance(raw_value, list):
            issues.append(f"{label} ports must be a list")
            return []

        ports: list[PortDeclaration] = []
        seen_names: set[str] = set()
        seen_numbers: set[int] = set()
        for index, raw_port in enumerate(raw_value):
            port_label = f"{label} ports[{index}]"
            if not isinstance(raw_port, Mapping):
                issues.append(f"{port_label} must be a mapping")
                continue
            port_name = str(raw_port.get("name", "")).strip()
            port_number = _manifest_port_number(raw_port.get("port"))
            public_port = raw_port.get("public_port")
            if not port_name:
                issues.append(f"{port_label} name is required")
            elif port_name in seen_names:
                issues.append(f"{port_label} name {port_name} is duplicated")
            if port_number is None:
                issues.append(f"{port_label} port must be an integer in 1..65535")
            elif port_number in seen_numbers:
                issues.append(f"{port_label} port {port_number} is duplicated")
            if public_port is not None and _manifest_port_number(public_port) is None:
                issues.append(f"{port_label} public_port must be an integer in 1..65535")
            try:
                zone = PortZone(str(raw_port.get("zone", PortZone.INTERNAL.value)).strip().lower())
            except ValueError:
                issues.append(f"{port_label} zone must be one of: internal, exposed")
                continue
            if not port_name or port_number is None:
                continue
            seen_names.add(port_name)
            seen_numbers.add(port_number)
            ports.append(
                PortDeclaration(
                    name=port_name,
                    port=port_number,
                    zone=zone,
                    privileged=bool(raw_port.get("privileged", False)),
                    domain=_manifest_optional_text(raw_port.get("domain")),
                    public_port=_manifest_port_number(public_port) if public_port is not None else None,
                    tls=bool(raw_port.get("tls", False)),
                )
            )
        return ports

    def _manifest_parse_probe(self, raw_value: Any, label: str, issues: list[str]) -> HealthProbeDescriptor | None:
        probe_label = f"{label} healthcheck"
        issue_count = len(issues)
        if not isinstance(raw_value, Mapping):
            issues.append(f"{probe_label} is required and must be a mapping")
            return None

        try:
            kind = ProbeKind(str(raw_value.get("kind", "")).strip().lower())
        except ValueError:
            issues.append(f"{probe_label} kind must be one of: command, tcp, http")
            return None

        raw_target = raw_value.get("target")
        if kind is ProbeKind.COMMAND:
            arguments = self._manifest_parse_argv(raw_target, f"{probe_label} target", issues)
            target = shlex.join(arguments) if arguments else ""
        else:
            target = str(raw_target).strip() if raw_target is not None else ""
        if not target:
            issues.append(f"{probe_label} target is required")
            return None
        if kind is ProbeKind.HTTP and not target.startswith(("http://", "https://", "${")):
            issues.append(f"{probe_label} http target must be an http(s) URL")
        if kind is ProbeKind.TCP and ":" not in target:
            issues.append(f"{probe_label} tcp target must be host:port")

        default_expected = 200 if kind is ProbeKind.HTTP else 0
        numbers = {
            "interval": _manifest_duration(raw_value.get("interval", 5), f"{probe_label} interval", issues),
            "timeout": _manifest_duration(raw_value.get("timeout", 5), f"{probe_label} timeout", issues),
            "start_period": _manifest_duration(raw_value.get("start_period", 0), f"{probe_label} start_period", issues),
        }
        retries = raw_value.get("retries", 10)
        success_threshold = raw_value.get("success_threshold", 1)
        expected = raw_value.get("expected", default_expected)
        for field_name, field_value, minimum in (
            ("retries", retries, 1),
            ("success_threshold", success_threshold, 1),
            ("expected", expected, 0),
        ):
            if not isinstance(field_value, int) or isinstance(field_value, bool) or field_value < minimum:
                issues.append(f"{probe_label} {field_name} must be an integer >= {minimum}")
        if numbers["timeout"] is not None and numbers["timeout"] <= 0:
            issues.append(f"{probe_label} timeout must be > 0")
        if len(issues) != issue_count:
            return None

        return HealthProbeDescriptor(
            kind=kind,
            target=target,
            expected_result=int(expected),
            expected_body=_manifest_optional_text(raw_value.get("expected_body")),
            poll_interval_seconds=float(numbers["interval"]),
            timeout_seconds=float(numbers["timeout"]),
            retry_budget=int(retries),
            success_threshold=int(success_threshold),
            start_period_seconds=float(numbers["start_period"]),
        )

    def _manifest_parse_limits(self, raw_value: Any, label: str, issues: list[str]) -> ResourceLimits:
        if not isinstance(raw_value, Mapping):
            issues.append(f"{label} resources must be a mapping")
            return ResourceLimits()

        memory_bytes = None
        raw_memory = raw_value.get("memory")
        if raw_memory is not None:
            memory_bytes = _manifest_memory_bytes(raw_memory)
            if memory_bytes is None:
                issues.append(f"{label} resources memory must look like 512m, 16g or a byte count")

        cpus = None
        raw_cpus = raw_value.get("cpus")
        if raw_cpus is not None:
            try:
                cpus = float(raw_cpus)
            except (TypeError, ValueError):
                issues.append(f"{label} resources cpus must be a number")
            else:
                if cpus <= 0:
                    issues.append(f"{label} resources cpus must be > 0")
        return ResourceLimits(memory_bytes=memory_bytes, cpus=cpus)


def _manifest_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _manifest_port_number(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    if value < 1 or value > 65535:
        return None
    return value


def _manifest_duration(value: Any, label: str, issues: list[str]) -> float | None:
    if isinstance(value, bool):
        issues.append(f"{label} must be a duration such as 30, 30s, 2m or 500ms")
        return None
    if isinstance(value, (int, float)):
        if value < 0:
            issues.append(f"{label} must not be negative")
            return None
        return float(value)
    match = _DURATION_PATTERN.match(str(value))
    if match is None:
        issues.append(f"{label} must be a duration such as 30, 30s, 2m or 500ms")
        return None
    return float(match.group("value")) * _DURATION_UNITS[match.group("unit") or "s"]


def _manifest_memory_bytes(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    match = _MEMORY_PATTERN.match(str(value))
    if match is None:
        return None
    memory_bytes = int(float(match.group("value")) * _MEMORY_UNITS[match.group("unit").lower()])
    return memory_bytes if memory_bytes > 0 else None
