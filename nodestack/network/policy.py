"""Network segmentation policy for internal and exposed service ports.

Internal ports bind only to addresses inside the private overlay range.
Exposed ports are published exclusively through the reverse proxy, which is
the one service allowed to bind a host-routable address and terminate TLS.
"""

from __future__ import annotations

import ipaddress
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterable, Sequence

from nodestack.domain import PortDeclaration, PortZone, PortZoneViolationError, ServiceSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortBinding:
    """One concrete listening address in the generated network policy.

    Attributes:
        service: Owning service name.
        port_name: Declared port label.
        bind_address: Address the service must listen on.
        port: Listening port number.
        zone: Reachability zone.
    """

    service: str
    port_name: str
    bind_address: str
    port: int
    zone: PortZone


@dataclass(frozen=True)
class ProxyRoute:
    """Reverse-proxy route forwarding a public listener to an internal upstream.

    Attributes:
        public_port: Reverse-proxy listener port.
        domain: Optional TLS server name.
        upstream_service: Service receiving forwarded traffic.
        upstream_address: Upstream overlay address.
        upstream_port: Upstream internal port.
        tls: Whether the proxy terminates TLS for the route.
    """

    public_port: int
    domain: str | None
    upstream_service: str
    upstream_address: str
    upstream_port: int
    tls: bool


@dataclass(frozen=True)
class NetworkPolicyPlan:
    """Disjoint internal and exposed publication sets plus proxy routes."""

    overlay_network: str
    public_bind_address: str
    proxy_service: str | None
    internal_bindings: tuple[PortBinding, ...]
    exposed_bindings: tuple[PortBinding, ...]
    routes: tuple[ProxyRoute, ...]

    def plan_domains(self) -> tuple[str, ...]:
        """Return the sorted TLS domains served through the reverse proxy."""

        return tuple(sorted({route.domain for route in self.routes if route.domain and route.tls}))

    def plan_as_dict(self) -> dict[str, object]:
        """Return a JSON-compatible representation of the plan."""

        def _binding_payload(binding: PortBinding) -> dict[str, object]:
            payload = asdict(binding)
            payload["zone"] = binding.zone.value
            return payload

        return {
            "overlay_network": self.overlay_network,
            "public_bind_address": self.public_bind_address,
            "proxy_service": self.proxy_service,
            "internal_bindings": [_binding_payload(binding) for binding in self.internal_bindings],
            "exposed_bindings": [_binding_payload(binding) for binding in self.exposed_bindings],
            "routes": [asdict(route) for route in self.routes],
        }


@dataclass(frozen=True)
class ListenerObservation:
    """One listening socket observed on the host.

    Attributes:
        service: Service owning the listening process tree.
        address: Local bind address.
        port: Local bind port.
    """

    service: str
    address: str
    port: int


@dataclass(frozen=True)
class ListenerViolation:
    """Runtime listener that contradicts the network policy."""

    service: str
    address: str
    port: int
    reason: str


def network_assign_overlay_addresses(service_names: Iterable[str], overlay_cidr: str) -> dict[str, str]:
    """Assign one deterministic overlay address per service.

    The first host address of the range is reserved as the gateway, services
    receive the following addresses in sorted name order.

    Args:
        service_names: Service names to address.
        overlay_cidr: Private overlay network range.

    Returns:
        dict[str, str]: Overlay address per service name.

    Raises:
        ValueError: Raised when the range cannot hold every service.
    """

    network = ipaddress.ip_network(overlay_cidr, strict=False)
    names = sorted(set(service_names))
    hosts = network.hosts()
    next(hosts, None)
    addresses: dict[str, str] = {}
    for name in names:
        address = next(hosts, None)
        if address is None:
            raise ValueError(f"overlay network {network} cannot address {len(names)} services")
        addresses[name] = str(address)
    return addresses


def network_classify(service: ServiceSpec, port: int) -> PortZone:
    """Return the declared zone of one service port.

    Args:
        service: Service declaring the port.
        port: Port number.

    Returns:
        PortZone: Declared zone.

    Raises:
        LookupError: Raised when the service does not declare the port.
    """

    for declaration in service.ports:
        if declaration.port == port:
            return declaration.zone
    raise LookupError(f"service {service.name} does not declare port {port}")


def network_find_violations(
    services: Sequence[ServiceSpec],
    privileged_port_names: Iterable[str] = ("rpc", "admin"),
) -> list[str]:
    """Return every load-time segmentation violation in the service set.

    Args:
        services: Service specs to check.
        privileged_port_names: Port names always treated as privileged.

    Returns:
        list[str]: Human-readable violations, empty when compliant.

    Raises:
        RuntimeError: This helper does not raise runtime errors.
    """

    privileged_names = {name.strip().lower() for name in privileged_port_names}
    violations: list[str] = []
    proxies = [service for service in services if service.reverse_proxy]
    if len(proxies) > 1:
        violations.append("only one reverse proxy is allowed, found: " + ", ".join(sorted(p.name for p in proxies)))
    proxy = proxies[0] if proxies else None
    proxy_listeners = (
        {declaration.port for declaration in proxy.ports if declaration.zone is PortZone.EXPOSED} if proxy else set()
    )
    if proxy is not None and not proxy_listeners:
        violations.append(f"reverse proxy {proxy.name} declares no exposed listener")

    seen_routes: dict[tuple[int, str | None], str] = {}
    for service in services:
        for declaration in service.ports:
            label = f"{service.name}:{declaration.name}"
            privileged = declaration.privileged or declaration.name.lower() in privileged_names
            if declaration.zone is PortZone.EXPOSED and privileged:
                violations.append(f"{label} is a privileged port and must not be exposed")
            if service.reverse_proxy:
                continue
            if declaration.tls:
                violations.append(f"{label} declares tls but only the reverse proxy may terminate TLS")
            if declaration.zone is not PortZone.EXPOSED:
                if declaration.domain or declaration.public_port is not None:
                    violations.append(f"{label} sets a public route but is declared internal")
                continue
            if proxy is None:
                violations.append(f"{label} is exposed but no reverse proxy is declared")
                continue
            public_port = _network_route_public_port(declaration)
            if public_port not in proxy_listeners:
                violations.append(f"{label} routes to public port {public_port} which {proxy.name} does not listen on")
            route_key = (public_port, declaration.domain)
            if route_key in seen_routes:
                violations.append(f"{label} duplicates the route already published by {seen_routes[route_key]}")
            else:
                seen_routes[route_key] = label
    return violations


def network_build_policy(
    services: Sequence[ServiceSpec],
    overlay_cidr: str,
    public_bind_address: str,
    privileged_port_names: Iterable[str] = ("rpc", "admin"),
) -> NetworkPolicyPlan:
    """Build the disjoint internal/exposed publication sets for the stack.

    Args:
        services: Resolved service specs with overlay addresses.
        overlay_cidr: Private overlay network range.
        public_bind_address: Host-routable address for proxy listeners.
        privileged_port_names: Port names always treated as privileged.

    Returns:
        NetworkPolicyPlan: Generated network policy.

    Raises:
        PortZoneViolationError: Raised when declarations break segmentation rules.
    """

    violations = network_find_violations(services, privileged_port_names=privileged_port_names)
    overlay_network = ipaddress.ip_network(overlay_cidr, strict=False)
    for service in services:
        if service.overlay_address is None:
            violations.append(f"{service.name} has no overlay address")
        elif ipaddress.ip_address(service.overlay_address) not in overlay_network:
            violations.append(f"{service.name} overlay address {service.overlay_address} is outside {overlay_network}")
    if network_address_is_in_overlay(public_bind_address, overlay_cidr):
        violations.append(f"public bind address {public_bind_address} lies inside the overlay network")
    if violations:
        raise PortZoneViolationError(violations)

    proxy = next((service for service in services if service.reverse_proxy), None)
    internal_bindings: list[PortBinding] = []
    exposed_bindings: list[PortBinding] = []
    routes: list[ProxyRoute] = []
    for service in sorted(services, key=lambda item: item.name):
        for declaration in service.ports:
            if service.reverse_proxy and declaration.zone is PortZone.EXPOSED:
                exposed_bindings.append(
                    PortBinding(
                        service=service.name,
                        port_name=declaration.name,
                        bind_address=public_bind_address,
                        port=declaration.port,
                        zone=PortZone.EXPOSED,
                    )
                )
                continue
            internal_bindings.append(
                PortBinding(
                    service=service.name,
                    port_name=declaration.name,
                    bind_address=str(service.overlay_address),
                    port=declaration.port,
                    zone=PortZone.INTERNAL,
                )
            )
            if declaration.zone is PortZone.EXPOSED and proxy is not None:
                routes.append(
                    ProxyRoute(
                        public_port=_network_route_public_port(declaration),
                        domain=declaration.domain,
                        upstream_service=service.name,
                        upstream_address=str(service.overlay_address),
                        upstream_port=declaration.port,
                        tls=declaration.domain is not None,
                    )
                )

    return NetworkPolicyPlan(
        overlay_network=str(overlay_network),
        public_bind_address=public_bind_address,
        proxy_service=proxy.name if proxy else None,
        internal_bindings=tuple(internal_bindings),
        exposed_bindings=tuple(exposed_bindings),
        routes=tuple(sorted(routes, key=lambda route: (route.public_port, route.domain or ""))),
    )


def network_address_is_in_overlay(address: str, overlay_cidr: str) -> bool:
    """Return whether an address lies inside the overlay network."""

    try:
        parsed_address = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    network = ipaddress.ip_network(overlay_cidr, strict=False)
    return parsed_address.version == network.version and parsed_address in network


def network_audit_listeners(
    plan: NetworkPolicyPlan,
    observations: Iterable[ListenerObservation],
) -> list[ListenerViolation]:
    """Compare observed listeners with the network policy.

    Any listener of a non-proxy service outside the overlay range is a
    violation, including wildcard addresses. Reverse-proxy listeners on the
    public address must match a declared exposed binding.

    Args:
        plan: Generated network policy.
        observations: Listening sockets grouped by owning service.

    Returns:
        list[ListenerViolation]: Violations sorted by service and port.

    Raises:
        RuntimeError: This helper does not raise runtime errors.
    """

    exposed_ports = {binding.port for binding in plan.exposed_bindings}
    violations: list[ListenerViolation] = []
    for observation in observations:
        if network_address_is_in_overlay(observation.address, plan.overlay_network):
            continue
        if observation.service == plan.proxy_service:
            if observation.port in exposed_ports:
                continue
            reason = "reverse proxy listens on an undeclared host-routable port"
        else:
            reason = "internal service listens on a host-routable address"
        violations.append(
            ListenerViolation(
                service=observation.service,
                address=observation.address,
                port=observation.port,
                reason=reason,
            )
        )
    return sorted(violations, key=lambda item: (item.service, item.port, item.address))


def network_write_policy(plan: NetworkPolicyPlan, path: str | Path) -> Path:
    """Persist the generated network policy as JSON.

    Args:
        plan: Generated network policy.
        path: Output file path.

    Returns:
        Path: Written file path.

    Raises:
        OSError: Raised when the file cannot be written.
    """

    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    temporary_path = output_path.with_suffix(output_path.suffix + ".tmp")
    temporary_path.write_text(json.dumps(plan.plan_as_dict(), indent=2, sort_keys=True), encoding="utf-8")
    temporary_path.replace(output_path)
    logger.info("Wrote network policy to %s", output_path)
    return output_path


def _network_route_public_port(declaration: PortDeclaration) -> int:
    if declaration.public_port is not None:
        return declaration.public_port
    return 443 if declaration.domain else declaration.port
