"""Dependency planning for staged service startup.

A stage is the maximal set of services whose dependencies all live in
earlier stages. Cycles are detected depth-first before any stage is built;
every service that lies on at least one cycle is reported.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from nodestack.domain import DependencyCycleError, DependencyEdge, ServiceSpec, UnknownDependencyError


@dataclass(frozen=True)
class StartupPlan:
    """Ordered startup stages.

    Attributes:
        stages: Stages in execution order, names sorted inside each stage.
    """

    stages: tuple[tuple[str, ...], ...]

    def plan_stage_index(self) -> dict[str, int]:
        """Return the zero-based stage index of every service."""

        return {name: index for index, stage in enumerate(self.stages) for name in stage}

    def plan_service_names(self) -> tuple[str, ...]:
        """Return every planned service in start order."""

        return tuple(name for stage in self.stages for name in stage)


def sequencer_dependency_edges(services: Iterable[ServiceSpec]) -> tuple[DependencyEdge, ...]:
    """Return the declared dependency edges of a service set."""

    return tuple(
        DependencyEdge(dependent=service.name, dependency=dependency)
        for service in services
        for dependency in service.dependencies
    )


def sequencer_detect_cycles(graph: Mapping[str, Sequence[str]]) -> list[tuple[str, ...]]:
    """Return every group of services that lie on a dependency cycle.

    Uses Tarjan's depth-first strongly connected component search: nodes on
    the active path are `visiting`, nodes with an assigned component are
    `visited`. A component is cyclic when it holds more than one service or
    a service depending on itself.

    Args:
        graph: Dependency names per service. Unknown names are ignored.

    Returns:
        list[tuple[str, ...]]: Cyclic components, each sorted, ordered by first member.

    Raises:
        RuntimeError: This helper does not raise runtime errors.
    """

    index_counter = 0
    indices: dict[str, int] = {}
    lowlinks: dict[str, int] = {}
    visiting: set[str] = set()
    stack: list[str] = []
    cycles: list[tuple[str, ...]] = []

    def _visit(node: str) -> None:
        nonlocal index_counter
        indices[node] = index_counter
        lowlinks[node] = index_counter
        index_counter += 1
        stack.append(node)
        visiting.add(node)

        for dependency in graph.get(node, ()):
            if dependency not in graph:
                continue
            if dependency not in indices:
                _visit(dependency)
                lowlinks[node] = min(lowlinks[node], lowlinks[dependency])
            elif dependency in visiting:
                lowlinks[node] = min(lowlinks[node], indices[dependency])

        if lowlinks[node] != indices[node]:
            return
        component: list[str] = []
        while True:
            member = stack.pop()
            visiting.discard(member)
            component.append(member)
            if member == node:
                break
        if len(component) > 1 or node in graph.get(node, ()):
            cycles.append(tuple(sorted(component)))

    for node in sorted(graph):
        if node not in indices:
            _visit(node)
    return sorted(cycles)


def sequencer_plan(services: Sequence[ServiceSpec]) -> StartupPlan:
    """Compute ordered startup stages for a service set.

    Args:
        services: Services to plan.

    Returns:
        StartupPlan: Stages whose union is exactly the input set.

    Raises:
        ValueError: Raised when service names are duplicated.
        UnknownDependencyError: Raised when a dependency name is not declared.
        DependencyCycleError: Raised when the graph contains a cycle.
    """

    graph: dict[str, tuple[str, ...]] = {}
    for service in services:
        if service.name in graph:
            raise ValueError(f"duplicate service name {service.name}")
        graph[service.name] = tuple(service.dependencies)

    unknown_references = [
        (name, dependency) for name, dependencies in graph.items() for dependency in dependencies if dependency not in graph
    ]
    if unknown_references:
        raise UnknownDependencyError(unknown_references)

    cycles = sequencer_detect_cycles(graph)
    if cycles:
        raise DependencyCycleError(cycles)

    placed: set[str] = set()
    remaining = set(graph)
    stages: list[tuple[str, ...]] = []
    while remaining:
        stage = tuple(sorted(name for name in remaining if all(dependency in placed for dependency in graph[name])))
        if not stage:
            raise DependencyCycleError([tuple(sorted(remaining))])
        stages.append(stage)
        placed.update(stage)
        remaining.difference_update(stage)
    return StartupPlan(stages=tuple(stages))


def sequencer_transitive_dependents(graph: Mapping[str, Sequence[str]], roots: Iterable[str]) -> set[str]:
    """Return every service that depends directly or transitively on a root.

    Args:
        graph: Dependency names per service.
        roots: Services whose dependents are collected.

    Returns:
        set[str]: Dependents, excluding the roots unless they depend on each other.

    Raises:
        RuntimeError: This helper does not raise runtime errors.
    """

    reverse_graph: dict[str, set[str]] = {name: set() for name in graph}
    for name, dependencies in graph.items():
        for dependency in dependencies:
            reverse_graph.setdefault(dependency, set()).add(name)

    dependents: set[str] = set()
    frontier = list(roots)
    while frontier:
        current = frontier.pop()
        for dependent in reverse_graph.get(current, ()):
            if dependent not in dependents:
                dependents.add(dependent)
                frontier.append(dependent)
    return dependents
