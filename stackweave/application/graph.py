"""Attribute graph construction and cycle detection."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import networkx as nx

from stackweave.domain.errors import (
    CyclicReferenceError,
    DeploymentError,
    InvalidPermissionEdgeError,
    StackweaveError,
    UnknownAttributeError,
    UnknownInstanceError,
    UnknownTemplateError,
    raise_collected,
)
from stackweave.domain.models import (
    AttributeReference,
    ComponentTemplate,
    DependencyKind,
    Deployment,
    InstanceDeclaration,
)
from stackweave.domain.registry import TemplateRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencySet:
    """Producers an instance consumes, split by dependency strength."""

    hard: tuple[str, ...] = ()
    soft: tuple[str, ...] = ()

    @property
    def all(self) -> tuple[str, ...]:
        return self.hard + self.soft


def collect_dependencies(
    declaration: InstanceDeclaration, template: ComponentTemplate
) -> DependencySet:
    """Classify the producers of ``declaration`` as hard or soft dependencies.

    References bound to soft slots are soft; every other reference and every
    ``depends_on`` entry is hard. A producer referenced both ways is hard.
    """

    hard: list[str] = []
    soft: list[str] = []
    for reference in declaration.references:
        slot = template.slot(reference.slot)
        kind = slot.dependency if slot is not None else DependencyKind.HARD
        bucket = hard if kind is DependencyKind.HARD else soft
        if reference.source_key not in bucket:
            bucket.append(reference.source_key)
    for dependency in declaration.depends_on:
        if dependency not in hard:
            hard.append(dependency)
    return DependencySet(
        hard=tuple(hard), soft=tuple(key for key in soft if key not in hard)
    )


def dependency_map(
    deployment: Deployment, registry: TemplateRegistry
) -> dict[str, DependencySet]:
    """Return the unresolved dependency graph, skipping unknown templates."""

    dependencies: dict[str, DependencySet] = {}
    for declaration in deployment.instances:
        if declaration.template_id not in registry:
            continue
        dependencies[declaration.key] = collect_dependencies(
            declaration, registry.lookup(declaration.template_id)
        )
    return dependencies


@dataclass(frozen=True)
class AttributeGraph:
    """Directed graph with an edge ``producer -> consumer`` per dependency.

    Edges carry the :class:`AttributeReference` objects that induced them and
    whether the dependency is hard.
    """

    graph: nx.DiGraph
    declaration_order: Mapping[str, int]

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(sorted(self.declaration_order, key=self.declaration_order.__getitem__))

    def _ordered(self, keys: Sequence[str]) -> tuple[str, ...]:
        return tuple(sorted(keys, key=self.declaration_order.__getitem__))

    def dependencies(self, key: str, *, hard_only: bool = False) -> tuple[str, ...]:
        producers = [
            producer
            for producer, _, data in self.graph.in_edges(key, data=True)
            if data.get("hard", True) or not hard_only
        ]
        return self._ordered(producers)

    def consumers(self, key: str) -> tuple[str, ...]:
        return self._ordered(list(self.graph.successors(key)))

    def references_into(self, key: str) -> tuple[AttributeReference, ...]:
        """Return the references ``key`` consumes, in producer declaration order."""

        references: list[AttributeReference] = []
        for producer in self.dependencies(key):
            references.extend(self.graph.edges[producer, key].get("references", ()))
        return tuple(references)

    def find_cycles(self) -> list[tuple[str, ...]]:
        """Depth-first search with an explicit recursion stack.

        Every back edge closes a cycle; cycles are rotated to start at their
        earliest-declared member and de-duplicated.
        """

        visited: set[str] = set()
        seen: set[tuple[str, ...]] = set()
        cycles: list[tuple[str, ...]] = []
        for root in self.keys:
            if root in visited:
                continue
            visited.add(root)
            path = [root]
            on_path = {root: 0}
            frontier = [iter(self.consumers(root))]
            while frontier:
                successor = next(frontier[-1], None)
                if successor is None:
                    frontier.pop()
                    del on_path[path.pop()]
                    continue
                if successor in on_path:
                    cycle = self._canonical(tuple(path[on_path[successor]:]))
                    if cycle not in seen:
                        seen.add(cycle)
                        cycles.append(cycle)
                    continue
                if successor in visited:
                    continue
                visited.add(successor)
                on_path[successor] = len(path)
                path.append(successor)
                frontier.append(iter(self.consumers(successor)))
        return cycles

    def ensure_acyclic(self) -> None:
        cycles = self.find_cycles()
        if cycles:
            raise CyclicReferenceError(cycles)

    def _canonical(self, cycle: tuple[str, ...]) -> tuple[str, ...]:
        start = min(range(len(cycle)), key=lambda i: self.declaration_order[cycle[i]])
        return cycle[start:] + cycle[:start]


class AttributeGraphBuilder:
    """Validate instance wiring and build the :class:`AttributeGraph`."""

    def __init__(self, registry: TemplateRegistry) -> None:
        self._registry = registry

    def build(self, deployment: Deployment) -> AttributeGraph:
        errors: list[StackweaveError] = []
        keys = set(deployment.keys)
        templates: dict[str, ComponentTemplate] = {}
        graph = nx.DiGraph()

        for declaration in deployment.instances:
            graph.add_node(declaration.key, template=declaration.template_id)
            try:
                templates[declaration.key] = self._registry.lookup(declaration.template_id)
            except UnknownTemplateError as exc:
                errors.append(exc)

        for declaration in deployment.instances:
            template = templates.get(declaration.key)
            if template is None:
                continue
            errors.extend(self._check_bindings(declaration, template))
            mirror = declaration.enabled.mirror_of
            if mirror is not None and mirror not in keys:
                errors.append(UnknownInstanceError(mirror, declaration.key))

            dependencies = collect_dependencies(declaration, template)
            for reference in declaration.references:
                error = self._check_reference(reference, keys, templates)
                if error is not None:
                    errors.append(error)
                    continue
                self._add_edge(graph, reference.source_key, declaration.key, reference, dependencies)
            for producer in declaration.depends_on:
                if producer not in keys:
                    errors.append(UnknownInstanceError(producer, declaration.key))
                    continue
                self._add_edge(graph, producer, declaration.key, None, dependencies)

        result = AttributeGraph(
            graph=graph,
            declaration_order={
                declaration.key: declaration.index for declaration in deployment.instances
            },
        )
        cycles = result.find_cycles()
        if cycles:
            errors.append(CyclicReferenceError(cycles))
        raise_collected(errors)
        logger.debug(
            "attribute_graph.built nodes=%d edges=%d",
            graph.number_of_nodes(),
            graph.number_of_edges(),
        )
        return result

    @staticmethod
    def _add_edge(
        graph: nx.DiGraph,
        producer: str,
        consumer: str,
        reference: AttributeReference | None,
        dependencies: DependencySet,
    ) -> None:
        if not graph.has_edge(producer, consumer):
            graph.add_edge(
                producer,
                consumer,
                references=[],
                hard=producer in dependencies.hard,
            )
        if reference is not None:
            graph.edges[producer, consumer]["references"].append(reference)

    @staticmethod
    def _check_reference(
        reference: AttributeReference,
        keys: set[str],
        templates: Mapping[str, ComponentTemplate],
    ) -> StackweaveError | None:
        if reference.source_key not in keys:
            return UnknownInstanceError(reference.source_key, reference.target_key)
        producer = templates.get(reference.source_key)
        if producer is not None and not producer.publishes(reference.attribute):
            return UnknownAttributeError(
                reference.source_key, reference.attribute, reference.target_key
            )
        return None

    @staticmethod
    def _check_bindings(
        declaration: InstanceDeclaration, template: ComponentTemplate
    ) -> list[StackweaveError]:
        errors: list[StackweaveError] = []
        for slot_name in declaration.bindings:
            if template.slot(slot_name) is None:
                errors.append(
                    DeploymentError(
                        f"Instance '{declaration.key}' binds unknown parameter "
                        f"'{slot_name}' of template '{template.id}'"
                    )
                )
        for slot in template.parameters:
            if slot.required and slot.name not in declaration.bindings:
                errors.append(
                    DeploymentError(
                        f"Instance '{declaration.key}' is missing required parameter "
                        f"'{slot.name}' of template '{template.id}'"
                    )
                )
        if declaration.permissions and not template.security_boundary:
            errors.append(
                InvalidPermissionEdgeError(
                    declaration.key,
                    declaration.permissions[0].name,
                    f"template '{template.id}' is not a security boundary",
                )
            )
        return errors


__all__ = [
    "AttributeGraph",
    "AttributeGraphBuilder",
    "DependencySet",
    "collect_dependencies",
    "dependency_map",
]
