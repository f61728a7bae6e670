"""Deterministic instantiation planning and the materialisation hand-off."""

from __future__ import annotations

import heapq
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from stackweave.domain.absent import to_serialisable
from stackweave.domain.errors import CyclicReferenceError
from stackweave.domain.models import ComponentInstance, Deployment

from .enablement import EnablementReport
from .graph import AttributeGraph

logger = logging.getLogger(__name__)


class InstantiationPlanner:
    """Topologically order enabled instances using Kahn's algorithm.

    Ready instances are released in declaration order, so identical input
    always yields a byte-identical plan.
    """

    def plan(self, graph: AttributeGraph, enablement: EnablementReport) -> tuple[str, ...]:
        graph.ensure_acyclic()
        enabled = [key for key in graph.keys if enablement.is_enabled(key)]
        enabled_set = set(enabled)
        order = graph.declaration_order

        indegree = {
            key: sum(1 for producer in graph.dependencies(key) if producer in enabled_set)
            for key in enabled
        }
        ready = [(order[key], key) for key in enabled if indegree[key] == 0]
        heapq.heapify(ready)

        planned: list[str] = []
        while ready:
            _, key = heapq.heappop(ready)
            planned.append(key)
            for consumer in graph.consumers(key):
                if consumer not in enabled_set:
                    continue
                indegree[consumer] -= 1
                if indegree[consumer] == 0:
                    heapq.heappush(ready, (order[consumer], consumer))

        if len(planned) != len(enabled):
            remaining = [key for key in enabled if key not in set(planned)]
            raise CyclicReferenceError([tuple(remaining)])
        logger.debug("planner.ordered keys=%s", ",".join(planned))
        return tuple(planned)


@dataclass(frozen=True)
class MaterializationStep:
    """One instance handed to the provisioner.

    The provisioner must not issue this step before every key in
    ``wait_for`` has completed.
    """

    key: str
    template_id: str
    bindings: Mapping[str, Any]
    labels: Mapping[str, str] = field(default_factory=dict)
    wait_for: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "template": self.template_id,
            "bindings": dict(self.bindings),
            "labels": dict(self.labels),
            "wait_for": list(self.wait_for),
        }


@dataclass(frozen=True)
class MaterializationPlan:
    steps: tuple[MaterializationStep, ...] = ()

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(step.key for step in self.steps)

    def step(self, key: str) -> MaterializationStep:
        for step in self.steps:
            if step.key == key:
                return step
        raise KeyError(key)

    def waves(self) -> tuple[tuple[str, ...], ...]:
        """Group steps into layers whose members may run concurrently.

        A step lands one layer after the latest of its ``wait_for`` keys;
        members of a layer keep plan order.
        """

        level: dict[str, int] = {}
        for step in self.steps:
            level[step.key] = 1 + max((level[key] for key in step.wait_for), default=-1)
        layers: dict[int, list[str]] = {}
        for step in self.steps:
            layers.setdefault(level[step.key], []).append(step.key)
        return tuple(tuple(layers[index]) for index in sorted(layers))


def build_materialization_plan(
    order: Sequence[str],
    deployment: Deployment,
    graph: AttributeGraph,
    enablement: EnablementReport,
    instances: Mapping[str, ComponentInstance],
) -> MaterializationPlan:
    """Turn a planned order of resolved instances into provisioner steps."""

    context = deployment.context
    steps = tuple(
        MaterializationStep(
            key=key,
            template_id=instances[key].template_id,
            bindings=to_serialisable(instances[key].bindings),
            labels=context.labels_for(deployment.declaration(key)),
            wait_for=tuple(
                producer
                for producer in graph.dependencies(key)
                if enablement.is_enabled(producer)
            ),
        )
        for key in order
    )
    return MaterializationPlan(steps)


class Provisioner(Protocol):
    """External collaborator that materialises planned steps."""

    def materialize(
        self, step: MaterializationStep
    ) -> Mapping[str, Any]:  # pragma: no cover - interface
        """Create or update the resource and return the attributes it reported."""


def dispatch_plan(
    plan: MaterializationPlan, provisioner: Provisioner
) -> dict[str, Mapping[str, Any]]:
    """Hand every step to ``provisioner`` sequentially in plan order."""

    reported: dict[str, Mapping[str, Any]] = {}
    for step in plan.steps:
        logger.info("planner.dispatch key=%s template=%s", step.key, step.template_id)
        reported[step.key] = provisioner.materialize(step)
    return reported


__all__ = [
    "InstantiationPlanner",
    "MaterializationPlan",
    "MaterializationStep",
    "Provisioner",
    "build_materialization_plan",
    "dispatch_plan",
]
