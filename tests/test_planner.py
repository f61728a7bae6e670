from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import networkx as nx
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from stackweave.application.enablement import EnablementReport
from stackweave.application.graph import AttributeGraph
from stackweave.application.planner import (
    InstantiationPlanner,
    MaterializationPlan,
    MaterializationStep,
    dispatch_plan,
)
from stackweave.domain.errors import CyclicReferenceError
from stackweave.domain.models import EnablementState


def _graph(keys: list[str], edges: list[tuple[str, str]]) -> AttributeGraph:
    graph = nx.DiGraph()
    graph.add_nodes_from(keys)
    for producer, consumer in edges:
        graph.add_edge(producer, consumer, references=[], hard=True)
    return AttributeGraph(graph=graph, declaration_order={key: i for i, key in enumerate(keys)})


def _report(keys: list[str], disabled: frozenset[str] | set[str] = frozenset()) -> EnablementReport:
    return EnablementReport(
        states={
            key: EnablementState.DISABLED if key in disabled else EnablementState.ENABLED
            for key in keys
        },
        order=tuple(keys),
    )


@st.composite
def dags(draw: st.DrawFn) -> tuple[list[str], list[tuple[str, str]], set[str]]:
    size = draw(st.integers(min_value=1, max_value=12))
    keys = [f"n{index}" for index in range(size)]
    # Shuffle declaration order independently of the topological order.
    declared = draw(st.permutations(keys))
    edges = [
        (keys[low], keys[high])
        for low in range(size)
        for high in range(low + 1, size)
        if draw(st.booleans())
    ]
    disabled = set(draw(st.lists(st.sampled_from(keys), max_size=3)))
    return list(declared), edges, disabled


@settings(max_examples=75, deadline=None)
@given(dags())
def test_plan_is_a_valid_and_repeatable_topological_order(
    case: tuple[list[str], list[tuple[str, str]], set[str]],
) -> None:
    keys, edges, disabled = case
    graph = _graph(keys, edges)
    report = _report(keys, disabled)
    planner = InstantiationPlanner()

    first = planner.plan(graph, report)
    second = planner.plan(_graph(keys, edges), _report(keys, disabled))

    assert first == second
    assert set(first) == {key for key in keys if key not in disabled}
    position = {key: index for index, key in enumerate(first)}
    for producer, consumer in edges:
        if producer in position and consumer in position:
            assert position[producer] < position[consumer]


def test_ready_instances_follow_declaration_order() -> None:
    graph = _graph(["c", "a", "b"], [("a", "b")])

    assert InstantiationPlanner().plan(graph, _report(["c", "a", "b"])) == ("c", "a", "b")


def test_planner_refuses_cyclic_graph() -> None:
    graph = _graph(["a", "b"], [("a", "b"), ("b", "a")])

    with pytest.raises(CyclicReferenceError):
        InstantiationPlanner().plan(graph, _report(["a", "b"]))


def test_waves_group_independent_steps() -> None:
    plan = MaterializationPlan(
        (
            MaterializationStep("network", "network", {}),
            MaterializationStep("sg", "security_group", {}, wait_for=("network",)),
            MaterializationStep("cache", "cache", {}, wait_for=("network",)),
            MaterializationStep("db", "datastore", {}, wait_for=("network", "sg")),
        )
    )

    assert plan.waves() == (("network",), ("sg", "cache"), ("db",))
    assert plan.keys == ("network", "sg", "cache", "db")
    assert plan.step("db").wait_for == ("network", "sg")


def test_dispatch_plan_hands_steps_over_in_order() -> None:
    seen: list[str] = []

    class RecordingProvisioner:
        def materialize(self, step: MaterializationStep) -> Mapping[str, Any]:
            seen.append(step.key)
            return {"arn": f"arn:{step.key}"}

    plan = MaterializationPlan(
        (
            MaterializationStep("network", "network", {}),
            MaterializationStep("db", "datastore", {}, wait_for=("network",)),
        )
    )

    reported = dispatch_plan(plan, RecordingProvisioner())

    assert seen == ["network", "db"]
    assert reported["db"] == {"arn": "arn:db"}
