"""Tests for resolution snapshots and drift detection."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from stackweave.application.engine import ResolutionEngine
from stackweave.domain.errors import DeploymentError
from stackweave.domain.models import Deployment
from stackweave.domain.registry import TemplateRegistry
from stackweave.infrastructure import planning

MakeDeployment = Callable[..., Deployment]


def _snapshot(registry: TemplateRegistry, make_deployment: MakeDeployment, port: int = 8080) -> dict[str, object]:
    deployment = make_deployment(
        {
            "network": {"template": "network"},
            "app": {
                "template": "compute",
                "params": {"network_id": "${network.id}", "port": port},
            },
            "cache": {
                "template": "cache",
                "enabled": False,
                "params": {"network_id": "${network.id}"},
            },
        },
        name="staging",
        labels={"owner": "platform"},
    )
    return planning.result_to_mapping(ResolutionEngine(registry).resolve(deployment))


def test_result_to_mapping_is_json_safe(
    registry: TemplateRegistry, make_deployment: MakeDeployment
) -> None:
    snapshot = _snapshot(registry, make_deployment)

    assert snapshot["version"] == planning.SNAPSHOT_VERSION
    assert snapshot["deployment"] == "staging"
    assert snapshot["labels"] == {"owner": "platform"}
    assert snapshot["enablement"] == {
        "network": "enabled",
        "app": "enabled",
        "cache": "disabled",
    }
    assert [step["key"] for step in snapshot["plan"]] == ["network", "app"]  # type: ignore[index, union-attr]
    assert snapshot["waves"] == [["network"], ["app"]]
    assert snapshot["attributes"]["cache"]["url"] is None  # type: ignore[index]


def test_identical_snapshots_have_no_drift(
    registry: TemplateRegistry, make_deployment: MakeDeployment
) -> None:
    assert planning.detect_plan_drift(
        _snapshot(registry, make_deployment), _snapshot(registry, make_deployment)
    ) == []


def test_changed_binding_is_reported(
    registry: TemplateRegistry, make_deployment: MakeDeployment
) -> None:
    baseline = _snapshot(registry, make_deployment)
    current = _snapshot(registry, make_deployment, port=9090)

    differences = planning.detect_plan_drift(current, baseline)

    assert (
        "attributes.app.endpoint: expected 'app.staging.internal:8080' "
        "but found 'app.staging.internal:9090'"
    ) in differences
    assert any(difference.startswith("plan: expected") for difference in differences)


def test_added_and_removed_keys_are_reported() -> None:
    differences = planning.detect_plan_drift(
        {"attributes": {"db": {"host": "db"}}},
        {"attributes": {"cache": {"host": "cache"}}},
    )

    assert differences == [
        "attributes.cache: removed {'host': 'cache'}",
        "attributes.db: added {'host': 'db'}",
    ]


def test_snapshot_round_trips_through_disk(
    tmp_path: Path, registry: TemplateRegistry, make_deployment: MakeDeployment
) -> None:
    snapshot = _snapshot(registry, make_deployment)
    path = tmp_path / "snapshots" / "staging.json"

    planning.write_snapshot(snapshot, path)

    assert planning.load_snapshot(path) == snapshot


@pytest.mark.parametrize("content", ["not json", "[]"])
def test_load_snapshot_rejects_invalid_files(tmp_path: Path, content: str) -> None:
    path = tmp_path / "baseline.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(DeploymentError):
        planning.load_snapshot(path)
