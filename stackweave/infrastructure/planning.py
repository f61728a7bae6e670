"""JSON-safe snapshots of resolution results and drift detection between them."""

from __future__ import annotations

import json
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

from stackweave.domain.absent import to_serialisable
from stackweave.domain.errors import DeploymentError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from stackweave.application.engine import ResolutionResult

SNAPSHOT_VERSION = 1


def result_to_mapping(result: ResolutionResult) -> dict[str, object]:
    """Convert a :class:`ResolutionResult` into a serialisable mapping."""

    payload: dict[str, Any] = {
        "version": SNAPSHOT_VERSION,
        "deployment": result.context.name,
        "labels": dict(sorted(result.context.labels.items())),
        "enablement": {
            key: result.enablement.state(key) for key in result.enablement.order
        },
        "plan": [step.as_dict() for step in result.plan.steps],
        "waves": [list(wave) for wave in result.plan.waves()],
        "attributes": result.published,
        "rules": {
            boundary: [rule.as_dict() for rule in rules]
            for boundary, rules in result.rules.items()
        },
    }
    snapshot = _normalise_snapshot(payload)
    if not isinstance(snapshot, dict):  # pragma: no cover - mapping in, mapping out
        raise TypeError("Resolution snapshot must be a mapping")
    return cast(dict[str, object], snapshot)


def detect_plan_drift(
    current: Mapping[str, object],
    reference: Mapping[str, object],
) -> list[str]:
    """Return human-readable differences between two snapshots."""

    differences: list[str] = []
    _compare_snapshots("", dict(current), dict(reference), differences)
    return differences


def write_snapshot(snapshot: Mapping[str, object], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(snapshot, indent=2) + "\n", encoding="utf-8")


def load_snapshot(path: Path) -> dict[str, object]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise DeploymentError(f"Unable to read snapshot {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise DeploymentError(f"Snapshot {path} must hold a JSON object")
    return payload


def _normalise_snapshot(value: object) -> object:
    value = to_serialisable(value)
    if isinstance(value, Mapping):
        return {str(key): _normalise_snapshot(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalise_snapshot(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return str(value)
    return value


def _compare_snapshots(
    prefix: str, current: object, baseline: object, differences: list[str]
) -> None:
    if isinstance(current, dict) and isinstance(baseline, dict):
        keys = sorted(set(current) | set(baseline))
        for key in keys:
            next_prefix = f"{prefix}.{key}" if prefix else key
            if key not in baseline:
                differences.append(f"{next_prefix}: added {current[key]!r}")
                continue
            if key not in current:
                differences.append(f"{next_prefix}: removed {baseline[key]!r}")
                continue
            _compare_snapshots(next_prefix, current[key], baseline[key], differences)
        return

    if current == baseline:
        return

    differences.append(f"{prefix}: expected {baseline!r} but found {current!r}")


__all__ = [
    "SNAPSHOT_VERSION",
    "detect_plan_drift",
    "load_snapshot",
    "result_to_mapping",
    "write_snapshot",
]
