from __future__ import annotations

from pathlib import Path

import pytest

from stackweave.core.deployment import (
    iter_reference_tokens,
    load_deployment,
    parse_binding,
    parse_deployment,
    parse_permission,
)
from stackweave.domain.errors import (
    DeploymentError,
    InvalidPermissionEdgeError,
    InvalidReferenceSyntaxError,
    ResolutionErrors,
)
from stackweave.domain.models import AttributeReference, Direction, PortRange


def test_parse_binding_extracts_references() -> None:
    binding = parse_binding("app", "database_url", "postgres://${db.host}:${db.port}/app")

    assert binding.references == (
        AttributeReference("db", "host", "app", "database_url"),
        AttributeReference("db", "port", "app", "database_url"),
    )
    assert not binding.is_literal


def test_parse_binding_walks_nested_values() -> None:
    binding = parse_binding("app", "environment", {"DB": "${db.host}", "PORTS": [80, "${lb.port}"]})

    assert [reference.source_key for reference in binding.references] == ["db", "lb"]


def test_literal_binding_has_no_references() -> None:
    binding = parse_binding("app", "port", 8080)

    assert binding.is_literal
    assert binding.raw == 8080


@pytest.mark.parametrize(
    "raw",
    ["${}", "${db}", "${db.host.name}", "${db.host", "prefix ${ db.}"],
)
def test_malformed_reference_names_instance_and_text(raw: str) -> None:
    with pytest.raises(InvalidReferenceSyntaxError) as excinfo:
        list(iter_reference_tokens("app", raw))

    assert excinfo.value.instance_key == "app"
    assert excinfo.value.raw == raw


def test_parse_deployment_keeps_declaration_order() -> None:
    deployment = parse_deployment(
        {
            "name": "prod",
            "labels": {"team": "platform"},
            "instances": {
                "network": {"template": "network"},
                "db": {"template": "datastore", "params": {"network_id": "${network.id}"}},
            },
        }
    )

    assert deployment.keys == ("network", "db")
    assert deployment.context.name == "prod"
    assert deployment.context.labels == {"team": "platform"}
    assert deployment.declaration("db").index == 1


def test_parse_deployment_accepts_instance_list() -> None:
    deployment = parse_deployment(
        {"instances": [{"key": "network", "template": "network"}]}, default_name="dev"
    )

    assert deployment.keys == ("network",)
    assert deployment.context.name == "dev"


def test_enabled_flag_variants() -> None:
    deployment = parse_deployment(
        {
            "instances": {
                "a": {"template": "network"},
                "b": {"template": "network", "enabled": True},
                "c": {"template": "network", "enabled": False},
                "d": {"template": "network", "enabled": "${b.enabled}"},
                "e": {"template": "network", "enabled": "!${b.enabled}"},
            }
        }
    )

    flags = {declaration.key: declaration.enabled for declaration in deployment.instances}
    assert flags["a"].mode == "default" and not flags["a"].forced
    assert flags["b"].forced
    assert flags["c"].mode == "explicit" and flags["c"].value is False
    assert flags["d"].mirror_of == "b" and not flags["d"].negate
    assert flags["e"].negate


def test_parse_deployment_collects_independent_errors() -> None:
    with pytest.raises(ResolutionErrors) as excinfo:
        parse_deployment(
            {
                "instances": {
                    "a": {"template": "network", "params": {"cidr": "${oops}"}},
                    "b": {"params": {}},
                }
            }
        )

    kinds = {type(error) for error in excinfo.value.errors}
    assert kinds == {InvalidReferenceSyntaxError, DeploymentError}


def test_parse_permission_defaults_and_ranges() -> None:
    edge = parse_permission("sg", 0, {"peer": "10.0.0.0/8", "ports": "8000-8100"})

    assert edge.direction is Direction.INBOUND
    assert edge.protocol == "tcp"
    assert edge.ports == PortRange(8000, 8100)
    assert edge.peer.kind == "cidr"
    assert edge.peer.cidrs == ("10.0.0.0/8",)
    assert edge.name == "inbound-0"


def test_parse_permission_peer_kinds() -> None:
    self_edge = parse_permission("sg", 0, {"name": "mesh", "peer": "self", "protocol": "-1"})
    boundary_edge = parse_permission(
        "sg", 1, {"name": "to-db", "direction": "outbound", "peer": "db_sg", "ports": 5432}
    )

    assert self_edge.peer.kind == "self"
    assert self_edge.protocol == "all"
    assert self_edge.ports == PortRange(0, 65535)
    assert boundary_edge.peer.kind == "boundary"
    assert boundary_edge.peer.instance_key == "db_sg"
    assert str(boundary_edge.ports) == "5432"


@pytest.mark.parametrize(
    "payload",
    [
        {"peer": "10.0.0.300/8"},
        {"peer": "self", "ports": "90-80"},
        {"peer": "self", "direction": "sideways"},
        {"ports": 80},
    ],
)
def test_parse_permission_rejects_malformed_edges(payload: dict[str, object]) -> None:
    with pytest.raises(InvalidPermissionEdgeError):
        parse_permission("sg", 0, payload)


def test_duplicate_edge_names_are_rejected() -> None:
    with pytest.raises(InvalidPermissionEdgeError, match="unique"):
        parse_deployment(
            {
                "instances": {
                    "sg": {
                        "template": "security_group",
                        "permissions": [
                            {"name": "web", "peer": "0.0.0.0/0", "ports": 443},
                            {"name": "web", "peer": "0.0.0.0/0", "ports": 80},
                        ],
                    }
                }
            }
        )


def test_load_deployment_uses_file_stem_as_default_name(tmp_path: Path) -> None:
    document = tmp_path / "staging.yaml"
    document.write_text(
        "instances:\n  network:\n    template: network\n", encoding="utf-8"
    )

    deployment = load_deployment(document)

    assert deployment.context.name == "staging"


def test_load_deployment_missing_file(tmp_path: Path) -> None:
    with pytest.raises(DeploymentError, match="not found"):
        load_deployment(tmp_path / "missing.yaml")
