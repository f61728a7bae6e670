"""Deployment document loading and reference-expression parsing."""

from __future__ import annotations

import ipaddress
import re
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

import yaml

from stackweave.domain.errors import (
    DeploymentError,
    InvalidPermissionEdgeError,
    InvalidReferenceSyntaxError,
    StackweaveError,
    raise_collected,
)
from stackweave.domain.models import (
    AttributeReference,
    Deployment,
    DeploymentContext,
    Direction,
    EnablementFlag,
    InstanceDeclaration,
    ParameterBinding,
    Peer,
    PermissionEdge,
    PortRange,
)

INSTANCE_KEY_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")
_REFERENCE_TOKEN = re.compile(r"\$\{([^{}]*)\}")
_REFERENCE_BODY = re.compile(r"^([A-Za-z][A-Za-z0-9_-]*)\.([A-Za-z_][A-Za-z0-9_]*)$")
_ENABLED_EXPRESSION = re.compile(r"^(!?)\$\{([A-Za-z][A-Za-z0-9_-]*)\.enabled\}$")
_ALL_PORTS = PortRange(0, 65535)


def iter_reference_tokens(instance_key: str, text: str) -> Iterator[tuple[str, str, str]]:
    """Yield ``(token, instance, attribute)`` for every ``${...}`` in ``text``.

    Raises :class:`InvalidReferenceSyntaxError` for empty, dotless,
    multi-dotted or unterminated expressions.
    """

    for match in _REFERENCE_TOKEN.finditer(text):
        body = match.group(1).strip()
        parsed = _REFERENCE_BODY.match(body)
        if parsed is None:
            raise InvalidReferenceSyntaxError(
                instance_key, text, "expected ${instance-key.attribute-name}"
            )
        yield match.group(0), parsed.group(1), parsed.group(2)
    if "${" in _REFERENCE_TOKEN.sub("", text):
        raise InvalidReferenceSyntaxError(instance_key, text, "unterminated expression")


def _strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from _strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _strings(item)


def parse_binding(instance_key: str, slot: str, raw: Any) -> ParameterBinding:
    """Parse one parameter value, extracting the references it embeds."""

    references: list[AttributeReference] = []
    for text in _strings(raw):
        for _, source_key, attribute in iter_reference_tokens(instance_key, text):
            reference = AttributeReference(
                source_key=source_key,
                attribute=attribute,
                target_key=instance_key,
                slot=slot,
            )
            if reference not in references:
                references.append(reference)
    return ParameterBinding(slot=slot, raw=raw, references=tuple(references))


def _parse_enabled(instance_key: str, raw: Any) -> EnablementFlag:
    if raw is None:
        return EnablementFlag()
    if isinstance(raw, bool):
        return EnablementFlag(mode="explicit", value=raw)
    if isinstance(raw, str):
        match = _ENABLED_EXPRESSION.match(raw.strip())
        if match:
            return EnablementFlag(
                mode="mirror", mirror_of=match.group(2), negate=bool(match.group(1))
            )
        if "${" in raw:
            raise InvalidReferenceSyntaxError(
                instance_key, raw, "enablement expressions take the form ${instance.enabled}"
            )
    raise DeploymentError(
        f"Instance '{instance_key}' has an invalid 'enabled' value {raw!r}"
    )


def _parse_ports(boundary: str, edge: str, raw: Any) -> PortRange:
    if raw is None or (isinstance(raw, str) and raw.strip().lower() in {"all", "*"}):
        return _ALL_PORTS
    try:
        if isinstance(raw, Mapping):
            start, end = int(raw["from"]), int(raw.get("to", raw["from"]))
        elif isinstance(raw, str) and "-" in raw:
            low, high = raw.split("-", 1)
            start, end = int(low), int(high)
        else:
            start = end = int(raw)
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidPermissionEdgeError(boundary, edge, f"invalid port range {raw!r}") from exc
    if not 0 <= start <= end <= 65535:
        raise InvalidPermissionEdgeError(boundary, edge, f"invalid port range {raw!r}")
    return PortRange(start, end)


def _parse_cidrs(boundary: str, edge: str, values: list[Any]) -> tuple[str, ...]:
    cidrs: list[str] = []
    for value in values:
        try:
            network = ipaddress.ip_network(str(value).strip(), strict=False)
        except ValueError as exc:
            raise InvalidPermissionEdgeError(boundary, edge, f"invalid CIDR {value!r}") from exc
        cidrs.append(str(network))
    return tuple(dict.fromkeys(cidrs))


def _parse_peer(boundary: str, edge: str, payload: Mapping[str, Any]) -> Peer:
    if "cidrs" in payload:
        cidrs = payload["cidrs"]
        values = cidrs if isinstance(cidrs, list) else [cidrs]
        return Peer(kind="cidr", cidrs=_parse_cidrs(boundary, edge, values))
    raw = payload.get("peer")
    if isinstance(raw, list):
        return Peer(kind="cidr", cidrs=_parse_cidrs(boundary, edge, raw))
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidPermissionEdgeError(boundary, edge, "a 'peer' or 'cidrs' entry is required")
    text = raw.strip()
    if text == "self":
        return Peer(kind="self")
    if "/" in text or text.replace(".", "").isdigit() or ":" in text:
        return Peer(kind="cidr", cidrs=_parse_cidrs(boundary, edge, [text]))
    if not INSTANCE_KEY_PATTERN.match(text):
        raise InvalidPermissionEdgeError(boundary, edge, f"invalid peer {text!r}")
    return Peer(kind="boundary", instance_key=text)


def parse_permission(boundary: str, position: int, payload: Any) -> PermissionEdge:
    """Parse one permission edge declared on ``boundary``."""

    if not isinstance(payload, Mapping):
        raise InvalidPermissionEdgeError(boundary, f"#{position}", "must be a mapping")
    try:
        direction = Direction(str(payload.get("direction", "inbound")).lower())
    except ValueError as exc:
        raise InvalidPermissionEdgeError(
            boundary, str(payload.get("name", f"#{position}")), "direction must be inbound or outbound"
        ) from exc
    name = str(payload.get("name") or f"{direction.value}-{position}")
    protocol = str(payload.get("protocol", "tcp")).lower()
    if protocol in {"-1", "any"}:
        protocol = "all"
    return PermissionEdge(
        name=name,
        direction=direction,
        protocol=protocol,
        ports=_parse_ports(boundary, name, payload.get("ports")),
        peer=_parse_peer(boundary, name, payload),
        required=bool(payload.get("required", False)),
        description=str(payload.get("description", "")),
    )


def _parse_instance(key: str, index: int, payload: Any) -> InstanceDeclaration:
    if not INSTANCE_KEY_PATTERN.match(key):
        raise DeploymentError(f"Invalid instance key {key!r}")
    if not isinstance(payload, Mapping):
        raise DeploymentError(f"Instance '{key}' must be a mapping")
    template_id = payload.get("template")
    if not template_id:
        raise DeploymentError(f"Instance '{key}' requires a 'template'")

    params = payload.get("params") or {}
    if not isinstance(params, Mapping):
        raise DeploymentError(f"Instance '{key}' params must be a mapping")
    bindings = {
        str(slot): parse_binding(key, str(slot), raw) for slot, raw in params.items()
    }

    depends_on = tuple(str(item) for item in payload.get("depends_on") or ())
    for dependency in depends_on:
        if not INSTANCE_KEY_PATTERN.match(dependency):
            raise DeploymentError(f"Instance '{key}' depends on invalid key {dependency!r}")

    permissions = tuple(
        parse_permission(key, position, entry)
        for position, entry in enumerate(payload.get("permissions") or ())
    )
    names = [edge.name for edge in permissions]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise InvalidPermissionEdgeError(key, duplicates[0], "edge names must be unique")

    labels_payload = payload.get("labels") or {}
    if not isinstance(labels_payload, Mapping):
        raise DeploymentError(f"Instance '{key}' labels must be a mapping")

    return InstanceDeclaration(
        key=key,
        template_id=str(template_id),
        index=index,
        bindings=bindings,
        enabled=_parse_enabled(key, payload.get("enabled")),
        depends_on=depends_on,
        permissions=permissions,
        labels={str(name): str(value) for name, value in labels_payload.items()},
        rotate_secrets=bool(payload.get("rotate_secrets", False)),
    )


def _instance_entries(payload: Any) -> list[tuple[str, Any]]:
    if isinstance(payload, Mapping):
        return [(str(key), value) for key, value in payload.items()]
    if isinstance(payload, list):
        entries: list[tuple[str, Any]] = []
        for item in payload:
            if not isinstance(item, Mapping) or not item.get("key"):
                raise DeploymentError("Instance list entries require a 'key'")
            entries.append((str(item["key"]), item))
        return entries
    raise DeploymentError("Deployments require an 'instances' mapping or list")


def parse_deployment(payload: Mapping[str, Any], *, default_name: str = "default") -> Deployment:
    """Build a :class:`Deployment` from an already-parsed document.

    Malformed instances are collected so every syntax error is reported in
    one pass.
    """

    labels_payload = payload.get("labels") or {}
    if not isinstance(labels_payload, Mapping):
        raise DeploymentError("Deployment labels must be a mapping")
    context = DeploymentContext(
        name=str(payload.get("name") or default_name),
        labels={str(key): str(value) for key, value in labels_payload.items()},
    )

    errors: list[StackweaveError] = []
    declarations: list[InstanceDeclaration] = []
    seen: set[str] = set()
    for index, (key, entry) in enumerate(_instance_entries(payload.get("instances"))):
        if key in seen:
            errors.append(DeploymentError(f"Instance '{key}' is declared twice"))
            continue
        seen.add(key)
        try:
            declarations.append(_parse_instance(key, index, entry))
        except StackweaveError as exc:
            errors.append(exc)
    raise_collected(errors)
    return Deployment(context=context, instances=tuple(declarations))


def load_deployment(path: Path) -> Deployment:
    """Load a YAML (or JSON) deployment document from disk."""

    if not path.exists():
        raise DeploymentError(f"Deployment file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        try:
            payload = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise DeploymentError(f"Deployment {path} is not valid YAML") from exc
    if not isinstance(payload, Mapping):
        raise DeploymentError(f"Deployment {path} must contain a mapping")
    return parse_deployment(payload, default_name=path.stem)


__all__ = [
    "INSTANCE_KEY_PATTERN",
    "iter_reference_tokens",
    "load_deployment",
    "parse_binding",
    "parse_deployment",
    "parse_permission",
]
