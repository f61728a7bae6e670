"""Data model shared by the registry, the resolvers and the planner."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Literal


class EnablementState(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"
    IMPLICITLY_DISABLED = "implicitly_disabled"

    @property
    def is_enabled(self) -> bool:
        return self is EnablementState.ENABLED


class SlotKind(str, Enum):
    LITERAL = "literal"
    REFERENCE = "reference"


class DependencyKind(str, Enum):
    """Hard dependencies cascade disablement, soft ones resolve to Absent."""

    HARD = "hard"
    SOFT = "soft"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"

    def mirrored(self) -> Direction:
        if self is Direction.INBOUND:
            return Direction.OUTBOUND
        return Direction.INBOUND


@dataclass(frozen=True)
class ParameterSlot:
    """One declared parameter of a component template."""

    name: str
    kind: SlotKind = SlotKind.LITERAL
    dependency: DependencyKind = DependencyKind.HARD
    required: bool = False
    default: Any = None
    description: str = ""


@dataclass(frozen=True)
class PublishedAttribute:
    """Attribute a template publishes.

    ``expression`` is a format string over ``{key}``, ``{params.*}``,
    ``{attrs.*}``, ``{secrets.*}`` and ``{context.*}``. Attributes without an
    expression are only known once the provisioner materialises them.
    """

    name: str
    expression: str | None = None


CHARACTER_CLASSES: tuple[str, ...] = ("lower", "upper", "digits", "symbols")


@dataclass(frozen=True)
class SecretSpec:
    length: int = 32
    character_classes: tuple[str, ...] = ("lower", "upper", "digits")


@dataclass(frozen=True)
class ComponentTemplate:
    """Reusable, parameterised definition of one infrastructure building block."""

    id: str
    description: str = ""
    parameters: tuple[ParameterSlot, ...] = ()
    attributes: tuple[PublishedAttribute, ...] = ()
    secrets: Mapping[str, SecretSpec] = field(default_factory=dict)
    security_boundary: bool = False
    identity_attribute: str = "id"

    def slot(self, name: str) -> ParameterSlot | None:
        for slot in self.parameters:
            if slot.name == name:
                return slot
        return None

    @property
    def attribute_names(self) -> tuple[str, ...]:
        return tuple(attribute.name for attribute in self.attributes)

    def publishes(self, name: str) -> bool:
        return name in self.attribute_names


@dataclass(frozen=True)
class AttributeReference:
    """Edge ``(source instance, attribute) -> (target instance, parameter slot)``."""

    source_key: str
    attribute: str
    target_key: str
    slot: str

    @property
    def expression(self) -> str:
        return "${" + f"{self.source_key}.{self.attribute}" + "}"


@dataclass(frozen=True)
class ParameterBinding:
    """Raw value bound to a slot together with the references it embeds."""

    slot: str
    raw: Any
    references: tuple[AttributeReference, ...] = ()

    @property
    def is_literal(self) -> bool:
        return not self.references


@dataclass(frozen=True)
class EnablementFlag:
    """Per-instance enablement declaration.

    ``default`` applies when the document says nothing, ``explicit`` when it
    holds a boolean, ``mirror`` when it holds ``${key.enabled}`` or
    ``!${key.enabled}``.
    """

    mode: Literal["default", "explicit", "mirror"] = "default"
    value: bool = True
    mirror_of: str | None = None
    negate: bool = False

    @property
    def forced(self) -> bool:
        return self.mode == "explicit" and self.value


@dataclass(frozen=True)
class PortRange:
    start: int
    end: int

    def __str__(self) -> str:
        if self.start == self.end:
            return str(self.start)
        return f"{self.start}-{self.end}"


@dataclass(frozen=True)
class Peer:
    """Peer of a permission edge: literal CIDRs, another boundary, or ``self``."""

    kind: Literal["cidr", "boundary", "self"]
    cidrs: tuple[str, ...] = ()
    instance_key: str | None = None

    def __str__(self) -> str:
        if self.kind == "cidr":
            return ",".join(self.cidrs)
        if self.kind == "self":
            return "self"
        return str(self.instance_key)


@dataclass(frozen=True)
class PermissionEdge:
    """One declared allow-rule attached to a security boundary."""

    name: str
    direction: Direction
    protocol: str
    ports: PortRange
    peer: Peer
    required: bool = False
    description: str = ""


@dataclass(frozen=True)
class InstanceDeclaration:
    """One entry of the deployment document, before resolution."""

    key: str
    template_id: str
    index: int
    bindings: Mapping[str, ParameterBinding] = field(default_factory=dict)
    enabled: EnablementFlag = field(default_factory=EnablementFlag)
    depends_on: tuple[str, ...] = ()
    permissions: tuple[PermissionEdge, ...] = ()
    labels: Mapping[str, str] = field(default_factory=dict)
    rotate_secrets: bool = False

    @property
    def references(self) -> tuple[AttributeReference, ...]:
        return tuple(
            reference
            for binding in self.bindings.values()
            for reference in binding.references
        )


@dataclass(frozen=True)
class DeploymentContext:
    """Immutable deployment-wide values threaded into every construction call."""

    name: str
    labels: Mapping[str, str] = field(default_factory=dict)

    def labels_for(self, declaration: InstanceDeclaration) -> dict[str, str]:
        merged = dict(self.labels)
        merged.update(declaration.labels)
        return dict(sorted(merged.items()))


@dataclass(frozen=True)
class Deployment:
    context: DeploymentContext
    instances: tuple[InstanceDeclaration, ...]

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(declaration.key for declaration in self.instances)

    def declaration(self, key: str) -> InstanceDeclaration:
        for declaration in self.instances:
            if declaration.key == key:
                return declaration
        raise KeyError(key)


@dataclass
class ComponentInstance:
    """Concrete use of a template during one resolution run."""

    declaration: InstanceDeclaration
    template: ComponentTemplate
    state: EnablementState
    bindings: dict[str, Any] = field(default_factory=dict)
    _attributes: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    @property
    def key(self) -> str:
        return self.declaration.key

    @property
    def template_id(self) -> str:
        return self.template.id

    @property
    def published(self) -> Mapping[str, Any]:
        """Read-only view of the attributes this instance owns."""

        return MappingProxyType(self._attributes)

    def publish(self, attributes: Mapping[str, Any]) -> None:
        """Record the resolved attributes; an instance publishes exactly once."""

        if self._attributes:
            raise RuntimeError(f"Instance '{self.key}' has already published attributes")
        self._attributes.update(attributes)


@dataclass(frozen=True)
class SecurityRule:
    """Concrete allow-rule produced for a security boundary."""

    boundary: str
    direction: Direction
    protocol: str
    ports: PortRange
    peer_kind: Literal["cidr", "boundary", "self"]
    peer: tuple[str, ...]
    origin: Literal["declared", "reverse"]
    edge: str
    declared_by: str

    @property
    def identity(self) -> tuple[Any, ...]:
        return (
            self.boundary,
            self.direction,
            self.protocol,
            self.ports,
            self.peer_kind,
            self.peer,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "boundary": self.boundary,
            "direction": self.direction.value,
            "protocol": self.protocol,
            "ports": str(self.ports),
            "peer_kind": self.peer_kind,
            "peer": list(self.peer),
            "origin": self.origin,
            "edge": self.edge,
            "declared_by": self.declared_by,
        }


__all__ = [
    "AttributeReference",
    "CHARACTER_CLASSES",
    "ComponentInstance",
    "ComponentTemplate",
    "DependencyKind",
    "Deployment",
    "DeploymentContext",
    "Direction",
    "EnablementFlag",
    "EnablementState",
    "InstanceDeclaration",
    "ParameterBinding",
    "ParameterSlot",
    "PermissionEdge",
    "Peer",
    "PortRange",
    "PublishedAttribute",
    "SecretSpec",
    "SecurityRule",
    "SlotKind",
]
