"""Security relationship graph: declared permission edges to concrete rules."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from stackweave.domain.absent import to_serialisable
from stackweave.domain.errors import (
    InvalidPermissionEdgeError,
    StackweaveError,
    UnresolvedPeerError,
    raise_collected,
)
from stackweave.domain.models import (
    AttributeReference,
    ComponentTemplate,
    Deployment,
    Direction,
    InstanceDeclaration,
    PermissionEdge,
    PortRange,
    SecurityRule,
)
from stackweave.domain.registry import TemplateRegistry

from .enablement import EnablementReport
from .propagation import AttributePropagator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OmittedEdge:
    """Optional edge dropped because its peer boundary is disabled."""

    boundary: str
    edge: str
    peer: str


@dataclass(frozen=True)
class SecurityReport:
    rules: Mapping[str, tuple[SecurityRule, ...]] = field(default_factory=dict)
    omitted: tuple[OmittedEdge, ...] = ()
    divergent: tuple[tuple[str, str], ...] = ()

    def for_boundary(self, key: str) -> tuple[SecurityRule, ...]:
        return self.rules.get(key, ())


class SecurityGraphBuilder:
    """Turn permission edges into per-boundary rule sets.

    Besides each boundary's own edges, a reverse-reference scan mirrors every
    edge that names another boundary onto that peer, so a relationship only
    needs declaring from one side.
    """

    def __init__(self, registry: TemplateRegistry) -> None:
        self._registry = registry

    def validate(self, deployment: Deployment, enablement: EnablementReport) -> None:
        """Raise every peer error without resolving any identity.

        Unknown and non-boundary peers always fail; a disabled peer fails
        only for required edges of an enabled boundary.
        """

        templates = self._templates(deployment)
        errors: list[StackweaveError] = []
        for declaration in self._boundaries(deployment, templates):
            for edge in declaration.permissions:
                peer_key = edge.peer.instance_key
                if edge.peer.kind != "boundary":
                    continue
                if peer_key is None:
                    errors.append(
                        InvalidPermissionEdgeError(
                            declaration.key, edge.name, "boundary peer names no instance"
                        )
                    )
                    continue
                error = self._check_peer(declaration.key, edge, peer_key, deployment, templates)
                if error is None and edge.required and enablement.is_enabled(declaration.key):
                    if not enablement.is_enabled(peer_key):
                        error = UnresolvedPeerError(
                            declaration.key, edge.name, peer_key, "peer boundary is disabled"
                        )
                if error is not None:
                    errors.append(error)
        raise_collected(errors)

    def build(
        self,
        deployment: Deployment,
        enablement: EnablementReport,
        propagator: AttributePropagator,
    ) -> SecurityReport:
        self.validate(deployment, enablement)
        declarations = {declaration.key: declaration for declaration in deployment.instances}
        templates = self._templates(deployment)
        boundaries = self._boundaries(deployment, templates)
        buckets: dict[str, dict[tuple[object, ...], SecurityRule]] = {
            declaration.key: {}
            for declaration in boundaries
            if enablement.is_enabled(declaration.key)
        }
        omitted: list[OmittedEdge] = []

        for declaration in boundaries:
            if not enablement.is_enabled(declaration.key):
                continue
            for edge in declaration.permissions:
                peer_key = edge.peer.instance_key
                if edge.peer.kind == "cidr":
                    self._add(buckets, self._rule(declaration.key, edge, "cidr", edge.peer.cidrs))
                    continue
                if edge.peer.kind == "self" or peer_key == declaration.key:
                    identity = self._identity(declaration.key, declaration, templates, propagator)
                    self._add(buckets, self._rule(declaration.key, edge, "self", (identity,)))
                    continue
                if peer_key is None or peer_key not in templates:
                    continue
                if not enablement.is_enabled(peer_key):
                    omitted.append(OmittedEdge(declaration.key, edge.name, peer_key))
                    logger.warning(
                        "security.edge_omitted boundary=%s edge=%s peer=%s reason=peer disabled",
                        declaration.key,
                        edge.name,
                        peer_key,
                    )
                    continue
                peer_identity = self._identity(peer_key, declaration, templates, propagator)
                own_identity = self._identity(declaration.key, declaration, templates, propagator)
                self._add(buckets, self._rule(declaration.key, edge, "boundary", (peer_identity,)))
                self._add(
                    buckets,
                    SecurityRule(
                        boundary=peer_key,
                        direction=edge.direction.mirrored(),
                        protocol=edge.protocol,
                        ports=edge.ports,
                        peer_kind="boundary",
                        peer=(own_identity,),
                        origin="reverse",
                        edge=edge.name,
                        declared_by=declaration.key,
                    ),
                )

        divergent = self._divergent_pairs(boundaries, declarations, enablement)
        return SecurityReport(
            rules={key: tuple(bucket.values()) for key, bucket in buckets.items()},
            omitted=tuple(omitted),
            divergent=divergent,
        )

    def _templates(self, deployment: Deployment) -> dict[str, ComponentTemplate]:
        return {
            declaration.key: self._registry.lookup(declaration.template_id)
            for declaration in deployment.instances
            if declaration.template_id in self._registry
        }

    @staticmethod
    def _boundaries(
        deployment: Deployment, templates: Mapping[str, ComponentTemplate]
    ) -> list[InstanceDeclaration]:
        return [
            declaration
            for declaration in deployment.instances
            if declaration.key in templates and templates[declaration.key].security_boundary
        ]

    @staticmethod
    def _check_peer(
        boundary: str,
        edge: PermissionEdge,
        peer_key: str,
        deployment: Deployment,
        templates: Mapping[str, ComponentTemplate],
    ) -> StackweaveError | None:
        if peer_key not in deployment.keys:
            return UnresolvedPeerError(boundary, edge.name, peer_key, "instance is not declared")
        if peer_key not in templates:
            # Unknown template, already reported by the graph builder.
            return None
        if not templates[peer_key].security_boundary:
            return UnresolvedPeerError(
                boundary, edge.name, peer_key, "instance is not a security boundary"
            )
        return None

    @staticmethod
    def _rule(
        boundary: str, edge: PermissionEdge, kind: str, peer: tuple[str, ...]
    ) -> SecurityRule:
        return SecurityRule(
            boundary=boundary,
            direction=edge.direction,
            protocol=edge.protocol,
            ports=edge.ports,
            peer_kind=kind,  # type: ignore[arg-type]
            peer=peer,
            origin="declared",
            edge=edge.name,
            declared_by=boundary,
        )

    @staticmethod
    def _add(
        buckets: dict[str, dict[tuple[object, ...], SecurityRule]], rule: SecurityRule
    ) -> None:
        bucket = buckets[rule.boundary]
        existing = bucket.get(rule.identity)
        if existing is None or (existing.origin == "reverse" and rule.origin == "declared"):
            bucket[rule.identity] = rule

    @staticmethod
    def _identity(
        key: str,
        requester: InstanceDeclaration,
        templates: Mapping[str, ComponentTemplate],
        propagator: AttributePropagator,
    ) -> str:
        reference = AttributeReference(
            source_key=key,
            attribute=templates[key].identity_attribute,
            target_key=requester.key,
            slot="permissions",
        )
        return str(to_serialisable(propagator.resolve(reference)))

    @staticmethod
    def _divergent_pairs(
        boundaries: list[InstanceDeclaration],
        declarations: Mapping[str, InstanceDeclaration],
        enablement: EnablementReport,
    ) -> tuple[tuple[str, str], ...]:
        """Find boundary pairs declared from both sides with different terms.

        Both sides are kept as declared; the pair is only reported.
        """

        def terms(source: InstanceDeclaration, target: str, flip: bool) -> set[tuple[Direction, str, PortRange]]:
            return {
                (edge.direction.mirrored() if flip else edge.direction, edge.protocol, edge.ports)
                for edge in source.permissions
                if edge.peer.kind == "boundary" and edge.peer.instance_key == target
            }

        pairs: list[tuple[str, str]] = []
        for position, first in enumerate(boundaries):
            for second in boundaries[position + 1 :]:
                if not (enablement.is_enabled(first.key) and enablement.is_enabled(second.key)):
                    continue
                forward = terms(first, second.key, flip=False)
                backward = terms(declarations[second.key], first.key, flip=True)
                if forward and backward and forward != backward:
                    pairs.append((first.key, second.key))
                    logger.warning(
                        "security.divergent_declaration boundaries=%s,%s",
                        first.key,
                        second.key,
                    )
        return tuple(pairs)


__all__ = ["OmittedEdge", "SecurityGraphBuilder", "SecurityReport"]
