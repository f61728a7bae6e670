"""Error taxonomy raised while resolving a deployment.

Every error is detected during resolution, before any step is handed to a
provisioner, so none of them leave partial side effects behind.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence


class StackweaveError(RuntimeError):
    """Base class for every error raised by the resolution engine."""


class CatalogError(StackweaveError):
    """Raised when a template catalog fails validation."""


class DeploymentError(StackweaveError):
    """Raised when a deployment document is structurally invalid."""


class SecretStoreError(StackweaveError):
    """Raised when a secret store cannot accept generated material."""


class UnknownTemplateError(StackweaveError):
    """Raised when a deployment names a template the registry does not hold."""

    def __init__(self, template_id: str) -> None:
        super().__init__(f"Unknown component template '{template_id}'")
        self.template_id = template_id


class DuplicateTemplateError(StackweaveError):
    """Raised when two templates share an identifier."""

    def __init__(self, template_id: str) -> None:
        super().__init__(f"Component template '{template_id}' is already registered")
        self.template_id = template_id


class UnknownInstanceError(StackweaveError):
    """Raised when a reference or peer names an undeclared instance."""

    def __init__(self, instance_key: str, referenced_by: str) -> None:
        super().__init__(
            f"Instance '{referenced_by}' references undeclared instance '{instance_key}'"
        )
        self.instance_key = instance_key
        self.referenced_by = referenced_by


class UnknownAttributeError(StackweaveError):
    """Raised when a reference names an attribute the source never publishes."""

    def __init__(self, instance_key: str, attribute: str, referenced_by: str) -> None:
        super().__init__(
            f"Instance '{referenced_by}' references '{instance_key}.{attribute}' "
            f"but '{instance_key}' does not publish '{attribute}'"
        )
        self.instance_key = instance_key
        self.attribute = attribute
        self.referenced_by = referenced_by


class UnsatisfiableEnablementError(StackweaveError):
    """Raised when a forced instance has a disabled hard dependency."""

    def __init__(self, instance_key: str, dependency_key: str) -> None:
        super().__init__(
            f"Instance '{instance_key}' is explicitly enabled but its hard "
            f"dependency '{dependency_key}' is disabled"
        )
        self.instance_key = instance_key
        self.dependency_key = dependency_key


class CyclicReferenceError(StackweaveError):
    """Raised when attribute references form one or more cycles.

    ``path`` holds the first cycle found, ``cycles`` every independent cycle.
    A cycle ``a -> b -> a`` is reported as the path ``("a", "b")``.
    """

    def __init__(self, cycles: Sequence[Sequence[str]]) -> None:
        if not cycles:
            raise ValueError("CyclicReferenceError requires at least one cycle")
        self.cycles: tuple[tuple[str, ...], ...] = tuple(
            tuple(cycle) for cycle in cycles
        )
        self.path = self.cycles[0]
        rendered = "; ".join(_render_cycle(cycle) for cycle in self.cycles)
        noun = "cycle" if len(self.cycles) == 1 else "cycles"
        super().__init__(f"Reference {noun} detected: {rendered}")


class InvalidReferenceSyntaxError(StackweaveError):
    """Raised when a binding holds a malformed ``${instance.attribute}`` expression."""

    def __init__(self, instance_key: str, raw: str, reason: str = "") -> None:
        detail = f" ({reason})" if reason else ""
        super().__init__(
            f"Instance '{instance_key}' has a malformed reference expression "
            f"{raw!r}{detail}"
        )
        self.instance_key = instance_key
        self.raw = raw


class UnresolvedPeerError(StackweaveError):
    """Raised when a permission edge names a peer that cannot be resolved."""

    def __init__(
        self, boundary_key: str, edge_name: str, peer_key: str, reason: str
    ) -> None:
        super().__init__(
            f"Permission edge '{edge_name}' on '{boundary_key}' cannot resolve "
            f"peer '{peer_key}': {reason}"
        )
        self.boundary_key = boundary_key
        self.edge_name = edge_name
        self.peer_key = peer_key


class InvalidPermissionEdgeError(StackweaveError):
    """Raised when a permission edge declaration is malformed."""

    def __init__(self, boundary_key: str, edge_name: str, message: str) -> None:
        super().__init__(f"Permission edge '{edge_name}' on '{boundary_key}': {message}")
        self.boundary_key = boundary_key
        self.edge_name = edge_name


class ResolutionErrors(StackweaveError):
    """Aggregate of independent validation errors reported together."""

    def __init__(self, errors: Sequence[StackweaveError]) -> None:
        self.errors: tuple[StackweaveError, ...] = tuple(errors)
        lines = "\n".join(f"  - {error}" for error in self.errors)
        super().__init__(f"{len(self.errors)} resolution errors:\n{lines}")


def raise_collected(errors: Iterable[StackweaveError]) -> None:
    """Raise nothing, the single error, or a :class:`ResolutionErrors` bundle."""

    flattened: list[StackweaveError] = []
    for error in errors:
        if isinstance(error, ResolutionErrors):
            flattened.extend(error.errors)
        else:
            flattened.append(error)
    if not flattened:
        return
    if len(flattened) == 1:
        raise flattened[0]
    raise ResolutionErrors(flattened)


def _render_cycle(cycle: Sequence[str]) -> str:
    return " -> ".join([*cycle, cycle[0]])


__all__ = [
    "CatalogError",
    "CyclicReferenceError",
    "DeploymentError",
    "DuplicateTemplateError",
    "InvalidPermissionEdgeError",
    "InvalidReferenceSyntaxError",
    "ResolutionErrors",
    "SecretStoreError",
    "StackweaveError",
    "UnknownAttributeError",
    "UnknownInstanceError",
    "UnknownTemplateError",
    "UnresolvedPeerError",
    "UnsatisfiableEnablementError",
    "raise_collected",
]
