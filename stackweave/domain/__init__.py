"""Domain model, error taxonomy and template registry."""

from .absent import ABSENT, AbsentType, Deferred, derive, is_absent, to_serialisable
from .errors import (
    CyclicReferenceError,
    DuplicateTemplateError,
    InvalidReferenceSyntaxError,
    ResolutionErrors,
    StackweaveError,
    UnknownTemplateError,
    UnresolvedPeerError,
    UnsatisfiableEnablementError,
)
from .models import (
    AttributeReference,
    ComponentInstance,
    ComponentTemplate,
    Deployment,
    DeploymentContext,
    EnablementState,
    PermissionEdge,
    SecurityRule,
)
from .registry import TemplateRegistry

__all__ = [
    "ABSENT",
    "AbsentType",
    "AttributeReference",
    "ComponentInstance",
    "ComponentTemplate",
    "CyclicReferenceError",
    "Deferred",
    "Deployment",
    "DeploymentContext",
    "DuplicateTemplateError",
    "EnablementState",
    "InvalidReferenceSyntaxError",
    "PermissionEdge",
    "ResolutionErrors",
    "SecurityRule",
    "StackweaveError",
    "TemplateRegistry",
    "UnknownTemplateError",
    "UnresolvedPeerError",
    "UnsatisfiableEnablementError",
    "derive",
    "is_absent",
    "to_serialisable",
]
