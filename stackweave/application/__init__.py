"""Application layer: resolution phases and their orchestration."""

from . import enablement, engine, graph, planner, propagation, secret_material, security

__all__ = [
    "enablement",
    "engine",
    "graph",
    "planner",
    "propagation",
    "secret_material",
    "security",
]
