"""Enablement resolution with cascading implicit disablement."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from stackweave.domain.errors import (
    DeploymentError,
    StackweaveError,
    UnsatisfiableEnablementError,
    raise_collected,
)
from stackweave.domain.models import Deployment, EnablementState, InstanceDeclaration

from .graph import DependencySet

logger = logging.getLogger(__name__)


class ConflictPolicy(str, Enum):
    """What to do when a forced instance has a disabled hard dependency."""

    AUTO_DISABLE = "auto-disable"
    ERROR_ON_CONFLICT = "error-on-conflict"


@dataclass(frozen=True)
class EnablementReport:
    """Final per-instance enablement states.

    ``causes`` maps every implicitly disabled instance to the disabled hard
    dependency that triggered the cascade.
    """

    states: Mapping[str, EnablementState]
    order: tuple[str, ...]
    causes: Mapping[str, str] = field(default_factory=dict)

    def state(self, key: str) -> EnablementState:
        return self.states[key]

    def is_enabled(self, key: str) -> bool:
        return self.states.get(key, EnablementState.DISABLED).is_enabled

    @property
    def enabled_keys(self) -> tuple[str, ...]:
        return tuple(key for key in self.order if self.states[key].is_enabled)

    @property
    def disabled_keys(self) -> tuple[str, ...]:
        return tuple(key for key in self.order if not self.states[key].is_enabled)


class EnablementResolver:
    """Evaluate explicit flags, then propagate disablement to a fixed point."""

    def __init__(self, policy: ConflictPolicy = ConflictPolicy.AUTO_DISABLE) -> None:
        self.policy = policy

    def resolve(
        self,
        deployment: Deployment,
        dependencies: Mapping[str, DependencySet],
    ) -> EnablementReport:
        declarations = {declaration.key: declaration for declaration in deployment.instances}
        order = deployment.keys
        states = {
            key: EnablementState.ENABLED
            if self._evaluate(declarations[key], declarations, ())
            else EnablementState.DISABLED
            for key in order
        }
        causes: dict[str, str] = {}
        errors: dict[str, StackweaveError] = {}

        changed = True
        while changed:
            changed = False
            for key in order:
                if not states[key].is_enabled:
                    continue
                blocker = next(
                    (
                        dependency
                        for dependency in dependencies.get(key, DependencySet()).hard
                        if dependency in states and not states[dependency].is_enabled
                    ),
                    None,
                )
                if blocker is None:
                    continue
                forced = declarations[key].enabled.forced
                if forced and self.policy is ConflictPolicy.ERROR_ON_CONFLICT:
                    errors.setdefault(key, UnsatisfiableEnablementError(key, blocker))
                    continue
                states[key] = EnablementState.IMPLICITLY_DISABLED
                causes[key] = blocker
                changed = True
                logger.info(
                    "enablement.implicitly_disabled instance=%s dependency=%s forced=%s",
                    key,
                    blocker,
                    forced,
                )

        raise_collected(errors.values())
        return EnablementReport(states=states, order=order, causes=causes)

    def _evaluate(
        self,
        declaration: InstanceDeclaration,
        declarations: Mapping[str, InstanceDeclaration],
        chain: tuple[str, ...],
    ) -> bool:
        flag = declaration.enabled
        if flag.mode != "mirror":
            return flag.value
        if declaration.key in chain:
            path = " -> ".join([*chain, declaration.key])
            raise DeploymentError(f"Enablement expressions form a loop: {path}")
        mirrored = declarations.get(flag.mirror_of or "")
        if mirrored is None:
            # Reported as an unknown instance by the graph builder.
            return False
        value = self._evaluate(mirrored, declarations, (*chain, declaration.key))
        return not value if flag.negate else value


__all__ = ["ConflictPolicy", "EnablementReport", "EnablementResolver"]
