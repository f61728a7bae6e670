"""Resolution engine: runs every phase from declarations to a materialisation plan."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from stackweave.core import config
from stackweave.domain.absent import to_serialisable
from stackweave.domain.errors import StackweaveError, raise_collected
from stackweave.domain.models import (
    ComponentInstance,
    Deployment,
    DeploymentContext,
    SecurityRule,
)
from stackweave.domain.registry import TemplateRegistry
from stackweave.governance.secrets import InMemorySecretStore, build_secret_store
from stackweave.infrastructure.state import InMemoryHandleLedger, JsonHandleLedger

from .enablement import ConflictPolicy, EnablementReport, EnablementResolver
from .graph import AttributeGraph, AttributeGraphBuilder, dependency_map
from .planner import InstantiationPlanner, MaterializationPlan, build_materialization_plan
from .propagation import AttributePropagator
from .secret_material import SecretHandoff, SecretMaterialGenerator
from .security import SecurityGraphBuilder, SecurityReport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolutionResult:
    """Everything a provisioner and a reviewer need from one resolution run."""

    context: DeploymentContext
    enablement: EnablementReport
    plan: MaterializationPlan
    instances: Mapping[str, ComponentInstance]
    security: SecurityReport

    @property
    def published(self) -> dict[str, dict[str, Any]]:
        """Published attributes per instance, with ``None`` for absent values.

        Disabled instances keep every attribute key so that consumers see an
        explicit null rather than a missing entry.
        """

        return {
            key: to_serialisable(dict(self.instances[key].published))
            for key in self.enablement.order
            if key in self.instances
        }

    @property
    def rules(self) -> Mapping[str, tuple[SecurityRule, ...]]:
        return self.security.rules


class ResolutionEngine:
    """Validate a deployment and produce its plan, attributes and rule sets.

    Nothing reaches the secret store or a provisioner until every validation
    phase has passed.
    """

    def __init__(
        self,
        registry: TemplateRegistry,
        *,
        policy: ConflictPolicy = ConflictPolicy.AUTO_DISABLE,
        secret_handoff: SecretHandoff | None = None,
    ) -> None:
        self.registry = registry
        self.policy = policy
        self.secret_handoff = secret_handoff or SecretHandoff(
            SecretMaterialGenerator(InMemorySecretStore())
        )
        self._graphs = AttributeGraphBuilder(registry)
        self._planner = InstantiationPlanner()
        self._security = SecurityGraphBuilder(registry)

    def validate(self, deployment: Deployment) -> tuple[AttributeGraph, EnablementReport]:
        """Run every check that needs no generated material.

        Graph, enablement and peer checks all run before anything is raised,
        so one failure does not hide the others.
        """

        errors: list[StackweaveError] = []
        graph: AttributeGraph | None = None
        enablement: EnablementReport | None = None
        try:
            graph = self._graphs.build(deployment)
        except StackweaveError as exc:
            errors.append(exc)
        try:
            enablement = EnablementResolver(self.policy).resolve(
                deployment, dependency_map(deployment, self.registry)
            )
        except StackweaveError as exc:
            errors.append(exc)
        if enablement is not None:
            try:
                self._security.validate(deployment, enablement)
            except StackweaveError as exc:
                errors.append(exc)
        raise_collected(errors)
        return graph, enablement  # type: ignore[return-value]

    def resolve(self, deployment: Deployment) -> ResolutionResult:
        graph, enablement = self.validate(deployment)
        order = self._planner.plan(graph, enablement)
        context = deployment.context

        propagator = AttributePropagator(enablement, context)
        for key in order:
            declaration = deployment.declaration(key)
            template = self.registry.lookup(declaration.template_id)
            secrets: dict[str, str] = {}
            if template.secrets:
                secrets = self.secret_handoff.ensure(
                    key,
                    template.secrets,
                    rotate=declaration.rotate_secrets,
                    namespace=context.name,
                )
            propagator.materialize(declaration, template, secrets)
        for key in enablement.disabled_keys:
            declaration = deployment.declaration(key)
            propagator.materialize(declaration, self.registry.lookup(declaration.template_id))

        security = self._security.build(deployment, enablement, propagator)
        instances = propagator.instances
        plan = build_materialization_plan(order, deployment, graph, enablement, instances)
        logger.info(
            "engine.resolved deployment=%s enabled=%d disabled=%d rules=%d",
            context.name,
            len(order),
            len(enablement.disabled_keys),
            sum(len(rules) for rules in security.rules.values()),
        )
        return ResolutionResult(
            context=context,
            enablement=enablement,
            plan=plan,
            instances={key: instances[key] for key in enablement.order},
            security=security,
        )


def build_engine_from_config(
    settings: config.EngineSettings | None = None,
    store_settings: config.SecretStoreSettings | None = None,
    *,
    catalog_path: Path | None = None,
) -> ResolutionEngine:
    """Construct a :class:`ResolutionEngine` based on configuration settings."""

    resolved = settings or config.ENGINE
    store = store_settings or config.SECRET_STORE
    registry = TemplateRegistry.from_catalog(catalog_path or resolved.catalog_path)
    ledger = (
        JsonHandleLedger(resolved.ledger_path)
        if resolved.ledger_path is not None
        else InMemoryHandleLedger()
    )
    generator = SecretMaterialGenerator(
        build_secret_store(
            store.backend,
            prefix=store.prefix,
            region=store.region,
            vault_url=store.vault_url,
        )
    )
    return ResolutionEngine(
        registry,
        policy=ConflictPolicy(resolved.conflict_policy),
        secret_handoff=SecretHandoff(generator, ledger=ledger),
    )


__all__ = ["ResolutionEngine", "ResolutionResult", "build_engine_from_config"]
