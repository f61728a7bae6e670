"""Null-safe resolution of attribute references and derived attributes."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from stackweave.core.catalog import EXPRESSION_PLACEHOLDER
from stackweave.core.deployment import iter_reference_tokens
from stackweave.domain.absent import ABSENT, Deferred, Value, collapse, is_absent
from stackweave.domain.errors import StackweaveError
from stackweave.domain.models import (
    AttributeReference,
    ComponentInstance,
    ComponentTemplate,
    DeploymentContext,
    InstanceDeclaration,
    ParameterBinding,
)

from .enablement import EnablementReport

logger = logging.getLogger(__name__)


class AttributePropagator:
    """Resolve references to ``Value | Absent`` and publish instance attributes.

    Instances must be published in plan order: a reference into an enabled
    instance that has not been published yet is a planning bug and raises.
    """

    def __init__(self, enablement: EnablementReport, context: DeploymentContext) -> None:
        self._enablement = enablement
        self._context = context
        self._instances: dict[str, ComponentInstance] = {}

    @property
    def instances(self) -> Mapping[str, ComponentInstance]:
        return dict(self._instances)

    def published(self) -> dict[str, Mapping[str, Any]]:
        return {key: instance.published for key, instance in self._instances.items()}

    def resolve(self, reference: AttributeReference) -> Value:
        """Return the referenced value, ``ABSENT`` when the source is disabled."""

        if not self._enablement.is_enabled(reference.source_key):
            return ABSENT
        producer = self._instances.get(reference.source_key)
        if producer is None:
            raise StackweaveError(
                f"'{reference.source_key}' must be resolved before "
                f"'{reference.target_key}' can read {reference.expression}"
            )
        if reference.attribute in producer.published:
            return producer.published[reference.attribute]
        return Deferred(reference.source_key, reference.attribute)

    def resolve_binding(self, binding: ParameterBinding, instance_key: str) -> Value:
        if binding.is_literal:
            return binding.raw
        values = {
            (reference.source_key, reference.attribute): self.resolve(reference)
            for reference in binding.references
        }
        return collapse(self._substitute(binding.raw, values, instance_key))

    def resolve_bindings(
        self, declaration: InstanceDeclaration, template: ComponentTemplate
    ) -> dict[str, Value]:
        """Resolve every template slot, falling back to the slot default."""

        resolved: dict[str, Value] = {}
        for slot in template.parameters:
            binding = declaration.bindings.get(slot.name)
            if binding is None:
                resolved[slot.name] = slot.default
            else:
                resolved[slot.name] = self.resolve_binding(binding, declaration.key)
        return resolved

    def materialize(
        self,
        declaration: InstanceDeclaration,
        template: ComponentTemplate,
        secrets: Mapping[str, str] | None = None,
    ) -> ComponentInstance:
        """Resolve bindings, derive published attributes and record the instance."""

        if declaration.key in self._instances:
            raise StackweaveError(f"Instance '{declaration.key}' was already resolved")
        state = self._enablement.state(declaration.key)
        instance = ComponentInstance(declaration=declaration, template=template, state=state)
        if not state.is_enabled:
            instance.publish({name: ABSENT for name in template.attribute_names})
            self._instances[declaration.key] = instance
            return instance

        instance.bindings = self.resolve_bindings(declaration, template)
        attributes: dict[str, Value] = {}
        for attribute in template.attributes:
            if attribute.expression is None:
                continue
            attributes[attribute.name] = self._render(
                attribute.expression,
                {
                    "key": declaration.key,
                    "params": instance.bindings,
                    "attrs": attributes,
                    "secrets": dict(secrets or {}),
                    "context": {"name": self._context.name},
                },
            )
        instance.publish(attributes)
        self._instances[declaration.key] = instance
        absent = sorted(name for name, value in attributes.items() if is_absent(value))
        if absent:
            logger.debug(
                "propagation.absent_attributes instance=%s attributes=%s",
                declaration.key,
                ",".join(absent),
            )
        return instance

    def _substitute(
        self,
        raw: Any,
        values: Mapping[tuple[str, str], Value],
        instance_key: str,
    ) -> Any:
        if isinstance(raw, Mapping):
            return {
                key: self._substitute(item, values, instance_key) for key, item in raw.items()
            }
        if isinstance(raw, (list, tuple)):
            return [self._substitute(item, values, instance_key) for item in raw]
        if not isinstance(raw, str):
            return raw
        tokens = list(iter_reference_tokens(instance_key, raw))
        if not tokens:
            return raw
        if len(tokens) == 1 and tokens[0][0] == raw.strip():
            _, source_key, attribute = tokens[0]
            return values[(source_key, attribute)]
        rendered = raw
        for token, source_key, attribute in tokens:
            value = values[(source_key, attribute)]
            if is_absent(value):
                return ABSENT
            rendered = rendered.replace(token, _as_text(value))
        return rendered

    @staticmethod
    def _render(expression: str, scopes: Mapping[str, Any]) -> Value:
        placeholders = list(EXPRESSION_PLACEHOLDER.finditer(expression))

        def lookup(scope: str, name: str) -> Value:
            if scope == "key":
                return scopes["key"]
            if name not in scopes[scope]:
                raise StackweaveError(f"No value for '{{{scope}.{name}}}' in {expression!r}")
            return scopes[scope][name]

        if len(placeholders) == 1 and placeholders[0].group(0) == expression:
            match = placeholders[0]
            return lookup(match.group(1), match.group(2))

        rendered = expression
        for match in placeholders:
            value = collapse(lookup(match.group(1), match.group(2)))
            if is_absent(value):
                return ABSENT
            rendered = rendered.replace(match.group(0), _as_text(value))
        return rendered


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


__all__ = ["AttributePropagator"]
