"""Template catalog loading utilities."""

from __future__ import annotations

import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from stackweave.domain.errors import CatalogError
from stackweave.domain.models import (
    CHARACTER_CLASSES,
    ComponentTemplate,
    DependencyKind,
    ParameterSlot,
    PublishedAttribute,
    SecretSpec,
    SlotKind,
)

EXPRESSION_PLACEHOLDER = re.compile(r"\{([a-z_]+)(?:\.([A-Za-z0-9_]+))?\}")
"""Placeholder syntax of derived attribute expressions, e.g. ``{params.port}``."""

_SCOPES_WITH_FIELD = frozenset({"params", "attrs", "secrets", "context"})
_CONTEXT_FIELDS = frozenset({"name"})


def _load_slot(template_id: str, payload: Any) -> ParameterSlot:
    if isinstance(payload, str):
        return ParameterSlot(name=payload)
    if not isinstance(payload, Mapping):
        raise CatalogError(f"Template '{template_id}' has a malformed parameter entry")
    name = payload.get("name")
    if not name:
        raise CatalogError(f"Template '{template_id}' declares a parameter without 'name'")
    try:
        kind = SlotKind(str(payload.get("kind", SlotKind.LITERAL.value)))
        dependency = DependencyKind(
            str(payload.get("dependency", DependencyKind.HARD.value))
        )
    except ValueError as exc:
        raise CatalogError(
            f"Template '{template_id}' parameter '{name}': {exc}"
        ) from exc
    return ParameterSlot(
        name=str(name),
        kind=kind,
        dependency=dependency,
        required=bool(payload.get("required", False)),
        default=payload.get("default"),
        description=str(payload.get("description", "")),
    )


def _load_attribute(template_id: str, payload: Any) -> PublishedAttribute:
    if isinstance(payload, str):
        return PublishedAttribute(name=payload)
    if not isinstance(payload, Mapping) or not payload.get("name"):
        raise CatalogError(f"Template '{template_id}' declares an attribute without 'name'")
    expression = payload.get("expression")
    return PublishedAttribute(
        name=str(payload["name"]),
        expression=str(expression) if expression is not None else None,
    )


def _load_secret(template_id: str, name: str, payload: Any) -> SecretSpec:
    payload = payload or {}
    if not isinstance(payload, Mapping):
        raise CatalogError(f"Template '{template_id}' secret '{name}' must be a mapping")
    classes = tuple(
        str(item) for item in payload.get("classes", SecretSpec().character_classes)
    )
    unknown = [item for item in classes if item not in CHARACTER_CLASSES]
    if unknown:
        raise CatalogError(
            f"Template '{template_id}' secret '{name}' uses unknown character "
            f"classes: {', '.join(unknown)}"
        )
    if not classes:
        raise CatalogError(
            f"Template '{template_id}' secret '{name}' needs at least one character class"
        )
    length = int(payload.get("length", SecretSpec().length))
    if length < len(classes):
        raise CatalogError(
            f"Template '{template_id}' secret '{name}' length {length} cannot cover "
            f"{len(classes)} character classes"
        )
    return SecretSpec(length=length, character_classes=classes)


def _validate_expressions(template: ComponentTemplate) -> None:
    slots = {slot.name for slot in template.parameters}
    seen_attributes: set[str] = set()
    deferred: set[str] = set()
    for attribute in template.attributes:
        if attribute.name in seen_attributes:
            raise CatalogError(
                f"Template '{template.id}' publishes '{attribute.name}' twice"
            )
        for scope, name in EXPRESSION_PLACEHOLDER.findall(attribute.expression or ""):
            location = f"Template '{template.id}' attribute '{attribute.name}'"
            if scope == "key" and not name:
                continue
            if scope not in _SCOPES_WITH_FIELD or not name:
                raise CatalogError(f"{location} uses unknown placeholder '{scope}'")
            if scope == "params" and name not in slots:
                raise CatalogError(f"{location} references undeclared parameter '{name}'")
            if scope == "attrs" and name not in seen_attributes:
                raise CatalogError(
                    f"{location} references '{name}' before it is published"
                )
            if scope == "attrs" and name in deferred:
                raise CatalogError(
                    f"{location} references '{name}', which has no expression and is "
                    "only known after provisioning"
                )
            if scope == "secrets" and name not in template.secrets:
                raise CatalogError(f"{location} references undeclared secret '{name}'")
            if scope == "context" and name not in _CONTEXT_FIELDS:
                raise CatalogError(f"{location} references unknown context field '{name}'")
        seen_attributes.add(attribute.name)
        if attribute.expression is None:
            deferred.add(attribute.name)
    if template.security_boundary and not template.publishes(template.identity_attribute):
        raise CatalogError(
            f"Security boundary template '{template.id}' must publish its identity "
            f"attribute '{template.identity_attribute}'"
        )


def _load_template(payload: Any) -> ComponentTemplate:
    if not isinstance(payload, Mapping):
        raise CatalogError("Catalog entries must be mappings")
    identifier = payload.get("id")
    if not identifier:
        raise CatalogError("Catalog entries require an 'id'")
    template_id = str(identifier)
    parameters = tuple(
        _load_slot(template_id, entry) for entry in payload.get("parameters") or ()
    )
    attributes = tuple(
        _load_attribute(template_id, entry) for entry in payload.get("attributes") or ()
    )
    secrets_payload = payload.get("secrets") or {}
    if not isinstance(secrets_payload, Mapping):
        raise CatalogError(f"Template '{template_id}' secrets must be a mapping")
    secrets = {
        str(name): _load_secret(template_id, str(name), spec)
        for name, spec in secrets_payload.items()
    }
    template = ComponentTemplate(
        id=template_id,
        description=str(payload.get("description", "")),
        parameters=parameters,
        attributes=attributes,
        secrets=secrets,
        security_boundary=bool(payload.get("security_boundary", False)),
        identity_attribute=str(payload.get("identity_attribute", "id")),
    )
    _validate_expressions(template)
    return template


def parse_catalog(payload: Mapping[str, Any]) -> tuple[ComponentTemplate, ...]:
    """Build templates from an already-parsed catalog document."""

    entries = payload.get("templates")
    if not isinstance(entries, list):
        raise CatalogError("Catalogs require a 'templates' list")
    return tuple(_load_template(entry) for entry in entries)


def load_catalog(catalog_path: Path) -> tuple[ComponentTemplate, ...]:
    """Load component templates from a YAML catalog on disk."""

    if not catalog_path.exists():
        raise CatalogError(f"Catalog file not found: {catalog_path}")
    with catalog_path.open("r", encoding="utf-8") as handle:
        try:
            payload = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise CatalogError(f"Catalog {catalog_path} is not valid YAML") from exc
    if not isinstance(payload, Mapping):
        raise CatalogError(f"Catalog {catalog_path} must contain a mapping")
    return parse_catalog(payload)


__all__ = ["EXPRESSION_PLACEHOLDER", "load_catalog", "parse_catalog"]
